import pytest

from editions.models import EditionStatus, CollectionStatus
from editions.status import (
    label_for,
    can_transition,
    cascade_for,
    is_on_sale,
    TRANSITIONS,
)


class TestLabels:
    """Status labels are derived, never stored."""

    def test_edition_labels(self):
        assert label_for('edition', 1) == 'unlisted'
        assert label_for('edition', EditionStatus.SOLD) == 'sold'
        assert label_for('edition', 7) == 'synthesized'

    def test_collection_labels(self):
        assert label_for('collection', 1) == 'draft'
        assert label_for('collection', CollectionStatus.ALMOST_SOLD_OUT) == 'almost-sold-out'

    @pytest.mark.parametrize('kind,code', [
        ('edition', 0),
        ('edition', 99),
        ('collection', 9),
        ('edition', None),
        ('edition', 'not-a-code'),
        ('blog', 1),
    ])
    def test_unknown_is_total(self, kind, code):
        assert label_for(kind, code) == 'unknown'


class TestTransitions:
    """Edition transition table."""

    def test_examples(self):
        assert can_transition(EditionStatus.UNLISTED, EditionStatus.PUBLISHED) is True
        assert can_transition(EditionStatus.SOLD, EditionStatus.CONSIGNED) is False
        assert can_transition(EditionStatus.CONSIGNED, EditionStatus.SOLD) is True
        assert can_transition(EditionStatus.PUBLISHED, EditionStatus.AIRDROPPED) is True
        assert can_transition(EditionStatus.LOCKED, EditionStatus.SYNTHESIZED) is True

    def test_terminal_statuses(self):
        for target in EditionStatus:
            assert can_transition(EditionStatus.SOLD, target) is False
            assert can_transition(EditionStatus.SYNTHESIZED, target) is False

    def test_only_listed_edges_are_allowed(self):
        for source in EditionStatus:
            for target in EditionStatus:
                expected = target in TRANSITIONS.get(source, frozenset())
                assert can_transition(source, target) is expected

    def test_published_to_locked_only_by_cascade(self):
        assert can_transition(EditionStatus.PUBLISHED, EditionStatus.LOCKED) is False
        assert can_transition(
            EditionStatus.PUBLISHED, EditionStatus.LOCKED, cascade=True
        ) is True
        assert can_transition(
            EditionStatus.SOLD, EditionStatus.PUBLISHED, cascade=True
        ) is False


class TestCascade:
    """Collection status changes and the editions they drag along."""

    def test_publishing_a_draft(self):
        sources, target = cascade_for(CollectionStatus.DRAFT, CollectionStatus.PUBLISHED)
        assert sources == {EditionStatus.UNLISTED, EditionStatus.LOCKED}
        assert target == EditionStatus.PUBLISHED

    def test_promotions_count_as_on_sale(self):
        for status in (CollectionStatus.FLASH_SALE, CollectionStatus.PRESALE, CollectionStatus.HOT):
            assert is_on_sale(status)
            assert cascade_for(CollectionStatus.DELISTED, status) is not None

    def test_delisting_locks(self):
        sources, target = cascade_for(CollectionStatus.PUBLISHED, CollectionStatus.DELISTED)
        assert sources == {EditionStatus.PUBLISHED}
        assert target == EditionStatus.LOCKED

    def test_no_cascade(self):
        assert cascade_for(CollectionStatus.PUBLISHED, CollectionStatus.SOLD_OUT) is None
        assert cascade_for(CollectionStatus.PUBLISHED, CollectionStatus.HOT) is None
        assert cascade_for(CollectionStatus.DRAFT, CollectionStatus.DELISTED) is None
