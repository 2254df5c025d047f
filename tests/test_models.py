import pytest
from decimal import Decimal
from pydantic import ValidationError

from editions.caller import Caller, UserRole
from editions.models import (
    Edition,
    MysteryBoxItem,
    TransactionEntry,
    CollectionType,
    EditionStatus,
    CreateCollectionRequest,
    ConsignRequest,
    AirdropRequest,
    SynthesizeRequest,
    EditionStatusRequest,
    CollectionStatusRequest,
    format_sub_id,
)


class TestRecords:

    def test_sub_id_padding(self):
        assert format_sub_id(1) == '001'
        assert format_sub_id(42) == '042'
        assert format_sub_id(1234) == '1234'
        assert format_sub_id(7, width=5) == '00007'

    def test_box_item_defaults_remaining(self):
        item = MysteryBoxItem(nft_id='nft-a', weight=3, quantity=4)
        assert item.remaining_quantity == 4

    @pytest.mark.parametrize('weight,quantity,remaining', [
        (0, 1, None),
        (1, 0, None),
        (1, 2, 3),
        (1, 2, -1),
    ])
    def test_box_item_bounds(self, weight, quantity, remaining):
        with pytest.raises(ValueError):
            MysteryBoxItem(
                nft_id='nft-a',
                weight=weight,
                quantity=quantity,
                remaining_quantity=remaining
            )

    def test_edition_label_and_payload(self):
        edition = Edition(collection_id='c-1', sub_id='007', owner='alice', status=EditionStatus.CONSIGNED, price=Decimal('9.50'))
        payload = edition.as_dict()
        assert edition.status_str == 'consigned'
        assert edition.sequence == 7
        assert payload['price'] == '9.50'
        assert payload['status_str'] == 'consigned'

    def test_history_entry_from_dict(self):
        entry = TransactionEntry.from_dict({
            'timestamp': '2026-01-02T10:00:00',
            'from_owner': 'alice',
            'to_owner': 'bob',
            'price': '12.00',
            'tx_type': 'purchase'
        })
        assert entry.timestamp.year == 2026
        assert entry.price == Decimal('12.00')
        assert entry.as_dict()['to_owner'] == 'bob'


class TestRequests:

    def test_create_defaults(self):
        request = CreateCollectionRequest(collection_name="Genesis", total_quantity=10, price=2.5)
        assert request.kind == CollectionType.NFT
        assert request.price == Decimal('2.5')

    def test_create_rejects_empty_supply(self):
        with pytest.raises(ValueError):
            CreateCollectionRequest(collection_name="Empty", total_quantity=0)

    def test_box_needs_items(self):
        with pytest.raises(ValueError, match="at least one box item"):
            CreateCollectionRequest(
                collection_name="Box",
                total_quantity=5,
                kind=CollectionType.MYSTERY_BOX
            )

    def test_nft_cannot_carry_items(self):
        with pytest.raises(ValueError, match="Only mystery boxes"):
            CreateCollectionRequest(
                collection_name="NFT",
                total_quantity=5,
                box_items=[{'nft_id': 'x', 'weight': 1, 'quantity': 1}]
            )

    def test_consign_price_positive(self):
        with pytest.raises(ValueError):
            ConsignRequest(collection_id='c-1', sub_id='001', price=0)

    def test_airdrop_shapes(self):
        with pytest.raises(ValueError):
            AirdropRequest(collection_id='c-1', recipients=[])
        with pytest.raises(ValueError, match="same length"):
            AirdropRequest(collection_id='c-1', recipients=['a', 'b'], sub_ids=['001'])
        with pytest.raises(ValueError, match="must not repeat"):
            AirdropRequest(collection_id='c-1', recipients=['a', 'b'], sub_ids=['001', '001'])

    def test_synthesize_quantity(self):
        with pytest.raises(ValueError):
            SynthesizeRequest(collection_id='c-1', quantity=0)

    def test_status_codes(self):
        with pytest.raises(ValueError):
            EditionStatusRequest(collection_id='c-1', sub_ids=['001'], status=9)
        with pytest.raises(ValueError):
            CollectionStatusRequest(collection_id='c-1', status=0)


class TestCaller:

    def test_roles_from_session_groups(self):
        assert Caller.from_session({'user_id': 1, 'groups': ['admin']}).role == UserRole.ADMIN
        assert Caller.from_session({'user_id': 2, 'groups': ['creators']}).role == UserRole.OWNER
        assert Caller.from_session({'user_id': 3, 'groups': []}).role == UserRole.USER

    def test_user_id_is_text(self):
        assert Caller(user_id=15).user_id == '15'

    def test_user_id_required(self):
        with pytest.raises(ValidationError):
            Caller(user_id='')

    def test_can_manage(self):
        admin = Caller(user_id='root', role=UserRole.ADMIN)
        owner = Caller(user_id='creator-1', role=UserRole.OWNER)
        user = Caller(user_id='creator-1')
        assert admin.can_manage('anyone')
        assert owner.can_manage('creator-1')
        assert not owner.can_manage('creator-2')
        assert not user.can_manage('creator-1')
