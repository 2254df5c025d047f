"""
Status Machine for editions and collections.

Pure functions only: callers validate with ``can_transition`` and apply
the mutation themselves.
"""
from typing import Optional, Tuple, FrozenSet, Dict, Union

from .models import EditionStatus, CollectionStatus


EDITION_LABELS: Dict[int, str] = {
    EditionStatus.UNLISTED: 'unlisted',
    EditionStatus.CONSIGNED: 'consigned',
    EditionStatus.LOCKED: 'locked',
    EditionStatus.SOLD: 'sold',
    EditionStatus.PUBLISHED: 'published',
    EditionStatus.AIRDROPPED: 'airdropped',
    EditionStatus.SYNTHESIZED: 'synthesized',
}

COLLECTION_LABELS: Dict[int, str] = {
    CollectionStatus.DRAFT: 'draft',
    CollectionStatus.PUBLISHED: 'published',
    CollectionStatus.SOLD_OUT: 'sold-out',
    CollectionStatus.DELISTED: 'delisted',
    CollectionStatus.FLASH_SALE: 'flash-sale',
    CollectionStatus.PRESALE: 'presale',
    CollectionStatus.HOT: 'hot',
    CollectionStatus.ALMOST_SOLD_OUT: 'almost-sold-out',
}

_LABELS = {
    'edition': EDITION_LABELS,
    'collection': COLLECTION_LABELS,
}

UNKNOWN = 'unknown'

_FROM_HELD = frozenset({
    EditionStatus.CONSIGNED,
    EditionStatus.PUBLISHED,
    EditionStatus.SOLD,
    EditionStatus.AIRDROPPED,
    EditionStatus.SYNTHESIZED,
})
_FROM_LISTED = frozenset({
    EditionStatus.SOLD,
    EditionStatus.AIRDROPPED,
})

TRANSITIONS: Dict[int, FrozenSet[int]] = {
    EditionStatus.UNLISTED: _FROM_HELD,
    EditionStatus.LOCKED: _FROM_HELD,
    EditionStatus.CONSIGNED: _FROM_LISTED,
    EditionStatus.PUBLISHED: _FROM_LISTED,
}

# only reachable as a side effect of a collection status change
CASCADE_TRANSITIONS: Dict[int, FrozenSet[int]] = {
    EditionStatus.UNLISTED: frozenset({EditionStatus.PUBLISHED}),
    EditionStatus.LOCKED: frozenset({EditionStatus.PUBLISHED}),
    EditionStatus.PUBLISHED: frozenset({EditionStatus.LOCKED}),
}

# collection statuses under which editions are on sale
ON_SALE = frozenset({
    CollectionStatus.PUBLISHED,
    CollectionStatus.FLASH_SALE,
    CollectionStatus.PRESALE,
    CollectionStatus.HOT,
    CollectionStatus.ALMOST_SOLD_OUT,
})
UNPUBLISHED = frozenset({
    CollectionStatus.DRAFT,
    CollectionStatus.DELISTED,
})

# edition statuses in which an edition carries a listing price
LISTED = frozenset({EditionStatus.CONSIGNED, EditionStatus.PUBLISHED})


def label_for(entity_kind: str, code: Union[int, str, None]) -> str:
    """Human readable label of a status code, 'unknown' for anything else."""
    labels = _LABELS.get(entity_kind)
    if labels is None:
        return UNKNOWN
    try:
        return labels.get(int(code), UNKNOWN)
    except (TypeError, ValueError):
        return UNKNOWN


def can_transition(
    from_status: int,
    to_status: int,
    cascade: bool = False
) -> bool:
    """Whether an edition may move from ``from_status`` to ``to_status``.

    Cascade moves (driven by a collection status change) are checked
    against their own table and only when ``cascade`` is set.
    """
    table = CASCADE_TRANSITIONS if cascade else TRANSITIONS
    return to_status in table.get(from_status, frozenset())


def is_on_sale(collection_status: int) -> bool:
    return collection_status in ON_SALE


def cascade_for(
    previous: int,
    new: int
) -> Optional[Tuple[FrozenSet[int], int]]:
    """Edition cascade triggered by a collection status change.

    Returns ``(source statuses, target status)`` or None when the change
    does not touch editions.
    """
    if new in ON_SALE and previous not in ON_SALE:
        return frozenset({EditionStatus.UNLISTED, EditionStatus.LOCKED}), EditionStatus.PUBLISHED
    if new in UNPUBLISHED and previous in ON_SALE:
        return frozenset({EditionStatus.PUBLISHED}), EditionStatus.LOCKED
    return None
