"""
Inventory Ledger.

The only component allowed to move the inventory counters of a
collection (``sold_quantity``, ``opened_count`` and the box items'
``remaining_quantity``). Every move is a reservation: reserved atomically
under the collection writer, then either committed or released.

Pending reservations are persisted next to the counters, so that the
reservation sweeper can return the units of a crashed request to the
pool once ``EDITIONS_RESERVATION_TIMEOUT`` has elapsed.
"""
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Callable, Sequence, Dict, Any
from uuid import uuid4

from navconfig.logging import logging

from .allocator import available, weighted_index
from .conf import EDITIONS_RESERVATION_TIMEOUT
from .exceptions import (
    OutOfStock,
    NotPublished,
    OpenLimitReached,
    ExhaustedPoolError,
    InvalidRequest,
    ReservationExpired,
)
from .models import Collection, MysteryBoxItem, ReservationKind
from .status import is_on_sale
from .store import AbstractStore


ItemSelector = Callable[[Sequence[MysteryBoxItem]], int]

PENDING = 'pending'
EXPIRED = 'expired'


@dataclass(frozen=True)
class ReservationToken:
    """Handle on a provisional inventory claim."""
    token_id: str
    collection_id: str
    kind: ReservationKind
    expires_at: datetime
    item_index: Optional[int] = None
    nft_id: Optional[str] = None

    def as_record(self, created_at: datetime) -> Dict[str, Any]:
        return {
            'token_id': self.token_id,
            'kind': self.kind.value,
            'item_index': self.item_index,
            'state': PENDING,
            'created_at': created_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
        }


def _find(collection: Collection, token_id: str) -> Optional[Dict[str, Any]]:
    for record in collection.reservations:
        if record['token_id'] == token_id:
            return record
    return None


class InventoryLedger:
    """Atomic reserve / release / commit over the collection counters."""

    def __init__(
        self,
        store: AbstractStore,
        rng: Optional[random.Random] = None,
        timeout: int = None,
        logger=None
    ):
        self.store = store
        self.rng = rng
        self.timeout = timeout or EDITIONS_RESERVATION_TIMEOUT
        self.logger = logger or logging.getLogger('Editions.Ledger')

    def _default_selector(self, items: Sequence[MysteryBoxItem]) -> int:
        return weighted_index(items, self.rng)

    # =========================================================================
    # COUNTERS
    # =========================================================================

    def _claim(
        self,
        collection: Collection,
        kind: ReservationKind,
        item_selector: Optional[ItemSelector] = None,
        item_index: Optional[int] = None
    ) -> Optional[int]:
        """Consume one unit; returns the box item index for openings."""
        if kind == ReservationKind.SALE:
            if not is_on_sale(collection.status):
                raise NotPublished(
                    f"Collection {collection.collection_id} is not on sale"
                )
            if collection.sold_quantity >= collection.total_quantity:
                raise OutOfStock(
                    f"Collection {collection.collection_id} is sold out"
                )
            collection.sold_quantity += 1
            return None

        if not collection.is_mystery_box:
            raise InvalidRequest(
                f"Collection {collection.collection_id} is not a mystery box"
            )
        if collection.opened_count >= collection.open_cap:
            raise OpenLimitReached(
                f"Mystery box {collection.collection_id} reached its open limit"
            )
        if not available(collection.box_items):
            raise ExhaustedPoolError(
                f"Mystery box {collection.collection_id} has no items left"
            )
        if item_index is None:
            selector = item_selector or self._default_selector
            item_index = selector(collection.box_items)
        item = collection.box_items[item_index]
        if item.remaining_quantity <= 0:
            raise ExhaustedPoolError(
                f"Item {item.nft_id} of mystery box "
                f"{collection.collection_id} is exhausted"
            )
        item.remaining_quantity -= 1
        collection.opened_count += 1
        return item_index

    @staticmethod
    def _restore(collection: Collection, kind: str, item_index: Optional[int]) -> None:
        if kind == ReservationKind.SALE.value:
            collection.sold_quantity -= 1
        else:
            collection.opened_count -= 1
            collection.box_items[item_index].remaining_quantity += 1

    # =========================================================================
    # RESERVATIONS
    # =========================================================================

    async def reserve_one(
        self,
        collection_id: str,
        item_selector: Optional[ItemSelector] = None,
        kind: ReservationKind = ReservationKind.SALE
    ) -> ReservationToken:
        """
        Atomically claim one unit of a collection.

        Args:
            collection_id: Collection to reserve from
            item_selector: For openings, picks the box item index out of
                the pool; runs inside the atomic section. Defaults to the
                weighted allocator.
            kind: SALE consumes ``sold_quantity``, OPEN consumes
                ``opened_count`` and one box item.

        Raises:
            NotFound, NotPublished, OutOfStock, OpenLimitReached,
            ExhaustedPoolError
        """
        now = datetime.now()
        async with self.store.transaction(collection_id) as uow:
            collection = uow.collection
            item_index = self._claim(collection, kind, item_selector)
            token = ReservationToken(
                token_id=uuid4().hex,
                collection_id=collection_id,
                kind=kind,
                expires_at=now + timedelta(seconds=self.timeout),
                item_index=item_index,
                nft_id=(
                    collection.box_items[item_index].nft_id
                    if item_index is not None else None
                )
            )
            collection.reservations.append(token.as_record(now))
            await uow.save_collection()
        self.logger.debug(
            f"Reserved {kind.value} unit on {collection_id} ({token.token_id})"
        )
        return token

    async def release(self, token: ReservationToken) -> bool:
        """Give the reserved unit back. Safe to call more than once."""
        async with self.store.transaction(token.collection_id) as uow:
            collection = uow.collection
            record = _find(collection, token.token_id)
            if record is None:
                return False
            if record['state'] == PENDING:
                self._restore(collection, record['kind'], record['item_index'])
            collection.reservations.remove(record)
            await uow.save_collection()
        self.logger.info(
            f"Released {token.kind.value} reservation {token.token_id} "
            f"on {token.collection_id}"
        )
        return True

    def settle(self, collection: Collection, token: ReservationToken) -> None:
        """Make the reservation final on a collection already locked by
        the caller's unit of work.

        Lets the recorder finalize inventory in the same store transaction
        as the ownership change it pays for. A reservation returned to the
        pool by the sweeper is claimed again for the same unit.

        Raises:
            ReservationExpired: the record is gone (settled before, or
                pruned by the sweeper) or its unit was taken meanwhile.
        """
        record = _find(collection, token.token_id)
        if record is None:
            raise ReservationExpired(
                f"Reservation {token.token_id} is no longer held"
            )
        if record['state'] == EXPIRED:
            try:
                self._claim(
                    collection,
                    token.kind,
                    item_index=token.item_index
                )
            except (OutOfStock, OpenLimitReached, ExhaustedPoolError, NotPublished) as err:
                raise ReservationExpired(
                    f"Reservation {token.token_id} expired: {err}"
                ) from err
        collection.reservations.remove(record)

    def refund(self, collection: Collection, token: ReservationToken) -> None:
        """Give back the unit of a settled reservation (locked collection)."""
        self._restore(collection, token.kind.value, token.item_index)
        self.logger.info(
            f"Refunded {token.kind.value} reservation {token.token_id} "
            f"on {token.collection_id}"
        )

    async def commit(self, token: ReservationToken) -> None:
        """Settle the reservation in its own transaction."""
        async with self.store.transaction(token.collection_id) as uow:
            self.settle(uow.collection, token)
            await uow.save_collection()

    @asynccontextmanager
    async def reservation(
        self,
        collection_id: str,
        item_selector: Optional[ItemSelector] = None,
        kind: ReservationKind = ReservationKind.SALE
    ):
        """Reserve on entry, commit on clean exit, release on any failure."""
        token = await self.reserve_one(collection_id, item_selector, kind)
        try:
            yield token
        except BaseException:
            await self.release(token)
            raise
        await self.commit(token)

    # =========================================================================
    # RECOVERY
    # =========================================================================

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Return the units of expired pending reservations to the pool.

        Expired records are kept as tombstones for one more timeout
        period so a late ``commit`` can still tell them apart.
        """
        now = now or datetime.now()
        grace = timedelta(seconds=self.timeout)
        released = 0
        for collection_id in await self.store.pending_collections():
            async with self.store.transaction(collection_id) as uow:
                collection = uow.collection
                changed = False
                for record in list(collection.reservations):
                    expires_at = datetime.fromisoformat(record['expires_at'])
                    if record['state'] == PENDING and expires_at <= now:
                        self._restore(collection, record['kind'], record['item_index'])
                        record['state'] = EXPIRED
                        released += 1
                        changed = True
                    elif record['state'] == EXPIRED and expires_at + grace <= now:
                        collection.reservations.remove(record)
                        changed = True
                if changed:
                    await uow.save_collection()
        if released:
            self.logger.info(f"Swept {released} expired reservations")
        return released
