"""
Transfer & Transaction Recorder.

Commits ownership and status changes of editions and appends their
transaction history. Every write happens inside one store transaction,
so a rejected change leaves the edition untouched.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Iterable, Tuple, Callable

from navconfig.logging import logging

from .exceptions import (
    NotFound,
    InvalidTransition,
    OwnershipMismatch,
    SelfTransactionError,
    AlreadyOpened,
    OutOfStock,
)
from .models import (
    Collection,
    Edition,
    EditionStatus,
    TransactionEntry,
    TransactionType,
    format_sub_id,
)
from .status import can_transition, cascade_for, label_for, LISTED
from .store import AbstractStore, UnitOfWork


# finalizes ledger counters on the collection locked by the same transaction
Settle = Callable[[Collection], None]

SALE_TYPES = frozenset({
    TransactionType.PURCHASE,
    TransactionType.CONSIGNMENT_PURCHASE,
})


def append_history(
    edition: Edition,
    from_owner: Optional[str],
    to_owner: str,
    price: Decimal,
    tx_type: TransactionType
) -> TransactionEntry:
    """Append a history entry; timestamps never go backwards."""
    timestamp = datetime.now()
    if edition.transaction_history:
        last = edition.transaction_history[-1].timestamp
        if timestamp < last:
            timestamp = last
    entry = TransactionEntry(
        timestamp=timestamp,
        from_owner=from_owner,
        to_owner=to_owner,
        price=price if price is not None else Decimal('0'),
        tx_type=tx_type.value
    )
    edition.transaction_history.append(entry)
    return entry


def _listing_price(
    edition: Edition,
    collection: Collection,
    price: Optional[Decimal]
) -> Optional[Decimal]:
    if edition.status not in LISTED:
        return None
    if price is not None:
        return price
    if edition.price is not None:
        return edition.price
    return collection.price


class TransferRecorder:
    """Ownership, status and history writes for editions."""

    def __init__(self, store: AbstractStore, logger=None):
        self.store = store
        self.logger = logger or logging.getLogger('Editions.Recorder')

    async def _load(self, uow: UnitOfWork, sub_id: str) -> Edition:
        edition = await uow.edition(sub_id)
        if edition is None:
            raise NotFound(
                f"Edition {uow.collection.collection_id}#{sub_id} not found"
            )
        return edition

    @staticmethod
    def _check_transition(edition: Edition, new_status: int, cascade: bool = False):
        if not can_transition(edition.status, new_status, cascade=cascade):
            raise InvalidTransition(
                f"Edition {edition.collection_id}#{edition.sub_id} cannot move "
                f"from {label_for('edition', edition.status)} "
                f"to {label_for('edition', new_status)}"
            )

    # =========================================================================
    # TRANSFERS
    # =========================================================================

    async def transfer(
        self,
        collection_id: str,
        sub_id: str,
        from_owner: str,
        to_owner: str,
        price: Optional[Decimal] = None,
        new_status: Optional[int] = None,
        tx_type: TransactionType = TransactionType.TRANSFER,
        allow_self: bool = False,
        from_statuses: Optional[Iterable[int]] = None,
        settle: Optional[Settle] = None
    ) -> Edition:
        """
        Move an edition to a new holder.

        Args:
            collection_id: Collection of the edition
            sub_id: Edition number
            from_owner: Expected current holder
            to_owner: New holder
            price: Price recorded in the history entry
            new_status: Target status, None keeps the current one
            tx_type: Tag of the history entry
            allow_self: Skip the self-transaction guard
            from_statuses: Statuses the edition must currently be in
            settle: Ledger settlement committed together with the move

        Raises:
            SelfTransactionError, NotFound, OwnershipMismatch,
            InvalidTransition, AlreadyOpened, ReservationExpired
        """
        if not allow_self and from_owner == to_owner:
            raise SelfTransactionError(
                "Cannot transfer an edition to its current owner"
            )
        async with self.store.transaction(collection_id) as uow:
            edition = await self._load(uow, sub_id)
            if edition.owner != from_owner:
                raise OwnershipMismatch(
                    f"Edition {collection_id}#{sub_id} is not held by {from_owner}"
                )
            if from_statuses is not None and edition.status not in set(from_statuses):
                raise InvalidTransition(
                    f"Edition {collection_id}#{sub_id} is "
                    f"{label_for('edition', edition.status)}"
                )
            if edition.opened and tx_type in SALE_TYPES:
                raise AlreadyOpened(
                    f"Mystery box {collection_id}#{sub_id} was already opened"
                )
            if new_status is not None:
                self._check_transition(edition, new_status)
                edition.status = int(new_status)
            edition.owner = to_owner
            edition.price = _listing_price(edition, uow.collection, None)
            append_history(edition, from_owner, to_owner, price, tx_type)
            if settle is not None:
                settle(uow.collection)
                await uow.save_collection()
            await uow.save_edition(edition)
        self.logger.info(
            f"{tx_type.value}: {collection_id}#{sub_id} {from_owner} -> {to_owner}"
        )
        return edition

    async def change_status(
        self,
        collection_id: str,
        sub_ids: List[str],
        new_status: int,
        price: Optional[Decimal] = None,
        expected_owner: Optional[str] = None
    ) -> List[Edition]:
        """Status change of several editions, all or nothing."""
        changed = []
        async with self.store.transaction(collection_id) as uow:
            for sub_id in sub_ids:
                edition = await self._load(uow, sub_id)
                if expected_owner is not None and edition.owner != expected_owner:
                    raise OwnershipMismatch(
                        f"Edition {collection_id}#{sub_id} is not held by {expected_owner}"
                    )
                if edition.opened and new_status in LISTED:
                    raise AlreadyOpened(
                        f"Mystery box {collection_id}#{sub_id} was already opened"
                    )
                self._check_transition(edition, new_status)
                edition.status = int(new_status)
                edition.price = _listing_price(edition, uow.collection, price)
                await uow.save_edition(edition)
                changed.append(edition)
        self.logger.info(
            f"{len(changed)} editions of {collection_id} set to "
            f"{label_for('edition', new_status)}"
        )
        return changed

    async def apply_collection_status(
        self,
        collection_id: str,
        new_status: int
    ) -> Tuple[Collection, List[Edition]]:
        """Write a collection status and its edition cascade together."""
        changed = []
        async with self.store.transaction(collection_id) as uow:
            collection = uow.collection
            cascade = cascade_for(collection.status, new_status)
            collection.status = int(new_status)
            if cascade is not None:
                sources, target = cascade
                for edition in await uow.editions(
                    statuses=sources,
                    owner=collection.owner
                ):
                    if edition.opened and target in LISTED:
                        # opened boxes stay off the market
                        continue
                    self._check_transition(edition, target, cascade=True)
                    edition.status = int(target)
                    edition.price = _listing_price(edition, collection, None)
                    await uow.save_edition(edition)
                    changed.append(edition)
            await uow.save_collection()
        self.logger.info(
            f"Collection {collection_id} set to {label_for('collection', new_status)}, "
            f"{len(changed)} editions cascaded"
        )
        return collection, changed

    # =========================================================================
    # MINTING
    # =========================================================================

    @staticmethod
    async def _mint_into(
        uow: UnitOfWork,
        owner: str,
        status: int,
        count: int,
        tx_type: TransactionType,
        from_owner: Optional[str] = None,
        blockchain_id: Optional[str] = None
    ) -> List[Edition]:
        collection = uow.collection
        minted = []
        for _ in range(count):
            collection.last_sequence += 1
            edition = Edition(
                collection_id=collection.collection_id,
                sub_id=format_sub_id(collection.last_sequence),
                owner=owner,
                status=int(status),
                blockchain_id=blockchain_id or collection.blockchain_id,
                shop_id=collection.shop_id
            )
            append_history(edition, from_owner, owner, Decimal('0'), tx_type)
            await uow.add_edition(edition)
            minted.append(edition)
        await uow.save_collection()
        return minted

    async def mint(
        self,
        collection_id: str,
        owner: str,
        status: int = EditionStatus.UNLISTED,
        count: int = 1,
        extend_supply: bool = False,
        tx_type: TransactionType = TransactionType.MINT,
        from_owner: Optional[str] = None
    ) -> List[Edition]:
        """Mint editions with the next sequence numbers.

        Without ``extend_supply`` the collection's total quantity caps
        the number of sequences ever issued. Each edition starts its
        history with a ``tx_type`` entry from ``from_owner`` to ``owner``.
        """
        async with self.store.transaction(collection_id) as uow:
            collection = uow.collection
            if not extend_supply and collection.last_sequence + count > collection.total_quantity:
                raise OutOfStock(
                    f"Collection {collection_id} cannot mint {count} more editions"
                )
            minted = await self._mint_into(
                uow,
                owner,
                status,
                count,
                tx_type=tx_type,
                from_owner=from_owner
            )
        self.logger.info(f"Minted {len(minted)} editions of {collection_id} to {owner}")
        return minted

    async def synthesize(
        self,
        collection_id: str,
        count: int,
        blockchain_id: Optional[str] = None
    ) -> List[Edition]:
        """Mint synthesized editions owned by the collection owner."""
        async with self.store.transaction(collection_id) as uow:
            collection = uow.collection
            minted = await self._mint_into(
                uow,
                collection.owner,
                EditionStatus.SYNTHESIZED,
                count,
                tx_type=TransactionType.SYNTHESIZE,
                blockchain_id=blockchain_id
            )
            collection.synthesized_count += count
        self.logger.info(f"Synthesized {count} editions of {collection_id}")
        return minted

    # =========================================================================
    # MYSTERY BOX INSTANCES
    # =========================================================================

    async def claim_box(
        self,
        collection_id: str,
        sub_id: str,
        owner: str,
        settle: Optional[Settle] = None
    ) -> Edition:
        """Mark a box instance opened; fails if it already was.

        A box listed for sale cannot be opened.
        """
        async with self.store.transaction(collection_id) as uow:
            edition = await self._load(uow, sub_id)
            if edition.owner != owner:
                raise OwnershipMismatch(
                    f"Mystery box {collection_id}#{sub_id} is not held by {owner}"
                )
            if edition.opened:
                raise AlreadyOpened(
                    f"Mystery box {collection_id}#{sub_id} was already opened"
                )
            if edition.status in LISTED:
                raise InvalidTransition(
                    f"Mystery box {collection_id}#{sub_id} is listed for sale"
                )
            edition.opened = True
            edition.opened_at = datetime.now()
            if settle is not None:
                settle(uow.collection)
                await uow.save_collection()
            await uow.save_edition(edition)
        return edition

    async def unclaim_box(
        self,
        collection_id: str,
        sub_id: str,
        settle: Optional[Settle] = None
    ) -> None:
        async with self.store.transaction(collection_id) as uow:
            edition = await self._load(uow, sub_id)
            edition.opened = False
            edition.opened_at = None
            if settle is not None:
                settle(uow.collection)
                await uow.save_collection()
            await uow.save_edition(edition)

    async def record_box_outcome(
        self,
        collection_id: str,
        sub_id: str,
        nft_id: str,
        received_sub_id: str
    ) -> Edition:
        async with self.store.transaction(collection_id) as uow:
            edition = await self._load(uow, sub_id)
            edition.nft_received = nft_id
            edition.edition_received = received_sub_id
            await uow.save_edition(edition)
        return edition
