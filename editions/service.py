"""
Edition Allocation Service.

This module provides the core business logic for:
- Collection creation and lifecycle (with edition cascades)
- Primary and consignment purchases
- Publishing and consigning editions
- Mystery box openings (weighted allocation)
- Airdrops and synthesis
- Reservation recovery
"""
import random
from typing import Optional, List, Dict, Any, Sequence
from decimal import Decimal
from dataclasses import dataclass, field
from functools import partial
from uuid import uuid4

from navconfig.logging import logging

from .allocator import select_weighted as _select_weighted, default_rng
from .caller import Caller, UserRole
from .exceptions import (
    EditionError,
    NotFound,
    Unauthorized,
    InvalidRequest,
    InvalidTransition,
    AlreadyOpened,
    OutOfStock,
    SelfTransactionError,
)
from .ledger import InventoryLedger, ReservationToken
from .models import (
    Collection,
    Edition,
    MysteryBoxItem,
    CollectionType,
    EditionStatus,
    ReservationKind,
    TransactionType,
    CreateCollectionRequest,
    CollectionStatusRequest,
    PublishRequest,
    ConsignRequest,
    PurchaseRequest,
    OpenBoxRequest,
    AirdropRequest,
    SynthesizeRequest,
    TransferRequest,
    EditionStatusRequest,
    format_sub_id,
)
from .pgstore import PgStore
from .recorder import TransferRecorder, SALE_TYPES
from .status import can_transition as _can_transition, label_for as _label_for, LISTED
from .store import AbstractStore, MemoryStore


# editions an airdrop may take from the collection owner
AIRDROP_ELIGIBLE = frozenset({
    EditionStatus.UNLISTED,
    EditionStatus.LOCKED,
    EditionStatus.PUBLISHED,
})
PUBLISHABLE = frozenset({EditionStatus.UNLISTED, EditionStatus.LOCKED})


@dataclass
class CollectionResult:
    """Result of a collection operation."""
    success: bool
    collection: Optional[Collection] = None
    editions: List[Edition] = field(default_factory=list)
    message: str = ""
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class EditionResult:
    """Result of a single edition operation."""
    success: bool
    edition: Optional[Edition] = None
    message: str = ""
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class BatchResult:
    """Result of a multi-edition operation."""
    success: bool
    editions: List[Edition] = field(default_factory=list)
    message: str = ""
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class OpenBoxResult:
    """Result of a mystery box opening."""
    success: bool
    box: Optional[Edition] = None
    received: Optional[Edition] = None
    nft_id: Optional[str] = None
    message: str = ""
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class AirdropResult:
    """Per-recipient report of an airdrop."""
    success: bool
    delivered: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    message: str = ""
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def partial(self) -> bool:
        return bool(self.delivered) and bool(self.failed)


@dataclass
class ReservationResult:
    """Result of a ledger reservation or release."""
    success: bool
    token: Optional[ReservationToken] = None
    message: str = ""
    error: Optional[str] = None
    error_code: Optional[str] = None


class EditionService:
    """
    Orchestrates every edition operation.

    Validates callers and preconditions, reserves inventory through the
    InventoryLedger, picks mystery box items through the weighted
    allocator and commits ownership changes through the TransferRecorder.

    Expected business errors are returned in the result objects; storage
    faults propagate.
    """

    def __init__(
        self,
        store: AbstractStore = None,
        rng: random.Random = None,
        logger=None
    ):
        self.store = store or MemoryStore()
        self.rng = rng or default_rng()
        self.logger = logger or logging.getLogger('Editions.Service')
        self.ledger = InventoryLedger(self.store, rng=self.rng)
        self.recorder = TransferRecorder(self.store)

    def _reject(self, result_cls, operation: str, err: EditionError, **kwargs):
        self.logger.warning(f"{operation} rejected ({err.code}): {err}")
        return result_cls(
            success=False,
            error=str(err),
            error_code=err.code,
            **kwargs
        )

    async def _collection(self, collection_id: str) -> Collection:
        collection = await self.store.get_collection(collection_id)
        if collection is None:
            raise NotFound(f"Collection {collection_id} not found")
        return collection

    async def _edition(self, collection_id: str, sub_id: str) -> Edition:
        edition = await self.store.get_edition(collection_id, sub_id)
        if edition is None:
            raise NotFound(f"Edition {collection_id}#{sub_id} not found")
        return edition

    @staticmethod
    def _require_manager(caller: Caller, collection: Collection):
        if not caller.can_manage(collection.owner):
            raise Unauthorized(
                f"{caller.user_id} cannot manage collection {collection.collection_id}"
            )

    # =========================================================================
    # ENGINE PRIMITIVES
    # =========================================================================

    def can_transition(self, from_status: int, to_status: int, cascade: bool = False) -> bool:
        return _can_transition(from_status, to_status, cascade=cascade)

    def label_for(self, entity_kind: str, code: int) -> str:
        return _label_for(entity_kind, code)

    def select_weighted(self, candidates: Sequence[MysteryBoxItem]) -> MysteryBoxItem:
        return _select_weighted(candidates, self.rng)

    async def reserve_one(
        self,
        collection_id: str,
        kind: ReservationKind = ReservationKind.SALE
    ) -> ReservationResult:
        try:
            token = await self.ledger.reserve_one(collection_id, kind=kind)
            return ReservationResult(success=True, token=token)
        except EditionError as err:
            return self._reject(ReservationResult, 'reserve_one', err)

    async def release(self, token: ReservationToken) -> ReservationResult:
        released = await self.ledger.release(token)
        return ReservationResult(
            success=released,
            token=token,
            message="Released" if released else "Nothing to release"
        )

    async def sweep_reservations(self) -> int:
        return await self.ledger.sweep_expired()

    # =========================================================================
    # COLLECTIONS
    # =========================================================================

    async def create_collection(
        self,
        caller: Caller,
        request: CreateCollectionRequest
    ) -> CollectionResult:
        """
        Create a collection and mint all its editions to the creator.

        Mystery boxes reference existing NFT collections in their pool.
        """
        try:
            if caller.role not in (UserRole.ADMIN, UserRole.OWNER):
                raise Unauthorized("Only creators and admins can create collections")
            owner = request.owner if (caller.is_admin and request.owner) else caller.user_id
            try:
                box_items = [MysteryBoxItem(**item) for item in request.box_items]
            except (TypeError, ValueError) as err:
                raise InvalidRequest(f"Invalid box item: {err}") from err
            for item in box_items:
                target = await self.store.get_collection(item.nft_id)
                if target is None or target.kind != CollectionType.NFT:
                    raise InvalidRequest(
                        f"Box item {item.nft_id} is not an NFT collection"
                    )
            collection = Collection(
                collection_id=request.collection_id or uuid4().hex,
                collection_name=request.collection_name,
                description=request.description,
                kind=int(request.kind),
                owner=owner,
                price=request.price,
                total_quantity=request.total_quantity,
                open_limit=request.open_limit,
                last_sequence=request.total_quantity,
                box_items=box_items,
                blockchain_id=request.blockchain_id,
                shop_id=request.shop_id
            )
            editions = [
                Edition(
                    collection_id=collection.collection_id,
                    sub_id=format_sub_id(seq),
                    owner=owner,
                    status=int(EditionStatus.UNLISTED),
                    blockchain_id=request.blockchain_id,
                    shop_id=request.shop_id
                )
                for seq in range(1, request.total_quantity + 1)
            ]
            await self.store.create_collection(collection, editions)
            self.logger.info(
                f"Collection {collection.collection_id} created by {caller.user_id}"
            )
            return CollectionResult(
                success=True,
                collection=collection,
                editions=editions,
                message=f"Collection created with {len(editions)} editions"
            )
        except EditionError as err:
            return self._reject(CollectionResult, 'create_collection', err)

    async def set_collection_status(
        self,
        caller: Caller,
        request: CollectionStatusRequest
    ) -> CollectionResult:
        """Change a collection status; owner-held editions follow it."""
        try:
            collection = await self._collection(request.collection_id)
            self._require_manager(caller, collection)
            collection, changed = await self.recorder.apply_collection_status(
                request.collection_id,
                request.status
            )
            return CollectionResult(
                success=True,
                collection=collection,
                editions=changed,
                message=f"Collection is now {collection.status_str}"
            )
        except EditionError as err:
            return self._reject(CollectionResult, 'set_collection_status', err)

    # =========================================================================
    # SALES
    # =========================================================================

    async def publish(self, caller: Caller, request: PublishRequest) -> BatchResult:
        """Put owner-held editions on sale."""
        try:
            collection = await self._collection(request.collection_id)
            self._require_manager(caller, collection)
            if request.sub_ids is None:
                sub_ids = [
                    e.sub_id for e in await self.store.list_editions(
                        request.collection_id,
                        statuses=PUBLISHABLE,
                        owner=collection.owner
                    )
                ]
            else:
                sub_ids = list(request.sub_ids)
            if not sub_ids:
                raise InvalidRequest("No editions eligible for publishing")
            editions = await self.recorder.change_status(
                request.collection_id,
                sub_ids,
                EditionStatus.PUBLISHED,
                price=request.price,
                expected_owner=collection.owner
            )
            return BatchResult(
                success=True,
                editions=editions,
                message=f"{len(editions)} editions published"
            )
        except EditionError as err:
            return self._reject(BatchResult, 'publish', err)

    async def consign(self, caller: Caller, request: ConsignRequest) -> EditionResult:
        """List a held edition for resale."""
        try:
            edition = await self._edition(request.collection_id, request.sub_id)
            if edition.owner != caller.user_id:
                raise Unauthorized("Only the holder can consign an edition")
            editions = await self.recorder.change_status(
                request.collection_id,
                [request.sub_id],
                EditionStatus.CONSIGNED,
                price=request.price,
                expected_owner=caller.user_id
            )
            return EditionResult(
                success=True,
                edition=editions[0],
                message="Edition consigned"
            )
        except EditionError as err:
            return self._reject(EditionResult, 'consign', err)

    async def purchase(self, caller: Caller, request: PurchaseRequest) -> EditionResult:
        """
        Buy a consigned or published edition.

        Primary sales (the seller is the collection owner) consume one
        unit of the ledger; consignment resales only move the edition.
        """
        try:
            edition = await self._edition(request.collection_id, request.sub_id)
            if edition.status not in LISTED:
                raise InvalidTransition(
                    f"Edition {edition.collection_id}#{edition.sub_id} is not for sale"
                )
            if edition.owner == caller.user_id:
                raise SelfTransactionError("Cannot purchase your own edition")
            if edition.opened:
                raise AlreadyOpened(
                    f"Mystery box {edition.collection_id}#{edition.sub_id} was already opened"
                )
            collection = await self._collection(request.collection_id)
            price = edition.price if edition.price is not None else collection.price
            transfer_args = dict(
                collection_id=request.collection_id,
                sub_id=request.sub_id,
                from_owner=edition.owner,
                to_owner=caller.user_id,
                price=price,
                new_status=EditionStatus.SOLD,
                from_statuses=LISTED
            )
            if edition.owner == collection.owner:
                token = await self.ledger.reserve_one(request.collection_id)
                try:
                    # the sale is counted in the same transaction as the move
                    sold = await self.recorder.transfer(
                        tx_type=TransactionType.PURCHASE,
                        settle=partial(self.ledger.settle, token=token),
                        **transfer_args
                    )
                except BaseException:
                    await self.ledger.release(token)
                    raise
            else:
                sold = await self.recorder.transfer(
                    tx_type=TransactionType.CONSIGNMENT_PURCHASE,
                    **transfer_args
                )
            return EditionResult(
                success=True,
                edition=sold,
                message=f"Purchased for {price}"
            )
        except EditionError as err:
            return self._reject(EditionResult, 'purchase', err)

    # =========================================================================
    # MYSTERY BOX
    # =========================================================================

    async def open_box(self, caller: Caller, request: OpenBoxRequest) -> OpenBoxResult:
        """
        Open a mystery box instance held by the caller.

        The pool item is drawn by the ledger reservation, which is settled
        in the same transaction that claims the box instance. A new edition
        of the drawn NFT is then minted to the opener; when that fails the
        claim is undone and the unit goes back to the pool.
        """
        try:
            box = await self._edition(request.collection_id, request.sub_id)
            if box.owner != caller.user_id:
                raise Unauthorized("Only the holder can open this mystery box")
            if box.opened:
                raise AlreadyOpened(
                    f"Mystery box {box.collection_id}#{box.sub_id} was already opened"
                )
            if box.status in LISTED:
                raise InvalidTransition(
                    f"Mystery box {box.collection_id}#{box.sub_id} is listed for sale"
                )
            collection = await self._collection(request.collection_id)
            token = await self.ledger.reserve_one(
                request.collection_id,
                kind=ReservationKind.OPEN
            )
            try:
                box = await self.recorder.claim_box(
                    request.collection_id,
                    request.sub_id,
                    caller.user_id,
                    settle=partial(self.ledger.settle, token=token)
                )
            except BaseException:
                await self.ledger.release(token)
                raise
            try:
                minted = await self.recorder.mint(
                    token.nft_id,
                    owner=caller.user_id,
                    status=EditionStatus.UNLISTED,
                    extend_supply=True,
                    tx_type=TransactionType.BOX_OPEN,
                    from_owner=collection.owner
                )
            except BaseException:
                await self.recorder.unclaim_box(
                    request.collection_id,
                    request.sub_id,
                    settle=partial(self.ledger.refund, token=token)
                )
                raise
            received = minted[0]
            box = await self.recorder.record_box_outcome(
                request.collection_id,
                request.sub_id,
                token.nft_id,
                received.sub_id
            )
            self.logger.info(
                f"Mystery box {request.collection_id}#{request.sub_id} opened by "
                f"{caller.user_id}: {token.nft_id}#{received.sub_id}"
            )
            return OpenBoxResult(
                success=True,
                box=box,
                received=received,
                nft_id=token.nft_id,
                message="Mystery box opened"
            )
        except EditionError as err:
            return self._reject(OpenBoxResult, 'open_box', err)

    # =========================================================================
    # DISTRIBUTION
    # =========================================================================

    async def airdrop(self, caller: Caller, request: AirdropRequest) -> AirdropResult:
        """
        Deliver owner-held editions 1:1 to the recipients, in order.

        Nothing moves when fewer editions than recipients are eligible.
        Once started, failed deliveries are reported, not rolled back.
        """
        try:
            collection = await self._collection(request.collection_id)
            self._require_manager(caller, collection)
            if request.sub_ids is not None:
                if len(set(request.sub_ids)) != len(request.sub_ids):
                    raise InvalidRequest("Airdrop sub_ids must not repeat an edition")
                editions = [
                    await self._edition(request.collection_id, sub_id)
                    for sub_id in request.sub_ids
                ]
                eligible = [
                    e for e in editions
                    if e.owner == collection.owner and e.status in AIRDROP_ELIGIBLE
                ]
                if len(eligible) < len(editions):
                    raise OutOfStock(
                        f"{len(editions) - len(eligible)} of the requested "
                        "editions cannot be airdropped"
                    )
            else:
                eligible = await self.store.list_editions(
                    request.collection_id,
                    statuses=AIRDROP_ELIGIBLE,
                    owner=collection.owner
                )
            if len(eligible) < len(request.recipients):
                raise OutOfStock(
                    f"Only {len(eligible)} editions available for "
                    f"{len(request.recipients)} recipients"
                )
        except EditionError as err:
            return self._reject(AirdropResult, 'airdrop', err)

        result = AirdropResult(success=True)
        for edition, recipient in zip(eligible, request.recipients):
            try:
                await self.recorder.transfer(
                    request.collection_id,
                    edition.sub_id,
                    from_owner=collection.owner,
                    to_owner=recipient,
                    price=Decimal('0'),
                    new_status=EditionStatus.AIRDROPPED,
                    tx_type=TransactionType.AIRDROP,
                    allow_self=True
                )
                result.delivered.append(
                    {'recipient': recipient, 'sub_id': edition.sub_id}
                )
            except EditionError as err:
                self.logger.warning(
                    f"Airdrop of {request.collection_id}#{edition.sub_id} "
                    f"to {recipient} failed: {err}"
                )
                result.failed.append({
                    'recipient': recipient,
                    'sub_id': edition.sub_id,
                    'error': str(err),
                    'error_code': err.code
                })
        result.success = not result.failed
        result.message = (
            f"{len(result.delivered)} delivered, {len(result.failed)} failed"
        )
        if result.failed:
            result.error = "Airdrop partially failed"
            result.error_code = 'partial_airdrop'
        return result

    async def synthesize(
        self,
        caller: Caller,
        request: SynthesizeRequest
    ) -> BatchResult:
        """Mint extra synthesized editions of an NFT collection (admin)."""
        try:
            if not caller.is_admin:
                raise Unauthorized("Admin privileges required")
            collection = await self._collection(request.collection_id)
            if collection.kind != CollectionType.NFT:
                raise InvalidRequest("Only NFT collections can be synthesized")
            minted = await self.recorder.synthesize(
                request.collection_id,
                request.quantity,
                blockchain_id=request.blockchain_id
            )
            return BatchResult(
                success=True,
                editions=minted,
                message=f"{len(minted)} editions synthesized"
            )
        except EditionError as err:
            return self._reject(BatchResult, 'synthesize', err)

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    async def transfer(self, caller: Caller, request: TransferRequest) -> EditionResult:
        """Move an edition to another holder (owner/admin)."""
        try:
            collection = await self._collection(request.collection_id)
            self._require_manager(caller, collection)
            edition = await self._edition(request.collection_id, request.sub_id)
            moved = await self.recorder.transfer(
                request.collection_id,
                request.sub_id,
                from_owner=edition.owner,
                to_owner=request.to_owner,
                price=Decimal('0'),
                new_status=request.status,
                tx_type=TransactionType.TRANSFER
            )
            return EditionResult(success=True, edition=moved, message="Edition transferred")
        except EditionError as err:
            return self._reject(EditionResult, 'transfer', err)

    async def set_edition_status(
        self,
        caller: Caller,
        request: EditionStatusRequest
    ) -> BatchResult:
        try:
            collection = await self._collection(request.collection_id)
            self._require_manager(caller, collection)
            editions = await self.recorder.change_status(
                request.collection_id,
                request.sub_ids,
                request.status,
                price=request.price
            )
            return BatchResult(
                success=True,
                editions=editions,
                message=f"{len(editions)} editions updated"
            )
        except EditionError as err:
            return self._reject(BatchResult, 'set_edition_status', err)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_collection(self, collection_id: str) -> Optional[Collection]:
        return await self.store.get_collection(collection_id)

    async def get_edition(self, collection_id: str, sub_id: str) -> Optional[Edition]:
        return await self.store.get_edition(collection_id, sub_id)

    async def list_editions(
        self,
        collection_id: str,
        statuses: Optional[Sequence[int]] = None
    ) -> List[Edition]:
        return await self.store.list_editions(collection_id, statuses=statuses)

    async def list_owned(
        self,
        caller: Caller,
        collection_id: Optional[str] = None,
        kind: Optional[int] = None
    ) -> List[Edition]:
        """Editions held by the caller, in one collection or across all."""
        if collection_id is not None:
            return await self.store.list_editions(collection_id, owner=caller.user_id)
        return await self.store.owned_editions(caller.user_id, kind=kind)

    async def _trades(self, caller: Caller, side: str) -> List[Dict[str, Any]]:
        trades = []
        for edition in await self.store.traded_editions(caller.user_id):
            for entry in edition.transaction_history:
                if entry.tx_type not in SALE_TYPES:
                    continue
                if getattr(entry, side) != caller.user_id:
                    continue
                trades.append({
                    'collection_id': edition.collection_id,
                    'sub_id': edition.sub_id,
                    **entry.as_dict()
                })
        trades.sort(key=lambda t: t['timestamp'], reverse=True)
        return trades

    async def list_purchases(self, caller: Caller) -> List[Dict[str, Any]]:
        """Purchases made by the caller, newest first."""
        return await self._trades(caller, 'to_owner')

    async def list_sales(self, caller: Caller) -> List[Dict[str, Any]]:
        """Sales made by the caller, newest first."""
        return await self._trades(caller, 'from_owner')


def get_service(app) -> EditionService:
    """Service bound to the aiohttp application, created on first use."""
    service = app.get('edition_service')
    if service is None:
        service = EditionService(store=PgStore(connection=app.get('database')))
        app['edition_service'] = service
    return service
