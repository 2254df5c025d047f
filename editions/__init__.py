"""
Edition Inventory & Allocation Engine.

Tracks the numbered editions of NFT and mystery box collections:
- Edition lifecycle (unlisted, consigned, published, locked, sold, airdropped, synthesized)
- Inventory ledger that never over-commits under concurrency
- Weighted allocation of mystery box items
- Append-only transaction history per edition

Quick Start:
    from editions import EditionService, Caller, setup_edition_routes

    # Setup routes
    setup_edition_routes(app)

    # Use the service
    service = EditionService(store=PgStore(connection=db))

    # Buy a published edition
    result = await service.purchase(
        Caller(user_id="u-123"),
        PurchaseRequest(collection_id="c-1", sub_id="001")
    )
"""
from .caller import Caller, UserRole
from .exceptions import (
    EditionError,
    OutOfStock,
    OpenLimitReached,
    AlreadyOpened,
    ExhaustedPoolError,
    InvalidTransition,
    OwnershipMismatch,
    SelfTransactionError,
    Unauthorized,
    NotFound,
    NotPublished,
    InvalidRequest,
    ReservationExpired,
)
from .models import (
    Collection,
    Edition,
    MysteryBoxItem,
    TransactionEntry,
    EditionStatus,
    CollectionStatus,
    CollectionType,
    TransactionType,
    ReservationKind,
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
)
from .status import label_for, can_transition
from .allocator import select_weighted
from .store import AbstractStore, MemoryStore
from .pgstore import PgStore
from .ledger import InventoryLedger, ReservationToken
from .recorder import TransferRecorder
from .service import (
    EditionService,
    CollectionResult,
    EditionResult,
    BatchResult,
    OpenBoxResult,
    AirdropResult,
    ReservationResult,
)


def setup_edition_routes(app, service=None):
    """Register the HTTP routes (imports the navigator stack lazily)."""
    from .handlers import setup_edition_routes as _setup
    return _setup(app, service=service)


__all__ = [
    # Identity
    'Caller',
    'UserRole',
    # Errors
    'EditionError',
    'OutOfStock',
    'OpenLimitReached',
    'AlreadyOpened',
    'ExhaustedPoolError',
    'InvalidTransition',
    'OwnershipMismatch',
    'SelfTransactionError',
    'Unauthorized',
    'NotFound',
    'NotPublished',
    'InvalidRequest',
    'ReservationExpired',
    # Models
    'Collection',
    'Edition',
    'MysteryBoxItem',
    'TransactionEntry',
    'EditionStatus',
    'CollectionStatus',
    'CollectionType',
    'TransactionType',
    'ReservationKind',
    # Requests
    'CreateCollectionRequest',
    'CollectionStatusRequest',
    'PublishRequest',
    'ConsignRequest',
    'PurchaseRequest',
    'OpenBoxRequest',
    'AirdropRequest',
    'SynthesizeRequest',
    'TransferRequest',
    'EditionStatusRequest',
    # Engine
    'label_for',
    'can_transition',
    'select_weighted',
    'AbstractStore',
    'MemoryStore',
    'PgStore',
    'InventoryLedger',
    'ReservationToken',
    'TransferRecorder',
    'EditionService',
    'CollectionResult',
    'EditionResult',
    'BatchResult',
    'OpenBoxResult',
    'AirdropResult',
    'ReservationResult',
    # Routes
    'setup_edition_routes',
]

__version__ = '1.0.0'
