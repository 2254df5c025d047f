"""
Edition Engine Models.

This module defines the data models for:
- Collections (one NFT design or one mystery box design)
- Editions (individually numbered units of a collection)
- Mystery box item pools
- Transaction history entries
- Typed requests accepted by the EditionService
"""
from typing import Optional, List, Dict, Any
from enum import Enum, IntEnum
from datetime import datetime
from decimal import Decimal
from datamodel import BaseModel, Field

from .conf import EDITIONS_SUBID_WIDTH


# ============================================================================
# ENUMS
# ============================================================================

class EditionStatus(IntEnum):
    """Lifecycle status of a single edition."""
    UNLISTED = 1
    CONSIGNED = 2
    LOCKED = 3
    SOLD = 4
    PUBLISHED = 5
    AIRDROPPED = 6
    SYNTHESIZED = 7


class CollectionStatus(IntEnum):
    """Lifecycle status of a collection."""
    DRAFT = 1
    PUBLISHED = 2
    SOLD_OUT = 3
    DELISTED = 4
    FLASH_SALE = 5
    PRESALE = 6
    HOT = 7
    ALMOST_SOLD_OUT = 8


class CollectionType(IntEnum):
    """What a collection mints."""
    NFT = 1
    MYSTERY_BOX = 2


class TransactionType(str, Enum):
    """Tag stored on every transaction history entry."""
    MINT = "mint"
    PURCHASE = "purchase"
    CONSIGNMENT_PURCHASE = "consignment_purchase"
    TRANSFER = "transfer"
    AIRDROP = "airdrop"
    BOX_OPEN = "box_open"
    SYNTHESIZE = "synthesize"


class ReservationKind(str, Enum):
    """Which counter a ledger reservation consumes."""
    SALE = "sale"
    OPEN = "open"


def format_sub_id(sequence: int, width: int = None) -> str:
    """Zero-padded edition number: 1 -> '001'."""
    return str(sequence).zfill(width or EDITIONS_SUBID_WIDTH)


def as_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, Decimal):
        return value
    return Decimal(str(value))


# ============================================================================
# EMBEDDED DOCUMENTS
# ============================================================================

class MysteryBoxItem(BaseModel):
    """One weighted outcome of a mystery box pool."""

    nft_id: str = Field(
        required=True,
        label="Target NFT Collection"
    )
    weight: int = Field(
        required=True,
        label="Relative Weight"
    )
    quantity: int = Field(
        required=True,
        label="Configured Quantity"
    )
    remaining_quantity: int = Field(
        required=False,
        default=None,
        label="Remaining Quantity"
    )

    def __post_init__(self):
        if self.weight is None or self.weight < 1:
            raise ValueError("Box item weight must be >= 1")
        if self.quantity is None or self.quantity < 1:
            raise ValueError("Box item quantity must be >= 1")
        if self.remaining_quantity is None:
            self.remaining_quantity = self.quantity
        if not 0 <= self.remaining_quantity <= self.quantity:
            raise ValueError(
                "Box item remaining_quantity must be between 0 and quantity"
            )
        return super().__post_init__()

    def as_dict(self) -> Dict[str, Any]:
        return {
            'nft_id': self.nft_id,
            'weight': self.weight,
            'quantity': self.quantity,
            'remaining_quantity': self.remaining_quantity,
        }


class TransactionEntry(BaseModel):
    """Append-only history entry of an edition."""

    timestamp: datetime = Field(
        required=False,
        default=datetime.now
    )
    from_owner: Optional[str] = Field(
        required=False,
        label="Previous Owner"
    )
    to_owner: str = Field(
        required=True,
        label="New Owner"
    )
    price: Decimal = Field(
        required=False,
        default=Decimal('0')
    )
    tx_type: str = Field(
        required=False,
        default=TransactionType.TRANSFER.value
    )

    def as_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'from_owner': self.from_owner,
            'to_owner': self.to_owner,
            'price': str(self.price),
            'tx_type': self.tx_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionEntry":
        timestamp = data.get('timestamp')
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            timestamp=timestamp or datetime.now(),
            from_owner=data.get('from_owner'),
            to_owner=data['to_owner'],
            price=as_decimal(data.get('price', 0)),
            tx_type=data.get('tx_type', TransactionType.TRANSFER.value)
        )


# ============================================================================
# COLLECTION MODEL
# ============================================================================

class Collection(BaseModel):
    """A minted NFT or mystery box design with a fixed supply."""

    collection_id: str = Field(
        primary_key=True,
        required=True
    )
    collection_name: str = Field(
        required=True,
        max_length=255,
        label="Collection Name"
    )
    description: Optional[str] = Field(
        required=False,
        label="Description"
    )
    kind: int = Field(
        required=False,
        default=CollectionType.NFT,
        label="Collection Type"
    )
    owner: str = Field(
        required=True,
        label="Creator"
    )
    price: Decimal = Field(
        required=False,
        default=Decimal('0'),
        label="Base Price"
    )
    status: int = Field(
        required=False,
        default=CollectionStatus.DRAFT
    )
    total_quantity: int = Field(
        required=True,
        label="Total Quantity"
    )
    sold_quantity: int = Field(
        required=False,
        default=0
    )
    opened_count: int = Field(
        required=False,
        default=0
    )
    # 0 means unlimited
    open_limit: int = Field(
        required=False,
        default=0
    )
    last_sequence: int = Field(
        required=False,
        default=0
    )
    synthesized_count: int = Field(
        required=False,
        default=0
    )
    box_items: List[MysteryBoxItem] = Field(
        required=False,
        default_factory=list
    )
    reservations: List[dict] = Field(
        required=False,
        default_factory=list
    )
    blockchain_id: Optional[str] = Field(required=False)
    shop_id: Optional[str] = Field(required=False)
    created_at: datetime = Field(
        required=False,
        default=datetime.now,
        readonly=True
    )
    updated_at: datetime = Field(
        required=False,
        default=datetime.now
    )

    @property
    def is_mystery_box(self) -> bool:
        return self.kind == CollectionType.MYSTERY_BOX

    @property
    def status_str(self) -> str:
        from .status import label_for
        return label_for('collection', self.status)

    @property
    def open_cap(self) -> int:
        """Effective cap on box openings."""
        if self.open_limit and self.open_limit > 0:
            return min(self.open_limit, self.total_quantity)
        return self.total_quantity

    def as_dict(self) -> Dict[str, Any]:
        return {
            'collection_id': self.collection_id,
            'collection_name': self.collection_name,
            'description': self.description,
            'kind': int(self.kind),
            'owner': self.owner,
            'price': str(self.price),
            'status': int(self.status),
            'status_str': self.status_str,
            'total_quantity': self.total_quantity,
            'sold_quantity': self.sold_quantity,
            'opened_count': self.opened_count,
            'open_limit': self.open_limit,
            'synthesized_count': self.synthesized_count,
            'box_items': [item.as_dict() for item in self.box_items],
            'blockchain_id': self.blockchain_id,
            'shop_id': self.shop_id,
        }


# ============================================================================
# EDITION MODEL
# ============================================================================

class Edition(BaseModel):
    """One numbered, independently owned unit of a collection."""

    collection_id: str = Field(
        primary_key=True,
        required=True
    )
    sub_id: str = Field(
        primary_key=True,
        required=True,
        label="Edition Number"
    )
    owner: str = Field(
        required=True,
        label="Holder"
    )
    status: int = Field(
        required=False,
        default=EditionStatus.UNLISTED
    )
    # only set while consigned or published
    price: Optional[Decimal] = Field(required=False)
    blockchain_id: Optional[str] = Field(required=False)
    shop_id: Optional[str] = Field(required=False)
    opened: bool = Field(
        required=False,
        default=False
    )
    opened_at: Optional[datetime] = Field(required=False)
    nft_received: Optional[str] = Field(required=False)
    edition_received: Optional[str] = Field(required=False)
    transaction_history: List[TransactionEntry] = Field(
        required=False,
        default_factory=list
    )
    created_at: datetime = Field(
        required=False,
        default=datetime.now,
        readonly=True
    )

    @property
    def status_str(self) -> str:
        from .status import label_for
        return label_for('edition', self.status)

    @property
    def sequence(self) -> int:
        return int(self.sub_id)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'collection_id': self.collection_id,
            'sub_id': self.sub_id,
            'owner': self.owner,
            'status': int(self.status),
            'status_str': self.status_str,
            'price': str(self.price) if self.price is not None else None,
            'blockchain_id': self.blockchain_id,
            'shop_id': self.shop_id,
            'opened': self.opened,
            'opened_at': self.opened_at.isoformat() if self.opened_at else None,
            'nft_received': self.nft_received,
            'edition_received': self.edition_received,
            'transaction_history': [
                entry.as_dict() for entry in self.transaction_history
            ],
        }


# ============================================================================
# REQUESTS
# ============================================================================

class CreateCollectionRequest(BaseModel):
    """Create a collection and materialize its editions."""
    collection_name: str = Field(required=True)
    total_quantity: int = Field(required=True)
    kind: int = Field(required=False, default=CollectionType.NFT)
    description: Optional[str] = Field(required=False)
    price: Decimal = Field(required=False, default=Decimal('0'))
    open_limit: int = Field(required=False, default=0)
    box_items: List[dict] = Field(required=False, default_factory=list)
    # admins may create on behalf of another creator
    owner: Optional[str] = Field(required=False)
    collection_id: Optional[str] = Field(required=False)
    blockchain_id: Optional[str] = Field(required=False)
    shop_id: Optional[str] = Field(required=False)

    def __post_init__(self):
        valid_kinds = [k.value for k in CollectionType]
        if self.kind not in valid_kinds:
            raise ValueError(
                f"Invalid kind: {self.kind}. Must be one of: {valid_kinds}"
            )
        if self.total_quantity is None or self.total_quantity < 1:
            raise ValueError("total_quantity must be >= 1")
        if self.open_limit is None or self.open_limit < 0:
            raise ValueError("open_limit must be >= 0")
        self.price = as_decimal(self.price)
        if self.price < 0:
            raise ValueError("price cannot be negative")
        if self.kind == CollectionType.MYSTERY_BOX and not self.box_items:
            raise ValueError("A mystery box needs at least one box item")
        if self.kind == CollectionType.NFT and self.box_items:
            raise ValueError("Only mystery boxes carry box items")
        return super().__post_init__()


class CollectionStatusRequest(BaseModel):
    """Change the status of a collection (cascades to its editions)."""
    collection_id: str = Field(required=True)
    status: int = Field(required=True)

    def __post_init__(self):
        valid = [s.value for s in CollectionStatus]
        if self.status not in valid:
            raise ValueError(
                f"Invalid collection status: {self.status}. Must be one of: {valid}"
            )
        return super().__post_init__()


class PublishRequest(BaseModel):
    """Publish owner-held editions; all eligible ones when no sub_ids."""
    collection_id: str = Field(required=True)
    sub_ids: Optional[List[str]] = Field(required=False)
    price: Optional[Decimal] = Field(required=False)

    def __post_init__(self):
        self.price = as_decimal(self.price)
        if self.price is not None and self.price < 0:
            raise ValueError("price cannot be negative")
        return super().__post_init__()


class ConsignRequest(BaseModel):
    """List a held edition for resale."""
    collection_id: str = Field(required=True)
    sub_id: str = Field(required=True)
    price: Decimal = Field(required=True)

    def __post_init__(self):
        self.price = as_decimal(self.price)
        if self.price is None or self.price <= 0:
            raise ValueError("Consignment price must be greater than zero")
        return super().__post_init__()


class PurchaseRequest(BaseModel):
    """Buy a listed edition."""
    collection_id: str = Field(required=True)
    sub_id: str = Field(required=True)


class OpenBoxRequest(BaseModel):
    """Open a mystery box instance held by the caller."""
    collection_id: str = Field(required=True)
    sub_id: str = Field(required=True)


class AirdropRequest(BaseModel):
    """Deliver editions 1:1 to a list of recipients."""
    collection_id: str = Field(required=True)
    recipients: List[str] = Field(required=True)
    sub_ids: Optional[List[str]] = Field(required=False)

    def __post_init__(self):
        if not self.recipients:
            raise ValueError("Airdrop needs at least one recipient")
        if self.sub_ids is not None and len(self.sub_ids) != len(self.recipients):
            raise ValueError(
                "sub_ids and recipients must have the same length"
            )
        if self.sub_ids is not None and len(set(self.sub_ids)) != len(self.sub_ids):
            raise ValueError("sub_ids must not repeat an edition")
        return super().__post_init__()


class SynthesizeRequest(BaseModel):
    """Mint extra editions of an NFT collection."""
    collection_id: str = Field(required=True)
    quantity: int = Field(required=False, default=1)
    blockchain_id: Optional[str] = Field(required=False)

    def __post_init__(self):
        if self.quantity is None or self.quantity < 1:
            raise ValueError("quantity must be >= 1")
        return super().__post_init__()


class TransferRequest(BaseModel):
    """Administrative move of an edition to another holder."""
    collection_id: str = Field(required=True)
    sub_id: str = Field(required=True)
    to_owner: str = Field(required=True)
    # None keeps the current status
    status: Optional[int] = Field(required=False)

    def __post_init__(self):
        valid = [s.value for s in EditionStatus]
        if self.status is not None and self.status not in valid:
            raise ValueError(
                f"Invalid edition status: {self.status}. Must be one of: {valid}"
            )
        return super().__post_init__()


class EditionStatusRequest(BaseModel):
    """Change the status of one or more editions."""
    collection_id: str = Field(required=True)
    sub_ids: List[str] = Field(required=True)
    status: int = Field(required=True)
    price: Optional[Decimal] = Field(required=False)

    def __post_init__(self):
        valid = [s.value for s in EditionStatus]
        if self.status not in valid:
            raise ValueError(
                f"Invalid edition status: {self.status}. Must be one of: {valid}"
            )
        if not self.sub_ids:
            raise ValueError("sub_ids cannot be empty")
        self.price = as_decimal(self.price)
        return super().__post_init__()
