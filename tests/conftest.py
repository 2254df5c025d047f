import os
import random
from pathlib import Path

# navconfig resolves env/.env relative to SITE_ROOT; point it at the repo
os.environ.setdefault('SITE_ROOT', str(Path(__file__).resolve().parent.parent))

import pytest

from editions.caller import Caller, UserRole
from editions.models import (
    Collection,
    Edition,
    MysteryBoxItem,
    CollectionStatus,
    CollectionType,
    CreateCollectionRequest,
    CollectionStatusRequest,
    format_sub_id,
)
from editions.service import EditionService
from editions.store import MemoryStore


@pytest.fixture
def admin():
    return Caller(user_id='admin-1', role=UserRole.ADMIN)


@pytest.fixture
def creator():
    return Caller(user_id='creator-1', role=UserRole.OWNER)


@pytest.fixture
def buyer():
    return Caller(user_id='buyer-1', role=UserRole.USER)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service(store):
    return EditionService(store=store, rng=random.Random(42))


@pytest.fixture
def make_nft(service, creator):
    """Create an NFT collection through the service, optionally on sale."""
    async def _make(collection_id='nft-1', quantity=5, price='10', on_sale=False):
        result = await service.create_collection(
            creator,
            CreateCollectionRequest(
                collection_id=collection_id,
                collection_name=f"Design {collection_id}",
                total_quantity=quantity,
                price=price
            )
        )
        assert result.success, result.error
        if on_sale:
            status = await service.set_collection_status(
                creator,
                CollectionStatusRequest(
                    collection_id=collection_id,
                    status=CollectionStatus.PUBLISHED
                )
            )
            assert status.success, status.error
        return await service.get_collection(collection_id)
    return _make


@pytest.fixture
def make_box(store):
    """Store a mystery box whose instances are already held by users."""
    async def _make(items, holders, collection_id='box-1', open_limit=0):
        collection = Collection(
            collection_id=collection_id,
            collection_name="Mystery Box",
            kind=CollectionType.MYSTERY_BOX,
            owner='creator-1',
            status=CollectionStatus.PUBLISHED,
            total_quantity=len(holders),
            open_limit=open_limit,
            last_sequence=len(holders),
            box_items=[MysteryBoxItem(**item) for item in items]
        )
        editions = [
            Edition(
                collection_id=collection_id,
                sub_id=format_sub_id(seq),
                owner=holder,
                status=4
            )
            for seq, holder in enumerate(holders, start=1)
        ]
        await store.create_collection(collection, editions)
        return collection
    return _make
