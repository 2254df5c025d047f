import asyncio
import random
import pytest
from datetime import datetime, timedelta

from editions.exceptions import (
    OutOfStock,
    NotPublished,
    OpenLimitReached,
    ExhaustedPoolError,
    ReservationExpired,
    NotFound,
)
from editions.ledger import InventoryLedger, PENDING, EXPIRED
from editions.models import (
    Collection,
    MysteryBoxItem,
    CollectionStatus,
    CollectionType,
    ReservationKind,
)


async def stored_collection(store, collection_id='c-1', total=10, status=CollectionStatus.PUBLISHED, **kwargs):
    collection = Collection(
        collection_id=collection_id,
        collection_name="Test",
        owner='creator-1',
        status=status,
        total_quantity=total,
        **kwargs
    )
    await store.create_collection(collection, [])
    return collection


async def stored_box(store, items, total=10, open_limit=0):
    return await stored_collection(
        store,
        collection_id='box-1',
        total=total,
        kind=CollectionType.MYSTERY_BOX,
        open_limit=open_limit,
        box_items=[MysteryBoxItem(**item) for item in items]
    )


@pytest.fixture
def ledger(store):
    return InventoryLedger(store, rng=random.Random(5), timeout=60)


@pytest.mark.asyncio
async def test_reserve_sale_increments_sold(store, ledger):
    await stored_collection(store)
    token = await ledger.reserve_one('c-1')

    collection = await store.get_collection('c-1')
    assert collection.sold_quantity == 1
    assert token.kind == ReservationKind.SALE
    assert collection.reservations[0]['token_id'] == token.token_id
    assert collection.reservations[0]['state'] == PENDING


@pytest.mark.asyncio
async def test_reserve_requires_collection_on_sale(store, ledger):
    await stored_collection(store, status=CollectionStatus.DRAFT)
    with pytest.raises(NotPublished):
        await ledger.reserve_one('c-1')
    assert (await store.get_collection('c-1')).sold_quantity == 0


@pytest.mark.asyncio
async def test_reserve_unknown_collection(ledger):
    with pytest.raises(NotFound):
        await ledger.reserve_one('missing')


@pytest.mark.asyncio
async def test_concurrent_reservations_never_oversell(store, ledger):
    await stored_collection(store, total=10)

    results = await asyncio.gather(
        *[ledger.reserve_one('c-1') for _ in range(50)],
        return_exceptions=True
    )

    tokens = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, OutOfStock)]
    assert len(tokens) == 10
    assert len(rejected) == 40
    assert len({t.token_id for t in tokens}) == 10
    assert (await store.get_collection('c-1')).sold_quantity == 10


@pytest.mark.asyncio
async def test_release_restores_and_is_idempotent(store, ledger):
    await stored_collection(store)
    token = await ledger.reserve_one('c-1')

    assert await ledger.release(token) is True
    assert await ledger.release(token) is False

    collection = await store.get_collection('c-1')
    assert collection.sold_quantity == 0
    assert collection.reservations == []


@pytest.mark.asyncio
async def test_commit_keeps_counter(store, ledger):
    await stored_collection(store)
    token = await ledger.reserve_one('c-1')
    await ledger.commit(token)
    # a late release after commit is a no-op
    assert await ledger.release(token) is False

    collection = await store.get_collection('c-1')
    assert collection.sold_quantity == 1
    assert collection.reservations == []


@pytest.mark.asyncio
async def test_reservation_scope_releases_on_failure(store, ledger):
    await stored_collection(store)

    with pytest.raises(RuntimeError):
        async with ledger.reservation('c-1'):
            assert (await store.get_collection('c-1')).sold_quantity == 1
            raise RuntimeError("downstream failure")

    collection = await store.get_collection('c-1')
    assert collection.sold_quantity == 0
    assert collection.reservations == []


@pytest.mark.asyncio
async def test_reservation_scope_releases_on_cancel(store, ledger):
    await stored_collection(store)
    entered = asyncio.Event()

    async def slow_purchase():
        async with ledger.reservation('c-1'):
            entered.set()
            await asyncio.sleep(10)

    task = asyncio.create_task(slow_purchase())
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert (await store.get_collection('c-1')).sold_quantity == 0


@pytest.mark.asyncio
async def test_open_uses_selector_inside_lock(store, ledger):
    await stored_box(store, [
        {'nft_id': 'nft-a', 'weight': 1, 'quantity': 2},
        {'nft_id': 'nft-b', 'weight': 1, 'quantity': 2},
    ])
    seen = []

    def pick_last(items):
        seen.append([i.remaining_quantity for i in items])
        return len(items) - 1

    token = await ledger.reserve_one('box-1', pick_last, kind=ReservationKind.OPEN)

    assert token.item_index == 1
    assert token.nft_id == 'nft-b'
    assert seen == [[2, 2]]
    box = await store.get_collection('box-1')
    assert box.opened_count == 1
    assert [i.remaining_quantity for i in box.box_items] == [2, 1]


@pytest.mark.asyncio
async def test_open_limit(store, ledger):
    await stored_box(store, [{'nft_id': 'nft-a', 'weight': 1, 'quantity': 10}], open_limit=2)
    await ledger.reserve_one('box-1', kind=ReservationKind.OPEN)
    await ledger.reserve_one('box-1', kind=ReservationKind.OPEN)
    with pytest.raises(OpenLimitReached):
        await ledger.reserve_one('box-1', kind=ReservationKind.OPEN)
    assert (await store.get_collection('box-1')).opened_count == 2


@pytest.mark.asyncio
async def test_open_exhausted_pool(store, ledger):
    await stored_box(store, [{'nft_id': 'nft-a', 'weight': 1, 'quantity': 1}])
    await ledger.reserve_one('box-1', kind=ReservationKind.OPEN)
    with pytest.raises(ExhaustedPoolError):
        await ledger.reserve_one('box-1', kind=ReservationKind.OPEN)


@pytest.mark.asyncio
async def test_release_open_restores_item(store, ledger):
    await stored_box(store, [{'nft_id': 'nft-a', 'weight': 1, 'quantity': 1}])
    token = await ledger.reserve_one('box-1', kind=ReservationKind.OPEN)
    await ledger.release(token)

    box = await store.get_collection('box-1')
    assert box.opened_count == 0
    assert box.box_items[0].remaining_quantity == 1


@pytest.mark.asyncio
async def test_sweep_returns_expired_units(store, ledger):
    await stored_collection(store, total=1)
    token = await ledger.reserve_one('c-1')

    assert await ledger.sweep_expired() == 0
    released = await ledger.sweep_expired(now=datetime.now() + timedelta(seconds=61))

    assert released == 1
    collection = await store.get_collection('c-1')
    assert collection.sold_quantity == 0
    assert collection.reservations[0]['state'] == EXPIRED

    # the unit is still free, so a late commit claims it again
    await ledger.commit(token)
    collection = await store.get_collection('c-1')
    assert collection.sold_quantity == 1
    assert collection.reservations == []


@pytest.mark.asyncio
async def test_late_commit_after_unit_was_resold(store, ledger):
    await stored_collection(store, total=1)
    token = await ledger.reserve_one('c-1')
    await ledger.sweep_expired(now=datetime.now() + timedelta(seconds=61))
    other = await ledger.reserve_one('c-1')
    await ledger.commit(other)

    with pytest.raises(ReservationExpired):
        await ledger.commit(token)
    assert (await store.get_collection('c-1')).sold_quantity == 1


@pytest.mark.asyncio
async def test_sweep_prunes_old_tombstones(store, ledger):
    await stored_collection(store)
    await ledger.reserve_one('c-1')
    later = datetime.now() + timedelta(seconds=61)
    await ledger.sweep_expired(now=later)
    await ledger.sweep_expired(now=later + timedelta(seconds=61))

    assert (await store.get_collection('c-1')).reservations == []


@pytest.mark.asyncio
async def test_commit_after_record_was_pruned(store, ledger):
    await stored_collection(store, total=1)
    token = await ledger.reserve_one('c-1')
    later = datetime.now() + timedelta(seconds=200)
    await ledger.sweep_expired(now=later)
    # second pass drops the tombstone
    await ledger.sweep_expired(now=later)
    assert (await store.get_collection('c-1')).reservations == []

    other = await ledger.reserve_one('c-1')
    await ledger.commit(other)

    with pytest.raises(ReservationExpired):
        await ledger.commit(token)
    collection = await store.get_collection('c-1')
    assert collection.sold_quantity == 1
    assert collection.sold_quantity <= collection.total_quantity


@pytest.mark.asyncio
async def test_commit_twice_is_rejected(store, ledger):
    await stored_collection(store)
    token = await ledger.reserve_one('c-1')
    await ledger.commit(token)

    with pytest.raises(ReservationExpired):
        await ledger.commit(token)
    assert (await store.get_collection('c-1')).sold_quantity == 1


@pytest.mark.asyncio
async def test_settle_inside_callers_transaction(store, ledger):
    await stored_collection(store)
    token = await ledger.reserve_one('c-1')

    async with store.transaction('c-1') as uow:
        ledger.settle(uow.collection, token)
        await uow.save_collection()

    collection = await store.get_collection('c-1')
    assert collection.sold_quantity == 1
    assert collection.reservations == []


@pytest.mark.asyncio
async def test_refund_returns_settled_box_unit(store, ledger):
    await stored_box(store, [{'nft_id': 'nft-a', 'weight': 1, 'quantity': 1}])
    token = await ledger.reserve_one('box-1', kind=ReservationKind.OPEN)
    await ledger.commit(token)

    async with store.transaction('box-1') as uow:
        ledger.refund(uow.collection, token)
        await uow.save_collection()

    box = await store.get_collection('box-1')
    assert box.opened_count == 0
    assert box.box_items[0].remaining_quantity == 1
