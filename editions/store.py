"""
Edition Storage.

Collections and their editions are only written inside
``store.transaction(collection_id)``: a single-writer unit of work on one
collection. Changes staged on the unit of work are applied when the block
exits cleanly and discarded when it raises.
"""
import copy
import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Optional, List, Dict, Iterable, AsyncIterator

from navconfig.logging import logging

from .exceptions import NotFound, InvalidRequest
from .models import Collection, Edition


class UnitOfWork(ABC):
    """Locked view over one collection and its editions."""

    collection: Collection

    @abstractmethod
    async def edition(self, sub_id: str) -> Optional[Edition]:
        """Edition of the locked collection, None when missing."""

    @abstractmethod
    async def editions(
        self,
        statuses: Optional[Iterable[int]] = None,
        owner: Optional[str] = None
    ) -> List[Edition]:
        """Editions of the locked collection ordered by sequence."""

    @abstractmethod
    async def save_collection(self) -> None:
        """Stage the (mutated) collection document."""

    @abstractmethod
    async def save_edition(self, edition: Edition) -> None:
        """Stage a mutated edition."""

    @abstractmethod
    async def add_edition(self, edition: Edition) -> None:
        """Stage a newly minted edition."""


class AbstractStore(ABC):
    """Persistence port used by the ledger, the recorder and the service."""

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger('Editions.Store')

    @abstractmethod
    def transaction(self, collection_id: str) -> AsyncIterator[UnitOfWork]:
        """Async context manager yielding a UnitOfWork.

        Raises NotFound when the collection does not exist.
        """

    @abstractmethod
    async def create_collection(
        self,
        collection: Collection,
        editions: List[Edition]
    ) -> Collection:
        pass

    @abstractmethod
    async def get_collection(self, collection_id: str) -> Optional[Collection]:
        pass

    @abstractmethod
    async def get_edition(
        self,
        collection_id: str,
        sub_id: str
    ) -> Optional[Edition]:
        pass

    @abstractmethod
    async def list_editions(
        self,
        collection_id: str,
        statuses: Optional[Iterable[int]] = None,
        owner: Optional[str] = None
    ) -> List[Edition]:
        pass

    @abstractmethod
    async def pending_collections(self) -> List[str]:
        """Collections holding at least one reservation record."""

    @abstractmethod
    async def owned_editions(
        self,
        owner: str,
        kind: Optional[int] = None
    ) -> List[Edition]:
        """Editions held by ``owner`` across collections, optionally of
        one collection kind."""

    @abstractmethod
    async def traded_editions(self, user_id: str) -> List[Edition]:
        """Editions whose history names ``user_id`` as sender or receiver."""


def _matches(
    edition: Edition,
    statuses: Optional[Iterable[int]],
    owner: Optional[str]
) -> bool:
    if statuses is not None and edition.status not in statuses:
        return False
    if owner is not None and edition.owner != owner:
        return False
    return True


class MemoryUnitOfWork(UnitOfWork):
    """Works on private copies; ``apply`` publishes them without awaiting."""

    def __init__(self, store: "MemoryStore", collection_id: str):
        self._store = store
        self.collection_id = collection_id
        self.collection = copy.deepcopy(store._collections[collection_id])
        self._loaded: Dict[str, Edition] = {}
        self._staged: Dict[str, Edition] = {}
        self._collection_dirty = False

    def _stored(self) -> Dict[str, Edition]:
        return self._store._editions[self.collection_id]

    async def edition(self, sub_id: str) -> Optional[Edition]:
        if sub_id in self._staged:
            return self._staged[sub_id]
        if sub_id not in self._loaded:
            stored = self._stored().get(sub_id)
            if stored is None:
                return None
            self._loaded[sub_id] = copy.deepcopy(stored)
        return self._loaded[sub_id]

    async def editions(
        self,
        statuses: Optional[Iterable[int]] = None,
        owner: Optional[str] = None
    ) -> List[Edition]:
        if statuses is not None:
            statuses = set(statuses)
        sub_ids = set(self._stored()) | set(self._staged)
        result = []
        for sub_id in sorted(sub_ids, key=int):
            edition = await self.edition(sub_id)
            if _matches(edition, statuses, owner):
                result.append(edition)
        return result

    async def save_collection(self) -> None:
        self._collection_dirty = True

    async def save_edition(self, edition: Edition) -> None:
        if edition.collection_id != self.collection_id:
            raise ValueError(
                f"Edition belongs to {edition.collection_id}, "
                f"not to {self.collection_id}"
            )
        self._staged[edition.sub_id] = edition

    async def add_edition(self, edition: Edition) -> None:
        if edition.sub_id in self._stored() or edition.sub_id in self._staged:
            raise ValueError(
                f"Edition {self.collection_id}#{edition.sub_id} already exists"
            )
        await self.save_edition(edition)

    def apply(self) -> None:
        if self._collection_dirty:
            self._store._collections[self.collection_id] = self.collection
        self._stored().update(self._staged)


class MemoryStore(AbstractStore):
    """In-process store, one asyncio.Lock per collection."""

    def __init__(self, logger=None):
        super().__init__(logger=logger)
        self._collections: Dict[str, Collection] = {}
        self._editions: Dict[str, Dict[str, Edition]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, collection_id: str) -> asyncio.Lock:
        if collection_id not in self._locks:
            self._locks[collection_id] = asyncio.Lock()
        return self._locks[collection_id]

    @asynccontextmanager
    async def transaction(self, collection_id: str):
        async with self._lock(collection_id):
            if collection_id not in self._collections:
                raise NotFound(f"Collection {collection_id} not found")
            uow = MemoryUnitOfWork(self, collection_id)
            yield uow
            uow.apply()

    async def create_collection(
        self,
        collection: Collection,
        editions: List[Edition]
    ) -> Collection:
        async with self._lock(collection.collection_id):
            if collection.collection_id in self._collections:
                raise InvalidRequest(
                    f"Collection {collection.collection_id} already exists"
                )
            self._collections[collection.collection_id] = copy.deepcopy(collection)
            self._editions[collection.collection_id] = {
                e.sub_id: copy.deepcopy(e) for e in editions
            }
        self.logger.debug(
            f"Collection {collection.collection_id} stored with {len(editions)} editions"
        )
        return collection

    async def get_collection(self, collection_id: str) -> Optional[Collection]:
        collection = self._collections.get(collection_id)
        return copy.deepcopy(collection) if collection else None

    async def get_edition(
        self,
        collection_id: str,
        sub_id: str
    ) -> Optional[Edition]:
        edition = self._editions.get(collection_id, {}).get(sub_id)
        return copy.deepcopy(edition) if edition else None

    async def list_editions(
        self,
        collection_id: str,
        statuses: Optional[Iterable[int]] = None,
        owner: Optional[str] = None
    ) -> List[Edition]:
        if statuses is not None:
            statuses = set(statuses)
        editions = self._editions.get(collection_id, {})
        return [
            copy.deepcopy(editions[sub_id])
            for sub_id in sorted(editions, key=int)
            if _matches(editions[sub_id], statuses, owner)
        ]

    async def pending_collections(self) -> List[str]:
        return [
            cid for cid, collection in self._collections.items()
            if collection.reservations
        ]

    async def owned_editions(
        self,
        owner: str,
        kind: Optional[int] = None
    ) -> List[Edition]:
        result = []
        for collection_id in sorted(self._editions):
            if kind is not None and self._collections[collection_id].kind != kind:
                continue
            result.extend(await self.list_editions(collection_id, owner=owner))
        return result

    async def traded_editions(self, user_id: str) -> List[Edition]:
        result = []
        for collection_id in sorted(self._editions):
            for edition in await self.list_editions(collection_id):
                if any(
                    user_id in (entry.from_owner, entry.to_owner)
                    for entry in edition.transaction_history
                ):
                    result.append(edition)
        return result
