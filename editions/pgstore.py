"""
PostgreSQL store for the Edition Engine, built on asyncdb.

The collection row is the single writer: every unit of work opens a
transaction and locks it with ``SELECT ... FOR UPDATE`` before reading
editions or counters.
"""
import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable

from asyncdb import AsyncDB

from .conf import EDITIONS_SCHEMA
from .exceptions import NotFound, InvalidRequest
from .models import (
    Collection,
    Edition,
    MysteryBoxItem,
    TransactionEntry,
    as_decimal,
)
from .store import AbstractStore, UnitOfWork


def _json_list(value: Any) -> List[Any]:
    """jsonb columns come back as text unless a codec is registered."""
    if value is None:
        return []
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return list(value)


def row_to_collection(row: Dict[str, Any]) -> Collection:
    return Collection(
        collection_id=row['collection_id'],
        collection_name=row['collection_name'],
        description=row.get('description'),
        kind=row['kind'],
        owner=row['owner'],
        price=as_decimal(row.get('price') or 0),
        status=row['status'],
        total_quantity=row['total_quantity'],
        sold_quantity=row['sold_quantity'],
        opened_count=row['opened_count'],
        open_limit=row['open_limit'],
        last_sequence=row['last_sequence'],
        synthesized_count=row['synthesized_count'],
        box_items=[
            MysteryBoxItem(**item) for item in _json_list(row.get('box_items'))
        ],
        reservations=_json_list(row.get('reservations')),
        blockchain_id=row.get('blockchain_id'),
        shop_id=row.get('shop_id'),
        created_at=row.get('created_at') or datetime.now(),
        updated_at=row.get('updated_at') or datetime.now()
    )


def row_to_edition(row: Dict[str, Any]) -> Edition:
    return Edition(
        collection_id=row['collection_id'],
        sub_id=row['sub_id'],
        owner=row['owner'],
        status=row['status'],
        price=as_decimal(row.get('price')),
        blockchain_id=row.get('blockchain_id'),
        shop_id=row.get('shop_id'),
        opened=bool(row.get('opened')),
        opened_at=row.get('opened_at'),
        nft_received=row.get('nft_received'),
        edition_received=row.get('edition_received'),
        transaction_history=[
            TransactionEntry.from_dict(entry)
            for entry in _json_list(row.get('transaction_history'))
        ],
        created_at=row.get('created_at') or datetime.now()
    )


def _history_json(edition: Edition) -> str:
    return json.dumps([e.as_dict() for e in edition.transaction_history])


class PgUnitOfWork(UnitOfWork):
    """Unit of work bound to an open asyncdb transaction."""

    def __init__(self, conn, schema: str, collection: Collection):
        self._conn = conn
        self._schema = schema
        self.collection = collection
        self._loaded: Dict[str, Edition] = {}

    async def edition(self, sub_id: str) -> Optional[Edition]:
        if sub_id in self._loaded:
            return self._loaded[sub_id]
        row = await self._conn.fetchrow(
            f"""
            SELECT * FROM {self._schema}.editions
            WHERE collection_id = $1 AND sub_id = $2
            FOR UPDATE
            """,
            [self.collection.collection_id, sub_id]
        )
        if not row:
            return None
        edition = row_to_edition(dict(row))
        self._loaded[sub_id] = edition
        return edition

    async def editions(
        self,
        statuses: Optional[Iterable[int]] = None,
        owner: Optional[str] = None
    ) -> List[Edition]:
        conditions = ["collection_id = $1"]
        params: List[Any] = [self.collection.collection_id]
        if statuses is not None:
            params.append([int(s) for s in statuses])
            conditions.append(f"status = ANY(${len(params)})")
        if owner is not None:
            params.append(owner)
            conditions.append(f"owner = ${len(params)}")
        rows = await self._conn.fetch_all(
            f"""
            SELECT * FROM {self._schema}.editions
            WHERE {' AND '.join(conditions)}
            ORDER BY sub_id::int
            FOR UPDATE
            """,
            params
        )
        result = []
        for row in rows or []:
            row = dict(row)
            # keep identity with editions already handed out
            if row['sub_id'] not in self._loaded:
                self._loaded[row['sub_id']] = row_to_edition(row)
            result.append(self._loaded[row['sub_id']])
        return result

    async def save_collection(self) -> None:
        c = self.collection
        c.updated_at = datetime.now()
        await self._conn.execute(
            f"""
            UPDATE {self._schema}.collections SET
                status = $2,
                sold_quantity = $3,
                opened_count = $4,
                last_sequence = $5,
                synthesized_count = $6,
                box_items = $7::jsonb,
                reservations = $8::jsonb,
                price = $9,
                updated_at = $10
            WHERE collection_id = $1
            """,
            [
                c.collection_id,
                int(c.status),
                c.sold_quantity,
                c.opened_count,
                c.last_sequence,
                c.synthesized_count,
                json.dumps([item.as_dict() for item in c.box_items]),
                json.dumps(c.reservations),
                c.price,
                c.updated_at
            ]
        )

    async def save_edition(self, edition: Edition) -> None:
        await self._conn.execute(
            f"""
            UPDATE {self._schema}.editions SET
                owner = $3,
                status = $4,
                price = $5,
                opened = $6,
                opened_at = $7,
                nft_received = $8,
                edition_received = $9,
                transaction_history = $10::jsonb
            WHERE collection_id = $1 AND sub_id = $2
            """,
            [
                edition.collection_id,
                edition.sub_id,
                edition.owner,
                int(edition.status),
                edition.price,
                edition.opened,
                edition.opened_at,
                edition.nft_received,
                edition.edition_received,
                _history_json(edition)
            ]
        )
        self._loaded[edition.sub_id] = edition

    async def add_edition(self, edition: Edition) -> None:
        await PgStore.insert_edition(self._conn, self._schema, edition)
        self._loaded[edition.sub_id] = edition


class PgStore(AbstractStore):
    """
    Store backed by PostgreSQL through an asyncdb ``pg`` connection.

    Expected tables (see ``DDL``): ``{schema}.collections`` and
    ``{schema}.editions`` keyed by ``(collection_id, sub_id)``.
    """

    DDL = """
        CREATE TABLE IF NOT EXISTS {schema}.collections (
            collection_id VARCHAR PRIMARY KEY,
            collection_name VARCHAR(255) NOT NULL,
            description TEXT,
            kind SMALLINT NOT NULL DEFAULT 1,
            owner VARCHAR NOT NULL,
            price NUMERIC(18, 2) NOT NULL DEFAULT 0,
            status SMALLINT NOT NULL DEFAULT 1,
            total_quantity INTEGER NOT NULL CHECK (total_quantity > 0),
            sold_quantity INTEGER NOT NULL DEFAULT 0
                CHECK (sold_quantity >= 0 AND sold_quantity <= total_quantity),
            opened_count INTEGER NOT NULL DEFAULT 0 CHECK (opened_count >= 0),
            open_limit INTEGER NOT NULL DEFAULT 0,
            last_sequence INTEGER NOT NULL DEFAULT 0,
            synthesized_count INTEGER NOT NULL DEFAULT 0,
            box_items JSONB NOT NULL DEFAULT '[]'::jsonb,
            reservations JSONB NOT NULL DEFAULT '[]'::jsonb,
            blockchain_id VARCHAR,
            shop_id VARCHAR,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        );
        CREATE TABLE IF NOT EXISTS {schema}.editions (
            collection_id VARCHAR NOT NULL
                REFERENCES {schema}.collections (collection_id),
            sub_id VARCHAR NOT NULL,
            owner VARCHAR NOT NULL,
            status SMALLINT NOT NULL DEFAULT 1,
            price NUMERIC(18, 2),
            blockchain_id VARCHAR,
            shop_id VARCHAR,
            opened BOOLEAN NOT NULL DEFAULT FALSE,
            opened_at TIMESTAMP,
            nft_received VARCHAR,
            edition_received VARCHAR,
            transaction_history JSONB NOT NULL DEFAULT '[]'::jsonb,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            PRIMARY KEY (collection_id, sub_id)
        );
    """

    def __init__(self, connection: AsyncDB = None, schema: str = None, logger=None):
        super().__init__(logger=logger)
        self.connection = connection
        self._schema = schema or EDITIONS_SCHEMA

    async def set_connection(self, connection: AsyncDB):
        """Set the database connection."""
        self.connection = connection

    async def create_tables(self):
        async with await self.connection.acquire() as conn:
            await conn.execute(
                f"CREATE SCHEMA IF NOT EXISTS {self._schema}"
            )
            await conn.execute(self.DDL.format(schema=self._schema))

    @asynccontextmanager
    async def transaction(self, collection_id: str):
        async with await self.connection.acquire() as conn:
            await conn.transaction()
            try:
                row = await conn.fetchrow(
                    f"""
                    SELECT * FROM {self._schema}.collections
                    WHERE collection_id = $1
                    FOR UPDATE
                    """,
                    [collection_id]
                )
                if not row:
                    raise NotFound(f"Collection {collection_id} not found")
                yield PgUnitOfWork(conn, self._schema, row_to_collection(dict(row)))
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    @staticmethod
    async def insert_edition(conn, schema: str, edition: Edition):
        await conn.execute(
            f"""
            INSERT INTO {schema}.editions (
                collection_id, sub_id, owner, status, price,
                blockchain_id, shop_id, opened, transaction_history
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
            """,
            [
                edition.collection_id,
                edition.sub_id,
                edition.owner,
                int(edition.status),
                edition.price,
                edition.blockchain_id,
                edition.shop_id,
                edition.opened,
                _history_json(edition)
            ]
        )

    async def create_collection(
        self,
        collection: Collection,
        editions: List[Edition]
    ) -> Collection:
        c = collection
        async with await self.connection.acquire() as conn:
            await conn.transaction()
            try:
                exists = await conn.fetchval(
                    f"SELECT 1 FROM {self._schema}.collections WHERE collection_id = $1",
                    [c.collection_id]
                )
                if exists:
                    raise InvalidRequest(
                        f"Collection {c.collection_id} already exists"
                    )
                await conn.execute(
                    f"""
                    INSERT INTO {self._schema}.collections (
                        collection_id, collection_name, description, kind,
                        owner, price, status, total_quantity, open_limit,
                        last_sequence, box_items, blockchain_id, shop_id
                    ) VALUES (
                        $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12, $13
                    )
                    """,
                    [
                        c.collection_id,
                        c.collection_name,
                        c.description,
                        int(c.kind),
                        c.owner,
                        c.price,
                        int(c.status),
                        c.total_quantity,
                        c.open_limit,
                        c.last_sequence,
                        json.dumps([item.as_dict() for item in c.box_items]),
                        c.blockchain_id,
                        c.shop_id
                    ]
                )
                for edition in editions:
                    await self.insert_edition(conn, self._schema, edition)
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()
        self.logger.info(
            f"Collection {c.collection_id} created with {len(editions)} editions"
        )
        return collection

    async def get_collection(self, collection_id: str) -> Optional[Collection]:
        async with await self.connection.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT * FROM {self._schema}.collections WHERE collection_id = $1",
                [collection_id]
            )
        return row_to_collection(dict(row)) if row else None

    async def get_edition(
        self,
        collection_id: str,
        sub_id: str
    ) -> Optional[Edition]:
        async with await self.connection.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT * FROM {self._schema}.editions
                WHERE collection_id = $1 AND sub_id = $2
                """,
                [collection_id, sub_id]
            )
        return row_to_edition(dict(row)) if row else None

    async def list_editions(
        self,
        collection_id: str,
        statuses: Optional[Iterable[int]] = None,
        owner: Optional[str] = None
    ) -> List[Edition]:
        conditions = ["collection_id = $1"]
        params: List[Any] = [collection_id]
        if statuses is not None:
            params.append([int(s) for s in statuses])
            conditions.append(f"status = ANY(${len(params)})")
        if owner is not None:
            params.append(owner)
            conditions.append(f"owner = ${len(params)}")
        async with await self.connection.acquire() as conn:
            rows = await conn.fetch_all(
                f"""
                SELECT * FROM {self._schema}.editions
                WHERE {' AND '.join(conditions)}
                ORDER BY sub_id::int
                """,
                params
            )
        return [row_to_edition(dict(row)) for row in rows or []]

    async def pending_collections(self) -> List[str]:
        async with await self.connection.acquire() as conn:
            rows = await conn.fetch_all(
                f"""
                SELECT collection_id FROM {self._schema}.collections
                WHERE jsonb_array_length(reservations) > 0
                """
            )
        return [row['collection_id'] for row in rows or []]

    async def owned_editions(
        self,
        owner: str,
        kind: Optional[int] = None
    ) -> List[Edition]:
        conditions = ["e.owner = $1"]
        params: List[Any] = [owner]
        if kind is not None:
            params.append(int(kind))
            conditions.append(f"c.kind = ${len(params)}")
        async with await self.connection.acquire() as conn:
            rows = await conn.fetch_all(
                f"""
                SELECT e.* FROM {self._schema}.editions e
                JOIN {self._schema}.collections c USING (collection_id)
                WHERE {' AND '.join(conditions)}
                ORDER BY e.collection_id, e.sub_id::int
                """,
                params
            )
        return [row_to_edition(dict(row)) for row in rows or []]

    async def traded_editions(self, user_id: str) -> List[Edition]:
        async with await self.connection.acquire() as conn:
            rows = await conn.fetch_all(
                f"""
                SELECT * FROM {self._schema}.editions
                WHERE transaction_history @> $1::jsonb
                   OR transaction_history @> $2::jsonb
                ORDER BY collection_id, sub_id::int
                """,
                [
                    json.dumps([{'to_owner': user_id}]),
                    json.dumps([{'from_owner': user_id}])
                ]
            )
        return [row_to_edition(dict(row)) for row in rows or []]
