"""Persistence layer for the ledger.

``LedgerStore`` is the row-level interface the managers talk to. Rows are
plain dicts holding native values (``Decimal``, ``datetime``); formatting for
the wire happens in the managers. ``PostgresLedgerStore`` implements it over
an asyncpg pool.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from asyncpg.exceptions import PostgresError, UniqueViolationError

from database import get_pool
from database.exceptions import DatabaseError, DuplicateRecordError

logger = logging.getLogger(__name__)

class LedgerStore:
    """Row storage used by the ledger managers.

    ``transaction()`` yields a store whose calls all run in one database
    transaction. Calling it again on that store nests inside the same
    transaction.
    """

    def transaction(self):
        raise NotImplementedError

    # Collaborator tables (read only)

    async def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def get_product(self, product_id: int) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    # Listings

    async def get_listing(self, listing_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def get_active_listing(self, product_id: int) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def search_listings(
        self,
        filters: Dict[str, Any],
        limit: int,
        offset: int
    ) -> Tuple[List[Dict[str, Any]], int]:
        raise NotImplementedError

    async def insert_listing(self, values: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def update_listing(self, listing_id: int, values: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def delete_listing(self, listing_id: int) -> None:
        raise NotImplementedError

    # Purchase requests

    async def get_request(self, request_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def get_active_request(self, product_id: int) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def list_requests(
        self,
        buyer_id: Optional[int] = None,
        seller_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def insert_request(self, values: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def update_request(self, request_id: int, values: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    # Ownership

    async def get_open_ownership(self, product_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def get_ownership_history(self, product_id: int) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def close_ownership(self, ownership_id: int) -> None:
        raise NotImplementedError

    async def open_ownership(
        self,
        product_id: int,
        owner_id: int,
        owner_public_key: Optional[str],
        tx_hash: Optional[str]
    ) -> Dict[str, Any]:
        raise NotImplementedError

    async def insert_chain_event(self, values: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    # Idempotency log

    async def get_operation(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def save_operation(
        self,
        idempotency_key: str,
        kind: str,
        signature: str,
        status: str
    ) -> Dict[str, Any]:
        raise NotImplementedError

class PostgresLedgerStore(LedgerStore):
    """LedgerStore backed by an asyncpg pool."""

    def __init__(self, pool, conn=None) -> None:
        """Initialize the store.

        Args:
            pool: asyncpg connection pool
            conn: Connection this store is bound to inside a transaction
        """
        self.pool = pool
        self._conn = conn

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        """Yield the bound connection or one from the pool, translating driver errors."""
        try:
            if self._conn is not None:
                yield self._conn
            else:
                async with self.pool.acquire() as conn:
                    yield conn
        except UniqueViolationError as e:
            raise DuplicateRecordError(str(e), constraint=e.constraint_name)
        except PostgresError as e:
            logger.error(f"Database error: {e}")
            raise DatabaseError(f"Database operation failed: {e}")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator['PostgresLedgerStore']:
        if self._conn is not None:
            # Nested call becomes a savepoint on the same connection
            async with self._conn.transaction():
                yield self
            return

        async with self._connection() as conn:
            async with conn.transaction():
                yield PostgresLedgerStore(self.pool, conn)

    async def _fetchrow(self, query: str, *args) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            row = await conn.fetchrow(query, *args)
        return dict(row) if row else None

    async def _fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        async with self._connection() as conn:
            rows = await conn.fetch(query, *args)
        return [dict(row) for row in rows]

    async def _insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        columns = ', '.join(values)
        placeholders = ', '.join(f'${i}' for i in range(1, len(values) + 1))
        return await self._fetchrow(
            f'INSERT INTO {table} ({columns}) VALUES ({placeholders}) RETURNING *',
            *values.values()
        )

    async def _update(self, table: str, key: str, key_value: Any, values: Dict[str, Any]) -> Dict[str, Any]:
        fields = [f"{field} = ${i}" for i, field in enumerate(values, start=1)]
        fields.append('updated_on = now()')
        return await self._fetchrow(
            f'''
            UPDATE {table}
            SET {', '.join(fields)}
            WHERE {key} = ${len(values) + 1}
            RETURNING *
            ''',
            *values.values(), key_value
        )

    async def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        return await self._fetchrow('SELECT * FROM users WHERE user_id = $1', user_id)

    async def get_product(self, product_id: int) -> Optional[Dict[str, Any]]:
        return await self._fetchrow('SELECT * FROM products WHERE product_id = $1', product_id)

    async def get_listing(self, listing_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
        lock = ' FOR UPDATE' if for_update else ''
        return await self._fetchrow(
            f'SELECT * FROM product_listing WHERE listing_id = $1{lock}',
            listing_id
        )

    async def get_active_listing(self, product_id: int) -> Optional[Dict[str, Any]]:
        return await self._fetchrow(
            '''
            SELECT * FROM product_listing
            WHERE product_id = $1 AND status IN ('available', 'reserved')
            LIMIT 1
            ''',
            product_id
        )

    async def search_listings(
        self,
        filters: Dict[str, Any],
        limit: int,
        offset: int
    ) -> Tuple[List[Dict[str, Any]], int]:
        conditions = []
        params = []
        for field, value in filters.items():
            params.append(value)
            conditions.append(f"{field} = ${len(params)}")

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ''

        async with self._connection() as conn:
            total_count = await conn.fetchval(
                f'SELECT COUNT(*) FROM product_listing {where_clause}',
                *params
            )
            rows = await conn.fetch(
                f'''
                SELECT * FROM product_listing
                {where_clause}
                ORDER BY created_on DESC, listing_id DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                ''',
                *params, limit, offset
            )
        return [dict(row) for row in rows], total_count

    async def insert_listing(self, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert('product_listing', values)

    async def update_listing(self, listing_id: int, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self._update('product_listing', 'listing_id', listing_id, values)

    async def delete_listing(self, listing_id: int) -> None:
        async with self._connection() as conn:
            await conn.execute('DELETE FROM product_listing WHERE listing_id = $1', listing_id)

    async def get_request(self, request_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
        lock = ' FOR UPDATE' if for_update else ''
        return await self._fetchrow(
            f'SELECT * FROM purchase_request WHERE request_id = $1{lock}',
            request_id
        )

    async def get_active_request(self, product_id: int) -> Optional[Dict[str, Any]]:
        return await self._fetchrow(
            '''
            SELECT * FROM purchase_request
            WHERE product_id = $1 AND status IN ('proposed', 'accepted', 'paid')
            LIMIT 1
            ''',
            product_id
        )

    async def list_requests(
        self,
        buyer_id: Optional[int] = None,
        seller_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        if buyer_id is not None:
            column, value = 'buyer_id', buyer_id
        else:
            column, value = 'seller_id', seller_id
        return await self._fetch(
            f'''
            SELECT * FROM purchase_request
            WHERE {column} = $1
            ORDER BY created_on DESC, request_id DESC
            ''',
            value
        )

    async def insert_request(self, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert('purchase_request', values)

    async def update_request(self, request_id: int, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self._update('purchase_request', 'request_id', request_id, values)

    async def get_open_ownership(self, product_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
        lock = ' FOR UPDATE' if for_update else ''
        return await self._fetchrow(
            f'SELECT * FROM ownership WHERE product_id = $1 AND end_on IS NULL{lock}',
            product_id
        )

    async def get_ownership_history(self, product_id: int) -> List[Dict[str, Any]]:
        return await self._fetch(
            '''
            SELECT * FROM ownership
            WHERE product_id = $1
            ORDER BY start_on ASC, ownership_id ASC
            ''',
            product_id
        )

    async def close_ownership(self, ownership_id: int) -> None:
        async with self._connection() as conn:
            await conn.execute(
                'UPDATE ownership SET end_on = now() WHERE ownership_id = $1',
                ownership_id
            )

    async def open_ownership(
        self,
        product_id: int,
        owner_id: int,
        owner_public_key: Optional[str],
        tx_hash: Optional[str]
    ) -> Dict[str, Any]:
        return await self._insert('ownership', {
            'product_id': product_id,
            'owner_id': owner_id,
            'owner_public_key': owner_public_key,
            'tx_hash': tx_hash
        })

    async def insert_chain_event(self, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert('chain_events', values)

    async def get_operation(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        return await self._fetchrow(
            'SELECT * FROM operations WHERE idempotency_key = $1',
            idempotency_key
        )

    async def save_operation(
        self,
        idempotency_key: str,
        kind: str,
        signature: str,
        status: str
    ) -> Dict[str, Any]:
        return await self._fetchrow(
            '''
            INSERT INTO operations (idempotency_key, kind, signature, status)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (idempotency_key) DO UPDATE
            SET signature = EXCLUDED.signature,
                status = EXCLUDED.status,
                updated_on = now()
            RETURNING *
            ''',
            idempotency_key, kind, signature, status
        )

async def get_default_store() -> PostgresLedgerStore:
    """Build a store over the shared database pool."""
    return PostgresLedgerStore(await get_pool())

def isoformat(value) -> Optional[str]:
    """Render a timestamp column for JSON output."""
    return value.isoformat() if value else None
