"""
Supabase-backed document store.

Each collection maps to a table named after its last path segment; rows of a
sub-collection carry the parent document id in a ``parent_id`` column. Nested
values (escrow transactions, saga steps) live in jsonb columns.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from supabase import Client

from renobid.errors import StoreUnavailableError, with_retry
from renobid.store.base import CONFLICT, EXISTS, NOT_FOUND, Filter, split_path

logger = logging.getLogger(__name__)

PARENT_COLUMN = "parent_id"
MAX_ROWS = 1000


class SupabaseDocumentStore:
    """DocumentStore over a Supabase (PostgREST) client."""

    def __init__(self, client: Client, max_retries: int = 3):
        self.client = client
        self.max_retries = max_retries

    async def _execute(self, build):
        """Run a query builder in a worker thread, retrying transport failures."""

        async def attempt():
            try:
                return await asyncio.to_thread(lambda: build().execute())
            except httpx.TransportError as e:
                logger.warning(f"Supabase transport error: {e}")
                raise StoreUnavailableError(str(e)) from e

        return await with_retry(attempt, max_retries=self.max_retries)

    @staticmethod
    def _strip(row: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(row)
        row.pop(PARENT_COLUMN, None)
        return row

    def _scoped(self, collection: str, query):
        _, parent_id = split_path(collection)
        if parent_id is not None:
            query = query.eq(PARENT_COLUMN, parent_id)
        return query

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        table, _ = split_path(collection)
        result = await self._execute(
            lambda: self._scoped(collection, self.client.table(table).select("*").eq("id", doc_id))
        )
        return self._strip(result.data[0]) if result.data else None

    async def create(
        self, collection: str, doc_id: str, data: Dict[str, Any]
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        table, parent_id = split_path(collection)
        row = {**data, "id": doc_id, "version": 1}
        if parent_id is not None:
            row[PARENT_COLUMN] = parent_id

        # ignore_duplicates turns an id collision into an empty result
        result = await self._execute(
            lambda: self.client.table(table).upsert(row, on_conflict="id", ignore_duplicates=True)
        )
        if not result.data:
            return None, EXISTS
        return self._strip(result.data[0]), None

    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        table, _ = split_path(collection)
        expected = dict(expected or {})

        # Without an explicit version guard, read it so the bump stays monotonic
        if "version" not in expected:
            current = await self.get(collection, doc_id)
            if current is None:
                return None, NOT_FOUND
            expected["version"] = current.get("version") or 1
        data = {**changes, "version": int(expected["version"]) + 1}

        def build():
            query = self._scoped(collection, self.client.table(table).update(data).eq("id", doc_id))
            for field, value in expected.items():
                query = query.eq(field, value)
            return query

        result = await self._execute(build)
        if result.data:
            return self._strip(result.data[0]), None

        # Update didn't match - either missing or changed underneath us
        if await self.get(collection, doc_id) is None:
            return None, NOT_FOUND
        logger.warning(f"Guarded update lost race on {collection}/{doc_id}: expected {expected}")
        return None, CONFLICT

    async def delete(self, collection: str, doc_id: str) -> bool:
        table, _ = split_path(collection)
        result = await self._execute(
            lambda: self._scoped(collection, self.client.table(table).delete().eq("id", doc_id))
        )
        return bool(result.data)

    @staticmethod
    def _apply_filters(query, filters: Sequence[Filter]):
        for f in filters:
            if f.op == "==":
                query = query.eq(f.field, f.value)
            elif f.op == "!=":
                query = query.neq(f.field, f.value)
            elif f.op == "in":
                query = query.in_(f.field, list(f.value))
            elif f.op == "<":
                query = query.lt(f.field, f.value)
            elif f.op == "<=":
                query = query.lte(f.field, f.value)
            elif f.op == ">":
                query = query.gt(f.field, f.value)
            else:
                query = query.gte(f.field, f.value)
        return query

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        table, _ = split_path(collection)

        def build():
            query = self._scoped(collection, self.client.table(table).select("*"))
            query = self._apply_filters(query, filters)
            if order_by:
                query = query.order(order_by, desc=descending)
            if limit is not None:
                query = query.range(offset, offset + limit - 1)
            elif offset:
                query = query.range(offset, offset + MAX_ROWS - 1)
            return query

        result = await self._execute(build)
        return [self._strip(row) for row in result.data or []]

    async def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        table, _ = split_path(collection)

        def build():
            query = self._scoped(collection, self.client.table(table).select("id", count="exact"))
            return self._apply_filters(query, filters)

        result = await self._execute(build)
        return result.count or 0
