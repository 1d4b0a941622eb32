"""In-memory document store for testing and local development."""

import copy
from typing import Any, Dict, List, Optional, Sequence, Tuple

from renobid.store.base import CONFLICT, EXISTS, NOT_FOUND, Filter


class InMemoryDocumentStore:
    """Dict-backed DocumentStore.

    Each call runs to completion without yielding to the event loop, so a
    guarded update is atomic with respect to other coroutines. Documents are
    deep-copied in and out so callers never share mutable state with the store.
    """

    def __init__(self):
        """Initialize empty storage."""
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _docs(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection.strip("/"), {})

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self._docs(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def create(
        self, collection: str, doc_id: str, data: Dict[str, Any]
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        docs = self._docs(collection)
        if doc_id in docs:
            return None, EXISTS
        doc = copy.deepcopy(data)
        doc["id"] = doc_id
        doc["version"] = 1
        docs[doc_id] = doc
        return copy.deepcopy(doc), None

    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        docs = self._docs(collection)
        doc = docs.get(doc_id)
        if doc is None:
            return None, NOT_FOUND
        for field, value in (expected or {}).items():
            if doc.get(field) != value:
                return None, CONFLICT
        doc.update(copy.deepcopy(changes))
        doc["id"] = doc_id
        doc["version"] = int(doc.get("version") or 0) + 1
        return copy.deepcopy(doc), None

    async def delete(self, collection: str, doc_id: str) -> bool:
        return self._docs(collection).pop(doc_id, None) is not None

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        docs = [d for d in self._docs(collection).values() if all(f.matches(d) for f in filters)]
        if order_by:
            # Missing values sort first ascending, last descending
            docs.sort(
                key=lambda d: (d.get(order_by) is not None, d.get(order_by) or ""),
                reverse=descending,
            )
        docs = docs[offset:]
        if limit is not None:
            docs = docs[:limit]
        return [copy.deepcopy(d) for d in docs]

    async def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        return sum(1 for d in self._docs(collection).values() if all(f.matches(d) for f in filters))
