"""
Document store protocol.

Ledgers persist plain dicts through this interface. Collections are
addressed by path; a sub-collection lives under its parent document, e.g.
``projects/{project_id}/bids``. The store stamps ``id`` and ``version`` on
create and bumps ``version`` on every update. No multi-document transaction
is offered: guarded single-document updates are the only atomic primitive.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

# Error markers returned by create/update, mirroring the
# UPDATE ... WHERE status = expected pattern.
NOT_FOUND = "not_found"
CONFLICT = "conflict"
EXISTS = "exists"

OPERATORS = ("==", "!=", "in", "<", "<=", ">", ">=")


@dataclass(frozen=True)
class Filter:
    """A single field predicate for ``query`` and ``count``."""

    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, doc: Dict[str, Any]) -> bool:
        current = doc.get(self.field)
        if self.op == "==":
            return current == self.value
        if self.op == "!=":
            return current != self.value
        if self.op == "in":
            return current in self.value
        if current is None:
            return False
        if self.op == "<":
            return current < self.value
        if self.op == "<=":
            return current <= self.value
        if self.op == ">":
            return current > self.value
        return current >= self.value


def eq(field: str, value: Any) -> Filter:
    return Filter(field, "==", value)


def in_(field: str, values: Sequence[Any]) -> Filter:
    return Filter(field, "in", list(values))


def subcollection(parent: str, parent_id: str, name: str) -> str:
    """Build a sub-collection path such as ``projects/p1/bids``."""
    return f"{parent}/{parent_id}/{name}"


def split_path(collection: str) -> Tuple[str, Optional[str]]:
    """Split a collection path into (table, parent_id).

    ``projects`` -> ("projects", None); ``projects/p1/bids`` -> ("bids", "p1").
    """
    parts = collection.strip("/").split("/")
    if len(parts) == 1:
        return parts[0], None
    if len(parts) == 3:
        return parts[2], parts[1]
    raise ValueError(f"Unsupported collection path: {collection}")


class DocumentStore(Protocol):
    """Protocol for document persistence backends."""

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Get a document by id."""
        ...

    async def create(
        self, collection: str, doc_id: str, data: Dict[str, Any]
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        """Create a document with a caller-chosen id.

        Returns (doc, None), or (None, "exists") when the id is taken.
        """
        ...

    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        """Apply a partial update, optionally guarded by expected field values.

        Returns (doc, None), (None, "not_found") or (None, "conflict").
        """
        ...

    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document. Returns True if it existed."""
        ...

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Query documents matching every filter."""
        ...

    async def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        """Count documents matching every filter."""
        ...
