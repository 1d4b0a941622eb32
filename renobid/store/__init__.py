"""Document storage for renobid.

- DocumentStore: protocol every backend implements
- InMemoryDocumentStore: dict-backed store for tests and local development
- SupabaseDocumentStore: lives in renobid.store.supabase (imports the client lazily)
"""

from renobid.store.base import (
    CONFLICT,
    EXISTS,
    NOT_FOUND,
    DocumentStore,
    Filter,
    eq,
    in_,
    split_path,
    subcollection,
)
from renobid.store.memory import InMemoryDocumentStore

__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
    "Filter",
    "eq",
    "in_",
    "subcollection",
    "split_path",
    "NOT_FOUND",
    "CONFLICT",
    "EXISTS",
]
