"""SQLite persistence layer."""

from sessiontree.store.entry_store import (
    BrokenAncestryError,
    CrossSessionReferenceError,
    CycleOrDepthExceededError,
    DuplicateIDError,
    EntryNotFoundError,
    EntryStore,
    MalformedEntryError,
    RawEntry,
    SessionNotFoundError,
    SessionTreeStoreError,
    StorageError,
)
from sessiontree.store.pool import StorePool

__all__ = [
    "BrokenAncestryError",
    "CrossSessionReferenceError",
    "CycleOrDepthExceededError",
    "DuplicateIDError",
    "EntryNotFoundError",
    "EntryStore",
    "MalformedEntryError",
    "RawEntry",
    "SessionNotFoundError",
    "SessionTreeStoreError",
    "StorageError",
    "StorePool",
]
