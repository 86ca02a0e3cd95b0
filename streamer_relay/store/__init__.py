"""store: Revisioned document store and change feed."""
from .documents import (
    Change,
    ChangeFeed,
    DocumentNotFound,
    DocumentStore,
    StoreError,
    StoreWriteConflict,
)

__all__ = [
    "Change",
    "ChangeFeed",
    "DocumentNotFound",
    "DocumentStore",
    "StoreError",
    "StoreWriteConflict",
]
