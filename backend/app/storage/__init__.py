"""Storage collaborator for rooms and message history.

Two implementations share the ``MessageStore`` interface:
- DuckDBMessageStore: JSON documents in an embedded DuckDB file
- MemoryMessageStore: dict-backed, for tests and throwaway deployments
"""
from .base import MessageStore, StoreError
from .duckdb_store import DuckDBMessageStore
from .memory import MemoryMessageStore

__all__ = [
    "DuckDBMessageStore",
    "MemoryMessageStore",
    "MessageStore",
    "StoreError",
]
