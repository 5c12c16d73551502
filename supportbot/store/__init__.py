"""
Persistent state stores for SupportBot.

Provides:
- StateStore: the key/value interface the autoresponder relies on
- MemoryStore: in-process store for tests and dry runs
- JsonFileStore: JSON document on disk
"""

from supportbot.store.base import StateStore, MemoryStore
from supportbot.store.json_store import JsonFileStore

__all__ = [
    "StateStore",
    "MemoryStore",
    "JsonFileStore",
]
