"""Base class for persistent state stores."""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator


class StateStore(ABC):
    """
    Abstract key/value store for bot state.

    Values must be JSON-serializable. The store offers no transactions;
    callers serialize their own read-modify-write cycles.
    """

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the value stored under key, or default if absent."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store value under key. None removes the key."""
        pass

    def flush(self) -> None:
        """Write any buffered state to durable storage."""
        pass

    @contextmanager
    def batch(self) -> Iterator["StateStore"]:
        """Group several set() calls into a single write."""
        yield self

    def close(self) -> None:
        """Release resources held by the store."""
        self.flush()


class MemoryStore(StateStore):
    """In-process store, used for tests and dry runs."""

    def __init__(self, data: dict[str, Any] | None = None):
        self._data: dict[str, Any] = dict(data or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = value

    def keys(self) -> list[str]:
        return list(self._data)
