"""
JSON file store for SupportBot state.

The whole state lives in a single JSON document. Every set() rewrites the
document through a temporary file and an atomic rename, so a crash leaves
either the old or the new state on disk, never a truncated file. Inside
batch() the rewrites are collapsed into one.
"""

import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from loguru import logger

from supportbot.store.base import StateStore


class JsonFileStore(StateStore):
    """
    Key/value store persisted as a JSON document.

    Storage:
    - <path> - the state document
    - <path>.tmp - scratch file used while writing
    """

    def __init__(self, path: Path, autosave: bool = True):
        """
        Initialize the store.

        Args:
            path: Location of the JSON document
            autosave: Write to disk on every set(). When False, changes are
                only written by flush().
        """
        self.path = Path(path).expanduser()
        self.autosave = autosave
        self._data: dict[str, Any] = {}
        self._dirty = False
        self._load()

    def _load(self) -> None:
        """Load state from disk."""
        if not self.path.exists():
            return

        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            # Keep the unreadable file around for inspection and start fresh
            backup = self.path.with_suffix(self.path.suffix + ".corrupt")
            logger.error(f"State file {self.path} is not valid JSON ({e}), moving it to {backup}")
            os.replace(self.path, backup)
            return

        if not isinstance(data, dict):
            logger.error(f"State file {self.path} does not contain an object, ignoring it")
            return

        self._data = data
        logger.debug(f"Loaded {len(self._data)} state keys from {self.path}")

    def _save(self) -> None:
        """Write state to disk atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, indent=2))
        os.replace(tmp, self.path)
        self._dirty = False

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = value
        self._dirty = True

        if self.autosave:
            self._save()

    def flush(self) -> None:
        """Write pending changes to disk."""
        if self._dirty:
            self._save()
            logger.debug(f"Flushed state to {self.path}")

    @contextmanager
    def batch(self) -> Iterator["JsonFileStore"]:
        """
        Suspend autosave for the block and write once on exit.

        The write also happens when the block raises, so the file always
        matches what get() returns afterwards.
        """
        autosave, self.autosave = self.autosave, False
        try:
            yield self
        finally:
            self.autosave = autosave
            if autosave:
                self.flush()

    def keys(self) -> list[str]:
        return list(self._data)
