"""In-memory serverlist store of the mock discovery service."""
from __future__ import annotations

import time
from dataclasses import dataclass
from threading import RLock
from typing import Dict, Optional


@dataclass
class StoredList:
    """One serverlist body and the validators served with it."""

    name: str
    body: str
    version: int
    last_modified: int  # unix seconds

    @property
    def etag(self) -> str:
        return f'"v{self.version}"'


class Registry:
    """In-memory mock registry. Thread-safe and simple."""

    def __init__(self):
        self._lists: Dict[str, StoredList] = {}
        self._lock = RLock()

    def put(self, name: str, body: str) -> tuple[StoredList, bool]:
        """Store a body; the version only moves when the content changed."""
        with self._lock:
            current = self._lists.get(name)
            if current is not None and current.body == body:
                return current, False
            version = current.version + 1 if current else 1
            stored = StoredList(name=name, body=body, version=version, last_modified=int(time.time()))
            self._lists[name] = stored
            return stored, True

    def get(self, name: str) -> Optional[StoredList]:
        with self._lock:
            return self._lists.get(name)

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._lists.pop(name, None) is not None

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._lists)

    def clear(self) -> None:
        with self._lock:
            self._lists.clear()


# Singleton used by routes
registry = Registry()
