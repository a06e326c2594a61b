"""Per-resource locks for non-atomic read-modify-write calls."""

from __future__ import annotations

import threading
from typing import Dict


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLock:
    """
    Mutual exclusion keyed by an external resource identifier.

    Entries are created on first use and dropped once no caller holds or
    waits on them, so the registry does not grow with every uuid ever seen.
    """

    def __init__(self, timeout: float = 60.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    def hold(self, key: str, timeout: float | None = None) -> "_Held":
        return _Held(self, key, self.timeout if timeout is None else timeout)

    def locked(self, key: str) -> bool:
        with self._guard:
            entry = self._entries.get(key)
            return bool(entry and entry.lock.locked())

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.refs += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs <= 0 and self._entries.get(key) is entry:
                del self._entries[key]


class _Held:
    def __init__(self, registry: KeyedLock, key: str, timeout: float):
        self._registry = registry
        self.key = key
        self.timeout = timeout
        self._entry: _Entry | None = None

    def __enter__(self):
        entry = self._registry._checkout(self.key)
        if not entry.lock.acquire(timeout=self.timeout):
            self._registry._checkin(self.key, entry)
            raise TimeoutError(f"Could not acquire lock for {self.key}")
        self._entry = entry
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        entry = self._entry
        self._entry = None
        if entry is not None:
            entry.lock.release()
            self._registry._checkin(self.key, entry)
