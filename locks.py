import asyncio
import threading
from typing import Dict, Hashable


class KeyLockRegistry:
    """Lazily creates and caches one asyncio.Lock per account key.

    The same key always yields the same lock. Callers are tasks on one event
    loop; the handed-out asyncio.Lock gives no exclusion across threads or
    loops. The threading.Lock guard only protects the dict insert for an
    unseen key, with a double check so concurrent first requests never
    produce two locks. It is never held while a per-key lock is awaited.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._creation_guard = threading.Lock()

    def get_lock(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is not None:
            return lock

        with self._creation_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    def __contains__(self, key: Hashable) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)


_lock_registry = KeyLockRegistry()


def get_lock_registry() -> KeyLockRegistry:
    return _lock_registry


def reset_lock_registry() -> None:
    """Drop all cached locks (for testing only)."""
    global _lock_registry
    _lock_registry = KeyLockRegistry()
