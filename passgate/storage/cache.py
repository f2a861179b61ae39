from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, Optional, Protocol, Tuple


class Cache(Protocol):
    """Key/value store with per-key TTL shared by every request.

    Values are strings; callers serialize structured records themselves. The
    conditional operations must be atomic with respect to other callers.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def get_delete(self, key: str) -> Optional[str]: ...

    async def incr_window(self, key: str, window_seconds: int) -> int: ...

    async def compare_and_set(
        self, key: str, expected: Iterable[str], value: str, ttl_seconds: int
    ) -> Tuple[bool, Optional[str]]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class MemoryCache:
    """In-process ``Cache`` used for tests and single-node development.

    ``clock`` returns seconds as a float and defaults to ``time.monotonic``;
    tests pass a controllable clock to step over TTL boundaries. Every
    operation holds one lock and never awaits inside it, so the conditional
    operations are atomic across threads and event loops.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def _store(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (value, self._clock() + ttl_seconds)

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires, or None when it is absent."""
        with self._lock:
            if self._live(key) is None:
                return None
            return self._entries[key][1] - self._clock()

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._store(key, value, ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._store(key, value, ttl_seconds)
            return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._entries.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def get_delete(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._entries.pop(key, None)
            return value

    async def incr_window(self, key: str, window_seconds: int) -> int:
        with self._lock:
            current = self._live(key)
            if current is None:
                self._store(key, "1", window_seconds)
                return 1
            count = int(current) + 1
            # the window is fixed at the first hit; later hits keep its expiry
            self._entries[key] = (str(count), self._entries[key][1])
            return count

    async def compare_and_set(
        self, key: str, expected: Iterable[str], value: str, ttl_seconds: int
    ) -> Tuple[bool, Optional[str]]:
        with self._lock:
            current = self._live(key)
            if current is None or current not in set(expected):
                return False, current
            self._store(key, value, ttl_seconds)
            return True, current

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()


__all__ = ["Cache", "MemoryCache"]
