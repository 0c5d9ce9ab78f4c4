from __future__ import annotations

import fnmatch
import json
import math
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from campusauth.clock import Clock, utc_now
from campusauth.storage.common import (
    CODE_EXHAUSTED,
    CODE_INVALID,
    CODE_MISSING,
    CODE_VALID,
)


class MemoryCache:
    """Single-process stand-in for ``RedisCache`` used by tests and local runs.

    Expiry follows the injected clock so tests can move time forward. All
    mutations run under one lock, mirroring the atomicity of the Lua scripts.
    The runtime refuses this cache outside test mode since its state is not
    shared across workers.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self.clock = clock
        self._entries: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[datetime]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self.clock():
            del self._entries[key]
            return None
        return entry

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[datetime]:
        if ttl_seconds is None:
            return None
        return self.clock() + timedelta(seconds=max(1, int(ttl_seconds)))

    def _remaining(self, expires_at: Optional[datetime]) -> int:
        if expires_at is None:
            return -1
        return max(0, math.ceil((expires_at - self.clock()).total_seconds()))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._entries[key] = (value, self._expiry(ttl_seconds))

    async def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = (value, self._expiry(ttl_seconds))
            return True

    async def replace(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is None:
                return False
            self._entries[key] = (value, self._expiry(ttl_seconds))
            return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    del self._entries[key]
                    removed += 1
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            return self._remaining(entry[1])

    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                count = 1
                expires_at = self._expiry(ttl_seconds) if ttl_seconds else None
            else:
                count = int(entry[0]) + 1
                expires_at = entry[1]
            self._entries[key] = (str(count), expires_at)
            return count

    async def decrement(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None or int(entry[0]) <= 0:
                return 0
            count = int(entry[0]) - 1
            self._entries[key] = (str(count), entry[1])
            return count

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._entries[key] = (entry[0], self._expiry(ttl_seconds))
            return True

    async def keys_matching(self, pattern: str) -> List[str]:
        with self._lock:
            keys = list(self._entries.keys())
            return [k for k in keys if fnmatch.fnmatchcase(k, pattern) and self._live(k)]

    async def reserve_slot(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        with self._lock:
            entry = self._live(key)
            current = int(entry[0]) if entry else 0
            if current >= limit:
                expires_at = entry[1] if entry else None
                if expires_at is None:
                    expires_at = self._expiry(window_seconds)
                    self._entries[key] = (str(current), expires_at)
                return False, current, max(1, self._remaining(expires_at))
            count = current + 1
            expires_at = entry[1] if entry else self._expiry(window_seconds)
            self._entries[key] = (str(count), expires_at)
            return True, count, 0

    async def check_code(
        self, key: str, candidate_digest: str, max_attempts: int
    ) -> Tuple[str, int]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return CODE_MISSING, 0
            try:
                record = json.loads(entry[0])
            except ValueError:
                del self._entries[key]
                return CODE_MISSING, 0
            attempts = int(record.get("attempts", 0))
            if attempts >= max_attempts:
                del self._entries[key]
                return CODE_EXHAUSTED, 0
            if record.get("digest") == candidate_digest:
                del self._entries[key]
                return CODE_VALID, max_attempts - attempts
            attempts += 1
            if attempts >= max_attempts:
                del self._entries[key]
                return CODE_EXHAUSTED, 0
            record["attempts"] = attempts
            # Mismatch keeps the original expiry
            self._entries[key] = (json.dumps(record), entry[1])
            return CODE_INVALID, max_attempts - attempts

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
