"""
Caching Service.

Process-scoped TTL cache for configuration reads. Expiry is measured
against an injectable clock so tests can move time forward explicitly.
"""

import time
from typing import Any, Callable, Dict, Hashable, Optional


class TTLCache:

    def __init__(self, ttl_seconds: float = 30, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._store: Dict[Hashable, dict] = {}

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    def get(self, key: Hashable, default: Any = None) -> Optional[Any]:
        entry = self._store.get(key)
        if not entry:
            return default

        if self.clock() >= entry["expires_at"]:
            del self._store[key]
            return default

        return entry["data"]

    def set(self, key: Hashable, data: Any):
        if not self.enabled:
            return
        self._store[key] = {
            "data": data,
            "expires_at": self.clock() + self.ttl_seconds
        }

    def invalidate(self, key: Hashable):
        self._store.pop(key, None)

    def clear(self):
        self._store.clear()
