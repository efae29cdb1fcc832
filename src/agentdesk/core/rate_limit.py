from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Dict


@dataclass
class RateLimiter:
    """Sliding-window limiter keyed by caller (user id, channel...)."""

    max_calls: int
    window_seconds: int
    _store: Dict[str, list[float]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def allow(self, key: str) -> bool:
        now = time.time()
        window_start = now - self.window_seconds
        with self._lock:
            calls = [t for t in self._store.get(key, []) if t >= window_start]
            if len(calls) >= self.max_calls:
                self._store[key] = calls
                return False
            calls.append(now)
            self._store[key] = calls
            return True

    def retry_after(self, key: str) -> int:
        """Seconds until ``key`` gets a free slot (0 if one is free now)."""
        with self._lock:
            calls = self._store.get(key, [])
            if len(calls) < self.max_calls:
                return 0
            oldest = min(calls)
        return max(0, int(oldest + self.window_seconds - time.time()) + 1)
