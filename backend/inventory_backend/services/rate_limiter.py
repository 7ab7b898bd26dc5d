"""In-memory sliding-window request throttling."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict


@dataclass
class _Bucket:
    timestamps: Deque[float]


class InMemoryRateLimiter:
    """Per-key sliding-window limiter for single-node deployments."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, _Bucket] = {}

    def _prune(self, key: str, window_seconds: int, now: float) -> _Bucket:
        bucket = self._buckets.setdefault(key, _Bucket(timestamps=deque()))
        cutoff = now - window_seconds
        while bucket.timestamps and bucket.timestamps[0] <= cutoff:
            bucket.timestamps.popleft()
        return bucket

    def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        """Record a hit for ``key`` unless ``limit`` hits already fall inside the window."""
        now = self._clock()
        with self._lock:
            bucket = self._prune(key, window_seconds, now)
            if len(bucket.timestamps) >= limit:
                return False
            bucket.timestamps.append(now)
            return True

    def remaining(self, key: str, limit: int, window_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            bucket = self._prune(key, window_seconds, now)
            return max(0, limit - len(bucket.timestamps))

    def reset(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)
