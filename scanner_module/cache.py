"""
In-memory TTL cache of scan results, keyed by domain.

Entries are checked for staleness on read and all stale entries are swept
whenever a write lands at least one TTL after the previous sweep.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .dns_records import Result


@dataclass(frozen=True)
class CacheEntry:
    result: Result
    timestamp: float


class ResultCache:
    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self.ttl

    def get(self, key: str) -> Optional[Result]:
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, self._clock()):
                del self._entries[key]
                return None
            return entry.result

    def set(self, key: str, result: Result) -> None:
        if not self.enabled:
            return
        with self._lock:
            now = self._clock()
            self._entries[key] = CacheEntry(result=result, timestamp=now)
            if now - self._last_sweep >= self.ttl:
                self._sweep(now)

    def _sweep(self, now: float) -> None:
        stale = [k for k, entry in self._entries.items() if self._expired(entry, now)]
        for k in stale:
            del self._entries[k]
        self._last_sweep = now

    def flush(self) -> None:
        with self._lock:
            self._entries = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
