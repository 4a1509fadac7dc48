"""A small in-process cache with per-entry expiry, and the gauges that report on it."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from quotaguard.stats import Gauge, StatsStore


@dataclass
class _Entry:
    value: bytes
    expires_at: float | None
    access_time: int


class LocalCache:
    """Thread-safe bounded key/value cache with optional per-entry TTLs.

    When full, the least recently used entry is evacuated to make room.
    A TTL of zero or less means the entry never expires.
    """

    def __init__(
        self, max_entries: int = 1024, clock: Callable[[], float] = time.monotonic
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = threading.Lock()
        self._hit_count = 0
        self._miss_count = 0
        self._expired_count = 0
        self._evacuate_count = 0
        self._overwrite_count = 0

    def get(self, key: str) -> bytes:
        """Return the value stored under `key`; raise KeyError if absent or expired."""
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at is not None and now >= entry.expires_at:
                del self._entries[key]
                self._expired_count += 1
                entry = None
            if entry is None:
                self._miss_count += 1
                raise KeyError(key)
            self._hit_count += 1
            entry.access_time = int(now)
            self._entries.move_to_end(key)
            return entry.value

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        """Store `value` under `key` for `ttl_seconds` (no expiry if <= 0)."""
        with self._lock:
            now = self._clock()
            expires_at = now + ttl_seconds if ttl_seconds > 0 else None
            if key in self._entries:
                self._overwrite_count += 1
                self._entries.move_to_end(key)
            elif len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
                self._evacuate_count += 1
            self._entries[key] = _Entry(bytes(value), expires_at, int(now))

    def __contains__(self, key: object) -> bool:
        with self._lock:
            entry = self._entries.get(key)  # type: ignore[arg-type]
            if entry is None:
                return False
            return entry.expires_at is None or self._clock() < entry.expires_at

    def __len__(self) -> int:
        return self.entry_count

    @property
    def entry_count(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def hit_count(self) -> int:
        with self._lock:
            return self._hit_count

    @property
    def miss_count(self) -> int:
        with self._lock:
            return self._miss_count

    @property
    def lookup_count(self) -> int:
        with self._lock:
            return self._hit_count + self._miss_count

    @property
    def expired_count(self) -> int:
        with self._lock:
            return self._expired_count

    @property
    def evacuate_count(self) -> int:
        with self._lock:
            return self._evacuate_count

    @property
    def overwrite_count(self) -> int:
        with self._lock:
            return self._overwrite_count

    @property
    def average_access_time(self) -> int:
        """Mean of the last access times (whole clock seconds) of stored entries."""
        with self._lock:
            if not self._entries:
                return 0
            return sum(e.access_time for e in self._entries.values()) // len(self._entries)


class LocalCacheStats:
    """Publishes a LocalCache's counters as gauges in a stats scope."""

    _NAMES = (
        ("evacuateCount", "evacuate_count"),
        ("expiredCount", "expired_count"),
        ("entryCount", "entry_count"),
        ("averageAccessTime", "average_access_time"),
        ("hitCount", "hit_count"),
        ("missCount", "miss_count"),
        ("lookupCount", "lookup_count"),
        ("overwriteCount", "overwrite_count"),
    )

    def __init__(self, local_cache: LocalCache, scope: StatsStore) -> None:
        self.cache = local_cache
        self._gauges: list[tuple[Gauge, str]] = [
            (scope.new_gauge(gauge_name), attribute) for gauge_name, attribute in self._NAMES
        ]

    def generate_stats(self) -> None:
        for gauge, attribute in self._gauges:
            gauge.set(int(getattr(self.cache, attribute)))