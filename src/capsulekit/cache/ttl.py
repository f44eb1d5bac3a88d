"""TTL caches with double-checked rebuilds.

State is `(value, populated, timestamp, ttl)` behind a readers-writer
lock. A read that finds the entry cold or expired escalates to the write
lock and checks again before rebuilding, so racing readers trigger one
rebuild. Invalidation only clears `populated`; the stale value is never
served again.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

from capsulekit.core.diagnostics import duration_ms, emit_diag
from capsulekit.core.logging import get_logger
from capsulekit.core.rwlock import RWLock

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)

Clock = Callable[[], float]

log = get_logger(__name__)


class TTLCache(Generic[T]):
    def __init__(
        self,
        name: str,
        builder: Callable[[], T],
        ttl: float,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self.name = name
        self.ttl = ttl
        self._builder = builder
        self._clock = clock
        self._lock = RWLock()
        self._value: T | None = None
        self._populated = False
        self._timestamp = 0.0
        self.build_count = 0

    def _fresh(self) -> bool:
        return self._populated and self._clock() - self._timestamp < self.ttl

    def get(self) -> T:
        with self._lock.read():
            if self._fresh():
                return self._value  # type: ignore[return-value]
        with self._lock.write():
            if self._fresh():
                return self._value  # type: ignore[return-value]
            return self._rebuild_locked()

    def _rebuild_locked(self) -> T:
        t0 = time.monotonic()
        value = self._builder()
        self._value = value
        self._populated = True
        self._timestamp = self._clock()
        self.build_count += 1

        elapsed = duration_ms(t0, time.monotonic())
        log.debug(f"cache {self.name} rebuilt in {elapsed} ms")
        emit_diag(
            "cache.rebuild",
            component="cache",
            operation=self.name,
            data={"cache": self.name, "builds": self.build_count, "duration_ms": elapsed},
        )
        return value

    def invalidate(self) -> None:
        with self._lock.write():
            self._populated = False

    def refresh(self) -> T:
        """Rebuild now, regardless of age."""
        with self._lock.write():
            return self._rebuild_locked()

    def refresh_if_stale(self, fraction: float) -> bool:
        """Rebuild a populated entry older than `fraction` of its TTL.

        Cold entries are left alone; the next reader builds them.
        """
        with self._lock.read():
            due = self._due(fraction)
        if not due:
            return False
        with self._lock.write():
            if not self._due(fraction):
                return False
            self._rebuild_locked()
        return True

    def _due(self, fraction: float) -> bool:
        return self._populated and self._clock() - self._timestamp >= self.ttl * fraction

    @property
    def populated(self) -> bool:
        with self._lock.read():
            return self._populated

    def age(self) -> float | None:
        with self._lock.read():
            if not self._populated:
                return None
            return self._clock() - self._timestamp


class KeyedTTLCache(Generic[K, T]):
    """One TTLCache per key; keys rebuild independently.

    Invalidation removes entries outright, so the map holds only keys
    that built successfully since the last invalidation.
    """

    def __init__(
        self,
        name: str,
        builder: Callable[[K], T],
        ttl: float,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self.name = name
        self.ttl = ttl
        self._builder = builder
        self._clock = clock
        self._entries: dict[K, TTLCache[T]] = {}
        self._entries_lock = threading.Lock()

    def _entry(self, key: K) -> TTLCache[T]:
        with self._entries_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = TTLCache(
                    f"{self.name}[{key}]",
                    lambda: self._builder(key),
                    self.ttl,
                    clock=self._clock,
                )
                self._entries[key] = entry
            return entry

    def get(self, key: K) -> T:
        """Value for `key`; a key whose first build raises is not kept."""
        entry = self._entry(key)
        try:
            return entry.get()
        except Exception:
            if not entry.populated:
                with self._entries_lock:
                    if self._entries.get(key) is entry:
                        del self._entries[key]
            raise

    def invalidate(self, key: K | None = None) -> None:
        """Drop one key, or every key; the next get() rebuilds."""
        with self._entries_lock:
            if key is None:
                self._entries = {}
            else:
                self._entries.pop(key, None)

    def refresh_stale(self, fraction: float) -> int:
        with self._entries_lock:
            entries = list(self._entries.values())
        return sum(1 for entry in entries if entry.refresh_if_stale(fraction))

    def keys(self) -> list[K]:
        with self._entries_lock:
            return list(self._entries)

    @property
    def build_count(self) -> int:
        with self._entries_lock:
            return sum(entry.build_count for entry in self._entries.values())
