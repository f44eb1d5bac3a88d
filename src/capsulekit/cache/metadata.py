"""Per-capsule scan flags, keyed by file stat, with an on-disk snapshot.

An entry is trusted only while the capsule's size and modification time
match what was recorded. The snapshot (`.capsule-metadata.json` beside the
capsules) lets a restarted process skip re-scanning unchanged archives:

    {"version": 1, "capsules": {"kjv.tar.gz": {"mod_time": 1700000000,
     "size": 1234, "is_cas": false, "has_ir": true}}}
"""

from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from capsulekit.cache.ttl import Clock
from capsulekit.capsule.store import ArchiveStore
from capsulekit.capsule.types import ScanFlags
from capsulekit.core.errors import CapsuleKitError
from capsulekit.core.logging import get_logger
from capsulekit.core.pool import parallel_map
from capsulekit.core.rwlock import RWLock

log = get_logger(__name__)

SNAPSHOT_NAME = ".capsule-metadata.json"
SNAPSHOT_VERSION = 1


@dataclass(frozen=True, slots=True)
class MetadataEntry:
    mod_time: int
    size: int
    is_cas: bool
    has_ir: bool
    checked_at: float = 0.0

    @property
    def flags(self) -> ScanFlags:
        return ScanFlags(is_cas=self.is_cas, has_ir=self.has_ir)

    def matches(self, st: os.stat_result) -> bool:
        return self.size == st.st_size and self.mod_time == int(st.st_mtime)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mod_time": self.mod_time,
            "size": self.size,
            "is_cas": self.is_cas,
            "has_ir": self.has_ir,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], checked_at: float) -> MetadataEntry:
        return cls(
            mod_time=int(data["mod_time"]),
            size=int(data["size"]),
            is_cas=bool(data.get("is_cas", False)),
            has_ir=bool(data.get("has_ir", False)),
            checked_at=checked_at,
        )


class CapsuleMetadataCache:
    def __init__(
        self,
        store: ArchiveStore,
        *,
        ttl: float,
        snapshot_path: Path | None = None,
        max_workers: int = 16,
        clock: Clock = time.monotonic,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.snapshot_path = snapshot_path
        self.max_workers = max_workers
        self._clock = clock
        self._lock = RWLock()
        self._entries: dict[str, MetadataEntry] = {}
        self._dirty = False
        self._scan_locks: dict[str, threading.Lock] = {}
        self._scan_locks_guard = threading.Lock()
        self.scan_count = 0

    def _valid(self, entry: MetadataEntry | None, st: os.stat_result) -> bool:
        return (
            entry is not None
            and entry.matches(st)
            and self._clock() - entry.checked_at < self.ttl
        )

    def _scan_lock(self, name: str) -> threading.Lock:
        with self._scan_locks_guard:
            lock = self._scan_locks.get(name)
            if lock is None:
                lock = self._scan_locks[name] = threading.Lock()
            return lock

    def get(self, path: Path) -> ScanFlags:
        """Scan flags for one capsule, scanning the archive only on a miss.

        Raises:
            CapsuleNotFoundError / CorruptedArchiveError: from the scan
        """
        name = path.name
        st = path.stat()
        with self._lock.read():
            entry = self._entries.get(name)
            if self._valid(entry, st):
                return entry.flags  # type: ignore[union-attr]

        with self._scan_lock(name):
            with self._lock.read():
                entry = self._entries.get(name)
                if self._valid(entry, st):
                    return entry.flags  # type: ignore[union-attr]

            flags = self.store.scan_metadata(path)
            fresh = MetadataEntry(
                mod_time=int(st.st_mtime),
                size=st.st_size,
                is_cas=flags.is_cas,
                has_ir=flags.has_ir,
                checked_at=self._clock(),
            )
            with self._lock.write():
                self._entries[name] = fresh
                self._dirty = True
                self.scan_count += 1
        return flags

    def peek(self, name: str) -> MetadataEntry | None:
        with self._lock.read():
            return self._entries.get(name)

    def invalidate(self, name: str | None = None) -> None:
        with self._lock.write():
            if name is None:
                self._entries.clear()
            else:
                self._entries.pop(name, None)
            self._dirty = True
        with self._scan_locks_guard:
            if name is None:
                self._scan_locks.clear()
            else:
                self._scan_locks.pop(name, None)

    def preload(self, paths: list[Path]) -> dict[str, ScanFlags]:
        """Scan every capsule not already cached, over the worker pool.

        A capsule that cannot be scanned is logged and left out.
        """

        def scan_one(path: Path) -> tuple[str, ScanFlags | None]:
            try:
                return path.name, self.get(path)
            except (CapsuleKitError, OSError) as e:
                log.warning(f"metadata scan failed capsule={path.name}: {e}")
                return path.name, None

        before = self.scan_count
        results = parallel_map(scan_one, paths, self.max_workers)
        flags = {r.value[0]: r.value[1] for r in results if r.ok and r.value[1] is not None}
        log.verbose(
            f"capsule metadata: {len(flags) - (self.scan_count - before)} cached, "
            f"{self.scan_count - before} scanned"
        )
        return flags

    # --- snapshot ----------------------------------------------------------

    def load(self) -> int:
        """Merge the on-disk snapshot; returns the number of entries taken."""
        if self.snapshot_path is None or not self.snapshot_path.is_file():
            return 0
        try:
            raw = json.loads(self.snapshot_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            log.warning(f"metadata snapshot unreadable, ignoring: {e}")
            return 0
        if not isinstance(raw, dict) or raw.get("version") != SNAPSHOT_VERSION:
            log.verbose("metadata snapshot has another version, ignoring")
            return 0

        now = self._clock()
        loaded: dict[str, MetadataEntry] = {}
        for name, data in (raw.get("capsules") or {}).items():
            try:
                loaded[name] = MetadataEntry.from_dict(data, checked_at=now)
            except (KeyError, TypeError, ValueError):
                log.debug(f"metadata snapshot entry skipped: {name!r}")
        with self._lock.write():
            for name, entry in loaded.items():
                self._entries.setdefault(name, entry)
        return len(loaded)

    def save(self) -> bool:
        """Write the snapshot when something changed; entries for vanished files are dropped."""
        if self.snapshot_path is None:
            return False
        with self._lock.read():
            if not self._dirty:
                return False
            entries = dict(self._entries)

        base = self.snapshot_path.parent
        capsules = {
            name: entry.to_dict()
            for name, entry in sorted(entries.items())
            if (base / name).is_file()
        }
        payload = {"version": SNAPSHOT_VERSION, "capsules": capsules}

        base.mkdir(parents=True, exist_ok=True)
        tmp = self.snapshot_path.with_name(self.snapshot_path.name + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp, self.snapshot_path)
        with self._lock.write():
            self._dirty = False
        log.debug(f"metadata snapshot saved entries={len(capsules)}")
        return True
