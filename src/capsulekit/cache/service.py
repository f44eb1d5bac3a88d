"""CacheService - every cache the core keeps, owned by one object.

Lifecycle: construct once at startup, populate on demand, invalidate on
each mutation, optionally refresh in the background, then close().

Background refresh wakes at `refresh_fraction` of the shortest TTL and
rebuilds collections that are populated and nearing expiry, so callers
rarely wait for a cold rebuild.
"""

from __future__ import annotations

import threading
import time
from enum import StrEnum
from pathlib import Path

from capsulekit.cache.metadata import SNAPSHOT_NAME, CapsuleMetadataCache
from capsulekit.cache.ttl import Clock, KeyedTTLCache, TTLCache
from capsulekit.capsule.naming import capsule_id, ids_match
from capsulekit.capsule.store import ArchiveStore
from capsulekit.capsule.types import CapsuleInfo, ScanFlags
from capsulekit.core.diagnostics import emit_diag
from capsulekit.core.errors import CapsuleKitError, CapsuleNotFoundError
from capsulekit.core.logging import get_logger
from capsulekit.core.settings import CacheTTLs
from capsulekit.ir import Corpus
from capsulekit.library import (
    BibleInfo,
    CapsuleCategories,
    ManageableEntry,
    build_bibles,
    build_manageable,
    build_sword_modules,
    categorize,
    load_corpus,
)

log = get_logger(__name__)

MIN_REFRESH_INTERVAL = 1.0


class Mutation(StrEnum):
    INSTALL = "install"
    DELETE = "delete"
    CONVERT = "convert"
    GENERATE_IR = "generate-ir"
    CONVERT_CAS = "convert-cas"


# Every mutation rewrites or adds capsule files (a commit also leaves a
# `-old` backup behind), so the listing is always affected.
_AFFECTED: dict[Mutation, frozenset[str]] = {
    Mutation.INSTALL: frozenset({"capsules", "metadata", "bibles", "manageable"}),
    Mutation.DELETE: frozenset({"capsules", "metadata", "bibles", "corpus", "manageable"}),
    Mutation.CONVERT: frozenset({"capsules", "metadata", "bibles", "corpus", "manageable"}),
    Mutation.GENERATE_IR: frozenset({"capsules", "metadata", "bibles", "corpus", "manageable"}),
    Mutation.CONVERT_CAS: frozenset({"capsules", "metadata", "bibles", "corpus", "manageable"}),
}


def affected_caches(mutation: Mutation) -> frozenset[str]:
    return _AFFECTED[mutation]


class CacheService:
    def __init__(
        self,
        store: ArchiveStore,
        *,
        sword_dir: Path,
        ttls: CacheTTLs | None = None,
        max_workers: int = 16,
        refresh_fraction: float = 0.8,
        snapshot_path: Path | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        ttls = ttls or CacheTTLs()
        self.store = store
        self.sword_dir = sword_dir
        self.ttls = ttls
        self.max_workers = max_workers
        self.refresh_fraction = refresh_fraction

        if snapshot_path is None:
            snapshot_path = store.capsules_dir / SNAPSHOT_NAME
        self.metadata = CapsuleMetadataCache(
            store,
            ttl=ttls.metadata,
            snapshot_path=snapshot_path,
            max_workers=max_workers,
            clock=clock,
        )
        self.capsules: TTLCache[list[CapsuleInfo]] = TTLCache(
            "capsules", store.list_capsules, ttls.capsules, clock=clock
        )
        self.bibles: TTLCache[list[BibleInfo]] = TTLCache(
            "bibles", self._build_bibles, ttls.bibles, clock=clock
        )
        self.corpus: KeyedTTLCache[str, Corpus] = KeyedTTLCache(
            "corpus", self._load_corpus, ttls.corpus, clock=clock
        )
        self.manageable: TTLCache[tuple[list[ManageableEntry], list[ManageableEntry]]] = TTLCache(
            "manageable", self._build_manageable, ttls.manageable, clock=clock
        )
        self.sword_modules: TTLCache[list[ManageableEntry]] = TTLCache(
            "sword_modules",
            lambda: build_sword_modules(self.sword_dir, self.max_workers),
            ttls.sword_modules,
            clock=clock,
        )

        self._stop = threading.Event()
        self._refresher: threading.Thread | None = None

    # --- builders ----------------------------------------------------------

    def _build_bibles(self) -> list[BibleInfo]:
        return build_bibles(
            self.list_capsules(), self.flags, lambda c: self.get_corpus(c.id), self.max_workers
        )

    def _build_manageable(self) -> tuple[list[ManageableEntry], list[ManageableEntry]]:
        return build_manageable(
            self.list_capsules(),
            self.flags,
            self.max_workers,
            sword_modules=self.list_sword_modules(),
            bible_ids=[b.id for b in self.list_bibles()],
        )

    def _load_corpus(self, key: str) -> Corpus:
        return load_corpus(self.store, self.find_capsule(key).path)

    # --- reads -------------------------------------------------------------

    def list_capsules(self) -> list[CapsuleInfo]:
        return self.capsules.get()

    def find_capsule(self, wanted: str) -> CapsuleInfo:
        for info in self.list_capsules():
            if ids_match(info.id, wanted):
                return info
        raise CapsuleNotFoundError(wanted)

    def flags(self, capsule: CapsuleInfo) -> ScanFlags:
        return self.metadata.get(capsule.path)

    def get_corpus(self, wanted: str) -> Corpus:
        return self.corpus.get(wanted.casefold())

    def list_bibles(self) -> list[BibleInfo]:
        return self.bibles.get()

    def manageable_bibles(self) -> tuple[list[ManageableEntry], list[ManageableEntry]]:
        return self.manageable.get()

    def list_sword_modules(self) -> list[ManageableEntry]:
        return self.sword_modules.get()

    def categories(self) -> CapsuleCategories:
        return categorize(self.list_capsules(), self.flags, self.max_workers)

    # --- invalidation ------------------------------------------------------

    def invalidate(self, mutation: Mutation, capsule: str | None = None) -> None:
        """Drop everything `mutation` could have changed.

        With `capsule` (a file name), per-capsule caches only drop that
        capsule's entries.
        """
        names = affected_caches(mutation)
        if "capsules" in names:
            self.capsules.invalidate()
        if "metadata" in names:
            self.metadata.invalidate(capsule)
        if "bibles" in names:
            self.bibles.invalidate()
        if "corpus" in names:
            if capsule is None:
                self.corpus.invalidate()
            else:
                self.corpus.invalidate(capsule_id(capsule).casefold())
        if "manageable" in names:
            self.manageable.invalidate()
        log.debug(f"caches invalidated after {mutation}: {', '.join(sorted(names))}")
        emit_diag(
            "cache.invalidate",
            component="cache",
            operation=str(mutation),
            data={"mutation": str(mutation), "capsule": capsule, "caches": sorted(names)},
        )

    def invalidate_all(self) -> None:
        self.capsules.invalidate()
        self.metadata.invalidate()
        self.bibles.invalidate()
        self.corpus.invalidate()
        self.manageable.invalidate()
        self.sword_modules.invalidate()

    # --- warm-up and background refresh ------------------------------------

    def prewarm(self) -> None:
        """Load the metadata snapshot, scan what changed, then build listings."""
        t0 = time.monotonic()
        loaded = self.metadata.load()
        self.metadata.preload([c.path for c in self.list_capsules()])
        try:
            self.metadata.save()
        except OSError as e:
            log.warning(f"metadata snapshot not saved: {e}")
        self.list_bibles()
        self.manageable_bibles()
        log.verbose(
            f"caches warm in {time.monotonic() - t0:.2f}s (snapshot entries: {loaded})"
        )

    def refresh_interval(self) -> float:
        shortest = min(self.ttls.capsules, self.ttls.bibles, self.ttls.manageable)
        return max(shortest * self.refresh_fraction, MIN_REFRESH_INTERVAL)

    def refresh_stale(self) -> list[str]:
        """Rebuild collections nearing expiry; returns the names refreshed."""
        refreshed: list[str] = []
        collections: list[TTLCache] = [
            self.capsules,
            self.bibles,
            self.manageable,
            self.sword_modules,
        ]
        for cache in collections:
            try:
                if cache.refresh_if_stale(self.refresh_fraction):
                    refreshed.append(cache.name)
            except (CapsuleKitError, OSError) as e:
                log.warning(f"background refresh of {cache.name} failed: {e}")
        try:
            if self.corpus.refresh_stale(self.refresh_fraction):
                refreshed.append(self.corpus.name)
        except (CapsuleKitError, OSError) as e:
            log.warning(f"background refresh of corpus failed: {e}")
        if refreshed:
            log.debug(f"background refresh: {', '.join(refreshed)}")
        return refreshed

    def start_background_refresh(self, interval: float | None = None) -> threading.Thread:
        if self._refresher is not None and self._refresher.is_alive():
            return self._refresher
        period = interval if interval is not None else self.refresh_interval()
        self._stop.clear()

        def loop() -> None:
            while not self._stop.wait(period):
                self.refresh_stale()

        self._refresher = threading.Thread(target=loop, name="capsulekit-cache-refresh", daemon=True)
        self._refresher.start()
        log.verbose(f"background cache refresh every {period:g}s")
        return self._refresher

    def close(self) -> None:
        """Stop background refresh and persist the metadata snapshot."""
        self._stop.set()
        if self._refresher is not None:
            self._refresher.join()
            self._refresher = None
        try:
            self.metadata.save()
        except OSError as e:
            log.warning(f"metadata snapshot not saved: {e}")
