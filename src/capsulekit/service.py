"""CapsuleService - the library facade.

Wires the archive store, plugin runtime, conversion pipeline and cache
service from one Settings object. Every mutating operation invalidates
the caches it affects once it has succeeded.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any

from capsulekit.cache import CacheService, Mutation
from capsulekit.capsule import ArchiveStore, CapsuleInfo, archive_format_for
from capsulekit.convert import ConversionPipeline, ConversionResult
from capsulekit.core.errors import CapsuleKitError, CapsuleNotFoundError
from capsulekit.core.logging import get_logger
from capsulekit.core.settings import Settings
from capsulekit.ir import Corpus
from capsulekit.library import BibleInfo, CapsuleCategories, ManageableEntry
from capsulekit.plugins import PluginDescriptor, PluginLoader, PluginRunner

log = get_logger(__name__)


class CapsuleService:
    def __init__(
        self,
        settings: Settings,
        *,
        store: ArchiveStore | None = None,
        loader: PluginLoader | None = None,
        runner: PluginRunner | None = None,
        cache: CacheService | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or ArchiveStore(
            settings.capsules_dir, max_concurrent_reads=settings.max_concurrent_reads
        )
        if loader is None:
            loader = PluginLoader(
                settings.plugins_dir if settings.external_plugins_enabled else None,
                settings.plugin_posture,
            )
            loader.load_external()
        self.loader = loader
        self.runner = runner or PluginRunner(self.loader, timeout=settings.plugin_timeout)
        self.pipeline = ConversionPipeline(self.store, self.loader, self.runner)
        self.cache = cache or CacheService(
            self.store,
            sword_dir=settings.sword_dir,
            ttls=settings.ttls,
            max_workers=settings.max_workers,
            refresh_fraction=settings.refresh_fraction,
        )
        if settings.background_refresh:
            self.cache.start_background_refresh()

    @classmethod
    def from_settings(cls, settings: Settings) -> CapsuleService:
        return cls(settings)

    def close(self) -> None:
        self.cache.close()

    # --- lookup ------------------------------------------------------------

    def locate(self, name: str | Path) -> Path:
        """Capsule path from a file name or a capsule ID."""
        path = self.store.resolve(name, must_exist=False)
        if path.is_file():
            return path
        try:
            return self.cache.find_capsule(str(name)).path
        except CapsuleNotFoundError:
            raise CapsuleNotFoundError(str(name)) from None

    # --- reads -------------------------------------------------------------

    def list_capsules(self) -> list[CapsuleInfo]:
        return self.cache.list_capsules()

    def describe(self, name: str | Path) -> dict[str, Any]:
        path = self.locate(name)
        info = CapsuleInfo.from_path(path, path.stat().st_size)
        flags = self.cache.flags(info)
        manifest, artifacts = self.store.read_capsule(path)
        return {
            "capsule": info.to_dict(),
            "is_cas": flags.is_cas,
            "has_ir": flags.has_ir,
            "manifest": manifest.to_dict() if manifest is not None else None,
            "artifacts": [a.to_dict() for a in artifacts],
        }

    def read_artifact(self, name: str | Path, artifact_id: str) -> tuple[bytes, str]:
        return self.store.read_artifact(self.locate(name), artifact_id)

    def read_ir(self, name: str | Path) -> dict[str, Any]:
        return self.store.read_ir(self.locate(name))

    def get_corpus(self, capsule_id: str) -> Corpus:
        return self.cache.get_corpus(capsule_id)

    def list_bibles(self) -> list[BibleInfo]:
        return self.cache.list_bibles()

    def manageable_bibles(self) -> tuple[list[ManageableEntry], list[ManageableEntry]]:
        return self.cache.manageable_bibles()

    def list_sword_modules(self) -> list[ManageableEntry]:
        return self.cache.list_sword_modules()

    def categories(self) -> CapsuleCategories:
        return self.cache.categories()

    def list_plugins(self, kind: str | None = None) -> list[PluginDescriptor]:
        return self.loader.list_plugins(kind)

    # --- mutations ---------------------------------------------------------

    def _after(self, mutation: Mutation, result: ConversionResult) -> ConversionResult:
        if result.success:
            self.cache.invalidate(mutation, result.capsule)
        return result

    def generate_ir(self, name: str | Path) -> ConversionResult:
        return self._after(Mutation.GENERATE_IR, self.pipeline.generate_ir(self.locate(name)))

    def convert(self, name: str | Path, target_format: str) -> ConversionResult:
        return self._after(
            Mutation.CONVERT, self.pipeline.convert(self.locate(name), target_format)
        )

    def convert_cas(self, name: str | Path) -> ConversionResult:
        return self._after(Mutation.CONVERT_CAS, self.pipeline.convert_cas(self.locate(name)))

    def install(self, source: Path) -> CapsuleInfo:
        """Copy an archive into the capsule directory.

        Raises:
            UnsupportedArchiveError: source is not tar, tar.gz or tar.xz
            CapsuleKitError: a capsule with that file name already exists
        """
        archive_format_for(source)
        if not source.is_file():
            raise CapsuleNotFoundError(str(source))
        dest = self.store.resolve(source.name, must_exist=False)
        if dest.exists():
            raise CapsuleKitError(
                f"Capsule '{source.name}' already exists",
                "Delete it first or rename the archive",
            )

        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(f".{dest.name}.partial")
        try:
            shutil.copyfile(source, tmp)
            os.replace(tmp, dest)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        self.cache.invalidate(Mutation.INSTALL, dest.name)
        log.info(f"capsule installed: {dest.name}")
        return CapsuleInfo.from_path(dest, dest.stat().st_size)

    def delete(self, name: str | Path) -> Path:
        path = self.store.delete(self.locate(name))
        self.cache.invalidate(Mutation.DELETE, path.name)
        return path
