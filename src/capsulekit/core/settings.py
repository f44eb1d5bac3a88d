"""Typed runtime settings resolved once at process start."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from capsulekit.core.config import ConfigResolver


class PluginPosture(StrEnum):
    """Plugin security posture; exactly one is active per process."""

    PERMISSIVE = "permissive"  # embedded plugins only
    RESTRICTED = "restricted"  # embedded + one whitelisted external directory


@dataclass(frozen=True, slots=True)
class CacheTTLs:
    capsules: float = 300.0
    bibles: float = 300.0
    corpus: float = 600.0
    manageable: float = 300.0
    sword_modules: float = 600.0
    metadata: float = 1800.0


@dataclass(frozen=True, slots=True)
class Settings:
    capsules_dir: Path
    state_dir: Path
    sword_dir: Path
    plugins_dir: Path
    plugin_posture: PluginPosture = PluginPosture.PERMISSIVE
    plugin_timeout: float = 60.0
    max_concurrent_reads: int = 16
    max_workers: int = 16
    background_refresh: bool = False
    refresh_fraction: float = 0.8
    ttls: CacheTTLs = field(default_factory=CacheTTLs)
    logging_level: str = "normal"
    logging_colors: bool = True
    diagnostics_enabled: bool = False

    @classmethod
    def from_resolver(cls, resolver: ConfigResolver) -> Settings:
        posture = resolver.resolve_choice(
            "plugins.posture", {p.value for p in PluginPosture}
        )
        fraction = resolver.resolve_float("cache.refresh_fraction", minimum=0.05)
        return cls(
            capsules_dir=resolver.resolve_path("capsules_dir"),
            state_dir=resolver.resolve_path("state_dir"),
            sword_dir=resolver.resolve_path("sword_dir"),
            plugins_dir=resolver.resolve_path("plugins.dir"),
            plugin_posture=PluginPosture(posture),
            plugin_timeout=resolver.resolve_float("plugins.timeout_s", minimum=0.1),
            max_concurrent_reads=resolver.resolve_int("archive.max_concurrent_reads", minimum=1),
            max_workers=resolver.resolve_int("pool.max_workers", minimum=1),
            background_refresh=resolver.resolve_bool("cache.background_refresh"),
            refresh_fraction=min(fraction, 1.0),
            ttls=CacheTTLs(
                capsules=resolver.resolve_float("cache.ttl.capsules_s", minimum=0),
                bibles=resolver.resolve_float("cache.ttl.bibles_s", minimum=0),
                corpus=resolver.resolve_float("cache.ttl.corpus_s", minimum=0),
                manageable=resolver.resolve_float("cache.ttl.manageable_s", minimum=0),
                sword_modules=resolver.resolve_float("cache.ttl.sword_modules_s", minimum=0),
                metadata=resolver.resolve_float("cache.ttl.metadata_s", minimum=0),
            ),
            logging_level=resolver.resolve_logging_level(),
            logging_colors=resolver.resolve_bool("logging.colors"),
            diagnostics_enabled=resolver.resolve_bool("diagnostics.enabled"),
        )

    @property
    def external_plugins_enabled(self) -> bool:
        return self.plugin_posture is PluginPosture.RESTRICTED
