"""Plugin loader and discovery.

Embedded plugins are always registered. External plugins are discovered
only under the restricted posture, from the single configured plugin
directory, in both layouts:

    <plugins_dir>/<plugin>/plugin.json
    <plugins_dir>/<kind>/<plugin>/plugin.json
"""

from __future__ import annotations

import os
from pathlib import Path

from capsulekit import __version__
from capsulekit.core.errors import (
    PluginError,
    PluginNotFoundError,
    PluginValidationError,
)
from capsulekit.core.logging import get_logger
from capsulekit.core.settings import PluginPosture
from capsulekit.plugins.descriptor import (
    PLUGIN_KINDS,
    PluginDescriptor,
    has_descriptor,
    is_compatible,
    load_descriptor,
)
from capsulekit.plugins.embedded import list_embedded

log = get_logger(__name__)


class PluginLoader:
    """Registry of plugin descriptors for one process."""

    def __init__(
        self,
        plugins_dir: Path | None = None,
        posture: PluginPosture = PluginPosture.PERMISSIVE,
        *,
        host_version: str = __version__,
    ) -> None:
        if posture is PluginPosture.RESTRICTED and plugins_dir is None:
            raise PluginValidationError("Restricted plugin posture requires a plugin directory")

        self.plugins_dir = plugins_dir
        self.posture = posture
        self.host_version = host_version

        self._embedded: dict[str, PluginDescriptor] = {}
        self._external: dict[str, PluginDescriptor] = {}

        for plugin in list_embedded():
            desc = plugin.descriptor()
            self._embedded[desc.plugin_id] = desc
            log.debug(f"plugin registered id={desc.plugin_id} version={desc.version} source=embedded")

    @property
    def external_enabled(self) -> bool:
        return self.posture is PluginPosture.RESTRICTED

    def discover(self) -> list[Path]:
        """Plugin directories under plugins_dir, in sorted order."""
        if not self.external_enabled or self.plugins_dir is None:
            return []
        base = self.plugins_dir
        if not base.is_dir():
            return []

        found: list[Path] = []
        for entry in sorted(base.iterdir(), key=lambda p: p.name):
            if not entry.is_dir():
                continue
            if has_descriptor(entry):
                found.append(entry)
            elif entry.name in PLUGIN_KINDS:
                found.extend(
                    sub
                    for sub in sorted(entry.iterdir(), key=lambda p: p.name)
                    if sub.is_dir() and has_descriptor(sub)
                )
        return found

    def load_external(self) -> list[PluginDescriptor]:
        """Load every discoverable external plugin; broken ones are skipped with a warning."""
        loaded: list[PluginDescriptor] = []
        for plugin_dir in self.discover():
            try:
                desc = load_descriptor(plugin_dir)
            except PluginError as e:
                log.warning(f"skipping plugin at {plugin_dir}: {e.message}")
                continue
            if not is_compatible(desc, self.host_version):
                log.warning(
                    f"skipping incompatible plugin {desc.plugin_id}: needs host "
                    f">= {desc.min_host_version}, running {self.host_version}"
                )
                continue
            self._external[desc.plugin_id] = desc
            loaded.append(desc)
            log.debug(f"plugin registered id={desc.plugin_id} version={desc.version} source=external path={plugin_dir}")
        return loaded

    def get(self, plugin_id: str) -> PluginDescriptor:
        """Descriptor for plugin_id; an external plugin shadows the embedded one."""
        desc = self._external.get(plugin_id) or self._embedded.get(plugin_id)
        if desc is None:
            raise PluginNotFoundError(plugin_id)
        return desc

    def has(self, plugin_id: str) -> bool:
        return plugin_id in self._external or plugin_id in self._embedded

    def embedded(self, plugin_id: str) -> PluginDescriptor | None:
        return self._embedded.get(plugin_id)

    def external(self, plugin_id: str) -> PluginDescriptor | None:
        return self._external.get(plugin_id)

    def list_plugins(self, kind: str | None = None) -> list[PluginDescriptor]:
        merged = {**self._embedded, **self._external}
        out = [merged[k] for k in sorted(merged)]
        if kind is not None:
            out = [d for d in out if d.kind == kind]
        return out

    def validate_entrypoint(self, desc: PluginDescriptor) -> Path:
        """Resolve an external entrypoint, refusing anything outside plugins_dir.

        Raises:
            PluginValidationError: escape, missing file or not executable
        """
        if self.plugins_dir is None or desc.path is None or not desc.entrypoint:
            raise PluginValidationError(f"Plugin '{desc.plugin_id}' has no external entrypoint")

        root = self.plugins_dir.resolve()
        entry = (desc.path / desc.entrypoint).resolve()
        try:
            entry.relative_to(root)
        except ValueError:
            raise PluginValidationError(
                f"Plugin '{desc.plugin_id}' entrypoint escapes the plugin directory"
            ) from None

        if not entry.is_file():
            raise PluginValidationError(f"Plugin '{desc.plugin_id}' entrypoint not found")
        if not os.access(entry, os.X_OK):
            raise PluginValidationError(f"Plugin '{desc.plugin_id}' entrypoint is not executable")
        return entry
