"""Plugin descriptors (plugin.json / plugin.yaml)."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml

from capsulekit.core.errors import PluginError, PluginValidationError

DESCRIPTOR_FILES = ("plugin.json", "plugin.yaml")

# Kind directories scanned one level deeper during discovery.
PLUGIN_KINDS = ("format", "tool", "juniper", "example")


class PluginSource(StrEnum):
    EMBEDDED = "embedded"
    EXTERNAL = "external"


@dataclass(frozen=True)
class PluginDescriptor:
    """Plugin identity and capabilities.

    `plugin_id` has the form `kind.name` (e.g. `format.osis`). External
    plugins carry the directory they were loaded from in `path`.
    """

    plugin_id: str
    version: str
    kind: str
    entrypoint: str = ""
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    license: str = ""
    min_host_version: str = ""
    can_extract: bool = False
    can_emit: bool = False
    source: PluginSource = PluginSource.EMBEDDED
    path: Path | None = None
    attributes: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def name(self) -> str:
        return self.plugin_id.split(".", 1)[-1]

    @property
    def entrypoint_path(self) -> Path | None:
        if self.path is None or not self.entrypoint:
            return None
        return self.path / self.entrypoint

    def to_dict(self) -> dict[str, Any]:
        return {
            "plugin_id": self.plugin_id,
            "version": self.version,
            "kind": self.kind,
            "entrypoint": self.entrypoint,
            "capabilities": {"inputs": list(self.inputs), "outputs": list(self.outputs)},
            "license": self.license,
            "source": self.source.value,
            "path": str(self.path) if self.path else "",
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        *,
        source: PluginSource = PluginSource.EXTERNAL,
        path: Path | None = None,
    ) -> PluginDescriptor:
        for key in ("plugin_id", "version", "kind", "entrypoint"):
            value = data.get(key)
            if not isinstance(value, str) or not value.strip():
                raise PluginValidationError(f"Plugin descriptor field '{key}' is required")

        caps = data.get("capabilities") or {}
        if not isinstance(caps, dict):
            raise PluginValidationError("Plugin descriptor 'capabilities' must be an object")
        ir = data.get("ir_support") or {}
        if not isinstance(ir, dict):
            ir = {}

        return cls(
            plugin_id=data["plugin_id"].strip(),
            version=str(data["version"]).strip(),
            kind=data["kind"].strip(),
            entrypoint=data["entrypoint"].strip(),
            inputs=tuple(str(x) for x in caps.get("inputs") or []),
            outputs=tuple(str(x) for x in caps.get("outputs") or []),
            license=str(data.get("license") or ""),
            min_host_version=str(data.get("min_host_version") or ""),
            can_extract=bool(ir.get("can_extract", False)),
            can_emit=bool(ir.get("can_emit", False)),
            source=source,
            path=path,
        )


def load_descriptor(plugin_dir: Path) -> PluginDescriptor:
    """Load the descriptor of an on-disk plugin directory.

    Raises:
        PluginError: descriptor missing or unreadable
        PluginValidationError: required fields missing
    """
    for filename in DESCRIPTOR_FILES:
        descriptor_path = plugin_dir / filename
        if descriptor_path.is_file():
            break
    else:
        raise PluginError(f"Plugin descriptor not found in {plugin_dir}")

    try:
        with open(descriptor_path, encoding="utf-8") as f:
            if descriptor_path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise PluginError(f"Failed to load descriptor from {descriptor_path}: {e}") from e

    if not isinstance(data, dict):
        raise PluginError(f"Descriptor {descriptor_path} is not a mapping")
    return PluginDescriptor.from_dict(data, source=PluginSource.EXTERNAL, path=plugin_dir)


def has_descriptor(plugin_dir: Path) -> bool:
    return any((plugin_dir / f).is_file() for f in DESCRIPTOR_FILES)


def _version_tuple(version: str) -> tuple[int, ...]:
    parts: list[int] = []
    for piece in version.strip().lstrip("v").split("."):
        digits = "".join(ch for ch in piece if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts)


def is_compatible(descriptor: PluginDescriptor, host_version: str) -> bool:
    if not descriptor.min_host_version:
        return True
    return _version_tuple(host_version) >= _version_tuple(descriptor.min_host_version)
