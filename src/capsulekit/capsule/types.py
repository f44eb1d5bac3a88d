"""Capsule data types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from capsulekit.capsule.naming import capsule_id, guess_format, human_size


class ArchiveFormat(StrEnum):
    TAR = "tar"
    TAR_GZ = "tar.gz"
    TAR_XZ = "tar.xz"

    @property
    def read_stream_mode(self) -> str:
        return {"tar": "r|", "tar.gz": "r|gz", "tar.xz": "r|xz"}[self.value]

    @property
    def write_mode(self) -> str:
        return {"tar": "w:", "tar.gz": "w:gz", "tar.xz": "w:xz"}[self.value]


@dataclass(frozen=True, slots=True)
class ScanFlags:
    """Result of one metadata pass over a capsule."""

    is_cas: bool = False
    has_ir: bool = False


@dataclass(frozen=True, slots=True)
class CapsuleInfo:
    name: str
    path: Path
    size: int
    format: str

    @property
    def id(self) -> str:
        return capsule_id(self.name)

    @property
    def size_human(self) -> str:
        return human_size(self.size)

    @classmethod
    def from_path(cls, path: Path, size: int) -> CapsuleInfo:
        return cls(name=path.name, path=path, size=size, format=guess_format(path.name))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": str(self.path),
            "size": self.size,
            "size_human": self.size_human,
            "format": self.format,
        }


@dataclass(frozen=True, slots=True)
class Artifact:
    """A non-manifest archive member; `id` is its archive-relative path."""

    id: str
    size: int
    hash: str = ""

    @property
    def name(self) -> str:
        return self.id.rsplit("/", 1)[-1]

    @property
    def size_human(self) -> str:
        return human_size(self.size)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "size": self.size, "hash": self.hash}


# Manifest keys with a dedicated attribute; everything else lands in `extra`.
_MANIFEST_FIELDS = (
    "version",
    "module_type",
    "title",
    "language",
    "rights",
    "source_format",
    "created_at",
)


@dataclass(slots=True)
class Manifest:
    """`manifest.json` contents.

    Unknown keys (conversion bookkeeping such as `has_ir`, CAS `artifacts`,
    plugin-specific data) are preserved in `extra` and written back verbatim.
    """

    version: str = ""
    module_type: str = ""
    title: str = ""
    language: str = ""
    rights: str = ""
    source_format: str = ""
    created_at: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def has_ir(self) -> bool:
        return bool(self.extra.get("has_ir", False))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        if not isinstance(data, dict):
            raise ValueError("manifest must be a JSON object")

        kwargs: dict[str, Any] = {}
        for key in _MANIFEST_FIELDS:
            value = data.get(key)
            kwargs[key] = "" if value is None else str(value)

        raw_meta = data.get("metadata") or {}
        if not isinstance(raw_meta, dict):
            raise ValueError("manifest metadata must be an object")
        metadata = {str(k): str(v) for k, v in raw_meta.items()}

        known = set(_MANIFEST_FIELDS) | {"metadata"}
        extra = {k: v for k, v in data.items() if k not in known}
        return cls(metadata=metadata, extra=extra, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = dict(self.extra)
        for key in _MANIFEST_FIELDS:
            value = getattr(self, key)
            if value:
                out[key] = value
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        return out
