"""In-process plugin base class.

Embedded plugins answer the same IPCRequest/IPCResponse pairs as external
executables, so the runner treats both alike.
"""

from __future__ import annotations

import traceback
from pathlib import Path
from typing import Any, ClassVar

from capsulekit.core.logging import get_logger
from capsulekit.plugins.descriptor import PluginDescriptor, PluginSource
from capsulekit.plugins.ipc import Command, IPCRequest, IPCResponse

log = get_logger(__name__)

NOT_IMPLEMENTED = "not implemented in embedded plugin; requires external plugin"


class EmbeddedPlugin:
    plugin_id: ClassVar[str] = ""
    version: ClassVar[str] = "1.0.0"
    inputs: ClassVar[tuple[str, ...]] = ()
    outputs: ClassVar[tuple[str, ...]] = ()
    suffixes: ClassVar[tuple[str, ...]] = ()
    can_extract: ClassVar[bool] = False
    can_emit: ClassVar[bool] = False

    @classmethod
    def descriptor(cls) -> PluginDescriptor:
        return PluginDescriptor(
            plugin_id=cls.plugin_id,
            version=cls.version,
            kind=cls.plugin_id.split(".", 1)[0],
            entrypoint="(embedded)",
            inputs=cls.inputs,
            outputs=cls.outputs,
            license="MIT",
            can_extract=cls.can_extract,
            can_emit=cls.can_emit,
            source=PluginSource.EMBEDDED,
        )

    def handle(self, request: IPCRequest) -> IPCResponse:
        try:
            if request.command == Command.DETECT:
                return IPCResponse.success(self.detect(Path(request.arg("path"))))
            if request.command == Command.EXTRACT_IR:
                if not self.can_extract:
                    return IPCResponse.failure(f"extract-ir {NOT_IMPLEMENTED}")
                result = self.extract_ir(
                    Path(request.arg("path")), Path(request.arg("output_dir"))
                )
                return IPCResponse.success(result)
            if request.command == Command.EMIT_NATIVE:
                if not self.can_emit:
                    return IPCResponse.failure(f"emit-native {NOT_IMPLEMENTED}")
                result = self.emit_native(
                    Path(request.arg("ir_path")), Path(request.arg("output_dir"))
                )
                return IPCResponse.success(result)
        except Exception as e:
            # Plugin boundary: failures travel back as status=error.
            log.debug(
                f"{self.plugin_id} {request.command} raised {type(e).__name__}: {e}\n"
                f"{traceback.format_exc()}"
            )
            return IPCResponse.failure(f"{request.command} failed: {type(e).__name__}")
        return IPCResponse.failure(f"command '{request.command}' not supported")

    def detect(self, path: Path) -> dict[str, Any]:
        name = path.name.lower()
        for suffix in self.suffixes:
            if name.endswith(suffix):
                return {"detected": True, "format": self.format_name, "reason": f"suffix {suffix}"}
        return {"detected": False, "reason": "no matching suffix"}

    @property
    def format_name(self) -> str:
        return self.plugin_id.split(".", 1)[-1]

    def extract_ir(self, path: Path, output_dir: Path) -> dict[str, Any]:
        raise NotImplementedError

    def emit_native(self, ir_path: Path, output_dir: Path) -> dict[str, Any]:
        raise NotImplementedError


def sniff(path: Path, needle: bytes, limit: int = 4096) -> bool:
    try:
        with path.open("rb") as f:
            return needle in f.read(limit)
    except OSError:
        return False


def sibling_files(path: Path, suffixes: tuple[str, ...]) -> list[Path]:
    """The file itself plus same-format siblings; a directory yields its files."""
    base = path if path.is_dir() else path.parent
    found = sorted(
        p for p in base.iterdir() if p.is_file() and p.name.lower().endswith(suffixes)
    )
    if path.is_file() and path not in found:
        found.insert(0, path)
    return found
