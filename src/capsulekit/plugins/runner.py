"""Execute plugins over the JSON protocol.

Priority for a plugin id:
1. external binary, when one is loaded (restricted posture) and exists
2. embedded implementation
3. external binary again, when the embedded one answers "not implemented"

External plugins run as a subprocess with a hard timeout; on expiry the
child is killed and PluginTimeoutError is raised.
"""

from __future__ import annotations

import subprocess
import time
from pathlib import Path

from capsulekit.core.diagnostics import duration_ms
from capsulekit.core.errors import PluginExecutionError, PluginNotFoundError, PluginTimeoutError
from capsulekit.core.logging import get_logger
from capsulekit.plugins.descriptor import PluginDescriptor
from capsulekit.plugins.embedded import get_embedded
from capsulekit.plugins.ipc import (
    DetectResult,
    EmitResult,
    ExtractIRResult,
    IPCRequest,
    IPCResponse,
    SingleExtractResult,
    detect_request,
    emit_native_request,
    extract_ir_request,
    parse_detect_result,
    parse_emit_result,
    parse_extract_ir_result,
    resolve_extract_result,
)
from capsulekit.plugins.loader import PluginLoader

log = get_logger(__name__)

DEFAULT_TIMEOUT = 60.0

_FALLBACK_MARKERS = ("requires external plugin", "not implemented", "not supported")

# Captured plugin output kept on errors (diagnosis only).
_MAX_CAPTURE = 8192


def wants_external_fallback(message: str) -> bool:
    return any(marker in message for marker in _FALLBACK_MARKERS)


class PluginRunner:
    def __init__(self, loader: PluginLoader, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.loader = loader
        self.timeout = timeout

    def execute(self, plugin_id: str, request: IPCRequest) -> IPCResponse:
        """Run one request against plugin_id and return the raw response.

        Raises:
            PluginNotFoundError: neither embedded nor external plugin exists
            PluginValidationError: external entrypoint failed path validation
            PluginTimeoutError: external plugin exceeded the timeout
            PluginExecutionError: external plugin exited non-zero
            PluginProtocolError: external plugin output is not a response object
        """
        external = self.loader.external(plugin_id)
        has_binary = external is not None and external.entrypoint_path is not None and (
            external.entrypoint_path.exists()
        )
        if external is not None and has_binary:
            return self._run_external(external, request)

        embedded = get_embedded(plugin_id)
        if embedded is not None:
            log.debug(f"plugin {plugin_id} {request.command} (embedded)")
            resp = embedded.handle(request)
            if not resp.ok and wants_external_fallback(resp.error) and external is not None:
                log.verbose(f"plugin {plugin_id}: embedded answered '{resp.error}'; trying external")
                return self._run_external(external, request)
            return resp

        if external is not None:
            return self._run_external(external, request)
        raise PluginNotFoundError(plugin_id)

    def _run_external(self, desc: PluginDescriptor, request: IPCRequest) -> IPCResponse:
        entry = self.loader.validate_entrypoint(desc)
        t0 = time.monotonic()
        log.debug(f"plugin {desc.plugin_id} {request.command} (external {entry})")
        try:
            proc = subprocess.run(
                [str(entry)],
                input=request.to_json(),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                cwd=str(desc.path) if desc.path else None,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            log.warning(f"plugin {desc.plugin_id} killed after {self.timeout:g}s")
            raise PluginTimeoutError(desc.plugin_id, self.timeout) from e
        except OSError as e:
            raise PluginExecutionError(desc.plugin_id, f"cannot start: {e.strerror or e}") from e

        log.debug(
            f"plugin {desc.plugin_id} exited rc={proc.returncode} "
            f"duration_ms={duration_ms(t0, time.monotonic())}"
        )
        if proc.returncode != 0:
            output = (proc.stderr or "") + (proc.stdout or "")
            log.debug(f"plugin {desc.plugin_id} output:\n{output[:_MAX_CAPTURE]}")
            raise PluginExecutionError(
                desc.plugin_id, f"exit code {proc.returncode}", output=output[:_MAX_CAPTURE]
            )
        return IPCResponse.from_json(desc.plugin_id, proc.stdout)

    # --- typed operations --------------------------------------------------

    def detect(self, plugin_id: str, path: Path) -> DetectResult:
        return parse_detect_result(plugin_id, self.execute(plugin_id, detect_request(str(path))))

    def extract_ir_raw(self, plugin_id: str, path: Path, output_dir: Path) -> ExtractIRResult:
        resp = self.execute(plugin_id, extract_ir_request(str(path), str(output_dir)))
        return parse_extract_ir_result(plugin_id, resp)

    def extract_ir(self, plugin_id: str, path: Path, output_dir: Path) -> SingleExtractResult:
        return resolve_extract_result(plugin_id, self.extract_ir_raw(plugin_id, path, output_dir))

    def emit_native(self, plugin_id: str, ir_path: Path, output_dir: Path) -> EmitResult:
        resp = self.execute(plugin_id, emit_native_request(str(ir_path), str(output_dir)))
        return parse_emit_result(plugin_id, resp)
