"""JSON request/response protocol spoken with converter plugins.

A request is one JSON object on the plugin's stdin:

    {"command": "extract-ir", "args": {"path": "...", "output_dir": "..."}}

and the plugin answers with one JSON object on stdout:

    {"status": "ok", "result": {...}}
    {"status": "error", "error": "message"}

`extract-ir` results come in two shapes, kept apart as two result types:
the single shape carries `ir_path` at the top level, the multi-module shape
(older SWORD-style plugins) carries `modules: [...]` with per-module status.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from capsulekit.core.errors import PluginExecutionError, PluginProtocolError


class Command(StrEnum):
    DETECT = "detect"
    EXTRACT_IR = "extract-ir"
    EMIT_NATIVE = "emit-native"


class Status(StrEnum):
    OK = "ok"
    ERROR = "error"


@dataclass(frozen=True)
class IPCRequest:
    command: str
    args: dict[str, Any] = field(default_factory=dict)
    profile: str | None = None

    def to_json(self) -> str:
        payload: dict[str, Any] = {"command": self.command}
        if self.args:
            payload["args"] = self.args
        if self.profile:
            payload["profile"] = self.profile
        return json.dumps(payload, ensure_ascii=False) + "\n"

    @classmethod
    def from_json(cls, text: str) -> IPCRequest:
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("request must be a JSON object")
        command = data.get("command") or data.get("profile")
        if not isinstance(command, str) or not command:
            raise ValueError("request names no command")
        args = data.get("args") or {}
        if not isinstance(args, dict):
            raise ValueError("request args must be an object")
        return cls(command=command, args=args, profile=data.get("profile"))

    def arg(self, key: str) -> str:
        value = self.args.get(key)
        return "" if value is None else str(value)


def detect_request(path: str) -> IPCRequest:
    return IPCRequest(Command.DETECT.value, {"path": path})


def extract_ir_request(path: str, output_dir: str) -> IPCRequest:
    return IPCRequest(Command.EXTRACT_IR.value, {"path": path, "output_dir": output_dir})


def emit_native_request(ir_path: str, output_dir: str) -> IPCRequest:
    return IPCRequest(Command.EMIT_NATIVE.value, {"ir_path": ir_path, "output_dir": output_dir})


@dataclass(frozen=True)
class IPCResponse:
    status: str
    result: Any = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == Status.OK

    @classmethod
    def success(cls, result: Any) -> IPCResponse:
        return cls(status=Status.OK.value, result=result)

    @classmethod
    def failure(cls, message: str) -> IPCResponse:
        return cls(status=Status.ERROR.value, error=message)

    def to_json(self) -> str:
        payload: dict[str, Any] = {"status": self.status}
        if self.result is not None:
            payload["result"] = self.result
        if self.error:
            payload["error"] = self.error
        return json.dumps(payload, ensure_ascii=False)

    @classmethod
    def from_json(cls, plugin_id: str, text: str) -> IPCResponse:
        """Parse stdout of a plugin.

        Raises:
            PluginProtocolError: not exactly one JSON object with a valid status
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise PluginProtocolError(plugin_id, f"{e}; output={text[:500]!r}") from e
        if not isinstance(data, dict):
            raise PluginProtocolError(plugin_id, "response is not a JSON object")
        status = data.get("status")
        if status not in (Status.OK.value, Status.ERROR.value):
            raise PluginProtocolError(plugin_id, f"invalid status {status!r}")
        error = data.get("error") or ""
        return cls(status=status, result=data.get("result"), error=str(error))


# --- typed results -----------------------------------------------------------


@dataclass(frozen=True)
class DetectResult:
    detected: bool
    format: str = ""
    reason: str = ""


@dataclass(frozen=True)
class SingleExtractResult:
    ir_path: str
    loss_class: str = ""
    loss_report: dict[str, Any] | None = None


@dataclass(frozen=True)
class ModuleOutcome:
    module: str
    status: str
    ir_path: str = ""
    loss_class: str = ""
    error: str = ""
    reason: str = ""


@dataclass(frozen=True)
class MultiModuleExtractResult:
    modules: tuple[ModuleOutcome, ...]
    count: int = 0


ExtractIRResult = SingleExtractResult | MultiModuleExtractResult


@dataclass(frozen=True)
class EmitResult:
    output_path: str
    format: str = ""
    loss_class: str = ""
    loss_report: dict[str, Any] | None = None


def _result_object(plugin_id: str, resp: IPCResponse) -> dict[str, Any]:
    if not resp.ok:
        raise PluginExecutionError(plugin_id, resp.error or "unknown plugin error")
    if not isinstance(resp.result, dict):
        raise PluginProtocolError(plugin_id, f"result is {type(resp.result).__name__}, not an object")
    return resp.result


def parse_detect_result(plugin_id: str, resp: IPCResponse) -> DetectResult:
    data = _result_object(plugin_id, resp)
    return DetectResult(
        detected=bool(data.get("detected", False)),
        format=str(data.get("format") or ""),
        reason=str(data.get("reason") or ""),
    )


def parse_extract_ir_result(plugin_id: str, resp: IPCResponse) -> ExtractIRResult:
    """Classify an extract-ir result into one of the two shapes."""
    data = _result_object(plugin_id, resp)

    ir_path = data.get("ir_path")
    if isinstance(ir_path, str) and ir_path:
        report = data.get("loss_report")
        return SingleExtractResult(
            ir_path=ir_path,
            loss_class=str(data.get("loss_class") or ""),
            loss_report=report if isinstance(report, dict) else None,
        )

    modules = data.get("modules")
    if isinstance(modules, list) and modules:
        outcomes = tuple(
            ModuleOutcome(
                module=str(m.get("module") or ""),
                status=str(m.get("status") or ""),
                ir_path=str(m.get("ir_path") or ""),
                loss_class=str(m.get("loss_class") or ""),
                error=str(m.get("error") or ""),
                reason=str(m.get("reason") or ""),
            )
            for m in modules
            if isinstance(m, dict)
        )
        count = data.get("count")
        return MultiModuleExtractResult(
            modules=outcomes, count=count if isinstance(count, int) else len(outcomes)
        )

    raise PluginProtocolError(plugin_id, "extract-ir result has neither ir_path nor modules")


def resolve_extract_result(plugin_id: str, result: ExtractIRResult) -> SingleExtractResult:
    """Reduce either shape to the one IR path the pipeline continues with.

    Multi-module: the first module with status ok and an IR path wins; else
    the first error or skipped module is reported; else "no IR generated".
    """
    if isinstance(result, SingleExtractResult):
        return result

    for m in result.modules:
        if m.status == Status.OK and m.ir_path:
            return SingleExtractResult(ir_path=m.ir_path, loss_class=m.loss_class)

    for m in result.modules:
        if m.status == Status.ERROR:
            raise PluginExecutionError(plugin_id, f"module {m.module}: {m.error}")
        if m.status == "skipped":
            raise PluginExecutionError(plugin_id, f"module {m.module} skipped: {m.reason}")

    raise PluginExecutionError(plugin_id, "no IR generated from any module")


def parse_emit_result(plugin_id: str, resp: IPCResponse) -> EmitResult:
    data = _result_object(plugin_id, resp)
    output_path = data.get("output_path")
    if not isinstance(output_path, str) or not output_path:
        raise PluginProtocolError(plugin_id, "emit-native result has no output_path")
    report = data.get("loss_report")
    return EmitResult(
        output_path=output_path,
        format=str(data.get("format") or ""),
        loss_class=str(data.get("loss_class") or ""),
        loss_report=report if isinstance(report, dict) else None,
    )
