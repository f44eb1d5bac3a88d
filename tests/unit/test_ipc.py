"""Tests for the plugin JSON protocol."""

from __future__ import annotations

import json

import pytest

from capsulekit.core.errors import PluginExecutionError, PluginProtocolError
from capsulekit.plugins.ipc import (
    IPCRequest,
    IPCResponse,
    MultiModuleExtractResult,
    SingleExtractResult,
    extract_ir_request,
    parse_detect_result,
    parse_emit_result,
    parse_extract_ir_result,
    resolve_extract_result,
)


class TestRequest:
    """Test request encoding."""

    def test_extract_ir_request(self):
        req = extract_ir_request("/in/kjv.osis", "/out")
        data = json.loads(req.to_json())
        assert data == {"command": "extract-ir", "args": {"path": "/in/kjv.osis", "output_dir": "/out"}}
        assert req.to_json().endswith("\n")

    def test_from_json(self):
        req = IPCRequest.from_json('{"command": "detect", "args": {"path": "a"}}')
        assert req.command == "detect"
        assert req.arg("path") == "a"
        assert req.arg("missing") == ""

    def test_from_json_without_command(self):
        with pytest.raises(ValueError):
            IPCRequest.from_json('{"args": {}}')


class TestResponse:
    """Test response decoding."""

    def test_ok(self):
        resp = IPCResponse.from_json("format.osis", '{"status": "ok", "result": {"detected": true}}')
        assert resp.ok
        assert parse_detect_result("format.osis", resp).detected

    def test_error_status(self):
        resp = IPCResponse.from_json("format.osis", '{"status": "error", "error": "bad input"}')
        assert not resp.ok
        with pytest.raises(PluginExecutionError, match="bad input"):
            parse_detect_result("format.osis", resp)

    @pytest.mark.parametrize("text", ["not json", "[1, 2]", '{"status": "maybe"}', ""])
    def test_malformed(self, text):
        with pytest.raises(PluginProtocolError) as exc_info:
            IPCResponse.from_json("format.osis", text)
        # Raw output stays out of the message.
        assert "format.osis" in exc_info.value.message
        assert "maybe" not in exc_info.value.message

    def test_result_not_object(self):
        resp = IPCResponse.success(["a"])
        with pytest.raises(PluginProtocolError):
            parse_emit_result("format.usfm", resp)

    def test_emit_without_output_path(self):
        with pytest.raises(PluginProtocolError):
            parse_emit_result("format.usfm", IPCResponse.success({"format": "usfm"}))


class TestExtractShapes:
    """Test the two extract-ir result shapes."""

    def test_single_shape(self):
        resp = IPCResponse.success({"ir_path": "/out/kjv.ir.json", "loss_class": "L1"})
        result = parse_extract_ir_result("format.osis", resp)
        assert isinstance(result, SingleExtractResult)
        assert result.loss_class == "L1"
        assert resolve_extract_result("format.osis", result) is result

    def test_multi_shape_first_ok_wins(self):
        resp = IPCResponse.success(
            {
                "modules": [
                    {"module": "Dict", "status": "skipped", "reason": "lexicon"},
                    {"module": "KJV", "status": "ok", "ir_path": "/out/KJV.ir.json", "loss_class": "L3"},
                    {"module": "WEB", "status": "ok", "ir_path": "/out/WEB.ir.json"},
                ]
            }
        )
        result = parse_extract_ir_result("format.sword-pure", resp)
        assert isinstance(result, MultiModuleExtractResult)
        assert result.count == 3

        single = resolve_extract_result("format.sword-pure", result)
        assert single.ir_path == "/out/KJV.ir.json"
        assert single.loss_class == "L3"

    def test_multi_shape_reports_first_failure(self):
        resp = IPCResponse.success(
            {
                "modules": [
                    {"module": "KJV", "status": "error", "error": "bad conf"},
                    {"module": "Dict", "status": "skipped", "reason": "lexicon"},
                ]
            }
        )
        result = parse_extract_ir_result("format.sword-pure", resp)
        with pytest.raises(PluginExecutionError, match="module KJV: bad conf"):
            resolve_extract_result("format.sword-pure", result)

    def test_multi_shape_only_skipped(self):
        resp = IPCResponse.success({"modules": [{"module": "Dict", "status": "skipped", "reason": "lexicon"}]})
        result = parse_extract_ir_result("format.sword-pure", resp)
        with pytest.raises(PluginExecutionError, match="skipped: lexicon"):
            resolve_extract_result("format.sword-pure", result)

    def test_neither_shape(self):
        with pytest.raises(PluginProtocolError):
            parse_extract_ir_result("format.osis", IPCResponse.success({"loss_class": "L0"}))
