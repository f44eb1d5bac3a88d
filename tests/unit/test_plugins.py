"""Tests for plugin discovery and execution."""

from __future__ import annotations

from pathlib import Path

import pytest
from conftest import py_script, write_plugin

from capsulekit.core.errors import (
    PluginExecutionError,
    PluginNotFoundError,
    PluginProtocolError,
    PluginTimeoutError,
    PluginValidationError,
)
from capsulekit.core.settings import PluginPosture
from capsulekit.plugins import PluginLoader, PluginRunner, PluginSource
from capsulekit.plugins.ipc import IPCRequest, detect_request


@pytest.fixture
def plugins_dir(tmp_path):
    d = tmp_path / "plugins"
    d.mkdir()
    return d


def restricted(plugins_dir: Path) -> PluginLoader:
    loader = PluginLoader(plugins_dir, PluginPosture.RESTRICTED)
    loader.load_external()
    return loader


class TestLoader:
    """Test plugin registration and discovery."""

    def test_embedded_plugins_registered(self, loader):
        ids = [d.plugin_id for d in loader.list_plugins()]
        assert ids == sorted(ids)
        for wanted in ("format.osis", "format.usfm", "format.usx", "format.sword-pure", "format.json"):
            assert loader.has(wanted)
        assert all(d.source is PluginSource.EMBEDDED for d in loader.list_plugins())

    def test_unknown_plugin(self, loader):
        with pytest.raises(PluginNotFoundError):
            loader.get("format.zefania")

    def test_permissive_ignores_plugin_dir(self, plugins_dir):
        write_plugin(plugins_dir, "zefania", "format.zefania", "#!/bin/sh\n")
        loader = PluginLoader(plugins_dir, PluginPosture.PERMISSIVE)
        assert loader.load_external() == []
        assert not loader.has("format.zefania")

    def test_restricted_requires_dir(self):
        with pytest.raises(PluginValidationError):
            PluginLoader(None, PluginPosture.RESTRICTED)

    def test_discovers_flat_and_nested(self, plugins_dir):
        write_plugin(plugins_dir, "zefania", "format.zefania", "#!/bin/sh\n")
        write_plugin(plugins_dir, "format/theword", "format.theword", "#!/bin/sh\n")
        write_plugin(plugins_dir, "other/deep", "format.deep", "#!/bin/sh\n")

        loader = restricted(plugins_dir)

        assert loader.has("format.zefania")
        assert loader.has("format.theword")
        # Only known kind directories are searched one level down.
        assert not loader.has("format.deep")
        assert loader.get("format.zefania").source is PluginSource.EXTERNAL

    def test_kind_filter(self, plugins_dir):
        write_plugin(plugins_dir, "tool/lint", "tool.lint", "#!/bin/sh\n")
        loader = restricted(plugins_dir)
        assert [d.plugin_id for d in loader.list_plugins("tool")] == ["tool.lint"]

    def test_incompatible_host_version_skipped(self, plugins_dir):
        write_plugin(plugins_dir, "future", "format.future", "#!/bin/sh\n", min_host_version="99.0.0")
        loader = restricted(plugins_dir)
        assert not loader.has("format.future")

    def test_broken_descriptor_skipped(self, plugins_dir):
        broken = plugins_dir / "broken"
        broken.mkdir()
        (broken / "plugin.json").write_text("{not json")
        write_plugin(plugins_dir, "good", "format.good", "#!/bin/sh\n")

        loader = restricted(plugins_dir)
        assert loader.has("format.good")

    def test_yaml_descriptor(self, plugins_dir):
        d = plugins_dir / "yamlish"
        d.mkdir()
        (d / "plugin.yaml").write_text(
            "plugin_id: format.yamlish\nversion: '0.1'\nkind: format\nentrypoint: run\n"
        )
        loader = restricted(plugins_dir)
        assert loader.get("format.yamlish").version == "0.1"

    def test_entrypoint_escape_rejected(self, plugins_dir, tmp_path):
        outside = tmp_path / "outside.sh"
        outside.write_text("#!/bin/sh\n")
        outside.chmod(0o755)
        write_plugin(plugins_dir, "evil", "format.evil", entrypoint="../../outside.sh")

        loader = restricted(plugins_dir)
        with pytest.raises(PluginValidationError, match="escapes"):
            loader.validate_entrypoint(loader.get("format.evil"))

    def test_entrypoint_not_executable(self, plugins_dir):
        d = write_plugin(plugins_dir, "lazy", "format.lazy", "#!/bin/sh\n")
        (d / "run").chmod(0o644)
        loader = restricted(plugins_dir)
        with pytest.raises(PluginValidationError, match="not executable"):
            loader.validate_entrypoint(loader.get("format.lazy"))


class TestRunner:
    """Test plugin execution over the JSON protocol."""

    def test_embedded_detect(self, loader, tmp_path):
        f = tmp_path / "a.osis.xml"
        f.write_text("<osis></osis>")
        result = PluginRunner(loader).detect("format.osis", f)
        assert result.detected
        assert result.format == "osis"

    def test_unknown_plugin(self, loader):
        with pytest.raises(PluginNotFoundError):
            PluginRunner(loader).execute("format.nope", detect_request("x"))

    def test_embedded_unknown_command(self, loader):
        resp = PluginRunner(loader).execute("format.osis", IPCRequest("frobnicate"))
        assert not resp.ok
        assert "not supported" in resp.error

    def test_external_request_and_response(self, plugins_dir, tmp_path):
        write_plugin(
            plugins_dir,
            "echo",
            "format.echo",
            py_script('print(json.dumps({"status": "ok", "result": {"detected": True, "format": req["args"]["path"]}}))'),
        )
        runner = PluginRunner(restricted(plugins_dir))
        result = runner.detect("format.echo", tmp_path / "x.echo")
        assert result.detected
        assert result.format == str(tmp_path / "x.echo")

    def test_external_shadows_embedded(self, plugins_dir, tmp_path):
        write_plugin(
            plugins_dir,
            "osis",
            "format.osis",
            py_script('print(json.dumps({"status": "ok", "result": {"detected": False, "reason": "external"}}))'),
        )
        runner = PluginRunner(restricted(plugins_dir))
        assert runner.detect("format.osis", tmp_path / "a.osis").reason == "external"

    def test_external_fallback_when_embedded_declines(self, plugins_dir, tmp_path):
        # format.json has no embedded extract-ir.
        write_plugin(plugins_dir, "json", "format.json", entrypoint="run")
        loader = restricted(plugins_dir)
        runner = PluginRunner(loader)
        with pytest.raises(PluginValidationError, match="not found"):
            runner.extract_ir("format.json", tmp_path / "a.json", tmp_path / "out")

    def test_non_zero_exit(self, plugins_dir, tmp_path):
        write_plugin(plugins_dir, "fail", "format.fail", "#!/bin/sh\necho boom >&2\nexit 3\n")
        runner = PluginRunner(restricted(plugins_dir))
        with pytest.raises(PluginExecutionError) as exc_info:
            runner.detect("format.fail", tmp_path / "x")
        assert "exit code 3" in exc_info.value.message
        assert "boom" in exc_info.value.output

    def test_garbage_output(self, plugins_dir, tmp_path):
        write_plugin(plugins_dir, "noise", "format.noise", "#!/bin/sh\necho hello there\n")
        runner = PluginRunner(restricted(plugins_dir))
        with pytest.raises(PluginProtocolError):
            runner.detect("format.noise", tmp_path / "x")

    def test_timeout(self, plugins_dir, tmp_path):
        write_plugin(plugins_dir, "slow", "format.slow", "#!/bin/sh\nexec sleep 10\n")
        runner = PluginRunner(restricted(plugins_dir), timeout=0.5)
        with pytest.raises(PluginTimeoutError) as exc_info:
            runner.detect("format.slow", tmp_path / "x")
        assert exc_info.value.timeout == 0.5
