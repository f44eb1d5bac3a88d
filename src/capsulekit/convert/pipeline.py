"""Capsule conversion: Detect -> ExtractIR -> EmitNative -> CommitOrRollback.

Every run works in a private temporary directory. The capsule on disk is
only touched by the final commit, which either swaps in the rewritten
archive (original kept as `<base>-old<ext>`) or leaves it untouched.

Three entry points share the machinery:
- generate_ir: add `<id>.ir.json` to a capsule that has none
- convert: rewrite a capsule in another native format through the IR
- convert_cas: materialize a CAS capsule's main artifact as plain files
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from capsulekit.capsule.cas import restore_main_artifact
from capsulekit.capsule.naming import capsule_id
from capsulekit.capsule.store import IR_SUFFIX, MANIFEST_NAME, ArchiveStore
from capsulekit.convert.detect import ContentMatch, format_hints, list_files, resolve_source, sword_base
from capsulekit.convert.loss import LossClass, combine_loss
from capsulekit.convert.result import ConversionResult, Stage
from capsulekit.core.diagnostics import duration_ms, emit_diag
from capsulekit.core.errors import (
    CapsuleKitError,
    ConversionError,
    FormatError,
    IRAlreadyPresentError,
    NoConvertibleContentError,
    PluginExecutionError,
    PluginNotFoundError,
    PluginProtocolError,
    PluginValidationError,
)
from capsulekit.core.logging import get_logger
from capsulekit.plugins.loader import PluginLoader
from capsulekit.plugins.runner import PluginRunner

log = get_logger(__name__)

CAPSULE_VERSION = "1.0"


def _now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def format_plugin_id(fmt: str) -> str:
    return f"format.{fmt}"


class _Run:
    """Where one pipeline invocation currently is."""

    def __init__(self, capsule: str) -> None:
        self.capsule = capsule
        self.stage = Stage.DETECT


def _read_manifest_dict(extract_dir: Path) -> dict[str, Any]:
    path = extract_dir / MANIFEST_NAME
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        log.warning("manifest unreadable; a fresh one will be written")
        log.debug(f"manifest parse error: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def _write_manifest(staging: Path, data: dict[str, Any]) -> None:
    tmp = staging / f".{MANIFEST_NAME}.tmp"
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    os.replace(tmp, staging / MANIFEST_NAME)


def _plugin_output(reported: str, out_dir: Path, plugin_id: str) -> Path:
    """Resolve a path reported by a plugin; it must lie inside out_dir."""
    path = Path(reported)
    if not path.is_absolute():
        path = out_dir / path
    resolved = path.resolve()
    try:
        resolved.relative_to(out_dir.resolve())
    except ValueError:
        raise PluginValidationError(
            f"Plugin '{plugin_id}' reported output outside its output directory"
        ) from None
    if not resolved.exists():
        raise PluginExecutionError(plugin_id, f"reported output does not exist: {path.name}")
    return resolved


def _locate_ir_file(path: Path, plugin_id: str) -> Path:
    if not path.is_dir():
        return path
    found = sorted(path.rglob(f"*{IR_SUFFIX}"))
    if not found:
        raise PluginExecutionError(plugin_id, "no IR file in output directory")
    return found[0]


def _load_ir_dict(path: Path, plugin_id: str) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PluginProtocolError(plugin_id, f"IR unreadable: {e}") from e
    if not isinstance(data, dict):
        raise PluginProtocolError(plugin_id, "IR is not a JSON object")
    return data


class ConversionPipeline:
    def __init__(
        self,
        store: ArchiveStore,
        loader: PluginLoader,
        runner: PluginRunner,
        *,
        work_dir: Path | None = None,
    ) -> None:
        self.store = store
        self.loader = loader
        self.runner = runner
        self.work_dir = work_dir

    def has_format_plugin(self, fmt: str) -> bool:
        return self.loader.has(format_plugin_id(fmt))

    # --- entry points ------------------------------------------------------

    def generate_ir(self, capsule: str | Path) -> ConversionResult:
        """Add an IR file to a capsule; refuses capsules that already have one."""
        return self._execute("convert.generate_ir", capsule, self._generate_ir)

    def convert(self, capsule: str | Path, target_format: str) -> ConversionResult:
        target = target_format.strip().lower()
        return self._execute(
            "convert.convert",
            capsule,
            lambda run, path: self._convert(run, path, target),
            target_format=target,
        )

    def convert_cas(self, capsule: str | Path) -> ConversionResult:
        return self._execute("convert.convert_cas", capsule, self._convert_cas)

    # --- shared machinery --------------------------------------------------

    def _execute(
        self,
        operation: str,
        capsule: str | Path,
        body: Callable[[_Run, Path], ConversionResult],
        **extra: Any,
    ) -> ConversionResult:
        run = _Run(Path(str(capsule)).name)
        t0 = time.monotonic()
        emit_diag(
            "operation.start",
            component="convert",
            operation=operation,
            data={"capsule": run.capsule, **extra},
        )
        try:
            path = self.store.resolve(capsule)
            result = body(run, path)
        except CapsuleKitError as e:
            result = ConversionResult.failure(run.capsule, run.stage, e)
        except OSError as e:
            err = ConversionError(f"I/O error during {run.stage}: {e.strerror or e}")
            err.__cause__ = e
            result = ConversionResult.failure(run.capsule, run.stage, err)

        if result.success:
            log.info(f"{operation}: {result.message}")
        else:
            log.warning(f"{operation} failed capsule={run.capsule} stage={run.stage}")
            if result.error is not None:
                log.debug(f"{operation} error: {type(result.error).__name__}: {result.error.message}")

        emit_diag(
            "operation.end",
            component="convert",
            operation=operation,
            data={
                "capsule": run.capsule,
                **extra,
                "status": "ok" if result.success else "error",
                "stage": run.stage.value,
                "loss_class": result.loss_class.value,
                "duration_ms": duration_ms(t0, time.monotonic()),
            },
        )
        return result

    @contextmanager
    def _workspace(self, label: str) -> Iterator[Path]:
        if self.work_dir is not None:
            self.work_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix=f"capsulekit-{label}-", dir=self.work_dir) as tmp:
            yield Path(tmp)

    def _detect(
        self, extract_dir: Path, manifest: dict[str, Any], capsule_name: str
    ) -> ContentMatch:
        hints = format_hints(manifest, capsule_name)
        match = resolve_source(extract_dir, hints, self.has_format_plugin)
        if match is None:
            is_cas = (extract_dir / "blobs").is_dir()
            raise NoConvertibleContentError(list_files(extract_dir), is_cas=is_cas)
        log.verbose(f"source format {match.format} ({match.path.name})")
        return match

    def _extract_ir(
        self, match: ContentMatch, out_dir: Path
    ) -> tuple[Path, dict[str, Any], LossClass]:
        plugin_id = format_plugin_id(match.format)
        if not self.loader.has(plugin_id):
            raise PluginNotFoundError(plugin_id)
        out_dir.mkdir(parents=True, exist_ok=True)
        extracted = self.runner.extract_ir(plugin_id, match.path, out_dir)
        ir_file = _locate_ir_file(_plugin_output(extracted.ir_path, out_dir, plugin_id), plugin_id)
        ir = _load_ir_dict(ir_file, plugin_id)
        return ir_file, ir, LossClass.parse(extracted.loss_class)

    # --- operations --------------------------------------------------------

    def _generate_ir(self, run: _Run, path: Path) -> ConversionResult:
        flags = self.store.scan_metadata(path)
        if flags.has_ir:
            raise IRAlreadyPresentError(path.name)

        with self._workspace("ir-gen") as tmp:
            extract_dir = tmp / "extract"
            self.store.extract(path, extract_dir)
            manifest = _read_manifest_dict(extract_dir)
            match = self._detect(extract_dir, manifest, path.name)

            run.stage = Stage.EXTRACT_IR
            ir_file, ir, loss = self._extract_ir(match, tmp / "ir")

            run.stage = Stage.COMMIT
            staging = tmp / "staging"
            shutil.copytree(extract_dir, staging)
            shutil.copyfile(ir_file, staging / f"{capsule_id(path.name)}{IR_SUFFIX}")

            manifest.setdefault("version", CAPSULE_VERSION)
            for key in ("title", "language"):
                if not manifest.get(key) and ir.get(key):
                    manifest[key] = ir[key]
            manifest.update(
                {
                    "has_ir": True,
                    "ir_generated": _now(),
                    "ir_loss_class": loss.value,
                    "source_format": match.format,
                }
            )
            _write_manifest(staging, manifest)
            backup = self.store.atomic_replace(path, staging)

        return ConversionResult(
            success=True,
            capsule=path.name,
            message=f"IR generated from {match.format} ({loss}); original kept as {backup.name}",
            output_path=str(path),
            old_path=str(backup),
            source_format=match.format,
            loss_class=loss,
            extraction_loss=loss,
        )

    def _convert(self, run: _Run, path: Path, target: str) -> ConversionResult:
        target_plugin = format_plugin_id(target)
        if not self.loader.has(target_plugin):
            raise PluginNotFoundError(target_plugin)

        with self._workspace("convert") as tmp:
            extract_dir = tmp / "extract"
            self.store.extract(path, extract_dir)
            manifest = _read_manifest_dict(extract_dir)
            match = self._detect(extract_dir, manifest, path.name)
            if match.format == target:
                raise ConversionError(f"Capsule '{path.name}' is already in {target} format")

            run.stage = Stage.EXTRACT_IR
            ir_file, ir, extraction_loss = self._extract_ir(match, tmp / "ir")

            run.stage = Stage.EMIT_NATIVE
            emit_dir = tmp / "emit"
            emit_dir.mkdir()
            emitted = self.runner.emit_native(target_plugin, ir_file, emit_dir)
            output = _plugin_output(emitted.output_path, emit_dir, target_plugin)
            emission_loss = LossClass.parse(emitted.loss_class)
            total = combine_loss(extraction_loss, emission_loss)

            run.stage = Stage.COMMIT
            staging = tmp / "staging"
            staging.mkdir()
            if output.is_dir():
                shutil.copytree(output, staging / output.name)
            else:
                shutil.copyfile(output, staging / output.name)
            shutil.copyfile(ir_file, staging / f"{capsule_id(path.name)}{IR_SUFFIX}")

            new_manifest: dict[str, Any] = {
                "capsule_version": CAPSULE_VERSION,
                "module_type": manifest.get("module_type") or ir.get("module_type") or "bible",
            }
            for key in ("title", "language"):
                value = manifest.get(key) or ir.get(key)
                if value:
                    new_manifest[key] = value
            new_manifest.update(
                {
                    "source_format": target,
                    "converted_from": match.format,
                    "conversion_date": _now(),
                    "has_ir": True,
                    "ir_loss_class": total.value,
                    "extraction_loss": extraction_loss.value,
                    "emission_loss": emission_loss.value,
                }
            )
            _write_manifest(staging, new_manifest)
            backup = self.store.atomic_replace(path, staging)

        return ConversionResult(
            success=True,
            capsule=path.name,
            message=(
                f"Converted {match.format} -> {target} ({total}); original kept as {backup.name}"
            ),
            output_path=str(path),
            old_path=str(backup),
            source_format=match.format,
            target_format=target,
            loss_class=total,
            extraction_loss=extraction_loss,
            emission_loss=emission_loss,
        )

    def _convert_cas(self, run: _Run, path: Path) -> ConversionResult:
        flags = self.store.scan_metadata(path)
        if not flags.is_cas:
            raise ConversionError(
                f"Capsule '{path.name}' is not a CAS capsule",
                "CAS capsules carry a blobs/ directory",
            )

        with self._workspace("cas") as tmp:
            extract_dir = tmp / "extract"
            self.store.extract(path, extract_dir)
            manifest = _read_manifest_dict(extract_dir)
            if not manifest:
                raise FormatError(f"CAS capsule '{path.name}' has no readable manifest.json")

            run.stage = Stage.RESTORE
            staging = tmp / "staging"
            staging.mkdir()
            restored = restore_main_artifact(extract_dir, manifest, staging)
            has_sword = sword_base(staging) is not None

            run.stage = Stage.COMMIT
            cid = capsule_id(path.name)
            new_manifest: dict[str, Any] = {
                "capsule_version": CAPSULE_VERSION,
                "module_type": manifest.get("module_type") or "bible",
                "id": manifest.get("id") or cid,
                "title": manifest.get("title") or cid,
            }
            if manifest.get("language"):
                new_manifest["language"] = manifest["language"]
            new_manifest.update(
                {
                    "source_format": "cas-converted",
                    "original_format": manifest.get("source_format") or "",
                    "converted_from": "cas",
                }
            )
            _write_manifest(staging, new_manifest)
            backup = self.store.atomic_replace(path, staging)

        message = f"Restored {len(restored)} files from CAS blobs; original kept as {backup.name}"
        if has_sword:
            message += ". SWORD module found; IR can now be generated"
        return ConversionResult(
            success=True,
            capsule=path.name,
            message=message,
            output_path=str(path),
            old_path=str(backup),
            source_format="cas",
        )
