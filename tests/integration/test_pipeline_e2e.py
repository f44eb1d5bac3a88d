"""End-to-end conversion runs against real archives on disk."""

from __future__ import annotations

import hashlib
import json

import pytest
from conftest import KJV_CONF, OSIS_SAMPLE, tar_json, tar_members

from capsulekit.capsule.cas import blob_path
from capsulekit.convert import Stage
from capsulekit.convert.loss import LossClass
from capsulekit.core.errors import (
    CapsuleNotFoundError,
    ConversionError,
    IRAlreadyPresentError,
    NoConvertibleContentError,
    PluginNotFoundError,
    TransactionError,
)
from capsulekit.core.events import get_event_bus

OSIS_STRONGS = OSIS_SAMPLE.replace(
    "In the beginning",
    '<w lemma="strong:H7225">In the beginning</w>',
)


@pytest.fixture
def osis_capsule(make_capsule):
    return make_capsule(
        "test.tar.gz",
        {
            "manifest.json": json.dumps({"title": "Test Bible", "module_type": "bible"}),
            "test.osis.xml": OSIS_SAMPLE,
        },
    )


def _cas_capsule(make_capsule, name: str, files: dict[str, bytes], source_format: str = "sword"):
    members: dict[str, str | bytes] = {}
    entries = []
    for rel, data in files.items():
        digest = hashlib.sha256(data).hexdigest()
        members[blob_path("sha256", digest)] = data
        entries.append({"path": rel, "sha256": digest})
    manifest = {
        "id": "kjv",
        "title": "King James Version",
        "language": "en",
        "source_format": source_format,
        "main_artifact": "main",
        "artifacts": [{"id": "main", "files": entries}],
    }
    members["manifest.json"] = json.dumps(manifest)
    return make_capsule(name, members)


class TestGenerateIR:
    """Test IR generation for capsules without IR."""

    def test_sword_capsule(self, pipeline, kjv_capsule, capsules_dir):
        before = kjv_capsule.read_bytes()

        result = pipeline.generate_ir(kjv_capsule.name)

        assert result.success, result.message
        assert result.source_format == "sword-pure"
        assert result.loss_class is LossClass.L3
        assert result.extraction_loss is LossClass.L3
        assert "kjv.ir.json" in tar_members(kjv_capsule)
        manifest = tar_json(kjv_capsule, "manifest.json")
        assert manifest["has_ir"] is True
        assert manifest["version"] == "1.0"
        assert manifest["title"] == "King James Version"
        assert manifest["ir_loss_class"] == "L3"
        assert manifest["source_format"] == "sword-pure"
        ir = tar_json(kjv_capsule, "kjv.ir.json")
        assert ir["id"] == "KJV"
        assert ir["versification"] == "KJV"

        backup = capsules_dir / "kjv-old.tar.gz"
        assert result.old_path == str(backup)
        assert backup.read_bytes() == before

    def test_osis_capsule_keeps_manifest_fields(self, pipeline, osis_capsule):
        result = pipeline.generate_ir(osis_capsule)

        assert result.success
        assert result.source_format == "osis"
        assert result.loss_class is LossClass.L0
        manifest = tar_json(osis_capsule, "manifest.json")
        assert manifest["title"] == "Test Bible"
        assert manifest["module_type"] == "bible"
        assert manifest["language"] == "en"
        ir = tar_json(osis_capsule, "test.ir.json")
        assert [b["id"] for b in ir["documents"][0]["content_blocks"]] == ["Gen.1.1", "Gen.1.2"]

    def test_refuses_capsule_with_ir(self, pipeline, kjv_capsule, capsules_dir):
        assert pipeline.generate_ir(kjv_capsule).success
        before = kjv_capsule.read_bytes()

        result = pipeline.generate_ir(kjv_capsule)

        assert not result.success
        assert result.stage is Stage.DETECT
        assert isinstance(result.error, IRAlreadyPresentError)
        assert "already contains IR" in result.message
        assert kjv_capsule.read_bytes() == before
        assert not (capsules_dir / "kjv-old-2.tar.gz").exists()

    def test_no_convertible_content(self, pipeline, make_capsule, capsules_dir):
        capsule = make_capsule("notes.tar.gz", {"readme.txt": "x", "data/table.csv": "a,b"})
        before = capsule.read_bytes()

        result = pipeline.generate_ir(capsule)

        assert not result.success
        assert isinstance(result.error, NoConvertibleContentError)
        assert result.error.found_files == ["readme.txt", "data/table.csv"]
        assert "readme.txt" in result.message
        assert capsule.read_bytes() == before
        assert not (capsules_dir / "notes-old.tar.gz").exists()

    def test_cas_capsule_without_content(self, pipeline, make_capsule):
        capsule = _cas_capsule(make_capsule, "kjv.tar.xz", {"mods.d/kjv.conf": b"[KJV]\n"})

        result = pipeline.generate_ir(capsule)

        assert not result.success
        assert result.error.is_cas
        assert "content-addressed" in result.message
        assert "convert-cas" in (result.error.suggestion or "")

    def test_missing_capsule(self, pipeline):
        result = pipeline.generate_ir("ghost.tar.gz")
        assert not result.success
        assert isinstance(result.error, CapsuleNotFoundError)
        assert result.to_dict()["stage"] == "detect"
        assert result.to_dict()["error_type"] == "CapsuleNotFoundError"

    def test_commit_failure_rolls_back(self, pipeline, osis_capsule, capsules_dir, monkeypatch):
        before = osis_capsule.read_bytes()

        def _boom(src_dir, dest):
            raise OSError("disk full")

        monkeypatch.setattr(pipeline.store, "create_archive", _boom)
        result = pipeline.generate_ir(osis_capsule)

        assert not result.success
        assert result.stage is Stage.COMMIT
        assert isinstance(result.error, TransactionError)
        assert result.error.rolled_back
        assert osis_capsule.read_bytes() == before
        assert not (capsules_dir / "test-old.tar.gz").exists()

    def test_work_dir_left_empty(self, pipeline, osis_capsule, tmp_path):
        pipeline.generate_ir(osis_capsule)
        assert list((tmp_path / "work").iterdir()) == []


class TestConvert:
    """Test native-to-native conversion through the IR."""

    def test_osis_to_usfm(self, pipeline, osis_capsule):
        result = pipeline.convert(osis_capsule, "usfm")

        assert result.success, result.message
        assert result.source_format == "osis"
        assert result.target_format == "usfm"
        assert result.extraction_loss is LossClass.L0
        assert result.emission_loss is LossClass.L0
        assert result.loss_class is LossClass.L0

        members = tar_members(osis_capsule)
        assert members[0] == "manifest.json"
        assert "Test-usfm/01-GEN.usfm" in members
        assert "test.ir.json" in members
        assert "test.osis.xml" not in members
        manifest = tar_json(osis_capsule, "manifest.json")
        assert manifest["source_format"] == "usfm"
        assert manifest["converted_from"] == "osis"
        assert manifest["title"] == "Test Bible"
        assert manifest["has_ir"] is True
        assert manifest["extraction_loss"] == "L0"
        assert manifest["emission_loss"] == "L0"

    def test_emission_loss_raises_total(self, pipeline, make_capsule):
        capsule = make_capsule("strongs.tar.gz", {"strongs.osis.xml": OSIS_STRONGS})

        result = pipeline.convert(capsule, "USFM")

        assert result.success
        assert result.extraction_loss is LossClass.L0
        assert result.emission_loss is LossClass.L1
        assert result.loss_class is LossClass.L1
        assert tar_json(capsule, "manifest.json")["ir_loss_class"] == "L1"

    def test_same_format_refused(self, pipeline, osis_capsule):
        before = osis_capsule.read_bytes()
        result = pipeline.convert(osis_capsule, "osis")
        assert not result.success
        assert isinstance(result.error, ConversionError)
        assert "already in osis" in result.message
        assert osis_capsule.read_bytes() == before

    def test_unknown_target(self, pipeline, osis_capsule):
        result = pipeline.convert(osis_capsule, "zefania")
        assert not result.success
        assert result.stage is Stage.DETECT
        assert isinstance(result.error, PluginNotFoundError)
        assert result.error.plugin_id == "format.zefania"


class TestConvertCAS:
    """Test restoring plain files from CAS blobs."""

    def test_restore_then_generate_ir(self, pipeline, make_capsule):
        capsule = _cas_capsule(
            make_capsule,
            "kjv.tar.xz",
            {
                "mods.d/kjv.conf": KJV_CONF.encode(),
                "modules/texts/ztext/kjv/ot.bzs": b"\x00" * 12,
            },
        )

        result = pipeline.convert_cas(capsule)

        assert result.success, result.message
        assert "Restored 2 files" in result.message
        assert "SWORD module found" in result.message
        members = tar_members(capsule)
        assert "mods.d/kjv.conf" in members
        assert "modules/texts/ztext/kjv/ot.bzs" in members
        assert not any(m.startswith("blobs/") for m in members)
        manifest = tar_json(capsule, "manifest.json")
        assert manifest["source_format"] == "cas-converted"
        assert manifest["original_format"] == "sword"
        assert manifest["title"] == "King James Version"

        assert pipeline.generate_ir(capsule).success

    def test_non_cas_capsule(self, pipeline, osis_capsule):
        result = pipeline.convert_cas(osis_capsule)
        assert not result.success
        assert isinstance(result.error, ConversionError)
        assert "not a CAS capsule" in result.message


def test_operation_events(pipeline, osis_capsule):
    seen: list[tuple[str, dict]] = []
    bus = get_event_bus()
    bus.subscribe("operation.start", lambda env: seen.append(("start", env)))
    bus.subscribe("operation.end", lambda env: seen.append(("end", env)))

    pipeline.generate_ir(osis_capsule)
    pipeline.generate_ir(osis_capsule)

    assert [kind for kind, _env in seen] == ["start", "end", "start", "end"]
    first_end, second_end = seen[1][1], seen[3][1]
    assert first_end["operation"] == "convert.generate_ir"
    assert first_end["data"]["status"] == "ok"
    assert first_end["data"]["stage"] == "commit"
    assert first_end["data"]["duration_ms"] >= 0
    assert second_end["data"]["status"] == "error"
    assert second_end["data"]["stage"] == "detect"
