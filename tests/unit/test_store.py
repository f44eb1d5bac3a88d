"""Unit tests for ArchiveStore reads and writes."""

import io
import json
import tarfile
import threading

import pytest
from conftest import KJV_CONF, build_tar, tar_members

from capsulekit.capsule import ArchiveFormat, ArchiveStore, archive_format_for
from capsulekit.capsule.store import detect_content_type
from capsulekit.core.errors import (
    ArtifactNotFoundError,
    CapsuleNotFoundError,
    CorruptedArchiveError,
    IRNotFoundError,
    PathOutsideRootError,
    UnsupportedArchiveError,
)


class TestListing:
    def test_missing_directory_is_empty(self, tmp_path):
        assert ArchiveStore(tmp_path / "nope").list_capsules() == []

    def test_lists_by_extension_sorted(self, store, make_capsule, capsules_dir):
        make_capsule("web.tar.xz", {"a.txt": "a"})
        make_capsule("asv.tar.gz", {"a.txt": "a"})
        make_capsule("kjv.tar", {"a.txt": "a"})
        (capsules_dir / "readme.md").write_text("x")
        (capsules_dir / "sub").mkdir()
        build_tar(capsules_dir / "sub" / "nested.tar.gz", {"a.txt": "a"})

        names = [c.name for c in store.list_capsules()]
        assert names == ["asv.tar.gz", "kjv.tar", "web.tar.xz"]

    def test_find_by_id_case_insensitive(self, store, make_capsule):
        make_capsule("KJV.tar.gz", {"a.txt": "a"})
        assert store.find_by_id("kjv").name == "KJV.tar.gz"
        with pytest.raises(CapsuleNotFoundError):
            store.find_by_id("web")


class TestResolve:
    def test_rejects_parent_segments(self, store):
        with pytest.raises(PathOutsideRootError):
            store.resolve("../etc/passwd")

    def test_rejects_absolute_outside(self, store, tmp_path):
        outside = tmp_path / "outside.tar.gz"
        build_tar(outside, {"a.txt": "a"})
        with pytest.raises(PathOutsideRootError):
            store.resolve(outside)

    def test_missing_capsule(self, store):
        with pytest.raises(CapsuleNotFoundError):
            store.resolve("missing.tar.gz")


class TestFormats:
    def test_archive_format_by_suffix(self):
        assert archive_format_for("a.tar") is ArchiveFormat.TAR
        assert archive_format_for("a.tar.gz") is ArchiveFormat.TAR_GZ
        assert archive_format_for("a.capsule.tar.xz") is ArchiveFormat.TAR_XZ

    def test_unsupported_extension(self):
        with pytest.raises(UnsupportedArchiveError):
            archive_format_for("a.zip")

    def test_corrupted_archive(self, store, capsules_dir):
        bad = capsules_dir / "bad.tar.gz"
        bad.write_bytes(b"definitely not gzip")
        with pytest.raises(CorruptedArchiveError):
            store.scan_metadata(bad)

    def test_content_type(self):
        assert detect_content_type("a.json", b"{}") == "application/json"
        assert detect_content_type("mods.d/kjv.conf", b"x").startswith("text/plain")


class TestScanMetadata:
    def test_plain_capsule(self, store, make_capsule):
        path = make_capsule("kjv.tar.gz", {"mods.d/kjv.conf": KJV_CONF})
        flags = store.scan_metadata(path)
        assert not flags.is_cas
        assert not flags.has_ir

    def test_cas_reported_regardless_of_ir(self, store, make_capsule):
        digest = "ab" * 32
        with_ir = make_capsule(
            "a.tar.gz",
            {f"blobs/sha256/ab/{digest}": "x", "a.ir.json": "{}", "manifest.json": "{}"},
        )
        without_ir = make_capsule("b.tar.xz", {f"blobs/sha256/ab/{digest}": "x"})
        assert store.scan_metadata(with_ir).is_cas
        assert store.scan_metadata(with_ir).has_ir
        assert store.scan_metadata(without_ir).is_cas
        assert not store.scan_metadata(without_ir).has_ir

    def test_nested_blobs_dir_is_not_cas(self, store, make_capsule):
        path = make_capsule("a.tar", {"wrapper/blobs/x": "x"})
        assert not store.scan_metadata(path).is_cas

    def test_repeatable_with_one_pass_each(self, store, make_capsule):
        path = make_capsule("kjv.tar.gz", {"kjv.ir.json": "{}", "mods.d/kjv.conf": KJV_CONF})
        before = store.archive_passes
        first = store.scan_metadata(path)
        second = store.scan_metadata(path)
        assert first == second
        assert store.archive_passes - before == 2


class TestReads:
    def test_manifest_absent(self, store, make_capsule):
        path = make_capsule("kjv.tar.gz", {"mods.d/kjv.conf": KJV_CONF})
        assert store.read_manifest(path) is None

    def test_manifest_unparseable_is_absent(self, store, make_capsule):
        path = make_capsule("kjv.tar.gz", {"manifest.json": "{not json"})
        assert store.read_manifest(path) is None

    def test_manifest_read(self, store, make_capsule):
        manifest = {"version": "1.0", "title": "KJV", "language": "en", "has_ir": True}
        path = make_capsule("kjv.tar.gz", {"manifest.json": json.dumps(manifest)})
        got = store.read_manifest(path)
        assert got is not None
        assert got.title == "KJV"
        assert got.has_ir
        assert got.to_dict()["has_ir"] is True

    def test_read_capsule_artifacts(self, store, make_capsule):
        digest = "cd" * 32
        path = make_capsule(
            "kjv.tar.gz",
            {
                "manifest.json": json.dumps({"title": "KJV"}),
                "mods.d/kjv.conf": KJV_CONF,
                f"blobs/sha256/cd/{digest}": "blob",
            },
        )
        manifest, artifacts = store.read_capsule(path, with_hashes=True)
        assert manifest is not None and manifest.title == "KJV"
        by_id = {a.id: a for a in artifacts}
        assert set(by_id) == {"mods.d/kjv.conf", f"blobs/sha256/cd/{digest}"}
        assert by_id[f"blobs/sha256/cd/{digest}"].hash == digest
        assert len(by_id["mods.d/kjv.conf"].hash) == 64
        assert by_id["mods.d/kjv.conf"].name == "kjv.conf"

    def test_read_artifact(self, store, make_capsule):
        path = make_capsule("kjv.tar.gz", {"mods.d/kjv.conf": KJV_CONF})
        data, ctype = store.read_artifact(path, "mods.d/kjv.conf")
        assert data.decode() == KJV_CONF
        assert ctype.startswith("text/plain")
        with pytest.raises(ArtifactNotFoundError):
            store.read_artifact(path, "mods.d/web.conf")

    def test_read_ir(self, store, make_capsule):
        path = make_capsule("kjv.tar.gz", {"kjv.ir.json": json.dumps({"id": "kjv"})})
        assert store.read_ir(path) == {"id": "kjv"}

    def test_read_ir_missing(self, store, make_capsule):
        path = make_capsule("kjv.tar.gz", {"mods.d/kjv.conf": KJV_CONF})
        with pytest.raises(IRNotFoundError):
            store.read_ir(path)


class TestExtract:
    def test_strips_wrapper_dir(self, store, make_capsule, tmp_path):
        path = make_capsule("kjv.tar.gz", {"kjv/manifest.json": "{}", "kjv/mods.d/kjv.conf": "x"})
        dest = tmp_path / "out"
        store.extract(path, dest)
        assert (dest / "manifest.json").is_file()
        assert (dest / "mods.d" / "kjv.conf").is_file()

    def test_keeps_layout_dir(self, store, make_capsule, tmp_path):
        path = make_capsule("kjv.tar.gz", {"mods.d/kjv.conf": "x"})
        dest = tmp_path / "out"
        store.extract(path, dest)
        assert (dest / "mods.d" / "kjv.conf").is_file()

    def test_skips_unsafe_members(self, store, capsules_dir, tmp_path):
        path = capsules_dir / "evil.tar"
        with tarfile.open(path, "w") as tf:
            for name in ("../escape.txt", "ok.txt"):
                info = tarfile.TarInfo(name)
                info.size = 1
                tf.addfile(info, io.BytesIO(b"x"))
            link = tarfile.TarInfo("link")
            link.type = tarfile.SYMTYPE
            link.linkname = "/etc/passwd"
            tf.addfile(link)
        dest = tmp_path / "out"
        store.extract(path, dest)
        assert (dest / "ok.txt").is_file()
        assert not (tmp_path / "escape.txt").exists()
        assert not (dest / "link").exists()


class TestCreateArchive:
    def test_deterministic_manifest_first(self, store, tmp_path, capsules_dir):
        src = tmp_path / "src"
        (src / "mods.d").mkdir(parents=True)
        (src / "mods.d" / "kjv.conf").write_text("x")
        (src / "a.txt").write_text("a")
        (src / "manifest.json").write_text("{}")

        first = store.create_archive(src, capsules_dir / "one.tar.gz")
        second = store.create_archive(src, capsules_dir / "two.tar.gz")

        assert tar_members(first) == ["manifest.json", "a.txt", "mods.d/kjv.conf"]
        with tarfile.open(first) as tf:
            assert all(m.mtime == 0 for m in tf.getmembers())
        assert tar_members(first) == tar_members(second)
        assert not list(capsules_dir.glob(".*.partial"))

    def test_delete(self, store, make_capsule):
        path = make_capsule("kjv.tar.gz", {"a.txt": "a"})
        store.delete("kjv.tar.gz")
        assert not path.exists()


def test_concurrent_reads_are_bounded(make_capsule, capsules_dir):
    store = ArchiveStore(capsules_dir, max_concurrent_reads=2)
    paths = [make_capsule(f"c{i}.tar.gz", {"a.txt": "a" * 1000}) for i in range(8)]

    threads = [threading.Thread(target=store.scan_metadata, args=(p,)) for p in paths * 3]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert 1 <= store.peak_concurrent_reads <= 2
    assert store.archive_passes == 24


def test_max_concurrent_reads_must_be_positive(tmp_path):
    with pytest.raises(ValueError):
        ArchiveStore(tmp_path, max_concurrent_reads=0)
