"""Tests for source-format detection in extracted capsules."""

from __future__ import annotations

from conftest import KJV_CONF

from capsulekit.convert.detect import (
    SWORD_FORMAT,
    find_content,
    format_hints,
    list_files,
    resolve_source,
)


def _tree(root, files):
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


def test_priority_osis_over_usfm(tmp_path):
    _tree(tmp_path, {"a/GEN.usfm": "", "b/kjv.osis.xml": "", "c/GEN.usx": ""})
    match = find_content(tmp_path)
    assert match is not None
    assert match.format == "osis"
    assert match.path.name == "kjv.osis.xml"


def test_usx_over_usfm(tmp_path):
    _tree(tmp_path, {"GEN.usfm": "", "GEN.usx": ""})
    assert find_content(tmp_path).format == "usx"


def test_manifest_and_ir_never_candidates(tmp_path):
    _tree(tmp_path, {"manifest.json": "{}", "kjv.ir.json": "{}", "notes.txt": ""})
    assert find_content(tmp_path) is None


def test_sword_structure(tmp_path):
    _tree(tmp_path, {"mods.d/kjv.conf": KJV_CONF})
    match = find_content(tmp_path)
    assert match.format == SWORD_FORMAT
    assert match.path == tmp_path


def test_sword_under_capsule_dir(tmp_path):
    _tree(tmp_path, {"capsule/mods.d/kjv.conf": KJV_CONF})
    assert find_content(tmp_path).path == tmp_path / "capsule"


def test_format_hints():
    assert format_hints({"source_format": "OSIS"}, "kjv-usfm.tar.gz") == ["osis", "usfm"]
    assert format_hints({}, "kjv.tar.gz") == []
    assert format_hints({"source_format": "osis"}, "x-osis.tar.gz") == ["osis"]


class TestResolveSource:
    def test_hint_without_plugin_ignored(self, tmp_path):
        _tree(tmp_path, {"GEN.usfm": ""})
        match = resolve_source(tmp_path, ["zefania"], lambda fmt: fmt != "zefania")
        assert match.format == "usfm"

    def test_hint_selects_among_contents(self, tmp_path):
        _tree(tmp_path, {"GEN.usfm": "", "kjv.osis": ""})
        match = resolve_source(tmp_path, ["usfm"], lambda fmt: True)
        assert match.format == "usfm"

    def test_hint_without_matching_content_falls_through(self, tmp_path):
        _tree(tmp_path, {"kjv.osis": ""})
        match = resolve_source(tmp_path, ["usfm"], lambda fmt: True)
        assert match.format == "osis"

    def test_unknown_hinted_format_gets_whole_tree(self, tmp_path):
        _tree(tmp_path, {"bible.xml": ""})
        match = resolve_source(tmp_path, ["zefania"], lambda fmt: True)
        assert match.format == "zefania"
        assert match.path == tmp_path

    def test_nothing_found(self, tmp_path):
        _tree(tmp_path, {"readme.txt": ""})
        assert resolve_source(tmp_path, [], lambda fmt: True) is None


def test_list_files_sorted(tmp_path):
    _tree(tmp_path, {"b.txt": "", "a/z.txt": "", "a/b.txt": ""})
    assert list_files(tmp_path) == ["b.txt", "a/b.txt", "a/z.txt"]
