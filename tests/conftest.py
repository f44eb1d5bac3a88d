"""Pytest configuration and fixtures."""

import io
import json
import sys
import tarfile
from pathlib import Path

import pytest

# Add src to path (for 'capsulekit.*' imports without an install)
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root / "src"))

from capsulekit.capsule import ArchiveStore  # noqa: E402
from capsulekit.convert import ConversionPipeline  # noqa: E402
from capsulekit.core.events import get_event_bus  # noqa: E402
from capsulekit.core.logging import apply_logging_policy  # noqa: E402
from capsulekit.ir import ContentBlock, Corpus, Document  # noqa: E402
from capsulekit.plugins import PluginLoader, PluginRunner  # noqa: E402

KJV_CONF = """[KJV]
DataPath=./modules/texts/ztext/kjv/
ModDrv=zText
Lang=en
Description=King James Version
Category=Biblical Texts
Versification=KJV
GlobalOptionFilter=OSISStrongs
GlobalOptionFilter=OSISFootnotes
"""

OSIS_SAMPLE = """<?xml version="1.0" encoding="UTF-8"?>
<osis xmlns="http://www.bibletechnologies.net/2003/OSIS/namespace">
  <osisText osisIDWork="Test" osisRefWork="Bible" xml:lang="en">
    <header>
      <work osisWork="Test"><title>Test Bible</title><refSystem>Bible.KJV</refSystem></work>
    </header>
    <div type="book" osisID="Gen">
      <chapter osisID="Gen.1">
        <verse osisID="Gen.1.1">In the beginning God created the heaven and the earth.</verse>
        <verse osisID="Gen.1.2">And the earth was without form, and void.</verse>
      </chapter>
    </div>
  </osisText>
</osis>
"""


def build_tar(path: Path, files: dict) -> Path:
    """Write `files` ({member: str | bytes}) as a tar; compression from the suffix."""
    mode = {".gz": "w:gz", ".xz": "w:xz"}.get(path.suffix, "w")
    with tarfile.open(path, mode) as tf:
        for name, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return path


def corpus_json(corpus_id: str, title: str, *, strongs: bool = False, module_type: str = "bible") -> str:
    """Serialized two-verse IR corpus."""
    blocks = [
        ContentBlock(id="Gen.1.1", text="In the beginning", strongs=["H7225"] if strongs else []),
        ContentBlock(id="Gen.1.2", text="And the earth"),
    ]
    corpus = Corpus(
        id=corpus_id,
        title=title,
        language="en",
        versification="KJV",
        module_type=module_type,
        documents=[Document(id="Gen", title="Genesis", order=1, content_blocks=blocks)],
    )
    return json.dumps(corpus.to_dict())


def write_plugin(
    base: Path,
    rel_dir: str,
    plugin_id: str,
    script: str | None = None,
    *,
    entrypoint: str = "run",
    **extra,
) -> Path:
    """Lay out an external plugin directory with a JSON descriptor."""
    plugin_dir = base / rel_dir
    plugin_dir.mkdir(parents=True, exist_ok=True)
    descriptor = {
        "plugin_id": plugin_id,
        "version": "1.0.0",
        "kind": plugin_id.split(".", 1)[0],
        "entrypoint": entrypoint,
        "capabilities": {"inputs": ["osis"], "outputs": ["ir"]},
        **extra,
    }
    (plugin_dir / "plugin.json").write_text(json.dumps(descriptor))
    if script is not None:
        entry = plugin_dir / entrypoint
        entry.write_text(script)
        entry.chmod(0o755)
    return plugin_dir


def py_script(body: str) -> str:
    """Python entrypoint that has already read the request into `req`."""
    return f"#!{sys.executable}\nimport json, sys\nreq = json.load(sys.stdin)\n{body}\n"


def tar_members(path: Path) -> list[str]:
    with tarfile.open(path) as tf:
        return [m.name for m in tf.getmembers()]


def tar_json(path: Path, member: str) -> dict:
    with tarfile.open(path) as tf:
        f = tf.extractfile(member)
        assert f is not None
        return json.loads(f.read())


@pytest.fixture(autouse=True)
def _quiet_logging():
    """Keep test output readable; warnings and errors still print."""
    apply_logging_policy("quiet")
    yield
    apply_logging_policy("normal")


@pytest.fixture(autouse=True)
def _clean_event_bus():
    get_event_bus().clear()
    yield
    get_event_bus().clear()


@pytest.fixture
def capsules_dir(tmp_path):
    d = tmp_path / "capsules"
    d.mkdir()
    return d


@pytest.fixture
def store(capsules_dir):
    return ArchiveStore(capsules_dir)


@pytest.fixture
def make_capsule(capsules_dir):
    """Factory: make_capsule("kjv.tar.gz", {"mods.d/kjv.conf": KJV_CONF})."""

    def _make(name: str, files: dict) -> Path:
        return build_tar(capsules_dir / name, files)

    return _make


@pytest.fixture
def loader():
    return PluginLoader()


@pytest.fixture
def pipeline(store, loader, tmp_path):
    return ConversionPipeline(store, loader, PluginRunner(loader), work_dir=tmp_path / "work")


@pytest.fixture
def kjv_capsule(make_capsule):
    return make_capsule(
        "kjv.tar.gz",
        {
            "mods.d/kjv.conf": KJV_CONF,
            "modules/texts/ztext/kjv/ot.bzs": b"\x00" * 12,
        },
    )
