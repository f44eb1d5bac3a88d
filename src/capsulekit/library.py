"""Entity listings built from capsules and SWORD modules.

These builders are what the cache layer memoizes. Each one tolerates
individual bad inputs: a capsule whose IR cannot be read, or a `.conf`
that cannot be parsed, is logged and left out of the listing.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from capsulekit.capsule.store import ArchiveStore
from capsulekit.capsule.types import CapsuleInfo, ScanFlags
from capsulekit.core.errors import CapsuleKitError
from capsulekit.core.logging import get_logger
from capsulekit.core.pool import parallel_map
from capsulekit.ir import Corpus
from capsulekit.sword import conf_files, read_conf

log = get_logger(__name__)

STRONGS_FEATURE = "Strong's Numbers"

# GlobalOptionFilter substring -> feature label.
_SWORD_FEATURES = (
    ("strongs", "StrongsNumbers"),
    ("morph", "Morphology"),
    ("footnotes", "Footnotes"),
    ("headings", "Headings"),
)

FlagsLookup = Callable[[CapsuleInfo], ScanFlags]


def _gathered(fn: Callable[[Any], Any], jobs, max_workers: int) -> list[Any]:
    """Values from a pool run; jobs that raised or returned None are left out."""
    return [r.value for r in parallel_map(fn, jobs, max_workers) if r.ok and r.value is not None]


@dataclass(frozen=True, slots=True)
class BibleInfo:
    id: str
    title: str
    abbrev: str
    language: str
    versification: str
    book_count: int
    verse_count: int
    features: tuple[str, ...] = ()
    capsule_path: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "abbrev": self.abbrev,
            "language": self.language,
            "versification": self.versification,
            "book_count": self.book_count,
            "verse_count": self.verse_count,
            "features": list(self.features),
            "capsule_path": self.capsule_path,
        }


@dataclass(frozen=True, slots=True)
class ManageableEntry:
    """A Bible that can be installed (IR generated) or is already installed."""

    id: str
    name: str
    source: str  # "capsule" or "sword"
    source_path: str
    is_installed: bool
    format: str = ""
    language: str = ""
    size: int = 0
    is_cas: bool = False
    tags: tuple[str, ...] = ()

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "source": self.source,
            "source_path": self.source_path,
            "is_installed": self.is_installed,
            "format": self.format,
            "language": self.language,
            "size": self.size,
            "is_cas": self.is_cas,
            "tags": list(self.tags),
        }


@dataclass(slots=True)
class CapsuleCategories:
    without_ir: list[CapsuleInfo] = field(default_factory=list)
    cas: list[CapsuleInfo] = field(default_factory=list)
    with_ir: list[CapsuleInfo] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "without_ir": [c.to_dict() for c in self.without_ir],
            "cas": [c.to_dict() for c in self.cas],
            "with_ir": [c.to_dict() for c in self.with_ir],
        }


# --- Bibles ------------------------------------------------------------------


def load_corpus(store: ArchiveStore, path: Path) -> Corpus:
    """Parse the IR stored in a capsule."""
    try:
        return Corpus.from_dict(store.read_ir(path))
    except (KeyError, TypeError, ValueError) as e:
        raise CapsuleKitError(f"IR in '{path.name}' is not a valid corpus: {e}") from e


def bible_info(corpus: Corpus, capsule: CapsuleInfo) -> BibleInfo:
    features = [STRONGS_FEATURE] if corpus.has_strongs else []
    for extra in corpus.attributes.get("features", "").split():
        if extra not in features:
            features.append(extra)
    return BibleInfo(
        id=capsule.id,
        title=corpus.title or capsule.id,
        abbrev=(corpus.id or capsule.id).upper(),
        language=corpus.language,
        versification=corpus.versification,
        book_count=len(corpus.documents),
        verse_count=corpus.verse_count,
        features=tuple(features),
        capsule_path=str(capsule.path),
    )


def build_bibles(
    capsules: list[CapsuleInfo],
    flags_for: FlagsLookup,
    corpus_for: Callable[[CapsuleInfo], Corpus],
    max_workers: int,
) -> list[BibleInfo]:
    """Bibles from every capsule that carries IR, sorted by title."""

    def one(capsule: CapsuleInfo) -> BibleInfo | None:
        try:
            if not flags_for(capsule).has_ir:
                return None
            corpus = corpus_for(capsule)
        except (CapsuleKitError, OSError) as e:
            log.warning(f"skipping capsule {capsule.name}: {e}")
            return None
        if corpus.module_type not in ("", "bible"):
            return None
        return bible_info(corpus, capsule)

    bibles = _gathered(one, capsules, max_workers)
    bibles.sort(key=lambda b: (b.title.casefold(), b.id))
    return bibles


# --- manageable listing ------------------------------------------------------


def _capsule_entry(capsule: CapsuleInfo, flags: ScanFlags) -> ManageableEntry:
    fmt = capsule.format
    tags = ["capsule", fmt]
    if flags.is_cas:
        tags.append("cas")
    if flags.has_ir:
        tags.append("identified")
    tags.append("installed" if flags.has_ir else "installable")
    return ManageableEntry(
        id=capsule.id,
        name=capsule.id,
        source="capsule",
        source_path=str(capsule.path),
        is_installed=flags.has_ir,
        format=fmt,
        size=capsule.size,
        is_cas=flags.is_cas,
        tags=tuple(tags),
    )


def build_manageable(
    capsules: list[CapsuleInfo],
    flags_for: FlagsLookup,
    max_workers: int,
    sword_modules: list[ManageableEntry] | None = None,
    bible_ids: list[str] | None = None,
) -> tuple[list[ManageableEntry], list[ManageableEntry]]:
    """Split capsules into (installed, installable) by IR presence.

    SWORD modules join the installable side unless their ID matches an
    installed capsule or one of `bible_ids`.
    """

    def one(capsule: CapsuleInfo) -> ManageableEntry | None:
        try:
            return _capsule_entry(capsule, flags_for(capsule))
        except (CapsuleKitError, OSError) as e:
            log.warning(f"skipping capsule {capsule.name}: {e}")
            return None

    entries = _gathered(one, capsules, max_workers)
    entries.sort(key=lambda e: e.id.casefold())
    installed = [e for e in entries if e.is_installed]
    installable = [e for e in entries if not e.is_installed]

    taken = {e.id.casefold() for e in installed}
    taken.update(b.casefold() for b in bible_ids or ())
    installable.extend(m for m in sword_modules or () if m.id.casefold() not in taken)
    installable.sort(key=lambda e: e.id.casefold())
    return installed, installable


# --- SWORD modules -----------------------------------------------------------


def sword_features(option_filters: list[str]) -> list[str]:
    joined = " ".join(option_filters).lower()
    return [label for marker, label in _SWORD_FEATURES if marker in joined]


def build_sword_modules(sword_dir: Path, max_workers: int) -> list[ManageableEntry]:
    """Bible text modules under `<sword_dir>/mods.d`; other modules are skipped."""

    def one(conf_path: Path) -> ManageableEntry | None:
        try:
            conf = read_conf(conf_path)
        except (OSError, UnicodeDecodeError) as e:
            log.warning(f"unreadable SWORD conf {conf_path.name}: {e}")
            return None
        if not conf.is_bible:
            return None
        tags = ["sword", "sword-pure", *sword_features(conf.features)]
        return ManageableEntry(
            id=conf.module,
            name=conf.description,
            source="sword",
            source_path=str(conf_path),
            is_installed=False,
            format="sword-pure",
            language=conf.language,
            tags=tuple(tags),
        )

    modules = _gathered(one, conf_files(sword_dir), max_workers)
    modules.sort(key=lambda m: m.id.casefold())
    return modules


# --- categorisation ----------------------------------------------------------


def categorize(
    capsules: list[CapsuleInfo],
    flags_for: FlagsLookup,
    max_workers: int,
) -> CapsuleCategories:
    """Group capsules: CAS first, then with IR, otherwise without IR."""

    def one(capsule: CapsuleInfo) -> tuple[CapsuleInfo, ScanFlags | None]:
        try:
            return capsule, flags_for(capsule)
        except (CapsuleKitError, OSError) as e:
            log.warning(f"skipping capsule {capsule.name}: {e}")
            return capsule, None

    out = CapsuleCategories()
    for capsule, flags in sorted(_gathered(one, capsules, max_workers), key=lambda r: r[0].name):
        if flags is None:
            continue
        if flags.is_cas:
            out.cas.append(capsule)
        elif flags.has_ir:
            out.with_ir.append(capsule)
        else:
            out.without_ir.append(capsule)
    return out
