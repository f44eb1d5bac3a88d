"""Source-format detection for extracted capsules.

Hints (manifest `source_format`, then filename markers) are tried first and
only count when a plugin is registered for them. Content inspection then
walks the extracted tree with priority OSIS > USX > USFM > SWORD module
structure. Manifest and IR files are never candidates.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from capsulekit.capsule.naming import guess_format
from capsulekit.sword import conf_files

SWORD_FORMAT = "sword-pure"

# (suffix, format) in priority order.
CONTENT_PATTERNS: tuple[tuple[str, str], ...] = (
    (".osis", "osis"),
    (".osis.xml", "osis"),
    (".usx", "usx"),
    (".usfm", "usfm"),
    (".sfm", "usfm"),
)
_PRIORITY = ("osis", "usx", "usfm")


@dataclass(frozen=True)
class ContentMatch:
    path: Path
    format: str


def _is_candidate(name: str) -> bool:
    lower = name.lower()
    return lower != "manifest.json" and not lower.endswith(".ir.json")


def _format_of(name: str) -> str | None:
    lower = name.lower()
    for suffix, fmt in CONTENT_PATTERNS:
        if lower.endswith(suffix):
            return fmt
    return None


def _walk_files(root: Path) -> list[Path]:
    files: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            files.append(Path(dirpath) / name)
    return files


def sword_base(extract_dir: Path) -> Path | None:
    for base in (extract_dir, extract_dir / "capsule"):
        if conf_files(base):
            return base
    return None


def find_content(extract_dir: Path, only: str | None = None) -> ContentMatch | None:
    """Best convertible content under extract_dir, or None.

    With `only`, just that format is looked for.
    """
    first: dict[str, Path] = {}
    for path in _walk_files(extract_dir):
        if not _is_candidate(path.name):
            continue
        fmt = _format_of(path.name)
        if fmt is None or fmt in first or (only and fmt != only):
            continue
        first[fmt] = path
        if fmt == _PRIORITY[0]:
            break

    for fmt in _PRIORITY:
        if fmt in first:
            return ContentMatch(first[fmt], fmt)

    if only in (None, SWORD_FORMAT):
        base = sword_base(extract_dir)
        if base is not None:
            return ContentMatch(base, SWORD_FORMAT)
    return None


def format_hints(manifest: dict[str, object], capsule_name: str) -> list[str]:
    hints: list[str] = []
    declared = str(manifest.get("source_format") or "").strip().lower()
    if declared:
        hints.append(declared)
    guessed = guess_format(capsule_name)
    if guessed != "unknown" and guessed not in hints:
        hints.append(guessed)
    return hints


def resolve_source(
    extract_dir: Path,
    hints: list[str],
    has_plugin: Callable[[str], bool],
) -> ContentMatch | None:
    """Pick the source format and the path handed to its plugin."""
    known = {fmt for _suffix, fmt in CONTENT_PATTERNS} | {SWORD_FORMAT}
    for hint in hints:
        if not has_plugin(hint):
            continue
        if hint in known:
            match = find_content(extract_dir, only=hint)
            if match is not None:
                return match
            continue
        # Formats without a content signature get the whole tree.
        return ContentMatch(extract_dir, hint)
    return find_content(extract_dir)


def list_files(extract_dir: Path) -> list[str]:
    return [p.relative_to(extract_dir).as_posix() for p in _walk_files(extract_dir)]
