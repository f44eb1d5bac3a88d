"""Capsule filename conventions: IDs, backup names, format and size hints."""

from __future__ import annotations

# Most specific first; the first match is stripped.
ID_SUFFIXES: tuple[str, ...] = (".capsule.tar.xz", ".tar.xz", ".tar.gz", ".tar")

# Suffixes kept intact when deriving the "-old" backup name.
_BACKUP_SUFFIXES: tuple[str, ...] = (
    ".capsule.tar.gz",
    ".capsule.tar.xz",
    ".tar.gz",
    ".tar.xz",
)

# Filename markers for the format guess, checked in order.
_FORMAT_MARKERS: tuple[tuple[str, str], ...] = (
    ("sword", "sword"),
    ("osis", "osis"),
    ("usfm", "usfm"),
    ("usx", "usx"),
    ("zefania", "zefania"),
    ("theword", "theword"),
    ("esword", "esword"),
    ("json", "json"),
)

# Capsule listing accepts these final extensions.
CAPSULE_EXTENSIONS = frozenset({".xz", ".gz", ".tar"})


def capsule_id(filename: str) -> str:
    """Strip the first matching archive suffix (case-insensitive match)."""
    lower = filename.lower()
    for suffix in ID_SUFFIXES:
        if lower.endswith(suffix):
            return filename[: -len(suffix)]
    return filename


def ids_match(a: str, b: str) -> bool:
    return a.casefold() == b.casefold()


def split_archive_suffix(filename: str) -> tuple[str, str]:
    """Split into (base, suffix) for the backup-name suffixes; suffix may be ''."""
    lower = filename.lower()
    for suffix in _BACKUP_SUFFIXES:
        if lower.endswith(suffix):
            return filename[: -len(suffix)], filename[-len(suffix) :]
    return filename, ""


def old_name(filename: str, attempt: int = 1) -> str:
    """`kjv.tar.gz` -> `kjv-old.tar.gz`; attempt 2 gives `kjv-old-2.tar.gz`."""
    base, suffix = split_archive_suffix(filename)
    marker = "-old" if attempt <= 1 else f"-old-{attempt}"
    return f"{base}{marker}{suffix}"


def guess_format(filename: str) -> str:
    lower = filename.lower()
    for marker, fmt in _FORMAT_MARKERS:
        if marker in lower:
            return fmt
    return "unknown"


def human_size(size: int) -> str:
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {'KMGTPE'[exp]}B"
