"""Content-addressed blob layout: blobs/<algorithm>/<xx>/<digest>.

New blobs are written with SHA-256. BLAKE3 blobs produced elsewhere are
read by path; their digest is never recomputed here.
"""

from __future__ import annotations

import hashlib
import os
import re
import shutil
from pathlib import Path, PurePosixPath
from typing import Any

from capsulekit.core.errors import ArtifactNotFoundError, FormatError
from capsulekit.core.logging import get_logger

_logger = get_logger(__name__)

BLOBS_DIR = "blobs"
ALGORITHMS = ("blake3", "sha256")
_HEX_RE = re.compile(r"^[0-9a-f]{16,128}$")


def blob_path(algorithm: str, digest: str) -> str:
    """Archive-relative blob path for a digest."""
    algorithm = algorithm.lower()
    digest = digest.lower()
    if algorithm not in ALGORITHMS:
        raise FormatError(f"Unknown CAS hash algorithm: {algorithm}")
    if not _HEX_RE.match(digest):
        raise FormatError("CAS digest must be lowercase hex")
    return f"{BLOBS_DIR}/{algorithm}/{digest[:2]}/{digest}"


def parse_blob_path(member: str) -> tuple[str, str] | None:
    """Return (algorithm, digest) for a blob member path, else None."""
    parts = PurePosixPath(member.lstrip("./")).parts
    if len(parts) != 4 or parts[0] != BLOBS_DIR:
        return None
    _blobs, algorithm, prefix, digest = parts
    if algorithm not in ALGORITHMS or not digest.startswith(prefix):
        return None
    return algorithm, digest


def write_blob(root: Path, data: bytes) -> str:
    """Store `data` under root/blobs/sha256/...; existing blobs are left untouched."""
    digest = hashlib.sha256(data).hexdigest()
    target = root / blob_path("sha256", digest)
    if target.exists():
        return digest

    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_name(target.name + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, target)
    return digest


def find_blob(root: Path, digest: str) -> Path | None:
    for algorithm in ALGORITHMS:
        candidate = root / blob_path(algorithm, digest)
        if candidate.is_file():
            return candidate
    return None


def read_blob(root: Path, digest: str) -> bytes:
    path = find_blob(root, digest)
    if path is None:
        raise ArtifactNotFoundError(str(root), blob_path("sha256", digest))
    return path.read_bytes()


def _main_artifact(manifest: dict[str, Any]) -> dict[str, Any] | None:
    wanted = {"main", str(manifest.get("main_artifact") or "main")}
    artifacts = [a for a in manifest.get("artifacts") or [] if isinstance(a, dict)]
    for art in artifacts:
        if art.get("id") in wanted:
            return art
    # Single-artifact capsules often leave the main id unset.
    return artifacts[0] if artifacts else None


def restore_main_artifact(extract_dir: Path, manifest: dict[str, Any], dest_dir: Path) -> list[str]:
    """Materialize the files of the manifest's main artifact into dest_dir.

    Each file entry names its archive-relative `path` and the `blake3` or
    `sha256` digest of the blob holding its content. Returns the restored
    relative paths in manifest order.

    Raises:
        FormatError: manifest has no usable main artifact or a path is unsafe
        ArtifactNotFoundError: a referenced blob is missing
    """
    art = _main_artifact(manifest)
    if art is None:
        raise FormatError("CAS manifest has no main artifact")

    files = art.get("files") or []
    if not isinstance(files, list) or not files:
        raise FormatError("CAS main artifact lists no files")

    restored: list[str] = []
    dest_root = dest_dir.resolve()
    for entry in files:
        if not isinstance(entry, dict):
            raise FormatError("CAS file entry must be an object")
        rel = str(entry.get("path") or "")
        digest = str(entry.get("blake3") or entry.get("sha256") or "")
        if not rel or not digest:
            raise FormatError("CAS file entry needs a path and a digest")

        src = find_blob(extract_dir, digest)
        if src is None:
            raise ArtifactNotFoundError(str(extract_dir), rel)

        target = (dest_dir / rel).resolve()
        try:
            target.relative_to(dest_root)
        except ValueError:
            raise FormatError(f"CAS file path escapes the capsule: {rel}") from None

        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, target)
        restored.append(rel)
        _logger.debug(f"cas restore path={rel} digest={digest[:12]}")

    return restored
