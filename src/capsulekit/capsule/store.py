"""ArchiveStore - read and write capsule archives.

Every read is a single sequential pass over a streaming tar reader
(`r|`, `r|gz`, `r|xz`), and all reads share one semaphore that caps the
number of decompression streams open at once.
"""

from __future__ import annotations

import gzip
import hashlib
import json
import lzma
import os
import shutil
import tarfile
import threading
import zlib
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Any

from capsulekit.capsule.cas import parse_blob_path
from capsulekit.capsule.commit import CapsuleCommit
from capsulekit.capsule.naming import CAPSULE_EXTENSIONS, capsule_id, ids_match
from capsulekit.capsule.types import ArchiveFormat, Artifact, CapsuleInfo, Manifest, ScanFlags
from capsulekit.core.errors import (
    ArtifactNotFoundError,
    CapsuleNotFoundError,
    CorruptedArchiveError,
    FormatError,
    IRNotFoundError,
    PathOutsideRootError,
    UnsupportedArchiveError,
)
from capsulekit.core.logging import get_logger

log = get_logger(__name__)

MANIFEST_NAME = "manifest.json"
IR_SUFFIX = ".ir.json"
DEFAULT_MAX_CONCURRENT_READS = 16

# A lone top-level directory with one of these names is capsule content,
# not a wrapper directory, and is kept on extraction.
_LAYOUT_DIRS = frozenset({"blobs", "mods.d", "modules"})

_SUFFIX_MAP: list[tuple[str, ArchiveFormat]] = [
    (".tar.gz", ArchiveFormat.TAR_GZ),
    (".tgz", ArchiveFormat.TAR_GZ),
    (".tar.xz", ArchiveFormat.TAR_XZ),
    (".txz", ArchiveFormat.TAR_XZ),
    (".tar", ArchiveFormat.TAR),
]

_STREAM_ERRORS = (tarfile.TarError, lzma.LZMAError, zlib.error, gzip.BadGzipFile, EOFError)

_CONTENT_TYPES = {
    ".json": "application/json",
    ".xml": "application/xml",
    ".osis": "application/xml",
    ".usx": "application/xml",
    ".usfm": "text/plain; charset=utf-8",
    ".sfm": "text/plain; charset=utf-8",
    ".conf": "text/plain; charset=utf-8",
    ".txt": "text/plain; charset=utf-8",
    ".md": "text/markdown; charset=utf-8",
    ".html": "text/html; charset=utf-8",
}


def archive_format_for(path: Path | str) -> ArchiveFormat:
    """Archive format from the filename suffix only.

    Bare `.gz`/`.xz` names are read as compressed tar.
    """
    name = Path(path).name.lower()
    for suffix, fmt in _SUFFIX_MAP:
        if name.endswith(suffix):
            return fmt
    if name.endswith(".gz"):
        return ArchiveFormat.TAR_GZ
    if name.endswith(".xz"):
        return ArchiveFormat.TAR_XZ
    raise UnsupportedArchiveError(str(path))


def detect_content_type(name: str, data: bytes) -> str:
    suffix = PurePosixPath(name.lower()).suffix
    if suffix in _CONTENT_TYPES:
        return _CONTENT_TYPES[suffix]

    head = data[:512]
    if b"\x00" in head:
        return "application/octet-stream"
    try:
        head.decode("utf-8")
    except UnicodeDecodeError:
        # A multi-byte sequence may be cut at the sniff boundary.
        try:
            head[:-3].decode("utf-8")
        except UnicodeDecodeError:
            return "application/octet-stream"
    return "text/plain; charset=utf-8"


def member_name(member: tarfile.TarInfo) -> str:
    """Archive-relative member path without leading './' or '/'."""
    name = member.name
    while name.startswith("./"):
        name = name[2:]
    return name.lstrip("/").rstrip("/")


def _is_manifest(name: str) -> bool:
    # Top level or directly under a single wrapper directory.
    parts = name.split("/")
    return parts[-1] == MANIFEST_NAME and len(parts) <= 2


def _tarinfo_deterministic(name: str, size: int, executable: bool = False) -> tarfile.TarInfo:
    ti = tarfile.TarInfo(name=name)
    ti.size = size
    ti.mtime = 0
    ti.uid = 0
    ti.gid = 0
    ti.uname = ""
    ti.gname = ""
    ti.mode = 0o755 if executable else 0o644
    return ti


class ArchiveStore:
    """Capsule archives under one flat capsule directory."""

    def __init__(
        self,
        capsules_dir: Path,
        *,
        max_concurrent_reads: int = DEFAULT_MAX_CONCURRENT_READS,
    ) -> None:
        if max_concurrent_reads < 1:
            raise ValueError("max_concurrent_reads must be >= 1")
        self.capsules_dir = Path(capsules_dir)
        self.max_concurrent_reads = max_concurrent_reads
        self._read_slots = threading.BoundedSemaphore(max_concurrent_reads)
        self._stats_lock = threading.Lock()
        self._active_reads = 0
        self.peak_concurrent_reads = 0
        self.archive_passes = 0

    # --- lookup ------------------------------------------------------------

    def resolve(self, name: str | Path, *, must_exist: bool = True) -> Path:
        """Resolve a capsule name (or absolute path) inside the capsule directory.

        Raises:
            PathOutsideRootError: name escapes the capsule directory
            CapsuleNotFoundError: must_exist and the file is missing
        """
        root = self.capsules_dir.resolve()
        raw = str(name).replace("\\", "/")
        candidate = Path(raw)
        if not candidate.is_absolute():
            rel = PurePosixPath(raw)
            if ".." in rel.parts or not rel.parts:
                raise PathOutsideRootError(raw)
            candidate = root / Path(*rel.parts)

        abs_path = candidate.resolve()
        try:
            abs_path.relative_to(root)
        except ValueError:
            raise PathOutsideRootError(raw) from None

        if must_exist and not abs_path.is_file():
            raise CapsuleNotFoundError(str(name))
        return abs_path

    def list_capsules(self) -> list[CapsuleInfo]:
        """Capsule files directly in the capsule directory, sorted by name.

        A missing directory is an empty listing.
        """
        if not self.capsules_dir.is_dir():
            return []

        infos: list[CapsuleInfo] = []
        with os.scandir(self.capsules_dir) as it:
            entries = sorted(it, key=lambda e: e.name)
        for entry in entries:
            if not entry.is_file():
                continue
            if Path(entry.name).suffix.lower() not in CAPSULE_EXTENSIONS:
                continue
            try:
                size = entry.stat().st_size
            except FileNotFoundError:
                continue
            infos.append(CapsuleInfo.from_path(Path(entry.path), size))
        return infos

    def find_by_id(self, wanted: str) -> CapsuleInfo:
        """Case-insensitive lookup by capsule ID."""
        for info in self.list_capsules():
            if ids_match(info.id, wanted):
                return info
        raise CapsuleNotFoundError(wanted)

    # --- reads -------------------------------------------------------------

    @contextmanager
    def _open_stream(self, path: Path) -> Iterator[tarfile.TarFile]:
        fmt = archive_format_for(path)
        with self._read_slots:
            with self._stats_lock:
                self._active_reads += 1
                self.archive_passes += 1
                self.peak_concurrent_reads = max(self.peak_concurrent_reads, self._active_reads)
            try:
                try:
                    tf = tarfile.open(path, mode=fmt.read_stream_mode)
                except FileNotFoundError:
                    raise CapsuleNotFoundError(Path(path).name) from None
                except _STREAM_ERRORS as e:
                    log.debug(f"archive open failed path={path}: {type(e).__name__}: {e}")
                    raise CorruptedArchiveError(Path(path).name) from e
                try:
                    with tf:
                        yield tf
                except _STREAM_ERRORS as e:
                    log.debug(f"archive read failed path={path}: {type(e).__name__}: {e}")
                    raise CorruptedArchiveError(Path(path).name) from e
            finally:
                with self._stats_lock:
                    self._active_reads -= 1

    def scan_metadata(self, path: Path) -> ScanFlags:
        """Detect CAS layout and IR presence in one pass."""
        is_cas = False
        has_ir = False
        with self._open_stream(path) as tf:
            for member in tf:
                name = member_name(member)
                if not is_cas and (name == "blobs" or name.startswith("blobs/")):
                    is_cas = True
                if not has_ir and member.isfile() and name.endswith(IR_SUFFIX):
                    has_ir = True
                if is_cas and has_ir:
                    break
        return ScanFlags(is_cas=is_cas, has_ir=has_ir)

    def read_manifest(self, path: Path) -> Manifest | None:
        """Return the capsule manifest, or None when absent or unparseable."""
        with self._open_stream(path) as tf:
            for member in tf:
                if member.isfile() and _is_manifest(member_name(member)):
                    return self._parse_manifest(path, tf, member)
        return None

    def read_capsule(
        self, path: Path, *, with_hashes: bool = False
    ) -> tuple[Manifest | None, list[Artifact]]:
        """Manifest plus artifact listing in one pass.

        CAS blob artifacts take their hash from the blob path; other members
        are hashed (sha256) only when with_hashes is set.
        """
        manifest: Manifest | None = None
        artifacts: list[Artifact] = []
        with self._open_stream(path) as tf:
            for member in tf:
                if not member.isfile():
                    continue
                name = member_name(member)
                if manifest is None and _is_manifest(name):
                    manifest = self._parse_manifest(path, tf, member)
                    continue
                digest = ""
                blob = parse_blob_path(name)
                if blob is not None:
                    digest = blob[1]
                elif with_hashes:
                    digest = _sha256_member(tf, member)
                artifacts.append(Artifact(id=name, size=member.size, hash=digest))
        return manifest, artifacts

    def read_artifact(self, path: Path, artifact_id: str) -> tuple[bytes, str]:
        """Member content and its detected content type."""
        wanted = artifact_id.strip("/")
        while wanted.startswith("./"):
            wanted = wanted[2:]
        with self._open_stream(path) as tf:
            for member in tf:
                if member.isfile() and member_name(member) == wanted:
                    data = _read_member(tf, member)
                    return data, detect_content_type(wanted, data)
        raise ArtifactNotFoundError(Path(path).name, artifact_id)

    def read_ir(self, path: Path) -> dict[str, Any]:
        """Parse the first *.ir.json member."""
        with self._open_stream(path) as tf:
            for member in tf:
                name = member_name(member)
                if not (member.isfile() and name.endswith(IR_SUFFIX)):
                    continue
                raw = _read_member(tf, member)
                try:
                    data = json.loads(raw)
                except (UnicodeDecodeError, json.JSONDecodeError) as e:
                    log.warning(f"IR member unreadable capsule={Path(path).name} member={name}")
                    log.debug(f"IR parse error: {e}")
                    raise FormatError(f"IR in capsule '{Path(path).name}' is not valid JSON") from e
                if not isinstance(data, dict):
                    raise FormatError(f"IR in capsule '{Path(path).name}' is not a JSON object")
                return data
        raise IRNotFoundError(capsule_id(Path(path).name))

    def _parse_manifest(
        self, path: Path, tf: tarfile.TarFile, member: tarfile.TarInfo
    ) -> Manifest | None:
        raw = _read_member(tf, member)
        try:
            return Manifest.from_dict(json.loads(raw))
        except (UnicodeDecodeError, json.JSONDecodeError, ValueError) as e:
            log.warning(f"manifest unreadable; treating as absent capsule={Path(path).name}")
            log.debug(f"manifest parse error: {e}")
            return None

    # --- extraction --------------------------------------------------------

    def extract(self, path: Path, dest: Path) -> None:
        """Extract regular files and directories into dest.

        When every member sits under one wrapper directory, that first path
        segment is stripped. Absolute paths, '..' segments, links and device
        members are skipped.
        """
        dest.mkdir(parents=True, exist_ok=True)
        root = dest.resolve()
        with self._open_stream(path) as tf:
            for member in tf:
                name = member_name(member)
                if not name:
                    continue
                rel = PurePosixPath(name)
                if ".." in rel.parts:
                    log.warning(f"skipping unsafe member capsule={Path(path).name} member={name!r}")
                    continue
                target = (root / Path(*rel.parts)).resolve()
                try:
                    target.relative_to(root)
                except ValueError:
                    log.warning(f"skipping unsafe member capsule={Path(path).name} member={name!r}")
                    continue

                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    log.debug(f"skipping non-regular member {name!r}")
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                src = tf.extractfile(member)
                if src is None:
                    continue
                with src, target.open("wb") as out:
                    shutil.copyfileobj(src, out)
                if member.mode & 0o111:
                    target.chmod(0o755)

        _strip_wrapper_dir(root)

    # --- writes ------------------------------------------------------------

    def create_archive(self, src_dir: Path, dest: Path) -> Path:
        """Write src_dir as a deterministic tar at dest.

        Compression follows the dest suffix. The archive is written to a
        hidden partial file and renamed into place, so dest is never left
        half-written.
        """
        fmt = archive_format_for(dest)
        files = [p for p in src_dir.rglob("*") if p.is_file() and not p.is_symlink()]
        rels = sorted(p.relative_to(src_dir).as_posix() for p in files)
        if MANIFEST_NAME in rels:
            rels.remove(MANIFEST_NAME)
            rels.insert(0, MANIFEST_NAME)

        tmp = dest.with_name(f".{dest.name}.partial")
        try:
            with tarfile.open(tmp, fmt.write_mode) as tf:
                for rel in rels:
                    file_path = src_dir / rel
                    st = file_path.stat()
                    info = _tarinfo_deterministic(rel, st.st_size, bool(st.st_mode & 0o111))
                    with file_path.open("rb") as f:
                        tf.addfile(info, f)
            os.replace(tmp, dest)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        log.debug(f"archive written path={dest} members={len(rels)} format={fmt}")
        return dest

    def atomic_replace(self, original: Path, staging_dir: Path) -> Path:
        """Swap `original` for an archive of staging_dir; returns the backup path."""
        return CapsuleCommit(self, original, staging_dir).commit()

    def delete(self, name: str | Path) -> Path:
        path = self.resolve(name)
        path.unlink()
        log.info(f"capsule deleted: {path.name}")
        return path


def _read_member(tf: tarfile.TarFile, member: tarfile.TarInfo) -> bytes:
    f = tf.extractfile(member)
    if f is None:
        return b""
    with f:
        return f.read()


def _sha256_member(tf: tarfile.TarFile, member: tarfile.TarInfo) -> str:
    h = hashlib.sha256()
    f = tf.extractfile(member)
    if f is not None:
        with f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                h.update(chunk)
    return h.hexdigest()


def _strip_wrapper_dir(root: Path) -> None:
    entries = list(root.iterdir())
    if len(entries) != 1:
        return
    wrapper = entries[0]
    if not wrapper.is_dir() or wrapper.is_symlink() or wrapper.name in _LAYOUT_DIRS:
        return

    # Move aside first; the wrapper may contain an entry with its own name.
    staged = root / f".{wrapper.name}.strip"
    wrapper.rename(staged)
    for child in staged.iterdir():
        child.rename(root / child.name)
    staged.rmdir()
