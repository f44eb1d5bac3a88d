"""Capsule archives: naming, layout, reads, writes and commits."""

from capsulekit.capsule.commit import CapsuleCommit, backup_path_for
from capsulekit.capsule.naming import capsule_id, human_size, ids_match, old_name
from capsulekit.capsule.store import ArchiveStore, archive_format_for, detect_content_type
from capsulekit.capsule.types import ArchiveFormat, Artifact, CapsuleInfo, Manifest, ScanFlags

__all__ = [
    "ArchiveFormat",
    "ArchiveStore",
    "Artifact",
    "CapsuleCommit",
    "CapsuleInfo",
    "Manifest",
    "ScanFlags",
    "archive_format_for",
    "backup_path_for",
    "capsule_id",
    "detect_content_type",
    "human_size",
    "ids_match",
    "old_name",
]
