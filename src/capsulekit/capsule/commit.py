"""Two-phase capsule commit: move the original aside, then write the new archive.

The staging directory must already hold the complete new capsule content
(manifest included). The renamed original is kept; callers that no longer
want it call `discard_backup()` after confirming success.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

from capsulekit.capsule.naming import old_name
from capsulekit.core.errors import TransactionError
from capsulekit.core.logging import get_logger

if TYPE_CHECKING:
    from capsulekit.capsule.store import ArchiveStore

log = get_logger(__name__)

# Upper bound on numbered backups (kjv-old.tar.gz, kjv-old-2.tar.gz, ...).
_MAX_BACKUPS = 1000


def backup_path_for(original: Path) -> Path:
    """First free `-old` name next to original; earlier backups are never reused."""
    for attempt in range(1, _MAX_BACKUPS + 1):
        candidate = original.with_name(old_name(original.name, attempt))
        if not candidate.exists():
            return candidate
    raise TransactionError(f"Too many backups exist for {original.name}")


class CapsuleCommit:
    def __init__(self, store: ArchiveStore, original: Path, staging_dir: Path) -> None:
        self.store = store
        self.original = original
        self.staging_dir = staging_dir
        self.backup: Path | None = None
        self.committed = False

    def commit(self) -> Path:
        """Replace the original capsule; returns the backup path.

        Raises:
            TransactionError: the swap failed; the original is back in place
        """
        if not (self.staging_dir / "manifest.json").is_file():
            raise TransactionError("Staging directory has no manifest.json")
        if self.committed:
            raise TransactionError("Commit already performed")

        backup = backup_path_for(self.original)
        try:
            os.rename(self.original, backup)
        except OSError as e:
            raise TransactionError(f"Failed to rename original capsule: {e}") from e
        self.backup = backup
        log.debug(f"commit: original moved aside {self.original.name} -> {backup.name}")

        try:
            self.store.create_archive(self.staging_dir, self.original)
        except Exception as e:
            self.rollback()
            raise TransactionError(
                f"Failed to write capsule {self.original.name}; original restored",
                rolled_back=True,
            ) from e

        self.committed = True
        log.info(f"capsule replaced: {self.original.name} (previous kept as {backup.name})")
        return backup

    def rollback(self) -> None:
        """Put the original back under its own name."""
        if self.backup is None:
            return
        if self.original.exists():
            self.original.unlink()
        os.rename(self.backup, self.original)
        log.warning(f"commit rolled back: {self.original.name} restored")
        self.backup = None

    def discard_backup(self) -> None:
        if not self.committed or self.backup is None:
            raise TransactionError("Nothing committed; backup is still needed")
        self.backup.unlink(missing_ok=True)
        self.backup = None
