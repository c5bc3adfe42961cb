"""
Keep-count retention for remote backups.

Only the newest N backups are kept. A backup that a kept incremental backup
still depends on (directly or through a chain of required backups) is never
deleted.
"""

import logging
from typing import Dict, List

from chbackup.models import BackupSummary
from .storage import StorageError


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Enforces backups_to_keep_remote on a backup destination.
    """

    def __init__(self, destination):
        """
        Initialize retention manager.

        Args:
            destination: BackupDestination to clean up
        """
        self.destination = destination

    def backups_to_delete(self, backups: List[BackupSummary], keep: int) -> List[BackupSummary]:
        """
        Select backups beyond the newest keep.

        Args:
            backups: Remote backups with metadata, any order
            keep: Number of newest backups to keep, 0 keeps everything

        Returns:
            Backups to delete, oldest first
        """
        if keep <= 0:
            return []

        complete = [b for b in backups if not b.broken]
        complete.sort(key=lambda b: b.upload_date, reverse=True)
        if len(complete) <= keep:
            return []

        by_name: Dict[str, BackupSummary] = {b.backup_name: b for b in complete}
        protected = set()
        for backup in complete[:keep]:
            required = backup.metadata.required_backup if backup.metadata else ''
            while required and required not in protected:
                protected.add(required)
                parent = by_name.get(required)
                required = parent.metadata.required_backup if parent and parent.metadata else ''

        candidates = [b for b in complete[keep:] if b.backup_name not in protected]
        return list(reversed(candidates))

    def enforce(self, keep: int) -> List[str]:
        """
        Delete old backups from remote storage.

        Args:
            keep: Number of newest backups to keep, 0 keeps everything

        Returns:
            Names of deleted backups

        Raises:
            StorageError: If listing or deleting fails
        """
        if keep <= 0:
            return []

        backups = self.destination.list_backups(with_metadata=True)
        deleted = []

        for backup in self.backups_to_delete(backups, keep):
            try:
                self.destination.remove_backup(backup.backup_name)
            except StorageError as e:
                raise StorageError(f"Can't remove old backup {backup.backup_name}: {e}")
            deleted.append(backup.backup_name)
            logger.info(f"Deleted old remote backup: {backup.backup_name}")

        logger.info(f"Retention enforcement complete. Kept: {keep}, deleted: {len(deleted)}")
        return deleted
