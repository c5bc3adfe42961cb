"""
Unit tests for remote retention (chbackup/backup/retention.py).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from chbackup.backup.retention import RetentionManager
from chbackup.backup.storage import StorageError
from chbackup.models import BackupMetadata, BackupSummary


BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _backup(name, day, required='', broken=''):
    return BackupSummary(
        backup_name=name,
        metadata=BackupMetadata(name, required_backup=required),
        upload_date=BASE + timedelta(days=day),
        broken=broken
    )


def _names(backups):
    return [b.backup_name for b in backups]


class TestBackupsToDelete:
    """Test selection of backups beyond the keep count."""

    def test_keep_newest(self):
        backups = [_backup(f"b{i}", i) for i in range(5)]

        assert _names(RetentionManager(None).backups_to_delete(backups, 2)) == ['b0', 'b1', 'b2']

    def test_unsorted_input(self):
        """Test age comes from the upload date, not the listing order."""
        backups = [_backup('b2', 2), _backup('b0', 0), _backup('b1', 1)]

        assert _names(RetentionManager(None).backups_to_delete(backups, 1)) == ['b0', 'b1']

    def test_keep_zero_keeps_everything(self):
        backups = [_backup(f"b{i}", i) for i in range(3)]

        assert RetentionManager(None).backups_to_delete(backups, 0) == []

    def test_fewer_than_keep(self):
        assert RetentionManager(None).backups_to_delete([_backup('b0', 0)], 3) == []

    def test_required_chain_is_protected(self):
        """Test bases of a kept incremental backup survive, transitively."""
        backups = [
            _backup('full', 0),
            _backup('inc1', 1, required='full'),
            _backup('inc2', 2, required='inc1'),
            _backup('other', 3),
        ]

        to_delete = RetentionManager(None).backups_to_delete(backups + [_backup('inc3', 4, required='inc2')], 1)

        assert to_delete == [backups[3]]

    def test_broken_backups_are_ignored(self):
        """Test broken backups neither count towards keep nor get deleted."""
        backups = [
            _backup('b0', 0),
            _backup('b1', 1),
            BackupSummary('partial', broken="broken (can't stat metadata.json)"),
        ]

        assert _names(RetentionManager(None).backups_to_delete(backups, 1)) == ['b0']


class TestEnforce:
    """Test deletion through the destination."""

    def test_enforce(self):
        destination = MagicMock()
        destination.list_backups.return_value = [_backup(f"b{i}", i) for i in range(4)]

        deleted = RetentionManager(destination).enforce(2)

        assert deleted == ['b0', 'b1']
        destination.list_backups.assert_called_once_with(with_metadata=True)
        assert [c[0][0] for c in destination.remove_backup.call_args_list] == ['b0', 'b1']

    def test_enforce_disabled(self):
        destination = MagicMock()

        assert RetentionManager(destination).enforce(0) == []
        destination.list_backups.assert_not_called()

    def test_delete_failure(self):
        destination = MagicMock()
        destination.list_backups.return_value = [_backup('b0', 0), _backup('b1', 1)]
        destination.remove_backup.side_effect = StorageError("denied")

        with pytest.raises(StorageError, match="Can't remove old backup b0"):
            RetentionManager(destination).enforce(1)

    def test_remove_old_backups_on_s3(self, s3_bucket):
        """Test the destination shortcut against a real bucket layout."""
        from chbackup.backup.storage import BackupDestination, S3Storage

        for name in ('b1', 'b2', 'b3'):
            s3_bucket.put_object(
                Bucket='test-bucket', Key=f"backups/{name}/metadata.json", Body=BackupMetadata(name).to_json()
            )
            s3_bucket.put_object(Bucket='test-bucket', Key=f"backups/{name}/shadow/db/t/default_1.tar.gz", Body=b'x')

        storage = S3Storage('test-bucket', 'testing', 'testing', path='backups')
        destination = BackupDestination(storage)
        deleted = destination.remove_old_backups(2)

        assert len(deleted) == 1
        remaining = {b.backup_name for b in destination.list_backups()}
        assert remaining == {'b1', 'b2', 'b3'} - set(deleted)
