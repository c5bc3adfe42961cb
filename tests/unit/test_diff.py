"""
Unit tests for diff-from resolution (chbackup/backup/diff.py).
"""

import json
from unittest.mock import MagicMock

import pytest

from chbackup.backup.diff import DiffResolver, mark_required_parts
from chbackup.exceptions import BackupError, BackupNotFoundError
from chbackup.models import BackupMetadata, BackupSummary, Part, TableMetadata, TableTitle

from conftest import write_local_backup


def _table(database, table, parts):
    return TableMetadata(
        database, table,
        parts={disk: [Part(name) for name in names] for disk, names in parts.items()}
    )


class TestMarkRequiredParts:
    """Test flagging of carried-over parts."""

    def test_same_disk_same_name(self):
        """Test a part known on the same disk is required."""
        tables = [_table('db', 't', {'default': ['p1', 'p2']})]
        diff = {TableTitle('db', 't'): _table('db', 't', {'default': ['p1']})}

        assert mark_required_parts(tables, diff) == 1
        assert [p.required for p in tables[0].parts['default']] == [True, False]

    def test_other_disk_is_not_a_match(self):
        """Test a part with the same name on another disk is uploaded again."""
        tables = [_table('db', 't', {'default': ['p1'], 'hdd': ['p2']})]
        diff = {TableTitle('db', 't'): _table('db', 't', {'hdd': ['p1'], 'default': ['p2']})}

        assert mark_required_parts(tables, diff) == 0

    def test_table_missing_from_diff(self):
        """Test tables new since the diff-from backup are uploaded in full."""
        tables = [_table('db', 'new', {'default': ['p1']})]
        diff = {TableTitle('db', 't'): _table('db', 't', {'default': ['p1']})}

        assert mark_required_parts(tables, diff) == 0
        assert tables[0].parts['default'][0].required is False


class TestDiffFromLocal:
    """Test diff resolution against a local backup."""

    def test_tables_diff_from_local(self, data_path):
        write_local_backup(data_path, 'b0', {
            'db.t1': {'default': {'p1': {'data.bin': b'1'}}},
            'db.t2': {'default': {'p1': {'data.bin': b'1'}}},
        })

        diff = DiffResolver(data_path).tables_diff_from_local('b0', 'db.t1')

        assert list(diff) == [TableTitle('db', 't1')]
        assert [p.name for p in diff[TableTitle('db', 't1')].parts['default']] == ['p1']

    def test_missing_local_backup(self, data_path):
        with pytest.raises(BackupNotFoundError):
            DiffResolver(data_path).tables_diff_from_local('b0', '')

    def test_backup_without_tables(self, data_path):
        """Test a diff-from backup without tables yields an empty diff."""
        write_local_backup(data_path, 'b0', {})

        assert DiffResolver(data_path).tables_diff_from_local('b0', '') == {}


class TestDiffFromRemote:
    """Test diff resolution against a remote backup."""

    def _destination(self, backups, files=None):
        destination = MagicMock()
        destination.list_backups.return_value = backups
        files = files or {}
        destination.get_file.side_effect = lambda key: files[key]
        return destination

    def test_tables_diff_from_remote(self, data_path):
        metadata = BackupMetadata('b0', tables=[TableTitle('db', 't1'), TableTitle('db', 't2')])
        table = {'database': 'db', 'table': 't1', 'parts': {'default': [{'name': 'p1'}]}}
        destination = self._destination(
            [BackupSummary('b0', metadata=metadata)],
            {'b0/metadata/db/t1.json': json.dumps(table).encode()}
        )

        diff = DiffResolver(data_path, destination).tables_diff_from_remote('b0', 'db.t1')

        assert list(diff) == [TableTitle('db', 't1')]
        destination.list_backups.assert_called_once_with(with_metadata=True, filter_name='b0')
        destination.get_file.assert_called_once_with('b0/metadata/db/t1.json')

    def test_encoded_names(self, data_path):
        """Test table metadata keys use the encoded path form."""
        metadata = BackupMetadata('b0', tables=[TableTitle('my-db', 'a.b')])
        table = {'database': 'my-db', 'table': 'a.b', 'parts': {}}
        destination = self._destination(
            [BackupSummary('b0', metadata=metadata)],
            {'b0/metadata/my%2Ddb/a%2Eb.json': json.dumps(table).encode()}
        )

        diff = DiffResolver(data_path, destination).tables_diff_from_remote('b0', '')

        assert list(diff) == [TableTitle('my-db', 'a.b')]

    def test_not_found(self, data_path):
        destination = self._destination([])

        with pytest.raises(BackupNotFoundError, match="b0 not found on remote storage"):
            DiffResolver(data_path, destination).tables_diff_from_remote('b0', '')

    def test_backup_without_tables(self, data_path):
        """Test a remote diff-from backup without tables yields an empty diff."""
        destination = self._destination([BackupSummary('b0', metadata=BackupMetadata('b0'))])

        assert DiffResolver(data_path, destination).tables_diff_from_remote('b0', '') == {}
        destination.get_file.assert_not_called()

    def test_without_destination(self, data_path):
        with pytest.raises(BackupError, match="Remote storage is required"):
            DiffResolver(data_path).tables_diff_from_remote('b0', '')
