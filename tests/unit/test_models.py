"""
Unit tests for backup documents (chbackup/models.py).
"""

import json
from datetime import datetime, timezone

from chbackup.models import BackupMetadata, BackupType, Part, TableMetadata, TableTitle


class TestTableTitle:
    """Test table identity."""

    def test_str_and_ordering(self):
        titles = sorted([TableTitle('db', 'b'), TableTitle('db', 'a'), TableTitle('a', 'z')])

        assert [str(t) for t in titles] == ['a.z', 'db.a', 'db.b']

    def test_hashable(self):
        assert {TableTitle('db', 't'): 1}[TableTitle('db', 't')] == 1


class TestTableMetadata:
    """Test per-table metadata documents."""

    def test_from_dict(self):
        table = TableMetadata.from_dict({
            'database': 'db',
            'table': 't',
            'query': 'CREATE TABLE db.t',
            'parts': {'default': [{'name': 'all_1_1_0', 'required': True}]},
            'total_bytes': 10,
        })

        assert table.title == TableTitle('db', 't')
        assert table.parts['default'][0].required is True
        assert table.backup_type == BackupType.FULL
        assert table.skip is False

    def test_unknown_keys_preserved(self):
        """Test keys written by other tools survive a round trip."""
        table = TableMetadata.from_dict({'database': 'db', 'table': 't', 'mutations': [{'id': 1}]})

        assert table.to_dict()['mutations'] == [{'id': 1}]

    def test_run_state_not_serialized(self):
        table = TableMetadata('db', 't', skip=True, backup_type=BackupType.SCHEMA_ONLY)

        data = json.loads(table.to_json())

        assert 'skip' not in data
        assert 'backup_type' not in data

    def test_part_to_dict_omits_defaults(self):
        assert Part('p1').to_dict() == {'name': 'p1'}
        assert Part('p1', size=5, required=True).to_dict() == {'name': 'p1', 'size': 5, 'required': True}


class TestBackupMetadata:
    """Test the root manifest."""

    def test_from_json(self):
        metadata = BackupMetadata.from_json(json.dumps({
            'backup_name': 'b1',
            'creation_date': '2024-01-15T10:00:00Z',
            'tables': [{'database': 'db', 'table': 't'}],
            'required_backup': 'b0',
            'custom_field': 'x',
        }).encode())

        assert metadata.creation_date == datetime(2024, 1, 15, 10, tzinfo=timezone.utc)
        assert metadata.tables == [TableTitle('db', 't')]
        assert metadata.required_backup == 'b0'
        assert metadata.extra == {'custom_field': 'x'}

    def test_to_dict(self):
        metadata = BackupMetadata('b1', tables=[TableTitle('db', 't')], compressed_size=42)

        data = metadata.to_dict()

        assert data['creation_date'] is None
        assert data['tables'] == [{'database': 'db', 'table': 't'}]
        assert data['compressed_size'] == 42
