"""
Shared pytest fixtures for chbackup tests.

This module provides fixtures for:
- Configuration with S3 remote storage
- Local backup trees on disk
- A mocked ClickHouse collaborator
- A mocked S3 bucket (moto)
- Flask app and test client
"""

import json
import os
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from chbackup import create_app
from chbackup.backup.sources import table_path_encode
from chbackup.config import Config
from chbackup.models import Disk


def write_local_backup(data_path, backup_name, tables, disk_paths=None, data_format='tar'):
    """
    Create a local backup tree.

    Args:
        data_path: Default data path (path of the ``default`` disk)
        backup_name: Backup name
        tables: Mapping of ``"db.table"`` to ``{disk: {part: {file: bytes}}}``
        disk_paths: Paths of disks other than ``default``
        data_format: data_format written to metadata.json

    Returns:
        Path of the backup directory
    """
    disk_paths = dict(disk_paths or {})
    disk_paths.setdefault('default', data_path)
    root = os.path.join(data_path, 'backup', backup_name)

    titles = []
    for full_name, disks in tables.items():
        database, table = full_name.split('.', 1)
        titles.append({'database': database, 'table': table})
        db_and_table = os.path.join(table_path_encode(database), table_path_encode(table))

        parts = {}
        for disk, disk_parts in disks.items():
            parts[disk] = []
            for part_name, files in disk_parts.items():
                part_dir = os.path.join(
                    disk_paths[disk], 'backup', backup_name, 'shadow', db_and_table, disk, part_name
                )
                os.makedirs(part_dir, exist_ok=True)
                for file_name, content in files.items():
                    with open(os.path.join(part_dir, file_name), 'wb') as f:
                        f.write(content)
                parts[disk].append({'name': part_name})

        metadata_dir = os.path.join(root, 'metadata', table_path_encode(database))
        os.makedirs(metadata_dir, exist_ok=True)
        with open(os.path.join(metadata_dir, f"{table_path_encode(table)}.json"), 'w') as f:
            json.dump({
                'database': database,
                'table': table,
                'query': f"CREATE TABLE {database}.{table} (id UInt64) ENGINE = MergeTree ORDER BY id",
                'parts': parts,
                'total_bytes': 100
            }, f)

    os.makedirs(root, exist_ok=True)
    with open(os.path.join(root, 'metadata.json'), 'w') as f:
        json.dump({
            'backup_name': backup_name,
            'disks': disk_paths,
            'disk_types': {name: 'local' for name in disk_paths},
            'creation_date': '2024-01-15T10:00:00+00:00',
            'data_size': 1000,
            'tables': titles,
            'data_format': data_format
        }, f)

    return root


@pytest.fixture(scope='function')
def data_path(tmp_path):
    """ClickHouse default data path."""
    path = tmp_path / 'clickhouse'
    path.mkdir()
    return str(path)


@pytest.fixture(scope='function')
def config(data_path):
    """
    Configuration uploading to s3://test-bucket/backups.
    """
    cfg = Config()
    cfg.general.remote_storage = 's3'
    cfg.general.upload_concurrency = 2
    cfg.general.use_resumable_state = False
    cfg.clickhouse.data_path = data_path
    cfg.s3.bucket = 'test-bucket'
    cfg.s3.access_key = 'testing'
    cfg.s3.secret_key = 'testing'
    cfg.s3.path = 'backups'
    return cfg


@pytest.fixture(scope='function')
def fake_ch(data_path):
    """
    Mocked ClickHouse with a single local ``default`` disk.
    """
    ch = MagicMock()
    ch.get_disks.return_value = [Disk('default', data_path)]
    ch.apply_macros.side_effect = lambda value: value
    ch.get_version.return_value = 23008000
    ch.get_replica_metadata.return_value = []
    return ch


@pytest.fixture(scope='function')
def aws_credentials(monkeypatch):
    """Mocked AWS credentials for moto."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture(scope='function')
def s3_bucket(aws_credentials):
    """
    Mocked S3 with an empty ``test-bucket``.

    Yields a boto3 client for assertions.
    """
    with mock_aws():
        s3 = boto3.client('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


def bucket_keys(s3, prefix=''):
    """All keys in test-bucket under prefix."""
    response = s3.list_objects_v2(Bucket='test-bucket', Prefix=prefix)
    return sorted(obj['Key'] for obj in response.get('Contents', []))


@pytest.fixture(scope='function')
def app(config):
    """
    Flask app without the background scheduler.
    """
    app = create_app(config, with_scheduler=False)
    app.config.update({'TESTING': True})
    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()
