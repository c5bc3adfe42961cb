"""
Readers for local backups.

A local backup created by the database freeze mechanism lives under
``<data_path>/backup/<backup_name>/``:

- metadata.json: BackupMetadata
- metadata/<db>/<table>.json: TableMetadata with the part list per disk
- shadow/<db>/<table>/<disk>/<part>/...: hard-linked part files
"""

import json
import logging
import os
from fnmatch import fnmatchcase
from typing import Iterable, List, Optional
from urllib.parse import unquote

from chbackup.exceptions import BackupError, BackupNotFoundError
from chbackup.models import BackupMetadata, TableMetadata


logger = logging.getLogger(__name__)


def table_path_encode(name: str) -> str:
    """
    Escape a database or table name the way ClickHouse names directories.

    Letters, digits and underscore are kept, every other byte becomes %XX.
    """
    return ''.join(
        chr(b) if (chr(b).isascii() and chr(b).isalnum()) or b == ord('_') else f"%{b:02X}"
        for b in name.encode('utf-8')
    )


def table_path_decode(name: str) -> str:
    return unquote(name)


def table_matches(database: str, table: str, patterns: Iterable[str]) -> bool:
    """
    Check a table against comma separated ``db.table`` glob patterns.

    Args:
        database: Database name
        table: Table name
        patterns: Glob patterns, e.g. ['db1.*', 'db2.events']

    Returns:
        True if any pattern matches
    """
    full_name = f"{database}.{table}"
    return any(fnmatchcase(full_name, pattern) for pattern in patterns)


def split_patterns(table_pattern: str) -> List[str]:
    """Split a CLI table pattern; empty means every table."""
    patterns = [p.strip() for p in (table_pattern or '').split(',') if p.strip()]
    return patterns or ['*.*']


def backup_path(data_path: str, backup_name: str) -> str:
    return os.path.join(data_path, 'backup', backup_name)


def read_local_backup_metadata(data_path: str, backup_name: str) -> BackupMetadata:
    """
    Read metadata.json of a local backup.

    Args:
        data_path: Default ClickHouse data path
        backup_name: Name of the local backup

    Returns:
        BackupMetadata

    Raises:
        BackupNotFoundError: If the backup or its manifest doesn't exist
        BackupError: If the manifest is unreadable
    """
    metadata_file = os.path.join(backup_path(data_path, backup_name), 'metadata.json')

    if not os.path.exists(metadata_file):
        raise BackupNotFoundError(f"'{backup_name}' is not found on local storage")

    try:
        with open(metadata_file, 'rb') as f:
            return BackupMetadata.from_json(f.read())
    except (OSError, ValueError, KeyError) as e:
        raise BackupError(f"Can't read {metadata_file}: {e}")


def list_local_tables(
    metadata_path: str,
    table_pattern: str = '',
    skip_patterns: Optional[List[str]] = None,
    partitions: Optional[List[str]] = None
) -> List[TableMetadata]:
    """
    List table metadata of a local backup filtered by pattern.

    Args:
        metadata_path: ``<backup>/metadata`` directory
        table_pattern: Comma separated ``db.table`` globs (empty: all)
        skip_patterns: Globs of tables to flag as skipped
        partitions: Partition ids to keep; None keeps every part

    Returns:
        Tables sorted by database and table name

    Raises:
        BackupNotFoundError: If metadata_path doesn't exist
        BackupError: If a table metadata file is unreadable
    """
    if not os.path.isdir(metadata_path):
        raise BackupNotFoundError(f"Metadata directory not found: {metadata_path}")

    patterns = split_patterns(table_pattern)
    skip_patterns = skip_patterns or []
    tables = []

    for db_dir in sorted(os.listdir(metadata_path)):
        db_path = os.path.join(metadata_path, db_dir)
        if not os.path.isdir(db_path):
            continue
        database = table_path_decode(db_dir)

        for file_name in sorted(os.listdir(db_path)):
            if not file_name.endswith('.json'):
                continue
            table_name = table_path_decode(file_name[:-len('.json')])
            if not table_matches(database, table_name, patterns):
                continue

            file_path = os.path.join(db_path, file_name)
            try:
                with open(file_path, 'rb') as f:
                    table = TableMetadata.from_dict(json.load(f))
            except (OSError, ValueError, KeyError) as e:
                raise BackupError(f"Can't read table metadata {file_path}: {e}")

            table.skip = table_matches(table.database, table.table, skip_patterns)
            if partitions:
                _filter_partitions(table, partitions)
            tables.append(table)

    logger.debug(f"Found {len(tables)} tables in {metadata_path} for pattern '{table_pattern}'")
    return sorted(tables, key=lambda t: (t.database, t.table))


def _filter_partitions(table: TableMetadata, partitions: List[str]):
    """Keep only parts whose partition id (name prefix) is listed."""
    wanted = set(partitions)
    for disk in list(table.parts):
        table.parts[disk] = [p for p in table.parts[disk] if p.name.split('_', 1)[0] in wanted]
