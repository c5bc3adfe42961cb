"""
Resolution of the diff-from backup for incremental uploads.

A diff-from backup is only usable once it's confirmed to exist at the chosen
location. A reference backup without tables yields an empty diff, a missing
reference backup is an error.
"""

import json
import logging
import os
from typing import Dict, List

from chbackup.exceptions import BackupError, BackupNotFoundError
from chbackup.models import TableMetadata, TableTitle
from .sources import (
    list_local_tables, read_local_backup_metadata, backup_path, split_patterns,
    table_matches, table_path_encode
)


logger = logging.getLogger(__name__)


class DiffResolver:
    """
    Builds the title -> metadata map of a prior backup.

    Args:
        default_data_path: Data path holding local backups
        destination: Connected BackupDestination, needed for remote diffs only
    """

    def __init__(self, default_data_path: str, destination=None):
        self.default_data_path = default_data_path
        self.destination = destination

    def tables_diff_from_local(self, diff_from: str, table_pattern: str) -> Dict[TableTitle, TableMetadata]:
        """
        Tables of a local diff-from backup.

        Raises:
            BackupNotFoundError: If the local backup doesn't exist
        """
        diff_backup = read_local_backup_metadata(self.default_data_path, diff_from)
        if not diff_backup.tables:
            return {}

        metadata_path = os.path.join(backup_path(self.default_data_path, diff_from), 'metadata')
        # no partition filter, the whole part set of a table counts
        tables = list_local_tables(metadata_path, table_pattern)
        return {t.title: t for t in tables}

    def tables_diff_from_remote(self, diff_from_remote: str, table_pattern: str) -> Dict[TableTitle, TableMetadata]:
        """
        Tables of a diff-from backup already on remote storage.

        Raises:
            BackupNotFoundError: If the backup is not in the remote listing
            BackupError: If no destination is connected
        """
        if self.destination is None:
            raise BackupError("Remote storage is required for diff-from-remote")

        diff_backup = None
        for backup in self.destination.list_backups(with_metadata=True, filter_name=diff_from_remote):
            if backup.backup_name == diff_from_remote:
                diff_backup = backup.metadata
                break
        if diff_backup is None:
            raise BackupNotFoundError(f"{diff_from_remote} not found on remote storage")

        if not diff_backup.tables:
            return {}

        patterns = split_patterns(table_pattern)
        result = {}
        for title in diff_backup.tables:
            if not table_matches(title.database, title.table, patterns):
                continue
            key = '/'.join([
                diff_from_remote, 'metadata', table_path_encode(title.database),
                f"{table_path_encode(title.table)}.json"
            ])
            try:
                table = TableMetadata.from_dict(json.loads(self.destination.get_file(key)))
            except (ValueError, KeyError) as e:
                raise BackupError(f"Can't parse {key}: {e}")
            result[table.title] = table
        return result


def mark_required_parts(tables: List[TableMetadata], diff_tables: Dict[TableTitle, TableMetadata]) -> int:
    """
    Flag parts already present in the diff-from backup.

    A part is carried over when a part with the same name exists on the same
    disk of the same table in the diff-from backup.

    Returns:
        Number of parts flagged as required
    """
    count = 0
    for table in tables:
        diff_table = diff_tables.get(table.title)
        if diff_table is None:
            continue
        for disk, parts in table.parts.items():
            known = {p.name for p in diff_table.parts.get(disk, [])}
            for part in parts:
                if part.name in known:
                    part.required = True
                    count += 1
    logger.info(f"{count} parts are already present in the diff-from backup")
    return count
