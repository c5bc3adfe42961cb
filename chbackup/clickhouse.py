"""
ClickHouse access over the HTTP interface.
"""

import json
import logging
import re
import threading
from typing import Any, Dict, List, Optional

import requests

from chbackup.backup.disks import get_default_path
from chbackup.backup.sharding import TableReplicaMetadata
from chbackup.backup.sources import split_patterns, table_matches
from chbackup.config import ClickHouseConfig
from chbackup.exceptions import BackupError, ShardOperationUnsupportedError
from chbackup.models import Disk, TableMetadata


logger = logging.getLogger(__name__)

# replica_is_active appeared in 21.9
MIN_SHARD_OPERATION_VERSION = 21009000

_MACRO_RE = re.compile(r'\{([A-Za-z0-9_]+)\}')

_REPLICAS_QUERY = (
    "SELECT t.database AS database, t.name AS table, r.replica_name AS replica_name, "
    "arraySort(mapKeys(mapFilter((replica, active) -> (active == 1), r.replica_is_active))) AS active_replicas "
    "FROM system.tables t LEFT JOIN system.replicas r ON t.database = r.database AND t.name = r.table "
    "WHERE t.is_temporary = 0"
)


class ClickHouseError(BackupError):
    """Raised when a query fails."""
    pass


class ClickHouse:
    """
    Thin ClickHouse client used by the backup pipeline.

    Args:
        config: Connection settings
        session: requests.Session to use (default: a new one)
    """

    def __init__(self, config: ClickHouseConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self._macros = None
        self._macros_lock = threading.Lock()

    @property
    def url(self) -> str:
        scheme = 'https' if self.config.secure else 'http'
        return f"{scheme}://{self.config.host}:{self.config.port}/"

    def _post(self, sql: str) -> str:
        logger.debug(f"clickhouse query: {sql[:200]}")
        headers = {'X-ClickHouse-User': self.config.username}
        if self.config.password:
            headers['X-ClickHouse-Key'] = self.config.password
        try:
            response = self.session.post(
                self.url,
                data=sql.encode('utf-8'),
                headers=headers,
                timeout=self.config.timeout
            )
        except requests.RequestException as e:
            raise ClickHouseError(f"Can't connect to clickhouse at {self.url}: {e}")

        if response.status_code != 200:
            raise ClickHouseError(f"Query failed ({response.status_code}): {response.text.strip()} [{sql[:200]}]")
        return response.text

    def query(self, sql: str) -> List[Dict[str, Any]]:
        """
        Run a SELECT and return rows as dicts.

        Raises:
            ClickHouseError: If the request or query fails
        """
        text = self._post(f"{sql} FORMAT JSONEachRow")
        try:
            return [json.loads(line) for line in text.splitlines() if line.strip()]
        except ValueError as e:
            raise ClickHouseError(f"Can't parse response of [{sql[:200]}]: {e}")

    def get_disks(self) -> List[Disk]:
        """
        Disks from system.disks with their types normalized.

        Newer servers report ``ObjectStorage`` and put the provider into
        object_storage_type; encrypted disks are flagged by is_encrypted.
        """
        disks = []
        for row in self.query("SELECT * FROM system.disks ORDER BY name"):
            disk_type = str(row.get('type', 'local')).lower()
            if disk_type == 'objectstorage':
                disk_type = str(row.get('object_storage_type', 's3')).lower()
                if disk_type == 'azure':
                    disk_type = 'azure_blob_storage'
            if row.get('is_encrypted') in (1, True, '1'):
                disk_type = 'encrypted'
            disks.append(Disk(
                name=row['name'],
                path=row['path'],
                type=disk_type,
                is_backup=row['name'] == 'backups'
            ))
        return disks

    def get_default_path(self, disks: List[Disk]) -> str:
        return self.config.data_path or get_default_path(disks)

    def get_tables(self, table_pattern: str = '', skip_patterns: Optional[List[str]] = None) -> List[TableMetadata]:
        """
        Tables from system.tables matching pattern, skipped ones flagged.
        """
        patterns = split_patterns(table_pattern)
        skip_patterns = skip_patterns or []
        rows = self.query(
            "SELECT database, name, toString(uuid) AS uuid, create_table_query, "
            "ifNull(total_bytes, 0) AS total_bytes "
            "FROM system.tables WHERE is_temporary = 0 ORDER BY database, name"
        )
        tables = []
        for row in rows:
            if not table_matches(row['database'], row['name'], patterns):
                continue
            uuid = row.get('uuid', '')
            table = TableMetadata(
                database=row['database'],
                table=row['name'],
                uuid='' if uuid == '00000000-0000-0000-0000-000000000000' else uuid,
                query=row.get('create_table_query', ''),
                total_bytes=int(row.get('total_bytes') or 0)
            )
            table.skip = table_matches(table.database, table.table, skip_patterns)
            tables.append(table)
        return tables

    def get_macros(self) -> Dict[str, str]:
        with self._macros_lock:
            if self._macros is None:
                rows = self.query("SELECT macro, substitution FROM system.macros")
                self._macros = {row['macro']: row['substitution'] for row in rows}
            return self._macros

    def apply_macros(self, template: str) -> str:
        """
        Replace ``{macro}`` placeholders with system.macros substitutions.

        Unknown macros are left as they are.
        """
        if not template or '{' not in template:
            return template
        macros = self.get_macros()
        return _MACRO_RE.sub(lambda m: macros.get(m.group(1), m.group(0)), template)

    def get_version(self) -> int:
        rows = self.query("SELECT value FROM system.build_options WHERE name = 'VERSION_INTEGER'")
        if not rows:
            raise ClickHouseError("Can't determine clickhouse version")
        return int(rows[0]['value'])

    def can_shard_operation(self):
        """
        Raises:
            ShardOperationUnsupportedError: If the server is older than 21.9
        """
        version = self.get_version()
        if version < MIN_SHARD_OPERATION_VERSION:
            raise ShardOperationUnsupportedError(
                f"sharded operations are not supported: clickhouse version {version} "
                f"is older than {MIN_SHARD_OPERATION_VERSION}"
            )

    def get_replica_metadata(self) -> List[TableReplicaMetadata]:
        return [
            TableReplicaMetadata(
                database=row['database'],
                table=row['table'],
                replica_name=row.get('replica_name') or '',
                active_replicas=tuple(row.get('active_replicas') or ())
            )
            for row in self.query(_REPLICAS_QUERY)
        ]

    def close(self):
        self.session.close()
