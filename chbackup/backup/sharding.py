"""
Shard assignment: which replica uploads the full copy of each table.

Every replica evaluates the same pure shard function over the same sorted set
of active replicas, so all of them agree on a single owner per table without
talking to each other during the run.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, List, Optional, Tuple

from chbackup.exceptions import ShardConfigError, ShardError
from chbackup.models import BackupType, TableMetadata


logger = logging.getLogger(__name__)

NO_SHARD_MODES = ('', 'none')

_FNV32_OFFSET = 0x811c9dc5
_FNV32_PRIME = 0x01000193


@dataclass(frozen=True)
class TableReplicaMetadata:
    """Replica membership of one table as seen from this replica."""
    database: str
    table: str
    replica_name: str = ''
    active_replicas: Tuple[str, ...] = ()

    @property
    def full_name(self) -> str:
        return f"{self.database}.{self.table}"


def fnv32a(data: bytes) -> int:
    """32-bit FNV-1a hash."""
    h = _FNV32_OFFSET
    for byte in data:
        h ^= byte
        h = (h * _FNV32_PRIME) & 0xffffffff
    return h


def _owner_by_hash(md: TableReplicaMetadata, key: str) -> bool:
    if not md.replica_name:
        # not replicated, every replica holds its own data
        return True
    if not md.active_replicas:
        raise ShardError(f"No active replicas for {md.full_name}")
    replicas = sorted(md.active_replicas)
    index = fnv32a(key.encode('utf-8')) % len(replicas)
    return replicas[index] == md.replica_name


def table_shard(md: TableReplicaMetadata) -> bool:
    """Spread ownership per table."""
    return _owner_by_hash(md, md.database + md.table)


def database_shard(md: TableReplicaMetadata) -> bool:
    """Keep every table of a database on the same replica."""
    return _owner_by_hash(md, md.database)


def first_replica_shard(md: TableReplicaMetadata) -> bool:
    """The alphabetically first active replica owns everything."""
    if not md.replica_name:
        return True
    if not md.active_replicas:
        raise ShardError(f"No active replicas for {md.full_name}")
    return sorted(md.active_replicas)[0] == md.replica_name


ShardFunc = Callable[[TableReplicaMetadata], bool]

SHARD_FUNCTIONS: Dict[str, ShardFunc] = {
    'table': table_shard,
    'database': database_shard,
    'first-replica': first_replica_shard,
}


def does_shard(mode: str) -> bool:
    return (mode or '') not in NO_SHARD_MODES


def validate_shard_mode(mode: str):
    """
    Raises:
        ShardConfigError: If mode is neither empty/none nor a known policy
    """
    if does_shard(mode) and mode not in SHARD_FUNCTIONS:
        raise ShardConfigError(
            f"Unknown general->sharded_operation_mode: {mode}. "
            f"Valid options: {['none'] + list(SHARD_FUNCTIONS)}"
        )


def shard_func_by_name(mode: str) -> ShardFunc:
    validate_shard_mode(mode)
    return SHARD_FUNCTIONS[mode]


class ShardAssignment:
    """Read-only mapping of ``db.table`` to "this replica owns the full copy"."""

    def __init__(self, assignment: Dict[str, bool]):
        self._assignment = MappingProxyType(dict(assignment))

    def in_shard(self, database: str, table: str) -> bool:
        key = f"{database}.{table}"
        try:
            return self._assignment[key]
        except KeyError:
            raise ShardError(f"Table {key} not found in shard assignment")

    def __len__(self):
        return len(self._assignment)


class ReplicaDeterminer:
    """
    Computes a ShardAssignment from the database's replica view.

    Args:
        ch: Object providing get_replica_metadata() -> List[TableReplicaMetadata]
        shard_func: Policy deciding ownership of one table
    """

    def __init__(self, ch, shard_func: ShardFunc):
        self.ch = ch
        self.shard_func = shard_func

    def determine_shards(self) -> ShardAssignment:
        assignment = {}
        for md in self.ch.get_replica_metadata():
            assignment[md.full_name] = self.shard_func(md)
        return ShardAssignment(assignment)


def populate_backup_type(
    tables: List[TableMetadata],
    mode: str,
    versioner,
    sharder: Optional[ReplicaDeterminer] = None,
    ch=None
) -> Optional[ShardAssignment]:
    """
    Set backup_type on every table.

    Non-skipped tables default to full, skipped ones to none. With sharding
    enabled, tables owned by another replica are downgraded to schema-only.

    Args:
        tables: Tables of this run, mutated in place
        mode: general->sharded_operation_mode
        versioner: Object with can_shard_operation(), raising when unsupported
        sharder: Determiner to use (built from mode and ch when None)
        ch: Database collaborator for the default determiner

    Returns:
        The computed assignment, or None when not sharding

    Raises:
        ShardOperationUnsupportedError: If the cluster can't shard operations
        ShardConfigError: If mode is unknown
        ShardError: If a table is missing from the assignment
    """
    for table in tables:
        table.backup_type = BackupType.NONE if table.skip else BackupType.FULL

    if not does_shard(mode):
        return None

    versioner.can_shard_operation()

    if sharder is None:
        try:
            shard_func = shard_func_by_name(mode)
        except ShardConfigError as e:
            raise ShardConfigError(f"Could not determine shards for tables: {e}")
        sharder = ReplicaDeterminer(ch, shard_func)

    assignment = sharder.determine_shards()

    for table in tables:
        if table.skip:
            continue
        if not assignment.in_shard(table.database, table.table):
            table.backup_type = BackupType.SCHEMA_ONLY

    schema_only = sum(1 for t in tables if t.backup_type == BackupType.SCHEMA_ONLY)
    logger.info(f"Sharded operation mode '{mode}': {schema_only} of {len(tables)} tables are schema-only on this replica")
    return assignment
