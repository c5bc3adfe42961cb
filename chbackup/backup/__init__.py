"""
Upload pipeline for chbackup.

This module handles the core upload functionality including:
- Part batching and compression
- Disk classification
- Shard assignment for replicated tables
- Incremental (diff) resolution
- Embedded backup locations
- Remote storage and the resumable ledger
- Retention of remote backups

The orchestrator lives in chbackup.backup.executor.
"""

from .compression import create_archive
from .parts import separate_parts
from .disks import DiskSnapshot, resolve_disks
from .sharding import ShardAssignment, populate_backup_type
from .diff import DiffResolver, mark_required_parts
from .embedded import EmbeddedLocator
from .resumable import ResumableState
from .storage import BackupDestination, S3Storage, SFTPStorage, create_destination
from .retention import RetentionManager

__all__ = [
    'create_archive',
    'separate_parts',
    'DiskSnapshot',
    'resolve_disks',
    'ShardAssignment',
    'populate_backup_type',
    'DiffResolver',
    'mark_required_parts',
    'EmbeddedLocator',
    'ResumableState',
    'BackupDestination',
    'S3Storage',
    'SFTPStorage',
    'create_destination',
    'RetentionManager'
]
