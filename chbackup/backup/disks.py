"""
Disk classification and path resolution for one backup run.
"""

import os
from dataclasses import dataclass
from types import MappingProxyType
from typing import List, Mapping

from chbackup.exceptions import UnknownDataPathError
from chbackup.models import Disk


OBJECT_DISK_TYPES = ('s3', 'azure_blob_storage', 'azure')


def is_disk_type_object(disk_type: str) -> bool:
    return disk_type in OBJECT_DISK_TYPES


def is_disk_type_encrypted_object(disk: Disk, disks: List[Disk]) -> bool:
    """
    Check whether an encrypted disk is layered over an object storage disk.

    The underlying disk is the object disk with the longest path that is a
    prefix of the encrypted disk's path.
    """
    if disk.type != 'encrypted':
        return False

    underlying_path = None
    for d in disks:
        if d.name != disk.name and disk.path.startswith(d.path) and is_disk_type_object(d.type):
            if underlying_path is None or d.path > underlying_path:
                underlying_path = d.path
    return underlying_path is not None


def get_default_path(disks: List[Disk]) -> str:
    """
    Path of the disk named ``default``, else of the first non-object disk.

    Raises:
        UnknownDataPathError: If no disk can provide a local data path
    """
    for disk in disks:
        if disk.name == 'default':
            return disk.path
    for disk in disks:
        if not is_disk_type_object(disk.type) and disk.type != 'encrypted':
            return disk.path
    raise UnknownDataPathError()


@dataclass(frozen=True)
class DiskSnapshot:
    """
    Immutable view of the disks of one run.

    Built once during disk resolution and handed to every component that
    needs disk paths or types.
    """
    disks: tuple
    disk_to_path: Mapping[str, str]
    disk_types: Mapping[str, str]
    default_data_path: str
    embedded_backup_data_path: str
    object_disks: frozenset
    encrypted_object_disks: frozenset

    def is_object(self, disk_name: str) -> bool:
        return disk_name in self.object_disks or disk_name in self.encrypted_object_disks

    def local_backup_data_path(self, backup_name: str, disk: str, db_and_table_path: str, embedded: bool = False) -> str:
        """
        Directory holding a table's parts on one disk inside a local backup.

        Regular backups keep them under
        ``<disk>/backup/<backup>/shadow/<db>/<table>/<disk>``, embedded backups
        under ``<backup disk>/<backup>/data/<db>/<table>`` whatever disk the
        parts came from.
        """
        if embedded:
            base = self.embedded_backup_data_path or self.disk_to_path[disk]
            return os.path.join(base, backup_name, 'data', db_and_table_path)
        return os.path.join(self.disk_to_path[disk], 'backup', backup_name, 'shadow', db_and_table_path, disk)


def resolve_disks(disks: List[Disk], use_embedded_backup_restore: bool = False,
                  embedded_backup_disk: str = '', data_path: str = '') -> DiskSnapshot:
    """
    Classify disks and resolve the default and embedded data paths.

    Args:
        disks: Disks reported by the database
        use_embedded_backup_restore: Whether embedded (BACKUP/RESTORE) mode is on
        embedded_backup_disk: Configured backup disk name
        data_path: Configured override of the default data path

    Returns:
        DiskSnapshot

    Raises:
        UnknownDataPathError: If the default data path can't be determined
    """
    default_data_path = data_path or get_default_path(disks)

    embedded_path = ''
    disk_to_path = {}
    for disk in disks:
        disk_to_path[disk.name] = disk.path
        if use_embedded_backup_restore and (disk.is_backup or disk.name == embedded_backup_disk):
            embedded_path = disk.path
    if use_embedded_backup_restore and not embedded_path:
        embedded_path = default_data_path

    return DiskSnapshot(
        disks=tuple(disks),
        disk_to_path=MappingProxyType(disk_to_path),
        disk_types=MappingProxyType({d.name: d.type for d in disks}),
        default_data_path=default_data_path,
        embedded_backup_data_path=embedded_path,
        object_disks=frozenset(d.name for d in disks if is_disk_type_object(d.type)),
        encrypted_object_disks=frozenset(d.name for d in disks if is_disk_type_encrypted_object(d, disks)),
    )
