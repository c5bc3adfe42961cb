"""
Data model shared by the upload pipeline.

These classes mirror the JSON documents written next to every backup:
``metadata.json`` (BackupMetadata) and ``metadata/<db>/<table>.json``
(TableMetadata). Keys we do not model are kept in ``extra`` and written back
untouched.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class BackupType(str, Enum):
    """What a replica uploads for one table."""
    FULL = 'full'
    SCHEMA_ONLY = 'schema-only'
    NONE = 'none'


@dataclass(frozen=True, order=True)
class TableTitle:
    """Identity of a table across backups."""
    database: str
    table: str

    def __str__(self):
        return f"{self.database}.{self.table}"

    def to_dict(self) -> Dict[str, str]:
        return {'database': self.database, 'table': self.table}


@dataclass(frozen=True)
class Disk:
    """A ClickHouse disk as reported by system.disks."""
    name: str
    path: str
    type: str = 'local'
    is_backup: bool = False


@dataclass
class Part:
    """A data part directory inside a table's shadow copy."""
    name: str
    size: int = 0
    required: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Part':
        return cls(
            name=data['name'],
            size=data.get('size', 0),
            required=data.get('required', False)
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {'name': self.name}
        if self.size:
            result['size'] = self.size
        if self.required:
            result['required'] = True
        return result


_TABLE_KEYS = {
    'database', 'table', 'uuid', 'query', 'parts', 'files', 'size',
    'total_bytes', 'metadata_only'
}


@dataclass
class TableMetadata:
    """
    Per-table metadata of a backup.

    ``skip`` and ``backup_type`` only live for the duration of one run and are
    never serialized.
    """
    database: str
    table: str
    uuid: str = ''
    query: str = ''
    parts: Dict[str, List[Part]] = field(default_factory=dict)
    files: Dict[str, List[str]] = field(default_factory=dict)
    size: Dict[str, int] = field(default_factory=dict)
    total_bytes: int = 0
    metadata_only: bool = False
    skip: bool = False
    backup_type: BackupType = BackupType.FULL
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> TableTitle:
        return TableTitle(self.database, self.table)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TableMetadata':
        parts = {
            disk: [Part.from_dict(p) for p in disk_parts]
            for disk, disk_parts in (data.get('parts') or {}).items()
        }
        return cls(
            database=data['database'],
            table=data['table'],
            uuid=data.get('uuid', ''),
            query=data.get('query', ''),
            parts=parts,
            files={disk: list(names) for disk, names in (data.get('files') or {}).items()},
            size=dict(data.get('size') or {}),
            total_bytes=data.get('total_bytes', 0),
            metadata_only=data.get('metadata_only', False),
            extra={k: v for k, v in data.items() if k not in _TABLE_KEYS}
        )

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.extra)
        result.update({
            'database': self.database,
            'table': self.table,
            'uuid': self.uuid,
            'query': self.query,
            'parts': {disk: [p.to_dict() for p in parts] for disk, parts in self.parts.items()},
            'files': self.files,
            'size': self.size,
            'total_bytes': self.total_bytes,
            'metadata_only': self.metadata_only,
        })
        return result

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent='\t').encode('utf-8')


_BACKUP_KEYS = {
    'backup_name', 'tables', 'disks', 'disk_types', 'creation_date',
    'data_size', 'metadata_size', 'compressed_size', 'data_format',
    'required_backup', 'version', 'clickhouse_version', 'tags'
}


@dataclass
class BackupMetadata:
    """Root manifest of a backup (``<backup>/metadata.json``)."""
    backup_name: str
    tables: List[TableTitle] = field(default_factory=list)
    disks: Dict[str, str] = field(default_factory=dict)
    disk_types: Dict[str, str] = field(default_factory=dict)
    creation_date: Optional[datetime] = None
    data_size: int = 0
    metadata_size: int = 0
    compressed_size: int = 0
    data_format: str = ''
    required_backup: str = ''
    version: str = ''
    clickhouse_version: str = ''
    tags: str = ''
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupMetadata':
        creation_date = data.get('creation_date')
        if creation_date:
            creation_date = datetime.fromisoformat(creation_date.replace('Z', '+00:00'))
        return cls(
            backup_name=data['backup_name'],
            tables=[TableTitle(t['database'], t['table']) for t in data.get('tables') or []],
            disks=dict(data.get('disks') or {}),
            disk_types=dict(data.get('disk_types') or {}),
            creation_date=creation_date,
            data_size=data.get('data_size', 0),
            metadata_size=data.get('metadata_size', 0),
            compressed_size=data.get('compressed_size', 0),
            data_format=data.get('data_format', ''),
            required_backup=data.get('required_backup', ''),
            version=data.get('version', ''),
            clickhouse_version=data.get('clickhouse_version', ''),
            tags=data.get('tags', ''),
            extra={k: v for k, v in data.items() if k not in _BACKUP_KEYS}
        )

    @classmethod
    def from_json(cls, content: bytes) -> 'BackupMetadata':
        return cls.from_dict(json.loads(content))

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.extra)
        result.update({
            'backup_name': self.backup_name,
            'disks': self.disks,
            'disk_types': self.disk_types,
            'version': self.version,
            'creation_date': self.creation_date.isoformat() if self.creation_date else None,
            'tags': self.tags,
            'clickhouse_version': self.clickhouse_version,
            'data_size': self.data_size,
            'metadata_size': self.metadata_size,
            'compressed_size': self.compressed_size,
            'tables': [t.to_dict() for t in self.tables],
            'data_format': self.data_format,
            'required_backup': self.required_backup,
        })
        return result

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent='\t').encode('utf-8')


@dataclass
class BackupSummary:
    """A backup as seen in a remote listing."""
    backup_name: str
    metadata: Optional[BackupMetadata] = None
    size: int = 0
    upload_date: Optional[datetime] = None
    broken: str = ''
