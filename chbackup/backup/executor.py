"""
Backuper - orchestrates uploading a local backup to remote storage.

Workflow:
1. Resolve disks and connect to the remote destination
2. Read the local backup and select tables by pattern
3. Resolve the diff-from backup (optional) and flag carried-over parts
4. Decide full / schema-only per table (sharded operation)
5. Batch and upload part files per table and disk
6. Upload per-table metadata once all batches of the table finished
7. Upload the backup manifest (metadata.json) once every table is published
8. Enforce remote retention and drop the resumable ledger
"""

import logging
import os
import posixpath
import shlex
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_EXCEPTION
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from chbackup.clickhouse import ClickHouse
from chbackup.config import Config
from chbackup.exceptions import (
    BackupAlreadyExistsError, BackupError, ConfigError, TableUploadError, UploadCancelled
)
from chbackup.models import BackupMetadata, BackupType, TableMetadata
from .diff import DiffResolver, mark_required_parts
from .disks import DiskSnapshot, resolve_disks
from .embedded import EmbeddedLocator, embedded_backup_sql
from .parts import separate_parts
from .compression import archive_name
from .resumable import ResumableState
from .sharding import populate_backup_type
from .sources import backup_path, list_local_tables, read_local_backup_metadata, table_path_encode
from .storage import StorageError, create_destination


logger = logging.getLogger(__name__)

EMBEDDED_DATA_FORMAT = 'embedded'


class Backuper:
    """
    Uploads one local backup per call to upload().

    Args:
        config: Validated configuration
        ch: Database collaborator (default: ClickHouse over HTTP)
        versioner: Object with can_shard_operation() (default: ch)
        sharder: Shard determiner override (default: built from config)
        destination: BackupDestination override (default: built from config)
        cancel_event: Event that cancels the run when set
    """

    def __init__(self, config: Config, ch=None, versioner=None, sharder=None,
                 destination=None, cancel_event: Optional[threading.Event] = None):
        self.config = config
        self.ch = ch or ClickHouse(config.clickhouse)
        self.versioner = versioner or self.ch
        self.sharder = sharder
        self.dst = destination
        self.disks: Optional[DiskSnapshot] = None
        self.is_embedded = False
        self.resumable_state = None
        self.cancel_event = cancel_event or threading.Event()
        self._abort = threading.Event()
        self.logs = []
        self._logs_lock = threading.Lock()

    def cancel(self):
        """Cancel the running upload. Uploaded archives stay for resumption."""
        self.cancel_event.set()

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise UploadCancelled("Upload cancelled")
        if self._abort.is_set():
            raise UploadCancelled("Upload aborted after an error in another table")

    def init_disks_and_destination(self, disks=None):
        """
        Resolve disks and connect to the remote destination.

        The destination is skipped for remote_storage none and custom.

        Raises:
            UnknownDataPathError: If the default data path is unknown
            StorageError: If the destination can't be reached
        """
        ch_config = self.config.clickhouse
        if disks is None:
            disks = self.ch.get_disks()

        self.disks = resolve_disks(
            disks,
            ch_config.use_embedded_backup_restore,
            ch_config.embedded_backup_disk,
            ch_config.data_path
        )

        if self.config.general.remote_storage in ('none', 'custom'):
            return

        if self.dst is None:
            self.dst = create_destination(self.config, self.ch)
        try:
            self.dst.connect()
        except StorageError as e:
            raise StorageError(f"can't connect to {self.dst.kind()}: {e}")

    def populate_backup_type(self, tables: List[TableMetadata]):
        return populate_backup_type(
            tables,
            self.config.general.sharded_operation_mode,
            self.versioner,
            self.sharder,
            self.ch
        )

    def embedded_location(self, backup_name: str) -> str:
        return EmbeddedLocator(self.config, self.ch).location(backup_name)

    def embedded_backup_sql(self, backup_name: str, table_pattern: str = '', schema_only: bool = False) -> str:
        """BACKUP statement for the tables matching pattern."""
        tables = self.ch.get_tables(table_pattern, self.config.general.skip_tables)
        titles = [t.title for t in tables if not t.skip]
        if not titles:
            raise BackupError(f"No tables match '{table_pattern}'")
        return embedded_backup_sql(self.embedded_location(backup_name), titles, schema_only)

    def upload(self, backup_name: str, table_pattern: str = '', partitions: Optional[List[str]] = None,
               diff_from: str = '', diff_from_remote: str = '', schema_only: bool = False,
               resume: bool = False) -> Optional[BackupMetadata]:
        """
        Upload a local backup.

        Args:
            backup_name: Local backup to upload
            table_pattern: Comma separated ``db.table`` globs (empty: all)
            partitions: Partition ids to upload (default: all)
            diff_from: Local backup to upload the difference against
            diff_from_remote: Remote backup to upload the difference against
            schema_only: Upload table metadata only
            resume: Continue an interrupted run even if the backup already
                exists remotely, skipping units recorded as done

        Returns:
            Published BackupMetadata, or None if remote_storage is none or custom

        Raises:
            ValueError: On invalid arguments
            BackupError: Any failure of the run
        """
        remote_storage = self.config.general.remote_storage
        if remote_storage == 'none':
            self._log('Upload aborted: general->remote_storage is set to "none"')
            return None
        if not backup_name:
            raise ValueError("select backup for upload")
        if diff_from and diff_from_remote:
            raise ValueError("choose only one of diff-from and diff-from-remote")
        if backup_name in (diff_from, diff_from_remote):
            raise ValueError("you can't upload the difference against the same backup")

        if remote_storage == 'custom':
            self._custom_upload(backup_name, table_pattern, diff_from or diff_from_remote, schema_only)
            return None

        self._log(f"Upload backup '{backup_name}'")
        started_at = datetime.now()
        self.init_disks_and_destination()

        try:
            metadata = self._upload(
                backup_name, table_pattern, partitions, diff_from, diff_from_remote,
                schema_only, resume
            )
        finally:
            if self.resumable_state is not None:
                self.resumable_state.close()
                self.dst.resumable_state = None
                self.resumable_state = None
            self.dst.close()

        duration = (datetime.now() - started_at).total_seconds()
        self._log(f"Upload of '{backup_name}' done in {duration:.1f}s ({metadata.compressed_size / 1024 / 1024:.2f} MB)")
        return metadata

    def _upload(self, backup_name, table_pattern, partitions, diff_from, diff_from_remote,
                schema_only, resume) -> BackupMetadata:
        data_path = self.disks.default_data_path
        local_metadata = read_local_backup_metadata(data_path, backup_name)
        self.is_embedded = local_metadata.data_format == EMBEDDED_DATA_FORMAT

        if not resume and self.dst.backup_exists(backup_name):
            raise BackupAlreadyExistsError(f"'{backup_name}' already exists on remote storage")

        metadata_path = os.path.join(backup_path(data_path, backup_name), 'metadata')
        tables = list_local_tables(metadata_path, table_pattern, self.config.general.skip_tables, partitions)
        if not tables and local_metadata.tables:
            raise BackupError(f"No tables for upload in '{backup_name}' match '{table_pattern}'")

        required_backup = diff_from or diff_from_remote
        if required_backup:
            resolver = DiffResolver(data_path, self.dst)
            if diff_from:
                diff_tables = resolver.tables_diff_from_local(diff_from, table_pattern)
            else:
                diff_tables = resolver.tables_diff_from_remote(diff_from_remote, table_pattern)
            mark_required_parts(tables, diff_tables)

        self.populate_backup_type(tables)
        tables = [t for t in tables if t.backup_type != BackupType.NONE]

        if resume or self.config.general.use_resumable_state:
            self.resumable_state = ResumableState(
                os.path.join(backup_path(data_path, backup_name), 'upload.state'),
                params={
                    'table_pattern': table_pattern,
                    'partitions': partitions or [],
                    'diff_from': required_backup,
                    'schema_only': schema_only
                },
                flush_interval=self.config.general.resumable_flush_interval
            )
            self.dst.resumable_state = self.resumable_state

        compressed_size, metadata_size = self._upload_tables(backup_name, tables, schema_only)

        self._check_cancelled()
        metadata = local_metadata
        metadata.tables = [t.title for t in tables]
        metadata.compressed_size = compressed_size
        metadata.metadata_size = metadata_size
        metadata.required_backup = required_backup
        if metadata.creation_date is None:
            metadata.creation_date = datetime.now(timezone.utc)

        self.dst.put_file(posixpath.join(backup_name, 'metadata.json'), metadata.to_json())
        self._log(f"Published {backup_name}/metadata.json ({len(tables)} tables)")

        keep = self.config.general.backups_to_keep_remote
        if keep > 0:
            try:
                deleted = self.dst.remove_old_backups(keep)
            except StorageError as e:
                raise StorageError(f"can't remove old backups: {e}")
            if deleted:
                self._log(f"Removed old remote backups: {', '.join(deleted)}")

        if self.resumable_state is not None:
            # a published backup is never resumed
            self.resumable_state.remove()

        return metadata

    def _upload_tables(self, backup_name: str, tables: List[TableMetadata], schema_only: bool) -> Tuple[int, int]:
        """
        Upload all tables concurrently.

        Returns:
            (compressed data size, metadata size) over all tables
        """
        workers = self.config.general.upload_concurrency
        compressed_size = 0
        metadata_size = 0

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='upload-table') as table_pool, \
                ThreadPoolExecutor(max_workers=workers, thread_name_prefix='upload-batch') as batch_pool:
            futures = {
                table_pool.submit(self._upload_table, backup_name, table, schema_only, batch_pool): table
                for table in tables
            }
            done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
            if not_done:
                self._abort.set()
                for future in not_done:
                    future.cancel()
                wait(not_done)

            first_error = None
            for future, table in futures.items():
                if future.cancelled():
                    continue
                error = future.exception()
                if error is None:
                    data, meta = future.result()
                    compressed_size += data
                    metadata_size += meta
                elif first_error is None or isinstance(first_error, UploadCancelled):
                    first_error = error

        if first_error is not None:
            raise first_error
        return compressed_size, metadata_size

    def _embedded_data_is_remote(self) -> bool:
        """Embedded backups written straight to object storage have no local data."""
        if not self.is_embedded:
            return False
        backup_disk = self.config.clickhouse.embedded_backup_disk
        return not backup_disk or self.disks.is_object(backup_disk)

    def _check_object_disk(self, disk: str):
        try:
            object_disk_path = EmbeddedLocator(self.config, self.ch).object_disk_path()
        except ConfigError:
            object_disk_path = ''
        if not object_disk_path:
            raise ConfigError(
                f"disk '{disk}' is an object disk, set {self.config.general.remote_storage}->object_disk_path "
                f"to upload its tables"
            )

    def _upload_table(self, backup_name: str, table: TableMetadata, schema_only: bool,
                      batch_pool: ThreadPoolExecutor) -> Tuple[int, int]:
        """
        Upload data batches of one table, then its metadata.

        Returns:
            (compressed data size, metadata size)
        """
        self._check_cancelled()

        upload_data = (
            not schema_only
            and table.backup_type == BackupType.FULL
            and not self._embedded_data_is_remote()
        )
        files = {}
        data_size = 0

        if upload_data:
            files, data_size = self._upload_table_data(backup_name, table, batch_pool)

        self._check_cancelled()

        table.files = files
        table.metadata_only = not upload_data
        content = table.to_json()
        key = posixpath.join(
            backup_name, 'metadata', table_path_encode(table.database), f"{table_path_encode(table.table)}.json"
        )
        try:
            self.dst.put_file(key, content)
        except StorageError as e:
            raise TableUploadError(table.database, table.table, 'upload metadata', e)

        self._log(
            f"Uploaded {table.database}.{table.table} ({table.backup_type.value}): "
            f"{sum(len(f) for f in files.values())} archives, {data_size / 1024 / 1024:.2f} MB"
        )
        return data_size, len(content)

    def _local_table_path(self, backup_name: str, disk: str, table: TableMetadata, db_and_table: str) -> str:
        """Shadow directory of a table on disk, laid out by UUID for Atomic databases."""
        if table.uuid and not self.is_embedded:
            by_uuid = self.disks.local_backup_data_path(
                backup_name, disk, posixpath.join(table.uuid[:3], table.uuid)
            )
            if os.path.isdir(by_uuid):
                return by_uuid
        return self.disks.local_backup_data_path(backup_name, disk, db_and_table, self.is_embedded)

    def _upload_table_data(self, backup_name: str, table: TableMetadata, batch_pool: ThreadPoolExecutor):
        fmt = self.config.general.compression_format
        db_and_table = posixpath.join(table_path_encode(table.database), table_path_encode(table.table))
        remote_dir = posixpath.join(backup_name, 'shadow', db_and_table)

        files = {}
        futures = {}
        for disk, parts in table.parts.items():
            parts_to_upload = [p for p in parts if not p.required]
            if not parts_to_upload:
                continue

            try:
                if self.disks.is_object(disk) and not self.is_embedded:
                    self._check_object_disk(disk)
                base_path = self._local_table_path(backup_name, disk, table, db_and_table)
                batches = separate_parts(base_path, parts_to_upload, self.config.general.max_file_size)
            except (BackupError, KeyError) as e:
                raise TableUploadError(table.database, table.table, 'prepare batches', e, disk)

            logger.info(
                f"Upload table: {table.database}.{table.table}, disk: {disk}, "
                f"parts: {len(parts_to_upload)}, archives: {len(batches)}"
            )
            for index, batch in enumerate(batches, start=1):
                name = archive_name(disk, index, fmt)
                files.setdefault(disk, []).append(name)
                future = batch_pool.submit(
                    self.dst.compressed_stream_upload,
                    base_path,
                    batch,
                    posixpath.join(remote_dir, name),
                    self._check_cancelled
                )
                futures[future] = disk

        # every batch finishes before the files map is read
        done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
        if not_done:
            for future in not_done:
                future.cancel()
            wait(not_done)

        data_size = 0
        for future, disk in futures.items():
            if future.cancelled():
                continue
            error = future.exception()
            if error is not None:
                if isinstance(error, UploadCancelled):
                    raise error
                raise TableUploadError(table.database, table.table, 'upload data', error, disk)
            data_size += future.result()

        if any(f.cancelled() for f in futures):
            raise UploadCancelled(f"Upload of {table.database}.{table.table} cancelled")
        return files, data_size

    def _custom_upload(self, backup_name: str, table_pattern: str, diff_from: str, schema_only: bool):
        """
        Run custom->upload_command for externally managed remote storage.

        The command is a template with {backup_name}, {table_pattern},
        {diff_from} and {schema} placeholders.
        """
        command = self.config.custom.upload_command.format(
            backup_name=backup_name,
            table_pattern=table_pattern,
            diff_from=diff_from,
            schema='--schema' if schema_only else ''
        )
        self._log(f"Running custom upload command: {command}")
        try:
            subprocess.run(
                shlex.split(command),
                check=True,
                capture_output=True,
                text=True,
                timeout=self.config.custom.command_timeout
            )
        except subprocess.CalledProcessError as e:
            raise BackupError(f"custom upload command failed ({e.returncode}): {(e.stderr or '').strip()}")
        except (subprocess.TimeoutExpired, OSError) as e:
            raise BackupError(f"custom upload command failed: {e}")

    def _log(self, message: str):
        """
        Add a log message with timestamp to the run log.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        with self._logs_lock:
            self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def upload_backup(config: Config, backup_name: str, **kwargs) -> Optional[BackupMetadata]:
    """
    Upload a local backup with a fresh Backuper.

    Args:
        config: Validated configuration
        backup_name: Local backup to upload
        **kwargs: Passed to Backuper.upload()
    """
    backuper = Backuper(config)
    return backuper.upload(backup_name, **kwargs)
