"""
Remote storage for uploaded backups.

Supports:
- S3Storage: AWS S3 and S3 compatible stores (also GCS through its S3
  interoperability endpoint)
- SFTPStorage: a directory on an SSH server
- AzureBlobStorage: a container in Azure Blob Storage

BackupDestination adds the backup layout on top of a storage:
``<backup>/metadata.json``, ``<backup>/metadata/...``, ``<backup>/shadow/...``.
"""

import io
import logging
import os
import posixpath
import shutil
import stat
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import boto3
import paramiko
from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobPrefix, BlobServiceClient
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from chbackup.config import Config
from chbackup.exceptions import BackupError, ConfigError
from chbackup.models import BackupMetadata, BackupSummary
from .compression import create_archive, get_archive_size


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class StorageError(BackupError):
    """Raised when storage operation fails."""
    pass


def _client_error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Handler for objects in an S3 bucket.

    All keys are relative to ``path`` inside the bucket.
    """

    def __init__(self, bucket_name: str, access_key: str = '', secret_key: str = '',
                 region: str = 'us-east-1', endpoint_url: Optional[str] = None, path: str = '',
                 force_path_style: bool = False, storage_class: str = 'STANDARD', kind: str = 's3'):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            access_key: Access key ID (empty: boto3 credential chain)
            secret_key: Secret access key
            region: Bucket region (default: us-east-1)
            endpoint_url: Custom endpoint for S3 compatible stores
            path: Key prefix for all backups
            force_path_style: Use path style addressing
            storage_class: Storage class for uploaded objects
            kind: Name reported by kind()
        """
        self.bucket_name = bucket_name
        self.region = region
        self.path = path.strip('/')
        self.storage_class = storage_class
        self._kind = kind

        client_kwargs = {'region_name': region}
        if access_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key
        if endpoint_url:
            client_kwargs['endpoint_url'] = endpoint_url
        if force_path_style:
            client_kwargs['config'] = BotoConfig(s3={'addressing_style': 'path'})

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def kind(self) -> str:
        return self._kind

    def _key(self, key: str) -> str:
        return posixpath.join(self.path, key) if self.path else key

    def connect(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _client_error_code(e)
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")

    def put_object(self, key: str, body: bytes):
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=self._key(key),
                Body=body,
                StorageClass=self.storage_class
            )
        except ClientError as e:
            raise StorageError(f"S3 put {key} failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 put {key} failed: {e}")

    def upload_file(self, local_path: str, key: str, cancellation_check: Optional[Callable] = None):
        """
        Upload a local file.

        Args:
            local_path: Path to local file
            key: Object key relative to path
            cancellation_check: Called between chunks, raises to cancel

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, self._key(key), cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                with open(local_path, 'rb') as f:
                    self.s3_client.put_object(
                        Bucket=self.bucket_name,
                        Key=self._key(key),
                        Body=f,
                        StorageClass=self.storage_class
                    )

        except ClientError as e:
            raise StorageError(f"S3 upload {key} failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload {key} failed: {e}")

    def _multipart_upload(self, local_path: str, s3_key: str, cancellation_check: Optional[Callable] = None):
        """
        Upload large file using multipart upload with cancellation support.

        The multipart upload is aborted on any error, cancellation included.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            StorageClass=self.storage_class
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {s3_key}: {abort_error}")
            raise

    def get_object(self, key: str) -> bytes:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=self._key(key))
            return response['Body'].read()
        except ClientError as e:
            raise StorageError(f"S3 get {key} failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 get {key} failed: {e}")

    def stat(self, key: str) -> Optional[Dict]:
        """
        Size and modification time of an object, None when missing.
        """
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=self._key(key))
            return {'Size': response['ContentLength'], 'LastModified': response['LastModified']}
        except ClientError as e:
            if _client_error_code(e) in ('404', 'NoSuchKey', 'NotFound'):
                return None
            raise StorageError(f"S3 head {key} failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 head {key} failed: {e}")

    def list_dirs(self, prefix: str = '') -> List[str]:
        """
        Names of the "directories" directly under prefix.
        """
        full_prefix = self._key(prefix).rstrip('/')
        full_prefix = full_prefix + '/' if full_prefix else ''
        try:
            names = []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=full_prefix, Delimiter='/'):
                for common_prefix in page.get('CommonPrefixes', []):
                    names.append(common_prefix['Prefix'][len(full_prefix):].rstrip('/'))
            return names
        except ClientError as e:
            raise StorageError(f"S3 list failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def list_objects(self, prefix: str) -> list:
        """
        List objects with given prefix.

        Returns:
            List of dicts with 'Key' (relative to path), 'LastModified', and 'Size' keys
        """
        full_prefix = self._key(prefix)
        strip = len(self.path) + 1 if self.path else 0
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=full_prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'][strip:],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def delete_prefix(self, prefix: str):
        """Delete every object under prefix."""
        keys = [self._key(obj['Key']) for obj in self.list_objects(prefix)]
        try:
            for i in range(0, len(keys), 1000):
                self.s3_client.delete_objects(
                    Bucket=self.bucket_name,
                    Delete={'Objects': [{'Key': k} for k in keys[i:i + 1000]], 'Quiet': True}
                )
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def close(self):
        pass


class SFTPStorage:
    """
    Handler for backups stored on an SSH server via SFTP.

    Keys map to files under ``path`` on the server. One SFTP channel is shared,
    so operations are serialized.
    """

    def __init__(self, host: str, username: str, path: str, port: int = 22,
                 password: str = '', private_key: str = ''):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_key_path = private_key
        self.path = path.rstrip('/') or '/'

        self.ssh_client = None
        self.sftp_client = None
        self._lock = threading.Lock()

    def kind(self) -> str:
        return 'SFTP'

    def _remote(self, key: str) -> str:
        return posixpath.join(self.path, key)

    def connect(self) -> bool:
        """
        Establish SSH connection.

        Raises:
            StorageError: If connection fails
        """
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': 30
            }

            if self.password:
                connect_kwargs['password'] = self.password
            elif self.private_key_path:
                key_path = Path(self.private_key_path).expanduser()
                if not key_path.exists():
                    raise StorageError(f"Private key not found: {self.private_key_path}")
                connect_kwargs['key_filename'] = str(key_path)
            else:
                raise StorageError("Either sftp->password or sftp->key must be provided")

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
            return True

        except paramiko.AuthenticationException as e:
            raise StorageError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"Failed to connect to {self.host}: {e}")

    def _makedirs(self, remote_dir: str):
        current = ''
        for component in remote_dir.split('/'):
            if not component:
                current = current or '/'
                continue
            current = posixpath.join(current, component)
            try:
                self.sftp_client.stat(current)
            except FileNotFoundError:
                self.sftp_client.mkdir(current)

    def put_object(self, key: str, body: bytes):
        remote_path = self._remote(key)
        try:
            with self._lock:
                self._makedirs(posixpath.dirname(remote_path))
                self.sftp_client.putfo(io.BytesIO(body), remote_path)
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"SFTP put {key} failed: {e}")

    def upload_file(self, local_path: str, key: str, cancellation_check: Optional[Callable] = None):
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        remote_path = self._remote(key)

        def progress(transferred, total):
            if cancellation_check:
                cancellation_check()

        try:
            with self._lock:
                self._makedirs(posixpath.dirname(remote_path))
                self.sftp_client.put(local_path, remote_path, callback=progress)
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"SFTP upload {key} failed: {e}")

    def get_object(self, key: str) -> bytes:
        try:
            with self._lock:
                with self.sftp_client.open(self._remote(key), 'rb') as f:
                    return f.read()
        except FileNotFoundError:
            raise StorageError(f"Remote file not found: {key}")
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"SFTP get {key} failed: {e}")

    def stat(self, key: str) -> Optional[Dict]:
        try:
            with self._lock:
                attrs = self.sftp_client.stat(self._remote(key))
        except FileNotFoundError:
            return None
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"SFTP stat {key} failed: {e}")
        return {
            'Size': attrs.st_size,
            'LastModified': datetime.fromtimestamp(attrs.st_mtime, tz=timezone.utc)
        }

    def list_dirs(self, prefix: str = '') -> List[str]:
        try:
            with self._lock:
                items = self.sftp_client.listdir_attr(self._remote(prefix))
        except FileNotFoundError:
            return []
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"SFTP list failed: {e}")
        return sorted(item.filename for item in items if stat.S_ISDIR(item.st_mode))

    def _remove_tree(self, remote_path: str):
        for item in self.sftp_client.listdir_attr(remote_path):
            item_path = posixpath.join(remote_path, item.filename)
            if stat.S_ISDIR(item.st_mode):
                self._remove_tree(item_path)
            else:
                self.sftp_client.remove(item_path)
        self.sftp_client.rmdir(remote_path)

    def delete_prefix(self, prefix: str):
        try:
            with self._lock:
                self._remove_tree(self._remote(prefix))
        except FileNotFoundError:
            return
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"SFTP delete {prefix} failed: {e}")

    def close(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            self.sftp_client.close()
            self.sftp_client = None

        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None


class AzureBlobStorage:
    """
    Handler for blobs in an Azure Blob Storage container.

    All keys are relative to ``path`` inside the container.
    """

    def __init__(self, account_url: str, account_name: str, account_key: str, container: str, path: str = ''):
        self.account_url = account_url
        self.container = container
        self.path = path.strip('/')

        try:
            self.service_client = BlobServiceClient(
                account_url=account_url,
                credential={'account_name': account_name, 'account_key': account_key}
            )
            self.container_client = self.service_client.get_container_client(container)
        except (AzureError, ValueError) as e:
            raise StorageError(f"Failed to initialize Azure Blob client: {e}")

    def kind(self) -> str:
        return 'azblob'

    def _key(self, key: str) -> str:
        return posixpath.join(self.path, key) if self.path else key

    def connect(self) -> bool:
        """
        Test access to the container.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.container_client.get_container_properties()
            return True
        except ResourceNotFoundError:
            raise StorageError(f"Container does not exist: {self.container}")
        except AzureError as e:
            raise StorageError(f"Failed to connect to {self.account_url}: {e}")

    def put_object(self, key: str, body: bytes):
        try:
            self.container_client.upload_blob(self._key(key), body, overwrite=True)
        except AzureError as e:
            raise StorageError(f"Azure put {key} failed: {e}")

    def upload_file(self, local_path: str, key: str, cancellation_check: Optional[Callable] = None):
        """
        Upload a local file.

        Args:
            local_path: Path to local file
            key: Blob name relative to path
            cancellation_check: Called on upload progress, raises to cancel

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        def progress(current, total):
            if cancellation_check:
                cancellation_check()

        if cancellation_check:
            cancellation_check()
        try:
            with open(local_path, 'rb') as f:
                self.container_client.upload_blob(
                    self._key(key),
                    f,
                    length=os.path.getsize(local_path),
                    overwrite=True,
                    progress_hook=progress
                )
        except AzureError as e:
            raise StorageError(f"Azure upload {key} failed: {e}")

    def get_object(self, key: str) -> bytes:
        try:
            return self.container_client.download_blob(self._key(key)).readall()
        except ResourceNotFoundError:
            raise StorageError(f"Remote file not found: {key}")
        except AzureError as e:
            raise StorageError(f"Azure get {key} failed: {e}")

    def stat(self, key: str) -> Optional[Dict]:
        try:
            properties = self.container_client.get_blob_client(self._key(key)).get_blob_properties()
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise StorageError(f"Azure stat {key} failed: {e}")
        return {'Size': properties.size, 'LastModified': properties.last_modified}

    def list_dirs(self, prefix: str = '') -> List[str]:
        full_prefix = self._key(prefix).rstrip('/')
        full_prefix = full_prefix + '/' if full_prefix else ''
        try:
            names = []
            for item in self.container_client.walk_blobs(name_starts_with=full_prefix, delimiter='/'):
                if isinstance(item, BlobPrefix):
                    names.append(item.name[len(full_prefix):].rstrip('/'))
            return names
        except AzureError as e:
            raise StorageError(f"Azure list failed: {e}")

    def delete_prefix(self, prefix: str):
        """Delete every blob under prefix."""
        try:
            names = [b.name for b in self.container_client.list_blobs(name_starts_with=self._key(prefix))]
            for name in names:
                self.container_client.delete_blob(name)
        except AzureError as e:
            raise StorageError(f"Azure delete {prefix} failed: {e}")

    def close(self):
        self.service_client.close()


class BackupDestination:
    """
    Backup layout on top of a remote storage.

    When a resumable state is attached, units already marked done are
    skipped. An archive is marked pending before its transfer starts and
    done right after the storage confirmed the write.
    """

    def __init__(self, storage, compression_format: str = 'tar.gz', resumable_state=None,
                 temp_dir: Optional[str] = None):
        self.storage = storage
        self.compression_format = compression_format
        self.resumable_state = resumable_state
        self.temp_dir = temp_dir

    def kind(self) -> str:
        return self.storage.kind()

    def connect(self):
        self.storage.connect()

    def close(self):
        self.storage.close()

    def put_file(self, key: str, content: Union[bytes, io.IOBase]):
        """
        Upload a small file (metadata) under key.

        Raises:
            StorageError: If upload fails
        """
        if self.resumable_state is not None and self.resumable_state.is_done(key):
            logger.debug(f"{key} already uploaded, skipping")
            return

        body = content if isinstance(content, bytes) else content.read()
        self.storage.put_object(key, body)

        if self.resumable_state is not None:
            self.resumable_state.mark_done(key, len(body))

    def get_file(self, key: str) -> bytes:
        return self.storage.get_object(key)

    def compressed_stream_upload(self, local_base_path: str, files: List[str], remote_key: str,
                                 cancellation_check: Optional[Callable] = None) -> int:
        """
        Archive files and upload the archive under remote_key.

        Args:
            local_base_path: Directory the relative file paths are resolved against
            files: Relative paths to archive
            remote_key: Destination key of the archive
            cancellation_check: Called periodically, raises to cancel

        Returns:
            Size of the uploaded archive in bytes

        Raises:
            CompressionError: If the archive can't be built
            StorageError: If upload fails
        """
        if self.resumable_state is not None and self.resumable_state.is_done(remote_key):
            logger.info(f"{remote_key} already uploaded, skipping")
            return self.resumable_state.get_size(remote_key)

        if self.resumable_state is not None:
            self.resumable_state.mark_pending(remote_key)

        work_dir = tempfile.mkdtemp(prefix='chbackup_upload_', dir=self.temp_dir)
        try:
            archive_path = create_archive(
                local_base_path,
                files,
                os.path.join(work_dir, posixpath.basename(remote_key)),
                self.compression_format
            )
            size = get_archive_size(archive_path)
            self.storage.upload_file(archive_path, remote_key, cancellation_check)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        if self.resumable_state is not None:
            self.resumable_state.mark_done(remote_key, size)
        return size

    def backup_exists(self, backup_name: str) -> bool:
        return self.storage.stat(f"{backup_name}/metadata.json") is not None

    def list_backups(self, with_metadata: bool = False, filter_name: str = '') -> List[BackupSummary]:
        """
        List backups on remote storage.

        Args:
            with_metadata: Download and parse each metadata.json
            filter_name: Only return the backup with this name

        Returns:
            Backups sorted by upload date (oldest first); a backup without a
            readable metadata.json is reported with ``broken`` set
        """
        names = self.storage.list_dirs('')
        if filter_name:
            names = [n for n in names if n == filter_name]

        backups = []
        for name in names:
            summary = BackupSummary(backup_name=name)
            info = self.storage.stat(f"{name}/metadata.json")
            if info is None:
                summary.broken = "broken (can't stat metadata.json)"
                backups.append(summary)
                continue

            summary.upload_date = info['LastModified']
            if with_metadata:
                try:
                    summary.metadata = BackupMetadata.from_json(self.storage.get_object(f"{name}/metadata.json"))
                except (ValueError, KeyError) as e:
                    summary.broken = f"broken (can't parse metadata.json: {e})"
                    backups.append(summary)
                    continue
                summary.size = summary.metadata.compressed_size or (
                    summary.metadata.data_size + summary.metadata.metadata_size
                )
            backups.append(summary)

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(backups, key=lambda b: b.upload_date or epoch)

    def remove_backup(self, backup_name: str):
        logger.info(f"Removing remote backup {backup_name}")
        self.storage.delete_prefix(f"{backup_name}/")

    def remove_old_backups(self, keep: int) -> List[str]:
        """Delete backups beyond the newest keep; returns the deleted names."""
        from .retention import RetentionManager
        return RetentionManager(self).enforce(keep)


def _endpoint_url(endpoint: str, secure: bool = True) -> Optional[str]:
    if not endpoint:
        return None
    if endpoint.startswith('http'):
        return endpoint
    return f"{'https' if secure else 'http'}://{endpoint}"


def _azure_account_url(schema: str, endpoint_suffix: str, account_name: str) -> str:
    # emulator endpoints ("host:port") carry the account in the path
    if ':' in endpoint_suffix:
        return f"{schema}://{endpoint_suffix}/{account_name}"
    return f"{schema}://{account_name}.blob.{endpoint_suffix}"


def create_destination(config: Config, ch=None, resumable_state=None) -> BackupDestination:
    """
    Factory function to create the configured backup destination.

    Args:
        config: Full configuration
        ch: Database collaborator, used to expand macros in storage paths
        resumable_state: Optional ledger shared with the orchestrator

    Returns:
        BackupDestination (not yet connected)

    Raises:
        ConfigError: If remote_storage has no upload backend
    """
    remote_storage = config.general.remote_storage

    def macros(value: str) -> str:
        return ch.apply_macros(value) if ch is not None and value else value

    if remote_storage == 's3':
        s3 = config.s3
        storage = S3Storage(
            bucket_name=s3.bucket,
            access_key=s3.access_key,
            secret_key=s3.secret_key,
            region=s3.region,
            endpoint_url=_endpoint_url(s3.endpoint, not s3.disable_ssl),
            path=macros(s3.path),
            force_path_style=s3.force_path_style,
            storage_class=s3.storage_class
        )
    elif remote_storage == 'gcs':
        gcs = config.gcs
        if not gcs.embedded_access_key:
            raise ConfigError("provide gcs->embedded_access_key and gcs->embedded_secret_key (HMAC keys) to upload to GCS")
        storage = S3Storage(
            bucket_name=gcs.bucket,
            access_key=gcs.embedded_access_key,
            secret_key=gcs.embedded_secret_key,
            region='auto',
            endpoint_url=_endpoint_url(gcs.endpoint or 'storage.googleapis.com', not gcs.force_http),
            path=macros(gcs.path),
            kind='GCS'
        )
    elif remote_storage == 'azblob':
        az = config.azblob
        if not az.account_name or not az.container:
            raise ConfigError("provide azblob->account_name, azblob->account_key and azblob->container to upload to Azure")
        storage = AzureBlobStorage(
            account_url=_azure_account_url(az.endpoint_schema, az.endpoint_suffix, az.account_name),
            account_name=az.account_name,
            account_key=az.account_key,
            container=az.container,
            path=macros(az.path)
        )
    elif remote_storage == 'sftp':
        sftp = config.sftp
        storage = SFTPStorage(
            host=sftp.address,
            port=sftp.port,
            username=sftp.username,
            password=sftp.password,
            private_key=sftp.key,
            path=macros(sftp.path)
        )
    else:
        raise ConfigError(f"Upload is not supported for general->remote_storage: {remote_storage}")

    return BackupDestination(storage, config.general.compression_format, resumable_state)
