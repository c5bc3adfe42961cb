"""
Locations for embedded (BACKUP ... TO) backups.

With a dedicated backup disk the location is simply ``Disk('<disk>','<name>')``.
Otherwise each object storage provider has its own location grammar, built
by one of the provider classes below.
"""

import os
from typing import Callable, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

from chbackup.config import Config
from chbackup.exceptions import ConfigError
from chbackup.models import TableTitle


def _join(*parts: str) -> str:
    return '/'.join(p.strip('/') for p in parts if p and p.strip('/'))


def _url(scheme: str, host: str, path: str, query: str = '') -> str:
    return urlunsplit((scheme, host, '/' + path if path else '', query, ''))


class EmbeddedLocation:
    """
    One provider's location grammar.

    Args:
        config: Full configuration
        environ: Environment used for credential fallback
    """

    name = ''

    def __init__(self, config: Config, environ: Optional[Dict[str, str]] = None):
        self.config = config
        self.environ = os.environ if environ is None else environ

    def object_disk_path(self) -> str:
        raise NotImplementedError

    def build(self, backup_name: str, object_disk_path: str, apply_macros: Callable[[str], str]) -> str:
        raise NotImplementedError

    def _env_credentials(self):
        return self.environ.get('AWS_ACCESS_KEY_ID', ''), self.environ.get('AWS_SECRET_ACCESS_KEY', '')


class S3Location(EmbeddedLocation):
    name = 's3'

    def object_disk_path(self) -> str:
        return self.config.s3.object_disk_path

    def endpoint_url(self, object_disk_path: str) -> str:
        """
        Endpoint URL of the bucket and object disk path.

        An explicit ``http(s)://`` endpoint is used as-is, a bare endpoint
        becomes the host. Without an endpoint the AWS regional host is
        synthesized, path style or virtual host style.
        """
        s3 = self.config.s3
        scheme, host, query = 'https', '', ''
        path = _join(s3.bucket, object_disk_path)

        if s3.endpoint.startswith('http'):
            parsed = urlsplit(s3.endpoint)
            scheme, host, query = parsed.scheme, parsed.netloc, parsed.query
        else:
            host = s3.endpoint

        if s3.disable_ssl:
            scheme = 'http'

        if not host and s3.region and s3.force_path_style:
            host = f"s3.{s3.region}.amazonaws.com"
        if not host and s3.bucket and not s3.force_path_style:
            host = f"{s3.bucket}.s3.{s3.region}.amazonaws.com"
            path = _join(object_disk_path)

        return _url(scheme, host, path, query)

    def build(self, backup_name, object_disk_path, apply_macros):
        endpoint = apply_macros(self.endpoint_url(object_disk_path))
        access_key, secret_key = self.config.s3.access_key, self.config.s3.secret_key
        if not access_key:
            access_key, secret_key = self._env_credentials()
        if not access_key:
            raise ConfigError(
                "provide s3->access_key and s3->secret_key in config to allow embedded backup "
                "without `clickhouse->embedded_backup_disk`"
            )
        return f"S3('{endpoint}/{backup_name}','{access_key}','{secret_key}')"


class GCSLocation(EmbeddedLocation):
    name = 'gcs'

    def object_disk_path(self) -> str:
        return self.config.gcs.object_disk_path

    def endpoint_url(self, object_disk_path: str) -> str:
        gcs = self.config.gcs
        scheme = 'http' if gcs.force_http else 'https'
        host, query = '', ''

        if gcs.endpoint:
            if gcs.endpoint.startswith('http'):
                parsed = urlsplit(gcs.endpoint)
                scheme, host, query = parsed.scheme, parsed.netloc, parsed.query
            else:
                host = gcs.endpoint
        if not host:
            host = 'storage.googleapis.com'

        return _url(scheme, host, _join(gcs.bucket, object_disk_path), query)

    def build(self, backup_name, object_disk_path, apply_macros):
        endpoint = apply_macros(self.endpoint_url(object_disk_path))
        access_key, secret_key = self.config.gcs.embedded_access_key, self.config.gcs.embedded_secret_key
        if not access_key:
            access_key, secret_key = self._env_credentials()
        if not access_key:
            raise ConfigError(
                "provide gcs->embedded_access_key and gcs->embedded_secret_key in config to allow "
                "embedded backup without `clickhouse->embedded_backup_disk`"
            )
        return f"S3('{endpoint}/{backup_name}','{access_key}','{secret_key}')"


class AzureBlobLocation(EmbeddedLocation):
    name = 'azblob'

    def object_disk_path(self) -> str:
        return self.config.azblob.object_disk_path

    def connection_string(self) -> str:
        az = self.config.azblob
        blob_endpoint = _url(az.endpoint_schema, az.endpoint_suffix, az.account_name)
        return (
            f"DefaultEndpointsProtocol={az.endpoint_schema};AccountName={az.account_name};"
            f"AccountKey={az.account_key};BlobEndpoint={blob_endpoint};"
        )

    def build(self, backup_name, object_disk_path, apply_macros):
        az = self.config.azblob
        if not az.container:
            raise ConfigError(
                "provide azblob->container and azblob->account_name, azblob->account_key in config "
                "to allow embedded backup without `clickhouse->embedded_backup_disk`"
            )
        connection = apply_macros(self.connection_string())
        return f"AzureBlobStorage('{connection}','{az.container}','{_join(object_disk_path, backup_name)}')"


LOCATIONS = {cls.name: cls for cls in (S3Location, GCSLocation, AzureBlobLocation)}


class EmbeddedLocator:
    """
    Builds embedded backup locations for the configured remote storage.

    Args:
        config: Full configuration
        ch: Database collaborator providing apply_macros(template)
        environ: Environment for credential fallback (default: os.environ)
    """

    def __init__(self, config: Config, ch, environ: Optional[Dict[str, str]] = None):
        self.config = config
        self.ch = ch
        self.environ = environ

    def provider(self) -> EmbeddedLocation:
        """
        Raises:
            ConfigError: If remote_storage has no embedded location grammar
        """
        remote_storage = self.config.general.remote_storage
        location_cls = LOCATIONS.get(remote_storage)
        if location_cls is None:
            raise ConfigError(
                f"empty clickhouse->embedded_backup_disk and invalid general->remote_storage: {remote_storage}"
            )
        return location_cls(self.config, self.environ)

    def object_disk_path(self) -> str:
        """Macro-expanded object disk path of the configured provider."""
        return self.ch.apply_macros(self.provider().object_disk_path())

    def location(self, backup_name: str) -> str:
        """
        Location string for ``BACKUP ... TO`` of backup_name.

        Raises:
            ConfigError: If credentials or container are missing, or
                remote_storage is unsupported
        """
        backup_disk = self.config.clickhouse.embedded_backup_disk
        if backup_disk:
            return f"Disk('{backup_disk}','{backup_name}')"

        provider = self.provider()
        object_disk_path = self.ch.apply_macros(provider.object_disk_path())
        return provider.build(backup_name, object_disk_path, self.ch.apply_macros)


def quote_identifier(name: str) -> str:
    return '`' + name.replace('\\', '\\\\').replace('`', '\\`') + '`'


def embedded_backup_sql(location: str, tables: List[TableTitle], schema_only: bool = False) -> str:
    """
    Render the BACKUP statement writing tables to location.

    Args:
        location: Result of EmbeddedLocator.location()
        tables: Tables to include
        schema_only: Back up structure only
    """
    table_list = ', '.join(
        f"TABLE {quote_identifier(t.database)}.{quote_identifier(t.table)}" for t in tables
    )
    sql = f"BACKUP {table_list} TO {location}"
    if schema_only:
        sql += " SETTINGS structure_only=1"
    return sql
