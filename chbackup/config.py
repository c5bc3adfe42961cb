"""
Configuration for chbackup.

Settings are read from a YAML file with one section per concern (general,
clickhouse, s3, gcs, azblob, sftp, custom, api), then overridden from
environment variables named after the field, e.g. ``S3_BUCKET``.
"""

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

from chbackup.exceptions import ConfigError


DEFAULT_CONFIG_PATH = '/etc/chbackup/config.yml'

REMOTE_STORAGE_TYPES = ('none', 'custom', 's3', 'gcs', 'azblob', 'sftp')


@dataclass
class GeneralConfig:
    """General settings"""
    remote_storage: str = 'none'
    max_file_size: int = 1024 * 1024 * 1024
    backups_to_keep_remote: int = 0
    upload_concurrency: int = 4
    use_resumable_state: bool = True
    resumable_flush_interval: float = 5.0
    sharded_operation_mode: str = ''
    compression_format: str = 'tar.gz'
    skip_tables: List[str] = field(default_factory=lambda: [
        'system.*',
        'INFORMATION_SCHEMA.*',
        'information_schema.*',
        '_temporary_and_external_tables.*',
    ])
    log_level: str = 'info'
    log_dir: str = ''


@dataclass
class ClickHouseConfig:
    """ClickHouse HTTP connection"""
    host: str = 'localhost'
    port: int = 8123
    username: str = 'default'
    password: str = ''
    secure: bool = False
    timeout: int = 300
    data_path: str = ''
    use_embedded_backup_restore: bool = False
    embedded_backup_disk: str = ''


@dataclass
class S3Config:
    access_key: str = ''
    secret_key: str = ''
    bucket: str = ''
    endpoint: str = ''
    region: str = 'us-east-1'
    path: str = ''
    object_disk_path: str = ''
    force_path_style: bool = False
    disable_ssl: bool = False
    storage_class: str = 'STANDARD'


@dataclass
class GCSConfig:
    # HMAC keys, used both for embedded backups and the S3 interoperability API
    embedded_access_key: str = ''
    embedded_secret_key: str = ''
    bucket: str = ''
    endpoint: str = ''
    path: str = ''
    object_disk_path: str = ''
    force_http: bool = False


@dataclass
class AzureBlobConfig:
    account_name: str = ''
    account_key: str = ''
    container: str = ''
    endpoint_suffix: str = 'core.windows.net'
    endpoint_schema: str = 'https'
    path: str = ''
    object_disk_path: str = ''


@dataclass
class SFTPConfig:
    address: str = ''
    port: int = 22
    username: str = ''
    password: str = ''
    key: str = ''
    path: str = ''


@dataclass
class CustomConfig:
    upload_command: str = ''
    command_timeout: int = 4 * 60 * 60


@dataclass
class APIConfig:
    listen: str = '0.0.0.0:7171'
    retention_cron: str = ''


_SECTIONS = {
    'general': GeneralConfig,
    'clickhouse': ClickHouseConfig,
    's3': S3Config,
    'gcs': GCSConfig,
    'azblob': AzureBlobConfig,
    'sftp': SFTPConfig,
    'custom': CustomConfig,
    'api': APIConfig,
}


@dataclass
class Config:
    """Complete configuration, one attribute per YAML section."""
    general: GeneralConfig = field(default_factory=GeneralConfig)
    clickhouse: ClickHouseConfig = field(default_factory=ClickHouseConfig)
    s3: S3Config = field(default_factory=S3Config)
    gcs: GCSConfig = field(default_factory=GCSConfig)
    azblob: AzureBlobConfig = field(default_factory=AzureBlobConfig)
    sftp: SFTPConfig = field(default_factory=SFTPConfig)
    custom: CustomConfig = field(default_factory=CustomConfig)
    api: APIConfig = field(default_factory=APIConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        """
        Build configuration from a parsed YAML document.

        Args:
            data: Mapping of section name to section settings

        Returns:
            Config instance (not yet validated)

        Raises:
            ConfigError: If a section or key is unknown
        """
        kwargs = {}
        for section_name, section_data in (data or {}).items():
            section_cls = _SECTIONS.get(section_name)
            if section_cls is None:
                raise ConfigError(f"Unknown config section: {section_name}")
            known = {f.name for f in fields(section_cls)}
            unknown = set(section_data or {}) - known
            if unknown:
                raise ConfigError(f"Unknown keys in section {section_name}: {sorted(unknown)}")
            kwargs[section_name] = section_cls(**(section_data or {}))
        return cls(**kwargs)

    def apply_env_overrides(self, environ: Optional[Dict[str, str]] = None):
        """
        Override settings from environment variables.

        General settings map to the upper-case key (REMOTE_STORAGE), every
        other section to SECTION_KEY (S3_BUCKET, CLICKHOUSE_HOST).
        """
        environ = os.environ if environ is None else environ

        for section_name in _SECTIONS:
            section = getattr(self, section_name)
            for f in fields(section):
                env_name = f.name.upper() if section_name == 'general' else f"{section_name}_{f.name}".upper()
                if env_name not in environ:
                    continue
                setattr(section, f.name, _coerce(environ[env_name], f.type, env_name))

    def validate(self):
        """
        Validate settings before any I/O happens.

        Raises:
            ConfigError: On the first invalid setting found
        """
        from chbackup.backup.compression import FORMAT_EXTENSIONS
        from chbackup.backup.sharding import validate_shard_mode

        if self.general.remote_storage not in REMOTE_STORAGE_TYPES:
            raise ConfigError(
                f"Invalid general->remote_storage: {self.general.remote_storage}. "
                f"Valid options: {list(REMOTE_STORAGE_TYPES)}"
            )

        if self.general.compression_format not in FORMAT_EXTENSIONS:
            raise ConfigError(
                f"Invalid general->compression_format: {self.general.compression_format}. "
                f"Valid options: {list(FORMAT_EXTENSIONS)}"
            )

        if self.general.max_file_size <= 0:
            raise ConfigError("general->max_file_size must be positive")

        if self.general.upload_concurrency <= 0:
            raise ConfigError("general->upload_concurrency must be positive")

        if self.general.backups_to_keep_remote < 0:
            raise ConfigError("general->backups_to_keep_remote can't be negative")

        validate_shard_mode(self.general.sharded_operation_mode)

        if self.general.remote_storage == 'custom' and not self.custom.upload_command:
            raise ConfigError("custom->upload_command is required when general->remote_storage is custom")


def _coerce(value: str, target_type, env_name: str):
    """Convert an environment string to the type of a config field."""
    try:
        if target_type is bool:
            return value.strip().lower() in ('1', 'true', 'yes', 'on')
        if target_type is int:
            return int(value)
        if target_type is float:
            return float(value)
        if getattr(target_type, '__origin__', None) is list:
            return [item.strip() for item in value.split(',') if item.strip()]
    except ValueError:
        raise ConfigError(f"Invalid value for {env_name}: {value!r}")
    return value


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Config:
    """
    Load, override and validate configuration.

    Args:
        path: YAML file path (default: $CHBACKUP_CONFIG or /etc/chbackup/config.yml)
        environ: Environment mapping (default: os.environ)

    Returns:
        Validated Config

    Raises:
        ConfigError: If the file can't be parsed or settings are invalid
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get('CHBACKUP_CONFIG') or DEFAULT_CONFIG_PATH

    data = {}
    if os.path.exists(path):
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Can't parse config file {path}: {e}")

    config = Config.from_dict(data)
    config.apply_env_overrides(environ)
    config.validate()
    return config
