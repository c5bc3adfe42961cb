"""
Exception hierarchy for chbackup.

Every error raised by the upload pipeline derives from BackupError so that the
CLI and the REST API can report it uniformly.
"""


class BackupError(Exception):
    """Base class for all backup errors."""
    pass


class ConfigError(BackupError):
    """Raised when configuration is invalid or incomplete."""
    pass


class ShardConfigError(ConfigError):
    """Raised when the sharded operation mode names an unknown policy."""
    pass


class BackupNotFoundError(BackupError):
    """Raised when a requested backup does not exist at the chosen location."""
    pass


class BackupAlreadyExistsError(BackupError):
    """Raised when a backup with the same name is already on remote storage."""
    pass


class UnknownDataPathError(BackupError):
    """Raised when the default data path cannot be determined from disks."""

    def __init__(self, message: str = "clickhouse data path is unknown, you can set data_path in config file"):
        super().__init__(message)


class ShardOperationUnsupportedError(BackupError):
    """Raised when the cluster cannot run sharded operations."""
    pass


class ShardError(BackupError):
    """Raised when shard assignment cannot be computed or looked up."""
    pass


class UploadCancelled(BackupError):
    """Raised inside transfer workers once the run is cancelled."""
    pass


class TableUploadError(BackupError):
    """
    Raised when uploading one table fails.

    Carries the table identity, disk and phase so the failure can be
    diagnosed without re-running at higher verbosity.
    """

    def __init__(self, database: str, table: str, phase: str, cause: Exception, disk: str = None):
        self.database = database
        self.table = table
        self.phase = phase
        self.disk = disk
        self.cause = cause
        where = f"{database}.{table}"
        if disk:
            where += f" disk={disk}"
        super().__init__(f"{phase} failed for {where}: {cause}")


class UploadInProgressError(BackupError):
    """Raised when an upload is requested while another one is running."""
    pass
