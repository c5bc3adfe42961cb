"""
Archive codecs for uploaded data batches.

Supports multiple formats:
- zip: Standard zip compression
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)
"""

import os
import tarfile
import zipfile
from typing import List

from chbackup.exceptions import BackupError


FORMAT_EXTENSIONS = {
    'zip': 'zip',
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
    'none': 'tar'
}

_TAR_MODES = {
    'tar.gz': 'w:gz',
    'tar.bz2': 'w:bz2',
    'tar.xz': 'w:xz',
    'none': 'w'
}


class CompressionError(BackupError):
    """Raised when archive creation fails."""
    pass


def create_archive(
    base_path: str,
    files: List[str],
    archive_path: str,
    compression_format: str = 'tar.gz'
) -> str:
    """
    Create an archive of files relative to a base directory.

    Member names are the relative paths, so ``<part>/<file>`` is restored
    under the table's shadow directory unchanged.

    Args:
        base_path: Directory the relative paths are resolved against
        files: Relative file paths to include, in order
        archive_path: Output archive path (with extension)
        compression_format: Format to use ('zip', 'tar.gz', 'tar.bz2', 'tar.xz', 'none')

    Returns:
        Path to the created archive

    Raises:
        CompressionError: If archive creation fails
        ValueError: If compression_format is invalid
    """
    if not files:
        raise CompressionError("No files provided")

    if compression_format not in FORMAT_EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(FORMAT_EXTENSIONS.keys())}"
        )

    try:
        if compression_format == 'zip':
            _create_zip(base_path, files, archive_path)
        else:
            _create_tar(base_path, files, archive_path, _TAR_MODES[compression_format])
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            os.remove(archive_path)
        raise CompressionError(f"Failed to create archive {os.path.basename(archive_path)}: {e}")


def _create_zip(base_path: str, files: List[str], archive_path: str):
    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for relative_path in files:
            zipf.write(os.path.join(base_path, relative_path), relative_path)


def _create_tar(base_path: str, files: List[str], archive_path: str, mode: str):
    with tarfile.open(archive_path, mode) as tar:
        for relative_path in files:
            tar.add(os.path.join(base_path, relative_path), arcname=relative_path, recursive=False)


def archive_name(disk: str, index: int, compression_format: str) -> str:
    """
    Name of the n-th archive of a disk, e.g. ``default_1.tar.gz``.

    Args:
        disk: Disk name
        index: 1-based batch index
        compression_format: Compression format

    Returns:
        Archive file name
    """
    return f"{disk}_{index}.{FORMAT_EXTENSIONS[compression_format]}"


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
