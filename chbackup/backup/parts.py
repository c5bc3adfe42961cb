"""
Splitting of table parts into size-bounded upload batches.
"""

import os
import stat
from typing import List

from chbackup.exceptions import BackupError
from chbackup.models import Part


class PartsError(BackupError):
    """Raised when a part directory can't be read."""
    pass


def _raise_walk_error(error: OSError):
    raise PartsError(f"Failed to read {error.filename}: {error.strerror}")


def separate_parts(base_path: str, parts: List[Part], max_size: int) -> List[List[str]]:
    """
    Group the files of parts into batches of bounded cumulative size.

    Files are taken part by part in sorted listing order. A batch is closed
    when the next file would push it over max_size, so only a batch holding a
    single oversized file can exceed the bound.

    Args:
        base_path: Directory holding the part directories
        parts: Parts to include, in order
        max_size: Advisory maximum batch size in bytes

    Returns:
        List of batches, each a list of paths relative to base_path

    Raises:
        PartsError: If any part directory or file can't be read
    """
    result = []
    files = []
    size = 0

    for part in parts:
        part_path = os.path.join(base_path, part.name)
        if not os.path.isdir(part_path):
            raise PartsError(f"Part directory not found: {part_path}")

        for dirpath, dirnames, filenames in os.walk(part_path, onerror=_raise_walk_error):
            dirnames.sort()
            for filename in sorted(filenames):
                file_path = os.path.join(dirpath, filename)
                try:
                    info = os.lstat(file_path)
                except OSError as e:
                    raise PartsError(f"Failed to stat {file_path}: {e}")
                if not stat.S_ISREG(info.st_mode):
                    continue

                if files and size + info.st_size > max_size:
                    result.append(files)
                    files = []
                    size = 0

                files.append(os.path.relpath(file_path, base_path))
                size += info.st_size

    if files:
        result.append(files)
    return result
