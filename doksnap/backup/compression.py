"""
Archive creation for backup sources.

Archives are produced by the external `tar` program as gzip compressed
tarballs of a single directory:
    tar -czf <output> -C <parent> <basename>
"""

import os
import logging
import subprocess
from datetime import datetime, timezone


logger = logging.getLogger(__name__)

ARCHIVE_EXTENSION = 'tar.gz'


class ArchiveError(Exception):
    """Raised when archive creation fails."""
    pass


def create_archive(source_path: str, output_path: str, tar_command: str = 'tar') -> str:
    """
    Create a gzip compressed tar archive of source_path.

    Args:
        source_path: Directory (or file) to archive
        output_path: Full path of the archive to create
        tar_command: tar executable to invoke

    Returns:
        output_path

    Raises:
        ArchiveError: If tar cannot be run or exits non-zero
    """
    source_path = source_path.rstrip('/') or '/'
    parent = os.path.dirname(source_path) or '.'
    basename = os.path.basename(source_path)

    args = [tar_command, '-czf', output_path, '-C', parent, basename]

    try:
        result = subprocess.run(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except OSError as e:
        _remove_partial(output_path)
        raise ArchiveError(f"Failed to run {tar_command}: {e}")

    if result.returncode != 0:
        _remove_partial(output_path)
        output = result.stdout.decode('utf-8', errors='replace').strip()
        raise ArchiveError(f"Failed to create tar archive (exit code {result.returncode}): {output[:500]}")

    return output_path


def _remove_partial(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove partial archive: {e}")


def generate_archive_filename(source_name: str, now: datetime = None) -> str:
    """
    Generate a standardized archive filename.

    Format: {source_name}_{YYYYMMDD_HHMMSS}.tar.gz

    Args:
        source_name: Name of the backup source
        now: Timestamp to embed (default: current UTC time)

    Returns:
        Filename (without path)
    """
    now = now or datetime.now(timezone.utc)
    timestamp = now.strftime('%Y%m%d_%H%M%S')

    safe_name = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in source_name
    )

    return f"{safe_name}_{timestamp}.{ARCHIVE_EXTENSION}"


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise ArchiveError(f"Failed to get archive size: {e}")
