"""
Artifact naming and tarball handling.

Artifacts are named {prefix}-{YYYYMMDDHHMMSS}[.ext]. The timestamp is fixed
width and zero padded so sorting names sorts backups chronologically.

Supported tarball formats:
- tar: No compression
- tar.gz / tgz: Gzip compressed tar
"""

import os
import shutil
import tarfile
from datetime import datetime
from pathlib import Path
from typing import Optional


TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'

# Extension -> tarfile read mode
_READ_MODES = (
    ('.tar.gz', 'r:gz'),
    ('.tgz', 'r:gz'),
    ('.tar', 'r:'),
)


class CompressionError(Exception):
    """Raised when an archive cannot be created or extracted."""
    pass


def generate_filename(directory: str, prefix: str, now: Optional[datetime] = None) -> str:
    """
    Generate a timestamped artifact path, without extension.

    Args:
        directory: Directory the artifact will be written to
        prefix: Artifact name prefix (e.g. 'mysql-backup')
        now: Timestamp to use (default: current local time)

    Returns:
        Path of the form {directory}/{prefix}-{YYYYMMDDHHMMSS}
    """
    now = now or datetime.now()
    return os.path.join(directory, f"{prefix}-{now.strftime(TIMESTAMP_FORMAT)}")


def create_tarball(source_path: str, archive_path: str, compress: bool = True) -> str:
    """
    Create a tarball containing one file or directory.

    The entry is stored under its basename, so extracting into the parent of
    source_path recreates it in place.

    Args:
        source_path: File or directory to archive
        archive_path: Output archive path (extension included)
        compress: Gzip the tarball

    Returns:
        archive_path

    Raises:
        CompressionError: If archive creation fails
    """
    source = Path(source_path)
    if not source.exists():
        raise CompressionError(f"Path does not exist: {source_path}")

    mode = 'w:gz' if compress else 'w'
    arcname = source.resolve().name

    try:
        with tarfile.open(archive_path, mode) as tar:
            tar.add(str(source), arcname=arcname, recursive=True)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            os.remove(archive_path)
        raise CompressionError(f"Failed to create archive: {e}") from e


def tarball_read_mode(archive_path: str) -> Optional[str]:
    """Return the tarfile read mode for an archive name, None if unrecognized."""
    name = os.path.basename(archive_path).lower()
    for extension, mode in _READ_MODES:
        if name.endswith(extension):
            return mode
    return None


def extract_tarball(archive_path: str, destination: str):
    """
    Extract a tarball into a directory.

    Raises:
        CompressionError: If the format is unsupported or extraction fails
    """
    mode = tarball_read_mode(archive_path)
    if mode is None:
        raise CompressionError(f"Unsupported file extension: {os.path.basename(archive_path)}")

    try:
        with tarfile.open(archive_path, mode) as tar:
            # Member paths must stay inside destination, symlink targets are kept as archived
            tar.extractall(destination, filter='tar')
    except (tarfile.TarError, OSError) as e:
        raise CompressionError(f"Cannot unpack backup: {e}") from e


def remove_directory_contents(directory: str):
    """
    Delete everything inside a directory, keeping the directory itself.

    Raises:
        CompressionError: If the directory cannot be read or an entry removed
    """
    try:
        names = os.listdir(directory)
    except OSError as e:
        raise CompressionError(f"Cannot read files on directory {directory}: {e}") from e

    for name in names:
        path = os.path.join(directory, name)
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
        except OSError as e:
            raise CompressionError(f"Failed to remove {name}: {e}") from e
