"""
Compression handlers for backup archives.

Supports multiple tar formats:
- tar.gz: Gzip compressed tar (default)
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)

Archive members keep their full absolute paths.
"""

import logging
import os
import tarfile
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = '_backup'
TIMESTAMP_FORMAT = '%Y-%m-%d_%H-%M-%S'

# format -> (extension, tarfile mode)
FORMATS = {
    'tar.gz': ('tar.gz', 'w:gz'),
    'tar.bz2': ('tar.bz2', 'w:bz2'),
    'tar.xz': ('tar.xz', 'w:xz'),
    'none': ('tar', 'w'),
}

ARCHIVE_EXTENSIONS = tuple(ext for ext, _ in FORMATS.values())


class ArchiveToolFailure(Exception):
    """Raised when archive creation fails as a whole."""
    pass


@dataclass
class ArchiveResult:
    path: str
    size_bytes: int
    file_count: int
    warnings: List[dict] = field(default_factory=list)


def archive_extension(compression_format: str) -> str:
    """
    Map a compression format to its file extension.

    Raises:
        ValueError: If compression_format is invalid
    """
    if compression_format not in FORMATS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(FORMATS.keys())}"
        )
    return FORMATS[compression_format][0]


class ArchiveWriter:
    """
    Writes a file manifest into a single tar archive.

    Files that vanish or cannot be read are skipped and reported as warnings.
    Any failure of the tar layer itself removes the partial archive.
    """

    def __init__(self, compression_format: str = 'tar.gz'):
        archive_extension(compression_format)
        self.compression_format = compression_format

    def write(self, manifest: List[str], destination_path: str) -> ArchiveResult:
        """
        Create the archive.

        Args:
            manifest: Absolute paths of files to include
            destination_path: Full path of the archive to create

        Returns:
            ArchiveResult with size on disk, file count and per-file warnings

        Raises:
            ArchiveToolFailure: If the archive could not be written
        """
        if not manifest:
            raise ArchiveToolFailure("No files provided for archive")

        mode = FORMATS[self.compression_format][1]
        warnings = []
        file_count = 0

        try:
            with tarfile.open(destination_path, mode) as tar:
                for path in manifest:
                    if self._add_file(tar, path, warnings):
                        file_count += 1
        except Exception as e:
            if os.path.exists(destination_path):
                try:
                    os.remove(destination_path)
                except OSError as cleanup_error:
                    logger.error(f"Failed to remove partial archive {destination_path}: {cleanup_error}")
            raise ArchiveToolFailure(f"Failed to create archive: {e}")

        size = get_archive_size(destination_path)
        if warnings:
            logger.warning(
                f"Some files could not be backed up [{len(warnings)} item(s)]"
            )
        return ArchiveResult(destination_path, size, file_count, warnings)

    def _add_file(self, tar: tarfile.TarFile, path: str, warnings: list) -> bool:
        """
        Add one file under its absolute name.

        Returns:
            True if the file was added, False if it was skipped
        """
        try:
            handle = open(path, 'rb')
        except OSError as e:
            self._warn(warnings, path, e)
            return False

        with handle:
            try:
                tarinfo = tar.gettarinfo(arcname=path, fileobj=handle)
            except OSError as e:
                self._warn(warnings, path, e)
                return False

            # gettarinfo strips the leading '/', keep absolute names like tar -P
            tarinfo.name = path
            if not tarinfo.isreg():
                self._warn(warnings, path, 'not a regular file')
                return False

            tar.addfile(tarinfo, handle)
        return True

    def _warn(self, warnings: list, path: str, error):
        logger.warning(f"tar warning: {path}: {error}")
        warnings.append({'path': path, 'error': str(error)})


def create_archive(
    manifest: List[str],
    output_path: str,
    compression_format: str = 'tar.gz'
) -> ArchiveResult:
    """
    Create a compressed archive from a manifest.

    Args:
        manifest: List of absolute file paths
        output_path: Path where archive should be created (without extension)
        compression_format: Format to use ('tar.gz', 'tar.bz2', 'tar.xz', 'none')

    Returns:
        ArchiveResult for the created file

    Raises:
        ArchiveToolFailure: If archive creation fails
        ValueError: If compression_format is invalid
    """
    extension = archive_extension(compression_format)
    return ArchiveWriter(compression_format).write(manifest, f"{output_path}.{extension}")


def generate_archive_filename(compression_format: str = 'tar.gz', timestamp: Optional[datetime] = None) -> str:
    """
    Generate the fixed archive filename.

    Format: YYYY-MM-DD_HH-MM-SS_backup.{ext}

    Args:
        compression_format: Compression format
        timestamp: Time to encode (default: now)

    Returns:
        Filename (without path)
    """
    timestamp = timestamp or datetime.now()
    extension = archive_extension(compression_format)
    return f"{timestamp.strftime(TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}.{extension}"


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles multi-part extensions like .tar.gz, .tar.bz2, .tar.xz

    Args:
        filename: Archive filename with extension

    Returns:
        Filename without extension
    """
    for extension in sorted(ARCHIVE_EXTENSIONS, key=len, reverse=True):
        if filename.endswith('.' + extension):
            return filename[:-(len(extension) + 1)]
    return os.path.splitext(filename)[0]


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveToolFailure: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveToolFailure(f"Archive not found: {archive_path}")
    except OSError as e:
        raise ArchiveToolFailure(f"Failed to get archive size: {e}")


def format_size(size_bytes: int) -> str:
    """Human readable size, du -h style."""
    size = float(size_bytes)
    for unit in ('B', 'K', 'M', 'G', 'T'):
        if size < 1024 or unit == 'T':
            return f"{size:.0f}{unit}" if unit == 'B' else f"{size:.1f}{unit}"
        size /= 1024
