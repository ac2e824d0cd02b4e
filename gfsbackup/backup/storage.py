"""
Storage handling for backup archives in a destination directory.

The destination directory is the only record of which backups exist: every
run rebuilds its catalog from the archive filenames found there.
"""

import logging
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from .compression import ARCHIVE_EXTENSIONS


logger = logging.getLogger(__name__)

ARCHIVE_NAME_RE = re.compile(
    r'^(\d{4})-(\d{2})-(\d{2})_(\d{2})-(\d{2})-(\d{2})_backup\.('
    + '|'.join(re.escape(ext) for ext in sorted(ARCHIVE_EXTENSIONS, key=len, reverse=True))
    + r')$'
)


class StorageError(Exception):
    """Raised when a destination operation fails."""
    pass


class UnparseableArchiveName(Exception):
    """Raised when a name matches the archive pattern but holds no valid date."""
    pass


@dataclass(frozen=True)
class BackupArchive:
    """An archive in the destination, identified by its path."""

    timestamp: datetime
    path: str
    mtime: float = 0.0

    @property
    def name(self) -> str:
        return os.path.basename(self.path)


def is_archive_name(filename: str) -> bool:
    """True if filename has the exact YYYY-MM-DD_HH-MM-SS_backup.<ext> shape."""
    return ARCHIVE_NAME_RE.match(filename) is not None


def parse_archive_name(filename: str) -> Optional[datetime]:
    """
    Extract the timestamp encoded in an archive filename.

    Args:
        filename: Base name of the file

    Returns:
        The timestamp, or None if the name is not an archive name

    Raises:
        UnparseableArchiveName: If the name matches but the date is impossible
    """
    match = ARCHIVE_NAME_RE.match(filename)
    if not match:
        return None

    parts = [int(p) for p in match.groups()[:6]]
    try:
        return datetime(*parts)
    except ValueError as e:
        raise UnparseableArchiveName(f"{filename}: {e}")


def sort_archives(archives) -> List[BackupArchive]:
    """Newest first; mtime then name break timestamp ties."""
    return sorted(archives, key=lambda a: (a.timestamp, a.mtime, a.name), reverse=True)


class BackupCatalog:
    """
    Discovers existing archives in a destination directory.

    Only immediate children are considered. Names that match the archive
    pattern but cannot be parsed are collected in `unparseable` and are never
    part of the returned catalog, so they can never be deleted.
    """

    def __init__(self, destination: str):
        """
        Initialize catalog.

        Args:
            destination: Backup destination directory
        """
        self.destination = os.path.abspath(destination)
        self.unparseable = []

    def scan(self) -> List[BackupArchive]:
        """
        List archives sorted by timestamp, newest first.

        Returns:
            List of BackupArchive

        Raises:
            StorageError: If the destination cannot be listed
        """
        self.unparseable = []
        archives = []

        try:
            entries = sorted(os.scandir(self.destination), key=lambda e: e.name)
        except OSError as e:
            raise StorageError(f"Failed to list destination {self.destination}: {e}")

        for entry in entries:
            if not is_archive_name(entry.name):
                continue
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                mtime = entry.stat(follow_symlinks=False).st_mtime
            except OSError as e:
                logger.warning(f"Could not stat backup file {entry.name}: {e}")
                continue

            try:
                timestamp = parse_archive_name(entry.name)
            except UnparseableArchiveName:
                logger.warning(f"Could not parse timestamp from backup file: {entry.name} (keeping undeleted)")
                self.unparseable.append(entry.path)
                continue

            archives.append(BackupArchive(timestamp, entry.path, mtime))

        return sort_archives(archives)

    def latest(self) -> Optional[BackupArchive]:
        """Most recent archive, or None if the destination holds none."""
        archives = self.scan()
        return archives[0] if archives else None

    def store(self, archive_path: str) -> str:
        """
        Move a finished archive into the destination.

        Args:
            archive_path: Path of the completed archive

        Returns:
            Final path inside the destination

        Raises:
            StorageError: If the archive cannot be moved
        """
        if not os.path.exists(archive_path):
            raise StorageError(f"Source file not found: {archive_path}")

        dest_path = os.path.join(self.destination, os.path.basename(archive_path))
        if os.path.exists(dest_path):
            raise StorageError(f"Archive already exists: {dest_path}")

        try:
            shutil.move(archive_path, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store archive: {e}")
        return dest_path

    def delete(self, path: str):
        """
        Delete one archive from the destination.

        Raises:
            StorageError: If the path is not a deletable archive or removal fails
        """
        if os.path.dirname(os.path.abspath(path)) != self.destination:
            raise StorageError(f"Refusing to delete file outside destination: {path}")
        if not is_archive_name(os.path.basename(path)):
            raise StorageError(f"Refusing to delete file with invalid pattern: {os.path.basename(path)}")

        try:
            os.remove(path)
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}")


def validate_destination(destination: str) -> str:
    """
    Check that a destination exists and is writable.

    Returns:
        Absolute, canonical destination path

    Raises:
        StorageError: If the destination is unusable
    """
    if not destination:
        raise StorageError("Destination path is required")
    path = os.path.realpath(os.path.expanduser(destination))
    if not os.path.isdir(path):
        raise StorageError(f"Destination directory does not exist: {destination}")
    if not os.access(path, os.W_OK):
        raise StorageError(f"Destination directory is not writable: {destination}")
    return path
