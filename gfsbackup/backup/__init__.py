"""
Backup module for gfsbackup.

This module handles the core backup functionality including:
- File selection (include/exclude rules, size and age criteria)
- Compression
- Destination catalog and storage
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor
from .selection import SelectionFilter, SelectionCriteria, ConfigurationError
from .sources import PathMatcher, FileListBuilder, SelectionEmptyError
from .compression import ArchiveWriter, ArchiveToolFailure, create_archive
from .storage import BackupCatalog, BackupArchive, StorageError, UnparseableArchiveName
from .retention import RetentionPlanner, Pruner, RetentionManager

__all__ = [
    'BackupExecutor',
    'SelectionFilter',
    'SelectionCriteria',
    'ConfigurationError',
    'PathMatcher',
    'FileListBuilder',
    'SelectionEmptyError',
    'ArchiveWriter',
    'ArchiveToolFailure',
    'create_archive',
    'BackupCatalog',
    'BackupArchive',
    'StorageError',
    'UnparseableArchiveName',
    'RetentionPlanner',
    'Pruner',
    'RetentionManager'
]
