"""
Unit tests for destination storage (gfsbackup/backup/storage.py).

Tests archive name parsing, BackupCatalog scans, store and delete.
"""

import os
from datetime import datetime
from unittest.mock import patch

import pytest

from conftest import make_archive
from gfsbackup.backup.storage import (
    BackupArchive,
    BackupCatalog,
    StorageError,
    UnparseableArchiveName,
    is_archive_name,
    parse_archive_name,
    sort_archives,
    validate_destination,
)


class TestArchiveNames:
    """Test the fixed archive filename pattern."""

    @pytest.mark.parametrize('filename', [
        '2025-06-21_13-19-45_backup.tar.gz',
        '2025-06-21_13-19-45_backup.tar.bz2',
        '2025-06-21_13-19-45_backup.tar.xz',
        '2025-06-21_13-19-45_backup.tar',
    ])
    def test_valid_names(self, filename):
        assert is_archive_name(filename)
        assert parse_archive_name(filename) == datetime(2025, 6, 21, 13, 19, 45)

    @pytest.mark.parametrize('filename', [
        'backup.tar.gz',
        '2025-06-21_13-19-45_backup.zip',
        '2025-06-21_13-19-45_backup.tar.gz.part',
        'x2025-06-21_13-19-45_backup.tar.gz',
        '2025-06-21 13-19-45_backup.tar.gz',
        '25-06-21_13-19-45_backup.tar.gz',
    ])
    def test_non_archive_names(self, filename):
        assert not is_archive_name(filename)
        assert parse_archive_name(filename) is None

    def test_unparseable_date(self):
        """Matches the pattern but holds an impossible date."""
        assert is_archive_name('2025-02-30_13-19-45_backup.tar.gz')

        with pytest.raises(UnparseableArchiveName):
            parse_archive_name('2025-02-30_13-19-45_backup.tar.gz')

    def test_sort_archives_tie_break(self):
        """Equal timestamps are ordered by mtime, then by name."""
        ts = datetime(2025, 1, 1)
        older = BackupArchive(ts, '/d/2025-01-01_00-00-00_backup.tar', mtime=100.0)
        newer = BackupArchive(ts, '/d/2025-01-01_00-00-00_backup.tar.gz', mtime=200.0)
        same_mtime = BackupArchive(ts, '/d/2025-01-01_00-00-00_backup.tar.xz', mtime=200.0)

        result = sort_archives([older, newer, same_mtime])

        assert result == [same_mtime, newer, older]


class TestBackupCatalog:
    """Test destination scanning."""

    def test_scan_sorted_newest_first(self, populated_destination):
        archives = BackupCatalog(str(populated_destination)).scan()

        assert [a.name for a in archives] == [
            '2025-01-03_00-00-00_backup.tar.gz',
            '2025-01-02_00-00-00_backup.tar.gz',
            '2025-01-01_00-00-00_backup.tar.gz',
        ]
        assert archives[0].timestamp == datetime(2025, 1, 3)
        assert archives[0].path == os.path.join(str(populated_destination), archives[0].name)

    def test_scan_ignores_files_without_timestamp(self, populated_destination):
        """A file named backup.tar.gz is never part of the catalog."""
        names = [a.name for a in BackupCatalog(str(populated_destination)).scan()]

        assert 'backup.tar.gz' not in names
        assert 'backup.log' not in names

    def test_scan_does_not_recurse(self, populated_destination):
        archives = BackupCatalog(str(populated_destination)).scan()

        assert all(os.path.dirname(a.path) == str(populated_destination) for a in archives)
        assert len(archives) == 3

    def test_scan_ignores_directories_with_archive_names(self, destination):
        (destination / '2025-01-01_00-00-00_backup.tar.gz').mkdir()

        assert BackupCatalog(str(destination)).scan() == []

    def test_scan_is_idempotent(self, populated_destination):
        catalog = BackupCatalog(str(populated_destination))

        assert catalog.scan() == catalog.scan()

    def test_unparseable_names_reported_separately(self, destination):
        make_archive(destination, '2025-01-01_00-00-00_backup.tar.gz')
        bad = make_archive(destination, '2025-13-45_00-00-00_backup.tar.gz')
        catalog = BackupCatalog(str(destination))

        archives = catalog.scan()

        assert [a.name for a in archives] == ['2025-01-01_00-00-00_backup.tar.gz']
        assert catalog.unparseable == [bad]

    def test_scan_missing_destination(self, tmp_path):
        with pytest.raises(StorageError, match='Failed to list destination'):
            BackupCatalog(str(tmp_path / 'missing')).scan()

    def test_latest(self, populated_destination, destination):
        assert BackupCatalog(str(populated_destination)).latest().timestamp == datetime(2025, 1, 3)

    def test_latest_empty(self, destination):
        assert BackupCatalog(str(destination)).latest() is None

    def test_store_moves_archive(self, destination, tmp_path):
        staging = tmp_path / 'staging'
        staging.mkdir()
        source = make_archive(staging, '2025-01-04_00-00-00_backup.tar.gz')

        final_path = BackupCatalog(str(destination)).store(source)

        assert final_path == os.path.join(str(destination), '2025-01-04_00-00-00_backup.tar.gz')
        assert os.path.exists(final_path)
        assert not os.path.exists(source)

    def test_store_refuses_to_overwrite(self, populated_destination, tmp_path):
        staging = tmp_path / 'staging'
        staging.mkdir()
        source = make_archive(staging, '2025-01-03_00-00-00_backup.tar.gz')

        with pytest.raises(StorageError, match='already exists'):
            BackupCatalog(str(populated_destination)).store(source)

    def test_store_missing_source(self, destination, tmp_path):
        with pytest.raises(StorageError, match='not found'):
            BackupCatalog(str(destination)).store(str(tmp_path / 'nothing.tar.gz'))

    def test_delete(self, populated_destination):
        path = str(populated_destination / '2025-01-01_00-00-00_backup.tar.gz')

        BackupCatalog(str(populated_destination)).delete(path)

        assert not os.path.exists(path)

    def test_delete_refuses_non_archive_names(self, populated_destination):
        path = str(populated_destination / 'backup.tar.gz')

        with pytest.raises(StorageError, match='invalid pattern'):
            BackupCatalog(str(populated_destination)).delete(path)

        assert os.path.exists(path)

    def test_delete_refuses_files_outside_destination(self, populated_destination):
        path = str(populated_destination / 'subdir' / '2024-01-01_00-00-00_backup.tar.gz')

        with pytest.raises(StorageError, match='outside destination'):
            BackupCatalog(str(populated_destination)).delete(path)

        assert os.path.exists(path)

    def test_delete_permission_error(self, populated_destination):
        path = str(populated_destination / '2025-01-01_00-00-00_backup.tar.gz')

        with patch('gfsbackup.backup.storage.os.remove', side_effect=PermissionError('denied')):
            with pytest.raises(StorageError, match='Permission denied'):
                BackupCatalog(str(populated_destination)).delete(path)


class TestValidateDestination:
    """Test destination validation."""

    def test_valid(self, destination):
        assert validate_destination(str(destination) + '/') == os.path.realpath(str(destination))

    def test_required(self):
        with pytest.raises(StorageError, match='required'):
            validate_destination('')

    def test_missing(self, tmp_path):
        with pytest.raises(StorageError, match='does not exist'):
            validate_destination(str(tmp_path / 'missing'))

    def test_not_a_directory(self, tmp_path):
        path = tmp_path / 'file'
        path.write_text('x')

        with pytest.raises(StorageError, match='does not exist'):
            validate_destination(str(path))

    def test_not_writable(self, destination):
        with patch('gfsbackup.backup.storage.os.access', return_value=False):
            with pytest.raises(StorageError, match='not writable'):
                validate_destination(str(destination))
