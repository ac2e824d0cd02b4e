"""
Shared pytest fixtures for gfsbackup tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Backup job fixtures
- Temporary source trees and destination directories
- Mock scheduler
"""

import os
import json
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from gfsbackup import create_app, db as _db
from gfsbackup.models import BackupJob, BackupHistory


def make_archive(directory, name, content=b'archive'):
    """Create a fake archive file named `name` in `directory`; returns its path."""
    path = os.path.join(str(directory), name)
    with open(path, 'wb') as f:
        f.write(content)
    return path


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests and no scheduler.
    """
    app = create_app('testing')
    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app, db):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a source tree to back up.

    Creates:
    - data/a.txt
    - data/notes.log
    - data/nested/c.txt
    - data/tmp/b.txt (excluded by the default job)
    """
    data = tmp_path / 'data'
    (data / 'nested').mkdir(parents=True)
    (data / 'tmp').mkdir()

    (data / 'a.txt').write_text('Test content A')
    (data / 'notes.log').write_text('Test log content')
    (data / 'nested' / 'c.txt').write_text('Nested test content')
    (data / 'tmp' / 'b.txt').write_text('Temporary content')

    return data


@pytest.fixture
def destination(tmp_path):
    """Empty backup destination directory."""
    dest = tmp_path / 'backups'
    dest.mkdir()
    return dest


@pytest.fixture
def populated_destination(destination):
    """
    Destination holding three daily archives plus files the catalog must ignore.
    """
    for name in (
        '2025-01-01_00-00-00_backup.tar.gz',
        '2025-01-02_00-00-00_backup.tar.gz',
        '2025-01-03_00-00-00_backup.tar.gz',
        'backup.tar.gz',
        'backup.log',
    ):
        make_archive(destination, name)
    (destination / 'subdir').mkdir()
    make_archive(destination / 'subdir', '2024-01-01_00-00-00_backup.tar.gz')
    return destination


@pytest.fixture(scope='function')
def backup_job(db, source_tree, destination):
    """
    Create a backup job over the source tree, writing to the destination.
    """
    job = BackupJob(
        name='test_backup',
        description='Test backup job',
        enabled=True,
        destination=str(destination),
        paths_config=json.dumps({
            'include': [str(source_tree)],
            'exclude': [str(source_tree / 'tmp')]
        }),
        compression_format='tar.gz',
        keep_last=2,
        schedule_cron='0 2 * * *'  # Daily at 2 AM
    )
    db.session.add(job)
    db.session.commit()
    return job


@pytest.fixture(scope='function')
def backup_history(db, backup_job):
    """
    Create a backup history record for testing.
    """
    history = BackupHistory(
        job_id=backup_job.id,
        status='success',
        started_at=datetime.utcnow(),
        completed_at=datetime.utcnow(),
        archive_path=os.path.join(backup_job.destination, '2024-01-15_12-00-00_backup.tar.gz'),
        file_size_bytes=1024000,  # 1MB
        files_archived=3,
        kept_count=1,
        deleted_count=0,
        summary='3 file(s) archived, 1 kept, 0 deleted, 0 warning(s)',
        logs='[2024-01-15 12:00:00 UTC] Starting backup job: test_backup\n'
             '[2024-01-15 12:00:05 UTC] Backup completed successfully'
    )
    db.session.add(history)
    db.session.commit()
    return history


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('gfsbackup.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
