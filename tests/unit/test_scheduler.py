"""
Unit tests for scheduler (gfsbackup/scheduler.py).

Tests APScheduler configuration and job scheduling.
"""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from gfsbackup import scheduler as scheduler_module


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def teardown_method(self):
        """Clean up after each test."""
        # Reset global scheduler
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    @patch('gfsbackup.scheduler.BackgroundScheduler')
    def test_init_scheduler(self, mock_scheduler_class, app):
        """Test scheduler initialization."""
        mock_scheduler = MagicMock()
        mock_scheduler_class.return_value = mock_scheduler

        result = scheduler_module.init_scheduler(app)

        assert result == mock_scheduler
        assert scheduler_module.scheduler == mock_scheduler
        assert scheduler_module.flask_app == app

        # Verify scheduler was configured correctly
        mock_scheduler_class.assert_called_once()
        call_kwargs = mock_scheduler_class.call_args[1]
        assert 'jobstores' in call_kwargs
        assert 'executors' in call_kwargs
        assert call_kwargs['job_defaults']['max_instances'] == 1
        assert call_kwargs['job_defaults']['coalesce'] is True
        assert call_kwargs['timezone'] == 'UTC'

    @patch('gfsbackup.scheduler.ThreadPoolExecutor')
    @patch('gfsbackup.scheduler.BackgroundScheduler')
    def test_init_scheduler_single_worker(self, mock_scheduler_class, mock_executor_class, app):
        """Backups and the retention pass share one worker thread."""
        mock_scheduler_class.return_value = MagicMock()

        scheduler_module.init_scheduler(app)

        mock_executor_class.assert_called_once_with(max_workers=1)
        call_kwargs = mock_scheduler_class.call_args[1]
        assert call_kwargs['executors'] == {'default': mock_executor_class.return_value}
        assert call_kwargs['job_defaults']['misfire_grace_time'] is None

    @patch('gfsbackup.scheduler.BackgroundScheduler')
    def test_init_scheduler_adds_retention_job(self, mock_scheduler_class, app):
        """The daily prune pass is registered with the configured cron."""
        mock_scheduler = MagicMock()
        mock_scheduler_class.return_value = mock_scheduler

        scheduler_module.init_scheduler(app)

        mock_scheduler.add_job.assert_called_once()
        call_kwargs = mock_scheduler.add_job.call_args[1]
        assert call_kwargs['id'] == scheduler_module.RETENTION_JOB_ID
        assert call_kwargs['func'] == scheduler_module._enforce_retention_wrapper
        assert isinstance(call_kwargs['trigger'], CronTrigger)
        assert call_kwargs['replace_existing'] is True

    @patch('gfsbackup.scheduler.BackgroundScheduler')
    def test_init_scheduler_only_once(self, mock_scheduler_class, app):
        """Test scheduler is only initialized once."""
        mock_scheduler = MagicMock()
        mock_scheduler_class.return_value = mock_scheduler

        # Initialize twice
        result1 = scheduler_module.init_scheduler(app)
        result2 = scheduler_module.init_scheduler(app)

        # Should return same instance
        assert result1 == result2
        # Should only create scheduler once
        mock_scheduler_class.assert_called_once()


class TestSchedulerLifecycle:
    """Test scheduler start/stop operations."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.running = False
        self.mock_scheduler.state = 0
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_start_scheduler(self):
        """Test starting the scheduler."""
        self.mock_scheduler.get_jobs.return_value = []

        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_called_once()

    def test_start_scheduler_logs_loaded_jobs(self, caplog):
        job = MagicMock()
        job.id = 'backup_1'
        job.name = 'Backup: nightly'
        job.next_run_time = datetime(2025, 1, 1, 2, 0, 0)
        self.mock_scheduler.get_jobs.return_value = [job]

        with caplog.at_level('INFO', logger='gfsbackup.scheduler'):
            scheduler_module.start_scheduler()

        assert 'Loaded 1 scheduled jobs:' in caplog.text
        assert 'backup_1: Backup: nightly (next run: 2025-01-01T02:00:00)' in caplog.text

    def test_start_scheduler_not_initialized(self):
        """Test starting scheduler before initialization raises error."""
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.start_scheduler()

    def test_start_scheduler_already_running(self):
        """Test starting scheduler when already running."""
        self.mock_scheduler.running = True

        scheduler_module.start_scheduler()

        # Should not call start again
        self.mock_scheduler.start.assert_not_called()

    def test_stop_scheduler(self):
        """Test stopping the scheduler."""
        self.mock_scheduler.running = True

        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_called_once()
        assert scheduler_module.scheduler is None

    def test_stop_scheduler_not_running(self):
        """Test stopping scheduler when not running."""
        self.mock_scheduler.running = False

        scheduler_module.stop_scheduler()

        # Should not call shutdown
        self.mock_scheduler.shutdown.assert_not_called()


class TestSyncBackupJobs:
    """Test syncing backup jobs with scheduler."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_sync_backup_jobs_not_initialized(self):
        """Test syncing when scheduler not initialized raises error."""
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.sync_backup_jobs()

    @patch('gfsbackup.scheduler._add_scheduled_job')
    def test_sync_backup_jobs_adds_enabled_job(self, mock_add, db, backup_job):
        """Test syncing adds enabled job with schedule."""
        # No existing jobs
        self.mock_scheduler.get_jobs.return_value = []

        scheduler_module.sync_backup_jobs()

        # Should add the job
        mock_add.assert_called_once_with(backup_job)

    @patch('gfsbackup.scheduler._add_scheduled_job')
    def test_sync_backup_jobs_skips_unscheduled_job(self, mock_add, db, backup_job):
        """Jobs without a cron expression only run manually."""
        backup_job.schedule_cron = None
        db.session.commit()
        self.mock_scheduler.get_jobs.return_value = []

        scheduler_module.sync_backup_jobs()

        mock_add.assert_not_called()

    @patch('gfsbackup.scheduler._update_scheduled_job')
    def test_sync_backup_jobs_updates_existing_job(self, mock_update, db, backup_job):
        """Test syncing updates existing scheduled job."""
        # Mock existing job
        mock_job = MagicMock()
        mock_job.id = f'backup_{backup_job.id}'
        self.mock_scheduler.get_jobs.return_value = [mock_job]

        scheduler_module.sync_backup_jobs()

        # Should update the job
        mock_update.assert_called_once_with(backup_job)

    @patch('gfsbackup.scheduler._remove_scheduled_job')
    def test_sync_backup_jobs_removes_disabled_job(self, mock_remove, db, backup_job):
        """Test syncing removes disabled job."""
        backup_job.enabled = False
        db.session.commit()

        # Mock existing scheduled job
        mock_job = MagicMock()
        mock_job.id = f'backup_{backup_job.id}'
        self.mock_scheduler.get_jobs.return_value = [mock_job]

        scheduler_module.sync_backup_jobs()

        # Should remove the job
        mock_remove.assert_called_once_with(backup_job.id)

    def test_sync_backup_jobs_removes_orphans(self, db):
        """Scheduled jobs whose BackupJob was deleted are dropped."""
        orphan = MagicMock()
        orphan.id = 'backup_999'
        self.mock_scheduler.get_jobs.return_value = [orphan]

        scheduler_module.sync_backup_jobs()

        self.mock_scheduler.remove_job.assert_called_once_with('backup_999')

    def test_sync_backup_jobs_keeps_retention_job(self, db):
        retention = MagicMock()
        retention.id = scheduler_module.RETENTION_JOB_ID
        self.mock_scheduler.get_jobs.return_value = [retention]

        scheduler_module.sync_backup_jobs()

        self.mock_scheduler.remove_job.assert_not_called()

    def test_sync_backup_jobs_cleans_old_manual_jobs(self, db):
        """Test syncing removes old manual trigger jobs."""
        # Mock manual job
        mock_manual_job = MagicMock()
        mock_manual_job.id = 'manual_123_1234567890'
        self.mock_scheduler.get_jobs.return_value = [mock_manual_job]

        scheduler_module.sync_backup_jobs()

        # Should remove manual job
        self.mock_scheduler.remove_job.assert_called_with('manual_123_1234567890')

    def test_sync_backup_jobs_manual_job_already_gone(self, db):
        mock_manual_job = MagicMock()
        mock_manual_job.id = 'manual_123_1234567890'
        self.mock_scheduler.get_jobs.return_value = [mock_manual_job]
        self.mock_scheduler.remove_job.side_effect = JobLookupError('manual_123_1234567890')

        # Should not raise
        scheduler_module.sync_backup_jobs()


class TestScheduledJobManagement:
    """Test adding/updating/removing scheduled jobs."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None

    def test_add_scheduled_job(self, backup_job):
        """Test adding a scheduled job."""
        scheduler_module._add_scheduled_job(backup_job)

        # Should add job to scheduler
        self.mock_scheduler.add_job.assert_called_once()
        call_args = self.mock_scheduler.add_job.call_args
        assert call_args[1]['id'] == f'backup_{backup_job.id}'
        assert call_args[1]['name'] == f'Backup: {backup_job.name}'
        assert call_args[1]['args'] == [backup_job.id]
        assert isinstance(call_args[1]['trigger'], CronTrigger)

    def test_add_scheduled_job_invalid_cron(self, backup_job):
        """An unparseable cron expression is logged, not scheduled."""
        backup_job.schedule_cron = 'every day'

        scheduler_module._add_scheduled_job(backup_job)

        self.mock_scheduler.add_job.assert_not_called()

    def test_update_scheduled_job(self, backup_job):
        """Test updating a scheduled job."""
        backup_job.schedule_cron = '0 3 * * *'

        # Mock existing job
        mock_job = MagicMock()
        self.mock_scheduler.get_job.return_value = mock_job

        scheduler_module._update_scheduled_job(backup_job)

        # Should reschedule job
        mock_job.reschedule.assert_called_once()
        mock_job.modify.assert_called_once_with(name=f'Backup: {backup_job.name}')

    def test_update_scheduled_job_missing(self, backup_job):
        self.mock_scheduler.get_job.return_value = None

        # Should not raise
        scheduler_module._update_scheduled_job(backup_job)

    def test_remove_scheduled_job(self):
        """Test removing a scheduled job."""
        job_id = 123

        scheduler_module._remove_scheduled_job(job_id)

        # Should remove job from scheduler
        self.mock_scheduler.remove_job.assert_called_once_with('backup_123')

    def test_remove_scheduled_job_not_found(self):
        self.mock_scheduler.remove_job.side_effect = JobLookupError('backup_123')

        # Should not raise
        scheduler_module._remove_scheduled_job(123)


class TestManualTrigger:
    """Test manual backup job triggering."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_trigger_backup_now(self, db, backup_job):
        """Test manually triggering a backup job."""
        scheduler_module.trigger_backup_now(backup_job.id)

        # Should add one-time job
        self.mock_scheduler.add_job.assert_called_once()
        call_args = self.mock_scheduler.add_job.call_args
        assert call_args[1]['args'] == [backup_job.id, True]
        assert call_args[1]['id'].startswith(f'manual_{backup_job.id}_')
        assert isinstance(call_args[1]['trigger'], DateTrigger)

    def test_trigger_backup_now_not_initialized(self, db, backup_job):
        """Test triggering backup when scheduler not initialized."""
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.trigger_backup_now(backup_job.id)

    def test_trigger_backup_now_job_not_found(self, db):
        """Test triggering non-existent backup job."""
        with pytest.raises(ValueError, match="not found"):
            scheduler_module.trigger_backup_now(99999)


class TestSchedulerQueries:
    """Test scheduler query functions."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None

    def test_get_scheduled_jobs(self):
        """Test getting list of scheduled jobs."""
        # Mock jobs
        mock_job1 = MagicMock()
        mock_job1.id = 'backup_1'
        mock_job1.name = 'Test Job 1'
        mock_job1.next_run_time = datetime(2024, 1, 1, 2, 0, 0)
        mock_job1.trigger = 'cron'

        mock_job2 = MagicMock()
        mock_job2.id = 'backup_2'
        mock_job2.name = 'Test Job 2'
        mock_job2.next_run_time = None
        mock_job2.trigger = 'date'

        self.mock_scheduler.get_jobs.return_value = [mock_job1, mock_job2]

        result = scheduler_module.get_scheduled_jobs()

        assert len(result) == 2
        assert result[0]['id'] == 'backup_1'
        assert result[0]['name'] == 'Test Job 1'
        assert result[0]['next_run'] == '2024-01-01T02:00:00'
        assert result[1]['next_run'] is None

    def test_get_scheduled_jobs_not_initialized(self):
        """Test getting jobs when scheduler not initialized."""
        scheduler_module.scheduler = None

        result = scheduler_module.get_scheduled_jobs()

        assert result == []

    def test_get_next_run(self):
        mock_job = MagicMock()
        mock_job.next_run_time = datetime(2024, 1, 1, 2, 0, 0)
        self.mock_scheduler.get_job.return_value = mock_job

        assert scheduler_module.get_next_run(7) == '2024-01-01T02:00:00'
        self.mock_scheduler.get_job.assert_called_once_with('backup_7')

    def test_get_next_run_unscheduled(self):
        self.mock_scheduler.get_job.return_value = None

        assert scheduler_module.get_next_run(7) is None

    def test_get_next_run_not_initialized(self):
        scheduler_module.scheduler = None

        assert scheduler_module.get_next_run(7) is None

    def test_is_scheduler_running_true(self):
        """Test scheduler running check returns True."""
        self.mock_scheduler.running = True

        assert scheduler_module.is_scheduler_running() is True

    @patch('gfsbackup.scheduler._count_jobs_in_database', return_value=0)
    def test_is_scheduler_running_false(self, mock_count):
        """Test scheduler running check returns False."""
        self.mock_scheduler.running = False

        assert scheduler_module.is_scheduler_running() is False


class TestExecuteBackupWrapper:
    """Test backup execution wrapper."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_app = MagicMock()
        scheduler_module.flask_app = self.mock_app

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.flask_app = None

    @patch('gfsbackup.scheduler.execute_backup_job')
    def test_execute_backup_wrapper_success(self, mock_execute):
        """Test wrapper executes backup successfully."""
        mock_history = MagicMock()
        mock_history.status = 'success'
        mock_execute.return_value = mock_history

        scheduler_module._execute_backup_wrapper(123)

        # Should execute with app context
        self.mock_app.app_context.assert_called_once()
        mock_execute.assert_called_once_with(123, allow_disabled=False)

    @patch('gfsbackup.scheduler.execute_backup_job')
    def test_execute_backup_wrapper_with_allow_disabled(self, mock_execute):
        """Test wrapper with allow_disabled parameter."""
        mock_history = MagicMock()
        mock_execute.return_value = mock_history

        scheduler_module._execute_backup_wrapper(123, allow_disabled=True)

        mock_execute.assert_called_once_with(123, allow_disabled=True)

    @patch('gfsbackup.scheduler.execute_backup_job')
    def test_execute_backup_wrapper_skips_missing_job(self, mock_execute):
        """A job deleted after scheduling is skipped."""
        mock_execute.side_effect = ValueError("Backup job not found: 123")

        # Should not raise exception
        scheduler_module._execute_backup_wrapper(123)

    @patch('gfsbackup.scheduler.enforce_retention_policies')
    def test_enforce_retention_wrapper(self, mock_enforce):
        mock_enforce.return_value = {'jobs_processed': 2, 'deleted': 3, 'failed': 0, 'errors': []}

        scheduler_module._enforce_retention_wrapper()

        self.mock_app.app_context.assert_called_once()
        mock_enforce.assert_called_once_with()


class TestSchedulerStatusDatabaseFallback:
    """Test scheduler status detection with database fallback."""

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None

    @patch('gfsbackup.scheduler._count_jobs_in_database')
    def test_is_running_with_in_memory_scheduler(self, mock_count):
        """Test status detection when in-memory scheduler is running."""
        mock_scheduler = MagicMock()
        mock_scheduler.running = True
        scheduler_module.scheduler = mock_scheduler
        mock_count.return_value = 2

        result = scheduler_module.is_scheduler_running()

        # Should use in-memory check first, no database query needed
        assert result is True
        mock_count.assert_not_called()

    @patch('gfsbackup.scheduler._count_jobs_in_database')
    def test_is_running_with_jobs_in_database(self, mock_count):
        """Test status detection when scheduler is None but jobs exist in DB."""
        scheduler_module.scheduler = None
        mock_count.return_value = 2

        result = scheduler_module.is_scheduler_running()

        assert result is True
        mock_count.assert_called_once()

    @patch('gfsbackup.scheduler._count_jobs_in_database')
    def test_is_running_no_jobs_in_database(self, mock_count):
        """Test status detection when scheduler is None and no jobs in DB."""
        scheduler_module.scheduler = None
        mock_count.return_value = 0

        result = scheduler_module.is_scheduler_running()

        assert result is False
        mock_count.assert_called_once()

    def test_count_jobs_without_job_table(self, db):
        """The job store table does not exist until a scheduler has run."""
        assert scheduler_module._count_jobs_in_database() == 0
