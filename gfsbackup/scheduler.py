"""
APScheduler configuration and job scheduling for gfsbackup.

Manages:
- Scheduled backup jobs (based on cron expressions)
- Daily retention policy enforcement (prune-only pass)
- Manual job triggers

Backup runs and the retention pass share a single worker thread, so at most
one of them reads or prunes a destination at any time. Runs that come due
while another is executing wait for the worker.
"""

import logging
from datetime import datetime, timedelta, timezone
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.jobstores.base import JobLookupError
from apscheduler.executors.pool import ThreadPoolExecutor
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from gfsbackup import db
from gfsbackup.models import BackupJob
from gfsbackup.backup.executor import execute_backup_job
from gfsbackup.backup.retention import enforce_retention_policies


logger = logging.getLogger(__name__)

RETENTION_JOB_ID = 'retention_cleanup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def _count_jobs_in_database() -> int:
    """
    Count jobs in APScheduler's persistent job store.

    Used to detect scheduler health when the in-memory scheduler object is
    not available (e.g., in Flask's reloader parent process).

    Returns:
        Number of jobs in database, or 0 if the job table is missing
    """
    try:
        result = db.session.execute(
            text("SELECT COUNT(*) FROM apscheduler_jobs")
        ).scalar()
        return result or 0
    except SQLAlchemyError:
        # Job store table not created yet
        db.session.rollback()
        return 0


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    # Configure job stores and executors
    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    # One worker: backups and the prune pass never overlap on a destination
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': None  # Queued runs wait for the worker however late
    }

    timezone_name = app.config.get('SCHEDULER_TIMEZONE', 'UTC')

    # Create scheduler
    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone_name
    )

    # Add retention policy job (runs daily at 2 AM UTC by default)
    scheduler.add_job(
        func=_enforce_retention_wrapper,
        trigger=CronTrigger.from_crontab(app.config.get('RETENTION_CRON', '0 2 * * *'), timezone=timezone_name),
        id=RETENTION_JOB_ID,
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started successfully (state={scheduler.state}, running={scheduler.running})")

    # Log currently scheduled jobs
    jobs = scheduler.get_jobs()
    if jobs:
        logger.info(f"Loaded {len(jobs)} scheduled jobs:")
        for job in jobs:
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info("No scheduled jobs loaded")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")
    scheduler = None


def sync_backup_jobs():
    """
    Synchronize backup jobs from database to scheduler.

    This function should be called:
    - After app startup
    - After creating/updating/deleting backup jobs
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    # Clean up old manual jobs (one-time jobs from previous "Run Now" requests)
    for job in scheduler.get_jobs():
        if job.id.startswith('manual_'):
            try:
                scheduler.remove_job(job.id)
                logger.info(f"Cleaned up old manual job: {job.id}")
            except JobLookupError:
                pass

    # Get current scheduled job IDs
    scheduled_job_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith('backup_')}

    # Process each backup job
    for backup_job in BackupJob.query.all():
        job_id = f"backup_{backup_job.id}"

        if backup_job.enabled and backup_job.schedule_cron:
            # Job should be scheduled
            if job_id in scheduled_job_ids:
                _update_scheduled_job(backup_job)
                scheduled_job_ids.remove(job_id)
            else:
                _add_scheduled_job(backup_job)
        elif job_id in scheduled_job_ids:
            # Disabled or no schedule
            _remove_scheduled_job(backup_job.id)
            scheduled_job_ids.remove(job_id)

    # Remove any leftover scheduled jobs that don't exist in database
    for leftover_id in scheduled_job_ids:
        try:
            scheduler.remove_job(leftover_id)
            logger.info(f"Removed orphaned scheduled job: {leftover_id}")
        except JobLookupError:
            pass


def _add_scheduled_job(backup_job: BackupJob):
    """
    Add a backup job to the scheduler.

    Args:
        backup_job: BackupJob instance
    """
    job_id = f"backup_{backup_job.id}"

    try:
        trigger = CronTrigger.from_crontab(backup_job.schedule_cron, timezone='UTC')
    except ValueError as e:
        logger.error(f"Failed to schedule backup job {backup_job.name}: {e}")
        return

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[backup_job.id],
        trigger=trigger,
        id=job_id,
        name=f"Backup: {backup_job.name}",
        replace_existing=True
    )
    logger.info(f"Scheduled backup job: {backup_job.name} ({backup_job.schedule_cron})")


def _update_scheduled_job(backup_job: BackupJob):
    """
    Update a scheduled backup job.

    Args:
        backup_job: BackupJob instance
    """
    job_id = f"backup_{backup_job.id}"

    job = scheduler.get_job(job_id)
    if not job:
        return

    try:
        new_trigger = CronTrigger.from_crontab(backup_job.schedule_cron, timezone='UTC')
    except ValueError as e:
        logger.error(f"Failed to update backup job {backup_job.name}: {e}")
        return

    job.reschedule(trigger=new_trigger)
    job.modify(name=f"Backup: {backup_job.name}")
    logger.info(f"Updated scheduled backup job: {backup_job.name}")


def _remove_scheduled_job(backup_job_id: int):
    """
    Remove a backup job from the scheduler.

    Args:
        backup_job_id: BackupJob ID
    """
    job_id = f"backup_{backup_job_id}"

    try:
        scheduler.remove_job(job_id)
        logger.info(f"Removed scheduled backup job ID: {backup_job_id}")
    except JobLookupError as e:
        logger.warning(f"Failed to remove backup job {backup_job_id}: {e}")


def _execute_backup_wrapper(job_id: int, allow_disabled: bool = False):
    """
    Wrapper function for executing backup jobs in scheduler context.

    Runs inside the stored Flask app context so the database session is
    available to the worker thread.

    Args:
        job_id: BackupJob ID to execute
        allow_disabled: If True, allow execution of disabled jobs (for manual triggers)
    """
    with flask_app.app_context():
        logger.info(f"Scheduler executing backup job ID: {job_id} (allow_disabled={allow_disabled})")
        try:
            history = execute_backup_job(job_id, allow_disabled=allow_disabled)
        except ValueError as e:
            logger.error(f"Scheduler backup job {job_id} skipped: {e}")
            return
        logger.info(f"Backup job {job_id} completed with status: {history.status}")


def _enforce_retention_wrapper():
    """Run the daily prune pass inside the Flask app context."""
    with flask_app.app_context():
        summary = enforce_retention_policies()
        logger.info(
            f"Retention cleanup finished: {summary['jobs_processed']} job(s), "
            f"{summary['deleted']} deleted, {summary['failed']} failed"
        )


def trigger_backup_now(job_id: int):
    """
    Manually trigger a backup job immediately.

    Args:
        job_id: BackupJob ID to execute

    Raises:
        RuntimeError: If the scheduler is not initialized
        ValueError: If job not found
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    # Verify job exists
    backup_job = db.session.get(BackupJob, job_id)
    if not backup_job:
        raise ValueError(f"Backup job not found: {job_id}")

    # One-time job, 1 second out so the request can commit first
    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[job_id, True],  # True = allow_disabled for manual triggers
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{job_id}_{int(now.timestamp())}",
        name=f"Manual: {backup_job.name}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup job: {backup_job.name}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]


def get_next_run(backup_job_id: int) -> str:
    """ISO timestamp of a job's next scheduled run, or None."""
    if scheduler is None:
        return None
    job = scheduler.get_job(f"backup_{backup_job_id}")
    if job is None or job.next_run_time is None:
        return None
    return job.next_run_time.isoformat()


def is_scheduler_running() -> bool:
    """
    Check if scheduler is running.

    Falls back to the job store database when the in-memory scheduler lives
    in another process (development reloader).

    Returns:
        True if scheduler is running or has scheduled jobs, False otherwise
    """
    if scheduler is not None and scheduler.running:
        return True

    return _count_jobs_in_database() > 0
