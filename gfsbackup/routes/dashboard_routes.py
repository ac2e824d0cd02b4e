"""
Dashboard routes - Overview and statistics endpoints.
"""

from flask import Blueprint, jsonify
from datetime import datetime, timedelta
from sqlalchemy import func

from gfsbackup import db
from gfsbackup.models import BackupJob, BackupHistory
from gfsbackup.scheduler import get_scheduled_jobs, is_scheduler_running


bp = Blueprint('dashboard', __name__, url_prefix='/api/dashboard')


@bp.route('/overview', methods=['GET'])
def get_overview():
    """
    Get dashboard overview statistics.

    Returns:
        JSON with overview stats:
        - total_jobs: Total number of backup jobs
        - active_jobs: Number of enabled backup jobs
        - last_backup: Most recent real (non dry-run) backup
        - scheduler_status: Scheduler running status
    """
    total_jobs = BackupJob.query.count()
    active_jobs = BackupJob.query.filter_by(enabled=True).count()

    last_backup = BackupHistory.query.filter(
        BackupHistory.dry_run.is_(False),
        BackupHistory.completed_at.isnot(None)
    ).order_by(BackupHistory.completed_at.desc()).first()

    last_backup_info = None
    if last_backup:
        last_backup_info = {
            'job_name': last_backup.job.name,
            'status': last_backup.status,
            'completed_at': last_backup.completed_at.isoformat(),
            'archive_path': last_backup.archive_path,
            'summary': last_backup.summary
        }

    return jsonify({
        'total_jobs': total_jobs,
        'active_jobs': active_jobs,
        'last_backup': last_backup_info,
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped'
    })


@bp.route('/statistics', methods=['GET'])
def get_statistics():
    """
    Get backup statistics over real runs.

    Returns:
        JSON with statistics:
        - total_backups, successful_backups, warning_backups, failed_backups
        - total_size_gb: Size of archives still present in destinations
        - archives_pruned: Archives since deleted by retention
        - backups_last_7_days / backups_last_30_days
    """
    real_runs = BackupHistory.query.filter(BackupHistory.dry_run.is_(False))

    total_backups = real_runs.count()
    successful_backups = real_runs.filter(BackupHistory.status == 'success').count()
    warning_backups = real_runs.filter(BackupHistory.status == 'warning').count()
    failed_backups = real_runs.filter(BackupHistory.status == 'failed').count()
    archives_pruned = real_runs.filter(BackupHistory.archive_pruned.is_(True)).count()

    # Pruned archives no longer take up space
    total_size_bytes = db.session.query(
        func.sum(BackupHistory.file_size_bytes)
    ).filter(
        BackupHistory.status.in_(['success', 'warning']),
        BackupHistory.dry_run.is_(False),
        BackupHistory.archive_pruned.is_(False)
    ).scalar() or 0

    now = datetime.utcnow()
    backups_last_7_days = real_runs.filter(
        BackupHistory.started_at >= now - timedelta(days=7)
    ).count()
    backups_last_30_days = real_runs.filter(
        BackupHistory.started_at >= now - timedelta(days=30)
    ).count()

    return jsonify({
        'total_backups': total_backups,
        'successful_backups': successful_backups,
        'warning_backups': warning_backups,
        'failed_backups': failed_backups,
        'archives_pruned': archives_pruned,
        'total_size_gb': round(total_size_bytes / 1024 / 1024 / 1024, 2),
        'backups_last_7_days': backups_last_7_days,
        'backups_last_30_days': backups_last_30_days
    })


@bp.route('/scheduled-jobs', methods=['GET'])
def get_scheduled_jobs_info():
    """
    Get information about currently scheduled jobs.

    Returns:
        JSON array of scheduled jobs with next run times
    """
    return jsonify(get_scheduled_jobs())
