"""
Backup history routes - View and manage backup execution history.
"""

from flask import Blueprint, jsonify, request
from datetime import datetime, timedelta

from gfsbackup import db
from gfsbackup.models import BackupHistory


bp = Blueprint('history', __name__, url_prefix='/api/history')

VALID_STATUSES = ['running', 'success', 'warning', 'failed']


def _history_to_dict(record: BackupHistory) -> dict:
    return {
        'id': record.id,
        'job_id': record.job_id,
        'job_name': record.job.name,
        'status': record.status,
        'dry_run': record.dry_run,
        'started_at': record.started_at.isoformat(),
        'completed_at': record.completed_at.isoformat() if record.completed_at else None,
        'archive_path': record.archive_path,
        'archive_pruned': record.archive_pruned,
        'file_size_bytes': record.file_size_bytes,
        'file_size_mb': round(record.file_size_bytes / 1024 / 1024, 2) if record.file_size_bytes else None,
        'files_archived': record.files_archived,
        'kept_count': record.kept_count,
        'deleted_count': record.deleted_count,
        'warning_count': record.warning_count,
        'summary': record.summary,
        'error_message': record.error_message,
    }


@bp.route('/', methods=['GET'])
def list_history():
    """
    Get backup history with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/warning/failed)
        - job_id: Filter by job ID
        - days: Only show backups from last N days
        - dry_run: 'true' or 'false' to filter dry runs
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with history records and metadata
    """
    # Parse query parameters
    status_filter = request.args.get('status')
    job_id_filter = request.args.get('job_id', type=int)
    days_filter = request.args.get('days', type=int)
    dry_run_filter = request.args.get('dry_run')
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if offset < 0:
        offset = 0

    # Build query
    query = BackupHistory.query

    # Apply filters
    if status_filter:
        if status_filter not in VALID_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupHistory.status == status_filter)

    if job_id_filter:
        query = query.filter(BackupHistory.job_id == job_id_filter)

    if days_filter and days_filter > 0:
        cutoff_date = datetime.utcnow() - timedelta(days=days_filter)
        query = query.filter(BackupHistory.started_at >= cutoff_date)

    if dry_run_filter in ('true', 'false'):
        query = query.filter(BackupHistory.dry_run == (dry_run_filter == 'true'))

    # Get total count before pagination
    total_count = query.count()

    # Apply pagination and ordering
    history_records = query.order_by(
        BackupHistory.started_at.desc()
    ).limit(limit).offset(offset).all()

    history_data = []
    for record in history_records:
        data = _history_to_dict(record)
        data['has_logs'] = bool(record.logs)
        history_data.append(data)

    return jsonify({
        'records': history_data,
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:history_id>', methods=['GET'])
def get_history_detail(history_id):
    """
    Get detailed information for a specific backup history record.

    Returns:
        JSON with full history record including logs
    """
    record = db.get_or_404(BackupHistory, history_id)

    # Calculate duration if completed
    duration_seconds = None
    if record.completed_at:
        duration = record.completed_at - record.started_at
        duration_seconds = int(duration.total_seconds())

    data = _history_to_dict(record)
    data['duration_seconds'] = duration_seconds
    data['logs'] = record.logs
    return jsonify(data)


@bp.route('/<int:history_id>/logs', methods=['GET'])
def get_history_logs(history_id):
    """
    Get logs for a specific backup history record.

    Returns:
        JSON with logs
    """
    record = db.get_or_404(BackupHistory, history_id)

    return jsonify({
        'id': record.id,
        'job_name': record.job.name,
        'status': record.status,
        'logs': record.logs or 'No logs available'
    })


@bp.route('/summary', methods=['GET'])
def get_history_summary():
    """
    Get summary statistics for backup history.

    Dry runs are not counted.

    Query params:
        - days: Calculate summary for last N days (default: 30)

    Returns:
        JSON with summary statistics
    """
    days = request.args.get('days', 30, type=int)
    if days < 1:
        days = 30
    if days > 365:
        days = 365

    cutoff_date = datetime.utcnow() - timedelta(days=days)

    # Query for real runs within time range
    query = BackupHistory.query.filter(
        BackupHistory.started_at >= cutoff_date,
        BackupHistory.dry_run.is_(False)
    )

    total = query.count()
    running = query.filter(BackupHistory.status == 'running').count()
    success = query.filter(BackupHistory.status == 'success').count()
    warning = query.filter(BackupHistory.status == 'warning').count()
    failed = query.filter(BackupHistory.status == 'failed').count()

    # Runs with warnings still produced an archive
    completed = success + warning + failed
    success_rate = round(((success + warning) / completed * 100) if completed > 0 else 0, 1)

    # Get most recent backup
    recent = BackupHistory.query.filter(
        BackupHistory.dry_run.is_(False)
    ).order_by(BackupHistory.started_at.desc()).first()

    recent_info = None
    if recent:
        recent_info = {
            'job_name': recent.job.name,
            'status': recent.status,
            'started_at': recent.started_at.isoformat()
        }

    return jsonify({
        'days': days,
        'total_backups': total,
        'running': running,
        'successful': success,
        'with_warnings': warning,
        'failed': failed,
        'success_rate': success_rate,
        'most_recent': recent_info
    })


@bp.route('/cleanup', methods=['POST'])
def cleanup_old_history():
    """
    Delete old backup history records. Archives on disk are not touched.

    Request body:
        - days: Delete records older than N days (required, at least 30)

    Returns:
        JSON with number of records deleted
    """
    data = request.get_json(silent=True) or {}

    days = data.get('days')
    if not days:
        return jsonify({'error': 'days parameter is required'}), 400

    if not isinstance(days, int) or days < 30:
        return jsonify({'error': 'Cannot delete records newer than 30 days'}), 400

    cutoff_date = datetime.utcnow() - timedelta(days=days)

    # Find old records
    old_records = BackupHistory.query.filter(
        BackupHistory.started_at < cutoff_date
    ).all()

    count = len(old_records)

    # Delete records
    for record in old_records:
        db.session.delete(record)

    db.session.commit()

    return jsonify({
        'message': f'Deleted {count} old backup history records',
        'deleted_count': count
    })
