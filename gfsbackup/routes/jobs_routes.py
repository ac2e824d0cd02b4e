"""
Backup jobs routes - CRUD operations, job execution and archive listing.
"""

import os
import json
from flask import Blueprint, current_app, jsonify, request
from apscheduler.triggers.cron import CronTrigger

from gfsbackup import db
from gfsbackup import scheduler as job_scheduler
from gfsbackup.models import BackupJob, BackupHistory, RETENTION_FIELDS
from gfsbackup.backup.compression import FORMATS
from gfsbackup.backup.executor import execute_backup_job
from gfsbackup.backup.retention import tiers_from_counts
from gfsbackup.backup.selection import ConfigurationError, validate_criteria_settings
from gfsbackup.backup.storage import BackupCatalog, StorageError


bp = Blueprint('jobs', __name__, url_prefix='/api/jobs')

VALID_FORMATS = list(FORMATS.keys())
CRITERIA_FIELDS = ('smaller_than_mb', 'larger_than_mb', 'newer_than', 'older_than')


def _sync_scheduler():
    """Push job changes to the scheduler when this process runs one."""
    if job_scheduler.scheduler is not None:
        job_scheduler.sync_backup_jobs()


def _job_to_dict(job: BackupJob, detail: bool = False) -> dict:
    data = {
        'id': job.id,
        'name': job.name,
        'description': job.description,
        'enabled': job.enabled,
        'destination': job.destination,
        'compression_format': job.compression_format,
        'schedule_cron': job.schedule_cron,
        'retention': job.retention_counts(),
        'created_at': job.created_at.isoformat(),
        'updated_at': job.updated_at.isoformat()
    }
    if detail:
        data['paths_config'] = job.paths()
        for field in CRITERIA_FIELDS:
            data[field] = getattr(job, field)
        data['next_run'] = job_scheduler.get_next_run(job.id)
    return data


def _parse_paths_config(value) -> str:
    """
    Validate a paths config object and return it as JSON.

    Raises:
        ConfigurationError: If include/exclude are not lists of strings
    """
    if not isinstance(value, dict):
        raise ConfigurationError('paths_config must be an object with include/exclude lists')

    include = value.get('include') or []
    exclude = value.get('exclude') or []
    for key, paths in (('include', include), ('exclude', exclude)):
        if not isinstance(paths, list) or not all(isinstance(p, str) and p.strip() for p in paths):
            raise ConfigurationError(f'paths_config.{key} must be a list of non-empty paths')

    if not include:
        raise ConfigurationError('At least one include path is required')

    return json.dumps({'include': include, 'exclude': exclude})


def _apply_job_fields(job: BackupJob, data: dict):
    """
    Copy request fields onto a job, validating as a whole.

    Raises:
        ConfigurationError: If any field or field combination is invalid
    """
    if 'name' in data:
        if not data['name']:
            raise ConfigurationError('Job name is required')
        job.name = data['name']

    if 'description' in data:
        job.description = data['description']

    if 'enabled' in data:
        job.enabled = bool(data['enabled'])

    if 'destination' in data:
        if not data['destination']:
            raise ConfigurationError('Destination is required')
        job.destination = os.path.expanduser(data['destination'])

    if 'paths_config' in data:
        job.paths_config = _parse_paths_config(data['paths_config'])

    if 'compression_format' in data:
        if data['compression_format'] not in VALID_FORMATS:
            raise ConfigurationError(f'Invalid compression format. Valid options: {VALID_FORMATS}')
        job.compression_format = data['compression_format']

    for field in ('smaller_than_mb', 'larger_than_mb'):
        if field in data:
            value = data[field]
            if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
                raise ConfigurationError(f'{field} must be a number of megabytes')
            setattr(job, field, value)

    for field in ('newer_than', 'older_than'):
        if field in data:
            value = data[field]
            setattr(job, field, None if value is None else str(value).strip())

    retention = data.get('retention') or {}
    if not isinstance(retention, dict):
        raise ConfigurationError('retention must be an object of tier counts, e.g. {"last": 7}')
    for name in RETENTION_FIELDS:
        if name in retention:
            setattr(job, f'keep_{name}', retention[name])

    if 'schedule_cron' in data:
        cron = data['schedule_cron'] or None
        if cron:
            try:
                CronTrigger.from_crontab(cron, timezone='UTC')
            except ValueError as e:
                raise ConfigurationError(f'Invalid cron expression: {e}')
        job.schedule_cron = cron

    # Combined checks, on the resulting job state
    validate_criteria_settings(
        smaller_than=job.smaller_than_mb,
        larger_than=job.larger_than_mb,
        newer_than=job.newer_than,
        older_than=job.older_than
    )
    tiers_from_counts(job.retention_counts())


@bp.route('/', methods=['GET'])
def list_jobs():
    """
    Get list of all backup jobs.

    Returns:
        JSON array of backup jobs
    """
    jobs = BackupJob.query.order_by(BackupJob.created_at.desc()).all()
    return jsonify([_job_to_dict(job) for job in jobs])


@bp.route('/<int:job_id>', methods=['GET'])
def get_job(job_id):
    """
    Get a single backup job by ID.

    Returns:
        JSON with job details including paths and selection criteria
    """
    job = db.get_or_404(BackupJob, job_id)
    return jsonify(_job_to_dict(job, detail=True))


@bp.route('/', methods=['POST'])
def create_job():
    """
    Create a new backup job.

    Request body:
        - name: Job name (required)
        - destination: Directory archives are written to (required)
        - paths_config: {"include": [...], "exclude": [...]} (required)
        - description, enabled, compression_format, schedule_cron (optional)
        - smaller_than_mb / larger_than_mb (optional, mutually exclusive)
        - newer_than / older_than (optional, mutually exclusive)
        - retention: {"last": N, "hourly": N, ...} (optional)

    Returns:
        JSON with created job id
    """
    data = request.get_json(silent=True) or {}

    for field, label in (('name', 'Job name'), ('destination', 'Destination'), ('paths_config', 'Paths configuration')):
        if not data.get(field):
            return jsonify({'error': f'{label} is required'}), 400

    # Check if job name already exists
    if BackupJob.query.filter_by(name=data['name']).first():
        return jsonify({'error': 'Job name already exists'}), 400

    job = BackupJob(enabled=True, compression_format=current_app.config.get('DEFAULT_COMPRESSION', 'tar.gz'))
    try:
        _apply_job_fields(job, data)
    except ConfigurationError as e:
        return jsonify({'error': str(e)}), 400

    db.session.add(job)
    db.session.commit()

    _sync_scheduler()

    return jsonify({
        'id': job.id,
        'message': 'Backup job created successfully'
    }), 201


@bp.route('/<int:job_id>', methods=['PUT'])
def update_job(job_id):
    """
    Update an existing backup job.

    Request body: Same as create_job (all fields optional)

    Returns:
        JSON with success message
    """
    job = db.get_or_404(BackupJob, job_id)
    data = request.get_json(silent=True) or {}

    # Check if new name conflicts with another job
    if data.get('name') and data['name'] != job.name:
        if BackupJob.query.filter_by(name=data['name']).first():
            return jsonify({'error': 'Job name already exists'}), 400

    try:
        _apply_job_fields(job, data)
    except ConfigurationError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400

    db.session.commit()

    _sync_scheduler()

    return jsonify({'message': 'Backup job updated successfully'})


@bp.route('/<int:job_id>', methods=['DELETE'])
def delete_job(job_id):
    """
    Delete a backup job. Archives in its destination are left in place.

    Returns:
        JSON with success message
    """
    job = db.get_or_404(BackupJob, job_id)

    # Delete job (cascade will delete history)
    db.session.delete(job)
    db.session.commit()

    _sync_scheduler()

    return jsonify({'message': 'Backup job deleted successfully'})


@bp.route('/<int:job_id>/toggle', methods=['POST'])
def toggle_job(job_id):
    """
    Toggle a job's enabled status.

    Returns:
        JSON with new enabled status
    """
    job = db.get_or_404(BackupJob, job_id)

    job.enabled = not job.enabled
    db.session.commit()

    _sync_scheduler()

    return jsonify({
        'enabled': job.enabled,
        'message': f"Job {'enabled' if job.enabled else 'disabled'} successfully"
    })


@bp.route('/<int:job_id>/run', methods=['POST'])
def run_job_now(job_id):
    """
    Queue a backup job to run immediately on the scheduler.

    Returns:
        JSON with success message
    """
    job = db.get_or_404(BackupJob, job_id)

    try:
        job_scheduler.trigger_backup_now(job_id)
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({
        'message': f"Backup job '{job.name}' has been queued for immediate execution"
    })


@bp.route('/<int:job_id>/dry-run', methods=['POST'])
def dry_run_job(job_id):
    """
    Run a backup job in dry-run mode and return its report.

    Nothing is written to or deleted from the destination. Runs synchronously.

    Returns:
        JSON with the dry-run history record, summary and logs
    """
    db.get_or_404(BackupJob, job_id)

    history = execute_backup_job(job_id, allow_disabled=True, dry_run=True)

    return jsonify({
        'history_id': history.id,
        'status': history.status,
        'summary': history.summary,
        'files': history.files_archived,
        'kept': history.kept_count,
        'deleted': history.deleted_count,
        'warnings': history.warning_count,
        'error_message': history.error_message,
        'logs': (history.logs or '').splitlines()
    })


@bp.route('/<int:job_id>/archives', methods=['GET'])
def list_archives(job_id):
    """
    List archives currently present in the job's destination.

    Returns:
        JSON with archives (newest first) and unparseable archive names
    """
    job = db.get_or_404(BackupJob, job_id)
    catalog = BackupCatalog(job.destination)

    try:
        archives = catalog.scan()
    except StorageError as e:
        return jsonify({'error': str(e)}), 400

    archives_data = []
    for archive in archives:
        try:
            size = os.path.getsize(archive.path)
        except OSError:
            size = None
        archives_data.append({
            'name': archive.name,
            'path': archive.path,
            'timestamp': archive.timestamp.isoformat(),
            'size_bytes': size
        })

    return jsonify({
        'destination': catalog.destination,
        'archives': archives_data,
        'unparseable': [os.path.basename(p) for p in catalog.unparseable]
    })


@bp.route('/<int:job_id>/history', methods=['GET'])
def get_job_history(job_id):
    """
    Get backup history for a specific job.

    Query params:
        - limit: Max number of records (default: 50)

    Returns:
        JSON array of backup history records
    """
    db.get_or_404(BackupJob, job_id)

    limit = request.args.get('limit', 50, type=int)
    if limit > 200:
        limit = 200

    history = BackupHistory.query.filter_by(job_id=job_id).order_by(
        BackupHistory.started_at.desc()
    ).limit(limit).all()

    history_data = []
    for record in history:
        history_data.append({
            'id': record.id,
            'status': record.status,
            'dry_run': record.dry_run,
            'started_at': record.started_at.isoformat(),
            'completed_at': record.completed_at.isoformat() if record.completed_at else None,
            'file_size_mb': round(record.file_size_bytes / 1024 / 1024, 2) if record.file_size_bytes else None,
            'archive_path': record.archive_path,
            'archive_pruned': record.archive_pruned,
            'summary': record.summary,
            'error_message': record.error_message
        })

    return jsonify(history_data)
