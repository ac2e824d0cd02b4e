import json
from datetime import datetime
from gfsbackup import db


RETENTION_FIELDS = ('last', 'hourly', 'daily', 'weekly', 'monthly', 'yearly')


class BackupJob(db.Model):
    """Backup job configuration"""
    __tablename__ = 'backup_jobs'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    destination = db.Column(db.String(1024), nullable=False)  # Directory archives are written to
    paths_config = db.Column(db.Text, nullable=False)  # JSON: {"include": [...], "exclude": [...]}
    compression_format = db.Column(db.String(20), nullable=False, default='tar.gz')  # tar.gz, tar.bz2, tar.xz, none
    smaller_than_mb = db.Column(db.Float)
    larger_than_mb = db.Column(db.Float)
    newer_than = db.Column(db.String(32))  # 'YYYY-MM-DD HH:MM', days, or 'last'
    older_than = db.Column(db.String(32))  # 'YYYY-MM-DD HH:MM' or days
    keep_last = db.Column(db.Integer)
    keep_hourly = db.Column(db.Integer)
    keep_daily = db.Column(db.Integer)
    keep_weekly = db.Column(db.Integer)
    keep_monthly = db.Column(db.Integer)
    keep_yearly = db.Column(db.Integer)
    schedule_cron = db.Column(db.String(100))  # Cron expression
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationship
    history = db.relationship('BackupHistory', back_populates='job', cascade='all, delete-orphan', lazy='dynamic')

    def paths(self) -> dict:
        """Parsed paths config with 'include' and 'exclude' lists."""
        config = json.loads(self.paths_config or '{}')
        return {
            'include': list(config.get('include') or []),
            'exclude': list(config.get('exclude') or []),
        }

    def retention_counts(self) -> dict:
        return {name: getattr(self, f'keep_{name}') for name in RETENTION_FIELDS}

    def retention_tiers(self) -> list:
        from gfsbackup.backup.retention import tiers_from_counts
        return tiers_from_counts(self.retention_counts())

    def __repr__(self):
        return f'<BackupJob {self.name} destination={self.destination} enabled={self.enabled}>'


class BackupHistory(db.Model):
    """Backup execution history and logs"""
    __tablename__ = 'backup_history'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('backup_jobs.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # running, success, warning, failed
    dry_run = db.Column(db.Boolean, default=False, nullable=False)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    archive_path = db.Column(db.String(1024))
    archive_pruned = db.Column(db.Boolean, default=False, nullable=False)  # Deleted later by retention
    file_size_bytes = db.Column(db.BigInteger)
    files_archived = db.Column(db.Integer)
    kept_count = db.Column(db.Integer)
    deleted_count = db.Column(db.Integer)
    warning_count = db.Column(db.Integer, default=0, nullable=False)
    error_message = db.Column(db.Text)
    summary = db.Column(db.Text)  # Human readable one-line summary
    logs = db.Column(db.Text)  # Detailed execution logs

    # Relationship
    job = db.relationship('BackupJob', back_populates='history')

    def __repr__(self):
        return f'<BackupHistory job_id={self.job_id} status={self.status} dry_run={self.dry_run}>'
