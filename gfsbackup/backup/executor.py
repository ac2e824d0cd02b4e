"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Create BackupHistory record (status: running)
2. Validate destination and job configuration
3. Build the file manifest (include/exclude rules + size/age criteria)
4. Create the archive in a temporary directory and move it into place
5. Apply retention to the destination
6. Cleanup temporary files
7. Update BackupHistory (status: success/warning/failed)

In dry-run mode steps 4 and 5 only report: nothing in the destination is
created or deleted, and retention is simulated with the archive that would
have been written.
"""

import os
import shutil
import tempfile
import logging
from datetime import datetime

from gfsbackup import db
from gfsbackup.models import BackupJob, BackupHistory
from .selection import ConfigurationError, NEWER_THAN_LAST_BACKUP, build_criteria
from .sources import PathMatcher, PathRule, RuleKind, FileListBuilder
from .compression import ArchiveWriter, archive_extension, generate_archive_filename, format_size
from .storage import BackupArchive, BackupCatalog, StorageError, validate_destination
from .retention import apply_retention, mark_pruned


logger = logging.getLogger(__name__)

DRY_RUN_SAMPLE_SIZE = 10


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a job.
    """

    def __init__(self, job: BackupJob, dry_run: bool = False):
        """
        Initialize backup executor.

        Args:
            job: BackupJob instance to execute
            dry_run: Report what would happen without touching the destination
        """
        self.job = job
        self.dry_run = dry_run
        self.history_record = None
        self.started_at = None
        self.temp_dir = None
        self.archive_path = None
        self.manifest = []
        self.read_warnings = []
        self.retention_report = None
        self.logs = []
        self._log_flush_counter = 0

    def execute(self) -> BackupHistory:
        """
        Execute the backup job.

        Returns:
            BackupHistory record with execution results. Fatal errors are
            recorded on the record (status 'failed'), not raised.
        """
        # Archive names use local time, truncated to whole seconds
        self.started_at = datetime.now().replace(microsecond=0)

        # Create history record
        self.history_record = BackupHistory(
            job_id=self.job.id,
            status='running',
            dry_run=self.dry_run,
            started_at=datetime.utcnow()
        )
        db.session.add(self.history_record)
        db.session.commit()

        mode = " (dry run)" if self.dry_run else ""
        self._log(f"Starting backup job: {self.job.name}{mode}")

        try:
            # Execute backup workflow
            self._execute_workflow()

            if self._warning_count():
                self.history_record.status = 'warning'
                self._log("Backup completed with warnings")
            else:
                self.history_record.status = 'success'
                self._log("Backup completed successfully")

        except Exception as e:
            # Mark as failed
            self.history_record.status = 'failed'
            self.history_record.error_message = str(e)
            self._log(f"Backup failed: {e}")
            logger.error(f"Backup job {self.job.name} failed: {e}")

        finally:
            # Cleanup temporary files before recording the outcome
            self._cleanup()

            self.history_record.completed_at = datetime.utcnow()
            self._log_duration()
            self._record_counts()

            # Save logs
            self.history_record.logs = '\n'.join(self.logs)
            db.session.commit()

        return self.history_record

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        # Step 1: Validate configuration (nothing on disk changes before this passes)
        destination = self._validate_destination()
        paths = self._parse_paths()
        tiers = self.job.retention_tiers()
        try:
            archive_extension(self.job.compression_format)
        except ValueError as e:
            raise ConfigurationError(str(e))

        catalog = BackupCatalog(destination)
        criteria = self._resolve_criteria(catalog)
        matcher = PathMatcher(
            [PathRule.create(RuleKind.INCLUDE, p) for p in paths['include']],
            [PathRule.create(RuleKind.EXCLUDE, p) for p in paths['exclude']]
            # Never back up the destination into itself
            + [PathRule.create(RuleKind.EXCLUDE, destination)]
        )

        self._log_configuration(destination, paths, criteria, tiers)
        self._flush_logs_to_db()

        # Step 2: Build the manifest
        builder = FileListBuilder(matcher, criteria)
        self.manifest = builder.build(dry_run=self.dry_run)
        self.read_warnings.extend(builder.warnings)
        for path in builder.missing_paths:
            self._log(f"Warning: Include path does not exist: {path}")
        for warning in builder.warnings:
            self._log(f"Warning: Skipped unreadable path {warning['path']}: {warning['error']}")
        self._log(f"Files to backup: {len(self.manifest)}")
        self._flush_logs_to_db()

        # Step 3: Create archive (or describe it)
        filename = generate_archive_filename(self.job.compression_format, self.started_at)
        synthetic = None

        if self.dry_run:
            synthetic = BackupArchive(self.started_at, os.path.join(destination, filename))
            # A real run would fail to store its archive under this name
            if os.path.lexists(synthetic.path):
                raise StorageError(f"Archive already exists: {synthetic.path}")
            self._describe_dry_run(synthetic.path)
        else:
            self._create_archive(catalog, filename)
        self._flush_logs_to_db()

        # Step 4: Retention
        self.retention_report = apply_retention(
            destination,
            tiers,
            dry_run=self.dry_run,
            synthetic=synthetic,
            protect=self.archive_path,
            log=self._log
        )
        if self.retention_report['deleted'] and not self.dry_run:
            mark_pruned(self.retention_report['deleted'])

    def _validate_destination(self) -> str:
        try:
            return validate_destination(self.job.destination)
        except StorageError as e:
            raise ConfigurationError(str(e))

    def _parse_paths(self) -> dict:
        """
        Parse the job's include/exclude configuration.

        Raises:
            ConfigurationError: If the config is malformed or has no include path
        """
        try:
            paths = self.job.paths()
        except (ValueError, TypeError, AttributeError) as e:
            raise ConfigurationError(f"Invalid paths configuration: {e}")

        if not paths['include']:
            raise ConfigurationError("At least one include path is required")
        return paths

    def _resolve_criteria(self, catalog: BackupCatalog):
        """Build selection criteria, resolving 'newer than last backup' via the catalog."""
        newer_than = self.job.newer_than
        last_backup = None

        if newer_than is not None and str(newer_than).strip() in ('', NEWER_THAN_LAST_BACKUP):
            latest = catalog.latest()
            last_backup = latest.timestamp if latest else None

        criteria, age_bound_dropped = build_criteria(
            smaller_than=self.job.smaller_than_mb,
            larger_than=self.job.larger_than_mb,
            newer_than=newer_than,
            older_than=self.job.older_than,
            last_backup=last_backup,
            now=self.started_at
        )
        if age_bound_dropped:
            self._log("No previous backup found, newer-than bound ignored (proceeding without time constraint)")
        return criteria

    def _log_configuration(self, destination: str, paths: dict, criteria, tiers):
        include_count = sum(1 for p in paths['include'] if os.path.exists(os.path.expanduser(p)))
        exclude_count = sum(1 for p in paths['exclude'] if os.path.exists(os.path.expanduser(p)))
        self._log(f"Number of include paths used: {include_count}")
        self._log(f"Number of exclude paths used: {exclude_count}")

        for line in criteria.describe():
            self._log(line)

        if tiers:
            self._log("Retention policies:")
            for tier in tiers:
                self._log(f"  keep-{tier.period.value}: {tier.count}")

        self._log(f"Saving backup in {destination}")

    def _describe_dry_run(self, archive_path: str):
        """Log the archive a real run would create."""
        self._log(f"DRY RUN: Would create backup at {archive_path}")
        if not self.manifest:
            self._log("DRY RUN: Warning - No files would be backed up (all paths invalid or filtered out)")
            return

        total_bytes = 0
        for path in self.manifest:
            try:
                total_bytes += os.path.getsize(path)
            except OSError:
                pass
        self._log(f"DRY RUN: Total size before compression: {format_size(total_bytes)}")

        self._log("DRY RUN: Sample of files that would be backed up:")
        for path in self.manifest[:DRY_RUN_SAMPLE_SIZE]:
            self._log(f"  {path}")
        if len(self.manifest) > DRY_RUN_SAMPLE_SIZE:
            self._log(f"  ... and {len(self.manifest) - DRY_RUN_SAMPLE_SIZE} more")

    def _create_archive(self, catalog: BackupCatalog, filename: str):
        """
        Write the archive next to the destination and move it into place.

        Raises:
            ArchiveToolFailure: If the archive could not be written
            StorageError: If it could not be moved into the destination
        """
        self._log(f"Creating backup archive: {filename}")

        # Same filesystem as the destination, so the final move is a rename
        self.temp_dir = tempfile.mkdtemp(dir=catalog.destination, prefix='.gfsbackup_')

        writer = ArchiveWriter(self.job.compression_format)
        result = writer.write(self.manifest, os.path.join(self.temp_dir, filename))
        self.read_warnings.extend(result.warnings)
        for warning in result.warnings:
            self._log(f"tar warning: {warning['path']}: {warning['error']}")

        self.archive_path = catalog.store(result.path)
        self.history_record.archive_path = self.archive_path
        self.history_record.file_size_bytes = result.size_bytes
        self.history_record.files_archived = result.file_count
        self._log(f"Backup created: {filename} (size: {format_size(result.size_bytes)})")

    def _warning_count(self) -> int:
        count = len(self.read_warnings)
        if self.retention_report:
            count += len(self.retention_report['failed']) + len(self.retention_report['unparseable'])
        return count

    def _record_counts(self):
        record = self.history_record
        record.warning_count = self._warning_count()

        if self.dry_run:
            record.files_archived = len(self.manifest)

        if self.retention_report and self.retention_report['enabled']:
            record.kept_count = len(self.retention_report['kept'])
            record.deleted_count = len(self.retention_report['deleted'])

        record.summary = self._build_summary()

    def _build_summary(self) -> str:
        """Human readable one-line outcome."""
        record = self.history_record
        prefix = 'DRY RUN: ' if self.dry_run else ''

        if record.status == 'failed':
            return f"{prefix}Backup failed: {record.error_message}"

        verb = 'would be archived' if self.dry_run else 'archived'
        parts = [f"{record.files_archived or 0} file(s) {verb}"]
        if record.kept_count is not None:
            parts.append(f"{record.kept_count} kept")
            parts.append(f"{record.deleted_count} {'would be deleted' if self.dry_run else 'deleted'}")
        parts.append(f"{record.warning_count} warning(s)")
        return prefix + ', '.join(parts)

    def _log_duration(self):
        elapsed = (datetime.utcnow() - self.history_record.started_at).total_seconds()
        if elapsed < 1:
            self._log("Duration: under 1 second")
        else:
            self._log(f"Duration: {int(elapsed)} seconds")

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        log_entry = f"[{timestamp}] {message}"
        self.logs.append(log_entry)
        logger.info(message)

        # Flush logs every 5 entries
        self._log_flush_counter += 1
        if self._log_flush_counter >= 5:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.history_record:
            self.history_record.logs = '\n'.join(self.logs)
            db.session.commit()
            self._log_flush_counter = 0


def execute_backup_job(job_id: int, allow_disabled: bool = False, dry_run: bool = False) -> BackupHistory:
    """
    Execute a backup job by ID.

    Args:
        job_id: ID of BackupJob to execute
        allow_disabled: If True, allow execution of disabled jobs (for manual triggers)
        dry_run: Report only, leave the destination untouched

    Returns:
        BackupHistory record with execution results

    Raises:
        ValueError: If job not found, or if disabled and not allowed
    """
    job = db.session.get(BackupJob, job_id)

    if not job:
        raise ValueError(f"Backup job not found: {job_id}")

    if not job.enabled and not allow_disabled:
        raise ValueError(f"Backup job is disabled: {job.name}")

    executor = BackupExecutor(job, dry_run=dry_run)
    return executor.execute()


def execute_backup_job_by_name(job_name: str, dry_run: bool = False) -> BackupHistory:
    """
    Execute a backup job by name.

    Args:
        job_name: Name of BackupJob to execute
        dry_run: Report only, leave the destination untouched

    Returns:
        BackupHistory record with execution results

    Raises:
        ValueError: If job not found or disabled
    """
    job = BackupJob.query.filter_by(name=job_name).first()

    if not job:
        raise ValueError(f"Backup job not found: {job_name}")

    if not job.enabled:
        raise ValueError(f"Backup job is disabled: {job_name}")

    executor = BackupExecutor(job, dry_run=dry_run)
    return executor.execute()
