"""
Retention policy enforcement for backups.

Tiered, calendar-aware retention ("grandfather-father-son"): keep the N most
recent archives overall, plus the N most recent per hour, day, ISO week,
month and year. Tiers always apply in that fixed order. Each tier only
competes for archives not already kept by an earlier tier, and whatever a
tier keeps stays kept, so the keep-set is the union of all tiers.
"""

import logging
import os
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from gfsbackup import db
from gfsbackup.models import BackupJob, BackupHistory
from .selection import ConfigurationError
from .storage import BackupArchive, BackupCatalog, StorageError, is_archive_name


logger = logging.getLogger(__name__)


class RetentionPeriod(Enum):
    LAST = 'last'
    HOURLY = 'hourly'
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'
    YEARLY = 'yearly'


# Fixed priority order, independent of how tiers were configured
PERIOD_ORDER = list(RetentionPeriod)

_PERIOD_WORDS = {
    RetentionPeriod.HOURLY: 'hour',
    RetentionPeriod.DAILY: 'day',
    RetentionPeriod.WEEKLY: 'week',
    RetentionPeriod.MONTHLY: 'month',
    RetentionPeriod.YEARLY: 'year',
}


@dataclass(frozen=True)
class RetentionTier:
    period: RetentionPeriod
    count: int

    def __post_init__(self):
        if isinstance(self.count, bool) or not isinstance(self.count, int) or self.count <= 0:
            raise ConfigurationError(
                f"keep_{self.period.value} requires a positive integer, got {self.count!r}"
            )

    def describe(self) -> str:
        if self.period is RetentionPeriod.LAST:
            return f"Keeping last {self.count} backup(s)"
        return f"Keeping {self.count} most recent backup(s) per {_PERIOD_WORDS[self.period]}"


def tiers_from_counts(counts: Dict[str, Optional[int]]) -> List[RetentionTier]:
    """
    Build tiers from a {tier-name: count} mapping.

    Names are 'last', 'hourly', 'daily', 'weekly', 'monthly', 'yearly'; None
    values are skipped.

    Raises:
        ConfigurationError: On unknown names or non-positive counts
    """
    tiers = []
    for name, count in counts.items():
        if count is None:
            continue
        try:
            period = RetentionPeriod(name)
        except ValueError:
            raise ConfigurationError(f"Unknown retention tier: {name}")
        tiers.append(RetentionTier(period, count))
    return tiers


def period_key(period: RetentionPeriod, timestamp: datetime) -> str:
    """Calendar bucket key of a timestamp for one period."""
    if period is RetentionPeriod.HOURLY:
        return timestamp.strftime('%Y-%m-%d %H')
    if period is RetentionPeriod.DAILY:
        return timestamp.strftime('%Y-%m-%d')
    if period is RetentionPeriod.WEEKLY:
        year, week, _ = timestamp.isocalendar()
        return f"{year}-W{week:02d}"
    if period is RetentionPeriod.MONTHLY:
        return timestamp.strftime('%Y-%m')
    if period is RetentionPeriod.YEARLY:
        return str(timestamp.year)
    raise ValueError(f"Period has no bucket key: {period}")


def group_by_period(archives: List[BackupArchive], period: RetentionPeriod) -> 'OrderedDict[str, List[BackupArchive]]':
    """
    Group archives (newest first) into period buckets.

    Bucket and in-bucket order follow the input order, newest first.
    """
    buckets = OrderedDict()
    for archive in archives:
        buckets.setdefault(period_key(period, archive.timestamp), []).append(archive)
    return buckets


def with_synthetic(archives: List[BackupArchive], synthetic: Optional[BackupArchive]) -> List[BackupArchive]:
    """Catalog with the pending archive inserted as its newest entry."""
    if synthetic is None:
        return list(archives)
    return [synthetic] + [a for a in archives if a.path != synthetic.path]


class RetentionPlanner:
    """
    Computes the keep-set for a catalog under a list of tiers.

    `applied` records, per tier, the archives that tier newly kept.
    """

    def __init__(self):
        self.applied = []

    def plan(
        self,
        tiers: Iterable[RetentionTier],
        catalog: List[BackupArchive],
        synthetic: Optional[BackupArchive] = None
    ) -> Set[str]:
        """
        Decide which archives to keep.

        Args:
            tiers: Retention tiers in any order
            catalog: Archives sorted newest first
            synthetic: Archive about to be created (dry run), treated as newest

        Returns:
            Set of archive paths to keep (empty when no tiers are given)
        """
        archives = with_synthetic(catalog, synthetic)
        ordered = sorted(tiers, key=lambda t: PERIOD_ORDER.index(t.period))

        keep = set()
        self.applied = []

        for tier in ordered:
            remainder = [a for a in archives if a.path not in keep]

            if tier.period is RetentionPeriod.LAST:
                selected = remainder[:tier.count]
            else:
                selected = []
                for bucket in group_by_period(remainder, tier.period).values():
                    selected.extend(bucket[:tier.count])

            newly_kept = [a.path for a in selected]
            keep.update(newly_kept)
            self.applied.append((tier, newly_kept))
            logger.debug(f"{tier.describe()}: {len(newly_kept)} newly kept")

        return keep


class Pruner:
    """
    Deletes (or, in dry run, reports) archives outside the keep-set.

    Deletion failures are recorded, never raised.
    """

    def __init__(self, catalog: Optional[BackupCatalog] = None):
        self.catalog = catalog

    def apply(
        self,
        catalog: List[BackupArchive],
        keep_set: Set[str],
        dry_run: bool = False,
        synthetic: Optional[BackupArchive] = None,
        protect: Optional[str] = None
    ) -> Dict[str, list]:
        """
        Act on every catalog entry not in the keep-set.

        Args:
            catalog: Archives considered by the planner
            keep_set: Paths to keep
            dry_run: Report only, never touch the filesystem
            synthetic: Pending archive of a dry run, never reported as deleted
            protect: Path that must never be deleted (the archive just written)

        Returns:
            Dict with 'deleted', 'kept' (paths) and 'failed' ({'path', 'error'})
        """
        archives = with_synthetic(catalog, synthetic)
        result = {'deleted': [], 'kept': [], 'failed': []}

        for archive in archives:
            if archive.path in keep_set:
                result['kept'].append(archive.path)
                continue

            if synthetic is not None and archive.path == synthetic.path:
                result['kept'].append(archive.path)
                continue

            if protect is not None and archive.path == protect:
                logger.warning(f"Not deleting the archive created by this run: {archive.name}")
                result['kept'].append(archive.path)
                continue

            if dry_run:
                logger.debug(f"Would delete: {archive.name}")
                result['deleted'].append(archive.path)
                continue

            error = self._delete(archive)
            if error is None:
                logger.debug(f"Deleted: {archive.name}")
                result['deleted'].append(archive.path)
            else:
                logger.warning(f"Failed to delete backup {archive.name}: {error}")
                result['failed'].append({'path': archive.path, 'error': error})

        return result

    def _delete(self, archive: BackupArchive) -> Optional[str]:
        """Delete one archive; returns an error message or None."""
        if not os.path.isfile(archive.path) or os.path.islink(archive.path):
            return 'backup file no longer exists'
        if not is_archive_name(archive.name):
            return 'file name does not match the backup pattern'

        catalog = self.catalog or BackupCatalog(os.path.dirname(archive.path))
        try:
            catalog.delete(archive.path)
        except StorageError as e:
            return str(e)
        return None


def apply_retention(
    destination: str,
    tiers: List[RetentionTier],
    dry_run: bool = False,
    synthetic: Optional[BackupArchive] = None,
    protect: Optional[str] = None,
    log=None
) -> Dict[str, object]:
    """
    Scan a destination, plan retention and prune.

    Args:
        destination: Backup destination directory
        tiers: Retention tiers (empty disables retention)
        dry_run: Report without deleting
        synthetic: Pending archive of a dry run
        protect: Archive that must survive this pass
        log: Callable receiving human readable log lines (default: module logger)

    Returns:
        Dict with 'enabled', 'total', 'deleted', 'kept', 'failed', 'unparseable'
        and 'collision' (path of an existing archive sharing the synthetic name)

    Raises:
        StorageError: If the destination cannot be scanned
    """
    log = log or logger.info
    report = {
        'enabled': bool(tiers),
        'total': 0,
        'deleted': [],
        'kept': [],
        'failed': [],
        'unparseable': [],
        'collision': None,
    }

    if not tiers:
        log("No retention policy configured, retention disabled")
        return report

    log("Applying retention policies for autodeletion")
    catalog = BackupCatalog(destination)
    archives = catalog.scan()
    report['unparseable'] = list(catalog.unparseable)
    for path in catalog.unparseable:
        log(f"Warning: Could not parse timestamp from backup file: {os.path.basename(path)} (keeping undeleted)")

    if synthetic is not None and any(a.path == synthetic.path for a in archives):
        report['collision'] = synthetic.path
        log(
            f"Warning: {synthetic.name} already exists in the destination "
            f"(a backup started now would fail to store its archive)"
        )

    total = len(with_synthetic(archives, synthetic))
    report['total'] = total
    if total == 0:
        log("No backups found for retention policy")
        return report
    log(f"Found {total} backup(s) to evaluate")

    planner = RetentionPlanner()
    keep_set = planner.plan(tiers, archives, synthetic)
    for tier, newly_kept in planner.applied:
        log(f"{tier.describe()} ({len(newly_kept)} selected)")

    result = Pruner(catalog).apply(archives, keep_set, dry_run=dry_run, synthetic=synthetic, protect=protect)
    report.update(result)

    deleted = len(result['deleted'])
    kept = len(result['kept'])
    if dry_run:
        if deleted:
            log(f"DRY RUN: Would delete {deleted} backup(s):")
            for path in result['deleted']:
                log(f"  Would delete: {os.path.basename(path)}")
        else:
            log("DRY RUN: No backups to delete")
        log(f"DRY RUN: Would keep {kept} backup(s) (including the new backup that would be created)")
    elif not deleted and not result['failed']:
        log(f"No backups to delete (keeping all {kept} backup(s))")
    else:
        for path in result['deleted']:
            log(f"Deleted: {os.path.basename(path)}")
        for failure in result['failed']:
            log(f"Error: Failed to delete backup: {os.path.basename(failure['path'])} ({failure['error']})")
        log(f"Autodeletion completed: {deleted} deleted, {len(result['failed'])} failed, {kept} kept")

    return report


class RetentionManager:
    """
    Runs prune-only retention passes for configured backup jobs.

    Used by the daily scheduler job; backups themselves prune right after
    writing their archive.
    """

    def __init__(self):
        """Initialize retention manager."""
        self.logs = []

    def enforce_all_policies(self) -> Dict[str, object]:
        """
        Enforce retention policies for all enabled backup jobs.

        Returns:
            Dict with summary of cleanup operations:
            {
                'jobs_processed': int,
                'deleted': int,
                'failed': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        self._log("Starting retention policy enforcement for all jobs")

        summary = {
            'jobs_processed': 0,
            'deleted': 0,
            'failed': 0,
            'errors': []
        }

        for job in BackupJob.query.filter_by(enabled=True).all():
            try:
                result = self.enforce_job_policy(job)
                summary['jobs_processed'] += 1
                summary['deleted'] += len(result['deleted'])
                summary['failed'] += len(result['failed'])
            except (ConfigurationError, StorageError) as e:
                error_msg = f"Failed to enforce policy for job {job.name}: {e}"
                self._log(error_msg)
                summary['errors'].append(error_msg)

        self._log(
            f"Retention enforcement complete. "
            f"Jobs: {summary['jobs_processed']}, "
            f"Deleted: {summary['deleted']}, "
            f"Failed: {summary['failed']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def enforce_job_policy(self, job, dry_run: bool = False) -> Dict[str, object]:
        """
        Enforce retention policy for a specific job.

        Args:
            job: BackupJob instance
            dry_run: Report without deleting

        Returns:
            Report dict from apply_retention()

        Raises:
            ConfigurationError: If the job's retention settings are invalid
            StorageError: If the destination cannot be scanned
        """
        self._log(f"Enforcing retention policy for job: {job.name}")
        report = apply_retention(job.destination, job.retention_tiers(), dry_run=dry_run, log=self._log)
        if report['deleted'] and not dry_run:
            mark_pruned(report['deleted'])
        return report

    def _log(self, message: str):
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def mark_pruned(paths: List[str]):
    """Flag history records whose archive was deleted by retention."""
    records = BackupHistory.query.filter(BackupHistory.archive_path.in_(paths)).all()
    for record in records:
        record.archive_pruned = True
    if records:
        db.session.commit()


def enforce_retention_policies() -> Dict[str, object]:
    """
    Enforce retention policies for all jobs.

    This function should be called by the scheduler on a daily basis.

    Returns:
        Summary dict from RetentionManager.enforce_all_policies()
    """
    manager = RetentionManager()
    return manager.enforce_all_policies()
