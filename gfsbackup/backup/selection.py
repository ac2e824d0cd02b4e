"""
Selection criteria for backup file lists.

Supports:
- Size bounds: only files smaller or larger than N megabytes
- Age bounds: only files modified newer or older than a point in time
"""

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Tuple


logger = logging.getLogger(__name__)

# Sentinel for "newer than the most recent backup in the destination"
NEWER_THAN_LAST_BACKUP = 'last'

DATE_FORMAT = '%Y-%m-%d %H:%M'

_DAYS_RE = re.compile(r'^\d+(\.\d*)?$')
_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2}$')


class ConfigurationError(Exception):
    """Raised when a backup job is configured inconsistently."""
    pass


class SizeOp(Enum):
    SMALLER_THAN = 'smaller_than'
    LARGER_THAN = 'larger_than'


class AgeOp(Enum):
    NEWER_THAN = 'newer_than'
    OLDER_THAN = 'older_than'


@dataclass(frozen=True)
class SizeBound:
    op: SizeOp
    megabytes: float


@dataclass(frozen=True)
class AgeBound:
    op: AgeOp
    timestamp: datetime


@dataclass(frozen=True)
class SelectionCriteria:
    """Size and age predicates applied to every candidate file of one run."""

    size_bound: Optional[SizeBound] = None
    age_bound: Optional[AgeBound] = None

    def describe(self) -> list:
        lines = []
        if self.size_bound is not None:
            word = 'smaller' if self.size_bound.op is SizeOp.SMALLER_THAN else 'larger'
            lines.append(f"Only including files {word} than {self.size_bound.megabytes:g} MB")
        if self.age_bound is not None:
            word = 'newer' if self.age_bound.op is AgeOp.NEWER_THAN else 'older'
            lines.append(f"Only including files {word} than: {self.age_bound.timestamp:%Y-%m-%d %H:%M:%S}")
        return lines


@dataclass(frozen=True)
class CandidateFile:
    path: str
    size_bytes: int
    modified_at: datetime

    @classmethod
    def from_path(cls, path: str) -> 'CandidateFile':
        """
        Stat a file into a candidate.

        A failing stat yields size 0 and the epoch as modification time so the
        file fails closed against any configured bound.

        Args:
            path: Absolute path of the file

        Returns:
            CandidateFile for the path
        """
        try:
            stat = os.stat(path)
        except OSError as e:
            logger.warning(f"Could not stat {path}: {e}")
            return cls(path, 0, datetime.fromtimestamp(0))
        return cls(path, stat.st_size, datetime.fromtimestamp(stat.st_mtime))


class SelectionFilter:
    """Evaluates SelectionCriteria against single candidate files."""

    def matches(self, candidate: CandidateFile, criteria: SelectionCriteria) -> bool:
        """
        Check a candidate against size and age bounds.

        Args:
            candidate: File to check
            criteria: Bounds to apply (either may be absent)

        Returns:
            True if the candidate satisfies every configured bound
        """
        return self._matches_size(candidate, criteria.size_bound) and \
            self._matches_age(candidate, criteria.age_bound)

    def _matches_size(self, candidate: CandidateFile, bound: Optional[SizeBound]) -> bool:
        if bound is None:
            return True

        # Unreadable or empty files never satisfy a size bound
        if not candidate.size_bytes or candidate.size_bytes <= 0:
            return False

        size_mb = candidate.size_bytes / 1024 / 1024
        if bound.op is SizeOp.SMALLER_THAN:
            return size_mb < bound.megabytes
        return size_mb > bound.megabytes

    def _matches_age(self, candidate: CandidateFile, bound: Optional[AgeBound]) -> bool:
        if bound is None:
            return True
        if bound.op is AgeOp.NEWER_THAN:
            return candidate.modified_at > bound.timestamp
        return candidate.modified_at < bound.timestamp


def _is_set(value) -> bool:
    return value is not None and str(value).strip() != ''


def parse_size_value(value) -> float:
    """
    Parse a size bound in megabytes.

    Args:
        value: Positive number or numeric string (decimals allowed)

    Returns:
        Size in megabytes

    Raises:
        ConfigurationError: If the value is not a positive number
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid size value: {value!r}")
    try:
        megabytes = float(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid size value: {value!r} (expected a positive number of MB)")

    if megabytes != megabytes or megabytes <= 0 or megabytes == float('inf'):
        raise ConfigurationError(f"Size must be a positive number of MB, got {value!r}")
    return megabytes


def parse_date_value(value, now: Optional[datetime] = None) -> datetime:
    """
    Parse an age bound.

    Accepts an absolute date (YYYY-MM-DD HH:MM) or a number of days before
    now, fractional values included (0.5 = twelve hours ago).

    Args:
        value: Date string or day count
        now: Reference time for day counts (default: current time)

    Returns:
        The resolved point in time

    Raises:
        ConfigurationError: If the value matches neither format
    """
    text = str(value).strip()
    now = now or datetime.now()

    if _DAYS_RE.match(text):
        try:
            return now - timedelta(days=float(text))
        except (OverflowError, ValueError):
            raise ConfigurationError(f"Invalid days value: {value!r}")

    if _DATE_RE.match(text):
        try:
            return datetime.strptime(' '.join(text.split()), DATE_FORMAT)
        except ValueError:
            raise ConfigurationError(f"Invalid date: {value!r}")

    raise ConfigurationError(
        f"Invalid date format: {value!r} (expected YYYY-MM-DD HH:MM or number of days)"
    )


def build_criteria(
    smaller_than=None,
    larger_than=None,
    newer_than=None,
    older_than=None,
    last_backup: Optional[datetime] = None,
    now: Optional[datetime] = None
) -> Tuple[SelectionCriteria, bool]:
    """
    Build SelectionCriteria from raw job settings.

    `newer_than` set to 'last' (or left blank while present) means "newer than
    the most recent backup". With no prior backup that bound is dropped and the
    second element of the result is True so the caller can log it.

    Args:
        smaller_than: Size in MB or None
        larger_than: Size in MB or None
        newer_than: Date, day count, 'last' or None
        older_than: Date, day count or None
        last_backup: Timestamp of the newest existing archive, if any
        now: Reference time for day counts

    Returns:
        Tuple of (criteria, age_bound_dropped)

    Raises:
        ConfigurationError: On mutually exclusive or malformed values
    """
    if _is_set(smaller_than) and _is_set(larger_than):
        raise ConfigurationError("Cannot use smaller_than and larger_than together")
    if newer_than is not None and older_than is not None:
        raise ConfigurationError("Cannot use newer_than and older_than together")

    size_bound = None
    if _is_set(smaller_than):
        size_bound = SizeBound(SizeOp.SMALLER_THAN, parse_size_value(smaller_than))
    elif _is_set(larger_than):
        size_bound = SizeBound(SizeOp.LARGER_THAN, parse_size_value(larger_than))

    age_bound = None
    age_bound_dropped = False
    if older_than is not None:
        if not _is_set(older_than):
            raise ConfigurationError("older_than requires a date or days value")
        age_bound = AgeBound(AgeOp.OLDER_THAN, parse_date_value(older_than, now))
    elif newer_than is not None:
        if not _is_set(newer_than) or str(newer_than).strip() == NEWER_THAN_LAST_BACKUP:
            if last_backup is None:
                age_bound_dropped = True
            else:
                age_bound = AgeBound(AgeOp.NEWER_THAN, last_backup)
        else:
            age_bound = AgeBound(AgeOp.NEWER_THAN, parse_date_value(newer_than, now))

    return SelectionCriteria(size_bound, age_bound), age_bound_dropped


def validate_criteria_settings(smaller_than=None, larger_than=None, newer_than=None, older_than=None):
    """
    Validate raw settings without resolving 'last'.

    Raises:
        ConfigurationError: If the settings could never form valid criteria
    """
    build_criteria(smaller_than, larger_than, newer_than, older_than, last_backup=datetime.now())
