"""
Source selection for backup operations.

Resolves include/exclude path rules plus selection criteria into the ordered
list of files that goes into an archive:
- PathRule / PathMatcher: prefix matching on canonical absolute paths
- FileListBuilder: walks include paths and filters every regular file
"""

import logging
import os
import stat
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional

from .selection import CandidateFile, SelectionCriteria, SelectionFilter


logger = logging.getLogger(__name__)


class SelectionEmptyError(Exception):
    """Raised when no file survives path and criteria filtering."""
    pass


class RuleKind(Enum):
    INCLUDE = 'include'
    EXCLUDE = 'exclude'


def normalize_path(raw: str) -> str:
    """
    Canonicalize a caller supplied path.

    Strips trailing separators, expands ~ and resolves symbolic links.

    Args:
        raw: Path as written in the job configuration

    Returns:
        Canonical absolute path ('/' stays '/')
    """
    path = os.path.expanduser(str(raw).strip())
    stripped = path.rstrip(os.sep)
    if not stripped:
        return os.sep
    return os.path.realpath(stripped)


def is_within(path: str, root: str) -> bool:
    """True if path equals root or lies beneath it."""
    if path == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return path.startswith(prefix)


@dataclass(frozen=True)
class PathRule:
    kind: RuleKind
    path: str

    @classmethod
    def create(cls, kind: RuleKind, raw: str) -> 'PathRule':
        return cls(kind, normalize_path(raw))


class PathMatcher:
    """
    Classifies paths against include and exclude rules.

    Exclude rules always win: a path under an excluded directory is rejected
    even when an include rule also covers it.
    """

    def __init__(self, include_rules: Iterable[PathRule] = (), exclude_rules: Iterable[PathRule] = ()):
        self.include_rules = tuple(include_rules)
        self.exclude_rules = tuple(exclude_rules)

    @classmethod
    def from_strings(cls, includes: Iterable[str], excludes: Iterable[str] = ()) -> 'PathMatcher':
        """
        Build a matcher from raw path strings.

        Args:
            includes: Include paths
            excludes: Exclude paths

        Returns:
            PathMatcher with normalized rules
        """
        return cls(
            [PathRule.create(RuleKind.INCLUDE, p) for p in includes],
            [PathRule.create(RuleKind.EXCLUDE, p) for p in excludes]
        )

    def is_excluded(self, path: str) -> bool:
        return any(is_within(path, rule.path) for rule in self.exclude_rules)

    def includes(self, candidate_path: str) -> bool:
        """
        Decide whether a path belongs in the backup.

        Args:
            candidate_path: Path to check (canonicalized before comparison)

        Returns:
            True if not excluded and covered by an include rule (or no
            include rules exist)
        """
        path = os.path.realpath(candidate_path)

        if self.is_excluded(path):
            return False

        if not self.include_rules:
            return True

        return any(is_within(path, rule.path) for rule in self.include_rules)


class FileListBuilder:
    """
    Builds the manifest of files to archive.

    Walks every include rule, keeping regular files that pass the PathMatcher
    and the SelectionFilter. Unreadable subtrees are skipped and recorded in
    `warnings`; they never abort the walk.
    """

    def __init__(
        self,
        matcher: PathMatcher,
        criteria: Optional[SelectionCriteria] = None,
        selection_filter: Optional[SelectionFilter] = None
    ):
        self.matcher = matcher
        self.criteria = criteria or SelectionCriteria()
        self.selection_filter = selection_filter or SelectionFilter()
        self.warnings = []
        self.missing_paths = []

    def build(self, rules: Optional[Iterable[PathRule]] = None, dry_run: bool = False) -> List[str]:
        """
        Resolve rules into an ordered, de-duplicated list of absolute paths.

        Args:
            rules: Include rules to walk (default: the matcher's include rules)
            dry_run: Downgrade an empty result to a warning

        Returns:
            Ordered list of file paths

        Raises:
            SelectionEmptyError: If nothing survives filtering (normal mode)
        """
        if rules is None:
            rules = self.matcher.include_rules
        include_rules = [r for r in rules if r.kind is RuleKind.INCLUDE]

        self.warnings = []
        self.missing_paths = []
        selected = {}

        for rule in include_rules:
            root = rule.path
            if not os.path.lexists(root):
                logger.warning(f"Include path does not exist: {root}")
                self.missing_paths.append(root)
                continue

            if os.path.isfile(root):
                if self._accept(root):
                    selected.setdefault(root, None)
            elif os.path.isdir(root):
                logger.info(f"Scanning directory: {root}")
                for path in self._walk(root):
                    if self._accept(path):
                        selected.setdefault(path, None)

        manifest = list(selected)

        if not manifest:
            if dry_run:
                logger.warning("DRY RUN: No files would be backed up (all paths invalid or filtered out)")
                return []
            raise SelectionEmptyError(
                "No files to backup. Check that include paths exist and match your size/age constraints."
            )

        return manifest

    def _accept(self, path: str) -> bool:
        if not self.matcher.includes(path):
            return False
        candidate = CandidateFile.from_path(path)
        return self.selection_filter.matches(candidate, self.criteria)

    def _walk(self, root: str):
        """Yield regular files under root in a reproducible order."""
        for dirpath, dirnames, filenames in os.walk(root, onerror=self._on_walk_error):
            # Excluded directories are never descended into
            dirnames[:] = sorted(
                d for d in dirnames
                if not self.matcher.is_excluded(os.path.join(dirpath, d))
            )
            for name in sorted(filenames):
                path = os.path.join(dirpath, name)
                try:
                    mode = os.lstat(path).st_mode
                except OSError as e:
                    self._record_warning(path, e)
                    continue
                if stat.S_ISREG(mode):
                    yield path

    def _on_walk_error(self, error: OSError):
        self._record_warning(getattr(error, 'filename', None) or '?', error)

    def _record_warning(self, path: str, error: Exception):
        message = f"Skipping unreadable path {path}: {error}"
        logger.warning(message)
        self.warnings.append({'path': path, 'error': str(error)})
