"""
Path exclusion and rename-boundary correction.

A commit's file changes are filtered against the configured exclusion globs.
Renames are judged on both sides: a rename that moves a file into or out of
excluded territory gets a synthetic correction equal to the file's size in the
parent commit, because the numstat delta of a rename only describes the edit.
"""

import re
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache
from typing import Iterable, List, Optional, Tuple

import pathspec

from repotally.config import TallyConfig
from repotally.diff_parser import (
    BINARY_LABEL,
    ParsedDiff,
    get_file_type,
    split_rename_path,
)
from repotally.models import FileChange


# ============================================================================
# GLOB MATCHING
# ============================================================================

# {a,b} alternatives without nested braces
_BRACE_GROUP = re.compile(r"\{([^{}]*,[^{}]*)\}")


def expand_braces(pattern: str) -> List[str]:
    """Expand ``{a,b}`` alternatives, which gitwildmatch does not understand."""
    match = _BRACE_GROUP.search(pattern)
    if not match:
        return [pattern]
    head, tail = pattern[: match.start()], pattern[match.end() :]
    expanded = []
    for option in match.group(1).split(","):
        expanded.extend(expand_braces(f"{head}{option}{tail}"))
    return expanded


@lru_cache(maxsize=128)
def compile_patterns(patterns: Tuple[str, ...]) -> pathspec.PathSpec:
    """
    Build one gitwildmatch PathSpec for a set of exclusion globs.

    ``**/`` matches zero or more directories, ``*`` and ``?`` stay within one
    path segment, a trailing ``/`` excludes everything below a directory and
    ``{a,b}`` alternatives are expanded first.
    """
    lines = [line for pattern in patterns if pattern for line in expand_braces(pattern)]
    return pathspec.PathSpec.from_lines("gitwildmatch", lines)


def normalize_path(path: str) -> str:
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def is_excluded(path: str, patterns: Iterable[str]) -> bool:
    """True if ``path`` matches any of the exclusion globs."""
    return compile_patterns(tuple(patterns)).match_file(normalize_path(path))


# ============================================================================
# BLOB INSPECTION
# ============================================================================


class BlobInspector(ABC):
    """Point-in-time reads of a file as it existed at some revision."""

    @abstractmethod
    def line_count(self, revision: str, path: str) -> int:
        """Number of lines of ``path`` at ``revision``."""

    @abstractmethod
    def byte_size(self, revision: str, path: str) -> int:
        """Size in bytes of ``path`` at ``revision``."""


def parent_revision(sha: str) -> str:
    return f"{sha}^"


# ============================================================================
# RESOLVER
# ============================================================================

KEEP = "keep"
DROP = "drop"
INTO_EXCLUSION = "into_exclusion"
OUT_OF_EXCLUSION = "out_of_exclusion"


class ExclusionResolver:
    """
    Filter and adjust one commit's file changes against the exclusion globs.

    Blob lookups for boundary-crossing renames in the same commit are
    independent reads, so they run on a bounded thread pool; the results are
    folded back in the original file order.
    """

    def __init__(self, config: TallyConfig, blob_inspector: BlobInspector):
        self.config = config
        self.spec = compile_patterns(tuple(config.exclusion_patterns))
        self.blob_inspector = blob_inspector

    def _excluded(self, path: str) -> bool:
        return self.spec.match_file(normalize_path(path))

    def classify(self, path: str) -> Tuple[str, Optional[Tuple[str, str]]]:
        """
        Decide what happens to one numstat path.

        Returns:
            (action, rename) where rename is (old_path, new_path) or None
        """
        rename = split_rename_path(path)
        if rename is None:
            return (DROP if self._excluded(path) else KEEP), None

        old_excluded = self._excluded(rename[0])
        new_excluded = self._excluded(rename[1])
        if old_excluded and new_excluded:
            return DROP, rename
        if not old_excluded and not new_excluded:
            return KEEP, rename
        if new_excluded:
            return INTO_EXCLUSION, rename
        return OUT_OF_EXCLUSION, rename

    def _prior_size(self, request: Tuple[str, str]) -> Tuple[int, int]:
        revision, path = request
        return (
            self.blob_inspector.line_count(revision, path),
            self.blob_inspector.byte_size(revision, path),
        )

    def _lookup_prior_sizes(
        self, sha: str, old_paths: List[str]
    ) -> List[Tuple[int, int]]:
        if not old_paths:
            return []
        revision = parent_revision(sha)
        requests = [(revision, path) for path in old_paths]
        if len(requests) == 1:
            return [self._prior_size(requests[0])]

        workers = min(self.config.blob_workers, len(requests))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(self._prior_size, requests))

    def resolve(self, sha: str, parsed: ParsedDiff) -> ParsedDiff:
        """
        Apply the exclusion rules to one commit.

        Args:
            sha: Commit whose parent is queried for rename corrections
            parsed: The commit's unfiltered diff

        Returns:
            A new ParsedDiff whose totals are the sums of the kept changes

        Raises:
            BlobLookupError: if a prior-size lookup fails (propagated from
                the inspector)
        """
        plan = []
        crossing_paths = []
        for change in parsed.files_changed:
            action, rename = self.classify(change.path)
            plan.append((change, action, rename))
            if action in (INTO_EXCLUSION, OUT_OF_EXCLUSION):
                crossing_paths.append(rename[0])

        prior_sizes = iter(self._lookup_prior_sizes(sha, crossing_paths))

        resolved = []
        for change, action, rename in plan:
            if action == KEEP:
                resolved.append(change)
            elif action == INTO_EXCLUSION:
                prior_lines, prior_bytes = next(prior_sizes)
                resolved.append(
                    self._moved_into_exclusion(rename[0], prior_lines, prior_bytes)
                )
            elif action == OUT_OF_EXCLUSION:
                prior_lines, prior_bytes = next(prior_sizes)
                resolved.append(
                    self._moved_out_of_exclusion(change, rename[1], prior_lines, prior_bytes)
                )
        return ParsedDiff.from_changes(resolved)

    def _file_type(self, path: str) -> str:
        return get_file_type(
            path, self.config.file_type_mappings, self.config.binary_extensions
        )

    def _moved_into_exclusion(
        self, old_path: str, prior_lines: int, prior_bytes: int
    ) -> FileChange:
        # The whole file leaves the tracked tree; the edit happens out of view
        file_type = self._file_type(old_path)
        return FileChange(
            path=old_path,
            lines_added=0,
            lines_deleted=0 if file_type == BINARY_LABEL else prior_lines,
            file_type=file_type,
            bytes_added=0,
            bytes_deleted=prior_bytes,
        )

    def _moved_out_of_exclusion(
        self, change: FileChange, new_path: str, prior_lines: int, prior_bytes: int
    ) -> FileChange:
        file_type = self._file_type(new_path)
        is_binary = file_type == BINARY_LABEL
        return FileChange(
            path=new_path,
            lines_added=0 if is_binary else prior_lines + change.lines_added,
            lines_deleted=0 if is_binary else change.lines_deleted,
            file_type=file_type,
            bytes_added=prior_bytes + change.bytes_added,
            bytes_deleted=change.bytes_deleted,
        )
