"""
Change record parsing.

Turns one commit's ``git --numstat`` output into typed per-file deltas.
Byte figures produced here are estimates: every added or deleted line counts
as ``bytes_per_line`` bytes. Real blob sizes are only read when the exclusion
resolver corrects a rename that crosses an exclusion boundary, so estimated
and measured bytes end up in the same cumulative counters. This is a known
approximation; consumers rely on the constant.
"""

import codecs
import os
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from repotally.config import (
    DEFAULT_BINARY_EXTENSIONS,
    DEFAULT_FILE_TYPE_MAPPINGS,
    TallyConfig,
)
from repotally.models import FileChange

BINARY_LABEL = "Binary"
UNKNOWN_LABEL = "Other"

# prefix{old => new}suffix, the form git uses when only part of a path moved
_COMPACT_RENAME = re.compile(r"^(?P<prefix>.*?)\{(?P<old>.*?) => (?P<new>.*?)\}(?P<suffix>.*)$")
_PLAIN_RENAME = " => "


class DiffContractError(ValueError):
    """A required diff structure was missing; the commit cannot be processed."""


@dataclass(frozen=True)
class NumstatEntry:
    """One ``<added>\\t<deleted>\\t<path>`` line."""

    path: str
    lines_added: int
    lines_deleted: int
    binary: bool = False


@dataclass
class DiffSummary:
    files: List[NumstatEntry] = field(default_factory=list)


@dataclass
class ByteChanges:
    total_bytes_added: int = 0
    total_bytes_deleted: int = 0
    # path -> {"bytes_added": n, "bytes_deleted": n}
    file_changes: Dict[str, Dict[str, int]] = field(default_factory=dict)


@dataclass
class ParsedDiff:
    lines_added: int = 0
    lines_deleted: int = 0
    bytes_added: int = 0
    bytes_deleted: int = 0
    files_changed: List[FileChange] = field(default_factory=list)

    @classmethod
    def from_changes(cls, changes: Iterable[FileChange]) -> "ParsedDiff":
        """Build a diff whose totals are the sums of ``changes``."""
        changes = list(changes)
        return cls(
            lines_added=sum(c.lines_added for c in changes),
            lines_deleted=sum(c.lines_deleted for c in changes),
            bytes_added=sum(c.bytes_added for c in changes),
            bytes_deleted=sum(c.bytes_deleted for c in changes),
            files_changed=changes,
        )


# ============================================================================
# PATH HELPERS
# ============================================================================


def split_rename_path(path: str) -> Optional[Tuple[str, str]]:
    """
    Decompose a numstat rename path into (old_path, new_path).

    Handles both ``old => new`` and the compact ``{oldDir => newDir}/common``
    form (including an empty side, e.g. ``src/{ => core}/a.py``).

    Returns:
        The pair, or None when the path is not a rename
    """
    match = _COMPACT_RENAME.match(path)
    if match:
        prefix, suffix = match.group("prefix"), match.group("suffix")
        old_path = _join_rename_parts(prefix, match.group("old"), suffix)
        new_path = _join_rename_parts(prefix, match.group("new"), suffix)
        return old_path, new_path

    if _PLAIN_RENAME in path:
        old_path, new_path = path.split(_PLAIN_RENAME, 1)
        return old_path.strip(), new_path.strip()

    return None


def _join_rename_parts(prefix: str, middle: str, suffix: str) -> str:
    joined = f"{prefix}{middle.strip()}{suffix}".replace("//", "/")
    return joined.lstrip("/")


def destination_path(path: str) -> str:
    """The path a numstat entry ends up at (the new side of a rename)."""
    rename = split_rename_path(path)
    return rename[1] if rename else path


def get_file_type(
    path: str,
    mappings: Optional[Dict[str, str]] = None,
    binary_extensions: Optional[Iterable[str]] = None,
) -> str:
    """
    Classify a path by its lowercased extension.

    Binary extensions win over the label table; anything unmapped is ``Other``.
    """
    mappings = DEFAULT_FILE_TYPE_MAPPINGS if mappings is None else mappings
    if binary_extensions is None:
        binary_extensions = DEFAULT_BINARY_EXTENSIONS

    ext = os.path.splitext(destination_path(path))[1].lower()
    if not ext:
        return UNKNOWN_LABEL
    if ext in binary_extensions:
        return BINARY_LABEL
    return mappings.get(ext, UNKNOWN_LABEL)


# ============================================================================
# NUMSTAT PARSING
# ============================================================================


def unquote_path(path: str) -> str:
    """
    Undo git's C-style quoting of a path (``"a\\tb"``, ``"caf\\303\\251"``).

    Unquoted paths are returned unchanged.
    """
    if len(path) < 2 or not (path.startswith('"') and path.endswith('"')):
        return path
    raw = codecs.escape_decode(path[1:-1].encode("utf-8"))[0]
    return raw.decode("utf-8", errors="replace")


def _split_numstat_line(line: str) -> Optional[Tuple[str, str, str]]:
    parts = line.split("\t")
    if len(parts) < 3:
        return None
    # File names may themselves contain tabs
    path = "\t".join(parts[2:])
    if not path.strip():
        return None
    return parts[0].strip(), parts[1].strip(), unquote_path(path)


def parse_numstat(numstat_output: str) -> DiffSummary:
    """
    Parse ``git --numstat`` text into a DiffSummary.

    A ``-`` count marks a binary entry (kept, with zero line counts);
    non-numeric counts and lines without a path are skipped.
    """
    summary = DiffSummary()
    for line in numstat_output.splitlines():
        if not line.strip():
            continue
        split = _split_numstat_line(line)
        if split is None:
            continue
        added, deleted, path = split

        if added == "-" or deleted == "-":
            summary.files.append(NumstatEntry(path, 0, 0, binary=True))
            continue
        if not (added.isdigit() and deleted.isdigit()):
            continue
        summary.files.append(NumstatEntry(path, int(added), int(deleted)))
    return summary


def parse_byte_changes(numstat_output: str, bytes_per_line: int = 50) -> ByteChanges:
    """
    Estimate byte deltas from ``git --numstat`` text.

    Args:
        numstat_output: Raw numstat lines for one commit
        bytes_per_line: Bytes attributed to every added or deleted line

    Returns:
        ByteChanges with per-path estimates; binary (``-``) and malformed
        lines contribute nothing and are absent from ``file_changes``
    """
    result = ByteChanges()
    for line in numstat_output.splitlines():
        if not line.strip():
            continue
        split = _split_numstat_line(line)
        if split is None:
            continue
        added, deleted, path = split

        if added == "-" or deleted == "-":
            continue
        if not (added.isdigit() and deleted.isdigit()):
            continue

        bytes_added = int(added) * bytes_per_line
        bytes_deleted = int(deleted) * bytes_per_line
        entry = result.file_changes.setdefault(
            path, {"bytes_added": 0, "bytes_deleted": 0}
        )
        entry["bytes_added"] += bytes_added
        entry["bytes_deleted"] += bytes_deleted
        result.total_bytes_added += bytes_added
        result.total_bytes_deleted += bytes_deleted
    return result


def parse_commit_diff(
    diff_summary: Optional[DiffSummary],
    byte_changes: Optional[ByteChanges],
    config: Optional[TallyConfig] = None,
) -> ParsedDiff:
    """
    Combine the line summary and the byte estimates of one commit.

    Raises:
        DiffContractError: if the summary (or its file list) or the byte
            changes are absent
    """
    if diff_summary is None or diff_summary.files is None:
        raise DiffContractError("Diff summary has no file list")
    if byte_changes is None or byte_changes.file_changes is None:
        raise DiffContractError("Byte changes are missing for the diff summary")

    config = config or TallyConfig()
    changes = []
    for entry in diff_summary.files:
        if not entry.path:
            raise DiffContractError("Diff summary entry has no path")

        file_type = get_file_type(
            entry.path, config.file_type_mappings, config.binary_extensions
        )
        if entry.binary:
            file_type = BINARY_LABEL
        estimate = byte_changes.file_changes.get(entry.path, {})
        is_binary = file_type == BINARY_LABEL
        changes.append(
            FileChange(
                path=entry.path,
                lines_added=0 if is_binary else entry.lines_added,
                lines_deleted=0 if is_binary else entry.lines_deleted,
                file_type=file_type,
                bytes_added=estimate.get("bytes_added", 0),
                bytes_deleted=estimate.get("bytes_deleted", 0),
            )
        )
    return ParsedDiff.from_changes(changes)
