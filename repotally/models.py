"""
Data structures shared by the parser, the walker, the cache and the aggregators.

FileChange and CommitRecord are frozen: once the walker has produced a record it
is the authoritative unit of history and is never mutated. The breakdown and
point types are plain accumulators that the aggregators fill in and hand to
the reporting layer as dictionaries.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Tuple

CATEGORIES = ("application", "test", "build", "documentation", "other")


# ============================================================================
# HISTORY RECORDS
# ============================================================================


@dataclass(frozen=True)
class FileChange:
    """One file's delta within one commit."""

    path: str
    lines_added: int
    lines_deleted: int
    file_type: str
    bytes_added: int = 0
    bytes_deleted: int = 0

    @property
    def churn(self) -> int:
        return self.lines_added + self.lines_deleted

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileChange":
        return cls(
            path=data["path"],
            lines_added=int(data["lines_added"]),
            lines_deleted=int(data["lines_deleted"]),
            file_type=data["file_type"],
            bytes_added=int(data.get("bytes_added", 0)),
            bytes_deleted=int(data.get("bytes_deleted", 0)),
        )


@dataclass(frozen=True)
class CommitRecord:
    """
    One commit with its aggregate deltas and ordered file changes.

    The aggregate fields are the sums of the file changes, except where the
    exclusion resolver removed an excluded file's contribution or replaced a
    rename with a boundary correction. In both cases the aggregate and the
    file list stay consistent with each other.
    """

    sha: str
    author_name: str
    author_email: str
    date: str
    message: str
    lines_added: int = 0
    lines_deleted: int = 0
    bytes_added: int = 0
    bytes_deleted: int = 0
    files_changed: Tuple[FileChange, ...] = ()

    @property
    def net_lines(self) -> int:
        return self.lines_added - self.lines_deleted

    @property
    def net_bytes(self) -> int:
        return self.bytes_added - self.bytes_deleted

    @property
    def churn(self) -> int:
        return self.lines_added + self.lines_deleted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sha": self.sha,
            "author_name": self.author_name,
            "author_email": self.author_email,
            "date": self.date,
            "message": self.message,
            "lines_added": self.lines_added,
            "lines_deleted": self.lines_deleted,
            "bytes_added": self.bytes_added,
            "bytes_deleted": self.bytes_deleted,
            "files_changed": [change.to_dict() for change in self.files_changed],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommitRecord":
        return cls(
            sha=data["sha"],
            author_name=data["author_name"],
            author_email=data["author_email"],
            date=data["date"],
            message=data["message"],
            lines_added=int(data["lines_added"]),
            lines_deleted=int(data["lines_deleted"]),
            bytes_added=int(data.get("bytes_added", 0)),
            bytes_deleted=int(data.get("bytes_deleted", 0)),
            files_changed=tuple(
                FileChange.from_dict(item) for item in data.get("files_changed", [])
            ),
        )


# ============================================================================
# AGGREGATE STRUCTURES
# ============================================================================


@dataclass
class CategoryBreakdown:
    """Six counters; ``total`` always equals the sum of the five categories."""

    total: int = 0
    application: int = 0
    test: int = 0
    build: int = 0
    documentation: int = 0
    other: int = 0

    def add(self, category: str, value: int):
        key = category.lower()
        if key not in CATEGORIES:
            raise ValueError(f"Unknown file category: {category}")
        setattr(self, key, getattr(self, key) + value)
        self.total += value

    def clamp_non_negative(self):
        """Clamp every category at zero and rebuild the total from them."""
        for key in CATEGORIES:
            if getattr(self, key) < 0:
                setattr(self, key, 0)
        self.total = sum(getattr(self, key) for key in CATEGORIES)

    def copy(self) -> "CategoryBreakdown":
        return CategoryBreakdown(**asdict(self))

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class TimeBucketPoint:
    """One wall-clock bucket (ISO date or ISO hour) of the time-series view."""

    date: str
    commits: int = 0
    commit_shas: List[str] = field(default_factory=list)
    lines_added: CategoryBreakdown = field(default_factory=CategoryBreakdown)
    lines_deleted: CategoryBreakdown = field(default_factory=CategoryBreakdown)
    cumulative_lines: CategoryBreakdown = field(default_factory=CategoryBreakdown)
    bytes_added: CategoryBreakdown = field(default_factory=CategoryBreakdown)
    bytes_deleted: CategoryBreakdown = field(default_factory=CategoryBreakdown)
    cumulative_bytes: CategoryBreakdown = field(default_factory=CategoryBreakdown)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SequencePoint:
    """One entry of the by-commit-number view."""

    commit_index: int
    sha: str
    date: str
    cumulative_lines: int
    cumulative_bytes: int
    lines_added: int
    lines_deleted: int
    net_lines: int
    commits: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ContributorStats:
    name: str
    email: str
    commits: int = 0
    lines_added: int = 0
    lines_deleted: int = 0
    bytes_added: int = 0
    bytes_deleted: int = 0
    first_commit: str = ""
    last_commit: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FileTypeStats:
    file_type: str
    lines: int = 0
    net_lines: int = 0
    bytes_added: int = 0
    changes: int = 0
    percentage: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CommitAward:
    sha: str
    author_name: str
    date: str
    message: str
    value: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TopFile:
    path: str
    value: int
    percentage: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
