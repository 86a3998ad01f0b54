"""
Aggregators over the ordered CommitRecord list.

Every aggregator is a fold: ``process_commit`` is called once per commit in
history order and ``finalize`` returns plain, JSON-ready data. The same
commits always give the same output; nothing here touches git.
"""

import json
import os
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from repotally import SCHEMA_VERSION
from repotally.config import TallyConfig
from repotally.diff_parser import BINARY_LABEL, split_rename_path
from repotally.models import (
    CategoryBreakdown,
    CommitAward,
    CommitRecord,
    ContributorStats,
    FileChange,
    FileTypeStats,
    SequencePoint,
    TimeBucketPoint,
    TopFile,
)
from repotally.reporter import ProgressReporter

HOURLY = "hour"
DAILY = "day"
AWARD_LIMIT = 5
MIN_COMMITS_FOR_AVERAGE = 5
TOP_FILES_LIMIT = 5

# Lowercased message prefixes/fragments of commits that are not real work
MERGE_PREFIXES = ("merge remote-tracking branch", "merge branch", "resolved conflicts")
MERGE_FRAGMENTS = ("merge pull request",)


# ============================================================================
# HELPERS
# ============================================================================


def parse_commit_date(value: str) -> datetime:
    """Parse an ISO-8601 commit date into an aware UTC datetime."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def bucket_key(moment: datetime, granularity: str) -> str:
    if granularity == HOURLY:
        return moment.strftime("%Y-%m-%dT%H:00:00")
    return moment.strftime("%Y-%m-%d")


def repository_age_hours(commits: List[CommitRecord]) -> float:
    if not commits:
        return 0.0
    first = parse_commit_date(commits[0].date)
    last = parse_commit_date(commits[-1].date)
    return (last - first).total_seconds() / 3600


def get_file_category(change: FileChange, config: TallyConfig) -> str:
    """
    Map a file change to Application/Test/Build/Documentation/Other.

    Binary files are always Other; a path containing a test pattern is Test
    whatever its type; everything else goes through the category table.
    """
    if change.file_type == BINARY_LABEL:
        return "Other"
    if any(pattern in change.path for pattern in config.test_patterns):
        return "Test"
    return config.category_mappings.get(change.file_type, "Other")


def is_real_commit(commit: CommitRecord) -> bool:
    """False for merge and conflict-resolution commits."""
    message = commit.message.lower()
    if message.startswith(MERGE_PREFIXES):
        return False
    return not any(fragment in message for fragment in MERGE_FRAGMENTS)


# ============================================================================
# BASE AGGREGATOR
# ============================================================================


class DatasetAggregator:
    """
    Base class for dataset aggregators.

    Subclasses implement ``reset``, ``process_commit`` and ``finalize``.
    """

    dataset_name = "dataset"

    def __init__(
        self,
        config: Optional[TallyConfig] = None,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.config = config or TallyConfig()
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.processing_time = 0.0
        self.reset()

    def reset(self):
        """Clear accumulated state."""

    def process_commit(self, commit: CommitRecord):
        """Fold one commit - override in subclasses"""

    def finalize(self) -> Dict[str, Any]:
        """Return the dataset - override in subclasses"""
        return {}

    def aggregate(self, commits: List[CommitRecord]) -> Dict[str, Any]:
        """Fold ``commits`` from a clean state and return the dataset."""
        self.reset()
        for commit in commits:
            self.process_commit(commit)
        return self.finalize()

    def export(self, commits: List[CommitRecord], output_path: str) -> int:
        """
        Aggregate and write the dataset as JSON.

        Returns:
            Size of the written JSON in bytes
        """
        start = time.time()
        data = self.aggregate(commits)
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        payload = json.dumps(data, indent=2, ensure_ascii=False)
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(payload)
        self.processing_time = time.time() - start
        return len(payload.encode("utf-8"))


# ============================================================================
# TIME-BUCKET VIEW
# ============================================================================


class TimeBucketAggregator(DatasetAggregator):
    """
    Wall-clock buckets with category breakdowns and running totals.

    Buckets are hourly when the history spans less than
    ``hourly_threshold_hours``, daily otherwise. A zero baseline bucket sits
    one bucket-width before the first commit. Running totals are clamped at
    zero per category after every commit, so partial histories whose
    deletions outweigh the additions in view never show negative sizes.
    """

    dataset_name = "time_series"

    def reset(self):
        self.granularity = DAILY
        self.buckets: "OrderedDict[str, TimeBucketPoint]" = OrderedDict()
        self.cumulative_lines = CategoryBreakdown()
        self.cumulative_bytes = CategoryBreakdown()

    def aggregate(self, commits: List[CommitRecord]) -> Dict[str, Any]:
        self.reset()
        if commits:
            age = repository_age_hours(commits)
            self.granularity = (
                HOURLY if age < self.config.hourly_threshold_hours else DAILY
            )
            first = parse_commit_date(commits[0].date)
            width = timedelta(hours=1) if self.granularity == HOURLY else timedelta(days=1)
            baseline = bucket_key(first - width, self.granularity)
            self.buckets[baseline] = TimeBucketPoint(date=baseline)
        for commit in commits:
            self.process_commit(commit)
        return self.finalize()

    def process_commit(self, commit: CommitRecord):
        key = bucket_key(parse_commit_date(commit.date), self.granularity)
        point = self.buckets.get(key)
        if point is None:
            point = TimeBucketPoint(date=key)
            self.buckets[key] = point

        point.commits += 1
        point.commit_shas.append(commit.sha)

        for change in commit.files_changed:
            category = get_file_category(change, self.config)
            point.bytes_added.add(category, change.bytes_added)
            point.bytes_deleted.add(category, change.bytes_deleted)
            self.cumulative_bytes.add(category, change.bytes_added - change.bytes_deleted)
            # Binary files only ever count towards bytes
            if change.file_type != BINARY_LABEL:
                point.lines_added.add(category, change.lines_added)
                point.lines_deleted.add(category, change.lines_deleted)
                self.cumulative_lines.add(
                    category, change.lines_added - change.lines_deleted
                )

        self.cumulative_lines.clamp_non_negative()
        self.cumulative_bytes.clamp_non_negative()
        point.cumulative_lines = self.cumulative_lines.copy()
        point.cumulative_bytes = self.cumulative_bytes.copy()

    def points(self) -> List[TimeBucketPoint]:
        return [self.buckets[key] for key in sorted(self.buckets)]

    def finalize(self) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "granularity": self.granularity,
            "points": [point.to_dict() for point in self.points()],
        }


def build_time_series(
    commits: List[CommitRecord], config: Optional[TallyConfig] = None
) -> List[TimeBucketPoint]:
    """Time-bucket view of ``commits``, sorted by bucket key."""
    aggregator = TimeBucketAggregator(config)
    aggregator.aggregate(commits)
    return aggregator.points()


# ============================================================================
# SEQUENCE VIEW
# ============================================================================


class SequenceAggregator(DatasetAggregator):
    """
    One point per commit with exact (unclamped) running totals.

    Index 0 is the first commit given; there is no synthetic start point.
    A truncated tail of history is aggregated by seeding ``baseline_lines``
    / ``baseline_bytes`` (and ``start_index``) with the state reached at the
    end of the preceding range.
    """

    dataset_name = "linear_series"

    def __init__(
        self,
        config: Optional[TallyConfig] = None,
        reporter: Optional[ProgressReporter] = None,
        baseline_lines: int = 0,
        baseline_bytes: int = 0,
        start_index: int = 0,
    ):
        self.baseline_lines = baseline_lines
        self.baseline_bytes = baseline_bytes
        self.start_index = start_index
        super().__init__(config, reporter)

    def reset(self):
        self.points: List[SequencePoint] = []
        self.cumulative_lines = self.baseline_lines
        self.cumulative_bytes = self.baseline_bytes

    def process_commit(self, commit: CommitRecord):
        self.cumulative_lines += commit.lines_added - commit.lines_deleted
        self.cumulative_bytes += commit.bytes_added - commit.bytes_deleted
        self.points.append(
            SequencePoint(
                commit_index=self.start_index + len(self.points),
                sha=commit.sha,
                date=commit.date,
                cumulative_lines=self.cumulative_lines,
                cumulative_bytes=self.cumulative_bytes,
                lines_added=commit.lines_added,
                lines_deleted=commit.lines_deleted,
                net_lines=commit.net_lines,
            )
        )

    def finalize(self) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "baseline_lines": self.baseline_lines,
            "baseline_bytes": self.baseline_bytes,
            "points": [point.to_dict() for point in self.points],
        }


def build_sequence(
    commits: List[CommitRecord],
    baseline_lines: int = 0,
    baseline_bytes: int = 0,
    start_index: int = 0,
) -> List[SequencePoint]:
    """By-commit-number view of ``commits``."""
    aggregator = SequenceAggregator(
        baseline_lines=baseline_lines,
        baseline_bytes=baseline_bytes,
        start_index=start_index,
    )
    aggregator.aggregate(commits)
    return aggregator.points


# ============================================================================
# ROLLUPS
# ============================================================================


class ContributorAggregator(DatasetAggregator):
    """Per-author totals, most active first."""

    dataset_name = "contributors"

    def reset(self):
        self.contributors: Dict[str, ContributorStats] = {}

    def process_commit(self, commit: CommitRecord):
        stats = self.contributors.get(commit.author_name)
        if stats is None:
            stats = ContributorStats(
                name=commit.author_name,
                email=commit.author_email,
                first_commit=commit.date,
            )
            self.contributors[commit.author_name] = stats

        stats.commits += 1
        stats.lines_added += commit.lines_added
        stats.lines_deleted += commit.lines_deleted
        stats.bytes_added += commit.bytes_added
        stats.bytes_deleted += commit.bytes_deleted
        stats.last_commit = commit.date

    def ranked(self) -> List[ContributorStats]:
        return sorted(self.contributors.values(), key=lambda s: (-s.commits, s.name))

    def finalize(self) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "total_contributors": len(self.contributors),
            "contributors": [stats.to_dict() for stats in self.ranked()],
        }


class FileTypeAggregator(DatasetAggregator):
    """Lines added per file-type label with their share of the total."""

    dataset_name = "file_types"

    def reset(self):
        self.file_types: Dict[str, FileTypeStats] = {}

    def process_commit(self, commit: CommitRecord):
        for change in commit.files_changed:
            stats = self.file_types.get(change.file_type)
            if stats is None:
                stats = FileTypeStats(file_type=change.file_type)
                self.file_types[change.file_type] = stats
            stats.changes += 1
            stats.bytes_added += change.bytes_added
            if change.file_type != BINARY_LABEL:
                stats.lines += change.lines_added
                stats.net_lines += change.lines_added - change.lines_deleted

    def ranked(self) -> List[FileTypeStats]:
        total_lines = sum(stats.lines for stats in self.file_types.values())
        for stats in self.file_types.values():
            stats.percentage = (
                round(stats.lines / total_lines * 100, 2) if total_lines > 0 else 0.0
            )
        return sorted(self.file_types.values(), key=lambda s: (-s.lines, s.file_type))

    def finalize(self) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "file_types": [stats.to_dict() for stats in self.ranked()],
        }


class CommitAwardsAggregator(DatasetAggregator):
    """Top commits by size of change, ignoring merges."""

    dataset_name = "awards"

    METRICS = {
        "files_modified": lambda c: len(c.files_changed),
        "lines_added": lambda c: c.lines_added,
        "lines_removed": lambda c: c.lines_deleted,
        "bytes_added": lambda c: c.bytes_added,
        "bytes_removed": lambda c: c.bytes_deleted,
    }

    def reset(self):
        self.commits: List[CommitRecord] = []
        self.author_churn: Dict[str, List[int]] = {}

    def process_commit(self, commit: CommitRecord):
        if not is_real_commit(commit):
            return
        self.commits.append(commit)
        totals = self.author_churn.setdefault(commit.author_name, [0, 0])
        totals[0] += 1
        totals[1] += commit.churn

    def top_commits(self, metric: str) -> List[CommitAward]:
        value_of = self.METRICS[metric]
        ranked = sorted(self.commits, key=lambda c: -value_of(c))[:AWARD_LIMIT]
        return [
            CommitAward(
                sha=c.sha,
                author_name=c.author_name,
                date=c.date,
                message=c.message,
                value=value_of(c),
            )
            for c in ranked
        ]

    def average_churn(self) -> List[Dict[str, Any]]:
        """Authors with enough commits, with their mean lines changed per commit."""
        return [
            {
                "name": name,
                "commits": commits,
                "average_lines_changed": round(churn / commits, 2),
            }
            for name, (commits, churn) in self.author_churn.items()
            if commits >= MIN_COMMITS_FOR_AVERAGE
        ]

    def finalize(self) -> Dict[str, Any]:
        averages = self.average_churn()
        return {
            "schema_version": SCHEMA_VERSION,
            "commits": {
                metric: [award.to_dict() for award in self.top_commits(metric)]
                for metric in self.METRICS
            },
            "contributors": {
                "highest_average_lines_changed": sorted(
                    averages, key=lambda a: -a["average_lines_changed"]
                )[:AWARD_LIMIT],
                "lowest_average_lines_changed": sorted(
                    averages, key=lambda a: a["average_lines_changed"]
                )[:AWARD_LIMIT],
            },
        }


class TopFilesAggregator(DatasetAggregator):
    """
    Largest files by net lines and most-changed files by lines touched.

    A rename carries the file's running totals over to its new path. Files
    whose net size is zero or negative never rank as largest.
    """

    dataset_name = "top_files"

    def reset(self):
        self.sizes: Dict[str, int] = {}
        self.churn: Dict[str, int] = {}

    def process_commit(self, commit: CommitRecord):
        for change in commit.files_changed:
            path = change.path
            rename = split_rename_path(path)
            if rename:
                old_path, path = rename
                for totals in (self.sizes, self.churn):
                    if old_path in totals:
                        totals[path] = totals.get(path, 0) + totals.pop(old_path)

            self.sizes[path] = self.sizes.get(path, 0) + change.lines_added - change.lines_deleted
            self.churn[path] = self.churn.get(path, 0) + change.churn

    @staticmethod
    def top(values: Dict[str, int], positive_only: bool = False) -> List[TopFile]:
        """The TOP_FILES_LIMIT highest values; percentages are of their sum."""
        candidates = [
            (path, value)
            for path, value in values.items()
            if value > 0 or not positive_only
        ]
        ranked = sorted(candidates, key=lambda item: -item[1])[:TOP_FILES_LIMIT]
        total = sum(value for _, value in ranked)
        return [
            TopFile(
                path=path,
                value=value,
                percentage=round(value / total * 100, 2) if total > 0 else 0.0,
            )
            for path, value in ranked
        ]

    def finalize(self) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "largest": [f.to_dict() for f in self.top(self.sizes, positive_only=True)],
            "most_churn": [f.to_dict() for f in self.top(self.churn)],
        }


ALL_AGGREGATORS = [
    TimeBucketAggregator,
    SequenceAggregator,
    ContributorAggregator,
    FileTypeAggregator,
    CommitAwardsAggregator,
    TopFilesAggregator,
]
