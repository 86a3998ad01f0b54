"""
Commit history walker.

Drives parsing and exclusion resolution for every commit, oldest to newest,
and decides whether the run can be served from (and extend) the cache.
"""

import threading
import time
from typing import List, Optional

from repotally.cache import CommitCache
from repotally.config import TallyConfig
from repotally.diff_parser import parse_byte_changes, parse_commit_diff, parse_numstat
from repotally.exclusions import BlobInspector, ExclusionResolver
from repotally.git_source import (
    CommitInfo,
    GitBlobInspector,
    GitCommandError,
    GitDataSource,
    generate_repository_fingerprint,
)
from repotally.models import CommitRecord
from repotally.reporter import MemoryMonitor, ProgressReporter, RunMetrics


class AnalysisCancelled(RuntimeError):
    """The run was cancelled between two commits."""


class GitHistoryWalker:
    """
    Produce the ordered CommitRecord list for one repository.

    A commit whose git queries fail becomes a zero-delta record (metadata
    only) and the failure is kept in ``errors``; the scan goes on.
    Cancellation and the memory limit are checked between commits, so a
    half-processed commit never reaches the cache.
    """

    def __init__(
        self,
        repo_path: str,
        config: Optional[TallyConfig] = None,
        reporter: Optional[ProgressReporter] = None,
        source: Optional[GitDataSource] = None,
        blob_inspector: Optional[BlobInspector] = None,
        cache: Optional[CommitCache] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = config or TallyConfig()
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.source = source or GitDataSource(repo_path)
        self.repo_path = self.source.repo_path
        self.blob_inspector = blob_inspector or GitBlobInspector(self.source)
        self.resolver = ExclusionResolver(self.config, self.blob_inspector)
        self.cache = cache or CommitCache(
            self.config.cache_dir_name, reporter=self.reporter
        )
        self.cancel_event = cancel_event
        self.memory_monitor = MemoryMonitor(limit_mb=self.config.memory_limit_mb)
        self.errors: List[str] = []
        self.metrics = RunMetrics()
        self.fingerprint: Optional[str] = None
        self._failed_shas = set()

    # ------------------------------------------------------------------
    # Per-commit processing
    # ------------------------------------------------------------------

    def process_commit(self, info: CommitInfo) -> CommitRecord:
        """
        Parse and resolve one commit.

        Raises:
            GitCommandError: if a git query for this commit fails
            DiffContractError: if the parsed structures are malformed
        """
        numstat_output = self.source.numstat(info.sha)
        summary = parse_numstat(numstat_output)
        byte_changes = parse_byte_changes(numstat_output, self.config.bytes_per_line)
        parsed = parse_commit_diff(summary, byte_changes, self.config)
        resolved = self.resolver.resolve(info.sha, parsed)

        return CommitRecord(
            sha=info.sha,
            author_name=info.author_name,
            author_email=info.author_email,
            date=info.date,
            message=info.message,
            lines_added=resolved.lines_added,
            lines_deleted=resolved.lines_deleted,
            bytes_added=resolved.bytes_added,
            bytes_deleted=resolved.bytes_deleted,
            files_changed=tuple(resolved.files_changed),
        )

    @staticmethod
    def zero_delta_record(info: CommitInfo) -> CommitRecord:
        return CommitRecord(
            sha=info.sha,
            author_name=info.author_name,
            author_email=info.author_email,
            date=info.date,
            message=info.message,
        )

    def _check_interrupts(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise AnalysisCancelled("Analysis cancelled by user")
        self.memory_monitor.check_memory()

    def build_records(self, infos: List[CommitInfo]) -> List[CommitRecord]:
        """
        Process commits in order.

        Returns:
            One record per input commit, in the same order
        """
        records = []
        self._failed_shas = set()
        progress_bar = self.reporter.progress_bar(len(infos), "Reading commits")
        try:
            for info in infos:
                self._check_interrupts()
                try:
                    record = self.process_commit(info)
                except GitCommandError as e:
                    message = (
                        f"Commit {info.sha[:12]}: {e}; recorded as zero-delta commit"
                    )
                    self.errors.append(message)
                    self.reporter.warning(message)
                    self.metrics.commits_failed += 1
                    self._failed_shas.add(info.sha)
                    record = self.zero_delta_record(info)
                records.append(record)
                if progress_bar:
                    progress_bar.update(1)
        finally:
            if progress_bar:
                progress_bar.close()
        return records

    # ------------------------------------------------------------------
    # Whole-history walk
    # ------------------------------------------------------------------

    def walk(
        self,
        max_commits: Optional[int] = None,
        use_cache: Optional[bool] = None,
        clear_cache: bool = False,
    ) -> List[CommitRecord]:
        """
        Return the resolved commit history, oldest first.

        Args:
            max_commits: Only the newest N commits; bypasses the cache
                entirely. Defaults to ``config.max_commits``.
            use_cache: Read and extend the cache. Defaults to
                ``config.cache_enabled``.
            clear_cache: Delete this repository's cache entry first

        Raises:
            RepositoryAccessError: if the repository cannot be read
            AnalysisCancelled: if ``cancel_event`` is set mid-run
            MemoryError: if the configured memory limit is exceeded
        """
        start_time = time.time()
        self.metrics = RunMetrics()
        cache_warnings_before = len(self.cache.warnings)

        if clear_cache:
            self.fingerprint = generate_repository_fingerprint(self.source)
            if self.cache.clear(self.fingerprint):
                self.reporter.info("Cache cleared")

        self.source.validate()
        if max_commits is None:
            max_commits = self.config.max_commits
        if use_cache is None:
            use_cache = self.config.cache_enabled

        with self.reporter.stage("History", f"Walking {self.repo_path}") as stats:
            if max_commits is not None or not use_cache:
                if max_commits is not None:
                    self.reporter.debug(f"Bounded to {max_commits} commits; cache bypassed")
                commits = self.build_records(self.source.list_commits(max_count=max_commits))
                self.metrics.commits_fetched = len(commits)
            else:
                commits = self._walk_with_cache()

            self.errors.extend(self.cache.warnings[cache_warnings_before:])
            self.metrics.commits_total = len(commits)
            self.metrics.total_time = time.time() - start_time
            self.metrics.memory_peak_mb = self.memory_monitor.get_peak()

            stats.update(
                {
                    "Commits": f"{len(commits):,}",
                    "From cache": f"{self.metrics.commits_from_cache:,}",
                    "Fetched": f"{self.metrics.commits_fetched:,}",
                    "Failed": f"{self.metrics.commits_failed:,}",
                }
            )
        return commits

    def _walk_with_cache(self) -> List[CommitRecord]:
        if self.fingerprint is None:
            self.fingerprint = generate_repository_fingerprint(self.source)
        entry = self.cache.load(self.fingerprint, self.config.cache_version)

        cached: List[CommitRecord] = []
        since = None
        if entry and entry.commits:
            if self.source.is_ancestor(entry.last_commit_sha):
                cached = list(entry.commits)
                since = entry.last_commit_sha
                self.metrics.cache_hit = True
                self.reporter.info(f"Loaded {len(cached):,} commits from cache")
            else:
                self.reporter.warning(
                    "Cached history is no longer reachable from HEAD; recomputing"
                )

        infos = self.source.list_commits(since=since)
        # The range boundary is already represented in the cache
        infos = [info for info in infos if info.sha != since]
        fresh = self.build_records(infos)

        self.metrics.commits_from_cache = len(cached)
        self.metrics.commits_fetched = len(fresh)
        commits = cached + fresh

        # Only a failure-free prefix is persisted; failed commits are retried next run
        persistable = fresh
        for index, record in enumerate(fresh):
            if record.sha in self._failed_shas:
                persistable = fresh[:index]
                break
        if persistable:
            self.cache.save(
                self.fingerprint, cached + persistable, self.config.cache_version
            )
        return commits
