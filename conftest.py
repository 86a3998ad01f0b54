import os
import subprocess
from typing import Dict, Iterable, Optional, Tuple

import pytest

from repotally.cache import CommitCache
from repotally.config import TallyConfig
from repotally.diff_parser import get_file_type
from repotally.exclusions import BlobInspector
from repotally.models import CommitRecord, FileChange
from repotally.reporter import ProgressReporter


class InMemoryBlobInspector(BlobInspector):
    """Blob sizes keyed by (revision, path); records every lookup."""

    def __init__(self, blobs: Optional[Dict[Tuple[str, str], Tuple[int, int]]] = None):
        self.blobs = dict(blobs or {})
        self.calls = []

    def add(self, revision: str, path: str, lines: int, size: int):
        self.blobs[(revision, path)] = (lines, size)

    def line_count(self, revision, path):
        self.calls.append(("lines", revision, path))
        return self.blobs[(revision, path)][0]

    def byte_size(self, revision, path):
        self.calls.append(("bytes", revision, path))
        return self.blobs[(revision, path)][1]


def make_commit(
    sha: str,
    changes: Iterable[Tuple[str, int, int]],
    date: str = "2024-01-01T10:00:00+00:00",
    author: str = "Alice",
    message: str = "change",
    bytes_per_line: int = 50,
) -> CommitRecord:
    """Build a CommitRecord from (path, added, deleted) triples."""
    files = tuple(
        FileChange(
            path=path,
            lines_added=added,
            lines_deleted=deleted,
            file_type=get_file_type(path),
            bytes_added=added * bytes_per_line,
            bytes_deleted=deleted * bytes_per_line,
        )
        for path, added, deleted in changes
    )
    return CommitRecord(
        sha=sha,
        author_name=author,
        author_email=f"{author.lower()}@example.com",
        date=date,
        message=message,
        lines_added=sum(f.lines_added for f in files),
        lines_deleted=sum(f.lines_deleted for f in files),
        bytes_added=sum(f.bytes_added for f in files),
        bytes_deleted=sum(f.bytes_deleted for f in files),
        files_changed=files,
    )


class GitRepoBuilder:
    """Creates commits with fixed author/committer dates in a scratch repo."""

    def __init__(self, path):
        self.path = str(path)
        os.makedirs(self.path, exist_ok=True)
        self.git("init", "-q")
        self.git("config", "user.email", "tester@test.com")
        self.git("config", "user.name", "Tester")
        self.git("config", "commit.gpgsign", "false")

    def git(self, *args, env=None):
        full_env = dict(os.environ)
        full_env.update(env or {})
        result = subprocess.run(
            ["git", "-C", self.path] + list(args),
            check=True,
            capture_output=True,
            text=True,
            env=full_env,
        )
        return result.stdout

    def write(self, rel_path: str, content: str):
        full = os.path.join(self.path, rel_path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)

    def commit(self, message: str, date: str, author: str = "Tester") -> str:
        self.git("add", "-A")
        self.git(
            "commit",
            "-q",
            "-m",
            message,
            env={
                "GIT_AUTHOR_DATE": date,
                "GIT_COMMITTER_DATE": date,
                "GIT_AUTHOR_NAME": author,
                "GIT_AUTHOR_EMAIL": f"{author.lower()}@test.com",
            },
        )
        return self.git("rev-parse", "HEAD").strip()


def numbered_lines(count: int, prefix: str = "line") -> str:
    return "".join(f"{prefix} {i}\n" for i in range(count))


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def config():
    return TallyConfig()


@pytest.fixture
def blob_inspector():
    return InMemoryBlobInspector()


@pytest.fixture
def commit_factory():
    return make_commit


@pytest.fixture
def sample_commits():
    """Net lines +10, +15 (20-5), +35 (30+5), +50: final total 110."""
    return [
        make_commit("c1", [("src/file1.ts", 10, 0)], "2024-01-01T10:00:00+00:00"),
        make_commit(
            "c2",
            [("src/file2.ts", 20, 0), ("src/file1.ts", 0, 5)],
            "2024-01-01T11:00:00+00:00",
            author="Bob",
        ),
        make_commit(
            "c3",
            [("src/file3.ts", 30, 0), ("src/file2.ts", 5, 0)],
            "2024-01-01T12:00:00+00:00",
        ),
        make_commit("c4", [("src/file5.ts", 50, 0)], "2024-01-01T13:00:00+00:00"),
    ]


@pytest.fixture
def commit_cache(tmp_path, quiet_reporter):
    return CommitCache("tally-test-cache", base_dir=str(tmp_path), reporter=quiet_reporter)


@pytest.fixture
def git_repo(tmp_path):
    """
    Six commits one hour apart:

    file1 (10 lines), file2 (20), file3 (30), file3 -> 35, file2 -> 15,
    file5 (50). Tracked size at HEAD is 110 lines.
    """
    repo = GitRepoBuilder(tmp_path / "repo")
    repo.write("src/file1.ts", numbered_lines(10, "one"))
    repo.commit("add file1", "2024-01-01T10:00:00+00:00")
    repo.write("src/file2.ts", numbered_lines(20, "two"))
    repo.commit("add file2", "2024-01-01T11:00:00+00:00", author="Bob")
    repo.write("src/file3.ts", numbered_lines(30, "three"))
    repo.commit("add file3", "2024-01-01T12:00:00+00:00")
    repo.write("src/file3.ts", numbered_lines(35, "three"))
    repo.commit("grow file3", "2024-01-01T13:00:00+00:00")
    repo.write("src/file2.ts", numbered_lines(15, "two"))
    repo.commit("shrink file2", "2024-01-01T14:00:00+00:00", author="Bob")
    repo.write("src/file5.ts", numbered_lines(50, "five"))
    repo.commit("add file5", "2024-01-01T15:00:00+00:00")
    return repo


@pytest.fixture
def walker_factory(tmp_path, quiet_reporter):
    """Build walkers whose cache lives under tmp_path."""
    from repotally.history import GitHistoryWalker

    def build(repo_path, config=None, **kwargs):
        config = config or TallyConfig()
        cache = kwargs.pop(
            "cache",
            CommitCache(config.cache_dir_name, base_dir=str(tmp_path / "cache"), reporter=quiet_reporter),
        )
        return GitHistoryWalker(
            repo_path, config, quiet_reporter, cache=cache, **kwargs
        )

    return build
