"""
The version-control data source: thin subprocess wrappers around ``git``.
"""

import hashlib
import os
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from repotally.exclusions import BlobInspector

# Field and record separators for the commit listing
FIELD_SEP = "\x00"
RECORD_SEP = "\x1e"
LOG_FORMAT = "%H%x00%an%x00%ae%x00%aI%x00%s%x1e"


class GitCommandError(RuntimeError):
    """A git subprocess exited non-zero (or could not be started)."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(
            f"git command failed ({returncode}): {' '.join(self.command)}"
            + (f": {self.stderr}" if self.stderr else "")
        )


class BlobLookupError(GitCommandError):
    """A point-in-time read of a file at some revision failed."""


class RepositoryAccessError(RuntimeError):
    """The repository root is missing or is not a git work tree."""


@dataclass(frozen=True)
class CommitInfo:
    """Commit metadata from ``git log`` (no diff yet)."""

    sha: str
    author_name: str
    author_email: str
    date: str
    message: str


class GitDataSource:
    """Runs git commands against one repository."""

    def __init__(self, repo_path: str):
        self.repo_path = os.path.abspath(repo_path)

    def run(self, args: List[str], text: bool = True) -> Union[str, bytes]:
        """
        Run ``git -C <repo> <args>`` and return stdout.

        Raises:
            GitCommandError: on a non-zero exit or if git cannot be started
        """
        cmd = ["git", "-C", self.repo_path, *args]
        try:
            if text:
                result = subprocess.run(
                    cmd,
                    capture_output=True,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                )
            else:
                result = subprocess.run(cmd, capture_output=True)
        except OSError as e:
            raise GitCommandError(cmd, -1, str(e)) from e

        if result.returncode != 0:
            stderr = result.stderr
            if isinstance(stderr, bytes):
                stderr = stderr.decode("utf-8", errors="replace")
            raise GitCommandError(cmd, result.returncode, stderr)
        return result.stdout

    def validate(self):
        """Raise RepositoryAccessError unless repo_path is a git work tree."""
        if not os.path.isdir(self.repo_path):
            raise RepositoryAccessError(f"Repository path does not exist: {self.repo_path}")
        try:
            self.run(["rev-parse", "--git-dir"])
        except GitCommandError as e:
            raise RepositoryAccessError(
                f"Not a git repository: {self.repo_path} ({e.stderr or e})"
            ) from e

    def has_commits(self) -> bool:
        try:
            self.run(["rev-parse", "--verify", "--quiet", "HEAD"])
        except GitCommandError:
            return False
        return True

    def list_commits(
        self, max_count: Optional[int] = None, since: Optional[str] = None
    ) -> List[CommitInfo]:
        """
        List commits oldest to newest.

        Args:
            max_count: Keep only the newest N commits (still oldest first)
            since: Only commits after this sha (``since..HEAD``)
        """
        if not self.has_commits():
            return []

        args = ["log", "--reverse", f"--format={LOG_FORMAT}"]
        if max_count is not None:
            args.append(f"-n{max_count}")
        args.append(f"{since}..HEAD" if since else "HEAD")

        commits = []
        for record in self.run(args).split(RECORD_SEP):
            record = record.strip("\n")
            if not record:
                continue
            parts = record.split(FIELD_SEP)
            if len(parts) < 4:
                continue
            commits.append(
                CommitInfo(
                    sha=parts[0],
                    author_name=parts[1],
                    author_email=parts[2],
                    date=parts[3],
                    message=parts[4] if len(parts) > 4 else "",
                )
            )
        return commits

    def is_ancestor(self, sha: str) -> bool:
        """True if ``sha`` is still reachable from HEAD."""
        try:
            self.run(["merge-base", "--is-ancestor", sha, "HEAD"])
        except GitCommandError:
            return False
        return True

    def numstat(self, sha: str) -> str:
        """
        Per-file ``<added>\\t<deleted>\\t<path>`` lines for one commit.

        Paths are printed verbatim (``core.quotePath=false``) so non-ASCII
        names reach the exclusion globs and blob lookups unescaped.
        """
        return self.run(
            [
                "-c",
                "core.quotePath=false",
                "show",
                "--numstat",
                "--format=",
                "-M",
                "-m",
                "--first-parent",
                sha,
            ]
        )

    def remote_url(self) -> str:
        try:
            return self.run(["config", "--get", "remote.origin.url"]).strip()
        except GitCommandError:
            return ""

    def root_commits(self) -> List[str]:
        if not self.has_commits():
            return []
        output = self.run(["rev-list", "--max-parents=0", "HEAD"])
        return sorted(line for line in output.split() if line)


class GitBlobInspector(BlobInspector):
    """Reads historical file contents through ``git show`` / ``git cat-file``."""

    def __init__(self, source: GitDataSource):
        self.source = source

    def line_count(self, revision: str, path: str) -> int:
        try:
            content = self.source.run(["show", f"{revision}:{path}"], text=False)
        except GitCommandError as e:
            raise BlobLookupError(e.command, e.returncode, e.stderr) from e
        if not content:
            return 0
        # Same counting as numstat: a final line without a newline still counts
        return content.count(b"\n") + (0 if content.endswith(b"\n") else 1)

    def byte_size(self, revision: str, path: str) -> int:
        try:
            output = self.source.run(["cat-file", "-s", f"{revision}:{path}"])
        except GitCommandError as e:
            raise BlobLookupError(e.command, e.returncode, e.stderr) from e
        try:
            return int(output.strip())
        except ValueError as e:
            raise BlobLookupError(
                ["cat-file", "-s", f"{revision}:{path}"], 0, f"unexpected size {output!r}"
            ) from e


def generate_repository_fingerprint(source: GitDataSource) -> str:
    """
    Identify a repository by what it is, not by its history.

    sha256 over the absolute path, the origin URL and the root commit(s),
    truncated to 16 hex characters.
    """
    identity = "|".join(
        [source.repo_path, source.remote_url(), ",".join(source.root_commits())]
    )
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:16]
