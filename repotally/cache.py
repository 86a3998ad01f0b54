"""
Incremental cache of fully-resolved commit records.

One JSON file per repository fingerprint under ``<tmpdir>/<cache_dir_name>/``.
Read and write failures never propagate: a bad read is a miss, a failed
write is reported and skipped.
"""

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from repotally.models import CommitRecord
from repotally.reporter import ProgressReporter


@dataclass
class CacheEntry:
    fingerprint: str
    version: str
    last_commit_sha: str
    cached_at: str
    commits: List[CommitRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "repository_hash": self.fingerprint,
            "last_commit_sha": self.last_commit_sha,
            "cached_at": self.cached_at,
            "commits": [commit.to_dict() for commit in self.commits],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            fingerprint=data["repository_hash"],
            version=data["version"],
            last_commit_sha=data["last_commit_sha"],
            cached_at=data.get("cached_at", ""),
            commits=[CommitRecord.from_dict(item) for item in data["commits"]],
        )


class CommitCache:
    """File-backed store of CacheEntry objects keyed by fingerprint."""

    def __init__(
        self,
        cache_dir_name: str,
        base_dir: Optional[str] = None,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.cache_dir = os.path.join(base_dir or tempfile.gettempdir(), cache_dir_name)
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.warnings: List[str] = []

    def _warn(self, message: str):
        self.warnings.append(message)
        self.reporter.warning(message)

    def cache_path(self, fingerprint: str) -> str:
        return os.path.join(self.cache_dir, f"{fingerprint}.json")

    def load(self, fingerprint: str, version: str) -> Optional[CacheEntry]:
        """
        Return the stored entry, or None for an unknown fingerprint, a
        schema-version mismatch or an unreadable file.
        """
        path = self.cache_path(fingerprint)
        if not os.path.exists(path):
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if data.get("version") != version:
                return None
            entry = CacheEntry.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            self._warn(f"Ignoring unreadable cache {path}: {e}")
            return None

        if entry.fingerprint != fingerprint:
            return None
        return entry

    def save(self, fingerprint: str, commits: List[CommitRecord], version: str) -> bool:
        """
        Overwrite the entry for ``fingerprint``.

        Returns:
            True if the entry was written, False if persisting failed
        """
        entry = CacheEntry(
            fingerprint=fingerprint,
            version=version,
            last_commit_sha=commits[-1].sha if commits else "",
            cached_at=datetime.now(timezone.utc).isoformat(),
            commits=list(commits),
        )
        path = self.cache_path(fingerprint)
        tmp_path = None
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{fingerprint}.", suffix=".tmp", dir=self.cache_dir
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(entry.to_dict(), f, ensure_ascii=False)
            os.replace(tmp_path, path)
            tmp_path = None
            return True
        except OSError as e:
            self._warn(f"Could not write cache {path}: {e}")
            return False
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)

    def clear(self, fingerprint: str) -> bool:
        """Delete the stored entry; True if one existed."""
        path = self.cache_path(fingerprint)
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            self._warn(f"Could not remove cache {path}: {e}")
            return False
        return True
