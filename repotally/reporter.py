"""
Console progress reporting, run metrics and memory guarding.
"""

import os
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import psutil
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

colorama_init(autoreset=True)

# level -> (tag, color, tag_only); only errors go to stderr and survive quiet mode
_LEVELS = {
    "debug": ("   ", Style.DIM, False),
    "info": ("[info] ", Fore.BLUE, True),
    "warning": ("[warn] ", Fore.YELLOW + Style.BRIGHT, True),
    "error": ("ERROR: ", Fore.RED + Style.BRIGHT, False),
    "success": ("", Fore.GREEN + Style.BRIGHT, False),
}


class ProgressReporter:
    """
    Console output for a tally run: the History and Dataset Export stages,
    a tqdm bar over commits, and one-line messages.

    Quiet mode suppresses everything except errors; ``debug`` lines and
    per-stage statistics only appear in verbose mode.
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{Style.RESET_ALL}" if self.use_colors else text

    def _emit(self, level: str, message: str):
        tag, color, tag_only = _LEVELS[level]
        if level == "error":
            print(self._paint(f"{tag}{message}", color), file=sys.stderr)
            return
        if self.quiet or (level == "debug" and not self.verbose):
            return
        if tag_only:
            print(f"{self._paint(tag, color)}{message}")
        else:
            print(self._paint(f"{tag}{message}", color))

    def debug(self, message: str):
        self._emit("debug", message)

    def info(self, message: str):
        self._emit("info", message)

    def warning(self, message: str):
        self._emit("warning", message)

    def error(self, message: str):
        self._emit("error", message)

    def success(self, message: str):
        self._emit("success", message)

    @contextmanager
    def stage(self, name: str, message: str = "") -> Iterator[Dict[str, Any]]:
        """
        Frame one stage of the run.

        Yields a dict the caller fills with statistics; they are printed
        with the elapsed time when the stage finishes without error.
        """
        stats: Dict[str, Any] = {}
        started = time.time()
        if not self.quiet:
            print(self._paint(f"\n> {name}", Fore.CYAN + Style.BRIGHT))
            if message:
                print(f"   {message}")
        yield stats
        if self.quiet:
            return
        print(self._paint(f"[done] {name} ({time.time() - started:.2f}s)", Fore.GREEN))
        if self.verbose:
            for key, value in stats.items():
                print(f"   {key}: {value}")

    def progress_bar(self, total: int, desc: str = "Commits") -> Optional[tqdm]:
        """A commit progress bar, or None when quiet or there is nothing to do."""
        if self.quiet or total <= 0:
            return None
        return tqdm(total=total, desc=desc, unit=" commits", ncols=100, leave=False)

    def summary(self, stats: Dict[str, Any]):
        if self.quiet:
            return
        width = max(len(key) for key in stats) if stats else 0
        print(self._paint("\nTally summary", Fore.MAGENTA + Style.BRIGHT))
        for key, value in stats.items():
            print(f"   {key.ljust(width)}  {value}")
        print(f"   {'Elapsed'.ljust(width)}  {time.time() - self.start_time:.2f}s")


# ============================================================================
# METRICS & RESOURCE LIMITS
# ============================================================================


@dataclass
class RunMetrics:
    """Counters for one walk over the history."""

    commits_total: int = 0
    commits_from_cache: int = 0
    commits_fetched: int = 0
    commits_failed: int = 0
    cache_hit: bool = False
    total_time: float = 0.0
    memory_peak_mb: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commits_total": self.commits_total,
            "commits_from_cache": self.commits_from_cache,
            "commits_fetched": self.commits_fetched,
            "commits_failed": self.commits_failed,
            "cache_hit": self.cache_hit,
            "total_time_seconds": round(self.total_time, 2),
            "memory_peak_mb": round(self.memory_peak_mb, 2),
        }


class MemoryMonitor:
    """Monitor memory usage and enforce limits"""

    def __init__(self, limit_mb: Optional[float] = None):
        self.limit_mb = limit_mb
        self.peak_mb = 0.0
        self._process = psutil.Process(os.getpid())

    def check_memory(self) -> float:
        """Return current RSS in MB; raise MemoryError above the limit."""
        memory_mb = self._process.memory_info().rss / 1024 / 1024
        self.peak_mb = max(self.peak_mb, memory_mb)

        if self.limit_mb and memory_mb > self.limit_mb:
            raise MemoryError(
                f"Memory limit exceeded: {memory_mb:.1f}MB > {self.limit_mb}MB"
            )
        return memory_mb

    def get_peak(self) -> float:
        return self.peak_mb
