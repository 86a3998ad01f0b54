"""
Command-line entry point: walk a repository and export the tally datasets.
"""

import hashlib
import json
import os
import sys
import traceback
from datetime import datetime, timezone
from typing import Dict, List, Optional

import click

from repotally import SCHEMA_VERSION, VERSION
from repotally.aggregators import ALL_AGGREGATORS
from repotally.config import PRESETS, ConfigResolver, ConfigurationError, TallyConfig
from repotally.diff_parser import DiffContractError
from repotally.git_source import GitCommandError, RepositoryAccessError
from repotally.history import AnalysisCancelled, GitHistoryWalker
from repotally.models import CommitRecord
from repotally.reporter import ProgressReporter, RunMetrics

ERRORS_FILE = "tally_errors.txt"
COMMITS_FILE = "commits.json"

DATASET_FILES = {
    aggregator_cls.dataset_name: (f"{aggregator_cls.dataset_name}.json", aggregator_cls)
    for aggregator_cls in ALL_AGGREGATORS
}


# ============================================================================
# EXPORT & MANIFEST
# ============================================================================


def export_commits(commits: List[CommitRecord], output_path: str) -> int:
    payload = json.dumps(
        {
            "schema_version": SCHEMA_VERSION,
            "total_commits": len(commits),
            "commits": [commit.to_dict() for commit in commits],
        },
        indent=2,
        ensure_ascii=False,
    )
    with open(output_path, "w", encoding="utf-8") as f:
        f.write(payload)
    return len(payload.encode("utf-8"))


def export_datasets(
    commits: List[CommitRecord],
    output_dir: str,
    config: TallyConfig,
    reporter: ProgressReporter,
) -> Dict[str, str]:
    """
    Write every dataset into ``output_dir``.

    Returns:
        Mapping of dataset name to file name (relative to output_dir) for
        every dataset that was written
    """
    with reporter.stage("Dataset Export", f"Writing datasets to {output_dir}") as stats:
        os.makedirs(output_dir, exist_ok=True)

        datasets = {}
        export_commits(commits, os.path.join(output_dir, COMMITS_FILE))
        datasets["commits"] = COMMITS_FILE

        for name, (file_name, aggregator_cls) in DATASET_FILES.items():
            aggregator = aggregator_cls(config, reporter)
            try:
                size = aggregator.export(commits, os.path.join(output_dir, file_name))
            except (OSError, ValueError) as e:
                reporter.warning(f"{aggregator_cls.__name__} export failed: {e}")
                continue
            datasets[name] = file_name
            reporter.debug(f"{file_name}: {size:,} bytes ({aggregator.processing_time:.2f}s)")

        stats["Datasets"] = len(datasets)
    return datasets


def generate_manifest(
    output_dir: str,
    repo_path: str,
    metrics: RunMetrics,
    datasets: Dict[str, str],
    fingerprint: Optional[str] = None,
) -> Dict:
    """Generate manifest.json with dataset sizes and checksums"""
    manifest = {
        "generator_version": VERSION,
        "schema_version": SCHEMA_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "repository": repo_path,
        "repository_fingerprint": fingerprint,
        "run_metrics": metrics.to_dict(),
        "datasets": {},
    }

    for dataset_name, file_name in datasets.items():
        full_path = os.path.join(output_dir, file_name)
        if not os.path.exists(full_path):
            continue
        with open(full_path, "rb") as f:
            data = f.read()
        manifest["datasets"][dataset_name] = {
            "file": file_name,
            "schema_version": SCHEMA_VERSION,
            "file_size_bytes": len(data),
            "sha256": hashlib.sha256(data).hexdigest(),
        }

    with open(os.path.join(output_dir, "manifest.json"), "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, ensure_ascii=False)

    return manifest


# ============================================================================
# CLI INTERFACE
# ============================================================================


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument(
    "repo_path",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
)
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False),
    help="Output directory (default: tally_output_TIMESTAMP)",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml, .yml or .json)",
)
@click.option(
    "--preset",
    type=click.Choice(sorted(PRESETS)),
    help="Use a predefined run configuration",
)
# History window & cache
@click.option("--max-commits", type=click.IntRange(min=1), help="Only the newest N commits (bypasses the cache)")
@click.option("--no-cache", is_flag=True, default=None, help="Neither read nor write the cache")
@click.option("--clear-cache", is_flag=True, default=None, help="Delete this repository's cache first")
# Counting
@click.option(
    "--exclude",
    multiple=True,
    metavar="GLOB",
    help="Extra exclusion glob (repeatable), added to the configured ones",
)
@click.option("--bytes-per-line", type=click.IntRange(min=0), help="Estimated bytes per changed line")
@click.option("--hourly-threshold", type=float, help="History span (hours) below which buckets are hourly")
# Performance
@click.option("--workers", type=click.IntRange(min=1), help="Concurrent blob lookups per commit")
@click.option("--memory-limit", type=float, help="Memory limit in MB")
# Output Control
@click.option("-q", "--quiet", is_flag=True, default=None, help="Suppress progress output")
@click.option("-v", "--verbose", is_flag=True, default=None, help="Show detailed progress information")
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.option(
    "--dry-run",
    is_flag=True,
    default=None,
    help="Show the resolved configuration without walking the history",
)
@click.version_option(version=VERSION)
def main(
    repo_path,
    output,
    config,
    preset,
    max_commits,
    no_cache,
    clear_cache,
    exclude,
    bytes_per_line,
    hourly_threshold,
    workers,
    memory_limit,
    quiet,
    verbose,
    no_color,
    dry_run,
):
    """
    repo-tally: line and byte statistics over a repository's git history.

    Writes commits.json, time_series.json, linear_series.json,
    contributors.json, file_types.json, awards.json, top_files.json and
    manifest.json.
    """
    cli_args = {
        "max_commits": max_commits,
        "cache_enabled": False if no_cache else None,
        "bytes_per_line": bytes_per_line,
        "hourly_threshold_hours": hourly_threshold,
        "blob_workers": workers,
        "memory_limit_mb": memory_limit,
        "clear_cache": clear_cache,
        "quiet": quiet,
        "verbose": verbose,
        "no_color": no_color,
        "dry_run": dry_run,
    }

    try:
        resolver = ConfigResolver(cli_args, config, preset, repo_path)
        tally_config = resolver.build_config()
    except (ConfigurationError, FileNotFoundError) as e:
        ProgressReporter(use_colors=not no_color).error(f"Invalid configuration: {e}")
        sys.exit(1)

    if exclude:
        tally_config.exclusion_patterns = tally_config.exclusion_patterns + list(exclude)

    reporter = ProgressReporter(
        quiet=resolver.get("quiet", False),
        verbose=resolver.get("verbose", False),
        use_colors=not resolver.get("no_color", False),
    )
    should_clear = bool(resolver.get("clear_cache", False))

    if resolver.config_source:
        reporter.info(f"Using config file: {resolver.config_source}")

    if resolver.get("dry_run", False):
        reporter.info("DRY RUN MODE - No history will be read")
        reporter.info(f"Repository: {repo_path}")
        reporter.info(f"Max commits: {tally_config.max_commits or 'all'}")
        reporter.info(f"Cache: {'enabled' if tally_config.cache_enabled else 'disabled'}")
        if should_clear:
            reporter.info("Cache will be cleared first")
        reporter.info(f"Exclusion patterns: {len(tally_config.exclusion_patterns)}")
        reporter.info(f"Bytes per line: {tally_config.bytes_per_line}")
        reporter.info("Datasets to generate:")
        for file_name in [COMMITS_FILE] + [f for f, _ in DATASET_FILES.values()]:
            reporter.info(f"  - {file_name}")
        return

    output_dir = output or f"tally_output_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

    try:
        walker = GitHistoryWalker(repo_path, tally_config, reporter)
        commits = walker.walk(clear_cache=should_clear)

        os.makedirs(output_dir, exist_ok=True)
        reporter.info(f"Output directory: {output_dir}")
        datasets = export_datasets(commits, output_dir, tally_config, reporter)
        generate_manifest(
            output_dir, walker.repo_path, walker.metrics, datasets, walker.fingerprint
        )

        if walker.errors:
            with open(os.path.join(output_dir, ERRORS_FILE), "w", encoding="utf-8") as f:
                f.write("\n".join(walker.errors) + "\n")
            reporter.warning(f"{len(walker.errors)} problem(s) logged to {ERRORS_FILE}")

        reporter.summary(
            {
                "Repository": walker.repo_path,
                "Output directory": output_dir,
                "Total commits": f"{walker.metrics.commits_total:,}",
                "From cache": f"{walker.metrics.commits_from_cache:,}",
                "Failed commits": f"{walker.metrics.commits_failed:,}",
                "Datasets generated": len(datasets),
            }
        )
        reporter.success(f"Tally complete! Results saved to: {output_dir}")

    except (RepositoryAccessError, DiffContractError, GitCommandError) as e:
        reporter.error(str(e))
        sys.exit(1)
    except (AnalysisCancelled, KeyboardInterrupt):
        reporter.error("Analysis cancelled; nothing was cached for unfinished commits")
        sys.exit(1)
    except MemoryError as e:
        reporter.error(str(e))
        sys.exit(1)
    except Exception as e:
        reporter.error(f"Analysis failed: {e}")
        if reporter.verbose:
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
