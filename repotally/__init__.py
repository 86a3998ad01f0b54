"""
repo-tally: incremental, cache-backed line/byte statistics over git history.

The package turns a repository's commit history into consistent aggregate
datasets (time buckets with category breakdowns, per-commit running totals,
contributor and file-type rollups) that a reporting layer can render as-is.
"""

VERSION = "1.2.0"
SCHEMA_VERSION = "1.0.0"
