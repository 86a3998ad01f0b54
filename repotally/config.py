"""
Configuration for repo-tally.

Resolution order is CLI > config file > preset > defaults. Config files are
YAML (.repo-tally.yaml / .repo-tally.yml) or JSON (.repo-tally.json) and are
auto-discovered in the repository, then in the current directory.
"""

import json
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional

import yaml


class ConfigurationError(ValueError):
    """Raised for unreadable or invalid configuration."""


# ============================================================================
# DEFAULTS
# ============================================================================

DEFAULT_EXCLUSION_PATTERNS = [
    # Images
    "**/*.jpg",
    "**/*.jpeg",
    "**/*.png",
    "**/*.gif",
    "**/*.svg",
    "**/*.bmp",
    "**/*.webp",
    # Documents
    "**/*.md",
    "**/*.pdf",
    "**/*.doc",
    "**/*.docx",
    "**/*.xls",
    "**/*.xlsx",
    # Lock files
    "**/package-lock.json",
    "**/yarn.lock",
    "**/pnpm-lock.yaml",
    "**/composer.lock",
    "**/Cargo.lock",
    "**/poetry.lock",
    "**/Pipfile.lock",
    "**/Gemfile.lock",
    # Build & dependency directories
    "**/node_modules/**/*",
    "**/dist/**/*",
    "**/build/**/*",
    "**/target/**/*",
    "**/vendor/**/*",
    "**/coverage/**/*",
    "**/out/**/*",
    "**/bin/**/*",
    "**/obj/**/*",
    # VCS, editor and system files
    ".git/**/*",
    "**/.gitignore",
    "**/.gitattributes",
    "**/.env",
    "**/.env.*",
    "**/.vscode/**/*",
    "**/.idea/**/*",
    "**/.DS_Store",
    "**/*.log",
    "**/*.tmp",
    # Language-specific artifacts
    "**/__pycache__/**/*",
    "**/*.pyc",
    "**/*.pyo",
    "**/*.class",
    "**/*.jar",
]

DEFAULT_FILE_TYPE_MAPPINGS = {
    ".ts": "TypeScript",
    ".tsx": "TypeScript",
    ".js": "JavaScript",
    ".jsx": "JavaScript",
    ".css": "CSS",
    ".scss": "SCSS",
    ".sass": "SCSS",
    ".html": "HTML",
    ".json": "JSON",
    ".md": "Markdown",
    ".py": "Python",
    ".java": "Java",
    ".cpp": "C++",
    ".cc": "C++",
    ".cxx": "C++",
    ".c": "C",
    ".h": "C",
    ".go": "Go",
    ".rs": "Rust",
    ".php": "PHP",
    ".rb": "Ruby",
    ".swift": "Swift",
    ".kt": "Kotlin",
    ".scala": "Scala",
    ".r": "R",
    ".lua": "Lua",
    ".pl": "Perl",
    ".pm": "Perl",
    ".sql": "SQL",
    ".yaml": "YAML",
    ".yml": "YAML",
    ".xml": "XML",
    ".toml": "TOML",
    ".ini": "INI",
    ".cfg": "Config",
    ".conf": "Config",
    ".properties": "Properties",
    ".env": "Environment",
    ".gradle": "Gradle",
    ".sh": "Shell",
    ".bash": "Shell",
    ".zsh": "Shell",
    ".fish": "Shell",
    ".ps1": "PowerShell",
    ".psm1": "PowerShell",
    ".bat": "Batch",
    ".cmd": "Batch",
    ".dockerfile": "Dockerfile",
    ".mk": "Makefile",
    ".vim": "VimScript",
    ".rst": "reStructuredText",
    ".txt": "Text",
}

DEFAULT_BINARY_EXTENSIONS = [
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".ico", ".svg", ".webp",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".zip", ".tar", ".gz", ".bz2", ".7z", ".rar",
    ".exe", ".dll", ".so", ".dylib", ".lib", ".a",
    ".class", ".jar", ".war", ".ear", ".pyc", ".pyo",
    ".ttf", ".otf", ".woff", ".woff2", ".eot",
    ".mp3", ".mp4", ".avi", ".mov", ".wmv", ".flv",
    ".db", ".sqlite", ".sqlite3",
    ".bin", ".dat", ".img", ".iso",
]

DEFAULT_CATEGORY_MAPPINGS = {
    "TypeScript": "Application",
    "JavaScript": "Application",
    "Python": "Application",
    "Java": "Application",
    "C++": "Application",
    "C": "Application",
    "Go": "Application",
    "Rust": "Application",
    "PHP": "Application",
    "Ruby": "Application",
    "Swift": "Application",
    "Kotlin": "Application",
    "Scala": "Application",
    "R": "Application",
    "Lua": "Application",
    "Perl": "Application",
    "CSS": "Application",
    "SCSS": "Application",
    "HTML": "Application",
    "SQL": "Application",
    "JSON": "Build",
    "YAML": "Build",
    "XML": "Build",
    "TOML": "Build",
    "INI": "Build",
    "Config": "Build",
    "Properties": "Build",
    "Environment": "Build",
    "Gradle": "Build",
    "Shell": "Build",
    "PowerShell": "Build",
    "Batch": "Build",
    "Dockerfile": "Build",
    "Makefile": "Build",
    "VimScript": "Build",
    "Markdown": "Documentation",
    "reStructuredText": "Documentation",
    "Text": "Documentation",
    "Binary": "Other",
}

DEFAULT_TEST_PATTERNS = [
    ".test.",
    ".spec.",
    "/test/",
    "/tests/",
    "/__tests__/",
    "test/",
    "tests/",
    "__tests__/",
]

VALID_CATEGORIES = {"Application", "Test", "Build", "Documentation", "Other"}

CONFIG_FILE_NAMES = [
    ".repo-tally.yaml",
    ".repo-tally.yml",
    ".repo-tally.json",
]


@dataclass
class TallyConfig:
    """Every knob the history core consumes."""

    exclusion_patterns: List[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUSION_PATTERNS)
    )
    bytes_per_line: int = 50
    hourly_threshold_hours: float = 48.0
    file_type_mappings: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_FILE_TYPE_MAPPINGS)
    )
    binary_extensions: List[str] = field(
        default_factory=lambda: list(DEFAULT_BINARY_EXTENSIONS)
    )
    category_mappings: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_MAPPINGS)
    )
    test_patterns: List[str] = field(
        default_factory=lambda: list(DEFAULT_TEST_PATTERNS)
    )
    cache_dir_name: str = "repo-tally-cache"
    cache_version: str = "1.0"
    cache_enabled: bool = True
    max_commits: Optional[int] = None
    blob_workers: int = 4
    memory_limit_mb: Optional[float] = None

    def __post_init__(self):
        if self.bytes_per_line < 0:
            raise ConfigurationError("bytes_per_line must be >= 0")
        if self.hourly_threshold_hours < 0:
            raise ConfigurationError("hourly_threshold_hours must be >= 0")
        if self.max_commits is not None and self.max_commits < 1:
            raise ConfigurationError("max_commits must be a positive integer")
        if self.blob_workers < 1:
            raise ConfigurationError("blob_workers must be >= 1")
        bad = sorted(
            set(self.category_mappings.values()) - VALID_CATEGORIES
        )
        if bad:
            raise ConfigurationError(
                f"Unknown categories in category_mappings: {', '.join(bad)}"
            )
        # Extension lookup is case-insensitive
        self.file_type_mappings = {
            ext.lower(): label for ext, label in self.file_type_mappings.items()
        }
        self.binary_extensions = [ext.lower() for ext in self.binary_extensions]

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "TallyConfig":
        """Build a config from a (possibly kebab-case) mapping."""
        normalized = normalize_keys(data)
        unknown = sorted(set(normalized) - set(cls.field_names()))
        if unknown:
            raise ConfigurationError(f"Unknown configuration key(s): {', '.join(unknown)}")
        return cls(**normalized)

    def with_overrides(self, **overrides) -> "TallyConfig":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k.replace("-", "_"): v for k, v in (data or {}).items()}


# ============================================================================
# CONFIGURATION FILE SUPPORT
# ============================================================================


def load_config_file(config_path: str) -> Dict[str, Any]:
    """
    Load configuration from a YAML or JSON file.

    Args:
        config_path: Path to a .yaml, .yml or .json file

    Returns:
        The parsed mapping (empty for an empty file)
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            if file_ext in [".yaml", ".yml"]:
                data = yaml.safe_load(f)
            elif file_ext == ".json":
                data = json.load(f)
            else:
                raise ConfigurationError(f"Unsupported config file format: {file_ext}")
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot parse {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping at top level")
    return data


def find_config_file(repo_path: str) -> Optional[str]:
    """Auto-discover a config file in the repository, then the current directory."""
    for search_dir in [repo_path, os.getcwd()]:
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path
    return None


# ============================================================================
# CONFIGURATION RESOLUTION
# ============================================================================

PRESETS = {
    "full": {"cache_enabled": True, "max_commits": None},
    "recent": {"max_commits": 100, "cache_enabled": False},
    "fresh": {"clear_cache": True},
}

# Run options that steer a single invocation but are not part of TallyConfig
RUN_OPTIONS = {"clear_cache", "no_cache", "quiet", "verbose", "no_color", "dry_run"}


class ConfigResolver:
    """Resolve settings with precedence: CLI > config file > preset > defaults."""

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        preset_name: Optional[str],
        repo_path: str,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}
        self.config_source = None

        path = config_path or find_config_file(repo_path)
        if path:
            self.config = normalize_keys(load_config_file(path))
            self.config_source = path

        final_preset_name = preset_name or self.config.pop("preset", None)
        if final_preset_name and final_preset_name not in PRESETS:
            raise ConfigurationError(f"Unknown preset: {final_preset_name}")
        self.preset = dict(PRESETS.get(final_preset_name, {}))

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve one value based on precedence"""
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        if key in self.preset:
            return self.preset[key]
        return default

    def build_config(self) -> TallyConfig:
        """Merge every layer into a validated TallyConfig."""
        merged: Dict[str, Any] = {}
        for layer in (self.preset, self.config, self.cli):
            merged.update({k: v for k, v in layer.items() if k not in RUN_OPTIONS})
        return TallyConfig.from_mapping(merged)
