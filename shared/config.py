"""Configuration management for merge-gates.

Loads YAML config with cascading precedence: repo root → user home → defaults.
"""

import functools
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from shared.models import BugSeverity

# --- Config Schema ---

CONFIG_FILENAME = ".merge-gates.yaml"


class ReviewConfig(BaseModel):
    """Review policy for merges into protected branches."""

    protected_branches: list[str] = Field(
        default_factory=lambda: ["main", "master", "develop", "release"]
    )
    min_reviewers: int = Field(default=1, ge=0)
    large_mr_threshold: int = Field(default=500, ge=0)
    large_mr_min_reviewers: int = Field(default=2, ge=0)
    require_approval: bool = True
    block_self_approval: bool = True
    admin_users: list[str] = Field(default_factory=list)
    emergency_bypass_enabled: bool = False
    alert_on_block: bool = True


class CoverageThresholds(BaseModel):
    line: float = 80.0
    branch: float = 70.0
    function: float = 80.0


class CoverageConfig(BaseModel):
    """Configuration for the coverage quality gate."""

    enabled: bool = True
    strict_mode: bool = False
    thresholds: CoverageThresholds = Field(default_factory=CoverageThresholds)
    new_code_threshold: float = 80.0


class BugTimeouts(BaseModel):
    """SLA timeout per bug severity, in hours."""

    critical: int = 4
    high: int = 24
    medium: int = 72
    low: int = 168

    def for_severity(self, severity: BugSeverity | None) -> int:
        # Bugs without a severity get the most lenient SLA.
        if severity is None:
            return self.low
        return getattr(self, severity.value)


class BugSlaConfig(BaseModel):
    """Configuration for the bug SLA monitor."""

    timeout_hours: BugTimeouts = Field(default_factory=BugTimeouts)
    scan_interval_seconds: int = Field(default=3600, gt=0)
    max_average_response_hours: float = 24.0
    max_average_resolution_hours: float = 72.0
    min_resolution_rate: float = 50.0


class AlertsConfig(BaseModel):
    """Configuration for the outbound alert channel."""

    channel: str = "jsonl"  # "jsonl" | "redis" | "memory"
    topic: str = "alert.notification"
    path: str = "./merge-gates-data/alerts/"
    redis_url: str = "redis://localhost:6379/0"


class StorageConfig(BaseModel):
    """Configuration for the storage backend."""

    backend: str = "jsonl"
    path: str = "./merge-gates-data/"


class MergeGatesConfig(BaseModel):
    """Top-level configuration for merge-gates."""

    review: ReviewConfig = Field(default_factory=ReviewConfig)
    coverage: CoverageConfig = Field(default_factory=CoverageConfig)
    bug_sla: BugSlaConfig = Field(default_factory=BugSlaConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


# --- Config Loading ---


def _find_config_files(start_dir: Path | None = None) -> list[Path]:
    """Find config files in cascading order: user home → repo root.

    Returns paths in precedence order (lowest first, highest last) so that
    later entries override earlier ones when merged.
    """
    candidates: list[Path] = []

    home_config = Path.home() / CONFIG_FILENAME
    if home_config.is_file():
        candidates.append(home_config)

    search_dir = start_dir or Path.cwd()
    repo_config = search_dir / CONFIG_FILENAME
    if repo_config.is_file():
        candidates.append(repo_config)

    return candidates


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict."""
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge override into base. Override values take precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_path: Path | None = None,
    start_dir: Path | None = None,
) -> MergeGatesConfig:
    """Load merge-gates configuration with cascading precedence.

    Priority (highest to lowest):
    1. Explicit config_path (if provided)
    2. Repo root / start_dir .merge-gates.yaml
    3. User home .merge-gates.yaml
    4. Built-in defaults

    Args:
        config_path: Explicit path to a config file (overrides discovery).
        start_dir: Directory to search for config files (defaults to cwd).

    Returns:
        Validated MergeGatesConfig.
    """
    merged: dict[str, Any] = {}

    if config_path is not None:
        if config_path.is_file():
            merged = _load_yaml(config_path)
    else:
        for path in _find_config_files(start_dir):
            merged = _deep_merge(merged, _load_yaml(path))

    return MergeGatesConfig.model_validate(merged)


@functools.lru_cache(maxsize=1)
def get_config() -> MergeGatesConfig:
    """Get the cached global configuration. Loaded once per session."""
    return load_config()


def clear_config_cache() -> None:
    """Clear the cached configuration. Useful for testing."""
    get_config.cache_clear()
