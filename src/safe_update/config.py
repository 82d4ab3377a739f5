"""
Configuration management for safe-update.

This module implements the AppConfig Pydantic model and configuration
loading. Configuration is loaded from multiple sources with layered
precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (--config path, or ./safe-update.yml if present)
3. Environment variables (SAFE_UPDATE_* prefix, __ for nesting)
4. Explicit overrides (command-line arguments, highest precedence)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_CONFIG_FILE = Path("safe-update.yml")
DEFAULT_ENV_PREFIX = "SAFE_UPDATE_"

# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout instead of stderr.
        json_format: Whether to emit JSON log lines.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warning, error, critical",
    )
    log_to_stdout: bool = Field(
        default=False,
        description="Log to stdout instead of stderr",
    )
    json_format: bool = Field(
        default=True,
        description="Emit JSON-formatted log lines",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        # Normalize 'warn' to 'warning'
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Repository Configuration
# =============================================================================


class RepositoryConfig(BaseModel):
    """Version control settings.

    Attributes:
        root: Root of the enclosing (parent) repository.
        git_binary: git executable to invoke.
        command_timeout_seconds: Timeout for a single git command.
        require_tag: Require the target version to be an existing tag.
    """

    root: str = Field(
        default=".",
        description="Root directory of the enclosing repository",
    )
    git_binary: str = Field(
        default="git",
        description="git executable",
    )
    command_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for a single git command in seconds",
    )
    require_tag: bool = Field(
        default=True,
        description="Target version must be an existing tag in the module",
    )


# =============================================================================
# Quality Gates Configuration
# =============================================================================


class GatesConfig(BaseModel):
    """Quality gate thresholds.

    Attributes:
        minimum_score: Overall weighted score required to deploy.
        critical_threshold: Score a critical gate needs to pass.
        performance_threshold: Score the performance gate needs to pass.
        max_bundle_size_bytes: Bundle size above which performance is penalised.
        max_build_time_seconds: Build time above which performance is penalised.
        max_dependency_count: Dependency count above which performance is penalised.
    """

    minimum_score: float = Field(default=80.0, ge=0, le=100)
    critical_threshold: float = Field(default=90.0, ge=0, le=100)
    performance_threshold: float = Field(default=70.0, ge=0, le=100)
    max_bundle_size_bytes: int = Field(default=5_000_000, ge=0)
    max_build_time_seconds: float = Field(default=300.0, ge=0)
    max_dependency_count: int = Field(default=50, ge=0)


# =============================================================================
# Module Facts Configuration
# =============================================================================


class FactsConfig(BaseModel):
    """Settings for measuring module facts.

    Attributes:
        audit_command: Command printing a JSON vulnerability audit.
        run_build: Whether to run the module build to measure stability.
        build_command: Build command; defaults to `npm run build` when the
            manifest defines a build script.
        build_timeout_seconds: Timeout for the build and audit commands.
        source_extensions: File extensions scanned by source heuristics.
        max_scan_files: Maximum number of files read by source heuristics.
        required_ignore_patterns: Patterns a safe .gitignore must contain.
        health_url: Optional URL probed for the health endpoint check.
        health_timeout_seconds: Timeout for the health probe.
    """

    audit_command: list[str] = Field(
        default_factory=lambda: ["npm", "audit", "--json"],
        description="Command printing a JSON vulnerability audit",
    )
    run_build: bool = Field(
        default=True,
        description="Run the module build while collecting facts",
    )
    build_command: list[str] | None = Field(
        default=None,
        description="Build command (default: npm run build)",
    )
    build_timeout_seconds: float = Field(default=600.0, gt=0)
    source_extensions: list[str] = Field(
        default_factory=lambda: [".js", ".ts", ".tsx", ".jsx", ".json", ".py"],
    )
    max_scan_files: int = Field(default=500, ge=1)
    required_ignore_patterns: list[str] = Field(
        default_factory=lambda: [".env", "*.key", "*.pem", "node_modules"],
    )
    health_url: str | None = Field(
        default=None,
        description="URL probed for a 200 response by the health endpoint check",
    )
    health_timeout_seconds: float = Field(default=5.0, gt=0)


# =============================================================================
# Updates Configuration
# =============================================================================


class UpdatesConfig(BaseModel):
    """Update orchestration settings.

    Attributes:
        stop_on_error: Default batch mode; halt after the first failure.
        commit_prefix: Conventional-commit type used for parent commits.
    """

    stop_on_error: bool = Field(
        default=False,
        description="Halt a batch after the first failed update",
    )
    commit_prefix: str = Field(
        default="update",
        description="Commit type prefix for parent repository commits",
    )

    @field_validator("commit_prefix")
    @classmethod
    def validate_commit_prefix(cls, v: str) -> str:
        """Reject empty or multi-line prefixes."""
        v = v.strip()
        if not v or "\n" in v:
            raise ValueError("commit_prefix must be a single non-empty line")
        return v


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        logging: Logging configuration.
        repository: Version control settings.
        gates: Quality gate thresholds.
        facts: Module fact measurement settings.
        updates: Update orchestration settings.
    """

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    repository: RepositoryConfig = Field(
        default_factory=RepositoryConfig,
        description="Version control settings",
    )
    gates: GatesConfig = Field(
        default_factory=GatesConfig,
        description="Quality gate thresholds",
    )
    facts: FactsConfig = Field(
        default_factory=FactsConfig,
        description="Module fact measurement settings",
    )
    updates: UpdatesConfig = Field(
        default_factory=UpdatesConfig,
        description="Update orchestration settings",
    )

    @model_validator(mode="after")
    def validate_thresholds(self) -> AppConfig:
        """A passing critical gate must not be below the deploy score."""
        if self.gates.critical_threshold < self.gates.minimum_score:
            raise ValueError(
                "gates.critical_threshold must be >= gates.minimum_score"
            )
        return self


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Dictionary with configuration values.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    # Comma-separated lists
    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Environment variables are parsed with the following rules:
    - Prefix: SAFE_UPDATE_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: SAFE_UPDATE_GATES__MINIMUM_SCORE=85

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses
            ./safe-update.yml when it exists.
        env_prefix: Prefix for environment variables.
        overrides: Highest-precedence values, typically from the command line.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If the specified config file doesn't exist.
        pydantic.ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(overrides={"updates": {"stop_on_error": True}})
        >>> config.gates.minimum_score
        80.0
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_FILE.exists():
            config_path = DEFAULT_CONFIG_FILE
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    return AppConfig(**config_dict)
