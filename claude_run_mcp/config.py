"""Configuration for claude-run.

Settings come from, in increasing order of precedence:
1. Built-in defaults
2. A YAML file (CLAUDE_RUN_CONFIG, or ~/.claude-run.yaml if present)
3. Environment variables (CLAUDE_RUN_DIR, CLAUDE_RUN_DEBOUNCE_MS)
4. Explicit overrides passed by the caller (CLI flags)

Config file format:
    claude_dir: ~/.claude
    debounce_ms: 20
    poll_interval_ms: 10
    queue_size: 256
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError, field_validator

from claude_run_mcp import DEFAULT_CLAUDE_DIR, ClaudeRunError
from claude_run_mcp.projects_utils import HISTORY_FILE, PROJECTS_DIR, TRANSCRIPT_EXT

log = logging.getLogger("claude_run_mcp.config")

DEFAULT_CONFIG_PATH = Path.home() / ".claude-run.yaml"

ENV_CONFIG_PATH = "CLAUDE_RUN_CONFIG"
ENV_CLAUDE_DIR = "CLAUDE_RUN_DIR"
ENV_DEBOUNCE_MS = "CLAUDE_RUN_DEBOUNCE_MS"


class ConfigError(ClaudeRunError):
    """Raised when the config file or environment holds invalid settings."""


class RunConfig(BaseModel):
    """Validated claude-run settings."""

    claude_dir: Path = DEFAULT_CLAUDE_DIR
    history_file: str = HISTORY_FILE
    transcript_ext: str = TRANSCRIPT_EXT
    debounce_ms: int = 20
    poll_interval_ms: int = 10
    queue_size: int = 256

    @field_validator("claude_dir")
    @classmethod
    def expand_claude_dir(cls, v: Path) -> Path:
        """Expand ~ so configs can use home-relative paths."""
        return Path(v).expanduser()

    @field_validator("transcript_ext")
    @classmethod
    def must_be_extension(cls, v: str) -> str:
        """Ensure transcript_ext looks like a file extension."""
        if not v.startswith(".") or len(v) < 2 or "/" in v:
            raise ValueError(f"transcript_ext must look like '.jsonl', got: {v!r}")
        return v

    @field_validator("debounce_ms", "poll_interval_ms", "queue_size")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"must be greater than 0, got: {v}")
        return v

    @property
    def history_path(self) -> Path:
        return self.claude_dir / self.history_file

    @property
    def projects_dir(self) -> Path:
        return self.claude_dir / PROJECTS_DIR


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read a YAML config file into a dict.

    Raises:
        ConfigError: If the file is not valid YAML or not a mapping
    """
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML config {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config {path}: {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config {path} must be a YAML mapping")
    return raw


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if os.environ.get(ENV_CLAUDE_DIR):
        overrides["claude_dir"] = os.environ[ENV_CLAUDE_DIR]
    if os.environ.get(ENV_DEBOUNCE_MS):
        overrides["debounce_ms"] = os.environ[ENV_DEBOUNCE_MS]
    return overrides


def load_config(config_path: str | Path | None = None, **overrides: Any) -> RunConfig:
    """Load the effective configuration.

    Args:
        config_path: Explicit YAML file. If None, uses CLAUDE_RUN_CONFIG or
            ~/.claude-run.yaml when it exists.
        **overrides: Highest-precedence settings; None values are ignored.

    Returns:
        Validated RunConfig

    Raises:
        ConfigError: If the file is unreadable or any setting is invalid
    """
    if config_path is None:
        env_path = os.environ.get(ENV_CONFIG_PATH)
        if env_path:
            config_path = Path(env_path).expanduser()
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path is not None:
        data.update(_read_config_file(Path(config_path)))
        log.debug(f"Loaded config from {config_path}")

    data.update(_env_overrides())
    data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return RunConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
