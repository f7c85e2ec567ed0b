# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Bench configuration."""
import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"


@dataclass
class BenchConfig:
    """Process-wide configuration for the evaluator CLI and the state store.

    Can be created directly, from a dict, or from environment variables.
    Per-project overrides (concurrency, timeout, retry count, mode) live in
    the workspace file.
    """
    cli_path: str = "claude"
    model: str = DEFAULT_MODEL
    scoring_model: str = ""
    default_timeout_seconds: int = 60
    default_retry_count: int = 2
    default_concurrency: int = 2
    recompose_timeout_seconds: int = 180
    state_db_path: str = "~/.skillbench/state.db"
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict) -> "BenchConfig":
        return cls(
            cli_path=data.get("cli_path", "claude"),
            model=data.get("model", DEFAULT_MODEL),
            scoring_model=data.get("scoring_model", ""),
            default_timeout_seconds=data.get("default_timeout_seconds", 60),
            default_retry_count=data.get("default_retry_count", 2),
            default_concurrency=data.get("default_concurrency", 2),
            recompose_timeout_seconds=data.get("recompose_timeout_seconds", 180),
            state_db_path=data.get("state_db_path", "~/.skillbench/state.db"),
            log_level=data.get("log_level", "INFO"),
        )

    @classmethod
    def from_env(cls) -> "BenchConfig":
        """Create config from SKILLBENCH_* environment variables."""
        return cls(
            cli_path=os.getenv("SKILLBENCH_CLI_PATH", "claude"),
            model=os.getenv("SKILLBENCH_MODEL", DEFAULT_MODEL),
            scoring_model=os.getenv("SKILLBENCH_SCORING_MODEL", ""),
            default_timeout_seconds=int(os.getenv("SKILLBENCH_TIMEOUT_SECONDS", "60")),
            default_retry_count=int(os.getenv("SKILLBENCH_RETRY_COUNT", "2")),
            default_concurrency=int(os.getenv("SKILLBENCH_CONCURRENCY", "2")),
            recompose_timeout_seconds=int(os.getenv("SKILLBENCH_RECOMPOSE_TIMEOUT", "180")),
            state_db_path=os.getenv("SKILLBENCH_STATE_DB", "~/.skillbench/state.db"),
            log_level=os.getenv("SKILLBENCH_LOG_LEVEL", "INFO").upper(),
        )

    def __post_init__(self):
        """Validate config values."""
        if self.default_timeout_seconds < 1:
            logger.warning("default_timeout_seconds %s < 1, setting to 1", self.default_timeout_seconds)
            self.default_timeout_seconds = 1
        elif self.default_timeout_seconds > 3600:
            logger.warning("default_timeout_seconds %s > 3600, clamping to 3600", self.default_timeout_seconds)
            self.default_timeout_seconds = 3600

        if self.default_retry_count < 0:
            logger.warning("default_retry_count %s < 0, setting to 0", self.default_retry_count)
            self.default_retry_count = 0
        elif self.default_retry_count > 10:
            logger.warning("default_retry_count %s > 10, clamping to 10", self.default_retry_count)
            self.default_retry_count = 10

        if self.default_concurrency < 1:
            logger.warning("default_concurrency %s < 1, setting to 1", self.default_concurrency)
            self.default_concurrency = 1
        elif self.default_concurrency > 32:
            logger.warning("default_concurrency %s > 32, clamping to 32", self.default_concurrency)
            self.default_concurrency = 32

        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            logger.warning("log_level %r unknown, falling back to INFO", self.log_level)
            self.log_level = "INFO"

    @property
    def resolved_scoring_model(self) -> str:
        """Model used for the scoring pass; defaults to the execution model."""
        return self.scoring_model or self.model
