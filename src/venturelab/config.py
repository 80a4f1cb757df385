"""
Configuration loading and validation for venturelab.

Loads venturelab.toml files and validates settings using Pydantic.
"""

import os
import tomllib
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class AIConfig(BaseModel):
    """Configuration for the content-generation and deep-research backend."""

    provider: Literal["gemini"] = "gemini"
    model: str = "gemini-2.5-flash"
    deep_research_agent: str = "deep-research-pro-preview-12-2025"
    api_key_env: str = "GEMINI_API_KEY"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout_seconds: int = 120
    max_retries: int = 3
    min_request_interval_seconds: float = Field(default=6.0, ge=0.0)


class PipelineConfig(BaseModel):
    """Step executor limits."""

    max_concurrent_research: int = Field(default=5, ge=1)
    max_research_restarts: int = Field(default=2, ge=0)
    max_poll_errors: int = Field(default=5, ge=1)
    title_max_chars: int = 100
    summary_max_chars: int = 2000
    structuring_input_chars: int = 50_000


class SchedulerConfig(BaseModel):
    """Self-chaining and recovery sweep settings."""

    base_url: str = "http://127.0.0.1:8000"
    cron_secret_env: str = "CRON_SECRET"
    stale_after_seconds: int = Field(default=300, ge=1)
    poll_interval_seconds: float = Field(default=15.0, ge=0.0)
    chain_max_retries: int = Field(default=3, ge=1)
    chain_timeout_seconds: float = Field(default=30.0, gt=0.0)
    recovery_batch_size: int = Field(default=10, ge=1)

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize base URL so paths can be appended directly."""
        return v.rstrip("/")


class StorageConfig(BaseModel):
    """Storage configuration."""

    db_path: Path = Path(".venturelab/pipeline.db")


class AppConfig(BaseModel):
    """Complete venturelab configuration."""

    ai: AIConfig = Field(default_factory=AIConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    def get_api_key(self) -> str:
        """
        Get the AI backend API key from the environment.

        Returns:
            API key

        Raises:
            ValueError: If the variable is unset
        """
        api_key = os.environ.get(self.ai.api_key_env)
        if not api_key:
            raise ValueError(
                f"API key not found in environment: {self.ai.api_key_env} "
                f"(required for {self.ai.provider}:{self.ai.model})"
            )
        return api_key

    def get_cron_secret(self) -> str | None:
        """Shared secret for the process and cron endpoints, if configured."""
        return os.environ.get(self.scheduler.cron_secret_env) or None


def load_config(config_path: Path) -> AppConfig:
    """
    Load configuration from a TOML file.

    Args:
        config_path: Path to venturelab.toml

    Returns:
        Validated AppConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "rb") as f:
        config_data = tomllib.load(f)

    try:
        config = AppConfig(**config_data)
    except Exception as e:
        raise ValueError(f"Invalid configuration: {e}") from e

    return config


def create_default_config(output_path: Path, model: str = "gemini-2.5-flash") -> None:
    """
    Write a venturelab.toml with default settings.

    Args:
        output_path: Where to write the file
        model: Content-generation model name
    """
    template = f'''[ai]
provider = "gemini"
model = "{model}"
deep_research_agent = "deep-research-pro-preview-12-2025"
api_key_env = "GEMINI_API_KEY"
timeout_seconds = 120
max_retries = 3
min_request_interval_seconds = 6.0  # Minimum gap between deep research starts

[pipeline]
max_concurrent_research = 5  # Hypotheses researched at once
max_research_restarts = 2  # Restarts allowed for a stuck hypothesis
max_poll_errors = 5  # Consecutive failed status checks before giving up
title_max_chars = 100
summary_max_chars = 2000
structuring_input_chars = 50000

[scheduler]
base_url = "http://127.0.0.1:8000"
cron_secret_env = "CRON_SECRET"
stale_after_seconds = 300  # Runs untouched this long are resumed by the sweep
poll_interval_seconds = 15
chain_max_retries = 3
chain_timeout_seconds = 30
recovery_batch_size = 10

[storage]
db_path = ".venturelab/pipeline.db"
'''

    output_path.write_text(template, encoding="utf-8")
