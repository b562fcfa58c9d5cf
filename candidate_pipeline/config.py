"""Worker configuration loaded from the environment.

Values come from process environment variables, with a ``.env`` file in
the working directory honored via python-dotenv. Empty strings count as
unset.
"""
from __future__ import annotations

import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigurationError
from .queue.consumer import RateLimit, WorkerOptions

# Environment variable -> settings field
ENV_FIELDS = {
    "REDIS_URL": "redis_url",
    "WORKER_CONCURRENCY": "worker_concurrency",
    "LLM_RATE_LIMIT_PER_MINUTE": "llm_rate_limit_per_minute",
    "LLM_MAX_RETRIES": "llm_max_retries",
    "GEMINI_API_KEY": "gemini_api_key",
    "GEMINI_MODEL_NAME": "gemini_model_name",
    "GITHUB_TOKEN": "github_token",
    "ENABLE_EVIDENCE_SCRAPING": "enable_evidence_scraping",
    "DATABASE_URL": "database_url",
    "LOG_LEVEL": "log_level",
}


class WorkerSettings(BaseModel):
    """Validated worker environment."""

    redis_url: str = "redis://localhost:6379"
    worker_concurrency: int = Field(default=2, ge=1)
    llm_rate_limit_per_minute: int = Field(default=30, ge=1)
    llm_max_retries: int = Field(default=2, ge=0, le=5)
    gemini_api_key: str = Field(..., min_length=1)
    gemini_model_name: str = "gemini-2.5-flash"
    github_token: Optional[str] = None
    enable_evidence_scraping: bool = True
    database_url: str = Field(..., min_length=1)
    log_level: str = "INFO"

    @field_validator("redis_url")
    @classmethod
    def _validate_redis_url(cls, value: str) -> str:
        if not value.startswith(("redis://", "rediss://")):
            raise ValueError("must be a redis:// or rediss:// URL")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return level

    def worker_options(self) -> WorkerOptions:
        """Concurrency and per-minute rate limit for the consumer."""
        return WorkerOptions(
            concurrency=self.worker_concurrency,
            limiter=RateLimit(max=self.llm_rate_limit_per_minute, duration_ms=60_000),
        )


def load_settings(environ: Optional[Mapping[str, str]] = None) -> WorkerSettings:
    """Read and validate settings.

    Args:
        environ: Variables to read (default: ``os.environ`` after loading .env)

    Returns:
        WorkerSettings

    Raises:
        ConfigurationError: If a variable is missing or invalid
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    values = {}
    for env_name, field_name in ENV_FIELDS.items():
        raw = environ.get(env_name)
        if raw is not None and raw.strip():
            values[field_name] = raw.strip()

    try:
        return WorkerSettings(**values)
    except ValidationError as exc:
        field_to_env = {field: env for env, field in ENV_FIELDS.items()}
        problems = []
        for error in exc.errors():
            field_name = str(error["loc"][0]) if error["loc"] else "?"
            problems.append(f"{field_to_env.get(field_name, field_name)}: {error['msg']}")
        raise ConfigurationError("Invalid worker environment: " + "; ".join(problems)) from exc
