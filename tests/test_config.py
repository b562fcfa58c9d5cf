"""Tests for worker settings loaded from the environment."""

import pytest

from candidate_pipeline.config import load_settings
from candidate_pipeline.exceptions import ConfigurationError

REQUIRED = {
    "GEMINI_API_KEY": "test-key",
    "DATABASE_URL": "sqlite://",
}


def test_defaults():
    settings = load_settings(dict(REQUIRED))

    assert settings.redis_url == "redis://localhost:6379"
    assert settings.worker_concurrency == 2
    assert settings.llm_rate_limit_per_minute == 30
    assert settings.llm_max_retries == 2
    assert settings.gemini_model_name == "gemini-2.5-flash"
    assert settings.github_token is None
    assert settings.enable_evidence_scraping is True
    assert settings.log_level == "INFO"


def test_overrides():
    settings = load_settings({
        **REQUIRED,
        "REDIS_URL": "rediss://user:pw@cache.local:6380/1",
        "WORKER_CONCURRENCY": "8",
        "LLM_RATE_LIMIT_PER_MINUTE": "5",
        "LLM_MAX_RETRIES": "0",
        "ENABLE_EVIDENCE_SCRAPING": "false",
        "GITHUB_TOKEN": "gh-token",
        "LOG_LEVEL": "debug",
    })

    assert settings.redis_url == "rediss://user:pw@cache.local:6380/1"
    assert settings.worker_concurrency == 8
    assert settings.llm_max_retries == 0
    assert settings.enable_evidence_scraping is False
    assert settings.github_token == "gh-token"
    assert settings.log_level == "DEBUG"


def test_worker_options_carry_rate_limit():
    options = load_settings({**REQUIRED, "WORKER_CONCURRENCY": "4", "LLM_RATE_LIMIT_PER_MINUTE": "12"}).worker_options()

    assert options.concurrency == 4
    assert options.limiter.max == 12
    assert options.limiter.duration_ms == 60_000


def test_empty_values_count_as_unset():
    settings = load_settings({**REQUIRED, "WORKER_CONCURRENCY": "", "GITHUB_TOKEN": "  "})

    assert settings.worker_concurrency == 2
    assert settings.github_token is None


@pytest.mark.parametrize("missing", ["GEMINI_API_KEY", "DATABASE_URL"])
def test_missing_required_variable(missing):
    environ = {key: value for key, value in REQUIRED.items() if key != missing}

    with pytest.raises(ConfigurationError, match=missing):
        load_settings(environ)


@pytest.mark.parametrize("name,value", [
    ("REDIS_URL", "http://cache.local:6379"),
    ("WORKER_CONCURRENCY", "0"),
    ("WORKER_CONCURRENCY", "many"),
    ("LLM_RATE_LIMIT_PER_MINUTE", "0"),
    ("LLM_MAX_RETRIES", "6"),
    ("LOG_LEVEL", "loud"),
])
def test_invalid_values_rejected(name, value):
    with pytest.raises(ConfigurationError, match=name):
        load_settings({**REQUIRED, name: value})
