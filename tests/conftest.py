"""Pytest configuration for all tests."""

import pytest

from src.autopr.config import AutoPRSettings


WEBHOOK_SECRET = "s3cret"
SESSION_SECRET = "test-session-signing-secret"


def build_settings(**overrides) -> AutoPRSettings:
    """Settings with every required field filled, independent of the environment."""
    values = {
        "github_token": "ghp_test_token",
        "github_webhook_secret": WEBHOOK_SECRET,
        "session_secret": SESSION_SECRET,
        "llm_url": "http://llm.test:8000/v1",
        "worker_poll_interval_seconds": 0.05,
        "log_format": "console",
    }
    values.update(overrides)
    return AutoPRSettings(**values)


@pytest.fixture
def settings_factory():
    return build_settings
