"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from dojo_notices.core.config import Settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("NOTICE_BATCH_SIZE", raising=False)
    settings = Settings(_env_file=None)

    assert settings.NOTICE_BATCH_SIZE == 400
    assert settings.NOTICE_CLOCK_SKEW_SECONDS == 120
    assert settings.NOTICE_DEFAULT_DURATION_DAYS == 30


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("NOTICE_BATCH_SIZE", "250")
    monkeypatch.setenv("FANOUT_RETRY_ATTEMPTS", "5")

    settings = Settings(_env_file=None)

    assert settings.NOTICE_BATCH_SIZE == 250
    assert settings.FANOUT_RETRY_ATTEMPTS == 5


def test_batch_size_is_bounded(monkeypatch):
    monkeypatch.setenv("NOTICE_BATCH_SIZE", "0")

    with pytest.raises(ValidationError):
        Settings(_env_file=None)
