"""Tests for configuration management."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from petwatch.core.config import Settings


def test_default_paths():
    """Test that default paths are resolved correctly."""
    settings = Settings()

    assert isinstance(settings.data_dir, Path)
    assert settings.data_dir.is_absolute()
    assert settings.database_path == settings.data_dir / settings.database_name


def test_data_dir_created(tmp_path: Path, monkeypatch):
    """Test that the data directory is created automatically."""
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "state"))

    settings = Settings()

    assert settings.data_dir.exists()
    assert settings.database_path.parent == (tmp_path / "state").resolve()


def test_twilio_config_from_env(monkeypatch):
    """Test that messaging credentials can be loaded from environment."""
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "secret-token")
    monkeypatch.setenv("TWILIO_PHONE_NUMBER", "+15550001111")

    settings = Settings()

    assert settings.twilio_configured is True
    assert settings.twilio_auth_token.get_secret_value() == "secret-token"
    # Secret never rendered in repr
    assert "secret-token" not in repr(settings)


def test_twilio_requires_all_credentials():
    settings = Settings(twilio_account_sid="AC123", twilio_auth_token=None, twilio_phone_number=None)
    assert settings.twilio_configured is False


def test_sms_service_configured():
    assert Settings(sms_service_url="https://sms.example.com").sms_service_configured is True
    assert Settings(sms_service_url=None).sms_service_configured is False


def test_retry_policy_default_and_validation(monkeypatch):
    assert Settings().followup_retry_policy == "failed_recipients"

    monkeypatch.setenv("FOLLOWUP_RETRY_POLICY", "sometimes")
    with pytest.raises(ValidationError):
        Settings()
