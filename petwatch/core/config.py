"""
Configuration management using pydantic-settings.

Handles environment variables, defines the data directory for the state
database, and provides typed configuration for the SMS delivery backends.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

FollowUpRetryPolicy = Literal["failed_recipients", "total_failure"]


def _get_project_root() -> Path:
    """Get the project root directory (3 levels up from this file)."""
    return Path(__file__).parent.parent.parent


def _get_data_dir() -> Path:
    """Get the default data directory."""
    return _get_project_root() / "data"


class Settings(BaseSettings):
    """
    Application-wide configuration.

    Loads from .env file and environment variables.
    Environment variables take precedence over .env file values.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Directory holding the SQLite state database
    data_dir: Path = Field(
        default_factory=_get_data_dir,
        description="Directory for persisted watchdog state",
    )
    database_name: str = Field(
        default="petwatch.db",
        description="File name of the SQLite state database inside data_dir",
    )

    # Primary channel: Twilio-style keyed messaging API.
    # All three values must be present for the channel to be selected.
    twilio_account_sid: str | None = Field(default=None, description="Messaging API account SID")
    twilio_auth_token: SecretStr | None = Field(default=None, description="Messaging API token")
    twilio_phone_number: str | None = Field(
        default=None, description="Sender number for outbound SMS"
    )
    twilio_api_base: str = Field(
        default="https://api.twilio.com/2010-04-01",
        description="Base URL of the messaging API",
    )

    # Secondary channel: generic HTTP batch endpoint
    sms_service_url: str | None = Field(
        default=None,
        description="Base URL of a backend exposing POST /send-sms",
    )

    default_country_code: str = Field(
        default="1",
        description="Country prefix assumed for 10-digit phone numbers",
    )
    delivery_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Per-request timeout for outbound delivery calls",
    )
    followup_retry_policy: FollowUpRetryPolicy = Field(
        default="failed_recipients",
        description=(
            "'failed_recipients' retries every still-failed recipient on follow-ups; "
            "'total_failure' retries only when nobody was reached"
        ),
    )

    # Logging
    log_dir: Path | None = Field(
        default=None,
        description="Override for the rotating log directory (defaults to the platform state dir)",
    )
    log_max_bytes: int = Field(default=5 * 1024 * 1024, description="Rotate log file at this size")
    log_backup_count: int = Field(default=3, description="Rotated log files to keep")

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        # Normalize paths (resolve symlinks, make absolute)
        self.data_dir = self.data_dir.resolve()
        if self.log_dir is not None:
            self.log_dir = self.log_dir.resolve()

    @property
    def database_path(self) -> Path:
        """Absolute path of the state database file."""
        return self.data_dir / self.database_name

    @property
    def twilio_configured(self) -> bool:
        """True when every primary-channel credential is present."""
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and self.twilio_auth_token.get_secret_value()
            and self.twilio_phone_number
        )

    @property
    def sms_service_configured(self) -> bool:
        """True when the batch backend endpoint is set."""
        return bool(self.sms_service_url)


# Global settings instance
# Import this in other modules: `from petwatch.core.config import settings`
settings = Settings()
