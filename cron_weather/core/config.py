"""Application configuration."""

import logging
from datetime import timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cron_weather.core.utils import parse_duration


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # General Settings
    PROJECT_NAME: str = "cron-weather"
    ENV: str = ""  # "local" enables debug console logs, "prod" enables JSON logs
    TIMEZONE: str = "UTC"  # Zone for START_AT, the daily API quota and alert timestamps

    # Scheduling Settings
    INTERVAL: timedelta = timedelta(seconds=30)
    START_AT: str = ""  # Optional HH:MM first run, used when DEFAULT_SUB_START_AT is empty
    SHUTDOWN_TIMEOUT: timedelta = timedelta(seconds=30)

    # Database Settings
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///weather.db",
        validation_alias=AliasChoices("DATABASE_URL", "SECRET_DATABASE_URL"),
    )
    DATABASE_ECHO: bool = False

    # Alembic Settings
    ALEMBIC_INI_PATH: str = "alembic.ini"

    # OpenWeather Settings
    WEATHER_API_KEY: str | None = Field(
        default=None,
        validation_alias=AliasChoices("WEATHER_API_KEY", "SECRET_WEATHER_API_KEY"),
    )
    WEATHER_LAT: float = 0.0
    WEATHER_LON: float = 0.0
    WEATHER_HTTP_TIMEOUT: timedelta = timedelta(seconds=10)
    WEATHER_DAILY_LIMIT: int = 1000  # OpenWeather One Call free tier quota

    # Telegram Settings
    TG_TOKEN: str | None = Field(
        default=None,
        validation_alias=AliasChoices("TG_TOKEN", "SECRET_TG_TOKEN"),
    )

    # Default subscription, seeded only into an empty database
    DEFAULT_SUB_CHAT_ID: int = 0
    DEFAULT_SUB_INTERVAL: timedelta = timedelta(0)  # 0 falls back to INTERVAL
    DEFAULT_SUB_START_AT: str = ""
    DEFAULT_SUB_LAT: float = 0.0  # 0/0 falls back to WEATHER_LAT/WEATHER_LON
    DEFAULT_SUB_LON: float = 0.0

    # OpenTelemetry Settings
    OTEL_ENABLED: bool = False
    OTEL_SERVICE_NAME: str = "cron-weather"
    OTEL_ENVIRONMENT: str = "production"
    OTEL_EXPORTER_OTLP_TRACES_ENDPOINT: str | None = None
    OTEL_EXPORTER_OTLP_HEADERS: str | None = Field(
        default=None,
        validation_alias=AliasChoices("OTEL_EXPORTER_OTLP_HEADERS", "SECRET_OTEL_HEADERS"),
    )

    # Logging Settings
    LOG_LEVEL: str = "INFO"

    @field_validator(
        "INTERVAL",
        "SHUTDOWN_TIMEOUT",
        "WEATHER_HTTP_TIMEOUT",
        "DEFAULT_SUB_INTERVAL",
        mode="before",
    )
    @classmethod
    def parse_go_duration(cls, v: object) -> object:
        """Accept Go-style duration strings such as "30s" or "1h30m"."""
        if isinstance(v, str):
            return parse_duration(v)
        return v

    @field_validator("INTERVAL", mode="after")
    @classmethod
    def validate_interval(cls, v: timedelta) -> timedelta:
        """Ensure the polling interval is strictly positive."""
        if v <= timedelta(0):
            msg = "INTERVAL must be a positive duration"
            raise ValueError(msg)
        return v

    @field_validator("TIMEZONE", mode="after")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Ensure TIMEZONE names a known IANA zone."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            msg = f"Invalid TIMEZONE '{v}': {e}"
            raise ValueError(msg) from e
        return v

    @field_validator("LOG_LEVEL", mode="after")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        normalized = v.upper()
        valid_levels = logging.getLevelNamesMapping()
        if normalized not in valid_levels:
            msg = f"Invalid LOG_LEVEL '{v}'. Must be one of: {', '.join(sorted(valid_levels.keys()))}"
            raise ValueError(msg)
        return normalized

    @property
    def tzinfo(self) -> ZoneInfo:
        """Zone object for TIMEZONE."""
        return ZoneInfo(self.TIMEZONE)


settings = Settings()


def require_config(*field_names: str) -> None:
    """
    Validate that required configuration fields are set.

    This utility should be called by code paths that need optional
    settings (API keys, tokens) before they are used.

    Args:
        *field_names: Names of required configuration fields

    Raises:
        ValueError: If any required field is missing or None

    Example:
        from cron_weather.core.config import require_config
        require_config("WEATHER_API_KEY", "TG_TOKEN")
    """
    missing = []
    for field in field_names:
        value = getattr(settings, field, None)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(field)

    if missing:
        msg = f"Required configuration missing: {', '.join(missing)}"
        raise ValueError(msg)
