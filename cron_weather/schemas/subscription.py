"""Pydantic schemas for subscriptions."""

from datetime import timedelta

from pydantic import BaseModel, ConfigDict, field_validator

from cron_weather.core.utils import parse_duration


class Subscription(BaseModel):
    """A chat's alert subscription: where to look and how often."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    chat_id: int  # Telegram chat ID, unique per subscription
    interval: timedelta
    start_at: str = ""  # Optional HH:MM (local wall-clock) of the first run
    lat: float
    lon: float

    @field_validator("interval", mode="before")
    @classmethod
    def parse_interval(cls, v: object) -> object:
        """Accept Go-style duration strings such as "30m"."""
        if isinstance(v, str):
            return parse_duration(v)
        return v

    @field_validator("interval", mode="after")
    @classmethod
    def validate_interval(cls, v: timedelta) -> timedelta:
        """Ensure the interval is strictly positive."""
        if v <= timedelta(0):
            msg = "interval must be a positive duration"
            raise ValueError(msg)
        return v

    @field_validator("start_at", mode="after")
    @classmethod
    def strip_start_at(cls, v: str) -> str:
        """Normalize surrounding whitespace; format is checked by the scheduler."""
        return v.strip()
