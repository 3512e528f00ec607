"""Pydantic schemas for OpenWeather One Call API data."""

from pydantic import BaseModel, Field


class WeatherAlert(BaseModel):
    """A single national weather alert from the One Call API."""

    sender_name: str = ""
    event: str = ""
    start: int  # Unix timestamp (UTC)
    end: int  # Unix timestamp (UTC)
    description: str = ""
    tags: list[str] = Field(default_factory=list)


class OneCallResponse(BaseModel):
    """Subset of the One Call response used for alerting (only `alerts`)."""

    alerts: list[WeatherAlert] = Field(default_factory=list)
