"""Weather alert sources: the AlertSource protocol and the OpenWeather client."""

import asyncio
import contextlib
from collections.abc import Awaitable
from datetime import UTC, datetime, tzinfo
from typing import Protocol, TypeVar

import httpx
import structlog
from opentelemetry.trace import SpanKind
from pydantic import ValidationError

from cron_weather.core.telemetry import service_span
from cron_weather.schemas.weather import OneCallResponse, WeatherAlert
from cron_weather.services.rate_limiter import DailyLimiter

logger = structlog.get_logger(__name__)

ONE_CALL_URL = "https://api.openweathermap.org/data/3.0/onecall"
ALERT_TIME_FORMAT = "%d.%m.%Y %H:%M"
DEFAULT_HTTP_TIMEOUT = 10.0

T = TypeVar("T")


class WeatherServiceError(Exception):
    """Fetching alerts from the weather provider failed."""


class DailyLimitExceededError(WeatherServiceError):
    """The daily request quota for the weather provider is used up."""


class FetchCancelledError(WeatherServiceError):
    """The fetch was abandoned because cancellation was requested."""


class AlertSource(Protocol):
    """Anything that can report weather alert messages for a location."""

    async def fetch_alerts(self, lat: float, lon: float, cancel: asyncio.Event) -> list[str]:
        """
        Return alert messages for the coordinates.

        Must return an empty list (not raise) when there is nothing to report,
        and must raise promptly once `cancel` is set.
        """
        ...


async def _await_unless_cancelled(awaitable: Awaitable[T], cancel: asyncio.Event) -> T:
    """
    Await `awaitable`, abandoning it as soon as `cancel` is set.

    Args:
        awaitable: The operation to run
        cancel: Cancellation signal

    Returns:
        The result of the awaitable

    Raises:
        FetchCancelledError: If `cancel` fired before the operation finished
    """
    operation = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({operation, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        operation.cancel()
        raise
    finally:
        waiter.cancel()

    if operation in done:
        return operation.result()

    operation.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await operation
    msg = "request cancelled: shutdown in progress"
    raise FetchCancelledError(msg)


def format_alert(alert: WeatherAlert, tz: tzinfo) -> str:
    """
    Render one alert as a human-readable message.

    Args:
        alert: Alert from the One Call response
        tz: Zone used to display start and end times

    Returns:
        Message text, e.g. "[Sender] Wind: Strong gusts (с 17.02.2026 10:00 до 18.02.2026 09:00). Теги: [Wind]"
    """
    start = datetime.fromtimestamp(alert.start, tz).strftime(ALERT_TIME_FORMAT)
    end = datetime.fromtimestamp(alert.end, tz).strftime(ALERT_TIME_FORMAT)
    tags = " ".join(alert.tags)
    return f"[{alert.sender_name}] {alert.event}: {alert.description} (с {start} до {end}). Теги: [{tags}]"


class OpenWeatherFetcher:
    """Fetches national weather alerts from the OpenWeather One Call 3.0 API."""

    def __init__(
        self,
        api_key: str,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        *,
        daily_limiter: DailyLimiter | None = None,
        tz: tzinfo | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the fetcher.

        Args:
            api_key: OpenWeather API key
            timeout: HTTP timeout in seconds
            daily_limiter: Optional quota guard consulted before every request
            tz: Zone used to render alert times (defaults to UTC)
            client: HTTP client to use (created on first use if omitted)
        """
        self.api_key = api_key
        self.timeout = timeout
        self.daily_limiter = daily_limiter
        self.tz = tz or UTC
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_alerts(self, lat: float, lon: float, cancel: asyncio.Event) -> list[str]:
        """
        Fetch current alerts for the coordinates.

        Args:
            lat: Latitude
            lon: Longitude
            cancel: Cancellation signal; the request is abandoned when it fires

        Returns:
            Formatted alert messages (empty when there are no alerts)

        Raises:
            FetchCancelledError: If cancellation was requested
            DailyLimitExceededError: If the daily quota is used up
            WeatherServiceError: On transport errors, non-200 status or malformed body
        """
        if cancel.is_set():
            msg = "request cancelled: shutdown in progress"
            raise FetchCancelledError(msg)

        if self.daily_limiter is not None:
            remaining, ok = self.daily_limiter.allow(datetime.now(UTC))
            if not ok:
                msg = "openweather daily limit exceeded"
                raise DailyLimitExceededError(msg)
            logger.debug("openweather_quota_consumed", remaining=remaining)

        params = {
            "lat": f"{lat:f}",
            "lon": f"{lon:f}",
            "lang": "ru",
            "units": "metric",
            "appid": self.api_key,
        }

        with service_span("weather.fetch_alerts", "openweather", kind=SpanKind.CLIENT) as span:
            try:
                response = await _await_unless_cancelled(self._get_client().get(ONE_CALL_URL, params=params), cancel)
            except httpx.HTTPError as e:
                msg = f"do request: {e!s}"
                raise WeatherServiceError(msg) from e

            span.set_attribute("http.status_code", response.status_code)
            if response.status_code != httpx.codes.OK:
                msg = f"API returned non-200 status: {response.status_code}"
                raise WeatherServiceError(msg)

            try:
                payload = OneCallResponse.model_validate_json(response.content)
            except ValidationError as e:
                msg = f"decode response: {e!s}"
                raise WeatherServiceError(msg) from e

            span.set_attribute("weather.alert_count", len(payload.alerts))

        return [format_alert(alert, self.tz) for alert in payload.alerts]
