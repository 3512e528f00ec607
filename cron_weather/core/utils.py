"""Core utility functions."""

import re
from datetime import timedelta
from urllib.parse import urlparse, urlunparse

# Go-style duration strings, e.g. "30s", "5m", "1h30m", "250ms"
_DURATION_RE = re.compile(r"^(?:\d+(?:\.\d+)?(?:ns|us|µs|ms|s|m|h))+$")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str | float | timedelta) -> timedelta:
    """
    Parse a duration from a Go-style string, a number of seconds or a timedelta.

    Args:
        value: Duration such as "30s", "1h30m", "250ms", "45" or 45.0

    Returns:
        The duration as a timedelta

    Raises:
        ValueError: If the string is not a recognised duration

    Example:
        >>> parse_duration("1h30m")
        datetime.timedelta(seconds=5400)
        >>> parse_duration("250ms")
        datetime.timedelta(microseconds=250000)
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, int | float):
        return timedelta(seconds=value)

    text = value.strip()
    if not text:
        msg = "empty duration"
        raise ValueError(msg)

    try:
        return timedelta(seconds=float(text))
    except ValueError:
        pass

    if not _DURATION_RE.match(text):
        msg = f"invalid duration {value!r}, expected e.g. '30s', '5m' or '1h30m'"
        raise ValueError(msg)

    seconds = sum(float(amount) * _UNIT_SECONDS[unit] for amount, unit in _DURATION_PART_RE.findall(text))
    return timedelta(seconds=seconds)


def convert_async_db_url_to_sync(database_url: str) -> str:
    """
    Convert an async database URL to a sync database URL.

    Strips the async driver so Alembic can run migrations with the
    synchronous driver (sqlite+aiosqlite:// becomes sqlite://,
    postgresql+asyncpg:// becomes postgresql+psycopg://).

    Args:
        database_url: The async database URL

    Returns:
        The sync database URL
    """
    scheme, separator, rest = database_url.partition("://")
    if not separator:
        return database_url
    if "+aiosqlite" in scheme:
        # urlunparse would drop the empty netloc of sqlite:///path URLs
        return f"{scheme.replace('+aiosqlite', '')}://{rest}"
    parsed_url = urlparse(database_url)
    if "+asyncpg" in parsed_url.scheme:
        sync_scheme = parsed_url.scheme.replace("+asyncpg", "+psycopg")
        return urlunparse(parsed_url._replace(scheme=sync_scheme))
    return database_url
