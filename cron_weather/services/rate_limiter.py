"""Per-calendar-day request quota tracking."""

import threading
from datetime import UTC, datetime, tzinfo

DAY_FORMAT = "%Y-%m-%d"


class DailyLimiter:
    """
    Counts uses per calendar day against a fixed quota.

    The day bucket is the calendar date of `now` in the limiter's zone; the
    counter resets to zero whenever the bucket changes. State lives in memory
    only and resets on restart.
    """

    def __init__(self, limit: int, tz: tzinfo | None = None) -> None:
        """
        Initialize the limiter.

        Args:
            limit: Maximum number of allowed calls per calendar day
            tz: Zone that defines day boundaries (defaults to UTC)
        """
        self.limit = limit
        self.tz = tz or UTC
        self._lock = threading.Lock()
        self._day = ""
        self._used = 0

    def allow(self, now: datetime) -> tuple[int, bool]:
        """
        Record one use for the day of `now` if the quota permits it.

        Args:
            now: Current time (naive values are treated as local time)

        Returns:
            Tuple of (remaining, ok). Once the quota is used up, returns
            (0, False) without counting the attempt.

        Example:
            >>> limiter = DailyLimiter(limit=2)
            >>> now = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)
            >>> [limiter.allow(now) for _ in range(3)]
            [(1, True), (0, True), (0, False)]
        """
        today = now.astimezone(self.tz).strftime(DAY_FORMAT)

        with self._lock:
            if self._day != today:
                self._day = today
                self._used = 0

            if self._used >= self.limit:
                return 0, False

            self._used += 1
            return self.limit - self._used, True
