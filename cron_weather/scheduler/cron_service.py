"""Fixed-interval job scheduler with overlap protection and graceful shutdown.

A CronService runs one job function repeatedly:

- optional first run at a wall-clock time of day (HH:MM), deferred to
  tomorrow when that time has already passed today
- afterwards one attempt per interval tick; a tick that arrives while the
  previous invocation is still running is skipped, never queued
- each invocation runs in its own task with its own task_id-bound logger,
  and an exception raised by the job is logged without stopping the loop
- shutdown signals cancellation, then waits (bounded) for the in-flight
  invocation to finish

Lifecycle: IDLE -> RUNNING -> SHUTTING_DOWN -> STOPPED. STOPPED is terminal.
"""

import asyncio
import enum
import re
import threading
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, tzinfo

import structlog
from structlog.typing import FilteringBoundLogger

# Anything the scheduler can run: (cancellation signal, per-invocation logger)
JobFunc = Callable[[asyncio.Event, FilteringBoundLogger], Awaitable[None]]

START_AT_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class SchedulerError(Exception):
    """Base error for scheduler lifecycle and configuration problems."""


class InvalidStartTimeError(SchedulerError, ValueError):
    """The start time is not a valid HH:MM string."""


class SchedulerAlreadyRunningError(SchedulerError):
    """start() was called on a scheduler that is already running."""


class SchedulerNotRunningError(SchedulerError):
    """shutdown() was called on a scheduler that is not running."""


class SchedulerStoppedError(SchedulerError):
    """start() was called on a scheduler that has already stopped."""


class SchedulerShutdownTimeoutError(SchedulerError):
    """The in-flight invocation did not finish within the shutdown timeout."""


class SchedulerState(str, enum.Enum):
    """Lifecycle state of a CronService."""

    IDLE = "idle"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


def compute_first_run(start_at: str, now: datetime) -> datetime:
    """
    Resolve an HH:MM start time to the next matching moment after `now`.

    Args:
        start_at: Time of day, "H:MM" or "HH:MM" (24-hour clock)
        now: Current time; the result uses its date and timezone

    Returns:
        Today's date at start_at, or tomorrow's if that is not after `now`

    Raises:
        InvalidStartTimeError: If start_at is not a valid time of day

    Example:
        >>> compute_first_run("09:00", datetime(2025, 1, 15, 8, 30))
        datetime.datetime(2025, 1, 15, 9, 0)
        >>> compute_first_run("08:00", datetime(2025, 1, 15, 8, 30))
        datetime.datetime(2025, 1, 16, 8, 0)
    """
    match = START_AT_RE.match(start_at)
    if match is None:
        msg = "invalid START_AT format, expected HH:MM"
        raise InvalidStartTimeError(msg)

    candidate = now.replace(hour=int(match.group(1)), minute=int(match.group(2)), second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class CronService:
    """Runs a job on a fixed interval; at most one invocation in flight."""

    def __init__(
        self,
        interval: timedelta,
        start_at: str,
        job: JobFunc,
        logger: FilteringBoundLogger | None = None,
        tz: tzinfo | None = None,
    ) -> None:
        """
        Initialize the service (nothing runs until start()).

        Args:
            interval: Period between ticks, must be positive
            start_at: Optional HH:MM of the first run ("" to start ticking at once)
            job: Coroutine function invoked on each run
            logger: Base logger; a task_id is bound per invocation
            tz: Zone for start_at (defaults to the system local zone)

        Raises:
            ValueError: If interval is not positive
            InvalidStartTimeError: If start_at is not empty and not HH:MM
        """
        if interval <= timedelta(0):
            msg = "interval must be a positive duration"
            raise ValueError(msg)

        self.interval = interval
        self._tz = tz
        self._job = job
        self._logger = logger or structlog.get_logger(__name__)
        self._first_run = compute_first_run(start_at, self._now()) if start_at else None

        self._lock = threading.Lock()
        self._state = SchedulerState.IDLE
        self._job_running = False
        self._cancel: asyncio.Event | None = None
        self._stopped: asyncio.Event | None = None
        self._active_tasks: set[asyncio.Task[None]] = set()

    @property
    def first_run(self) -> datetime | None:
        """Moment of the first run, or None when no start time was configured."""
        return self._first_run

    @property
    def state(self) -> SchedulerState:
        """Current lifecycle state."""
        return self._state

    def _now(self) -> datetime:
        if self._tz is None:
            return datetime.now().astimezone()
        return datetime.now(self._tz)

    def _first_run_wait(self) -> float:
        """Seconds of real time until the first run (negative once it has passed)."""
        assert self._first_run is not None
        # Same-zone datetime subtraction ignores DST offset changes; compare instants
        return self._first_run.timestamp() - self._now().timestamp()

    async def start(self) -> None:
        """
        Run the schedule until shutdown() is called.

        Blocks for the lifetime of the service and returns once the in-flight
        invocation (if any) has finished after cancellation.

        Raises:
            SchedulerAlreadyRunningError: If the service is running already
            SchedulerStoppedError: If the service has already been stopped
        """
        with self._lock:
            if self._state in (SchedulerState.RUNNING, SchedulerState.SHUTTING_DOWN):
                msg = "cron service already running"
                raise SchedulerAlreadyRunningError(msg)
            if self._state is SchedulerState.STOPPED:
                msg = "cron service already stopped"
                raise SchedulerStoppedError(msg)
            cancel = self._cancel = asyncio.Event()
            stopped = self._stopped = asyncio.Event()
            self._state = SchedulerState.RUNNING

        self._logger.info(
            "cron_service_started",
            interval=str(self.interval),
            first_run=self._first_run.isoformat() if self._first_run else None,
        )

        try:
            if self._first_run is not None:
                wait = self._first_run_wait()
                if wait > 0:
                    self._logger.info("waiting_for_first_run", wait_seconds=round(wait, 3))
                    if await self._wait_for_cancel(cancel, wait):
                        await self._drain()
                        self._logger.info("cron_service_stopped_during_initial_wait")
                        return
                else:
                    self._logger.warning("first_run_time_in_past", action="running immediately")
                self._run_job(cancel)

            await self._tick_loop(cancel)

            with self._lock:
                self._state = SchedulerState.SHUTTING_DOWN
            self._logger.info("shutdown_signal_received", action="waiting for active jobs")
            await self._drain()
            self._logger.info("cron_service_stopped", detail="all jobs finished")
        finally:
            with self._lock:
                self._state = SchedulerState.STOPPED
            stopped.set()

    async def _tick_loop(self, cancel: asyncio.Event) -> None:
        """Attempt one run per interval until cancelled; missed ticks are dropped."""
        loop = asyncio.get_running_loop()
        period = self.interval.total_seconds()
        next_tick = loop.time() + period

        while True:
            if await self._wait_for_cancel(cancel, max(next_tick - loop.time(), 0.0)):
                return

            self._run_job(cancel)

            next_tick += period
            now = loop.time()
            if next_tick <= now:
                next_tick += ((now - next_tick) // period + 1) * period

    @staticmethod
    async def _wait_for_cancel(cancel: asyncio.Event, timeout: float) -> bool:
        """Wait up to `timeout` seconds; return True if cancellation fired."""
        if cancel.is_set():
            return True
        try:
            await asyncio.wait_for(cancel.wait(), timeout)
        except TimeoutError:
            return False
        return True

    def _run_job(self, cancel: asyncio.Event) -> None:
        """Launch an invocation unless one is still running."""
        with self._lock:
            if self._job_running:
                self._logger.warning("job_skipped", reason="previous run still in progress")
                return
            self._job_running = True

        task_id = str(uuid.uuid4())
        task = asyncio.create_task(self._invoke(cancel, task_id), name=f"cron-job-{task_id}")
        self._active_tasks.add(task)
        task.add_done_callback(self._active_tasks.discard)

    async def _invoke(self, cancel: asyncio.Event, task_id: str) -> None:
        """Run the job once, isolating the loop from anything it raises."""
        task_logger = self._logger.bind(task_id=task_id)
        try:
            await self._job(cancel, task_logger)
        except Exception as e:
            task_logger.error("job_panic_recovered", panic=repr(e), exc_info=e)
        finally:
            with self._lock:
                self._job_running = False

    async def _drain(self) -> None:
        """Wait for every in-flight invocation to finish."""
        while self._active_tasks:
            await asyncio.wait(set(self._active_tasks))

    async def shutdown(self, timeout: float | timedelta) -> None:
        """
        Stop the service and wait for the in-flight invocation.

        The invocation is never killed: when the timeout elapses it keeps
        running detached and only its logs report how it ended.

        Args:
            timeout: Maximum wait, in seconds or as a timedelta

        Raises:
            SchedulerNotRunningError: If the service is not running
            SchedulerShutdownTimeoutError: If the wait timed out
        """
        if isinstance(timeout, timedelta):
            timeout = timeout.total_seconds()

        with self._lock:
            if self._state is not SchedulerState.RUNNING:
                msg = "cron service not running"
                raise SchedulerNotRunningError(msg)
            self._state = SchedulerState.SHUTTING_DOWN
            cancel, stopped = self._cancel, self._stopped

        assert cancel is not None
        assert stopped is not None
        cancel.set()

        try:
            await asyncio.wait_for(stopped.wait(), timeout)
        except TimeoutError as e:
            msg = "shutdown timeout: jobs did not finish"
            raise SchedulerShutdownTimeoutError(msg) from e

        self._logger.info("cron_service_shutdown_complete")
