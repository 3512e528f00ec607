"""Runs a set of CronServices side by side and stops them together."""

import asyncio
from datetime import timedelta

import structlog

from cron_weather.scheduler.cron_service import CronService, SchedulerError

logger = structlog.get_logger(__name__)


class SchedulerRunner:
    """
    Owns one CronService per subscription.

    Services are started independently (one task each) so a failing service
    never affects its siblings, and are shut down concurrently.
    """

    def __init__(self, services: list[CronService] | None = None) -> None:
        self._services: list[CronService] = list(services or [])
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def services(self) -> list[CronService]:
        """Managed services, in insertion order."""
        return list(self._services)

    def __len__(self) -> int:
        return len(self._services)

    def add(self, service: CronService) -> None:
        """Register a service; it is started by the next start() call."""
        self._services.append(service)

    def start(self) -> None:
        """Spawn a task running start() for every registered service."""
        for index, service in enumerate(self._services):
            task = asyncio.create_task(self._run_service(index, service), name=f"cron-service-{index}")
            self._tasks.append(task)
        logger.info("scheduler_runner_started", services=len(self._services))

    async def _run_service(self, index: int, service: CronService) -> None:
        try:
            await service.start()
        except SchedulerError as e:
            logger.error("cron_service_start_failed", service=index, error=str(e))

    async def shutdown(self, timeout: float | timedelta) -> list[Exception]:
        """
        Shut down every service concurrently.

        Per-service failures (not running, shutdown timeout, a crashed
        service task) are logged and returned rather than raised.

        Args:
            timeout: Maximum wait per service

        Returns:
            Errors raised by individual services (empty when all stopped cleanly)
        """
        results = await asyncio.gather(
            *(service.shutdown(timeout) for service in self._services),
            return_exceptions=True,
        )

        errors: list[Exception] = []
        for index, result in enumerate(results):
            if isinstance(result, Exception):
                logger.error("cron_service_shutdown_failed", service=index, error=str(result))
                errors.append(result)

        # Tasks still draining a detached job stay tracked
        finished = [task for task in self._tasks if task.done()]
        self._tasks = [task for task in self._tasks if not task.done()]
        for task, outcome in zip(finished, await asyncio.gather(*finished, return_exceptions=True), strict=True):
            if isinstance(outcome, Exception):
                logger.error("cron_service_crashed", task=task.get_name(), error=str(outcome), exc_info=outcome)
                errors.append(outcome)

        logger.info("scheduler_runner_stopped", services=len(self._services), errors=len(errors))
        return errors
