"""Process wiring: builds every collaborator and owns the running schedulers."""

from datetime import UTC, datetime, timedelta, tzinfo

import httpx
import structlog
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cron_weather.core.config import Settings
from cron_weather.core.database import dispose_engine, get_session_factory, init_database
from cron_weather.core.telemetry import get_tracer_provider, shutdown_tracer_provider
from cron_weather.scheduler.cron_service import CronService, SchedulerError
from cron_weather.scheduler.runner import SchedulerRunner
from cron_weather.schemas.subscription import Subscription
from cron_weather.services.delivery_job import DeliveryJob, JobConfigurationError
from cron_weather.services.notification_service import NotifierFactory, make_telegram_notifier_factory
from cron_weather.services.rate_limiter import DailyLimiter
from cron_weather.services.subscription_service import (
    SubscriptionCache,
    SubscriptionRepository,
    SubscriptionService,
)
from cron_weather.services.weather_service import AlertSource, OpenWeatherFetcher

logger = structlog.get_logger(__name__)


def default_subscription(settings: Settings) -> Subscription | None:
    """
    Build the subscription described by the DEFAULT_SUB_* settings.

    Coordinates fall back to WEATHER_LAT/WEATHER_LON when both are zero. A
    zero interval falls back to INTERVAL and an empty start time to START_AT.

    Returns:
        The subscription, or None when DEFAULT_SUB_CHAT_ID is not set
    """
    if not settings.DEFAULT_SUB_CHAT_ID:
        return None

    lat, lon = settings.DEFAULT_SUB_LAT, settings.DEFAULT_SUB_LON
    if lat == 0 and lon == 0:
        lat, lon = settings.WEATHER_LAT, settings.WEATHER_LON

    interval = settings.DEFAULT_SUB_INTERVAL
    if interval <= timedelta(0):
        interval = settings.INTERVAL

    return Subscription(
        chat_id=settings.DEFAULT_SUB_CHAT_ID,
        interval=interval,
        start_at=settings.DEFAULT_SUB_START_AT or settings.START_AT,
        lat=lat,
        lon=lon,
    )


class Application:
    """Holds initialized dependencies and the running cron services."""

    def __init__(
        self,
        settings: Settings,
        subscription_service: SubscriptionService,
        runner: SchedulerRunner,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.subscription_service = subscription_service
        self.runner = runner
        self._http_client = http_client

    @classmethod
    async def build(
        cls,
        settings: Settings,
        started_at: datetime | None = None,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "Application":
        """
        Build the application: schema, subscriptions, clients and one scheduler per subscription.

        A subscription whose job or scheduler cannot be built is logged and
        skipped; the remaining subscriptions are still scheduled.

        Args:
            settings: Loaded settings
            started_at: Process start time, reported in delivery metrics
            session_factory: Session factory override (defaults to the shared one)
            http_client: HTTP client override shared by the fetcher and notifiers

        Returns:
            Application ready to run()
        """
        started_at = started_at or datetime.now(UTC)

        if settings.OTEL_ENABLED and (provider := get_tracer_provider()):
            trace.set_tracer_provider(provider)
            logger.info("otel_tracer_provider_initialized")

        if session_factory is None:
            await init_database()
            session_factory = get_session_factory()

        repository = SubscriptionRepository(session_factory)
        subscription_service = SubscriptionService(repository, SubscriptionCache())
        stored = await subscription_service.load()

        # Seed only an empty database so manual removals are not undone on restart
        if not stored and (seed := default_subscription(settings)) is not None:
            try:
                await subscription_service.add(seed)
            except Exception as e:
                logger.error("default_subscription_seed_failed", chat_id=seed.chat_id, error=str(e))

        tz = settings.tzinfo
        client = http_client or httpx.AsyncClient(timeout=settings.WEATHER_HTTP_TIMEOUT.total_seconds())
        fetcher = OpenWeatherFetcher(
            settings.WEATHER_API_KEY or "",
            settings.WEATHER_HTTP_TIMEOUT.total_seconds(),
            daily_limiter=DailyLimiter(settings.WEATHER_DAILY_LIMIT, tz),
            tz=tz,
            client=client,
        )
        notifier_factory = make_telegram_notifier_factory(settings.TG_TOKEN or "", client)

        runner = SchedulerRunner()
        for subscription in subscription_service.list_subscriptions():
            service = build_cron_service(
                subscription,
                fetcher,
                notifier_factory,
                repository,
                started_at=started_at,
                tz=tz,
            )
            if service is not None:
                runner.add(service)

        logger.info(
            "application_built",
            subscriptions=len(subscription_service.cache),
            schedulers=len(runner),
        )
        # Only a client created here is closed on shutdown
        owned_client = client if http_client is None else None
        return cls(settings, subscription_service, runner, http_client=owned_client)

    def run(self) -> None:
        """Start every cron service in the background and return immediately."""
        for service in self.runner.services:
            if service.first_run is not None:
                logger.info("first_run_scheduled", at=service.first_run.isoformat())
        self.runner.start()

    async def shutdown(self, timeout: float | timedelta) -> None:
        """
        Stop every cron service, then release HTTP, database and tracing resources.

        Args:
            timeout: Maximum wait per service for its in-flight job
        """
        logger.info("shutdown_starting")
        await self.runner.shutdown(timeout)

        if self._http_client is not None:
            await self._http_client.aclose()

        await dispose_engine()
        if self.settings.OTEL_ENABLED:
            shutdown_tracer_provider()
        logger.info("shutdown_complete")


def build_cron_service(
    subscription: Subscription,
    source: AlertSource,
    notifier_factory: NotifierFactory,
    repository: SubscriptionRepository,
    *,
    started_at: datetime | None = None,
    tz: tzinfo | None = None,
) -> CronService | None:
    """
    Build the delivery job and its scheduler for one subscription.

    Returns:
        The CronService, or None (after logging) when the subscription cannot be scheduled
    """
    try:
        job = DeliveryJob(source, subscription, notifier_factory, repository, started_at)
    except JobConfigurationError as e:
        logger.error("job_creation_failed", chat_id=subscription.chat_id, error=str(e))
        return None

    try:
        return CronService(
            subscription.interval,
            subscription.start_at,
            job,
            logger.bind(chat_id=subscription.chat_id),
            tz=tz,
        )
    except (SchedulerError, ValueError) as e:
        logger.error("cron_service_creation_failed", chat_id=subscription.chat_id, error=str(e))
        return None
