"""Tests for application wiring."""

import asyncio
from collections.abc import AsyncGenerator
from datetime import timedelta

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cron_weather.app import Application, default_subscription
from cron_weather.core.config import Settings
from cron_weather.scheduler.cron_service import SchedulerState
from cron_weather.schemas.subscription import Subscription
from cron_weather.services.subscription_service import SubscriptionRepository
from tests.helpers.fakes import TEST_BOT_TOKEN


def make_settings(**values: object) -> Settings:
    defaults: dict[str, object] = {"WEATHER_API_KEY": "weather-key", "TG_TOKEN": TEST_BOT_TOKEN}
    defaults.update(values)
    return Settings(_env_file=None, **defaults)  # type: ignore[call-arg]


@pytest.fixture
async def http_client() -> AsyncGenerator[httpx.AsyncClient]:
    """HTTP client that answers every request with an empty success."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True})))
    yield client
    await client.aclose()


class TestDefaultSubscription:
    """Tests for building the default subscription from settings."""

    def test_none_without_chat_id(self) -> None:
        """Test that no default subscription exists when DEFAULT_SUB_CHAT_ID is unset."""
        assert default_subscription(make_settings()) is None

    def test_falls_back_to_weather_location_and_interval(self) -> None:
        """Test that zero coordinates and interval use WEATHER_* and INTERVAL."""
        settings = make_settings(DEFAULT_SUB_CHAT_ID=42, WEATHER_LAT=55.75, WEATHER_LON=37.62, INTERVAL="2m")

        assert default_subscription(settings) == Subscription(
            chat_id=42, interval=timedelta(minutes=2), start_at="", lat=55.75, lon=37.62
        )

    def test_start_time_falls_back_to_start_at(self) -> None:
        """Test that an empty DEFAULT_SUB_START_AT uses START_AT."""
        settings = make_settings(DEFAULT_SUB_CHAT_ID=42, START_AT="06:15")

        subscription = default_subscription(settings)

        assert subscription is not None
        assert subscription.start_at == "06:15"

    def test_explicit_values(self) -> None:
        """Test that explicit DEFAULT_SUB_* values win."""
        settings = make_settings(
            DEFAULT_SUB_CHAT_ID=42,
            DEFAULT_SUB_INTERVAL="10m",
            DEFAULT_SUB_START_AT="07:30",
            DEFAULT_SUB_LAT=1.5,
            DEFAULT_SUB_LON=2.5,
            WEATHER_LAT=55.75,
            WEATHER_LON=37.62,
        )

        subscription = default_subscription(settings)

        assert subscription is not None
        assert subscription.interval == timedelta(minutes=10)
        assert subscription.start_at == "07:30"
        assert (subscription.lat, subscription.lon) == (1.5, 2.5)


class TestApplicationBuild:
    """Test cases for Application.build."""

    @pytest.mark.asyncio
    async def test_seeds_empty_database(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        repository: SubscriptionRepository,
        http_client: httpx.AsyncClient,
    ) -> None:
        """Test that the default subscription is stored and scheduled on first start."""
        settings = make_settings(DEFAULT_SUB_CHAT_ID=42, WEATHER_LAT=55.75, WEATHER_LON=37.62)

        app = await Application.build(settings, session_factory=session_factory, http_client=http_client)

        assert [s.chat_id for s in await repository.get_all()] == [42]
        assert len(app.runner) == 1

    @pytest.mark.asyncio
    async def test_does_not_seed_non_empty_database(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        repository: SubscriptionRepository,
        subscription: Subscription,
        http_client: httpx.AsyncClient,
    ) -> None:
        """Test that stored subscriptions suppress the default one."""
        await repository.add(subscription)
        settings = make_settings(DEFAULT_SUB_CHAT_ID=99)

        app = await Application.build(settings, session_factory=session_factory, http_client=http_client)

        assert [s.chat_id for s in await repository.get_all()] == [subscription.chat_id]
        assert [s.chat_id for s in app.subscription_service.list_subscriptions()] == [subscription.chat_id]

    @pytest.mark.asyncio
    async def test_invalid_subscription_is_skipped(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        repository: SubscriptionRepository,
        subscription: Subscription,
        http_client: httpx.AsyncClient,
    ) -> None:
        """Test that a subscription with a bad start time does not block its siblings."""
        await repository.add(subscription)
        await repository.add(subscription.model_copy(update={"chat_id": 7, "start_at": "25:00"}))

        app = await Application.build(make_settings(), session_factory=session_factory, http_client=http_client)

        assert len(app.subscription_service.list_subscriptions()) == 2
        assert len(app.runner) == 1

    @pytest.mark.asyncio
    async def test_invalid_bot_token_schedules_nothing(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        repository: SubscriptionRepository,
        subscription: Subscription,
        http_client: httpx.AsyncClient,
    ) -> None:
        """Test that notifier construction failures are logged and skipped."""
        await repository.add(subscription)

        app = await Application.build(
            make_settings(TG_TOKEN="broken"),
            session_factory=session_factory,
            http_client=http_client,
        )

        assert len(app.runner) == 0


class TestApplicationLifecycle:
    """Tests for running and stopping the application."""

    @pytest.mark.asyncio
    async def test_run_and_shutdown(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        repository: SubscriptionRepository,
        subscription: Subscription,
        http_client: httpx.AsyncClient,
    ) -> None:
        """Test that run starts every scheduler and shutdown stops them all."""
        await repository.add(subscription)
        await repository.add(subscription.model_copy(update={"chat_id": 7}))
        app = await Application.build(make_settings(), session_factory=session_factory, http_client=http_client)

        app.run()
        await asyncio.sleep(0.01)
        assert all(service.state is SchedulerState.RUNNING for service in app.runner.services)

        await app.shutdown(1.0)

        assert all(service.state is SchedulerState.STOPPED for service in app.runner.services)
        assert not http_client.is_closed
