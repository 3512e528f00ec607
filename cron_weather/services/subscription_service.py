"""Subscription persistence, delivery records and the in-memory subscription cache."""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Protocol

import structlog
from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cron_weather.models import SentAlert, SubscriptionRecord
from cron_weather.schemas.subscription import Subscription

logger = structlog.get_logger(__name__)


class DedupStore(Protocol):
    """Remembers which alert fingerprints were already delivered to which chat."""

    async def was_sent(self, chat_id: int, fingerprint: str) -> bool:
        """Return True if (chat_id, fingerprint) was recorded as delivered."""
        ...

    async def mark_sent(self, chat_id: int, fingerprint: str, sent_at: datetime) -> None:
        """Record a delivery; recording an existing pair is a no-op."""
        ...


class SubscriptionRepository:
    """
    SQLAlchemy-backed storage for subscriptions and delivery records.

    Every call opens its own short-lived session and commits independently,
    so one repository can be shared by all schedulers.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """
        Initialize the repository.

        Args:
            session_factory: Factory for async sessions bound to the database
        """
        self._session_factory = session_factory

    async def get_all(self) -> list[Subscription]:
        """Return all stored subscriptions ordered by chat ID."""
        async with self._session_factory() as session:
            result = await session.execute(select(SubscriptionRecord).order_by(SubscriptionRecord.chat_id))
            return [Subscription.model_validate(record) for record in result.scalars().all()]

    async def add(self, subscription: Subscription) -> None:
        """
        Insert a subscription, replacing any existing one for the same chat.

        Args:
            subscription: Subscription to store
        """
        async with self._session_factory() as session:
            await session.merge(
                SubscriptionRecord(
                    chat_id=subscription.chat_id,
                    interval_seconds=subscription.interval.total_seconds(),
                    start_at=subscription.start_at,
                    lat=subscription.lat,
                    lon=subscription.lon,
                )
            )
            await session.commit()

    async def remove(self, chat_id: int) -> bool:
        """
        Delete the subscription for a chat.

        Args:
            chat_id: Chat whose subscription should be removed

        Returns:
            True if a subscription was deleted
        """
        async with self._session_factory() as session:
            result = await session.execute(delete(SubscriptionRecord).where(SubscriptionRecord.chat_id == chat_id))
            await session.commit()
            return bool(result.rowcount)

    async def was_sent(self, chat_id: int, fingerprint: str) -> bool:
        """Return True if the alert fingerprint was already delivered to the chat."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(SentAlert.chat_id)
                .where(SentAlert.chat_id == chat_id, SentAlert.fingerprint == fingerprint)
                .limit(1)
            )
            return result.first() is not None

    async def mark_sent(self, chat_id: int, fingerprint: str, sent_at: datetime) -> None:
        """
        Record a delivery (insert-if-absent; an existing record is left untouched).

        Args:
            chat_id: Chat the alert was delivered to
            fingerprint: Alert fingerprint
            sent_at: Delivery time
        """
        stmt = (
            sqlite_insert(SentAlert)
            .values(chat_id=chat_id, fingerprint=fingerprint, sent_at=sent_at)
            .on_conflict_do_nothing(index_elements=[SentAlert.chat_id, SentAlert.fingerprint])
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()


class ReadWriteLock:
    """
    Lock allowing many concurrent readers or a single writer.

    Writers wait for active readers to finish; new readers wait while a
    writer holds the lock.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        """Hold the lock for reading."""
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        """Hold the lock exclusively."""
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class SubscriptionCache:
    """In-memory subscriptions keyed by chat ID, guarded by a reader/writer lock."""

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._items: dict[int, Subscription] = {}

    def load_all(self, subscriptions: list[Subscription]) -> None:
        """Replace the cache contents."""
        with self._lock.write():
            self._items = {subscription.chat_id: subscription for subscription in subscriptions}

    def add(self, subscription: Subscription) -> None:
        """Insert or replace the subscription for its chat."""
        with self._lock.write():
            self._items[subscription.chat_id] = subscription

    def remove(self, chat_id: int) -> None:
        """Drop the subscription for a chat (no-op if absent)."""
        with self._lock.write():
            self._items.pop(chat_id, None)

    def get(self, chat_id: int) -> Subscription | None:
        """Return the subscription for a chat, if any."""
        with self._lock.read():
            return self._items.get(chat_id)

    def get_all(self) -> list[Subscription]:
        """Return a snapshot of all subscriptions."""
        with self._lock.read():
            return list(self._items.values())

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._items)


class SubscriptionService:
    """Keeps the repository and the cache in step for subscription changes."""

    def __init__(self, repository: SubscriptionRepository, cache: SubscriptionCache) -> None:
        self.repository = repository
        self.cache = cache

    async def load(self) -> list[Subscription]:
        """Load every stored subscription into the cache and return them."""
        subscriptions = await self.repository.get_all()
        self.cache.load_all(subscriptions)
        logger.info("subscriptions_loaded", count=len(subscriptions))
        return subscriptions

    async def add(self, subscription: Subscription) -> None:
        """Persist a subscription, then publish it to the cache."""
        await self.repository.add(subscription)
        self.cache.add(subscription)
        logger.info(
            "subscription_added",
            chat_id=subscription.chat_id,
            interval=str(subscription.interval),
            start_at=subscription.start_at,
        )

    async def remove(self, chat_id: int) -> bool:
        """Delete a subscription from storage and the cache."""
        removed = await self.repository.remove(chat_id)
        self.cache.remove(chat_id)
        logger.info("subscription_removed", chat_id=chat_id, existed=removed)
        return removed

    def list_subscriptions(self) -> list[Subscription]:
        """Return the cached subscriptions."""
        return self.cache.get_all()
