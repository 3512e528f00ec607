"""Subscription and delivery-record models."""

from datetime import datetime, timedelta

from sqlalchemy import BigInteger, DateTime, Float, String
from sqlalchemy.orm import Mapped, mapped_column

from cron_weather.models.base import Base


class SubscriptionRecord(Base):
    """A Telegram chat subscribed to weather alerts for one location."""

    __tablename__ = "subscriptions"

    chat_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    interval_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    start_at: Mapped[str] = mapped_column(String(5), nullable=False, default="", server_default="")
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)

    @property
    def interval(self) -> timedelta:
        """Polling interval as a timedelta."""
        return timedelta(seconds=self.interval_seconds)

    def __repr__(self) -> str:
        """String representation of the subscription."""
        return f"<SubscriptionRecord(chat_id={self.chat_id}, interval={self.interval}, start_at={self.start_at!r})>"


class SentAlert(Base):
    """
    Record of an alert already delivered to a chat.

    Keyed by (chat_id, fingerprint) where the fingerprint is the SHA-256 of
    the alert text. Rows are only ever inserted, never updated.
    """

    __tablename__ = "sent_alerts"

    chat_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    fingerprint: Mapped[str] = mapped_column(String(64), primary_key=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        """String representation of the delivery record."""
        return f"<SentAlert(chat_id={self.chat_id}, fingerprint={self.fingerprint[:12]})>"
