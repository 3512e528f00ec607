"""SQLAlchemy models."""

from cron_weather.models.base import Base
from cron_weather.models.subscription import SentAlert, SubscriptionRecord

__all__ = [
    "Base",
    "SentAlert",
    "SubscriptionRecord",
]
