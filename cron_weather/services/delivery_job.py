"""Delivery job: fetch alerts for a subscription and deliver the ones not sent yet.

One invocation runs the pipeline

    fetch -> fingerprint -> filter already-sent -> send -> record as sent

and never raises for operational failures. Every outcome (no alerts, all
deduplicated, fetch/send failure, quota exhausted, shutdown) ends the
invocation with a log line; the next scheduled tick is the retry.

Delivery records are written only after the notifier accepted the batch, so
a failure can cause a duplicate on a later run but never a silently dropped
alert.
"""

import asyncio
import hashlib
import time
from datetime import UTC, datetime

from structlog.typing import FilteringBoundLogger

from cron_weather.core.telemetry import service_span
from cron_weather.schemas.subscription import Subscription
from cron_weather.services.notification_service import Notifier, NotifierFactory
from cron_weather.services.subscription_service import DedupStore
from cron_weather.services.weather_service import AlertSource, DailyLimitExceededError


class JobConfigurationError(Exception):
    """A job could not be built for a subscription (e.g. no notifier for the chat)."""


def fingerprint_message(message: str) -> str:
    """
    Compute the deduplication key of an alert message.

    Example:
        >>> fingerprint_message("alert")[:12]
        'df905058dd67'
    """
    return hashlib.sha256(message.encode()).hexdigest()


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


class InMemoryDedupStore:
    """Process-lifetime record of delivered fingerprints, owned by a single job."""

    def __init__(self) -> None:
        self._sent: set[tuple[int, str]] = set()

    async def was_sent(self, chat_id: int, fingerprint: str) -> bool:
        """Return True if the fingerprint was delivered to the chat during this process."""
        return (chat_id, fingerprint) in self._sent

    async def mark_sent(self, chat_id: int, fingerprint: str, sent_at: datetime) -> None:
        """Remember a delivery."""
        self._sent.add((chat_id, fingerprint))

    def __len__(self) -> int:
        return len(self._sent)


class DeliveryJob:
    """Fetch-and-deliver job bound to one subscription."""

    def __init__(
        self,
        source: AlertSource,
        subscription: Subscription,
        notifier_factory: NotifierFactory,
        dedup_store: DedupStore | None = None,
        started_at: datetime | None = None,
    ) -> None:
        """
        Build the job, resolving the notifier for the subscription's chat.

        Args:
            source: Where alerts come from
            subscription: Subscription supplying chat ID and coordinates
            notifier_factory: Builds the Notifier for the chat ID
            dedup_store: Persistent delivery records; a private in-memory
                store is used when omitted
            started_at: Process start time, for the startup-to-publish metric

        Raises:
            JobConfigurationError: If the notifier cannot be built
        """
        try:
            notifier = notifier_factory(subscription.chat_id)
        except Exception as e:
            msg = f"cannot create notifier for chat {subscription.chat_id}: {e}"
            raise JobConfigurationError(msg) from e

        self.source = source
        self.subscription = subscription
        self.notifier: Notifier = notifier
        self.dedup_store: DedupStore = dedup_store if dedup_store is not None else InMemoryDedupStore()
        self.started_at = started_at

    async def __call__(self, cancel: asyncio.Event, log: FilteringBoundLogger) -> None:
        """
        Run one invocation.

        Args:
            cancel: Cancellation signal, checked before fetching and before sending
            log: Logger scoped to this invocation (carries task_id)
        """
        chat_id = self.subscription.chat_id
        log = log.bind(chat_id=chat_id)

        with service_span("delivery_job.run", "delivery-job", chat_id=chat_id):
            await self._run(cancel, log)

    async def _run(self, cancel: asyncio.Event, log: FilteringBoundLogger) -> None:
        chat_id = self.subscription.chat_id
        job_start = time.perf_counter()
        log.debug("weather_job_started")

        if cancel.is_set():
            log.warning("job_cancelled_due_to_shutdown", stage="before_fetch")
            return

        fetch_start = time.perf_counter()
        try:
            messages = await self.source.fetch_alerts(self.subscription.lat, self.subscription.lon, cancel)
        except Exception as e:
            fetch_ms = _elapsed_ms(fetch_start)
            if cancel.is_set():
                log.warning("job_cancelled_due_to_shutdown", stage="fetch", reason=str(e), fetch_duration_ms=fetch_ms)
            elif isinstance(e, DailyLimitExceededError):
                log.warning("weather_daily_limit_exceeded", action="skipping run", fetch_duration_ms=fetch_ms)
            else:
                log.error(
                    "fetch_alerts_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    fetch_duration_ms=fetch_ms,
                )
            return
        fetch_ms = _elapsed_ms(fetch_start)

        if not messages:
            log.debug("no_alerts", fetch_duration_ms=fetch_ms, total_duration_ms=_elapsed_ms(job_start))
            return

        unique: list[str] = []
        fingerprints: list[str] = []
        for message in messages:
            fingerprint = fingerprint_message(message)
            if fingerprint in fingerprints:
                continue
            try:
                already_sent = await self.dedup_store.was_sent(chat_id, fingerprint)
            except Exception as e:
                # Without the dedup state a send could duplicate, so skip the whole run
                log.error("dedup_check_failed", error=str(e), error_type=type(e).__name__)
                return
            if already_sent:
                continue
            unique.append(message)
            fingerprints.append(fingerprint)

        if not unique:
            log.debug(
                "all_alerts_already_sent",
                fetched=len(messages),
                fetch_duration_ms=fetch_ms,
                total_duration_ms=_elapsed_ms(job_start),
            )
            return

        if cancel.is_set():
            log.warning("job_cancelled_due_to_shutdown", stage="before_send", pending=len(unique))
            return

        send_start = time.perf_counter()
        try:
            await self.notifier.send(unique, cancel)
        except Exception as e:
            log.error(
                "send_alerts_failed",
                error=str(e),
                error_type=type(e).__name__,
                count=len(unique),
                fetch_duration_ms=fetch_ms,
                send_duration_ms=_elapsed_ms(send_start),
            )
            return
        send_ms = _elapsed_ms(send_start)

        sent_at = datetime.now(UTC)
        for fingerprint in fingerprints:
            try:
                await self.dedup_store.mark_sent(chat_id, fingerprint, sent_at)
            except Exception as e:
                # Delivery already happened; at worst the alert is re-sent next run
                log.error("mark_alert_sent_failed", fingerprint=fingerprint, error=str(e))

        log.info("alerts_sent", count=len(unique))

        metrics: dict[str, float | int] = {
            "count": len(unique),
            "fetch_duration_ms": fetch_ms,
            "send_duration_ms": send_ms,
            "total_duration_ms": _elapsed_ms(job_start),
        }
        if self.started_at is not None:
            since_start = datetime.now(self.started_at.tzinfo) - self.started_at
            metrics["startup_to_publish_ms"] = round(since_start.total_seconds() * 1000, 2)
        log.debug("alerts_sent_metrics", **metrics)
