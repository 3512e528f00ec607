"""Notification delivery: the Notifier protocol and the Telegram implementation."""

import asyncio
import re
from collections.abc import Callable, Sequence
from typing import Protocol

import httpx
import structlog
from opentelemetry.trace import SpanKind

from cron_weather.core.telemetry import service_span

logger = structlog.get_logger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
# Telegram hard limit is 4096 chars; keep a safety margin
TELEGRAM_MESSAGE_LIMIT = 4000
DEFAULT_HTTP_TIMEOUT = 10.0

_BOT_TOKEN_RE = re.compile(r"^\d+:[A-Za-z0-9_-]+$")


class NotificationError(Exception):
    """Delivering a batch of messages failed."""


class Notifier(Protocol):
    """Delivers batches of alert messages to one destination."""

    async def send(self, messages: Sequence[str], cancel: asyncio.Event | None = None) -> None:
        """
        Deliver the whole batch or raise.

        An empty batch is a no-op. A raised exception means the job treats
        the entire batch as undelivered.
        """
        ...


# Builds the Notifier for a chat ID; raising means the chat cannot be served
NotifierFactory = Callable[[int], Notifier]


def escape_telegram_html(text: str) -> str:
    """
    Escape the characters that break Telegram's HTML parse mode.

    Example:
        >>> escape_telegram_html("a&b<c>d")
        'a&amp;b&lt;c&gt;d'
    """
    # '&' first so the entities added below are not escaped twice
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def split_by_limit(text: str, limit: int = TELEGRAM_MESSAGE_LIMIT) -> list[str]:
    """
    Split text into chunks of at most `limit` characters.

    Prefers paragraph boundaries (blank lines), then line boundaries, and
    hard-splits single lines that are longer than the limit.

    Args:
        text: Text to split
        limit: Maximum chunk length

    Returns:
        Non-empty list of chunks (the text itself when it already fits)

    Example:
        >>> split_by_limit("aaa\\n\\nbbb", limit=5)
        ['aaa', 'bbb']
    """
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    current = ""

    def flush() -> None:
        nonlocal current
        if current:
            chunks.append(current)
            current = ""

    for paragraph in text.split("\n\n"):
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) <= limit:
            current = candidate
            continue

        flush()
        if len(paragraph) <= limit:
            current = paragraph
            continue

        for line in paragraph.split("\n"):
            candidate = f"{current}\n{line}" if current else line
            if len(candidate) <= limit:
                current = candidate
                continue

            flush()
            while len(line) > limit:
                chunks.append(line[:limit])
                line = line[limit:]
            current = line

    flush()
    return chunks


class TelegramNotifier:
    """Sends alert batches to a single Telegram chat through the Bot API."""

    def __init__(
        self,
        token: str,
        chat_id: int,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        api_url: str = TELEGRAM_API_URL,
    ) -> None:
        """
        Initialize the notifier.

        Args:
            token: Bot token issued by @BotFather
            chat_id: Destination chat ID
            client: Shared HTTP client (a private one is created if omitted)
            timeout: HTTP timeout in seconds for a private client
            api_url: Bot API base URL

        Raises:
            ValueError: If the token is missing or malformed
        """
        if not token or not _BOT_TOKEN_RE.match(token):
            msg = "invalid Telegram bot token"
            raise ValueError(msg)

        self.chat_id = chat_id
        self._endpoint = f"{api_url}/bot{token}/sendMessage"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        """Close the HTTP client if this notifier created it."""
        if self._owns_client:
            await self._client.aclose()

    async def send(self, messages: Sequence[str], cancel: asyncio.Event | None = None) -> None:
        """
        Join, escape and send messages, splitting by Telegram's length limit.

        Args:
            messages: Alert messages to deliver
            cancel: Checked before the first part only; once a part has gone
                out the rest of the batch is sent as well

        Raises:
            NotificationError: If any part could not be sent or cancellation
                was requested before the first part went out
        """
        if not messages:
            return

        text = "\n\n".join(escape_telegram_html(message) for message in messages)
        parts = split_by_limit(text, TELEGRAM_MESSAGE_LIMIT)

        if cancel is not None and cancel.is_set():
            msg = f"send cancelled before any of {len(parts)} parts"
            raise NotificationError(msg)

        with service_span("telegram.send", "telegram", kind=SpanKind.CLIENT) as span:
            span.set_attribute("telegram.message_count", len(messages))
            span.set_attribute("telegram.part_count", len(parts))

            for part in parts:
                await self._send_one(part)

        logger.debug("telegram_batch_sent", chat_id=self.chat_id, parts=len(parts))

    async def _send_one(self, text: str) -> None:
        """Send a single message part."""
        payload = {"chat_id": self.chat_id, "text": text, "parse_mode": "HTML"}
        try:
            response = await self._client.post(self._endpoint, json=payload)
        except httpx.HTTPError as e:
            # Never include the URL: it embeds the bot token
            msg = f"send telegram message: {type(e).__name__}"
            raise NotificationError(msg) from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.is_error or not body.get("ok", False):
            description = body.get("description", response.reason_phrase)
            msg = f"send telegram message: status {response.status_code}: {description}"
            raise NotificationError(msg)


def make_telegram_notifier_factory(token: str, client: httpx.AsyncClient | None = None) -> NotifierFactory:
    """
    Build a NotifierFactory producing TelegramNotifiers that share one client.

    Args:
        token: Bot token
        client: HTTP client shared by all produced notifiers

    Returns:
        Factory mapping chat ID to TelegramNotifier
    """

    def factory(chat_id: int) -> Notifier:
        return TelegramNotifier(token, chat_id, client=client)

    return factory
