"""Tests for the Telegram notifier."""

import asyncio
import json

import httpx
import pytest

from cron_weather.services.notification_service import (
    TELEGRAM_MESSAGE_LIMIT,
    NotificationError,
    TelegramNotifier,
    escape_telegram_html,
    make_telegram_notifier_factory,
    split_by_limit,
)
from tests.helpers.fakes import TEST_BOT_TOKEN


class RecordingTelegram:
    """MockTransport handler that records sendMessage payloads."""

    def __init__(self, response: httpx.Response | None = None) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    @property
    def payloads(self) -> list[dict[str, object]]:
        return [json.loads(request.content) for request in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.response is not None:
            return self.response
        return httpx.Response(200, json={"ok": True, "result": {"message_id": len(self.requests)}})


def make_notifier(handler: RecordingTelegram, chat_id: int = 42) -> TelegramNotifier:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramNotifier(TEST_BOT_TOKEN, chat_id, client=client)


class TestEscapeTelegramHtml:
    """Tests for HTML escaping."""

    def test_escapes_special_characters(self) -> None:
        """Test that &, < and > are escaped."""
        assert escape_telegram_html("wind <25 m/s> & rain") == "wind &lt;25 m/s&gt; &amp; rain"

    def test_ampersand_not_double_escaped(self) -> None:
        """Test that escaping '&' first keeps the other entities intact."""
        assert escape_telegram_html("<") == "&lt;"
        assert escape_telegram_html("&lt;") == "&amp;lt;"

    def test_plain_text_unchanged(self) -> None:
        """Test that text without special characters is untouched."""
        assert escape_telegram_html("Гроза, 20:00") == "Гроза, 20:00"


class TestSplitByLimit:
    """Tests for message splitting."""

    def test_short_text_is_single_chunk(self) -> None:
        """Test that text within the limit is returned as is."""
        assert split_by_limit("short", limit=10) == ["short"]

    def test_splits_on_paragraphs(self) -> None:
        """Test that paragraphs are packed greedily."""
        text = "aaaa\n\nbbbb\n\ncccc"
        assert split_by_limit(text, limit=10) == ["aaaa\n\nbbbb", "cccc"]

    def test_splits_long_paragraph_on_lines(self) -> None:
        """Test that a paragraph over the limit is split on line breaks."""
        text = "aaaa\nbbbb\ncccc"
        assert split_by_limit(text, limit=9) == ["aaaa\nbbbb", "cccc"]

    def test_hard_splits_long_line(self) -> None:
        """Test that a single line over the limit is cut."""
        assert split_by_limit("abcdefghij", limit=4) == ["abcd", "efgh", "ij"]

    def test_chunks_respect_limit(self) -> None:
        """Test that no chunk exceeds the limit and no text is lost."""
        paragraphs = [f"alert {i}: " + "x" * 700 for i in range(12)]
        text = "\n\n".join(paragraphs)

        chunks = split_by_limit(text, limit=TELEGRAM_MESSAGE_LIMIT)

        assert len(chunks) > 1
        assert all(len(chunk) <= TELEGRAM_MESSAGE_LIMIT for chunk in chunks)
        assert "\n\n".join(chunks) == text


class TestTelegramNotifier:
    """Test cases for TelegramNotifier."""

    @pytest.mark.parametrize("token", ["", "no-colon", "abc:def", "123:"])
    def test_invalid_token(self, token: str) -> None:
        """Test that malformed bot tokens are rejected."""
        with pytest.raises(ValueError, match="invalid Telegram bot token"):
            TelegramNotifier(token, 42)

    @pytest.mark.asyncio
    async def test_send_posts_html_message(self) -> None:
        """Test that messages are escaped, joined and posted with HTML parse mode."""
        handler = RecordingTelegram()
        notifier = make_notifier(handler)

        await notifier.send(["storm <red>", "heat & sun"])

        assert handler.payloads == [
            {"chat_id": 42, "text": "storm &lt;red&gt;\n\nheat &amp; sun", "parse_mode": "HTML"},
        ]
        assert handler.requests[0].url.path == f"/bot{TEST_BOT_TOKEN}/sendMessage"

    @pytest.mark.asyncio
    async def test_send_empty_batch_is_noop(self) -> None:
        """Test that an empty batch issues no request."""
        handler = RecordingTelegram()

        await make_notifier(handler).send([])

        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_send_splits_long_batch(self) -> None:
        """Test that a batch over the limit goes out as several messages."""
        handler = RecordingTelegram()
        messages = ["x" * 3000, "y" * 3000]

        await make_notifier(handler).send(messages)

        assert [payload["text"] for payload in handler.payloads] == messages

    @pytest.mark.asyncio
    async def test_send_api_error(self) -> None:
        """Test that ok=false is reported with Telegram's description."""
        handler = RecordingTelegram(
            httpx.Response(400, json={"ok": False, "description": "Bad Request: chat not found"})
        )

        with pytest.raises(NotificationError, match="chat not found"):
            await make_notifier(handler).send(["storm"])

    @pytest.mark.asyncio
    async def test_send_non_json_error(self) -> None:
        """Test that an error status with a non-JSON body is still an error."""
        handler = RecordingTelegram(httpx.Response(502, content=b"Bad Gateway"))

        with pytest.raises(NotificationError, match="status 502"):
            await make_notifier(handler).send(["storm"])

    @pytest.mark.asyncio
    async def test_send_transport_error_hides_token(self) -> None:
        """Test that transport errors are wrapped without leaking the bot token."""

        def handler(request: httpx.Request) -> httpx.Response:
            msg = f"cannot connect to {request.url}"
            raise httpx.ConnectError(msg, request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        notifier = TelegramNotifier(TEST_BOT_TOKEN, 42, client=client)

        with pytest.raises(NotificationError) as exc_info:
            await notifier.send(["storm"])

        assert TEST_BOT_TOKEN not in str(exc_info.value)
        assert "ConnectError" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_send_stops_when_cancelled(self) -> None:
        """Test that nothing is sent when cancellation is already requested."""
        handler = RecordingTelegram()
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(NotificationError, match="cancelled"):
            await make_notifier(handler).send(["storm"], cancel)

        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_send_finishes_batch_cancelled_midway(self) -> None:
        """Test that cancellation after the first part does not drop the remaining parts."""
        cancel = asyncio.Event()
        handler = RecordingTelegram()

        def cancel_after_first(request: httpx.Request) -> httpx.Response:
            cancel.set()
            return handler(request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(cancel_after_first))
        notifier = TelegramNotifier(TEST_BOT_TOKEN, 42, client=client)
        messages = ["x" * 3000, "y" * 3000]

        await notifier.send(messages, cancel)

        assert [payload["text"] for payload in handler.payloads] == messages

    @pytest.mark.asyncio
    async def test_aclose_keeps_shared_client_open(self) -> None:
        """Test that a notifier does not close a client it was given."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(RecordingTelegram()))
        notifier = TelegramNotifier(TEST_BOT_TOKEN, 42, client=client)

        await notifier.aclose()

        assert not client.is_closed
        await client.aclose()


class TestNotifierFactory:
    """Tests for the Telegram notifier factory."""

    @pytest.mark.asyncio
    async def test_factory_builds_notifier_per_chat(self) -> None:
        """Test that each chat ID gets a notifier sending to that chat."""
        handler = RecordingTelegram()
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        factory = make_telegram_notifier_factory(TEST_BOT_TOKEN, client)

        await factory(1).send(["a"])
        await factory(2).send(["b"])

        assert [payload["chat_id"] for payload in handler.payloads] == [1, 2]

    def test_factory_rejects_invalid_token(self) -> None:
        """Test that the factory raises for a malformed token."""
        factory = make_telegram_notifier_factory("not-a-token")

        with pytest.raises(ValueError, match="invalid Telegram bot token"):
            factory(42)
