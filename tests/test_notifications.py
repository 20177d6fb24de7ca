"""Tests for ops notifications and price feeds."""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from celofx.notifications import BackgroundDispatcher, OpsNotifier, TelegramNotifier
from celofx.notifications.telegram import format_ops_event
from celofx.providers import HttpPriceFeed


class RecordingBot:
    """Minimal aiogram Bot stand-in."""

    def __init__(self):
        self.messages = []

    async def send_message(self, chat_id, text, parse_mode=None):
        self.messages.append((chat_id, text, parse_mode))


class TestBackgroundDispatcher:
    """Tests for background delivery."""

    @pytest.mark.asyncio
    async def test_failures_are_recorded_not_raised(self):
        dispatcher = BackgroundDispatcher()

        async def boom():
            raise RuntimeError("webhook down")

        async def fine():
            return None

        dispatcher.submit(boom(), "webhook:test")
        dispatcher.submit(fine(), "telegram:test")
        await dispatcher.drain()
        # done callbacks run on the next loop iteration
        await asyncio.sleep(0)

        assert dispatcher.pending == 0
        assert [(f.name, f.error) for f in dispatcher.failures] == [("webhook:test", "webhook down")]

    @pytest.mark.asyncio
    async def test_drain_cancels_stragglers(self):
        dispatcher = BackgroundDispatcher()
        task = dispatcher.submit(asyncio.sleep(10), "slow")

        await dispatcher.drain(timeout=0.01)
        await asyncio.sleep(0)

        assert task.cancelled()
        assert not dispatcher.failures


class TestOpsNotifier:
    """Tests for webhook and Telegram channels."""

    @pytest.mark.asyncio
    async def test_webhook_payload(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(204)

        dispatcher = BackgroundDispatcher()
        notifier = OpsNotifier(
            dispatcher, webhook_url="https://ops.test/hook", transport=httpx.MockTransport(handler)
        )

        notifier.notify("trade_confirmed", {"tradeId": 7})
        assert dispatcher.pending == 1
        await dispatcher.drain()

        (body,) = received
        assert body["event"] == "trade_confirmed"
        assert body["payload"] == {"tradeId": 7}
        assert isinstance(body["timestamp"], int)

    @pytest.mark.asyncio
    async def test_webhook_error_is_logged_as_failure(self):
        dispatcher = BackgroundDispatcher()
        notifier = OpsNotifier(
            dispatcher,
            webhook_url="https://ops.test/hook",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        notifier.notify("trade_failed", {})
        await dispatcher.drain()
        await asyncio.sleep(0)

        assert len(dispatcher.failures) == 1
        assert dispatcher.failures[0].name == "webhook:trade_failed"

    @pytest.mark.asyncio
    async def test_telegram_channel(self):
        bot = RecordingBot()
        dispatcher = BackgroundDispatcher()
        notifier = OpsNotifier(dispatcher, telegram=TelegramNotifier("-100", bot=bot))

        notifier.notify("vault_deposit", {"amount": "100"})
        await dispatcher.drain()

        ((chat_id, text, parse_mode),) = bot.messages
        assert chat_id == "-100"
        assert text.startswith("<b>Vault Deposit</b>")
        assert parse_mode == "HTML"

    def test_unconfigured_notifier_schedules_nothing(self):
        dispatcher = BackgroundDispatcher()

        OpsNotifier(dispatcher).notify("trade_confirmed", {})

        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_telegram_without_token(self):
        """Without a bot token the message is dropped, not raised."""
        assert await TelegramNotifier("-100").send_message("hello") is False


class TestFormatOpsEvent:
    def test_escapes_and_shortens_hashes(self):
        text = format_ops_event(
            "trade_failed",
            {"error": "<revert>", "txHash": "0x" + "ab" * 32, "venue": None},
        )

        assert "&lt;revert&gt;" in text
        assert "0xabababab...abababab" in text
        assert "venue" not in text


class TestHttpPriceFeed:
    """Tests for forex and crypto price fetching."""

    def _feed(self, responses: list, **kwargs) -> HttpPriceFeed:
        def handler(request: httpx.Request) -> httpx.Response:
            responses_seen.append(request.url.params.get("symbols") or request.url.params.get("ids"))
            return responses.pop(0)

        responses_seen: list = []
        feed = HttpPriceFeed(transport=httpx.MockTransport(handler), **kwargs)
        feed.requests = responses_seen
        return feed

    @pytest.mark.asyncio
    async def test_forex_rate_is_cached(self):
        feed = self._feed([httpx.Response(200, json={"rates": {"EUR": 0.91}})])

        first = await feed.forex_rate("eur")
        second = await feed.forex_rate("EUR")

        assert first.value == Decimal("0.91")
        assert first.source == "frankfurter"
        assert second is first
        assert feed.requests == ["EUR"]

    @pytest.mark.asyncio
    async def test_stale_value_reused_on_outage(self):
        feed = self._feed(
            [httpx.Response(200, json={"rates": {"EUR": 0.91}}), httpx.Response(503)],
            cache_ttl=0,
        )

        await feed.forex_rate("EUR")
        reading = await feed.forex_rate("EUR")

        assert reading.value == Decimal("0.91")
        assert reading.is_fallback

    @pytest.mark.asyncio
    async def test_fallback_constants(self):
        feed = self._feed([httpx.Response(502), httpx.Response(502), httpx.Response(502)])

        eur = await feed.forex_rate("EUR")
        celo = await feed.crypto_price("CELO")

        assert eur.value == Decimal("0.926") and eur.is_fallback
        assert celo.source == "fallback"
        with pytest.raises(ValueError):
            await feed.forex_rate("JPY")

    @pytest.mark.asyncio
    async def test_reference_rate(self):
        feed = self._feed(
            [
                httpx.Response(200, json={"rates": {"EUR": 0.92}}),
                httpx.Response(200, json={"rates": {"BRL": 5.52}}),
            ]
        )

        assert (await feed.reference_rate("cUSD", "cEUR")).value == Decimal("0.92")
        assert (await feed.reference_rate("cEUR", "cREAL")).value == Decimal("6")
        assert (await feed.reference_rate("cUSD", "USDC")).source == "parity"

    @pytest.mark.asyncio
    async def test_crypto_price(self):
        feed = self._feed([httpx.Response(200, json={"celo": {"usd": 0.52}})])

        reading = await feed.crypto_price()

        assert reading.value == Decimal("0.52")
        assert feed.requests == ["celo"]
