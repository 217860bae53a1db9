"""Tests for the live trade stream: parsing, subscription, reconnect policy, teardown."""

import asyncio
import json
import time
from unittest.mock import AsyncMock, patch

import pytest
import websockets
import websockets.exceptions

from errors import ConfigurationError
from ingest import (
    FAILED,
    STOPPED,
    FinnhubTradeStream,
    StreamManager,
    parse_trades,
)
from utils import TradeBuffer


TRADE_MESSAGE = json.dumps({
    "type": "trade",
    "data": [
        {"p": 187.5, "s": "AAPL", "t": 1704067200001, "v": 10},
        {"p": 42000.1, "s": "BINANCE:BTCUSDT", "t": 1704067200002, "v": 0.01},
    ],
})


class FakeWebSocket:
    """Async-context-manager websocket yielding canned messages."""

    def __init__(self, messages=(), block=False):
        self.messages = list(messages)
        self.block = block
        self.sent = []
        self.closed = False

    async def send(self, data):
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for message in self.messages:
            yield message
        if self.block:
            await asyncio.Event().wait()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False


class RejectedHandshake(websockets.exceptions.InvalidHandshake):
    def __init__(self, status_code):
        super().__init__(f"server rejected WebSocket connection: HTTP {status_code}")
        self.status_code = status_code


def _wait_for(predicate, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestParseTrades:
    def test_trade_message(self):
        trades = parse_trades(json.loads(TRADE_MESSAGE))
        assert [t.symbol for t in trades] == ["AAPL", "BINANCE:BTCUSDT"]
        assert trades[0].price == 187.5

    def test_other_message_types_ignored(self):
        assert parse_trades({"type": "ping"}) == []
        assert parse_trades({"type": "news", "data": [{"p": 1}]}) == []
        assert parse_trades(["not", "a", "dict"]) == []

    def test_malformed_records_skipped(self):
        message = {"type": "trade", "data": [{"p": 1.0, "s": "AAPL", "t": 1, "v": 1}, {"s": "MSFT"}]}
        trades = parse_trades(message)
        assert len(trades) == 1
        assert trades[0].symbol == "AAPL"


class TestHandleMessage:
    def test_ignored_when_not_running(self):
        buffer = TradeBuffer()
        stream = FinnhubTradeStream(["AAPL"], buffer, "key")
        assert stream.handle_message(TRADE_MESSAGE) == 0
        assert len(buffer) == 0

    def test_buffers_trades_when_running(self):
        buffer = TradeBuffer()
        stream = FinnhubTradeStream(["AAPL"], buffer, "key")
        stream._running = True
        assert stream.handle_message(TRADE_MESSAGE) == 2
        assert buffer.latest().symbol == "AAPL"

    def test_error_and_garbage_messages(self):
        buffer = TradeBuffer()
        stream = FinnhubTradeStream(["AAPL"], buffer, "key")
        stream._running = True
        assert stream.handle_message(json.dumps({"type": "error", "msg": "Invalid symbol"})) == 0
        assert stream.handle_message("{not json") == 0
        assert stream.handle_message(json.dumps({"type": "ping"})) == 0
        assert len(buffer) == 0


class TestFinnhubTradeStream:
    @pytest.mark.asyncio
    async def test_run_without_credential_never_connects(self):
        stream = FinnhubTradeStream(["AAPL"], TradeBuffer(), None)
        with patch("ingest.websockets.connect") as connect:
            with pytest.raises(ConfigurationError, match="FINNHUB_API_KEY"):
                await stream.run()
        connect.assert_not_called()
        assert stream.status == FAILED

    @pytest.mark.asyncio
    async def test_run_without_symbols_raises(self):
        stream = FinnhubTradeStream([" "], TradeBuffer(), "key")
        with pytest.raises(ConfigurationError):
            await stream.run()

    @pytest.mark.asyncio
    async def test_subscribes_each_symbol_and_buffers_trades(self):
        ws = FakeWebSocket([TRADE_MESSAGE])
        buffer = TradeBuffer()
        stream = FinnhubTradeStream(["aapl", "AMZN", "BINANCE:BTCUSDT"], buffer, "fh-key", max_retries=0)

        with patch("ingest.websockets.connect", return_value=ws) as connect:
            await stream.run()

        assert connect.call_args.args[0] == "wss://ws.finnhub.io?token=fh-key"
        assert ws.sent == [
            {"type": "subscribe", "symbol": "AAPL"},
            {"type": "subscribe", "symbol": "AMZN"},
            {"type": "subscribe", "symbol": "BINANCE:BTCUSDT"},
        ]
        assert [t.symbol for t in buffer.snapshot()] == ["AAPL", "BINANCE:BTCUSDT"]
        assert ws.closed
        # server closed the feed and no retries were allowed
        assert stream.status == FAILED

    @pytest.mark.asyncio
    async def test_bounded_retries_with_backoff(self):
        stream = FinnhubTradeStream(["AAPL"], TradeBuffer(), "key", max_retries=4, max_backoff=5.0)

        with patch("ingest.websockets.connect", side_effect=OSError("Connection refused")) as connect, \
                patch("ingest.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await stream.run()

        assert connect.call_count == 5
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0, 5.0]
        assert stream.status == FAILED
        assert "Connection refused" in stream.last_error

    @pytest.mark.asyncio
    async def test_auth_rejection_is_terminal(self):
        stream = FinnhubTradeStream(["AAPL"], TradeBuffer(), "bad-key", max_retries=5)

        with patch("ingest.websockets.connect", side_effect=RejectedHandshake(401)) as connect, \
                patch("ingest.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await stream.run()

        assert connect.call_count == 1
        sleep.assert_not_awaited()
        assert stream.status == FAILED
        assert "401" in stream.last_error

    @pytest.mark.asyncio
    async def test_other_handshake_failures_are_retried(self):
        stream = FinnhubTradeStream(["AAPL"], TradeBuffer(), "key", max_retries=1)

        with patch("ingest.websockets.connect", side_effect=RejectedHandshake(503)) as connect, \
                patch("ingest.asyncio.sleep", new_callable=AsyncMock):
            await stream.run()

        assert connect.call_count == 2
        assert stream.status == FAILED

    @pytest.mark.asyncio
    async def test_successful_connection_resets_retry_budget(self):
        attempts = iter([OSError("down"), FakeWebSocket([TRADE_MESSAGE]), OSError("down again")])

        def connect(*args, **kwargs):
            item = next(attempts)
            if isinstance(item, Exception):
                raise item
            return item

        stream = FinnhubTradeStream(["AAPL"], TradeBuffer(), "key", max_retries=1)
        with patch("ingest.websockets.connect", side_effect=connect), \
                patch("ingest.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await stream.run()

        # fail, connect ok, feed closes, fail, give up
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 1.0]
        assert len(stream.buffer) == 2

    @pytest.mark.asyncio
    async def test_stop_closes_open_connection(self):
        ws = FakeWebSocket([TRADE_MESSAGE], block=True)
        stream = FinnhubTradeStream(["AAPL"], TradeBuffer(), "key")

        with patch("ingest.websockets.connect", return_value=ws):
            asyncio.get_running_loop().call_later(0.05, stream.stop)
            await asyncio.wait_for(stream.run(), timeout=5)

        assert ws.closed
        assert stream.status == STOPPED
        assert not stream.running
        assert len(stream.buffer) == 2

    @pytest.mark.asyncio
    async def test_stop_before_run(self):
        stream = FinnhubTradeStream(["AAPL"], TradeBuffer(), "key")
        stream.stop()
        with patch("ingest.websockets.connect") as connect:
            await stream.run()
        connect.assert_not_called()
        assert stream.status == STOPPED


class TestStreamManager:
    def test_start_without_credential_raises(self):
        manager = StreamManager(TradeBuffer(), api_key=None)
        with pytest.raises(ConfigurationError):
            manager.start(["AAPL"])
        assert not manager.running

    def test_from_settings(self, settings):
        manager = StreamManager.from_settings(settings)
        assert manager.buffer.maxlen == settings.trade_buffer_size
        assert manager.api_key == "fh-test-key"
        assert manager.max_retries == settings.stream_max_retries

    def test_runs_in_background_and_stops(self):
        buffer = TradeBuffer()
        manager = StreamManager(buffer, api_key="key")

        with patch("ingest.websockets.connect", side_effect=lambda *a, **k: FakeWebSocket([TRADE_MESSAGE], block=True)):
            manager.start(["aapl", "BINANCE:BTCUSDT"])
            assert _wait_for(lambda: len(buffer) == 2)
            assert manager.running
            assert manager.current_symbols == ["AAPL", "BINANCE:BTCUSDT"]

            with pytest.raises(RuntimeError):
                manager.start(["MSFT"])

            manager.stop()

        assert not manager.running
        assert manager.status == STOPPED

