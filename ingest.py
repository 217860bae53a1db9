"""
Asynchronous live-trade ingestion from the Finnhub WebSocket feed.

Responsibilities:
- Hold exactly one push-feed connection for a fixed list of symbols
- Subscribe to every symbol once the connection opens
- Parse trade-type messages and prepend each batch to the trade buffer
- Reconnect with bounded exponential backoff, then give up
- Release the connection on every exit path and stop on request

This module must never:
- Connect without a credential
- Touch Streamlit or any rendering code
"""

import asyncio
import json
import logging
import threading
from typing import Iterable, List, Optional

import websockets
import websockets.exceptions

from errors import ConfigurationError
from utils import Trade, TradeBuffer


logger = logging.getLogger("ingest")

FINNHUB_WS_URL = "wss://ws.finnhub.io"

# Stream status values exposed for diagnostics
IDLE = "idle"
CONNECTING = "connecting"
CONNECTED = "connected"
RECONNECTING = "reconnecting"
STOPPED = "stopped"
FAILED = "failed"

AUTH_REJECTED = (401, 403)


def _status_code(exc: Exception) -> Optional[int]:
    """HTTP status of a rejected handshake across websockets versions."""
    code = getattr(exc, "status_code", None)
    if code is None:
        response = getattr(exc, "response", None)
        code = getattr(response, "status_code", None)
    return code


def parse_trades(message: dict) -> List[Trade]:
    """Trades carried by a decoded feed message; [] for any other message type."""
    if not isinstance(message, dict) or message.get("type") != "trade":
        return []
    trades = []
    for record in message.get("data") or []:
        try:
            trades.append(Trade.from_payload(record))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[STREAM] Skipping malformed trade {record!r}: {e}")
    return trades


class FinnhubTradeStream:
    """
    Async WebSocket consumer with graceful shutdown support.
    """

    def __init__(
        self,
        symbols: Iterable[str],
        buffer: TradeBuffer,
        api_key: Optional[str],
        url: str = FINNHUB_WS_URL,
        max_retries: int = 5,
        max_backoff: float = 30.0,
    ):
        self.symbols = list(dict.fromkeys(s.strip().upper() for s in symbols if s.strip()))
        self.buffer = buffer
        self.api_key = api_key
        self.url = url
        self.max_retries = max_retries
        self.max_backoff = max_backoff
        self.status = IDLE
        self.last_error: Optional[str] = None
        self.messages_received = 0
        self._running = False
        self._stop_requested = False
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return self._running

    def handle_message(self, raw) -> int:
        """Route one raw feed message; returns the number of trades buffered."""
        if not self._running:
            return 0
        self.messages_received += 1
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("[STREAM] Ignoring undecodable message")
            return 0

        if isinstance(message, dict) and message.get("type") == "error":
            logger.warning(f"[STREAM] Feed error: {message.get('msg')}")
            return 0

        trades = parse_trades(message)
        return self.buffer.add_batch(trades)

    async def _subscribe(self, ws):
        for symbol in self.symbols:
            await ws.send(json.dumps({"type": "subscribe", "symbol": symbol}))

    async def _consume(self):
        # Token goes in the query string; never log the full URL
        url = f"{self.url}?token={self.api_key}"
        backoff = 1.0
        retry_count = 0

        while self._running:
            try:
                self.status = CONNECTING if retry_count == 0 else RECONNECTING
                logger.info(f"[STREAM] Connecting to {self.url} for {', '.join(self.symbols)}")
                async with websockets.connect(
                    url,
                    ping_interval=20,
                    ping_timeout=10,
                    close_timeout=5
                ) as ws:
                    await self._subscribe(ws)
                    self.status = CONNECTED
                    self.last_error = None
                    logger.info(f"[STREAM] ✓ Connected, subscribed to {len(self.symbols)} symbols")
                    backoff = 1.0
                    retry_count = 0

                    async for msg in ws:
                        if not self._running:
                            break
                        self.handle_message(msg)

                if not self._running:
                    break
                raise ConnectionError("feed closed the connection")

            except asyncio.CancelledError:
                logger.info("[STREAM] Task cancelled")
                raise
            except websockets.exceptions.InvalidHandshake as e:
                code = _status_code(e)
                self.last_error = f"handshake rejected (HTTP {code})" if code else f"handshake failed: {e}"
                if code in AUTH_REJECTED:
                    logger.error(f"[STREAM] ❌ Credential rejected (HTTP {code}), not retrying")
                    self.status = FAILED
                    break
                logger.warning(f"[STREAM] {self.last_error}")
            except Exception as e:
                if not self._running:
                    break
                self.last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"[STREAM] Connection error: {self.last_error}")

            retry_count += 1
            if retry_count > self.max_retries:
                logger.error(f"[STREAM] ❌ Giving up after {retry_count} consecutive failures")
                self.status = FAILED
                break
            logger.info(f"[STREAM] Reconnecting in {backoff:.0f}s ({retry_count}/{self.max_retries})")
            self.status = RECONNECTING
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.max_backoff)

    async def run(self):
        """Connect and consume until stopped, cancelled, or out of retries."""
        if not self.api_key:
            self.status = FAILED
            self.last_error = "FINNHUB_API_KEY is not configured"
            raise ConfigurationError(self.last_error)
        if not self.symbols:
            raise ConfigurationError("No ticker symbols configured")

        if self._stop_requested:
            self.status = STOPPED
            return

        self._running = True
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(self._consume())
        if self._stop_requested:
            # stop() ran before the task existed
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._running = False
            if self.status != FAILED:
                self.status = STOPPED
            logger.info("[STREAM] Stream closed")

    def stop(self):
        """Signal the stream to stop; safe to call from any thread."""
        logger.info("[STREAM] Stop requested...")
        self._stop_requested = True
        self._running = False
        loop, task = self._loop, self._task
        if loop is None or task is None or task.done() or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(task.cancel)
        except RuntimeError:
            # Loop closed between the check and the call; the task is gone already
            pass


class StreamManager:
    """
    Owns the trade stream thread for one fixed symbol list.

    This manager:
    - Runs the stream's event loop in a separate daemon thread
    - Refuses to start without a credential
    - Supports stop and start for a fixed symbol list
    - Joins the thread on stop so no trade lands after teardown
    """

    def __init__(
        self,
        buffer: TradeBuffer,
        api_key: Optional[str],
        max_retries: int = 5,
        max_backoff: float = 30.0,
        url: str = FINNHUB_WS_URL,
    ):
        self.buffer = buffer
        self.api_key = api_key
        self.max_retries = max_retries
        self.max_backoff = max_backoff
        self.url = url
        self._stream: Optional[FinnhubTradeStream] = None
        self._thread: Optional[threading.Thread] = None
        self._current_symbols: List[str] = []
        self._thread_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, buffer: Optional[TradeBuffer] = None) -> "StreamManager":
        return cls(
            buffer=buffer or TradeBuffer(maxlen=settings.trade_buffer_size),
            api_key=settings.finnhub_api_key,
            max_retries=settings.stream_max_retries,
            max_backoff=settings.stream_max_backoff,
        )

    def _run_async_loop(self, stream: FinnhubTradeStream):
        """Run the stream's event loop in this thread."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(stream.run())
        except Exception as e:
            logger.error(f"[STREAM] Loop error: {e}")
        finally:
            loop.close()

    def start(self, symbols: Iterable[str]):
        """Start streaming *symbols*; raises ConfigurationError without a credential."""
        if not self.api_key:
            raise ConfigurationError("FINNHUB_API_KEY is not configured")

        with self._thread_lock:
            if self._thread and self._thread.is_alive():
                raise RuntimeError("stream already running")
            self._stream = FinnhubTradeStream(
                symbols,
                self.buffer,
                self.api_key,
                url=self.url,
                max_retries=self.max_retries,
                max_backoff=self.max_backoff,
            )
            self._current_symbols = list(self._stream.symbols)
            self._thread = threading.Thread(
                target=self._run_async_loop,
                args=(self._stream,),
                name="trade-stream",
                daemon=True
            )
            self._thread.start()
            logger.info(f"[STREAM] Started for: {', '.join(self._current_symbols)}")

    def stop(self, timeout: float = 3.0):
        """Stop the stream and wait for its thread; idempotent."""
        with self._thread_lock:
            if self._stream:
                self._stream.stop()

            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=timeout)
                if self._thread.is_alive():
                    logger.warning("[STREAM] Thread did not exit within timeout")

            self._thread = None
            logger.info("[STREAM] Stopped")

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    @property
    def status(self) -> str:
        return self._stream.status if self._stream else IDLE

    @property
    def last_error(self) -> Optional[str]:
        return self._stream.last_error if self._stream else None

    @property
    def current_symbols(self) -> List[str]:
        return self._current_symbols.copy()
