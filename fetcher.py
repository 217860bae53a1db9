"""
Polling data fetchers with an explicit request lifecycle.

Responsibilities:
- Track Idle/Loading/Success/Error state for one piece of provider data
- Re-fetch when inputs change, on manual refresh, and on a timer (quotes)
- Tag every fetch with a generation number and drop superseded results
- Convert every failure into component-local error state
- Stop timers and ignore in-flight results once closed

This module must never:
- Talk to Streamlit
- Let a fetch failure escape to the caller
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import date
from typing import Any, Callable, List, Optional

from pydantic import ValidationError

from analytics import default_window
from errors import MarketDataError
from utils import FetchStatus, RequestState


logger = logging.getLogger("fetcher")

QUOTE_REFRESH_SECONDS = 30.0
MIN_IDLE_SECONDS = 60.0

Listener = Callable[[RequestState], None]


def describe_error(exc: Exception) -> str:
    """Short human-readable message for a failed fetch."""
    if isinstance(exc, ValidationError):
        return "Malformed response from provider"
    if isinstance(exc, (MarketDataError, ValueError)):
        return str(exc) or type(exc).__name__
    return "Failed to fetch data"


class PollingFetcher:
    """
    Request-state holder around a loader callable.

    ``loader(inputs)`` does the network work. Each fetch captures the
    inputs and a generation number; only the result of the latest
    generation is applied, so a slow stale response cannot overwrite a
    fresher one. Thread-safe: fetches may run on a worker pool or a timer
    thread while the UI reads ``state``.
    """

    def __init__(
        self,
        loader: Callable[[Any], Any],
        inputs: Any = None,
        empty: Any = None,
        name: str = "fetch",
    ):
        self._loader = loader
        self._inputs = inputs
        self._empty = empty
        self.name = name
        self._state: RequestState = RequestState()
        self._generation = 0
        self._closed = False
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._executor: Optional[ThreadPoolExecutor] = None

    # ---------------- state ----------------

    @property
    def state(self) -> RequestState:
        with self._lock:
            return self._state

    @property
    def inputs(self) -> Any:
        with self._lock:
            return self._inputs

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: Listener):
        """Call *listener(state)* after every applied state change."""
        self._listeners.append(listener)

    def _empty_value(self):
        return list(self._empty) if isinstance(self._empty, list) else self._empty

    def _set(self, state: RequestState) -> List[Listener]:
        # caller holds the lock; listeners are notified after it is released
        self._state = state
        return list(self._listeners)

    def _notify(self, listeners, state):
        for listener in listeners:
            listener(state)

    # ---------------- lifecycle ----------------

    def should_skip(self, inputs) -> bool:
        """True when *inputs* cannot produce a request (e.g. empty symbol)."""
        return False

    def update(self, inputs) -> RequestState:
        """Replace the inputs and fetch; no-op if unchanged and already fetched."""
        with self._lock:
            if inputs == self._inputs and self._state.status is not FetchStatus.IDLE:
                return self._state
            self._inputs = inputs
        return self.fetch()

    def fetch(self) -> RequestState:
        """Run one fetch cycle on the calling thread and return the resulting state."""
        with self._lock:
            if self._closed:
                return self._state
            self._generation += 1
            generation = self._generation
            inputs = self._inputs
            skip = self.should_skip(inputs)
            if skip:
                state = RequestState(status=FetchStatus.IDLE, data=self._empty_value())
            else:
                state = self._state.loading_from()
            listeners = self._set(state)

        self._notify(listeners, state)
        if skip:
            logger.debug(f"[FETCH] {self.name}: nothing to fetch for {inputs!r}")
            return state

        logger.debug(f"[FETCH] {self.name} #{generation} started")
        try:
            data = self._loader(inputs)
        except Exception as e:
            if not isinstance(e, (MarketDataError, ValueError)):
                logger.exception(f"[FETCH] {self.name} #{generation} crashed")
            else:
                logger.warning(f"[FETCH] {self.name} #{generation} failed: {e}")
            result = RequestState.failure(describe_error(e), empty=self._empty_value())
        else:
            result = RequestState.success(self._empty_value() if data is None else data)

        self._apply(generation, result)
        with self._lock:
            return self._state

    def _apply(self, generation: int, result: RequestState) -> bool:
        with self._lock:
            if self._closed:
                logger.debug(f"[FETCH] {self.name} #{generation} dropped: closed")
                return False
            if generation != self._generation:
                logger.info(f"[FETCH] {self.name} #{generation} dropped: superseded by #{self._generation}")
                return False
            listeners = self._set(result)
        self._notify(listeners, result)
        return True

    def refresh(self) -> RequestState:
        """Re-run the current fetch without changing inputs."""
        return self.fetch()

    def fetch_async(self) -> Future:
        """Run ``fetch`` on the fetcher's worker pool."""
        with self._lock:
            if self._closed:
                raise RuntimeError(f"{self.name} is closed")
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix=self.name)
            return self._executor.submit(self.fetch)

    def close(self):
        """Tear down: no state change is applied after this returns."""
        with self._lock:
            self._closed = True
            self._generation += 1
            executor, self._executor = self._executor, None
            self._listeners.clear()
        if executor is not None:
            executor.shutdown(wait=False)


# =============================================================
# OHLC SERIES
# =============================================================

@dataclass(frozen=True)
class AggregateOptions:
    multiplier: int = 1
    timespan: str = "day"
    from_: Optional[str] = None
    to: Optional[str] = None
    adjusted: bool = True

    def resolved(self, today: Optional[date] = None) -> "AggregateOptions":
        """Fill in the default window: 30 days back through today."""
        if self.from_ and self.to:
            return self
        start, end = default_window(today)
        return replace(self, from_=self.from_ or start, to=self.to or end)


@dataclass(frozen=True)
class SeriesRequest:
    symbol: str
    options: AggregateOptions


class SeriesFetcher(PollingFetcher):
    """Aggregate bars for one symbol; an empty symbol yields [] with no request."""

    def __init__(self, client_provider: Callable[[], Any], symbol: str = "",
                 options: Optional[AggregateOptions] = None, name: str = "ohlc"):
        self._client_provider = client_provider
        super().__init__(
            self._load,
            inputs=SeriesRequest((symbol or "").strip().upper(), (options or AggregateOptions()).resolved()),
            empty=[],
            name=name,
        )

    def should_skip(self, inputs: SeriesRequest) -> bool:
        return not inputs.symbol

    def _load(self, request: SeriesRequest):
        opts = request.options
        return self._client_provider().aggregates(
            request.symbol,
            opts.multiplier,
            opts.timespan,
            opts.from_,
            opts.to,
            adjusted=opts.adjusted,
            sort="asc",
            limit=5000,
        )

    def set_symbol(self, symbol: str) -> RequestState:
        return self.update(replace(self.inputs, symbol=(symbol or "").strip().upper()))

    def set_options(self, options: AggregateOptions) -> RequestState:
        return self.update(replace(self.inputs, options=options.resolved()))


# =============================================================
# INSTANT QUOTE
# =============================================================

class QuotePoller(PollingFetcher):
    """
    Quote for one symbol, re-fetched every *interval* seconds while open.

    The data is a single ``Quote``, not a list: while idle, and after a
    failed fetch, ``state.data`` is ``None`` with the message in
    ``state.error``.

    The timer runs on a daemon thread that waits on a stop event, so
    ``close()`` ends it promptly and joins it. A poller whose ``state``
    nobody has read for *idle_timeout* seconds (default: twice the
    interval, at least ``MIN_IDLE_SECONDS``) closes itself, so pollers
    left behind by ended sessions stop polling the provider.
    """

    def __init__(self, client_provider: Callable[[], Any], symbol: str,
                 interval: float = QUOTE_REFRESH_SECONDS, name: str = "quote",
                 idle_timeout: Optional[float] = None):
        self._client_provider = client_provider
        self.interval = interval
        if idle_timeout is None:
            idle_timeout = max(2 * interval, MIN_IDLE_SECONDS)
        self.idle_timeout = idle_timeout
        self._last_read = time.monotonic()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        super().__init__(self._load, inputs=(symbol or "").strip().upper(), empty=None, name=name)

    @property
    def state(self) -> RequestState:
        self._last_read = time.monotonic()
        return super().state

    @property
    def idle(self) -> bool:
        return time.monotonic() - self._last_read > self.idle_timeout

    def should_skip(self, symbol: str) -> bool:
        return not symbol

    def _load(self, symbol: str):
        return self._client_provider().quote(symbol)

    def _run_timer(self):
        logger.info(f"[FETCH] {self.name} polling {self.inputs} every {self.interval:.0f}s")
        self.fetch()
        while not self._stop.wait(self.interval):
            if self.closed:
                break
            if self.idle:
                logger.info(f"[FETCH] {self.name} {self.inputs} unread for {self.idle_timeout:.0f}s, stopping")
                self.close()
                break
            self.fetch()

    def start(self):
        """Fetch now and keep polling; idempotent."""
        if self.closed:
            raise RuntimeError(f"{self.name} is closed")
        if self._thread and self._thread.is_alive():
            return
        self._last_read = time.monotonic()
        self._thread = threading.Thread(target=self._run_timer, name=f"{self.name}-timer", daemon=True)
        self._thread.start()

    @property
    def polling(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def close(self, timeout: float = 2.0):
        self._stop.set()
        super().close()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None


# =============================================================
# FACTORIES
# =============================================================

def series_fetcher(clients, symbol: str = "", options: Optional[AggregateOptions] = None) -> SeriesFetcher:
    return SeriesFetcher(lambda: clients.polygon, symbol, options)


def quote_poller(clients, symbol: str, interval: Optional[float] = None,
                 idle_timeout: Optional[float] = None) -> QuotePoller:
    if interval is None:
        interval = clients.settings.quote_refresh_seconds
    return QuotePoller(lambda: clients.finnhub, symbol, interval=interval, idle_timeout=idle_timeout)


def one_shot(loader: Callable[[Any], Any], inputs: Any = None, empty: Any = None,
             name: str = "fetch") -> PollingFetcher:
    """Fetcher for data that only changes with its inputs (profile, news, metrics)."""
    return PollingFetcher(loader, inputs=inputs, empty=empty, name=name)
