"""
Shared data models and component state definitions.

This module defines the data contracts used across
ingestion, fetching, and the dashboard layers.
"""

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Deque, Generic, Iterable, List, Optional, TypeVar


T = TypeVar("T")


@dataclass(frozen=True)
class Trade:
    symbol: str
    price: float
    timestamp_ms: int    # exchange timestamp (ms)
    volume: float

    @classmethod
    def from_payload(cls, record: dict) -> "Trade":
        """
        Build a Trade from a push-feed record {p, s, t, v}.

        Raises ValueError/KeyError/TypeError on malformed records.
        """
        price = float(record["p"])
        volume = float(record["v"])
        if not math.isfinite(price) or not math.isfinite(volume):
            raise ValueError(f"non-finite trade values: {record!r}")
        return cls(
            symbol=str(record["s"]),
            price=price,
            timestamp_ms=int(record["t"]),
            volume=volume,
        )


class TradeBuffer:
    """
    Thread-safe bounded buffer of the most recent trades, newest first.

    Each incoming batch is prepended as a unit, keeping the batch's own
    order, ahead of everything already buffered. Old trades fall off the
    tail once capacity is reached. No dedup, no reordering by timestamp.
    """

    def __init__(self, maxlen: int = 20):
        if maxlen < 1:
            raise ValueError("maxlen must be at least 1")
        self.maxlen = maxlen
        self._trades: Deque[Trade] = deque(maxlen=maxlen)
        self._lock = threading.RLock()
        self._version = 0
        self._received = 0

    def add_batch(self, trades: Iterable[Trade]):
        """Prepend a batch; returns the number of trades in the batch."""
        batch = list(trades)
        if not batch:
            return 0
        with self._lock:
            # extendleft reverses its input, so feed it reversed to keep batch order
            self._trades.extendleft(reversed(batch))
            self._version += 1
            self._received += len(batch)
        return len(batch)

    def add(self, trade: Trade):
        return self.add_batch([trade])

    def snapshot(self) -> List[Trade]:
        """Copy of the buffer, newest first."""
        with self._lock:
            return list(self._trades)

    def latest(self) -> Optional[Trade]:
        with self._lock:
            return self._trades[0] if self._trades else None

    def latest_by_symbol(self) -> dict:
        """Most recent buffered trade per symbol."""
        out = {}
        with self._lock:
            for trade in self._trades:
                out.setdefault(trade.symbol, trade)
        return out

    def clear(self):
        with self._lock:
            self._trades.clear()
            self._version += 1

    @property
    def version(self) -> int:
        """Bumped on every mutation, for cheap change detection."""
        with self._lock:
            return self._version

    @property
    def received(self) -> int:
        """Total trades ever added, including those already evicted."""
        with self._lock:
            return self._received

    def __len__(self) -> int:
        with self._lock:
            return len(self._trades)


class FetchStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class RequestState(Generic[T]):
    status: FetchStatus = FetchStatus.IDLE
    data: Optional[Any] = None
    error: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    @property
    def loading(self) -> bool:
        return self.status is FetchStatus.LOADING

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.SUCCESS

    def loading_from(self) -> "RequestState[T]":
        """Loading state that keeps the previous data visible but clears the error."""
        return replace(self, status=FetchStatus.LOADING, error=None, updated_at=time.time())

    @classmethod
    def success(cls, data) -> "RequestState[T]":
        return cls(status=FetchStatus.SUCCESS, data=data, error=None)

    @classmethod
    def failure(cls, message: str, empty=None) -> "RequestState[T]":
        return cls(status=FetchStatus.ERROR, data=empty, error=message)
