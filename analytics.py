"""
Display-adjacent business rules for quotes, series and trades.

Responsibilities:
- Signed delta / percent formatting and price, volume, market-cap labels
- Day-range position indicator, safe against a flat range
- Time-range windows for the OHLC fetcher
- Shape provider payloads into pandas frames and summary stats

This module must never:
- Perform network I/O
- Talk to Streamlit
"""

import calendar
import math
import numbers
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

import numpy as np
import pandas as pd


# ============================================================
# PURE HELPER FUNCTIONS (no I/O, no side effects)
# ============================================================

NOT_AVAILABLE = "N/A"


def _finite(value) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool) and math.isfinite(value)


def format_signed(value: Optional[float], decimals: int = 2) -> str:
    """
    Explicit sign from the float itself: +0.00, +1.50, -1.23.

    Negative zero counts as non-negative.
    """
    if not _finite(value):
        return NOT_AVAILABLE
    sign = "+" if value >= 0 else "-"
    return f"{sign}{abs(value):.{decimals}f}"


def format_percent(value: Optional[float], decimals: int = 2) -> str:
    text = format_signed(value, decimals)
    return text if text == NOT_AVAILABLE else f"{text}%"


def format_price(value: Optional[float], decimals: int = 2) -> str:
    if not _finite(value):
        return NOT_AVAILABLE
    return f"${value:,.{decimals}f}"


def format_volume(value: Optional[float]) -> str:
    if not _finite(value):
        return NOT_AVAILABLE
    if value >= 1_000_000:
        return f"{value / 1_000_000:.1f}M"
    if value >= 1_000:
        return f"{value / 1_000:.1f}K"
    return f"{value:g}"


def format_market_cap(millions: Optional[float]) -> str:
    """Finnhub reports market cap in millions of the listing currency."""
    if not _finite(millions):
        return NOT_AVAILABLE
    if millions >= 1_000_000:
        return f"${millions / 1_000_000:.2f}T"
    if millions >= 1_000:
        return f"${millions / 1_000:.2f}B"
    return f"${millions:.2f}M"


def format_metric_key(key: str) -> str:
    """'peBasicExclExtraTTM' -> 'pe Basic Excl Extra T T M', '52WeekHigh' -> '52 Week High'."""
    spaced = re.sub(r"([A-Z])", r" \1", key)
    spaced = re.sub(r"([0-9]+)", r" \1", spaced)
    return re.sub(r"\s+", " ", spaced).strip()


def format_metric_value(value: Any) -> str:
    if value is None:
        return NOT_AVAILABLE
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, numbers.Real):
        return f"{value:.2f}" if math.isfinite(value) else NOT_AVAILABLE
    return str(value)


def day_range_position(current: float, low: float, high: float) -> float:
    """
    Where *current* sits inside [low, high], as a percentage in [0, 100].

    A flat or inverted range (high <= low) and non-finite inputs return the
    midpoint, 50.0, so no NaN/inf ever reaches a progress bar.
    """
    if not (_finite(current) and _finite(low) and _finite(high)) or high <= low:
        return 50.0
    pct = (current - low) / (high - low) * 100
    return float(min(100.0, max(0.0, pct)))


# ============================================================
# TIME RANGES
# ============================================================

TIME_RANGES = ("1D", "1W", "1M", "3M", "1Y")
TIME_RANGE_LABELS = {
    "1D": "1 Day",
    "1W": "1 Week",
    "1M": "1 Month",
    "3M": "3 Months",
    "1Y": "1 Year",
}
DEFAULT_DAYS_BACK = 30


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def _shift_months(d: date, months: int) -> date:
    """Move *d* back by *months*, clamping to the end of shorter months."""
    total = d.year * 12 + (d.month - 1) - months
    year, month = divmod(total, 12)
    month += 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def range_start(label: str, today: Optional[date] = None) -> str:
    """First day (YYYY-MM-DD) of the window named by *label*; unknown labels mean 1M."""
    today = today or utc_today()
    if label == "1D":
        start = today - timedelta(days=1)
    elif label == "1W":
        start = today - timedelta(days=7)
    elif label == "3M":
        start = _shift_months(today, 3)
    elif label == "1Y":
        start = _shift_months(today, 12)
    else:
        start = _shift_months(today, 1)
    return start.isoformat()


def default_window(today: Optional[date] = None, days_back: int = DEFAULT_DAYS_BACK) -> Tuple[str, str]:
    """(from, to) for a fetch with no explicit dates: *days_back* days through today."""
    today = today or utc_today()
    return (today - timedelta(days=days_back)).isoformat(), today.isoformat()


# ============================================================
# FRAMES & SUMMARIES
# ============================================================

OHLC_COLUMNS = ["open", "high", "low", "close", "volume", "vwap"]
TRADE_COLUMNS = ["symbol", "price", "volume", "time"]


def ohlc_frame(aggregates: Iterable) -> pd.DataFrame:
    """Aggregate bars -> DataFrame indexed by UTC bar start, oldest first."""
    rows = [
        {
            "timestamp": bar.timestamp,
            "open": bar.open,
            "high": bar.high,
            "low": bar.low,
            "close": bar.close,
            "volume": bar.volume,
            "vwap": bar.vwap if bar.vwap is not None else np.nan,
        }
        for bar in aggregates
    ]
    if not rows:
        empty = pd.DataFrame(columns=OHLC_COLUMNS, dtype=float)
        empty.index = pd.DatetimeIndex([], tz="UTC", name="timestamp")
        return empty

    df = pd.DataFrame(rows)
    df["timestamp"] = pd.to_datetime(df["timestamp"], unit="ms", utc=True)
    df = df.set_index("timestamp").sort_index()
    return df[OHLC_COLUMNS]


def series_summary(frame: pd.DataFrame) -> Dict[str, Optional[float]]:
    """
    Headline numbers for a bar series.

    Volatility is the standard deviation of close-to-close simple returns,
    in percent, not annualised. Needs at least 3 bars; None otherwise.
    """
    keys = ("first_close", "last_close", "change", "change_pct", "high", "low", "volume", "volatility_pct")
    if frame is None or frame.empty:
        return {k: None for k in keys}

    closes = frame["close"].to_numpy(dtype=np.float64)
    first, last = float(closes[0]), float(closes[-1])
    change = last - first
    change_pct = change / first * 100 if first else None

    volatility = None
    if len(closes) >= 3:
        returns = np.diff(closes) / closes[:-1]
        returns = returns[np.isfinite(returns)]
        if len(returns) >= 2:
            volatility = float(np.std(returns, ddof=1) * 100)

    return {
        "first_close": first,
        "last_close": last,
        "change": change,
        "change_pct": change_pct,
        "high": float(frame["high"].max()),
        "low": float(frame["low"].min()),
        "volume": float(frame["volume"].sum()),
        "volatility_pct": volatility,
    }


def trades_frame(trades: Iterable) -> pd.DataFrame:
    """Trades (newest first) -> display table in the same order."""
    rows = [
        {
            "symbol": t.symbol,
            "price": t.price,
            "volume": t.volume,
            "time": pd.to_datetime(t.timestamp_ms, unit="ms", utc=True),
        }
        for t in trades
    ]
    if not rows:
        return pd.DataFrame(columns=TRADE_COLUMNS)
    return pd.DataFrame(rows, columns=TRADE_COLUMNS)


def metric_series_frame(points: Iterable) -> pd.DataFrame:
    """Financial series points (period, v) -> frame sorted by period."""
    rows = [{"period": p.period, "value": p.v} for p in points if p.v is not None]
    if not rows:
        return pd.DataFrame(columns=["period", "value"])
    df = pd.DataFrame(rows)
    df["period"] = pd.to_datetime(df["period"], errors="coerce")
    return df.dropna(subset=["period"]).sort_values("period").reset_index(drop=True)
