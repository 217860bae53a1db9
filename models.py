"""
Pydantic models for provider payloads.

One model per REST endpoint, mirroring the JSON the providers send, so
the dashboard never has to poke at raw dicts. Fields a provider may omit
are Optional and default to None ("not available"); unknown keys are
ignored.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


# -----------------------------------------------------------------------------
# Finnhub
# -----------------------------------------------------------------------------

class Quote(_Payload):
    """`/quote` – real-time quote for one symbol."""

    current: float = Field(..., alias="c")
    change: Optional[float] = Field(None, alias="d")
    percent_change: Optional[float] = Field(None, alias="dp")
    high: float = Field(..., alias="h")
    low: float = Field(..., alias="l")
    open: float = Field(..., alias="o")
    previous_close: float = Field(..., alias="pc")
    timestamp: int = Field(0, alias="t")  # seconds

    @property
    def is_up(self) -> bool:
        return (self.change or 0.0) >= 0

    @property
    def as_of(self) -> Optional[datetime]:
        if not self.timestamp:
            return None
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)


class CompanyProfile(_Payload):
    """`/stock/profile2`."""

    name: Optional[str] = None
    ticker: Optional[str] = None
    exchange: Optional[str] = None
    industry: Optional[str] = Field(None, alias="finnhubIndustry")
    country: Optional[str] = None
    currency: Optional[str] = None
    ipo: Optional[str] = None  # YYYY-MM-DD
    market_cap: Optional[float] = Field(None, alias="marketCapitalization")  # millions
    shares_outstanding: Optional[float] = Field(None, alias="shareOutstanding")
    weburl: Optional[str] = None
    logo: Optional[str] = None


class NewsArticle(_Payload):
    """Item of `/company-news` or `/news`."""

    id: Optional[int] = None
    headline: Optional[str] = None
    summary: Optional[str] = None
    url: Optional[str] = None
    image: Optional[str] = None
    source: Optional[str] = None
    published_at: Optional[int] = Field(None, alias="datetime")  # seconds
    category: Optional[str] = None
    related: Optional[str] = None

    @property
    def published(self) -> Optional[datetime]:
        if not self.published_at:
            return None
        return datetime.fromtimestamp(self.published_at, tz=timezone.utc)


class SeriesPoint(_Payload):
    period: str
    v: Optional[float] = None


class FinancialSeries(_Payload):
    annual: Dict[str, List[SeriesPoint]] = Field(default_factory=dict)
    quarterly: Dict[str, List[SeriesPoint]] = Field(default_factory=dict)


class BasicFinancials(_Payload):
    """`/stock/metric?metric=all`."""

    symbol: Optional[str] = None
    metric_type: Optional[str] = Field(None, alias="metricType")
    metric: Dict[str, Any] = Field(default_factory=dict)
    series: FinancialSeries = Field(default_factory=FinancialSeries)

    def key_ratios(self) -> Dict[str, Any]:
        """Scalar metrics minus the date stamps and growth rates."""
        return {
            k: v for k, v in self.metric.items()
            if "Date" not in k and "Growth" not in k and not isinstance(v, (dict, list))
        }


# -----------------------------------------------------------------------------
# Polygon
# -----------------------------------------------------------------------------

class Aggregate(_Payload):
    """One bar of `/v2/aggs/ticker/...` results."""

    timestamp: int = Field(..., alias="t")  # milliseconds
    open: float = Field(..., alias="o")
    high: float = Field(..., alias="h")
    low: float = Field(..., alias="l")
    close: float = Field(..., alias="c")
    volume: float = Field(0.0, alias="v")
    vwap: Optional[float] = Field(None, alias="vw")
    transactions: Optional[int] = Field(None, alias="n")


# -----------------------------------------------------------------------------
# Alpha Vantage
# -----------------------------------------------------------------------------

class MarketVenue(_Payload):
    """Entry of `MARKET_STATUS` markets[]."""

    market_type: str
    region: str
    primary_exchanges: Optional[str] = None
    local_open: Optional[str] = None
    local_close: Optional[str] = None
    current_status: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return (self.current_status or "").lower() == "open"
