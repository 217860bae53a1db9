"""api.py

Thin synchronous REST clients for the market-data providers.

* One client object per provider (Finnhub, Polygon, Alpha Vantage), each
  holding its own ``requests.Session``, base URL and credential, so tests
  can hand in a fake session and nothing hides in module globals.
* Every call goes through ``_get`` which turns network failures, non-2xx
  statuses, undecodable bodies and JSON error envelopes into the error
  taxonomy from ``errors.py``.
* Payloads are validated into the models from ``models.py``; a malformed
  payload surfaces as ``pydantic.ValidationError``.
"""

from __future__ import annotations

import logging
import threading
import weakref
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

import requests

from config import Settings
from errors import ProviderError, TransportError
from models import (
    Aggregate,
    BasicFinancials,
    CompanyProfile,
    MarketVenue,
    NewsArticle,
    Quote,
)

logger = logging.getLogger("api")

FINNHUB_URL = "https://finnhub.io/api/v1"
POLYGON_URL = "https://api.polygon.io"
ALPHA_VANTAGE_URL = "https://www.alphavantage.co"

TIMESPANS = ("minute", "hour", "day", "week", "month", "quarter", "year")


def _iso(d: date) -> str:
    return d.strftime("%Y-%m-%d")


# -----------------------------------------------------------------------------
# Shared plumbing
# -----------------------------------------------------------------------------

class _RestClient:
    """Base class: auth query parameter, timeout, and error translation."""

    base_url: str = ""
    key_param: str = "token"
    # Keys whose presence in a JSON object means "this is an error, not data"
    error_keys: Tuple[str, ...] = ("error",)

    def __init__(
        self,
        api_key: str,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        base_url: Optional[str] = None,
    ):
        self._api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout
        if base_url:
            self.base_url = base_url.rstrip("/")

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None):
        """GET *base_url + path* with the credential attached; returns decoded JSON."""
        query = dict(params or {})
        query[self.key_param] = self._api_key
        logger.debug(f"[API] GET {self.base_url}{path}")

        try:
            r = self.session.get(f"{self.base_url}{path}", params=query, timeout=self.timeout)
        except requests.RequestException as e:
            # str(e) can echo the full URL including the credential
            raise TransportError(f"Network error calling {path}: {type(e).__name__}") from e

        if not 200 <= r.status_code < 300:
            raise TransportError(self._status_message(r), status_code=r.status_code)

        try:
            payload = r.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {path}", status_code=r.status_code) from e

        self._check_envelope(payload, r.status_code)
        return payload

    def _status_message(self, r) -> str:
        try:
            body = r.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            for key in self.error_keys + ("message",):
                if body.get(key):
                    return str(body[key])
        return f"HTTP error! status: {r.status_code}"

    def _check_envelope(self, payload, status_code: int):
        if not isinstance(payload, dict):
            return
        for key in self.error_keys:
            if payload.get(key):
                raise ProviderError(str(payload[key]), status_code=status_code)

    def close(self):
        self.session.close()


def _require_symbol(symbol: str) -> str:
    symbol = (symbol or "").strip()
    if not symbol:
        raise ValueError("Symbol is required")
    return symbol.upper()


# -----------------------------------------------------------------------------
# Finnhub
# -----------------------------------------------------------------------------

class FinnhubClient(_RestClient):
    base_url = FINNHUB_URL
    key_param = "token"

    def quote(self, symbol: str) -> Quote:
        symbol = _require_symbol(symbol)
        payload = self._get("/quote", {"symbol": symbol})
        # Unknown symbols come back as an all-zero quote rather than an error
        if isinstance(payload, dict) and not payload.get("c") and not payload.get("t"):
            raise ProviderError(f"No quote data for {symbol}")
        return Quote.model_validate(payload)

    def company_profile(self, symbol: str) -> Optional[CompanyProfile]:
        """Profile for *symbol*, or None when Finnhub knows nothing about it."""
        symbol = _require_symbol(symbol)
        payload = self._get("/stock/profile2", {"symbol": symbol})
        if not payload:
            return None
        return CompanyProfile.model_validate(payload)

    def company_news(
        self,
        symbol: str,
        days_back: int = 7,
        limit: Optional[int] = 5,
        today: Optional[date] = None,
    ) -> List[NewsArticle]:
        symbol = _require_symbol(symbol)
        to_date = today or date.today()
        from_date = to_date - timedelta(days=days_back)
        payload = self._get(
            "/company-news",
            {"symbol": symbol, "from": _iso(from_date), "to": _iso(to_date)},
        )
        return _articles(payload, limit)

    def market_news(self, category: str = "general", limit: Optional[int] = 5) -> List[NewsArticle]:
        payload = self._get("/news", {"category": category})
        return _articles(payload, limit)

    def basic_financials(self, symbol: str) -> BasicFinancials:
        symbol = _require_symbol(symbol)
        payload = self._get("/stock/metric", {"symbol": symbol, "metric": "all"})
        return BasicFinancials.model_validate(payload or {})


def _articles(payload, limit: Optional[int]) -> List[NewsArticle]:
    if not isinstance(payload, list):
        return []
    items = payload[:limit] if limit else payload
    return [NewsArticle.model_validate(item) for item in items]


# -----------------------------------------------------------------------------
# Polygon
# -----------------------------------------------------------------------------

class PolygonClient(_RestClient):
    base_url = POLYGON_URL
    key_param = "apiKey"

    def _check_envelope(self, payload, status_code: int):
        if isinstance(payload, dict) and payload.get("status") in ("ERROR", "NOT_AUTHORIZED"):
            message = payload.get("error") or payload.get("message") or "Polygon request failed"
            raise ProviderError(str(message), status_code=status_code)
        super()._check_envelope(payload, status_code)

    def aggregates(
        self,
        ticker: str,
        multiplier: int,
        timespan: str,
        from_: str,
        to: str,
        adjusted: Optional[bool] = True,
        sort: Optional[str] = "asc",
        limit: Optional[int] = 5000,
    ) -> List[Aggregate]:
        """
        Aggregate bars for *ticker* over [from_, to], oldest first by default.

        Raises ValueError when a path parameter is missing so no malformed
        URL ever leaves the process.
        """
        required = {
            "ticker": ticker, "multiplier": multiplier, "timespan": timespan,
            "from": from_, "to": to,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ValueError(f"Missing required parameters: {', '.join(missing)}")
        if timespan not in TIMESPANS:
            raise ValueError(f"Unsupported timespan: {timespan}")

        params: Dict[str, Any] = {}
        if adjusted is not None:
            params["adjusted"] = "true" if adjusted else "false"
        if sort:
            params["sort"] = sort
        if limit:
            params["limit"] = limit

        path = f"/v2/aggs/ticker/{ticker.upper()}/range/{multiplier}/{timespan}/{from_}/{to}"
        payload = self._get(path, params)
        results = payload.get("results") if isinstance(payload, dict) else None
        return [Aggregate.model_validate(bar) for bar in results or []]


# -----------------------------------------------------------------------------
# Alpha Vantage
# -----------------------------------------------------------------------------

class AlphaVantageClient(_RestClient):
    base_url = ALPHA_VANTAGE_URL
    key_param = "apikey"
    # Alpha Vantage answers 200 with one of these instead of data
    error_keys = ("Error Message", "Information", "Note")

    def market_status(self) -> List[MarketVenue]:
        payload = self._get("/query", {"function": "MARKET_STATUS"})
        markets = payload.get("markets") if isinstance(payload, dict) else None
        return [MarketVenue.model_validate(m) for m in markets or []]


# -----------------------------------------------------------------------------
# Wiring
# -----------------------------------------------------------------------------

class MarketDataClients:
    """
    The three provider clients; credentials checked lazily.

    ``requests.Session`` is not thread-safe, so unless a session is injected
    each thread (Streamlit script runs, quote poller timers) gets its own.
    An injected session is shared as-is.
    """

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self._shared = session
        self._local = threading.local()
        self._sessions: "weakref.WeakSet[requests.Session]" = weakref.WeakSet()
        self._lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        if self._shared is not None:
            return self._shared
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
            with self._lock:
                self._sessions.add(session)
        return session

    @property
    def finnhub(self) -> FinnhubClient:
        return FinnhubClient(
            self.settings.require("finnhub_api_key"), self.session, self.settings.request_timeout
        )

    @property
    def polygon(self) -> PolygonClient:
        return PolygonClient(
            self.settings.require("polygon_api_key"), self.session, self.settings.request_timeout
        )

    @property
    def alpha_vantage(self) -> AlphaVantageClient:
        return AlphaVantageClient(
            self.settings.require("alpha_vantage_api_key"), self.session, self.settings.request_timeout
        )

    def close(self):
        if self._shared is not None:
            self._shared.close()
        with self._lock:
            sessions = list(self._sessions)
            self._sessions = weakref.WeakSet()
        for session in sessions:
            session.close()


def build_clients(settings: Settings, session: Optional[requests.Session] = None) -> MarketDataClients:
    return MarketDataClients(settings, session)
