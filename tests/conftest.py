"""Shared fixtures: provider payloads, a fake HTTP session, test settings."""

from unittest.mock import MagicMock

import pytest
import requests

from config import Settings


QUOTE_PAYLOAD = {
    "c": 150.0,
    "d": 2.5,
    "dp": 1.6949,
    "h": 160.0,
    "l": 140.0,
    "o": 148.0,
    "pc": 147.5,
    "t": 1704067200,
}

PROFILE_PAYLOAD = {
    "country": "US",
    "currency": "USD",
    "exchange": "NASDAQ NMS - GLOBAL MARKET",
    "finnhubIndustry": "Technology",
    "ipo": "1980-12-12",
    "logo": "https://example.com/aapl.png",
    "marketCapitalization": 2900000.5,
    "name": "Apple Inc",
    "shareOutstanding": 15550.06,
    "ticker": "AAPL",
    "weburl": "https://www.apple.com/",
}

NEWS_ITEM = {
    "category": "technology",
    "datetime": 1704067200,
    "headline": "Apple ships something",
    "id": 7001,
    "image": "https://example.com/img.png",
    "related": "AAPL",
    "source": "Reuters",
    "summary": "Summary text",
    "url": "https://example.com/story",
}

AGGS_PAYLOAD = {
    "ticker": "AAPL",
    "status": "OK",
    "adjusted": True,
    "resultsCount": 2,
    "results": [
        {"t": 1704153600000, "o": 187.15, "h": 188.44, "l": 183.89, "c": 185.64, "v": 82488700, "vw": 185.9, "n": 1008871},
        {"t": 1704240000000, "o": 184.22, "h": 185.88, "l": 183.43, "c": 184.25, "v": 58414500, "vw": 184.3, "n": 656944},
    ],
}

MARKET_STATUS_PAYLOAD = {
    "endpoint": "Global Market Open & Close Status",
    "markets": [
        {
            "market_type": "Equity",
            "region": "United States",
            "primary_exchanges": "NASDAQ, NYSE, AMEX, BATS",
            "local_open": "09:30",
            "local_close": "16:15",
            "current_status": "open",
            "notes": "",
        },
        {
            "market_type": "Forex",
            "region": "Global",
            "primary_exchanges": "Global",
            "local_open": "N/A",
            "local_close": "N/A",
            "current_status": "closed",
            "notes": "",
        },
    ],
}


def make_response(payload=None, status_code=200, invalid_json=False):
    response = MagicMock()
    response.status_code = status_code
    if invalid_json:
        response.json.side_effect = ValueError("Expecting value")
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def settings():
    return Settings(
        finnhub_api_key="fh-test-key",
        polygon_api_key="pg-test-key",
        alpha_vantage_api_key="av-test-key",
    )


@pytest.fixture
def session():
    """requests.Session stand-in; set ``session.get.return_value`` per test."""
    fake = MagicMock(spec=requests.Session)
    fake.get.return_value = make_response({})
    return fake


@pytest.fixture
def respond(session):
    """Make the fake session answer the next GET with *payload*."""
    def _respond(payload=None, status_code=200, invalid_json=False):
        session.get.return_value = make_response(payload, status_code, invalid_json)
        return session
    return _respond
