"""Tests for the REST clients: request shape, error translation, payload parsing."""

import threading
from datetime import date
from unittest.mock import patch

import pytest
import requests

from api import (
    FINNHUB_URL,
    POLYGON_URL,
    AlphaVantageClient,
    FinnhubClient,
    MarketDataClients,
    PolygonClient,
)
from config import Settings
from errors import ConfigurationError, ProviderError, TransportError
from tests.conftest import (
    AGGS_PAYLOAD,
    MARKET_STATUS_PAYLOAD,
    NEWS_ITEM,
    PROFILE_PAYLOAD,
    QUOTE_PAYLOAD,
)


class TestFinnhubQuote:
    def test_quote_request_and_parse(self, session, respond):
        respond(QUOTE_PAYLOAD)
        client = FinnhubClient("fh-key", session=session)

        quote = client.quote(" aapl ")

        session.get.assert_called_once_with(
            f"{FINNHUB_URL}/quote",
            params={"symbol": "AAPL", "token": "fh-key"},
            timeout=10.0,
        )
        assert quote.current == 150.0
        assert quote.change == 2.5
        assert quote.previous_close == 147.5
        assert quote.is_up

    def test_empty_symbol_never_hits_network(self, session):
        client = FinnhubClient("fh-key", session=session)
        with pytest.raises(ValueError, match="Symbol is required"):
            client.quote("  ")
        session.get.assert_not_called()

    def test_all_zero_quote_is_provider_error(self, session, respond):
        respond({"c": 0, "d": None, "dp": None, "h": 0, "l": 0, "o": 0, "pc": 0, "t": 0})
        with pytest.raises(ProviderError, match="No quote data for ZZZZ"):
            FinnhubClient("fh-key", session=session).quote("zzzz")

    def test_http_500_without_body(self, session, respond):
        respond(status_code=500, invalid_json=True)
        with pytest.raises(TransportError) as exc:
            FinnhubClient("fh-key", session=session).quote("AAPL")
        assert str(exc.value) == "HTTP error! status: 500"
        assert exc.value.status_code == 500

    def test_http_error_uses_body_message(self, session, respond):
        respond({"error": "API limit reached. Please try again later."}, status_code=429)
        with pytest.raises(TransportError, match="API limit reached") as exc:
            FinnhubClient("fh-key", session=session).quote("AAPL")
        assert exc.value.status_code == 429

    def test_error_envelope_on_200(self, session, respond):
        respond({"error": "You don't have access to this resource."})
        with pytest.raises(ProviderError, match="access"):
            FinnhubClient("fh-key", session=session).quote("AAPL")

    def test_network_error_does_not_leak_credential(self, session):
        session.get.side_effect = requests.ConnectionError(
            "Max retries exceeded with url: /api/v1/quote?symbol=AAPL&token=fh-secret"
        )
        with pytest.raises(TransportError) as exc:
            FinnhubClient("fh-secret", session=session).quote("AAPL")
        assert "fh-secret" not in str(exc.value)
        assert "ConnectionError" in str(exc.value)

    def test_timeout_is_transport_error(self, session):
        session.get.side_effect = requests.Timeout()
        with pytest.raises(TransportError):
            FinnhubClient("fh-key", session=session, timeout=1.5).quote("AAPL")
        assert session.get.call_args.kwargs["timeout"] == 1.5

    def test_invalid_json_body(self, session, respond):
        respond(invalid_json=True)
        with pytest.raises(TransportError, match="Invalid JSON"):
            FinnhubClient("fh-key", session=session).quote("AAPL")


class TestFinnhubCompany:
    def test_profile(self, session, respond):
        respond(PROFILE_PAYLOAD)
        profile = FinnhubClient("fh-key", session=session).company_profile("AAPL")
        assert profile.name == "Apple Inc"
        assert profile.industry == "Technology"
        assert profile.market_cap == 2900000.5
        assert session.get.call_args.args[0] == f"{FINNHUB_URL}/stock/profile2"

    def test_unknown_symbol_profile_is_none(self, session, respond):
        respond({})
        assert FinnhubClient("fh-key", session=session).company_profile("ZZZZ") is None

    def test_company_news_window_and_limit(self, session, respond):
        respond([dict(NEWS_ITEM, id=i) for i in range(8)])
        news = FinnhubClient("fh-key", session=session).company_news("aapl", today=date(2024, 1, 10))

        params = session.get.call_args.kwargs["params"]
        assert params["symbol"] == "AAPL"
        assert params["from"] == "2024-01-03"
        assert params["to"] == "2024-01-10"
        assert [a.id for a in news] == [0, 1, 2, 3, 4]

    def test_market_news(self, session, respond):
        respond([NEWS_ITEM] * 7)
        news = FinnhubClient("fh-key", session=session).market_news()
        assert len(news) == 5
        assert news[0].headline == "Apple ships something"
        assert session.get.call_args.kwargs["params"]["category"] == "general"

    def test_market_news_keeps_items_with_null_fields(self, session, respond):
        respond([NEWS_ITEM, dict(NEWS_ITEM, id=7002, headline=None, summary=None, datetime=None)])
        news = FinnhubClient("fh-key", session=session).market_news()
        assert [article.id for article in news] == [7001, 7002]
        assert news[1].headline is None
        assert news[1].summary is None
        assert news[1].published is None

    def test_market_news_non_list_payload(self, session, respond):
        respond({"unexpected": True})
        assert FinnhubClient("fh-key", session=session).market_news() == []

    def test_basic_financials(self, session, respond):
        respond({
            "symbol": "AAPL",
            "metricType": "all",
            "metric": {"peTTM": 29.1, "52WeekHighDate": "2023-12-14", "epsGrowth5Y": 10.1},
            "series": {"annual": {"eps": [{"period": "2023-09-30", "v": 6.13}]}},
        })
        fin = FinnhubClient("fh-key", session=session).basic_financials("AAPL")
        assert session.get.call_args.kwargs["params"]["metric"] == "all"
        assert fin.key_ratios() == {"peTTM": 29.1}
        assert fin.series.annual["eps"][0].v == 6.13


class TestPolygonAggregates:
    def test_request_shape(self, session, respond):
        respond(AGGS_PAYLOAD)
        client = PolygonClient("pg-key", session=session)

        bars = client.aggregates("aapl", 1, "day", "2024-01-01", "2024-01-31")

        session.get.assert_called_once_with(
            f"{POLYGON_URL}/v2/aggs/ticker/AAPL/range/1/day/2024-01-01/2024-01-31",
            params={"adjusted": "true", "sort": "asc", "limit": 5000, "apiKey": "pg-key"},
            timeout=10.0,
        )
        assert len(bars) == 2
        assert bars[0].close == 185.64
        assert bars[0].vwap == 185.9

    def test_unadjusted_flag(self, session, respond):
        respond(AGGS_PAYLOAD)
        PolygonClient("pg-key", session=session).aggregates("AAPL", 1, "day", "2024-01-01", "2024-01-31", adjusted=False)
        assert session.get.call_args.kwargs["params"]["adjusted"] == "false"

    def test_missing_parameters(self, session):
        client = PolygonClient("pg-key", session=session)
        with pytest.raises(ValueError, match="Missing required parameters: from"):
            client.aggregates("AAPL", 1, "day", "", "2024-01-31")
        session.get.assert_not_called()

    def test_unsupported_timespan(self, session):
        with pytest.raises(ValueError, match="Unsupported timespan"):
            PolygonClient("pg-key", session=session).aggregates("AAPL", 1, "fortnight", "2024-01-01", "2024-01-31")

    def test_no_results_is_empty(self, session, respond):
        respond({"ticker": "AAPL", "status": "OK", "resultsCount": 0})
        assert PolygonClient("pg-key", session=session).aggregates("AAPL", 1, "day", "2024-01-01", "2024-01-02") == []

    @pytest.mark.parametrize("status", ["ERROR", "NOT_AUTHORIZED"])
    def test_error_status_envelope(self, session, respond, status):
        respond({"status": status, "message": "You are not entitled to this data."})
        with pytest.raises(ProviderError, match="not entitled"):
            PolygonClient("pg-key", session=session).aggregates("AAPL", 1, "day", "2024-01-01", "2024-01-31")


class TestAlphaVantage:
    def test_market_status(self, session, respond):
        respond(MARKET_STATUS_PAYLOAD)
        venues = AlphaVantageClient("av-key", session=session).market_status()

        params = session.get.call_args.kwargs["params"]
        assert params == {"function": "MARKET_STATUS", "apikey": "av-key"}
        assert [v.region for v in venues] == ["United States", "Global"]
        assert venues[0].is_open
        assert not venues[1].is_open

    def test_rate_limit_note_is_provider_error(self, session, respond):
        respond({"Note": "Thank you for using Alpha Vantage! Our standard API call frequency is 5 calls per minute."})
        with pytest.raises(ProviderError, match="call frequency"):
            AlphaVantageClient("av-key", session=session).market_status()


class TestMarketDataClients:
    def test_missing_credential_raises_before_network(self, session):
        clients = MarketDataClients(Settings(finnhub_api_key="fh"), session)
        with pytest.raises(ConfigurationError, match="POLYGON_API_KEY"):
            clients.polygon.aggregates("AAPL", 1, "day", "2024-01-01", "2024-01-31")
        session.get.assert_not_called()

    def test_clients_share_session_and_timeout(self, settings, session):
        clients = MarketDataClients(settings, session)
        assert clients.finnhub.session is session
        assert clients.alpha_vantage.session is session
        assert clients.polygon.timeout == settings.request_timeout

    def test_close_closes_session(self, settings, session):
        MarketDataClients(settings, session).close()
        session.close.assert_called_once()

    def test_one_session_per_thread_without_injected_session(self, settings):
        clients = MarketDataClients(settings)
        main = clients.finnhub.session
        assert clients.polygon.session is main

        seen = []
        worker = threading.Thread(target=lambda: seen.append(clients.finnhub.session))
        worker.start()
        worker.join()
        assert seen[0] is not main

        with patch.object(main, "close") as close:
            clients.close()
        close.assert_called_once()
