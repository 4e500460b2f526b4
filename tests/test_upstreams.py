"""
Tests for upstream HTTP clients: payload parsing, error typing, retry behaviour.
"""
from unittest.mock import Mock, patch

import pytest
import requests

from core.exceptions import InstrumentNotFound, RateLimited, UpstreamUnavailable
from core.instruments import Instrument
from core.upstreams import (
    BinanceClient,
    CoinbaseClient,
    CoinGeckoClient,
    OrderBook,
    build_upstreams,
)
from infra.rate_limiter import RateLimiter

BTC = Instrument("bitcoin", "BTC")
TRUMP = Instrument("official-trump", "TRUMP")


def _response(status=200, payload=None, headers=None, json_error=False):
    response = Mock()
    response.status_code = status
    response.headers = headers or {}
    response.text = str(payload)
    if json_error:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = payload
    return response


def _client(cls, **kwargs):
    kwargs.setdefault("max_retries", 1)
    kwargs.setdefault("sleep", lambda s: None)
    return cls(**kwargs)


class TestCoinGecko:

    def test_search_parses_candidates(self):
        payload = {"coins": [
            {"id": "official-trump", "symbol": "trump", "name": "Official Trump", "market_cap_rank": 70},
            {"id": "maga", "symbol": "TRUMP", "name": "MAGA", "market_cap_rank": None},
        ]}
        with patch("core.upstreams.requests.request", return_value=_response(payload=payload)) as req:
            results = _client(CoinGeckoClient, api_key="").search("TRUMP")

        assert [c.instrument_id for c in results] == ["official-trump", "maga"]
        assert results[0].symbol == "TRUMP"
        assert results[1].market_cap_rank is None
        assert req.call_args.kwargs["params"] == {"query": "TRUMP"}

    def test_api_key_header(self):
        with patch("core.upstreams.requests.request", return_value=_response(payload={"coins": []})) as req:
            _client(CoinGeckoClient, api_key="demo-key").search("BTC")
        assert req.call_args.kwargs["headers"]["x-cg-demo-api-key"] == "demo-key"

    def test_ticker_missing_id_is_not_found(self):
        with patch("core.upstreams.requests.request", return_value=_response(payload={})):
            with pytest.raises(InstrumentNotFound):
                _client(CoinGeckoClient, api_key="").get_ticker(BTC)

    def test_ticker(self):
        with patch("core.upstreams.requests.request",
                   return_value=_response(payload={"bitcoin": {"usd": 43000.5}})):
            assert _client(CoinGeckoClient, api_key="").get_ticker(BTC) == 43000.5

    def test_candles_sorted_and_limited(self):
        rows = [[3000, 3, 4, 2, 3.5], [1000, 1, 2, 0.5, 1.5], [2000, 2, 3, 1, 2.5]]
        with patch("core.upstreams.requests.request", return_value=_response(payload=rows)):
            candles = _client(CoinGeckoClient, api_key="").get_candles(BTC, "4h", 2)
        assert [c.open_time for c in candles] == [2000, 3000]
        assert candles[-1].close == 3.5

    def test_unsupported_interval(self):
        with pytest.raises(UpstreamUnavailable):
            _client(CoinGeckoClient, api_key="").get_candles(BTC, "1m", 10)

    def test_top_markets_paged(self):
        def row(i):
            return {"id": f"coin-{i}", "symbol": f"c{i}", "name": "", "current_price": 1.0,
                    "market_cap": 1e9, "market_cap_rank": i, "total_volume": 1e8,
                    "price_change_percentage_24h": 1.0, "price_change_percentage_7d_in_currency": 2.0}

        pages = [_response(payload=[row(i) for i in range(250)]),
                 _response(payload=[row(i) for i in range(250, 300)])]
        with patch("core.upstreams.requests.request", side_effect=pages) as req:
            snapshots = _client(CoinGeckoClient, api_key="").get_top_markets(300)

        assert len(snapshots) == 300
        assert req.call_count == 2
        assert req.call_args.kwargs["params"]["page"] == 2
        assert snapshots[0].symbol == "C0"
        assert snapshots[0].change_7d_pct == 2.0


class TestErrorTyping:

    def test_404_is_not_found(self):
        with patch("core.upstreams.requests.request", return_value=_response(status=404)):
            with pytest.raises(InstrumentNotFound):
                _client(CoinGeckoClient, api_key="").search("X")

    def test_other_4xx_is_unavailable_without_retry(self):
        with patch("core.upstreams.requests.request", return_value=_response(status=400)) as req:
            with pytest.raises(UpstreamUnavailable):
                _client(CoinGeckoClient, api_key="", max_retries=3).search("X")
        assert req.call_count == 1

    def test_5xx_retried_then_unavailable(self):
        sleeps = []
        with patch("core.upstreams.requests.request", return_value=_response(status=503)) as req:
            with pytest.raises(UpstreamUnavailable):
                _client(CoinGeckoClient, api_key="", max_retries=3, sleep=sleeps.append).search("X")
        assert req.call_count == 3
        assert len(sleeps) == 2

    def test_5xx_then_success(self):
        responses = [_response(status=502), _response(payload={"coins": []})]
        with patch("core.upstreams.requests.request", side_effect=responses):
            assert _client(CoinGeckoClient, api_key="", max_retries=2).search("X") == []

    def test_429_surfaces_rate_limited(self):
        with patch("core.upstreams.requests.request",
                   return_value=_response(status=429, headers={"Retry-After": "30"})):
            with pytest.raises(RateLimited) as exc_info:
                _client(CoinGeckoClient, api_key="", max_retries=2).search("X")
        assert exc_info.value.retry_after == 30.0

    def test_timeout_is_unavailable(self):
        with patch("core.upstreams.requests.request", side_effect=requests.exceptions.Timeout("slow")):
            with pytest.raises(UpstreamUnavailable):
                _client(CoinGeckoClient, api_key="").search("X")

    def test_invalid_json_is_unavailable(self):
        with patch("core.upstreams.requests.request", return_value=_response(json_error=True)):
            with pytest.raises(UpstreamUnavailable):
                _client(CoinGeckoClient, api_key="").search("X")

    def test_malformed_payload_is_unavailable(self):
        with patch("core.upstreams.requests.request", return_value=_response(payload={"unexpected": 1})):
            with pytest.raises(UpstreamUnavailable):
                _client(CoinGeckoClient, api_key="").search("X")

    def test_every_attempt_acquires_a_token(self):
        limiter = Mock()
        with patch("core.upstreams.requests.request", return_value=_response(status=500)):
            with pytest.raises(UpstreamUnavailable):
                _client(BinanceClient, limiter=limiter, max_retries=2).get_ticker(BTC)
        assert limiter.acquire.call_count == 2
        limiter.acquire.assert_called_with("binance")

    def test_limiter_rejection_propagates_before_request(self):
        limiter = Mock()
        limiter.acquire.side_effect = RateLimited("binance", 5.0)
        with patch("core.upstreams.requests.request") as req:
            with pytest.raises(RateLimited):
                _client(BinanceClient, limiter=limiter).get_ticker(BTC)
        req.assert_not_called()


class TestExchangeVenues:

    def test_binance_pair_and_ticker(self):
        with patch("core.upstreams.requests.request",
                   return_value=_response(payload={"symbol": "BTCUSDT", "price": "43000.10"})) as req:
            assert _client(BinanceClient).get_ticker(BTC) == pytest.approx(43000.10)
        assert req.call_args.kwargs["params"] == {"symbol": "BTCUSDT"}

    def test_binance_invalid_symbol_is_not_found(self):
        response = _response(status=400, payload={"code": -1121, "msg": "Invalid symbol."})
        with patch("core.upstreams.requests.request", return_value=response):
            with pytest.raises(InstrumentNotFound):
                _client(BinanceClient).get_ticker(TRUMP)

    def test_pair_override(self):
        client = _client(BinanceClient, pair_overrides={"official-trump": "TRUMPUSDC"})
        assert client.pair_for(TRUMP) == "TRUMPUSDC"

    def test_binance_order_book(self):
        payload = {"bids": [["99.5", "2"], ["99.0", "1"]], "asks": [["100.5", "1"], ["101", "3"]]}
        with patch("core.upstreams.requests.request", return_value=_response(payload=payload)):
            book = _client(BinanceClient).get_order_book(BTC, depth=5)
        assert isinstance(book, OrderBook)
        assert book.best_bid == 99.5
        assert book.best_ask == 100.5
        assert book.mid == pytest.approx(100.0)

    def test_coinbase_excludes_unsupported_tokens(self):
        with patch("core.upstreams.requests.request") as req:
            with pytest.raises(UpstreamUnavailable):
                _client(CoinbaseClient).get_ticker(Instrument("binancecoin", "BNB"))
        req.assert_not_called()

    def test_coinbase_candles_oldest_first(self):
        rows = [[1700000120, 9, 12, 10, 11, 5], [1700000060, 8, 11, 9, 10, 4]]
        with patch("core.upstreams.requests.request", return_value=_response(payload=rows)) as req:
            candles = _client(CoinbaseClient).get_candles(BTC, "1m", 10)

        assert "/products/BTC-USD/candles" in req.call_args.args[1]
        assert [c.open_time for c in candles] == [1700000060000, 1700000120000]
        assert candles[-1].open == 10
        assert candles[-1].low == 9


def test_build_upstreams_from_config():
    limiter = RateLimiter()
    clients = build_upstreams({
        "max_retries": 2,
        "coinbase": {"enabled": False},
        "binance": {"pair_overrides": {"official-trump": "TRUMPUSDT"}},
    }, limiter)

    assert set(clients) == {"coingecko", "binance"}
    assert clients["binance"].max_retries == 2
    assert clients["binance"].limiter is limiter
    assert clients["binance"].pair_for(TRUMP) == "TRUMPUSDT"
    assert clients["coingecko"].supports("search")
    assert not clients["binance"].supports("markets")
