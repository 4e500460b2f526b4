"""
Tests for coin discovery screening and the rejection ledger.
"""
import logging
import threading

import pytest

from core.discovery import (
    REASON_ERROR_PREFIX,
    REASON_LOW_SCORE,
    REASON_MARKET_CAP_HIGH,
    REASON_MARKET_CAP_LOW,
    REASON_VOLUME_LOW,
    DiscoveryFilters,
    DiscoveryPipeline,
    momentum_score,
    volume_score,
)
from core.exceptions import UpstreamUnavailable
from core.market_data import MarketDataProvider
from core.resolver import InstrumentResolver
from tests.helpers import StubSearch, StubUpstream, make_candidate, make_snapshot


def strong(symbol, **kwargs):
    """Passes every filter with composite 79"""
    return make_snapshot(symbol, **kwargs)


def weak(symbol, **kwargs):
    """Passes the hard filters but scores ~13"""
    return make_snapshot(symbol, volume_24h=2_000_000, change_24h=-10, change_7d=-10, **kwargs)


@pytest.fixture
def pipeline(metrics):
    return DiscoveryPipeline(resolver=None, market_data=None, config={}, metrics=metrics)


class TestScores:

    def test_volume_score_scaling(self):
        assert volume_score(150_000_000, 500_000_000) == pytest.approx(100.0)
        assert volume_score(15_000_000, 500_000_000) == pytest.approx(10.0)
        assert volume_score(10e9, 1e9) == 100.0

    def test_momentum_score_scaling(self):
        assert momentum_score(0, 0) == 50.0
        assert momentum_score(-10, -10) == 0.0
        assert momentum_score(30, 30) == 100.0
        assert momentum_score(None, None) == 50.0

    def test_filters_from_config(self):
        filters = DiscoveryFilters.from_config({"min_market_cap": 5, "weights": {"volume": 0.5,
                                                                               "momentum": 0.3,
                                                                               "sentiment": 0.2}})
        assert filters.min_market_cap == 5
        assert filters.min_volume_24h == 1_000_000
        assert filters.volume_weight == 0.5


class TestScreen:

    def test_rejection_ledger_reconciles(self, pipeline, metrics):
        """50 coins: 3 small caps, 2 illiquid, 10 low scores, 2 errors, 33 pass"""
        universe = []
        universe += [make_snapshot(f"CAP{i}", market_cap=5_000_000) for i in range(3)]
        universe += [make_snapshot(f"VOL{i}", volume_24h=500_000) for i in range(2)]
        universe += [weak(f"WEAK{i}") for i in range(10)]
        universe += [make_snapshot("NODATA", market_cap=None), ("BROKEN", UpstreamUnavailable("timeout"))]
        universe += [strong(f"OK{i:02d}") for i in range(33)]
        assert len(universe) == 50

        result = pipeline.screen(universe)

        counts = result.rejections.reason_counts
        assert counts[REASON_MARKET_CAP_LOW] == 3
        assert counts[REASON_VOLUME_LOW] == 2
        assert counts[REASON_LOW_SCORE] == 10
        assert sum(n for reason, n in counts.items() if reason.startswith(REASON_ERROR_PREFIX)) == 2
        assert len(result.candidates) == 33
        assert result.rejections.total == 17
        assert result.reconciled
        assert len(result.analysis_log) == 50

        summary = result.summary()
        assert summary["total_analyzed"] == 50
        assert summary["passed"] == 33
        assert summary["rejected"] == 17
        assert summary["top_rejection_reasons"][0] == (REASON_LOW_SCORE, 10)

        assert metrics.sample("coinsim_discovery_rejections_total", {"reason": REASON_LOW_SCORE}) == 10
        assert metrics.sample("coinsim_discovery_rejections_total", {"reason": REASON_ERROR_PREFIX}) == 2
        assert metrics.sample("coinsim_discovery_candidates") == 33

    def test_first_failing_filter_wins(self, pipeline):
        """A tiny, illiquid coin is counted once, under market cap"""
        result = pipeline.screen([make_snapshot("TINY", market_cap=1_000_000, volume_24h=1_000)])
        assert result.rejections.reason_counts == {REASON_MARKET_CAP_LOW: 1}

    def test_market_cap_ceiling(self, metrics):
        pipeline = DiscoveryPipeline(None, None, {"max_market_cap": 1e9}, metrics=metrics)
        result = pipeline.screen([make_snapshot("HUGE", market_cap=2e9, volume_24h=6e8)])
        assert result.rejections.reason_counts == {REASON_MARKET_CAP_HIGH: 1}

    def test_candidates_sorted_by_score_then_symbol(self, pipeline):
        rows = [
            strong("ZED"),
            strong("ABC"),
            strong("TOP", change_24h=10, change_7d=10),
        ]
        result = pipeline.screen(rows)
        assert [c.symbol for c in result.candidates] == ["TOP", "ABC", "ZED"]
        assert result.candidates[0].composite_score == 88

    def test_composite_rounds_half_up(self, metrics):
        # 100*0.4 + 50*0.35 + 12*0.25 = 60.5
        pipeline = DiscoveryPipeline(None, None, {}, sentiment_source=lambda s: 0.12, metrics=metrics)
        result = pipeline.screen([strong("HALF", change_24h=0, change_7d=0)])
        assert result.candidates[0].composite_score == 61

    def test_threshold_is_inclusive(self, metrics):
        # 100*0.4 + 50*0.35 + 10*0.25 = 60
        pipeline = DiscoveryPipeline(None, None, {}, sentiment_source=lambda s: 0.1, metrics=metrics)
        result = pipeline.screen([strong("EDGE", change_24h=0, change_7d=0)])
        assert [c.composite_score for c in result.candidates] == [60]

    def test_low_score_detail_names_weak_components(self, pipeline):
        result = pipeline.screen([weak("MEH")])
        entry = result.analysis_log[0]
        assert not entry.passed
        assert "weak volume" in entry.detail
        assert "poor momentum" in entry.detail
        assert entry.scores["composite"] == 13

    def test_sentiment_failure_is_neutral(self, metrics):
        def broken(symbol):
            raise RuntimeError("news api down")

        pipeline = DiscoveryPipeline(None, None, {}, sentiment_source=broken, metrics=metrics)
        result = pipeline.screen([strong("BTC")])
        assert result.candidates[0].sentiment_score == 50.0

    def test_empty_universe(self, pipeline):
        result = pipeline.screen([])
        assert result.scanned == 0
        assert result.candidates == []
        assert result.reconciled

    def test_errors_logged(self, pipeline, caplog):
        with caplog.at_level(logging.WARNING, logger="core.discovery"):
            pipeline.screen([("BROKEN", UpstreamUnavailable("timeout"))])
        assert any("BROKEN" in r.getMessage() for r in caplog.records)


class TestDiscover:

    def _pipeline(self, store, cache, metrics, utc_clock):
        search = StubSearch({
            "BTC": [make_candidate("bitcoin", "BTC", 1)],
            "TRUMP": [make_candidate("official-trump", "TRUMP", 70), make_candidate("decoy-trump", "TRUMP", 4000)],
            "GHOST": [make_candidate("ghost", "GHOST", None)],
        })
        gecko = StubUpstream("coingecko", markets={
            "bitcoin": strong("BTC", instrument_id="bitcoin"),
            "official-trump": weak("TRUMP", instrument_id="official-trump"),
            "decoy-trump": strong("TRUMP", instrument_id="decoy-trump"),
        })
        resolver = InstrumentResolver(search, store, cache, now=utc_clock)
        market_data = MarketDataProvider({"coingecko": gecko}, cache)
        return DiscoveryPipeline(resolver, market_data, {}, metrics=metrics), gecko

    def test_discover_resolves_then_screens(self, store, cache, metrics, utc_clock):
        pipeline, gecko = self._pipeline(store, cache, metrics, utc_clock)

        result = pipeline.discover(["btc", "TRUMP", "nope", "ghost"])

        assert result.scanned == 4
        assert result.reconciled
        assert [c.instrument_id for c in result.candidates] == ["bitcoin"]
        errors = [e for e in result.analysis_log if e.reason.startswith(REASON_ERROR_PREFIX)]
        assert [e.symbol for e in errors] == ["NOPE", "GHOST"]
        # Market rows come from the resolved instrument, not the decoy
        assert result.rejections.reason_counts[REASON_LOW_SCORE] == 1
        assert gecko.call_count("get_markets") == 1

    def test_batch_failure_rejects_every_resolved_coin(self, store, cache, metrics, utc_clock):
        pipeline, gecko = self._pipeline(store, cache, metrics, utc_clock)
        gecko.markets = UpstreamUnavailable("coingecko 503")

        result = pipeline.discover(["BTC", "TRUMP"])
        assert result.candidates == []
        assert result.rejections.total == 2
        assert result.reconciled

    def test_run_discovery_uses_top_markets(self, metrics, cache):
        gecko = StubUpstream("coingecko", top_markets=[strong("BTC"), weak("DOGE"), strong("ETH")])
        pipeline = DiscoveryPipeline(None, MarketDataProvider({"coingecko": gecko}, cache), {}, metrics=metrics)

        result = pipeline.run_discovery(3)

        assert [c.symbol for c in result.candidates] == ["BTC", "ETH"]
        assert result.summary()["rejected"] == 1

    def test_cancel_mid_discover_stops_resolving(self, store, cache, metrics, utc_clock):
        pipeline, gecko = self._pipeline(store, cache, metrics, utc_clock)
        search = pipeline.resolver.search_client
        cancel = threading.Event()
        lookup = search.search

        def search_then_shutdown(query):
            if query == "TRUMP":
                cancel.set()
            return lookup(query)

        search.search = search_then_shutdown

        result = pipeline.discover(["BTC", "TRUMP", "GHOST", "NOPE"], cancel_event=cancel)

        assert result.cancelled
        assert search.queries == ["BTC", "TRUMP"]
        assert gecko.call_count("get_markets") == 0
        # Aborted runs publish no partial ledger
        assert result.candidates == []
        assert result.rejections.total == 0
        assert result.scanned == 0
        assert result.summary()["cancelled"] is True

    def test_cancelled_before_start_fetches_nothing(self, metrics, cache):
        gecko = StubUpstream("coingecko", top_markets=[strong("BTC")])
        pipeline = DiscoveryPipeline(None, MarketDataProvider({"coingecko": gecko}, cache), {}, metrics=metrics)
        cancel = threading.Event()
        cancel.set()

        result = pipeline.run_discovery(3, cancel_event=cancel)

        assert result.cancelled
        assert gecko.call_count("get_top_markets") == 0

    def test_cancel_during_screening_discards_partial_ledger(self, metrics):
        cancel = threading.Event()

        def sentiment(symbol):
            cancel.set()
            return 0.5

        pipeline = DiscoveryPipeline(None, None, {}, sentiment_source=sentiment, metrics=metrics)
        result = pipeline.screen([strong("AAA"), strong("BBB"), strong("CCC")], cancel_event=cancel)

        assert result.cancelled
        assert result.analysis_log == []
        assert result.scanned == 0
