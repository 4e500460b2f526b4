"""
coinsim Core: Coin Discovery

Screens a universe of coins and scores the survivors.

Each coin passes through, in order (first failure rejects):
1. Market cap floor
2. Market cap ceiling
3. 24h volume floor
4. Composite score threshold (volume / momentum / sentiment)

Every scanned coin ends up as exactly one candidate or exactly one
rejection, so the rejection ledger always reconciles with the universe.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Event
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.exceptions import DataIntegrityWarning, MarketDataError
from core.instruments import Instrument
from core.upstreams import MarketSnapshot
from infra.symbols import literal_ticker

logger = logging.getLogger(__name__)

REASON_MARKET_CAP_LOW = "Market cap below minimum"
REASON_MARKET_CAP_HIGH = "Market cap above maximum"
REASON_VOLUME_LOW = "Volume below minimum"
REASON_LOW_SCORE = "Low composite score"
REASON_ERROR_PREFIX = "Error during analysis"

NEUTRAL_SENTIMENT = 0.5


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return min(max(value, low), high)


@dataclass(frozen=True)
class DiscoveryFilters:
    min_market_cap: Optional[float] = 10_000_000
    max_market_cap: Optional[float] = None
    min_volume_24h: Optional[float] = 1_000_000
    min_composite_score: float = 60
    volume_weight: float = 0.4
    momentum_weight: float = 0.35
    sentiment_weight: float = 0.25

    @classmethod
    def from_config(cls, config: Optional[Dict]) -> "DiscoveryFilters":
        config = config or {}
        weights = config.get("weights") or {}
        defaults = cls()
        return cls(
            min_market_cap=config.get("min_market_cap", defaults.min_market_cap),
            max_market_cap=config.get("max_market_cap", defaults.max_market_cap),
            min_volume_24h=config.get("min_volume_24h", defaults.min_volume_24h),
            min_composite_score=config.get("min_composite_score", defaults.min_composite_score),
            volume_weight=weights.get("volume", defaults.volume_weight),
            momentum_weight=weights.get("momentum", defaults.momentum_weight),
            sentiment_weight=weights.get("sentiment", defaults.sentiment_weight),
        )


@dataclass(frozen=True)
class ScoredCandidate:
    symbol: str
    instrument_id: str
    name: str
    price: Optional[float]
    market_cap: float
    volume_24h: float
    volume_score: float
    momentum_score: float
    sentiment_score: float
    composite_score: int

    @property
    def instrument(self) -> Instrument:
        return Instrument(instrument_id=self.instrument_id, symbol=self.symbol)


@dataclass
class AnalysisEntry:
    """Per-coin record of what the screen decided and why"""
    symbol: str
    instrument_id: Optional[str]
    passed: bool
    reason: str
    detail: str
    scores: Dict[str, float] = field(default_factory=dict)


@dataclass
class RejectionLedger:
    reason_counts: Dict[str, int] = field(default_factory=dict)

    def add(self, reason: str) -> None:
        self.reason_counts[reason] = self.reason_counts.get(reason, 0) + 1

    @property
    def total(self) -> int:
        return sum(self.reason_counts.values())

    def top(self, n: int = 5) -> List[Tuple[str, int]]:
        return sorted(self.reason_counts.items(), key=lambda kv: (-kv[1], kv[0]))[:n]


@dataclass
class DiscoveryResult:
    candidates: List[ScoredCandidate]
    rejections: RejectionLedger
    analysis_log: List[AnalysisEntry]
    scanned: int
    completed_at: datetime
    cancelled: bool = False

    @property
    def reconciled(self) -> bool:
        return self.rejections.total + len(self.candidates) == self.scanned

    def top_rejection_reasons(self, n: int = 5) -> List[Tuple[str, int]]:
        return self.rejections.top(n)

    def summary(self) -> Dict:
        return {
            "total_analyzed": self.scanned,
            "passed": len(self.candidates),
            "rejected": self.rejections.total,
            "top_rejection_reasons": self.top_rejection_reasons(),
            "cancelled": self.cancelled,
        }


def _cancelled_result() -> DiscoveryResult:
    return DiscoveryResult(
        candidates=[],
        rejections=RejectionLedger(),
        analysis_log=[],
        scanned=0,
        completed_at=datetime.now(timezone.utc),
        cancelled=True,
    )


class _Rejected(Exception):
    """Internal: coin failed a screen (bucket + human-readable detail)"""

    def __init__(self, bucket: str, detail: str, scores: Optional[Dict[str, float]] = None):
        super().__init__(detail)
        self.bucket = bucket
        self.detail = detail
        self.scores = scores or {}


def volume_score(volume_24h: float, market_cap: float) -> float:
    """Volume / market cap ratio scaled so 0.3 maps to 100"""
    return _clamp((volume_24h / market_cap) / 0.3 * 100.0)


def momentum_score(change_24h_pct: Optional[float], change_7d_pct: Optional[float]) -> float:
    """Weighted 24h/7d change; -10% maps to 0 and +10% to 100"""
    weighted = (change_24h_pct or 0.0) * 0.6 + (change_7d_pct or 0.0) * 0.4
    return _clamp((weighted + 10.0) / 20.0 * 100.0)


class DiscoveryPipeline:
    """
    Screens market snapshots into scored candidates.

    Usage:
        pipeline = DiscoveryPipeline(resolver, market_data, policy["discovery"])
        result = pipeline.discover(["BTC", "ETH", "TRUMP"])
    """

    def __init__(self, resolver, market_data, config: Optional[Dict] = None,
                 sentiment_source: Optional[Callable[[str], Optional[float]]] = None,
                 metrics=None):
        self.resolver = resolver
        self.market_data = market_data
        self.filters = DiscoveryFilters.from_config(config)
        self.sentiment_source = sentiment_source
        self.metrics = metrics

    def _sentiment(self, symbol: str) -> float:
        if self.sentiment_source is None:
            return NEUTRAL_SENTIMENT
        try:
            signal = self.sentiment_source(symbol)
        except Exception as e:
            logger.warning(f"Failed to get sentiment for {symbol}, using neutral: {e}")
            return NEUTRAL_SENTIMENT
        if signal is None:
            return NEUTRAL_SENTIMENT
        return min(max(float(signal), 0.0), 1.0)

    def _evaluate(self, snapshot: MarketSnapshot, filters: DiscoveryFilters) -> ScoredCandidate:
        market_cap = snapshot.market_cap
        volume = snapshot.volume_24h
        if market_cap is None or volume is None:
            raise ValueError(f"incomplete market data for {snapshot.symbol}")

        if filters.min_market_cap is not None and market_cap < filters.min_market_cap:
            raise _Rejected(
                REASON_MARKET_CAP_LOW,
                f"Market cap too low (${market_cap / 1e6:.1f}M < ${filters.min_market_cap / 1e6:.0f}M minimum)",
            )
        if filters.max_market_cap is not None and market_cap > filters.max_market_cap:
            raise _Rejected(
                REASON_MARKET_CAP_HIGH,
                f"Market cap too high (${market_cap / 1e9:.1f}B > ${filters.max_market_cap / 1e9:.1f}B maximum)",
            )
        if filters.min_volume_24h is not None and volume < filters.min_volume_24h:
            raise _Rejected(
                REASON_VOLUME_LOW,
                f"Volume too low (${volume / 1e6:.1f}M < ${filters.min_volume_24h / 1e6:.0f}M minimum)",
            )

        vol = volume_score(volume, market_cap)
        mom = momentum_score(snapshot.change_24h_pct, snapshot.change_7d_pct)
        sent = self._sentiment(snapshot.symbol) * 100.0
        composite = _round_half_up(
            vol * filters.volume_weight + mom * filters.momentum_weight + sent * filters.sentiment_weight
        )
        scores = {"volume": vol, "momentum": mom, "sentiment": sent, "composite": composite}

        if composite < filters.min_composite_score:
            weak = []
            if vol < 30:
                weak.append("weak volume")
            if mom < 30:
                weak.append("poor momentum")
            if sent < 40:
                weak.append("negative sentiment")
            raise _Rejected(
                REASON_LOW_SCORE,
                f"Composite score too low ({composite}/100)" + (f": {', '.join(weak)}" if weak else ""),
                scores,
            )

        return ScoredCandidate(
            symbol=snapshot.symbol,
            instrument_id=snapshot.instrument_id,
            name=snapshot.name,
            price=snapshot.price,
            market_cap=market_cap,
            volume_24h=volume,
            volume_score=vol,
            momentum_score=mom,
            sentiment_score=sent,
            composite_score=composite,
        )

    def screen(self, snapshots: Sequence, filters: Optional[DiscoveryFilters] = None,
               cancel_event: Optional[Event] = None) -> DiscoveryResult:
        """
        Screen pre-fetched rows. Each item is a MarketSnapshot, or an
        (symbol, Exception) pair for a coin whose data could not be loaded.

        A set cancel_event aborts the run: the partial ledger is discarded and
        a result with cancelled=True is returned.
        """
        filters = filters or self.filters
        candidates: List[ScoredCandidate] = []
        rejections = RejectionLedger()
        analysis_log: List[AnalysisEntry] = []

        for item in snapshots:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Discovery cancelled after {len(analysis_log)} of {len(snapshots)} screened")
                return _cancelled_result()
            if isinstance(item, MarketSnapshot):
                symbol, instrument_id = item.symbol, item.instrument_id
            else:
                symbol, instrument_id = item[0], None

            try:
                if not isinstance(item, MarketSnapshot):
                    raise item[1]
                candidate = self._evaluate(item, filters)
            except _Rejected as r:
                rejections.add(r.bucket)
                analysis_log.append(AnalysisEntry(symbol, instrument_id, False, r.bucket, r.detail, r.scores))
            except Exception as e:
                bucket = f"{REASON_ERROR_PREFIX}: {e}"
                rejections.add(bucket)
                analysis_log.append(AnalysisEntry(symbol, instrument_id, False, bucket, bucket))
                logger.warning(f"Discovery error for {symbol}: {e}")
            else:
                candidates.append(candidate)
                analysis_log.append(AnalysisEntry(
                    symbol, instrument_id, True, "Passed screening",
                    f"Passed screening (score: {candidate.composite_score})",
                    {
                        "volume": candidate.volume_score,
                        "momentum": candidate.momentum_score,
                        "sentiment": candidate.sentiment_score,
                        "composite": candidate.composite_score,
                    },
                ))

        candidates.sort(key=lambda c: (-c.composite_score, c.symbol))
        result = DiscoveryResult(
            candidates=candidates,
            rejections=rejections,
            analysis_log=analysis_log,
            scanned=len(snapshots),
            completed_at=datetime.now(timezone.utc),
        )

        if not result.reconciled:
            warning = DataIntegrityWarning(
                f"Rejection count mismatch: {rejections.total} rejected + {len(candidates)} "
                f"passed != {result.scanned} scanned"
            )
            logger.warning(f"{type(warning).__name__}: {warning}")

        if self.metrics is not None:
            self.metrics.record_discovery(rejections.reason_counts, len(candidates))

        logger.info(
            f"Discovery: {result.scanned} analyzed, {len(candidates)} passed, "
            f"{rejections.total} rejected; top reasons {result.top_rejection_reasons()}"
        )
        return result

    def discover(self, universe: Sequence[str], filters: Optional[DiscoveryFilters] = None,
                 cancel_event: Optional[Event] = None) -> DiscoveryResult:
        """Resolve each ticker, fetch market snapshots, and screen them in universe order."""
        resolved: List[Tuple[str, object]] = []
        instruments: List[Instrument] = []
        for raw in universe:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Discovery cancelled after resolving {len(resolved)} of {len(universe)} symbols")
                return _cancelled_result()
            symbol = literal_ticker(raw) or str(raw)
            try:
                mapping = self.resolver.resolve(raw)
            except MarketDataError as e:
                resolved.append((symbol, e))
                continue
            resolved.append((mapping.symbol, mapping.instrument))
            instruments.append(mapping.instrument)

        snapshots: Dict[str, MarketSnapshot] = {}
        batch_error: Optional[Exception] = None
        if instruments:
            try:
                snapshots = self.market_data.get_market_snapshots(instruments)
            except MarketDataError as e:
                logger.warning(f"Market snapshot fetch failed for discovery batch: {e}")
                batch_error = e

        rows: List = []
        for symbol, outcome in resolved:
            if isinstance(outcome, Exception):
                rows.append((symbol, outcome))
            elif batch_error is not None:
                rows.append((symbol, batch_error))
            elif outcome.instrument_id in snapshots:
                rows.append(snapshots[outcome.instrument_id])
            else:
                rows.append((symbol, LookupError(f"no market data for {outcome.instrument_id}")))
        return self.screen(rows, filters, cancel_event)

    def run_discovery(self, universe_size: int, filters: Optional[DiscoveryFilters] = None,
                      cancel_event: Optional[Event] = None) -> DiscoveryResult:
        """Screen the top `universe_size` markets by market cap."""
        if cancel_event is not None and cancel_event.is_set():
            return _cancelled_result()
        markets = self.market_data.list_top_markets(universe_size)
        return self.screen(markets, filters, cancel_event)
