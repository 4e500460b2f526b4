"""
coinsim Core: Multi-Source Market Data Provider

Serves price, candles, order books and market snapshots for a resolved
Instrument from an ordered list of upstream providers per capability.

Flow per request:
1. Cache (cache-aside, per-category TTL)
2. Providers in configured order; each attempt becomes a typed FetchResult
3. decide() picks the outcome: first OK wins, FATAL stops, RETRYABLE falls back
4. Successful values are written through to the cache
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from core.exceptions import (
    InstrumentNotFound,
    RateLimited,
    UpstreamUnavailable,
)
from core.instruments import Instrument
from core.upstreams import OHLCV, MarketSnapshot, OrderBook

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_ORDER: Dict[str, List[str]] = {
    "price": ["coingecko", "binance", "coinbase"],
    "candles": ["binance", "coinbase", "coingecko"],
    "order_book": ["binance", "coinbase"],
    "markets": ["coingecko"],
}

DEFAULT_MAX_SLIPPAGE = 0.003


class FetchStatus(Enum):
    OK = "ok"
    RETRYABLE = "retryable"  # transport error, non-2xx, malformed payload, rate budget exceeded
    FATAL = "fatal"  # confirmed not found / empty; never falls back


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one provider attempt"""
    provider: str
    status: FetchStatus
    value: Any = None
    error: Optional[Exception] = None

    @property
    def rate_limited(self) -> bool:
        return isinstance(self.error, RateLimited)

    @classmethod
    def ok(cls, provider: str, value: Any) -> "FetchResult":
        return cls(provider=provider, status=FetchStatus.OK, value=value)

    @classmethod
    def retryable(cls, provider: str, error: Exception) -> "FetchResult":
        return cls(provider=provider, status=FetchStatus.RETRYABLE, error=error)

    @classmethod
    def fatal(cls, provider: str, error: Exception) -> "FetchResult":
        return cls(provider=provider, status=FetchStatus.FATAL, error=error)


class Action(Enum):
    RETURN = "return"
    RAISE = "raise"
    NEXT = "next"


@dataclass(frozen=True)
class FetchDecision:
    action: Action
    value: Any = None
    error: Optional[Exception] = None


def decide(results: Sequence[FetchResult], exhausted: bool = False) -> FetchDecision:
    """
    Pure fallback policy over the attempts made so far (in provider order).

    - first OK -> RETURN its value
    - first FATAL -> RAISE its error (no fallback)
    - otherwise NEXT provider, or once exhausted RAISE RateLimited when every
      failure was a rate limit, else UpstreamUnavailable
    """
    for result in results:
        if result.status is FetchStatus.OK:
            return FetchDecision(Action.RETURN, value=result.value)
        if result.status is FetchStatus.FATAL:
            return FetchDecision(Action.RAISE, error=result.error)

    if not exhausted:
        return FetchDecision(Action.NEXT)

    if not results:
        return FetchDecision(
            Action.RAISE, error=UpstreamUnavailable("No provider available for request")
        )

    if all(r.rate_limited for r in results):
        retry_after = min(r.error.retry_after for r in results)
        return FetchDecision(
            Action.RAISE,
            error=RateLimited(",".join(r.provider for r in results), retry_after),
        )

    detail = "; ".join(f"{r.provider}: {r.error}" for r in results)
    last = results[-1]
    return FetchDecision(
        Action.RAISE,
        error=UpstreamUnavailable(
            f"All providers failed ({detail})", source=last.provider, original=last.error
        ),
    )


class MarketDataProvider:
    """
    Cached, rate-limited, multi-source market data.

    Usage:
        provider = MarketDataProvider(upstreams, cache, config["market_data"])
        price = provider.get_price(mapping.instrument)
    """

    def __init__(self, upstreams: Mapping[str, Any], cache, config: Optional[Dict] = None,
                 metrics=None):
        config = config or {}
        self.upstreams = dict(upstreams)
        self.cache = cache
        self.metrics = metrics

        order = dict(DEFAULT_PROVIDER_ORDER)
        order.update({k: list(v) for k, v in (config.get("providers") or {}).items()})
        self.provider_order = order
        self.max_slippage = float(config.get("max_slippage", DEFAULT_MAX_SLIPPAGE))
        self.order_book_depth = int(config.get("order_book_depth", 100))

        logger.info(
            "Initialized MarketDataProvider: %s",
            ", ".join(f"{cap}={'>'.join(names)}" for cap, names in sorted(order.items())),
        )

    def providers_for(self, capability: str) -> List[str]:
        return [
            name for name in self.provider_order.get(capability, [])
            if name in self.upstreams and self.upstreams[name].supports(capability)
        ]

    def _attempt(self, capability: str, name: str, call: Callable[[Any], Any]) -> FetchResult:
        upstream = self.upstreams[name]
        try:
            result = FetchResult.ok(name, call(upstream))
        except InstrumentNotFound as e:
            result = FetchResult.fatal(name, e)
        except (RateLimited, UpstreamUnavailable) as e:
            result = FetchResult.retryable(name, e)

        if self.metrics is not None:
            outcome = "rate_limited" if result.rate_limited else result.status.value
            self.metrics.record_fetch(capability, name, outcome)
        return result

    def _fetch(self, capability: str, cache_key: Optional[str], category: str,
               call: Callable[[Any], Any], label: str) -> Any:
        if cache_key is not None:
            cached = self.cache.get(cache_key, category)
            if cached is not None:
                return cached

        results: List[FetchResult] = []
        for name in self.providers_for(capability):
            results.append(self._attempt(capability, name, call))
            decision = decide(results)
            if decision.action is Action.RETURN:
                if cache_key is not None:
                    self.cache.set(cache_key, category, decision.value)
                if len(results) > 1:
                    logger.info(f"{capability} for {label} served by fallback provider {name}")
                return decision.value
            if decision.action is Action.RAISE:
                logger.info(f"{capability} for {label}: {decision.error}")
                raise decision.error

            logger.warning(f"{capability} for {label} failed on {name}: {results[-1].error}; falling back")
            if self.metrics is not None:
                self.metrics.record_fallback(capability, name)

        decision = decide(results, exhausted=True)
        logger.warning(f"{capability} for {label} unavailable: {decision.error}")
        raise decision.error

    def get_price(self, instrument: Instrument) -> float:
        def call(upstream) -> float:
            price = upstream.get_ticker(instrument)
            if not price or price <= 0:
                raise UpstreamUnavailable(
                    f"Non-positive price {price!r} for {instrument}", source=upstream.name
                )
            return price

        return self._fetch("price", f"price:{instrument.instrument_id}", "price", call, str(instrument))

    def get_candles(self, instrument: Instrument, interval: str = "1h", limit: int = 100) -> List[OHLCV]:
        """Candles oldest first."""
        return self._fetch(
            "candles",
            f"candles:{instrument.instrument_id}:{interval}:{limit}",
            "candles",
            lambda upstream: upstream.get_candles(instrument, interval, limit),
            str(instrument),
        )

    def get_order_book(self, instrument: Instrument) -> OrderBook:
        return self._fetch(
            "order_book",
            f"book:{instrument.instrument_id}",
            "price",
            lambda upstream: upstream.get_order_book(instrument, self.order_book_depth),
            str(instrument),
        )

    def estimate_slippage(self, instrument: Instrument, quantity: float, side: str = "buy") -> float:
        """
        Walk the book for `quantity` base units.

        Returns:
            |avg_fill - best| / best, or max_slippage when the side is empty
        """
        book = self.get_order_book(instrument)
        levels = book.asks if side.lower() in ("buy", "long") else book.bids
        if not levels or quantity <= 0:
            if not levels:
                logger.warning(f"Empty {side} side for {instrument}; using max slippage {self.max_slippage}")
                return self.max_slippage
            return 0.0

        remaining = float(quantity)
        cost = 0.0
        filled = 0.0
        for price, size in levels:
            take = min(size, remaining)
            cost += take * price
            filled += take
            remaining -= take
            if remaining <= 0:
                break

        if filled <= 0:
            return self.max_slippage
        if remaining > 0:
            logger.warning(
                f"Order book depth insufficient for {quantity} {instrument.symbol}; "
                f"{remaining:g} unfilled"
            )

        best = levels[0][0]
        avg_fill = cost / filled
        slippage = abs(avg_fill - best) / best
        logger.debug(f"Slippage estimate {instrument} {side} {quantity}: {slippage:.4%}")
        return slippage

    def get_market_snapshots(self, instruments: Sequence[Instrument]) -> Dict[str, MarketSnapshot]:
        """Snapshots keyed by instrument_id; ids the upstream omits are absent."""
        snapshots: Dict[str, MarketSnapshot] = {}
        missing: List[str] = []
        for instrument in instruments:
            cached = self.cache.get(f"market:{instrument.instrument_id}", "market_meta")
            if cached is not None:
                snapshots[instrument.instrument_id] = cached
            elif instrument.instrument_id not in missing:
                missing.append(instrument.instrument_id)

        if missing:
            rows = self._fetch(
                "markets",
                None,
                "market_meta",
                lambda upstream: upstream.get_markets(missing),
                f"{len(missing)} instruments",
            )
            for row in rows:
                self.cache.set(f"market:{row.instrument_id}", "market_meta", row)
                snapshots[row.instrument_id] = row
        return snapshots

    def list_top_markets(self, limit: int) -> List[MarketSnapshot]:
        return self._fetch(
            "markets",
            f"top_markets:{limit}",
            "market_meta",
            lambda upstream: upstream.get_top_markets(limit),
            f"top {limit}",
        )

    def invalidate_instrument(self, instrument_id: str) -> int:
        """Drop every cached value for an instrument id."""
        removed = 0
        for key in (f"price:{instrument_id}", f"book:{instrument_id}", f"market:{instrument_id}"):
            removed += int(self.cache.invalidate(key))
        removed += self.cache.invalidate_prefix(f"candles:{instrument_id}:")
        return removed
