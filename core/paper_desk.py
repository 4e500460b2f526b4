"""
coinsim Core: Paper Trading Desk

Facade over resolver, market data, discovery, ledger and monitor. This is
the call surface the runner and any outer interface use.
"""

import logging
from threading import Event
from typing import Dict, Optional, Sequence

from core.discovery import DiscoveryPipeline, DiscoveryResult
from core.exceptions import MarketDataError, PositionAlreadyClosed
from core.instruments import Instrument, InstrumentMapping
from core.ledger import CloseReason, PortfolioLedger, PortfolioState, Position, PositionRequest, Side
from core.market_data import MarketDataProvider
from core.position_monitor import MonitorCycleResult, PositionMonitor
from core.resolver import InstrumentResolver
from core.upstreams import build_upstreams
from infra.cache import TTLCache
from infra.rate_limiter import DEFAULT_PROVIDER_QUOTAS, RateLimiter
from infra.state_store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_SLIPPAGE = 0.002


class PaperTradingDesk:
    """Simulated trading against live market data"""

    def __init__(self, resolver: InstrumentResolver, market_data: MarketDataProvider,
                 ledger: PortfolioLedger, discovery: DiscoveryPipeline, monitor: PositionMonitor,
                 config: Optional[Dict] = None):
        config = config or {}
        self.resolver = resolver
        self.market_data = market_data
        self.ledger = ledger
        self.discovery = discovery
        self.monitor = monitor
        self.default_slippage = float(config.get("default_slippage", DEFAULT_SLIPPAGE))

    @classmethod
    def from_config(cls, app_config: Dict, policy_config: Dict, metrics=None,
                    state_store: Optional[StateStore] = None, upstreams: Optional[Dict] = None,
                    sentiment_source=None) -> "PaperTradingDesk":
        """Wire every component from the app.yaml / policy.yaml dicts."""
        risk = policy_config.get("risk", {})
        quotas = dict(DEFAULT_PROVIDER_QUOTAS)
        quotas.update(app_config.get("rate_limits") or {})
        limiter = RateLimiter(quotas=quotas, metrics=metrics)
        cache = TTLCache(ttl_seconds=app_config.get("cache_ttl_seconds"), metrics=metrics)
        if state_store is None:
            state_store = StateStore(app_config.get("persistence", {}).get("db_path"))
        if upstreams is None:
            upstreams = build_upstreams(app_config.get("upstreams", {}), limiter)

        market_cfg = dict(app_config.get("market_data", {}))
        market_cfg.setdefault("max_slippage", risk.get("max_slippage", 0.003))
        market_data = MarketDataProvider(upstreams, cache, market_cfg, metrics=metrics)
        resolver = InstrumentResolver(
            upstreams["coingecko"], state_store, cache, policy_config.get("resolver", {}), metrics=metrics
        )
        ledger = PortfolioLedger(state_store, risk)
        discovery = DiscoveryPipeline(
            resolver, market_data, policy_config.get("discovery", {}),
            sentiment_source=sentiment_source, metrics=metrics,
        )
        monitor = PositionMonitor(ledger, market_data, metrics=metrics)
        return cls(resolver, market_data, ledger, discovery, monitor,
                   {"default_slippage": risk.get("default_slippage", DEFAULT_SLIPPAGE)})

    def resolve_and_invalidate(self, symbol: str) -> InstrumentMapping:
        """Drop the stored mapping for symbol and resolve it again."""
        mapping = self.resolver.resolve_and_invalidate(symbol)
        self.market_data.invalidate_instrument(mapping.instrument_id)
        return mapping

    def run_discovery(self, universe_size: int, cancel_event: Optional[Event] = None) -> DiscoveryResult:
        return self.discovery.run_discovery(universe_size, cancel_event=cancel_event)

    def discover(self, symbols: Sequence[str], cancel_event: Optional[Event] = None) -> DiscoveryResult:
        return self.discovery.discover(symbols, cancel_event=cancel_event)

    def _slippage(self, instrument: Instrument, quantity: float, side: Side) -> float:
        book_side = "buy" if side is Side.LONG else "sell"
        try:
            return self.market_data.estimate_slippage(instrument, quantity, book_side)
        except MarketDataError as e:
            logger.warning(
                f"Slippage estimate failed for {instrument}: {e}; using default {self.default_slippage}"
            )
            return self.default_slippage

    def open_position(self, symbol: str, side, quantity: float,
                      stop_loss_price: float, take_profit_price: float) -> Position:
        """
        Resolve symbol, price the entry with estimated slippage, and open.

        Raises:
            InstrumentNotFound, UpstreamUnavailable, RateLimited (pricing)
            InsufficientFunds, LimitExceeded, TradingHalted, InvalidPositionRequest (ledger)
        """
        side = Side(side)
        mapping = self.resolver.resolve(symbol)
        instrument = mapping.instrument
        price = self.market_data.get_price(instrument)
        slippage = self._slippage(instrument, quantity, side)
        entry = price * (1 + slippage) if side is Side.LONG else price * (1 - slippage)
        logger.info(
            f"Pricing {side.value} {quantity:g} {instrument}: ${price:,.4f} "
            f"+ slippage {slippage:.4%} -> ${entry:,.4f}"
        )
        return self.ledger.open_position(PositionRequest(
            symbol=mapping.symbol,
            instrument_id=mapping.instrument_id,
            side=side,
            entry_price=entry,
            quantity=quantity,
            stop_loss_price=stop_loss_price,
            take_profit_price=take_profit_price,
        ))

    def close_position(self, position_id: int) -> Position:
        """Close an open position at the current price (MANUAL)."""
        position = self.ledger.get_position(position_id)
        if not position.is_open:
            raise PositionAlreadyClosed(f"Position {position_id} already closed")
        instrument = Instrument(instrument_id=position.instrument_id, symbol=position.symbol)
        price = self.market_data.get_price(instrument)
        return self.ledger.close_position(position_id, CloseReason.MANUAL, price)

    def get_portfolio_state(self) -> PortfolioState:
        return self.ledger.get_state()

    def monitor_cycle(self, cancel_event: Optional[Event] = None) -> MonitorCycleResult:
        return self.monitor.run_cycle(cancel_event)
