"""
Test helpers for market data tests.

In-memory upstream stubs and controllable clocks so resolver, provider,
discovery and monitor tests never touch the network or wall-clock time.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from core.exceptions import InstrumentNotFound
from core.instruments import InstrumentCandidate
from core.upstreams import MarketSnapshot, OrderBook


class FakeClock:
    """Monotonic clock whose sleep() advances time instead of blocking"""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class UTCClock:
    """Settable UTC datetime source"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_candidate(instrument_id: str, symbol: str, rank: Optional[int], name: str = "") -> InstrumentCandidate:
    return InstrumentCandidate(instrument_id=instrument_id, symbol=symbol, name=name or instrument_id,
                               market_cap_rank=rank)


def make_snapshot(symbol: str, market_cap: Optional[float] = 500_000_000,
                  volume_24h: Optional[float] = 150_000_000, change_24h: float = 5.0,
                  change_7d: float = 5.0, rank: Optional[int] = 10,
                  instrument_id: Optional[str] = None, price: float = 1.0) -> MarketSnapshot:
    return MarketSnapshot(
        instrument_id=instrument_id or symbol.lower(),
        symbol=symbol,
        name=symbol.title(),
        price=price,
        market_cap=market_cap,
        market_cap_rank=rank,
        volume_24h=volume_24h,
        change_24h_pct=change_24h,
        change_7d_pct=change_7d,
    )


def make_book(bids: Iterable = (), asks: Iterable = ()) -> OrderBook:
    return OrderBook(bids=tuple(tuple(b) for b in bids), asks=tuple(tuple(a) for a in asks))


def _answer(value, *args):
    if isinstance(value, BaseException):
        raise value
    if callable(value):
        return value(*args)
    return value


class StubUpstream:
    """
    Upstream client stub.

    Per-instrument answers live in dicts keyed by instrument_id; a value may
    be a result, an exception instance (raised), or a callable.
    """

    def __init__(self, name: str, capabilities: Sequence[str] = ("price", "candles", "order_book", "markets"),
                 prices: Optional[Dict] = None, candles: Optional[Dict] = None,
                 books: Optional[Dict] = None, markets: Optional[Dict] = None,
                 top_markets=None, search_results: Optional[Dict] = None):
        self.name = name
        self.capabilities = tuple(capabilities)
        self.prices = dict(prices or {})
        self.candles = dict(candles or {})
        self.books = dict(books or {})
        self.markets = markets if isinstance(markets, BaseException) else dict(markets or {})
        self.top_markets = top_markets
        self.search_results = dict(search_results or {})
        self.calls: List[tuple] = []

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    def _lookup(self, table: Dict, instrument_id: str, *args):
        if instrument_id not in table:
            raise InstrumentNotFound(f"{self.name}: unknown {instrument_id}", source=self.name)
        return _answer(table[instrument_id], *args)

    def get_ticker(self, instrument):
        self.calls.append(("get_ticker", instrument.instrument_id))
        return self._lookup(self.prices, instrument.instrument_id)

    def get_candles(self, instrument, interval, limit):
        self.calls.append(("get_candles", instrument.instrument_id, interval, limit))
        return self._lookup(self.candles, instrument.instrument_id)

    def get_order_book(self, instrument, depth=100):
        self.calls.append(("get_order_book", instrument.instrument_id))
        return self._lookup(self.books, instrument.instrument_id)

    def get_markets(self, instrument_ids):
        self.calls.append(("get_markets", tuple(instrument_ids)))
        if isinstance(self.markets, BaseException):
            raise self.markets
        return [self.markets[i] for i in instrument_ids if i in self.markets]

    def get_top_markets(self, limit):
        self.calls.append(("get_top_markets", limit))
        return list(_answer(self.top_markets, limit))[:limit]

    def search(self, query: str) -> List[InstrumentCandidate]:
        self.calls.append(("search", query))
        return _answer(self.search_results.get(query.upper(), []))

    def call_count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)


class StubSearch:
    """Search endpoint stub: query (upper-cased) -> candidate list"""

    name = "coingecko"

    def __init__(self, results: Optional[Dict[str, List[InstrumentCandidate]]] = None):
        self.results = dict(results or {})
        self.queries: List[str] = []

    def search(self, query: str) -> List[InstrumentCandidate]:
        self.queries.append(query)
        return _answer(self.results.get(query.upper(), []))
