"""
coinsim Core: Upstream Market Data Clients

Thin requests-based clients for the public market data APIs:
- CoinGecko: search (ticker -> candidate instruments), prices, OHLC, markets
- Binance: ticker price, klines, order book depth
- Coinbase Exchange: ticker, candles, level-2 order book

Every request acquires a rate limit token for its provider first, then
retries with exponential backoff on 429, 5xx and network errors.

Failures are typed at this seam:
- 404 / confirmed-empty result -> InstrumentNotFound (terminal)
- 429 after retries            -> RateLimited
- transport, other non-2xx, malformed payload -> UpstreamUnavailable
"""

import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import requests

from core.exceptions import InstrumentNotFound, RateLimited, UpstreamUnavailable
from core.instruments import Instrument, InstrumentCandidate
from infra.symbols import literal_ticker, venue_pair

logger = logging.getLogger(__name__)

COINGECKO_BASE = "https://api.coingecko.com/api/v3"
BINANCE_BASE = "https://api.binance.com/api/v3"
COINBASE_BASE = "https://api.exchange.coinbase.com"

# Exchange-specific tokens that Coinbase does not list
COINBASE_UNSUPPORTED = ("BNB", "FTT", "HT", "OKB", "LEO", "CRO", "KCS")

# Binance error code for an unknown trading pair
BINANCE_INVALID_SYMBOL = -1121


@dataclass(frozen=True)
class OHLCV:
    """One candle; open_time is epoch milliseconds"""
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class OrderBook:
    """Order book levels as (price, quantity); bids descending, asks ascending"""
    bids: Tuple[Tuple[float, float], ...]
    asks: Tuple[Tuple[float, float], ...]

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0][0] if self.asks else None

    @property
    def mid(self) -> Optional[float]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return (self.best_bid + self.best_ask) / 2.0


@dataclass(frozen=True)
class MarketSnapshot:
    """Market row used by discovery (market cap, rank, volume, momentum)"""
    instrument_id: str
    symbol: str
    name: str
    price: Optional[float]
    market_cap: Optional[float]
    market_cap_rank: Optional[int]
    volume_24h: Optional[float]
    change_24h_pct: Optional[float]
    change_7d_pct: Optional[float]

    @property
    def instrument(self) -> Instrument:
        return Instrument(instrument_id=self.instrument_id, symbol=self.symbol)


def _levels(raw: Iterable[Sequence[Any]]) -> Tuple[Tuple[float, float], ...]:
    return tuple((float(level[0]), float(level[1])) for level in raw)


class HttpUpstream:
    """
    Base class for upstream market data clients.

    Subclasses set `name` (also the rate limiter provider key) and
    `base_url`, and implement the capabilities they support.
    """

    name = "upstream"
    base_url = ""
    capabilities: Tuple[str, ...] = ()

    def __init__(
        self,
        limiter=None,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.limiter = limiter
        if base_url:
            self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    def _headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    def _req(self, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """
        GET an endpoint with rate limiting and exponential backoff.

        Retries on:
        - 429 (rate limit)
        - 5xx (server errors)
        - Network errors (timeout, connection)

        Does NOT retry on other 4xx.
        """
        url = self.base_url + endpoint
        last_exception: Optional[Exception] = None
        retry_after = 0.0
        throttled = False

        for attempt in range(self.max_retries):
            if self.limiter is not None:
                self.limiter.acquire(self.name)

            try:
                response = requests.request(
                    "GET",
                    url,
                    params=dict(params or {}),
                    headers=self._headers(),
                    timeout=self.timeout,
                )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(
                    f"Network error on {self.name} {endpoint}: {e}, attempt {attempt + 1}/{self.max_retries}"
                )
                last_exception = e
                throttled = False
            except requests.exceptions.RequestException as e:
                raise UpstreamUnavailable(
                    f"{self.name} request failed: {e}", source=self.name, original=e
                ) from e
            else:
                status_code = response.status_code
                if 200 <= status_code < 300:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise UpstreamUnavailable(
                            f"{self.name} returned invalid JSON for {endpoint}",
                            source=self.name, original=e,
                        ) from e

                if status_code == 404:
                    logger.debug(f"{self.name} API 404: {endpoint}")
                    raise InstrumentNotFound(
                        f"{self.name}: not found ({endpoint})", source=self.name
                    )

                if 400 <= status_code < 500 and status_code != 429:
                    raise self._client_error(endpoint, response)

                if status_code == 429:
                    logger.warning(
                        f"Rate limited (429) on {self.name} {endpoint}, attempt {attempt + 1}/{self.max_retries}"
                    )
                    throttled = True
                    retry_after = self._retry_after(response)
                else:
                    logger.warning(
                        f"Server error ({status_code}) on {self.name} {endpoint}, "
                        f"attempt {attempt + 1}/{self.max_retries}"
                    )
                    throttled = False
                last_exception = requests.exceptions.HTTPError(
                    f"{status_code} for {url}", response=response
                )

            if attempt < self.max_retries - 1:
                backoff = self.backoff_seconds * (2 ** attempt) + random.uniform(0, self.backoff_seconds)
                logger.info(f"Retrying {self.name} in {backoff:.1f}s...")
                self._sleep(backoff)

        if throttled:
            raise RateLimited(self.name, retry_after)
        raise UpstreamUnavailable(
            f"{self.name} unavailable after {self.max_retries} attempts: {last_exception}",
            source=self.name, original=last_exception,
        )

    @staticmethod
    def _retry_after(response) -> float:
        try:
            return float(response.headers.get("Retry-After", 0) or 0)
        except (TypeError, ValueError):
            return 0.0

    def _client_error(self, endpoint: str, response) -> Exception:
        logger.error(f"{self.name} API client error: {response.status_code} - {response.text}")
        return UpstreamUnavailable(
            f"{self.name} rejected {endpoint} with {response.status_code}", source=self.name
        )

    def _parse(self, what: str, parser: Callable[[Any], Any], payload: Any) -> Any:
        """Apply parser, mapping shape errors to UpstreamUnavailable"""
        try:
            return parser(payload)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise UpstreamUnavailable(
                f"Malformed {what} payload from {self.name}: {e}", source=self.name, original=e
            ) from e


class CoinGeckoClient(HttpUpstream):
    """CoinGecko public API (instrument ids are CoinGecko coin ids)"""

    name = "coingecko"
    base_url = COINGECKO_BASE
    capabilities = ("search", "price", "candles", "markets")

    # OHLC endpoint picks granularity from the requested day span
    OHLC_DAYS = {"30m": "1", "4h": "30", "4d": "max"}

    def __init__(self, limiter=None, api_key: Optional[str] = None, **kwargs):
        super().__init__(limiter=limiter, **kwargs)
        self.api_key = api_key if api_key is not None else os.getenv("COINGECKO_API_KEY")

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        return headers

    def search(self, query: str) -> List[InstrumentCandidate]:
        """All coins CoinGecko returns for a query (not filtered by symbol)."""
        payload = self._req("/search", {"query": query})

        def parse(data):
            return [
                InstrumentCandidate(
                    instrument_id=str(coin["id"]),
                    symbol=str(coin["symbol"]).upper(),
                    name=str(coin.get("name") or ""),
                    market_cap_rank=(
                        int(coin["market_cap_rank"]) if coin.get("market_cap_rank") is not None else None
                    ),
                )
                for coin in data["coins"]
            ]

        return self._parse("search", parse, payload)

    def get_ticker(self, instrument: Instrument) -> float:
        payload = self._req(
            "/simple/price", {"ids": instrument.instrument_id, "vs_currencies": "usd"}
        )
        if not payload or instrument.instrument_id not in payload:
            raise InstrumentNotFound(
                f"coingecko has no price for {instrument.instrument_id}", source=self.name
            )
        return self._parse("price", lambda d: float(d[instrument.instrument_id]["usd"]), payload)

    def get_candles(self, instrument: Instrument, interval: str, limit: int) -> List[OHLCV]:
        days = self.OHLC_DAYS.get(interval)
        if days is None:
            raise UpstreamUnavailable(
                f"coingecko does not serve {interval} candles", source=self.name
            )
        payload = self._req(
            f"/coins/{instrument.instrument_id}/ohlc", {"vs_currency": "usd", "days": days}
        )
        if not payload:
            raise InstrumentNotFound(
                f"coingecko returned no candles for {instrument.instrument_id}", source=self.name
            )

        def parse(rows):
            candles = [
                OHLCV(
                    open_time=int(r[0]),
                    open=float(r[1]),
                    high=float(r[2]),
                    low=float(r[3]),
                    close=float(r[4]),
                    volume=0.0,  # ohlc endpoint carries no volume
                )
                for r in rows
            ]
            candles.sort(key=lambda c: c.open_time)
            return candles[-limit:]

        return self._parse("candles", parse, payload)

    def _market_rows(self, params: Mapping[str, Any]) -> List[MarketSnapshot]:
        payload = self._req("/coins/markets", params)

        def optional_float(value):
            return float(value) if value is not None else None

        def parse(rows):
            return [
                MarketSnapshot(
                    instrument_id=str(r["id"]),
                    symbol=str(r["symbol"]).upper(),
                    name=str(r.get("name") or ""),
                    price=optional_float(r.get("current_price")),
                    market_cap=optional_float(r.get("market_cap")),
                    market_cap_rank=int(r["market_cap_rank"]) if r.get("market_cap_rank") is not None else None,
                    volume_24h=optional_float(r.get("total_volume")),
                    change_24h_pct=optional_float(r.get("price_change_percentage_24h")),
                    change_7d_pct=optional_float(r.get("price_change_percentage_7d_in_currency")),
                )
                for r in rows
            ]

        return self._parse("markets", parse, payload)

    def get_markets(self, instrument_ids: Sequence[str]) -> List[MarketSnapshot]:
        if not instrument_ids:
            return []
        return self._market_rows({
            "vs_currency": "usd",
            "ids": ",".join(instrument_ids),
            "price_change_percentage": "24h,7d",
        })

    def get_top_markets(self, limit: int) -> List[MarketSnapshot]:
        """Top markets by market cap (paged, 250 per page)."""
        rows: List[MarketSnapshot] = []
        page = 1
        while len(rows) < limit:
            per_page = min(250, limit - len(rows))
            batch = self._market_rows({
                "vs_currency": "usd",
                "order": "market_cap_desc",
                "per_page": per_page,
                "page": page,
                "price_change_percentage": "24h,7d",
            })
            rows.extend(batch)
            if len(batch) < per_page:
                break
            page += 1
        return rows[:limit]


class ExchangeVenue(HttpUpstream):
    """
    Exchange that addresses instruments by a pair string derived from the
    ticker, e.g. BTC -> BTCUSDT. `pair_overrides` maps an instrument_id to an
    explicit pair when the venue lists a different asset under the same
    ticker; `excluded_symbols` lists tickers the venue does not carry.
    """

    quote = "USD"
    pair_delimiter = ""

    def __init__(self, limiter=None, pair_overrides: Optional[Mapping[str, str]] = None,
                 excluded_symbols: Optional[Iterable[str]] = None, **kwargs):
        super().__init__(limiter=limiter, **kwargs)
        self.pair_overrides = dict(pair_overrides or {})
        self.excluded_symbols = {literal_ticker(s) for s in (excluded_symbols or ())}

    def pair_for(self, instrument: Instrument) -> str:
        override = self.pair_overrides.get(instrument.instrument_id)
        if override:
            return override
        if literal_ticker(instrument.symbol) in self.excluded_symbols:
            raise UpstreamUnavailable(
                f"{instrument.symbol} not available on {self.name}", source=self.name
            )
        return venue_pair(instrument.symbol, self.quote, self.pair_delimiter)


class BinanceClient(ExchangeVenue):
    """Binance spot public API (pairs like BTCUSDT)"""

    name = "binance"
    base_url = BINANCE_BASE
    capabilities = ("price", "candles", "order_book")
    quote = "USDT"

    INTERVALS = ("1m", "5m", "15m", "30m", "1h", "4h", "1d", "1w")

    def _client_error(self, endpoint: str, response) -> Exception:
        try:
            code = response.json().get("code")
        except (ValueError, AttributeError):
            code = None
        if code == BINANCE_INVALID_SYMBOL:
            logger.debug(f"binance: invalid symbol on {endpoint}")
            return InstrumentNotFound(f"binance: invalid symbol ({endpoint})", source=self.name)
        return super()._client_error(endpoint, response)

    def get_ticker(self, instrument: Instrument) -> float:
        payload = self._req("/ticker/price", {"symbol": self.pair_for(instrument)})
        return self._parse("price", lambda d: float(d["price"]), payload)

    def get_candles(self, instrument: Instrument, interval: str, limit: int) -> List[OHLCV]:
        if interval not in self.INTERVALS:
            raise UpstreamUnavailable(f"binance does not serve {interval} candles", source=self.name)
        pair = self.pair_for(instrument)
        payload = self._req("/klines", {"symbol": pair, "interval": interval, "limit": int(limit)})
        if not payload:
            raise InstrumentNotFound(f"binance returned no candles for {pair}", source=self.name)

        def parse(rows):
            return [
                OHLCV(
                    open_time=int(r[0]),
                    open=float(r[1]),
                    high=float(r[2]),
                    low=float(r[3]),
                    close=float(r[4]),
                    volume=float(r[5]),
                )
                for r in rows
            ]

        return self._parse("candles", parse, payload)

    def get_order_book(self, instrument: Instrument, depth: int = 100) -> OrderBook:
        payload = self._req("/depth", {"symbol": self.pair_for(instrument), "limit": int(depth)})
        return self._parse(
            "order book",
            lambda d: OrderBook(bids=_levels(d["bids"]), asks=_levels(d["asks"])),
            payload,
        )


class CoinbaseClient(ExchangeVenue):
    """Coinbase Exchange public API (products like BTC-USD)"""

    name = "coinbase"
    base_url = COINBASE_BASE
    capabilities = ("price", "candles", "order_book")
    quote = "USD"
    pair_delimiter = "-"

    GRANULARITY = {"1m": 60, "5m": 300, "15m": 900, "1h": 3600, "6h": 21600, "1d": 86400}

    def __init__(self, limiter=None, excluded_symbols: Optional[Iterable[str]] = None, **kwargs):
        if excluded_symbols is None:
            excluded_symbols = COINBASE_UNSUPPORTED
        super().__init__(limiter=limiter, excluded_symbols=excluded_symbols, **kwargs)

    def get_ticker(self, instrument: Instrument) -> float:
        payload = self._req(f"/products/{self.pair_for(instrument)}/ticker")
        return self._parse("price", lambda d: float(d["price"]), payload)

    def get_candles(self, instrument: Instrument, interval: str, limit: int) -> List[OHLCV]:
        granularity = self.GRANULARITY.get(interval)
        if granularity is None:
            raise UpstreamUnavailable(f"coinbase does not serve {interval} candles", source=self.name)
        product = self.pair_for(instrument)
        payload = self._req(f"/products/{product}/candles", {"granularity": granularity})
        if not payload:
            raise InstrumentNotFound(f"coinbase returned no candles for {product}", source=self.name)

        # Rows are [time, low, high, open, close, volume], newest first
        def parse(rows):
            candles = [
                OHLCV(
                    open_time=int(r[0]) * 1000,
                    open=float(r[3]),
                    high=float(r[2]),
                    low=float(r[1]),
                    close=float(r[4]),
                    volume=float(r[5]),
                )
                for r in rows[:limit]
            ]
            candles.reverse()
            return candles

        return self._parse("candles", parse, payload)

    def get_order_book(self, instrument: Instrument, depth: int = 100) -> OrderBook:
        payload = self._req(f"/products/{self.pair_for(instrument)}/book", {"level": 2})
        return self._parse(
            "order book",
            lambda d: OrderBook(bids=_levels(d["bids"][:depth]), asks=_levels(d["asks"][:depth])),
            payload,
        )


UPSTREAM_CLASSES = {
    CoinGeckoClient.name: CoinGeckoClient,
    BinanceClient.name: BinanceClient,
    CoinbaseClient.name: CoinbaseClient,
}


def build_upstreams(config: Mapping[str, Any], limiter=None) -> Dict[str, HttpUpstream]:
    """
    Build upstream clients from the app.yaml `upstreams` section.

    Example:
        upstreams:
          timeout_seconds: 10
          max_retries: 3
          binance: {pair_overrides: {official-trump: TRUMPUSDT}}
    """
    config = config or {}
    common = {
        "timeout": float(config.get("timeout_seconds", 10.0)),
        "max_retries": int(config.get("max_retries", 3)),
        "backoff_seconds": float(config.get("backoff_seconds", 1.0)),
    }
    clients: Dict[str, HttpUpstream] = {}
    for name, cls in UPSTREAM_CLASSES.items():
        section = dict(config.get(name) or {})
        if section.pop("enabled", True) is False:
            logger.info(f"Upstream {name} disabled by config")
            continue
        kwargs = dict(common)
        if section.get("base_url"):
            kwargs["base_url"] = section["base_url"]
        if issubclass(cls, ExchangeVenue):
            kwargs["pair_overrides"] = section.get("pair_overrides") or {}
            if section.get("excluded_symbols") is not None:
                kwargs["excluded_symbols"] = section["excluded_symbols"]
        if cls is CoinGeckoClient and section.get("api_key"):
            kwargs["api_key"] = section["api_key"]
        clients[name] = cls(limiter=limiter, **kwargs)
    return clients
