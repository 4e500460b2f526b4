"""
coinsim Core: Instrument Resolver

Maps a human ticker to exactly one authoritative upstream instrument.

Tickers collide: "TRUMP" matches both the official token and decoys that
reuse the symbol. The resolver never guesses silently:
- only candidates whose symbol equals the requested ticker are eligible
- the winner is chosen by a total order (smallest market-cap rank, unknown
  ranks last, ties broken by instrument id)
- every ambiguous resolution is logged at WARNING with all candidates
- the chosen mapping is persisted and reused until invalidated or expired

Lookup order: cache (market_meta) -> persisted mapping -> upstream search.
"""

import logging
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.exceptions import InstrumentNotFound
from core.instruments import InstrumentCandidate, InstrumentMapping
from infra.symbols import ticker_candidates

logger = logging.getLogger(__name__)

DEFAULT_MAPPING_TTL_HOURS = 24.0


def _rank_key(candidate: InstrumentCandidate) -> Tuple[bool, int, str]:
    rank = candidate.market_cap_rank
    return (rank is None, rank if rank is not None else 0, candidate.instrument_id)


def select_instrument(candidates: Sequence[InstrumentCandidate]) -> InstrumentCandidate:
    """
    Pick the authoritative candidate.

    Total order (rank is None, rank, instrument_id): the smallest market-cap
    rank wins, unranked candidates sort last, equal ranks fall back to the
    lexicographically smallest id. Independent of upstream result order.
    """
    if not candidates:
        raise ValueError("select_instrument requires at least one candidate")
    return min(candidates, key=_rank_key)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InstrumentResolver:
    """
    Resolve tickers to InstrumentMappings.

    Usage:
        resolver = InstrumentResolver(coingecko, store, cache)
        mapping = resolver.resolve("trump")   # -> official-trump
        resolver.resolve_and_invalidate("TRUMP")
    """

    def __init__(self, search_client, state_store, cache, config: Optional[Dict] = None,
                 metrics=None, now: Callable[[], datetime] = _utcnow):
        config = config or {}
        self.search_client = search_client
        self.state_store = state_store
        self.cache = cache
        self.metrics = metrics
        self._now = now
        self.mapping_ttl = timedelta(
            hours=float(config.get("mapping_ttl_hours", DEFAULT_MAPPING_TTL_HOURS))
        )
        self._locks: Dict[str, Lock] = {}
        self._locks_guard = Lock()

        logger.info(f"Initialized InstrumentResolver (mapping TTL {self.mapping_ttl})")

    @staticmethod
    def _cache_key(symbol: str) -> str:
        return f"mapping:{symbol}"

    @staticmethod
    def _miss_key(symbol: str) -> str:
        return f"mapping-miss:{symbol}"

    def _symbol_lock(self, symbol: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(symbol)
            if lock is None:
                lock = Lock()
                self._locks[symbol] = lock
            return lock

    @staticmethod
    def _tickers(symbol: str) -> List[str]:
        tickers = ticker_candidates(symbol)
        if not tickers:
            raise InstrumentNotFound(f"Empty symbol {symbol!r}")
        return tickers

    def resolve(self, symbol: str) -> InstrumentMapping:
        """
        Resolve a ticker to its mapping.

        A bare token with a quote-like tail (PYUSD, BTCUSDT) is first looked up
        as written; only when no instrument has exactly that symbol is the
        stripped base (PY, BTC) tried.

        Raises:
            InstrumentNotFound: no upstream candidate has exactly this symbol
            UpstreamUnavailable / RateLimited: search failed and nothing is stored
        """
        tickers = self._tickers(symbol)
        for position, ticker in enumerate(tickers):
            has_fallback = position < len(tickers) - 1
            if has_fallback and self.cache.get(self._miss_key(ticker), "market_meta"):
                continue
            try:
                return self._resolve_ticker(ticker)
            except InstrumentNotFound:
                if not has_fallback:
                    raise
                self.cache.set(self._miss_key(ticker), "market_meta", True)
                logger.debug(f"No instrument with symbol {ticker}; trying {tickers[position + 1]}")
        raise InstrumentNotFound(f"No instrument for {symbol!r}")

    def _resolve_ticker(self, ticker: str) -> InstrumentMapping:
        cached = self.cache.get(self._cache_key(ticker), "market_meta")
        if cached is not None:
            return cached

        # Concurrent resolutions of one ticker collapse into a single search
        with self._symbol_lock(ticker):
            cached = self.cache.get(self._cache_key(ticker), "market_meta")
            if cached is not None:
                return cached

            stored = self._load_persisted(ticker)
            if stored is not None:
                self.cache.set(self._cache_key(ticker), "market_meta", stored)
                return stored

            mapping = self._search(ticker)
            self.state_store.upsert_mapping(
                mapping.symbol, mapping.instrument_id, mapping.market_cap_rank, mapping.resolved_at
            )
            self.cache.set(self._cache_key(ticker), "market_meta", mapping)
            logger.info(
                f"Resolved {ticker} -> {mapping.instrument_id} (rank {mapping.market_cap_rank})"
            )
            return mapping

    def resolve_id(self, symbol: str) -> str:
        return self.resolve(symbol).instrument_id

    def _load_persisted(self, ticker: str) -> Optional[InstrumentMapping]:
        row = self.state_store.get_mapping(ticker)
        if row is None:
            return None
        mapping = InstrumentMapping(
            symbol=row["symbol"],
            instrument_id=row["instrument_id"],
            market_cap_rank=row["market_cap_rank"],
            resolved_at=datetime.fromisoformat(row["resolved_at"]),
        )
        if mapping.age_seconds(self._now()) >= self.mapping_ttl.total_seconds():
            logger.debug(f"Persisted mapping for {ticker} expired; re-resolving")
            return None
        return mapping

    def _search(self, ticker: str) -> InstrumentMapping:
        results = self.search_client.search(ticker)
        candidates = [c for c in results if c.symbol.upper() == ticker]
        if not candidates:
            raise InstrumentNotFound(
                f"No instrument with symbol {ticker} ({len(results)} search results)",
                source=getattr(self.search_client, "name", None),
            )

        chosen = select_instrument(candidates)
        if len(candidates) > 1:
            listing = ", ".join(
                f"{c.instrument_id}(rank={c.market_cap_rank})"
                for c in sorted(candidates, key=_rank_key)
            )
            logger.warning(
                f"Ambiguous instrument for {ticker}: {len(candidates)} candidates [{listing}]; "
                f"chose {chosen.instrument_id}"
            )
            if self.metrics is not None:
                self.metrics.record_collision(ticker, [c.instrument_id for c in candidates])

        return InstrumentMapping(
            symbol=ticker,
            instrument_id=chosen.instrument_id,
            market_cap_rank=chosen.market_cap_rank,
            resolved_at=self._now(),
        )

    def _clear(self, ticker: str) -> bool:
        with self._symbol_lock(ticker):
            from_cache = self.cache.invalidate(self._cache_key(ticker))
            from_store = self.state_store.delete_mapping(ticker)
        return from_cache or from_store

    def invalidate(self, symbol: str) -> bool:
        """
        Clear the cached and persisted mapping the symbol currently resolves
        through. Returns True if anything was removed.
        """
        tickers = self._tickers(symbol)
        removed = False
        for ticker in tickers:
            self.cache.invalidate(self._miss_key(ticker))
            if self._clear(ticker):
                removed = True
                logger.info(f"Invalidated instrument mapping for {ticker}")
                break
        return removed

    def resolve_and_invalidate(self, symbol: str) -> InstrumentMapping:
        """Drop any existing mapping for symbol, then resolve it fresh."""
        self.invalidate(symbol)
        return self.resolve(symbol)
