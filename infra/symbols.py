"""Symbol normalization utilities for human tickers and venue pairs.

Provides a single source of truth for turning user input such as `btc`,
`BTC-USD`, `btc/usdt` or `BTCUSDT` into the bare base ticker (`BTC`) that the
instrument resolver keys its mappings on, and for deriving the pair string
each exchange venue expects for that ticker.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

DEFAULT_QUOTE = "USD"

# Quote suffixes that exchanges append without a delimiter (longest first).
QUOTE_SUFFIXES: Tuple[str, ...] = (
    "USDT",
    "USDC",
    "BUSD",
    "USD",
    "EUR",
    "GBP",
)

# Known aliases for bases that should collapse into a single ticker.
_BASE_ALIAS_MAP: Dict[str, str] = {
    "XBT": "BTC",
}

_MIN_BASE_LEN = 2


def canonical_base(base: str) -> str:
    """Return the canonical base ticker (e.g., XBT -> BTC)."""

    if not base:
        return ""
    ticker = base.strip().upper()
    return _BASE_ALIAS_MAP.get(ticker, ticker)


def _clean(symbol: Optional[str]) -> str:
    token = str(symbol).strip().upper().replace(" ", "")
    for delim in ("/", "_", ":"):
        token = token.replace(delim, "-")
    return token.strip("-")


def split_symbol(symbol: Optional[str]) -> Tuple[str, Optional[str]]:
    """Split any symbol variant into (base, quote-or-None)."""

    if not symbol:
        return "", None

    token = _clean(symbol)
    if not token:
        return "", None

    if "-" in token:
        base, quote = token.split("-", 1)
        return canonical_base(base), (quote.strip("-") or None)

    for quote in QUOTE_SUFFIXES:
        if token.endswith(quote) and len(token) - len(quote) >= _MIN_BASE_LEN:
            return canonical_base(token[: -len(quote)]), quote

    return canonical_base(token), None


def literal_ticker(symbol: Optional[str]) -> str:
    """Ticker as written: a delimited pair folds to its base, a bare token is kept whole.

    `BTC-USD` -> `BTC`, but `PYUSD` stays `PYUSD` (a stablecoin, not PY quoted in USD).
    """

    if not symbol:
        return ""
    token = _clean(symbol)
    if "-" in token:
        return split_symbol(token)[0]
    return canonical_base(token)


def ticker_candidates(symbol: Optional[str]) -> List[str]:
    """Tickers a symbol may denote, most literal first.

    A bare token ending in a quote suffix is ambiguous: `BTCUSDT` is a
    concatenated pair, `FDUSD` is a ticker in its own right. Both readings are
    returned, whole token first, so a lookup can try the literal ticker before
    falling back to the stripped base.
    """

    literal = literal_ticker(symbol)
    if not literal:
        return []
    base = normalize_symbol(symbol)
    if base and base != literal:
        return [literal, base]
    return [literal]


def normalize_symbol(symbol: Optional[str]) -> str:
    """Normalize any symbol variant to the bare base ticker.

    Returns:
        Base ticker (`BTC`) or an empty string if the input is falsy.
    """

    base, _ = split_symbol(symbol)
    return base


def venue_pair(symbol: str, quote: str, delimiter: str = "") -> str:
    """Build a venue pair string for a resolved ticker (BTC -> BTCUSDT / BTC-USD, PYUSD -> PYUSDUSDT)."""

    base = literal_ticker(symbol)
    if not base:
        raise ValueError(f"Cannot build venue pair for empty symbol {symbol!r}")
    return f"{base}{delimiter}{quote.upper()}"


def normalize_universe(symbols: Iterable[Optional[str]]) -> List[str]:
    """Normalize a list of tickers preserving order (duplicates are kept)."""

    return [normalize_symbol(s) for s in symbols]


def equivalent_symbols(lhs: Optional[str], rhs: Optional[str]) -> bool:
    """Return True if two symbols resolve to the same base ticker."""

    return normalize_symbol(lhs) == normalize_symbol(rhs)


__all__ = [
    "DEFAULT_QUOTE",
    "QUOTE_SUFFIXES",
    "canonical_base",
    "split_symbol",
    "literal_ticker",
    "ticker_candidates",
    "normalize_symbol",
    "venue_pair",
    "normalize_universe",
    "equivalent_symbols",
]
