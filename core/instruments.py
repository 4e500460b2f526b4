"""
coinsim Core: Instrument Types

Immutable value types that address an upstream instrument.

A human ticker ("TRUMP") is ambiguous; an instrument_id ("official-trump")
is not. Everything downstream of the resolver fetches data by Instrument,
never by bare ticker.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Instrument:
    """Upstream address for market data fetches"""
    instrument_id: str
    symbol: str

    def __str__(self) -> str:
        return f"{self.symbol}:{self.instrument_id}"


@dataclass(frozen=True)
class InstrumentCandidate:
    """One upstream search hit for a ticker"""
    instrument_id: str
    symbol: str
    name: str = ""
    market_cap_rank: Optional[int] = None


@dataclass(frozen=True)
class InstrumentMapping:
    """Authoritative symbol -> instrument_id mapping chosen by the resolver"""
    symbol: str
    instrument_id: str
    market_cap_rank: Optional[int]
    resolved_at: datetime

    @property
    def instrument(self) -> Instrument:
        return Instrument(instrument_id=self.instrument_id, symbol=self.symbol)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.resolved_at).total_seconds()
