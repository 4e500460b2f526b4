"""Test helpers for coinsim test suite"""

from tests.helpers.market_stubs import (
    FakeClock,
    UTCClock,
    StubUpstream,
    StubSearch,
    make_candidate,
    make_snapshot,
    make_book,
)

__all__ = [
    "FakeClock",
    "UTCClock",
    "StubUpstream",
    "StubSearch",
    "make_candidate",
    "make_snapshot",
    "make_book",
]
