"""
Pytest configuration and fixtures for coinsim tests.

This conftest.py provides shared fixtures for all tests.
"""
import pytest

from core.ledger import PortfolioLedger
from infra.cache import TTLCache
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore
from tests.helpers import FakeClock, UTCClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def utc_clock():
    return UTCClock()


@pytest.fixture
def metrics():
    """Fresh recorder with its own registry (no HTTP exporter)"""
    return MetricsRecorder(enabled=False)


@pytest.fixture
def store(tmp_path):
    state_store = StateStore(str(tmp_path / "coinsim.db"))
    yield state_store
    state_store.close()


@pytest.fixture
def cache(clock, metrics):
    return TTLCache(clock=clock, metrics=metrics)


@pytest.fixture
def risk_config():
    """Permissive limits with zero fees so P&L assertions stay exact"""
    return {
        "starting_capital": 10000.0,
        "max_position_size_pct": 1.0,
        "max_daily_loss_pct": 0.03,
        "max_open_positions": 10,
        "fee_rate": 0.0,
        "daily_reset_hour_utc": 0,
    }


@pytest.fixture
def ledger(store, risk_config, utc_clock):
    return PortfolioLedger(store, risk_config, now=utc_clock)
