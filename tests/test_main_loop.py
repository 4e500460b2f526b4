"""
Tests for the SimulationLoop runner (desk construction is mocked).
"""
import logging
import shutil
from pathlib import Path
from threading import Event
from types import SimpleNamespace
from unittest.mock import ANY, MagicMock, patch

import pytest
import yaml

from runner.main_loop import SimulationLoop

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture
def config_dir(tmp_path):
    target = tmp_path / "config"
    shutil.copytree(REPO_CONFIG, target)
    app_path = target / "app.yaml"
    app = yaml.safe_load(app_path.read_text())
    app["logging"]["file"] = str(tmp_path / "logs" / "coinsim.log")
    app["persistence"]["db_path"] = str(tmp_path / "data" / "coinsim.db")
    app["loop"]["discovery_universe_size"] = 25
    app_path.write_text(yaml.safe_dump(app))
    return target


@pytest.fixture
def desk():
    mock_desk = MagicMock()
    mock_desk.run_discovery.return_value = SimpleNamespace(candidates=[], cancelled=False)
    mock_desk.get_portfolio_state.return_value = SimpleNamespace(
        portfolio_value=10000.0, cash_balance=10000.0, open_count=0, realized_pnl=0.0,
        cash_shortfall=0.0, daily_loss_accumulator=0.0, daily_loss_limit=300.0,
        trading_suspended=False, suspended_reason=None,
    )
    return mock_desk


def test_loop_wires_desk_from_config(config_dir, desk):
    with patch("runner.main_loop.PaperTradingDesk.from_config", return_value=desk) as from_config:
        loop = SimulationLoop(config_dir=str(config_dir), install_signal_handlers=False)

    app_config, policy_config = from_config.call_args.args
    assert app_config["loop"]["discovery_universe_size"] == 25
    assert policy_config["risk"]["max_open_positions"] == 5
    assert loop.monitor_interval == 60
    assert loop.discovery_universe_size == 25
    assert (config_dir.parent / "logs").is_dir()


def test_run_once(config_dir, desk):
    with patch("runner.main_loop.PaperTradingDesk.from_config", return_value=desk):
        loop = SimulationLoop(config_dir=str(config_dir), install_signal_handlers=False)
        loop.run_once()

    desk.monitor_cycle.assert_called_once()
    desk.run_discovery.assert_called_once_with(25, cancel_event=ANY)
    desk.get_portfolio_state.assert_called()


def test_discovery_task_honours_cancel(config_dir, desk):
    with patch("runner.main_loop.PaperTradingDesk.from_config", return_value=desk):
        loop = SimulationLoop(config_dir=str(config_dir), install_signal_handlers=False)

    cancel = MagicMock()
    cancel.is_set.return_value = True
    assert loop.discovery_task(cancel) is None
    desk.run_discovery.assert_not_called()


def test_discovery_task_hands_its_cancel_event_to_the_scan(config_dir, desk):
    with patch("runner.main_loop.PaperTradingDesk.from_config", return_value=desk):
        loop = SimulationLoop(config_dir=str(config_dir), install_signal_handlers=False)

    cancel = Event()
    desk.run_discovery.return_value = SimpleNamespace(candidates=[], cancelled=True)
    result = loop.discovery_task(cancel)

    assert result.cancelled
    assert desk.run_discovery.call_args.kwargs["cancel_event"] is cancel
    assert loop.shutdown_timeout == 30


def test_invalid_config_refuses_to_start(config_dir, desk):
    policy_path = config_dir / "policy.yaml"
    policy = yaml.safe_load(policy_path.read_text())
    policy["risk"]["max_open_positions"] = 0
    policy_path.write_text(yaml.safe_dump(policy))

    with patch("runner.main_loop.PaperTradingDesk.from_config", return_value=desk) as from_config:
        with pytest.raises(ValueError, match="Invalid configuration"):
            SimulationLoop(config_dir=str(config_dir), install_signal_handlers=False)
    from_config.assert_not_called()


def test_portfolio_log_shows_outstanding_shortfall(config_dir, desk, caplog):
    with patch("runner.main_loop.PaperTradingDesk.from_config", return_value=desk):
        loop = SimulationLoop(config_dir=str(config_dir), install_signal_handlers=False)

    with caplog.at_level(logging.INFO, logger="runner.main_loop"):
        loop.log_portfolio()
    assert "shortfall" not in caplog.text

    desk.get_portfolio_state.return_value.cash_shortfall = 5000.0
    caplog.clear()
    with caplog.at_level(logging.INFO, logger="runner.main_loop"):
        loop.log_portfolio()
    assert "shortfall=$5,000.00" in caplog.text
