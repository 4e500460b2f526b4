"""
coinsim Runner: Main Loop

Process entry point for the simulation.

1. Validate and load config/app.yaml + config/policy.yaml
2. Configure logging and metrics
3. Build the paper trading desk (resolver, market data, ledger, monitor, discovery)
4. Run the position monitor and discovery as independent periodic tasks
5. Stop both on SIGINT/SIGTERM; a running cycle stops before its next position
"""

import json
import logging
import signal
import time
from pathlib import Path
from threading import Event
from typing import Optional

import yaml

from core.paper_desk import PaperTradingDesk
from infra.metrics import MetricsRecorder
from runner.scheduler import PeriodicTask

logger = logging.getLogger(__name__)


class SimulationLoop:
    """
    Owns the desk and the periodic tasks driving it.
    """

    def __init__(self, config_dir: str = "config", install_signal_handlers: bool = True):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")

        loop_cfg = self.app_config.get("loop") or {}
        self.monitor_interval = float(loop_cfg.get("monitor_interval_seconds", 60))
        self.discovery_interval = float(loop_cfg.get("discovery_interval_seconds", 3600))
        self.discovery_universe_size = int(loop_cfg.get("discovery_universe_size", 50))
        self.jitter_pct = float(loop_cfg.get("jitter_pct", 0.0))
        self.shutdown_timeout = float(loop_cfg.get("shutdown_timeout_seconds", 30))

        # Logging setup
        log_cfg = self.app_config.get("logging", {}) or {}
        log_file = log_cfg.get("file", "logs/coinsim.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        logging.basicConfig(
            level=getattr(logging, log_cfg.get("level", "INFO").upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

        metrics_cfg = self.app_config.get("metrics", {}) or {}
        self.metrics = MetricsRecorder(
            enabled=bool(metrics_cfg.get("enabled", False)),
            port=int(metrics_cfg.get("port", 9100)),
        )
        self.metrics.start()

        self.desk = PaperTradingDesk.from_config(self.app_config, self.policy_config, metrics=self.metrics)
        self.tasks = []
        self._stopped = Event()

        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(
            f"Initialized SimulationLoop (monitor every {self.monitor_interval:g}s, "
            f"discovery every {self.discovery_interval:g}s)"
        )

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _handle_stop(self, *_):
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - stopping after current position")
        logger.warning("=" * 80)
        self.stop()

    def stop(self) -> None:
        self._stopped.set()
        for task in self.tasks:
            task.stop_event.set()

    def monitor_task(self, cancel_event: Event):
        return self.desk.monitor_cycle(cancel_event)

    def discovery_task(self, cancel_event: Event):
        if cancel_event.is_set():
            return None
        result = self.desk.run_discovery(self.discovery_universe_size, cancel_event=cancel_event)
        if result.cancelled:
            logger.info("Discovery run cancelled before completion")
            return result
        for candidate in result.candidates[:10]:
            logger.info(
                f"  {candidate.symbol:<8} score={candidate.composite_score:>3} "
                f"(vol={candidate.volume_score:.0f} mom={candidate.momentum_score:.0f} "
                f"sent={candidate.sentiment_score:.0f})"
            )
        return result

    def run_once(self) -> None:
        """One monitor cycle plus one discovery run"""
        cancel = Event()
        self.monitor_task(cancel)
        self.discovery_task(cancel)
        self.log_portfolio()

    def log_portfolio(self) -> None:
        state = self.desk.get_portfolio_state()
        logger.info(
            f"Portfolio: value=${state.portfolio_value:,.2f} cash=${state.cash_balance:,.2f} "
            + (f"shortfall=${state.cash_shortfall:,.2f} " if state.cash_shortfall else "")
            + f"open={state.open_count} realized=${state.realized_pnl:,.2f} "
            f"daily_loss=${state.daily_loss_accumulator:,.2f}/{state.daily_loss_limit:,.2f}"
            + (f" SUSPENDED ({state.suspended_reason})" if state.trading_suspended else "")
        )

    def run_forever(self, monitor_interval: Optional[float] = None,
                    discovery_interval: Optional[float] = None) -> None:
        self.tasks = [
            PeriodicTask("monitor", self.monitor_task, monitor_interval or self.monitor_interval,
                         jitter_pct=self.jitter_pct),
            PeriodicTask("discovery", self.discovery_task, discovery_interval or self.discovery_interval,
                         jitter_pct=self.jitter_pct),
        ]
        for task in self.tasks:
            task.start()

        logger.info("Simulation running; Ctrl-C to stop")
        while not self._stopped.wait(timeout=1.0):
            if not any(task.is_running() for task in self.tasks):
                break

        for task in self.tasks:
            task.stop(timeout=self.shutdown_timeout)
            if task.is_running():
                logger.warning(
                    f"Task {task.name} still running after {self.shutdown_timeout:g}s; abandoning it"
                )
        self.log_portfolio()
        logger.info("Simulation stopped cleanly.")


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="coinsim paper trading simulator")
    parser.add_argument("--once", action="store_true", help="Run one monitor cycle and one discovery run, then exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between monitor cycles")
    parser.add_argument("--discovery-interval", type=float, default=None, help="Seconds between discovery runs")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--invalidate", metavar="SYMBOL", help="Re-resolve SYMBOL's instrument mapping and exit")
    parser.add_argument("--discover", metavar="N", type=int, help="Screen the top N markets and exit")

    args = parser.parse_args()

    loop = SimulationLoop(config_dir=args.config_dir)

    if args.invalidate:
        mapping = loop.desk.resolve_and_invalidate(args.invalidate)
        print(json.dumps({
            "symbol": mapping.symbol,
            "instrument_id": mapping.instrument_id,
            "market_cap_rank": mapping.market_cap_rank,
            "resolved_at": mapping.resolved_at.isoformat(),
        }, indent=2))
    elif args.discover:
        started = time.monotonic()
        result = loop.desk.run_discovery(args.discover)
        summary = result.summary()
        summary["candidates"] = [
            {"symbol": c.symbol, "instrument_id": c.instrument_id, "score": c.composite_score}
            for c in result.candidates
        ]
        summary["duration_seconds"] = round(time.monotonic() - started, 2)
        print(json.dumps(summary, indent=2))
    elif args.once:
        loop.run_once()
    else:
        loop.run_forever(args.interval, args.discovery_interval)


if __name__ == "__main__":
    main()
