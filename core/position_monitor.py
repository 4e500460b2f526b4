"""
Position Monitor: Stop-Loss, Take-Profit and Daily Loss Enforcement

Evaluates every open position once per cycle against its fixed protections
and closes it through the ledger when one triggers.

Per cycle:
1. Roll the daily loss boundary
2. If the daily loss limit is breached, force-close everything (RISK_LIMIT)
   and suspend new opens
3. Otherwise, for each open position in id order: fetch its price by the
   stored instrument, check stop-loss then take-profit, close on trigger,
   and re-check the daily limit after every close

Cycles are single-flight: a call that overlaps a running cycle returns
immediately with skipped=True. A price failure for one position never
affects the others; its mark is flagged stale and it stays OPEN.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Event, Lock
from typing import Callable, Dict, List, Optional

from core.exceptions import LedgerError, MarketDataError
from core.instruments import Instrument
from core.ledger import CloseReason, Position, Side
from infra.metrics import CycleStats

logger = logging.getLogger(__name__)


@dataclass
class MonitorCycleResult:
    """Outcome counts for one monitor cycle"""
    checked: int = 0
    stop_loss: int = 0
    take_profit: int = 0
    risk_limit: int = 0
    errors: int = 0
    stale: int = 0
    closed_ids: List[int] = field(default_factory=list)
    skipped: bool = False
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def closed(self) -> int:
        return len(self.closed_ids)

    def record_close(self, position_id: int, reason: CloseReason) -> None:
        self.closed_ids.append(position_id)
        if reason is CloseReason.STOP_LOSS:
            self.stop_loss += 1
        elif reason is CloseReason.TAKE_PROFIT:
            self.take_profit += 1
        elif reason is CloseReason.RISK_LIMIT:
            self.risk_limit += 1


def check_exit(position: Position, price: float) -> Optional[CloseReason]:
    """
    Protection check for one price observation.

    Stop-loss is evaluated before take-profit. Long: price <= stop triggers
    STOP_LOSS, price >= target triggers TAKE_PROFIT; short is mirrored.
    """
    if position.side is Side.LONG:
        if price <= position.stop_loss_price:
            return CloseReason.STOP_LOSS
        if price >= position.take_profit_price:
            return CloseReason.TAKE_PROFIT
    else:
        if price >= position.stop_loss_price:
            return CloseReason.STOP_LOSS
        if price <= position.take_profit_price:
            return CloseReason.TAKE_PROFIT
    return None


class PositionMonitor:
    """
    Enforces per-position protections and the portfolio daily loss limit.

    Responsibilities:
    - Fetch prices by each position's stored instrument (never re-resolve)
    - Close triggered positions through the ledger
    - Force-close all positions with RISK_LIMIT on a daily loss breach
    - Keep last observed marks for valuation and stale-data reporting
    """

    def __init__(self, ledger, market_data, metrics=None,
                 now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.ledger = ledger
        self.market_data = market_data
        self.metrics = metrics
        self._now = now
        self._cycle_lock = Lock()

    def run_cycle(self, cancel_event: Optional[Event] = None) -> MonitorCycleResult:
        """Run one monitoring pass. Returns skipped=True if a pass is already running."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Monitor cycle already running; skipping")
            result = MonitorCycleResult(skipped=True)
            self._record(result)
            return result

        started = time.monotonic()
        result = MonitorCycleResult()
        try:
            self.ledger.roll_daily_boundary(self._now())
            if self.ledger.daily_loss_breached():
                self._force_close_all(result, cancel_event)
            else:
                self._evaluate_open(result, cancel_event)
        finally:
            self._cycle_lock.release()

        result.duration_seconds = time.monotonic() - started
        self._record(result)
        logger.info(
            f"Monitor cycle: checked={result.checked} SL={result.stop_loss} TP={result.take_profit} "
            f"RISK={result.risk_limit} stale={result.stale} errors={result.errors}"
            + (" (cancelled)" if result.cancelled else "")
        )
        return result

    def _record(self, result: MonitorCycleResult) -> None:
        if self.metrics is None:
            return
        self.metrics.record_monitor_cycle(CycleStats(
            checked=result.checked,
            closed=result.closed,
            errors=result.errors,
            stale=result.stale,
            duration_seconds=result.duration_seconds,
            skipped=result.skipped,
        ))
        if not result.skipped:
            self.metrics.set_open_positions(len(self.ledger.open_positions()))

    @staticmethod
    def _cancelled(cancel_event: Optional[Event], result: MonitorCycleResult) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            result.cancelled = True
            return True
        return False

    def _fetch_price(self, position: Position, result: MonitorCycleResult) -> Optional[float]:
        instrument = Instrument(instrument_id=position.instrument_id, symbol=position.symbol)
        try:
            price = self.market_data.get_price(instrument)
        except MarketDataError as e:
            result.errors += 1
            result.stale += 1
            self.ledger.mark_stale(position.id)
            logger.warning(f"Price unavailable for #{position.id} {instrument}: {e}; marked stale")
            return None
        self.ledger.record_mark(position.id, price, self._now())
        return price

    def _close(self, position: Position, reason: CloseReason, price: float,
               result: MonitorCycleResult) -> bool:
        try:
            self.ledger.close_position(position.id, reason, price)
        except LedgerError as e:
            result.errors += 1
            logger.warning(f"Close of #{position.id} ({reason.value}) rejected: {e}")
            return False
        result.record_close(position.id, reason)
        if self.metrics is not None:
            self.metrics.record_close(reason.value)
        return True

    def _evaluate_open(self, result: MonitorCycleResult, cancel_event: Optional[Event]) -> None:
        for position in self.ledger.open_positions():
            if self._cancelled(cancel_event, result):
                return

            result.checked += 1
            price = self._fetch_price(position, result)
            if price is None:
                continue

            reason = check_exit(position, price)
            if reason is None:
                continue

            if reason is CloseReason.STOP_LOSS:
                logger.warning(
                    f"Stop-loss hit for #{position.id} {position.symbol}: "
                    f"{price} vs stop {position.stop_loss_price}"
                )
            else:
                logger.info(
                    f"Take-profit hit for #{position.id} {position.symbol}: "
                    f"{price} vs target {position.take_profit_price}"
                )

            if self._close(position, reason, price, result) and self.ledger.daily_loss_breached():
                self._force_close_all(result, cancel_event)
                return

    def _force_close_all(self, result: MonitorCycleResult, cancel_event: Optional[Event]) -> None:
        state = self.ledger.get_state()
        reason = (
            f"daily loss ${state.daily_loss_accumulator:,.2f} exceeds limit "
            f"${state.daily_loss_limit:,.2f}"
        )
        logger.warning(f"Daily loss limit breached ({reason}); closing all open positions")
        self.ledger.suspend_trading(reason)

        for position in self.ledger.open_positions():
            if self._cancelled(cancel_event, result):
                return

            result.checked += 1
            price = self._fetch_price(position, result)
            if price is None:
                mark = self.ledger.last_mark(position.id)
                price = mark.price if mark is not None else None
            if price is None:
                logger.warning(f"No price for #{position.id} {position.symbol}; RISK_LIMIT close deferred")
                continue
            self._close(position, CloseReason.RISK_LIMIT, price, result)
