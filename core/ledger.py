"""
coinsim Core: Portfolio Ledger

Single source of truth for simulated cash, positions and realized P&L.

Rules:
- Every mutation holds one re-entrant lock and is written to SQLite in a
  single transaction before in-memory state changes
- Positions move OPEN -> CLOSED exactly once; close reason, price and time
  are written together
- cash_balance never goes negative; a close that loses more than the
  available cash records the excess as cash_shortfall, which counts
  against portfolio value and is repaid before cash grows again
- Opens are rejected on insufficient cash, position size over
  max_position_size_pct of portfolio value, too many open positions, or
  while trading is suspended by the daily loss limit
- The daily loss accumulator (net realized loss since the boundary) resets
  at the configured UTC hour
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import RLock
from typing import Callable, Dict, List, Optional

from core.exceptions import (
    InsufficientFunds,
    InvalidPositionRequest,
    LimitExceeded,
    PositionAlreadyClosed,
    PositionNotFound,
    TradingHalted,
)

logger = logging.getLogger(__name__)

DEFAULT_RISK = {
    "starting_capital": 10000.0,
    "max_position_size_pct": 0.05,
    "max_daily_loss_pct": 0.03,
    "max_open_positions": 5,
    "fee_rate": 0.001,
    "daily_reset_hour_utc": 0,
}


class Side(str, Enum):
    LONG = "long"
    SHORT = "short"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class CloseReason(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    MANUAL = "MANUAL"
    RISK_LIMIT = "RISK_LIMIT"


def compute_pnl(side: Side, entry_price: float, close_price: float, quantity: float) -> float:
    """(close - entry) * qty, negated for short"""
    pnl = (close_price - entry_price) * quantity
    return -pnl if side is Side.SHORT else pnl


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class PositionRequest:
    """Everything needed to open a position (instrument already resolved)"""
    symbol: str
    instrument_id: str
    side: Side
    entry_price: float
    quantity: float
    stop_loss_price: float
    take_profit_price: float


@dataclass(frozen=True)
class Position:
    id: int
    symbol: str
    instrument_id: str
    side: Side
    entry_price: float
    quantity: float
    stop_loss_price: float
    take_profit_price: float
    opened_at: datetime
    status: PositionStatus = PositionStatus.OPEN
    close_reason: Optional[CloseReason] = None
    closed_at: Optional[datetime] = None
    close_price: Optional[float] = None
    realized_pnl: Optional[float] = None
    fees: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN

    @property
    def notional(self) -> float:
        return self.entry_price * self.quantity

    def pnl_at(self, price: float) -> float:
        return compute_pnl(self.side, self.entry_price, price, self.quantity)

    @classmethod
    def from_row(cls, row: Dict) -> "Position":
        return cls(
            id=int(row["id"]),
            symbol=row["symbol"],
            instrument_id=row["instrument_id"],
            side=Side(row["side"]),
            entry_price=float(row["entry_price"]),
            quantity=float(row["quantity"]),
            stop_loss_price=float(row["stop_loss_price"]),
            take_profit_price=float(row["take_profit_price"]),
            opened_at=_parse_dt(row["opened_at"]),
            status=PositionStatus(row["status"]),
            close_reason=CloseReason(row["close_reason"]) if row.get("close_reason") else None,
            closed_at=_parse_dt(row.get("closed_at")),
            close_price=row.get("close_price"),
            realized_pnl=row.get("realized_pnl"),
            fees=float(row.get("fees") or 0.0),
        )


@dataclass(frozen=True)
class PriceMark:
    """Last price the monitor observed for an open position"""
    price: Optional[float]
    observed_at: datetime
    stale: bool = False


@dataclass(frozen=True)
class PortfolioState:
    """Read-only snapshot of the ledger"""
    cash_balance: float
    open_positions: Dict[int, Position]
    realized_pnl: float
    daily_loss_accumulator: float
    daily_loss_reset_at: datetime
    trading_suspended: bool
    suspended_reason: Optional[str]
    starting_capital: float
    portfolio_value: float
    daily_loss_limit: float
    marks: Dict[int, PriceMark] = field(default_factory=dict)
    cash_shortfall: float = 0.0

    @property
    def open_count(self) -> int:
        return len(self.open_positions)

    @property
    def total_return_pct(self) -> float:
        if not self.starting_capital:
            return 0.0
        return (self.portfolio_value - self.starting_capital) / self.starting_capital * 100.0


class PortfolioLedger:
    """
    Thread-safe simulated portfolio backed by the SQLite StateStore.

    Usage:
        ledger = PortfolioLedger(store, policy["risk"])
        pos = ledger.open_position(PositionRequest(...))
        ledger.close_position(pos.id, CloseReason.MANUAL, price)
    """

    def __init__(self, state_store, config: Optional[Dict] = None,
                 now: Callable[[], datetime] = _utcnow):
        cfg = dict(DEFAULT_RISK)
        cfg.update(config or {})
        self.state_store = state_store
        self._now = now
        self.starting_capital = float(cfg["starting_capital"])
        self.max_position_size_pct = float(cfg["max_position_size_pct"])
        self.max_daily_loss_pct = float(cfg["max_daily_loss_pct"])
        self.max_open_positions = int(cfg["max_open_positions"])
        self.fee_rate = float(cfg["fee_rate"])
        self.reset_hour = int(cfg["daily_reset_hour_utc"])

        self._lock = RLock()
        self._marks: Dict[int, PriceMark] = {}

        row = state_store.load_portfolio()
        if row is None:
            row = state_store.init_portfolio(self.starting_capital, self.boundary_for(self._now()))
            logger.info(f"Initialized new portfolio with ${self.starting_capital:,.2f}")
        self._portfolio = self._portfolio_from_row(row)
        self._open: Dict[int, Position] = {
            int(r["id"]): Position.from_row(r) for r in state_store.load_positions(status="OPEN")
        }

        logger.info(
            f"PortfolioLedger loaded: cash=${self._portfolio['cash_balance']:,.2f}, "
            f"open={len(self._open)}, suspended={self._portfolio['trading_suspended']}"
        )

    @staticmethod
    def _portfolio_from_row(row: Dict) -> Dict:
        portfolio = dict(row)
        portfolio["daily_loss_reset_at"] = _parse_dt(portfolio["daily_loss_reset_at"])
        portfolio["trading_suspended"] = bool(portfolio["trading_suspended"])
        portfolio["cash_shortfall"] = float(portfolio.get("cash_shortfall") or 0.0)
        return portfolio

    # ------------------------------------------------------------------
    # Daily boundary
    # ------------------------------------------------------------------

    def boundary_for(self, now: datetime) -> datetime:
        """Most recent daily reset instant at or before now"""
        boundary = now.astimezone(timezone.utc).replace(
            hour=self.reset_hour, minute=0, second=0, microsecond=0
        )
        if boundary > now:
            boundary -= timedelta(days=1)
        return boundary

    def roll_daily_boundary(self, now: Optional[datetime] = None) -> bool:
        """Reset the daily loss accumulator if a boundary has passed. Returns True on reset."""
        now = now or self._now()
        with self._lock:
            boundary = self.boundary_for(now)
            if boundary <= self._portfolio["daily_loss_reset_at"]:
                return False
            updated = dict(self._portfolio)
            updated.update(
                daily_loss_accumulator=0.0,
                daily_loss_reset_at=boundary,
                trading_suspended=False,
                suspended_reason=None,
            )
            self.state_store.save_portfolio(updated)
            was_suspended = self._portfolio["trading_suspended"]
            self._portfolio = updated
        logger.info(
            f"Daily loss boundary reset at {boundary.isoformat()}"
            + (" (trading resumed)" if was_suspended else "")
        )
        return True

    def daily_loss_limit(self) -> float:
        with self._lock:
            return self.max_daily_loss_pct * self.portfolio_value()

    def daily_loss_breached(self) -> bool:
        with self._lock:
            loss = self._portfolio["daily_loss_accumulator"]
            return loss > 0 and loss > self.daily_loss_limit()

    def suspend_trading(self, reason: str) -> None:
        with self._lock:
            if self._portfolio["trading_suspended"]:
                return
            updated = dict(self._portfolio)
            updated.update(trading_suspended=True, suspended_reason=reason)
            self.state_store.save_portfolio(updated)
            self._portfolio = updated
        logger.warning(f"Trading suspended: {reason}")

    # ------------------------------------------------------------------
    # Valuation and marks
    # ------------------------------------------------------------------

    def portfolio_value(self) -> float:
        """Cash less any shortfall, plus open positions at their last mark (entry when unmarked)"""
        with self._lock:
            value = self._portfolio["cash_balance"] - self._portfolio["cash_shortfall"]
            for position in self._open.values():
                mark = self._marks.get(position.id)
                price = mark.price if mark is not None and mark.price is not None else position.entry_price
                value += position.notional + position.pnl_at(price)
            return value

    def record_mark(self, position_id: int, price: float,
                    observed_at: Optional[datetime] = None) -> None:
        with self._lock:
            if position_id in self._open:
                self._marks[position_id] = PriceMark(price=price, observed_at=observed_at or self._now())

    def mark_stale(self, position_id: int) -> None:
        """Flag the position's mark stale, keeping the last observed price"""
        with self._lock:
            if position_id not in self._open:
                return
            previous = self._marks.get(position_id)
            if previous is None:
                self._marks[position_id] = PriceMark(price=None, observed_at=self._now(), stale=True)
            else:
                self._marks[position_id] = replace(previous, stale=True)

    def last_mark(self, position_id: int) -> Optional[PriceMark]:
        with self._lock:
            return self._marks.get(position_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_state(self) -> PortfolioState:
        with self._lock:
            portfolio = self._portfolio
            return PortfolioState(
                cash_balance=portfolio["cash_balance"],
                open_positions=dict(sorted(self._open.items())),
                realized_pnl=portfolio["realized_pnl"],
                daily_loss_accumulator=portfolio["daily_loss_accumulator"],
                daily_loss_reset_at=portfolio["daily_loss_reset_at"],
                trading_suspended=portfolio["trading_suspended"],
                suspended_reason=portfolio["suspended_reason"],
                starting_capital=portfolio["starting_capital"],
                portfolio_value=self.portfolio_value(),
                daily_loss_limit=self.daily_loss_limit(),
                marks=dict(self._marks),
                cash_shortfall=portfolio["cash_shortfall"],
            )

    def open_positions(self) -> List[Position]:
        """Open positions in id order"""
        with self._lock:
            return [self._open[pid] for pid in sorted(self._open)]

    def get_position(self, position_id: int) -> Position:
        with self._lock:
            if position_id in self._open:
                return self._open[position_id]
        row = self.state_store.get_position(position_id)
        if row is None:
            raise PositionNotFound(f"Position {position_id} not found")
        return Position.from_row(row)

    def closed_positions(self, limit: Optional[int] = None) -> List[Position]:
        """Closed positions in id order (the most recent `limit` if given)"""
        rows = self.state_store.load_positions(status=PositionStatus.CLOSED.value)
        if limit is not None:
            rows = rows[-limit:] if limit > 0 else []
        return [Position.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(request: PositionRequest) -> None:
        if request.quantity <= 0:
            raise InvalidPositionRequest(f"Quantity must be positive, got {request.quantity}")
        if request.entry_price <= 0:
            raise InvalidPositionRequest(f"Entry price must be positive, got {request.entry_price}")
        if request.stop_loss_price <= 0 or request.take_profit_price <= 0:
            raise InvalidPositionRequest("Stop-loss and take-profit prices must be positive")
        entry = request.entry_price
        if request.side is Side.LONG:
            if not request.stop_loss_price < entry < request.take_profit_price:
                raise InvalidPositionRequest(
                    f"Long position needs stop_loss < entry < take_profit "
                    f"(got {request.stop_loss_price} / {entry} / {request.take_profit_price})"
                )
        elif not request.take_profit_price < entry < request.stop_loss_price:
            raise InvalidPositionRequest(
                f"Short position needs take_profit < entry < stop_loss "
                f"(got {request.take_profit_price} / {entry} / {request.stop_loss_price})"
            )

    def open_position(self, request: PositionRequest) -> Position:
        """
        Open a position, debiting entry * qty + fee from cash.

        Raises:
            InvalidPositionRequest, TradingHalted, LimitExceeded, InsufficientFunds
        """
        request = replace(request, side=Side(request.side))
        self._validate(request)

        with self._lock:
            self.roll_daily_boundary()

            if self._portfolio["trading_suspended"] or self.daily_loss_breached():
                reason = self._portfolio["suspended_reason"] or "daily loss limit reached"
                logger.warning(f"Open rejected for {request.symbol}: trading halted ({reason})")
                raise TradingHalted(f"Trading halted: {reason}")

            if len(self._open) >= self.max_open_positions:
                logger.warning(f"Open rejected for {request.symbol}: max open positions")
                raise LimitExceeded(
                    f"Max open positions reached ({len(self._open)}/{self.max_open_positions})"
                )

            notional = request.entry_price * request.quantity
            max_notional = self.max_position_size_pct * self.portfolio_value()
            if notional > max_notional:
                logger.warning(f"Open rejected for {request.symbol}: size ${notional:,.2f} > ${max_notional:,.2f}")
                raise LimitExceeded(
                    f"Position size ${notional:,.2f} exceeds max ${max_notional:,.2f} "
                    f"({self.max_position_size_pct:.1%} of portfolio)"
                )

            fee = notional * self.fee_rate
            required = notional + fee
            cash = self._portfolio["cash_balance"]
            if required > cash:
                logger.warning(f"Open rejected for {request.symbol}: insufficient funds")
                raise InsufficientFunds(required=required, available=cash)

            opened_at = self._now()
            updated = dict(self._portfolio)
            updated["cash_balance"] = cash - required
            row = {
                "symbol": request.symbol,
                "instrument_id": request.instrument_id,
                "side": request.side.value,
                "entry_price": request.entry_price,
                "quantity": request.quantity,
                "stop_loss_price": request.stop_loss_price,
                "take_profit_price": request.take_profit_price,
                "opened_at": opened_at,
                "fees": fee,
            }
            position_id = self.state_store.insert_position(row, updated)

            position = Position(
                id=position_id,
                symbol=request.symbol,
                instrument_id=request.instrument_id,
                side=request.side,
                entry_price=request.entry_price,
                quantity=request.quantity,
                stop_loss_price=request.stop_loss_price,
                take_profit_price=request.take_profit_price,
                opened_at=opened_at,
                fees=fee,
            )
            self._portfolio = updated
            self._open[position_id] = position

        logger.info(
            f"Opened #{position.id} {position.side.value} {position.quantity:g} {position.symbol} "
            f"@ ${position.entry_price:,.4f} (SL {position.stop_loss_price}, TP {position.take_profit_price})"
        )
        return position

    def close_position(self, position_id: int, reason: CloseReason, price: float,
                       closed_at: Optional[datetime] = None) -> Position:
        """
        Close an OPEN position at price, crediting entry * qty + pnl - fee.

        Raises:
            PositionNotFound, PositionAlreadyClosed, InvalidPositionRequest
        """
        reason = CloseReason(reason)
        if price is None or price <= 0:
            raise InvalidPositionRequest(f"Close price must be positive, got {price}")

        with self._lock:
            position = self._open.get(position_id)
            if position is None:
                row = self.state_store.get_position(position_id)
                if row is None:
                    raise PositionNotFound(f"Position {position_id} not found")
                raise PositionAlreadyClosed(
                    f"Position {position_id} already closed ({row.get('close_reason')})"
                )

            closed_at = closed_at or self._now()
            pnl = position.pnl_at(price)
            close_fee = price * position.quantity * self.fee_rate
            total_fees = position.fees + close_fee
            net_pnl = pnl - total_fees

            previous_shortfall = self._portfolio["cash_shortfall"]
            updated = dict(self._portfolio)
            # Losses beyond available cash become a shortfall, repaid by later credits first
            net_cash = updated["cash_balance"] - updated["cash_shortfall"] + position.notional + pnl - close_fee
            updated["cash_balance"] = max(0.0, net_cash)
            updated["cash_shortfall"] = max(0.0, -net_cash)
            updated["realized_pnl"] = updated["realized_pnl"] + net_pnl
            updated["daily_loss_accumulator"] = updated["daily_loss_accumulator"] - net_pnl

            closed = replace(
                position,
                status=PositionStatus.CLOSED,
                close_reason=reason,
                closed_at=closed_at,
                close_price=price,
                realized_pnl=pnl,
                fees=total_fees,
            )
            written = self.state_store.close_position(
                position_id,
                {
                    "close_reason": reason.value,
                    "closed_at": closed_at,
                    "close_price": price,
                    "realized_pnl": pnl,
                    "fees": total_fees,
                },
                updated,
            )
            if not written:
                raise PositionAlreadyClosed(f"Position {position_id} already closed")

            self._portfolio = updated
            del self._open[position_id]
            self._marks.pop(position_id, None)
            shortfall_added = updated["cash_shortfall"] - previous_shortfall

        if shortfall_added > 0:
            logger.warning(
                f"Close of #{position_id} lost ${shortfall_added:,.2f} more than the available cash; "
                f"outstanding shortfall ${updated['cash_shortfall']:,.2f}"
            )
        log = logger.warning if reason in (CloseReason.STOP_LOSS, CloseReason.RISK_LIMIT) else logger.info
        log(
            f"Closed #{closed.id} {closed.symbol} {reason.value} @ ${price:,.4f} "
            f"pnl=${pnl:,.2f} fees=${total_fees:,.2f}"
        )
        return closed
