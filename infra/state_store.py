"""
coinsim Infrastructure: State Store

Durable SQLite persistence for instrument mappings, simulated positions and
the portfolio singleton row.

Features:
- One row per symbol in instrument_mappings (upsert, never duplicated)
- Positions keyed by id with a status column (OPEN/CLOSED)
- Portfolio cash/P&L/daily-loss state in a single-row table
- Every ledger mutation is one transaction (position row + portfolio row)
- Thread-safe: a single connection guarded by a lock

Rows are returned as plain dicts; datetimes are stored as ISO-8601 strings.
"""

import logging
import os
import sqlite3
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS instrument_mappings (
        symbol TEXT PRIMARY KEY,
        instrument_id TEXT NOT NULL,
        market_cap_rank INTEGER,
        resolved_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS positions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        symbol TEXT NOT NULL,
        instrument_id TEXT NOT NULL,
        side TEXT NOT NULL,
        entry_price REAL NOT NULL,
        quantity REAL NOT NULL,
        stop_loss_price REAL NOT NULL,
        take_profit_price REAL NOT NULL,
        opened_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'OPEN',
        close_reason TEXT,
        closed_at TEXT,
        close_price REAL,
        realized_pnl REAL,
        fees REAL NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status)",
    """
    CREATE TABLE IF NOT EXISTS portfolio (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        cash_balance REAL NOT NULL,
        realized_pnl REAL NOT NULL DEFAULT 0,
        daily_loss_accumulator REAL NOT NULL DEFAULT 0,
        daily_loss_reset_at TEXT NOT NULL,
        trading_suspended INTEGER NOT NULL DEFAULT 0,
        suspended_reason TEXT,
        starting_capital REAL NOT NULL,
        cash_shortfall REAL NOT NULL DEFAULT 0
    )
    """,
)

PORTFOLIO_FIELDS = (
    "cash_balance",
    "realized_pnl",
    "daily_loss_accumulator",
    "daily_loss_reset_at",
    "trading_suspended",
    "suspended_reason",
    "starting_capital",
    "cash_shortfall",
)

POSITION_INSERT_FIELDS = (
    "symbol",
    "instrument_id",
    "side",
    "entry_price",
    "quantity",
    "stop_loss_price",
    "take_profit_price",
    "opened_at",
    "fees",
)

POSITION_CLOSE_FIELDS = ("close_reason", "closed_at", "close_price", "realized_pnl", "fees")


def _iso(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class StateStore:
    """
    SQLite-backed state storage.

    Usage:
        store = StateStore("data/coinsim.db")
        store.upsert_mapping("BTC", "bitcoin", 1, datetime.now(timezone.utc))
        row = store.get_mapping("BTC")
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize state store.

        Args:
            db_path: Path to the SQLite file, or ":memory:"
                (default: $COINSIM_DB_PATH or data/coinsim.db)
        """
        if db_path is None:
            db_path = os.getenv("COINSIM_DB_PATH", "data/coinsim.db")
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock, self._conn:
            for statement in SCHEMA:
                self._conn.execute(statement)
            columns = {row["name"] for row in self._conn.execute("PRAGMA table_info(portfolio)")}
            if "cash_shortfall" not in columns:
                self._conn.execute("ALTER TABLE portfolio ADD COLUMN cash_shortfall REAL NOT NULL DEFAULT 0")

        logger.info(f"Initialized StateStore at {self.db_path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Instrument mappings
    # ------------------------------------------------------------------

    def get_mapping(self, symbol: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT symbol, instrument_id, market_cap_rank, resolved_at "
                "FROM instrument_mappings WHERE symbol = ?",
                (symbol,),
            ).fetchone()
        return dict(row) if row else None

    def upsert_mapping(self, symbol: str, instrument_id: str,
                       market_cap_rank: Optional[int], resolved_at: datetime) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO instrument_mappings (symbol, instrument_id, market_cap_rank, resolved_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(symbol) DO UPDATE SET "
                "instrument_id = excluded.instrument_id, "
                "market_cap_rank = excluded.market_cap_rank, "
                "resolved_at = excluded.resolved_at",
                (symbol, instrument_id, market_cap_rank, _iso(resolved_at)),
            )
        logger.debug("Persisted mapping %s -> %s", symbol, instrument_id)

    def delete_mapping(self, symbol: str) -> bool:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "DELETE FROM instrument_mappings WHERE symbol = ?", (symbol,)
            )
        return cursor.rowcount > 0

    def list_mappings(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT symbol, instrument_id, market_cap_rank, resolved_at "
                "FROM instrument_mappings ORDER BY symbol"
            ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Portfolio
    # ------------------------------------------------------------------

    def load_portfolio(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {', '.join(PORTFOLIO_FIELDS)} FROM portfolio WHERE id = 1"
            ).fetchone()
        if row is None:
            return None
        portfolio = dict(row)
        portfolio["trading_suspended"] = bool(portfolio["trading_suspended"])
        return portfolio

    def init_portfolio(self, starting_capital: float, reset_at: datetime) -> Dict[str, Any]:
        """Create the portfolio row if missing and return the persisted row."""
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR IGNORE INTO portfolio "
                "(id, cash_balance, realized_pnl, daily_loss_accumulator, "
                "daily_loss_reset_at, trading_suspended, suspended_reason, starting_capital) "
                "VALUES (1, ?, 0, 0, ?, 0, NULL, ?)",
                (float(starting_capital), _iso(reset_at), float(starting_capital)),
            )
        return self.load_portfolio()

    def save_portfolio(self, portfolio: Mapping[str, Any]) -> None:
        with self._lock, self._conn:
            self._write_portfolio(portfolio)

    def _write_portfolio(self, portfolio: Mapping[str, Any]) -> None:
        # Caller holds self._lock inside a transaction
        assignments = ", ".join(f"{name} = ?" for name in PORTFOLIO_FIELDS)
        values = [_iso(portfolio[name]) for name in PORTFOLIO_FIELDS]
        values[PORTFOLIO_FIELDS.index("trading_suspended")] = int(bool(portfolio["trading_suspended"]))
        cursor = self._conn.execute(f"UPDATE portfolio SET {assignments} WHERE id = 1", values)
        if cursor.rowcount != 1:
            raise sqlite3.IntegrityError("Portfolio row missing; call init_portfolio first")

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def insert_position(self, position: Mapping[str, Any], portfolio: Mapping[str, Any]) -> int:
        """Insert an OPEN position and the updated portfolio in one transaction."""
        columns = ", ".join(POSITION_INSERT_FIELDS)
        placeholders = ", ".join("?" for _ in POSITION_INSERT_FIELDS)
        with self._lock, self._conn:
            cursor = self._conn.execute(
                f"INSERT INTO positions ({columns}, status) VALUES ({placeholders}, 'OPEN')",
                [_iso(position[name]) for name in POSITION_INSERT_FIELDS],
            )
            self._write_portfolio(portfolio)
            return int(cursor.lastrowid)

    def close_position(self, position_id: int, close: Mapping[str, Any],
                       portfolio: Mapping[str, Any]) -> bool:
        """
        Mark a position CLOSED and persist the portfolio in one transaction.

        Returns:
            False if no OPEN position with that id exists (nothing written)
        """
        assignments = ", ".join(f"{name} = ?" for name in POSITION_CLOSE_FIELDS)
        values = [_iso(close[name]) for name in POSITION_CLOSE_FIELDS]
        with self._lock, self._conn:
            cursor = self._conn.execute(
                f"UPDATE positions SET status = 'CLOSED', {assignments} "
                "WHERE id = ? AND status = 'OPEN'",
                values + [position_id],
            )
            if cursor.rowcount != 1:
                return False
            self._write_portfolio(portfolio)
        return True

    def get_position(self, position_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM positions WHERE id = ?", (position_id,)
            ).fetchone()
        return dict(row) if row else None

    def load_positions(self, status: Optional[str] = None,
                       limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Load positions in id order, optionally filtered by status."""
        query = "SELECT * FROM positions"
        params: List[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [dict(r) for r in rows]
