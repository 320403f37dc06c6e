import sqlite3
import threading
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Union

from .db_migrations import apply_migrations
from .errors import PersistenceWriteFailure, PositionConflict
from .logging_setup import logger
from .pnl import round_trips
from .position import BotState, BotStatus, OrderType, Position, now_ms
from .trade import Trade, TradeSide, TradeStats

_POSITION_COLUMNS = (
    "symbol",
    "buy_price",
    "quantity",
    "buy_order_id",
    "order_type",
    "oco_order_list_id",
    "take_profit_price",
    "stop_loss_price",
    "highest_price",
    "exit_order_id",
    "created_at",
    "updated_at",
)


class SQLiteStore:
    """SQLite-backed, symbol-keyed store for bot status, positions and the trade ledger.

    Every state transition is one transaction:
    - ``commit_entry`` writes the position, the BUY trade and IN_POSITION
    - ``commit_exit`` clears the position, writes the SELL trade and IDLE

    so ``bot_status`` is IN_POSITION exactly when an active position row
    exists. Any sqlite error rolls the transaction back and is raised as
    ``PersistenceWriteFailure``. Decimals are stored as TEXT.

    Methods are synchronous; async callers wrap them in ``asyncio.to_thread``.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.path), timeout=30, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        applied = apply_migrations(self.conn)
        if applied:
            logger.info(f"Applied schema migrations | db={self.path} versions={applied}")

    # --- transactions ---
    def _write(self, symbol: str, what: str, fn):
        """Run ``fn(cursor)`` inside BEGIN IMMEDIATE ... COMMIT."""
        with self._lock:
            cur = self.conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                result = fn(cur)
                self.conn.commit()
                return result
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceWriteFailure(f"{what} failed for {symbol}: {e}", symbol=symbol) from e
            except Exception:
                self.conn.rollback()
                raise

    @staticmethod
    def _is_active_row(row) -> bool:
        return row is not None and row["buy_price"] is not None and bool(row["quantity"]) and Decimal(row["quantity"]) > 0

    def _select_position(self, cur, symbol: str):
        cur.execute(f"SELECT {', '.join(_POSITION_COLUMNS)} FROM position WHERE symbol = ?", (symbol,))
        return cur.fetchone()

    @staticmethod
    def _insert_trade(cur, trade: Trade) -> None:
        cur.execute(
            "INSERT INTO trade_history(symbol, side, price, quantity, order_id, timestamp) VALUES(?, ?, ?, ?, ?, ?)",
            (trade.symbol, trade.side.value, str(trade.price), str(trade.quantity), trade.order_id, trade.timestamp),
        )

    @staticmethod
    def _set_status(cur, symbol: str, state: BotState, ts: int) -> None:
        cur.execute(
            "INSERT OR REPLACE INTO bot_status(symbol, status, updated_at) VALUES(?, ?, ?)",
            (symbol, state.value, ts),
        )

    # --- reads ---
    def get_status(self, symbol: str) -> BotStatus:
        with self._lock:
            row = self.conn.execute(
                "SELECT status, updated_at FROM bot_status WHERE symbol = ?", (symbol,)
            ).fetchone()
        if row is None:
            return BotStatus(symbol=symbol)
        return BotStatus(symbol=symbol, state=BotState(row["status"]), updated_at=row["updated_at"])

    def get_position(self, symbol: str) -> Position:
        """Return the stored position, or an inactive ``Position()`` if there is none."""
        with self._lock:
            row = self._select_position(self.conn.cursor(), symbol)
        if not self._is_active_row(row):
            return Position()
        return Position.from_dict(dict(row))

    def active_symbols(self) -> List[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT symbol, buy_price, quantity FROM position ORDER BY created_at, symbol"
            ).fetchall()
        return [r["symbol"] for r in rows if self._is_active_row(r)]

    def count_active_positions(self, symbols: Optional[List[str]] = None) -> int:
        active = self.active_symbols()
        if symbols is not None:
            active = [s for s in active if s in symbols]
        return len(active)

    def list_statuses(self) -> Dict[str, BotStatus]:
        with self._lock:
            rows = self.conn.execute("SELECT symbol, status, updated_at FROM bot_status ORDER BY symbol").fetchall()
        return {
            r["symbol"]: BotStatus(symbol=r["symbol"], state=BotState(r["status"]), updated_at=r["updated_at"])
            for r in rows
        }

    def list_trades(self, symbol: Optional[str] = None, limit: Optional[int] = None) -> List[Trade]:
        """Ledger rows oldest first, optionally for one symbol and only the latest ``limit``."""
        sql = "SELECT id, symbol, side, price, quantity, order_id, timestamp FROM trade_history"
        params: list = []
        if symbol is not None:
            sql += " WHERE symbol = ?"
            params.append(symbol)
        sql += " ORDER BY timestamp DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [Trade.from_dict(dict(r)) for r in reversed(rows)]

    def get_trade_stats(self, symbol: Optional[str] = None) -> TradeStats:
        trades = self.list_trades(symbol)
        trips = round_trips(trades)
        return TradeStats(
            symbol=symbol,
            total_trades=len(trades),
            buy_trades=sum(1 for t in trades if t.side is TradeSide.BUY),
            sell_trades=sum(1 for t in trades if t.side is TradeSide.SELL),
            total_pnl=sum((t.realized_pnl for t in trips), Decimal("0")),
            winning_trades=sum(1 for t in trips if t.realized_pnl > 0),
            losing_trades=sum(1 for t in trips if t.realized_pnl < 0),
        )

    # --- state transitions ---
    def commit_entry(self, symbol: str, position: Position, trade: Trade) -> None:
        """Atomically store a new position, its BUY trade and IN_POSITION.

        Raises:
            PositionConflict: an active position already exists for ``symbol``
            PersistenceWriteFailure: the transaction could not be written
        """
        if trade.side is not TradeSide.BUY:
            raise ValueError(f"commit_entry needs a BUY trade, got {trade.side.value}")
        if not position.is_active() or position.symbol != symbol:
            raise ValueError(f"commit_entry needs an active position for {symbol}")

        def _tx(cur):
            if self._is_active_row(self._select_position(cur, symbol)):
                raise PositionConflict(f"Position already active for {symbol}", symbol=symbol)
            ts = now_ms()
            data = position.to_dict()
            data["highest_price"] = data["highest_price"] or data["buy_price"]
            data["created_at"] = data["created_at"] or ts
            data["updated_at"] = data["updated_at"] or ts
            cur.execute(
                f"INSERT OR REPLACE INTO position({', '.join(_POSITION_COLUMNS)}) "
                f"VALUES({', '.join('?' for _ in _POSITION_COLUMNS)})",
                tuple(data[c] for c in _POSITION_COLUMNS),
            )
            self._insert_trade(cur, trade)
            self._set_status(cur, symbol, BotState.IN_POSITION, ts)

        self._write(symbol, "commit_entry", _tx)

    def commit_exit(self, symbol: str, trade: Trade) -> None:
        """Atomically clear the position, store the SELL trade and set IDLE.

        Raises:
            PositionConflict: there is no active position for ``symbol``
            PersistenceWriteFailure: the transaction could not be written
        """
        if trade.side is not TradeSide.SELL:
            raise ValueError(f"commit_exit needs a SELL trade, got {trade.side.value}")

        def _tx(cur):
            if not self._is_active_row(self._select_position(cur, symbol)):
                raise PositionConflict(f"No active position to close for {symbol}", symbol=symbol)
            cur.execute("DELETE FROM position WHERE symbol = ?", (symbol,))
            self._insert_trade(cur, trade)
            self._set_status(cur, symbol, BotState.IDLE, now_ms())

        self._write(symbol, "commit_exit", _tx)

    def reduce_position(self, symbol: str, trade: Trade) -> Decimal:
        """Record a partially filled SELL and shrink the open quantity.

        Closes the position (and sets IDLE) if nothing remains. Returns the
        remaining quantity.
        """
        if trade.side is not TradeSide.SELL:
            raise ValueError(f"reduce_position needs a SELL trade, got {trade.side.value}")

        def _tx(cur):
            row = self._select_position(cur, symbol)
            if not self._is_active_row(row):
                raise PositionConflict(f"No active position to reduce for {symbol}", symbol=symbol)
            remaining = Decimal(row["quantity"]) - trade.quantity
            ts = now_ms()
            if remaining <= 0:
                remaining = Decimal("0")
                cur.execute("DELETE FROM position WHERE symbol = ?", (symbol,))
                self._set_status(cur, symbol, BotState.IDLE, ts)
            else:
                cur.execute(
                    "UPDATE position SET quantity = ?, updated_at = ? WHERE symbol = ?",
                    (str(remaining), ts, symbol),
                )
            self._insert_trade(cur, trade)
            return remaining

        return self._write(symbol, "reduce_position", _tx)

    def update_highest_price(self, symbol: str, price: Decimal) -> bool:
        """Raise the stored high-water mark to ``price``; never lowers it.

        Returns True if the stored value changed.
        """
        def _tx(cur):
            row = self._select_position(cur, symbol)
            if not self._is_active_row(row):
                return False
            current = row["highest_price"] or row["buy_price"]
            if current is not None and Decimal(current) >= price:
                return False
            cur.execute(
                "UPDATE position SET highest_price = ?, updated_at = ? WHERE symbol = ?",
                (str(price), now_ms(), symbol),
            )
            return True

        return self._write(symbol, "update_highest_price", _tx)

    def set_exit_order(self, symbol: str, order_id: Optional[str], detach_bracket: bool = False) -> None:
        """Record (or clear, with None) a pending emergency sell.

        With ``detach_bracket`` the position also drops its bracket fields
        and becomes indicator-managed, for when the bracket was canceled.
        """
        def _tx(cur):
            if not self._is_active_row(self._select_position(cur, symbol)):
                raise PositionConflict(f"No active position for {symbol}", symbol=symbol)
            cur.execute(
                "UPDATE position SET exit_order_id = ?, updated_at = ? WHERE symbol = ?",
                (order_id, now_ms(), symbol),
            )
            if detach_bracket:
                self._detach(cur, symbol)

        self._write(symbol, "set_exit_order", _tx)

    def detach_bracket(self, symbol: str) -> None:
        """Turn an OCO-managed position back into an indicator-managed one."""
        def _tx(cur):
            if not self._is_active_row(self._select_position(cur, symbol)):
                raise PositionConflict(f"No active position for {symbol}", symbol=symbol)
            self._detach(cur, symbol)

        self._write(symbol, "detach_bracket", _tx)

    @staticmethod
    def _detach(cur, symbol: str) -> None:
        cur.execute(
            "UPDATE position SET order_type = ?, oco_order_list_id = NULL, take_profit_price = NULL, "
            "stop_loss_price = NULL, updated_at = ? WHERE symbol = ?",
            (OrderType.LIMIT.value, now_ms(), symbol),
        )

    def repair_status(self, symbol: str) -> Optional[BotState]:
        """Make bot_status agree with the position row, which is authoritative.

        Returns the state written, or None if nothing needed fixing.
        """
        def _tx(cur):
            active = self._is_active_row(self._select_position(cur, symbol))
            cur.execute("SELECT status FROM bot_status WHERE symbol = ?", (symbol,))
            row = cur.fetchone()
            expected = BotState.IN_POSITION if active else BotState.IDLE
            if row is not None and row["status"] == expected.value:
                return None
            if row is None and expected is BotState.IDLE:
                return None
            if not active:
                cur.execute("DELETE FROM position WHERE symbol = ?", (symbol,))
            self._set_status(cur, symbol, expected, now_ms())
            return expected

        return self._write(symbol, "repair_status", _tx)

    def close(self):
        with self._lock:
            self.conn.close()
