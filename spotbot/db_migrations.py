from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional


def _migration_1(conn):
    """Base schema: per-symbol status, per-symbol position, trade ledger."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS bot_status (
            symbol TEXT PRIMARY KEY,
            status TEXT NOT NULL DEFAULT 'IDLE',
            updated_at INTEGER
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS position (
            symbol TEXT PRIMARY KEY,
            buy_price TEXT,
            quantity TEXT,
            buy_order_id TEXT,
            order_type TEXT NOT NULL DEFAULT 'LIMIT',
            oco_order_list_id TEXT,
            take_profit_price TEXT,
            stop_loss_price TEXT,
            created_at INTEGER,
            updated_at INTEGER
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS trade_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL CHECK (side IN ('BUY', 'SELL')),
            price TEXT NOT NULL,
            quantity TEXT NOT NULL,
            order_id TEXT,
            timestamp INTEGER NOT NULL
        )
        """
    )


def _migration_1_down(conn):
    cur = conn.cursor()
    cur.execute("DROP TABLE IF EXISTS trade_history")
    cur.execute("DROP TABLE IF EXISTS position")
    cur.execute("DROP TABLE IF EXISTS bot_status")


def _migration_2(conn):
    """Persist the trailing-stop high-water mark on the position row."""
    conn.execute("ALTER TABLE position ADD COLUMN highest_price TEXT")
    conn.execute("UPDATE position SET highest_price = buy_price WHERE buy_price IS NOT NULL")


def _migration_2_down(conn):
    conn.execute("ALTER TABLE position DROP COLUMN highest_price")


def _migration_3(conn):
    """Track emergency sells that were placed but not yet confirmed."""
    conn.execute("ALTER TABLE position ADD COLUMN exit_order_id TEXT")


def _migration_3_down(conn):
    conn.execute("ALTER TABLE position DROP COLUMN exit_order_id")


def _migration_4(conn):
    """Indices for ledger queries by symbol and time."""
    cur = conn.cursor()
    cur.execute("CREATE INDEX IF NOT EXISTS idx_trade_history_symbol ON trade_history(symbol)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_trade_history_timestamp ON trade_history(timestamp)")


def _migration_4_down(conn):
    cur = conn.cursor()
    cur.execute("DROP INDEX IF EXISTS idx_trade_history_symbol")
    cur.execute("DROP INDEX IF EXISTS idx_trade_history_timestamp")


MIGRATIONS: Dict[int, Callable] = {
    1: _migration_1,
    2: _migration_2,
    3: _migration_3,
    4: _migration_4,
}

MIGRATION_DOWNS: Dict[int, Callable] = {
    1: _migration_1_down,
    2: _migration_2_down,
    3: _migration_3_down,
    4: _migration_4_down,
}


def _ensure_migrations_table(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()


def applied_versions(conn) -> Dict[int, str]:
    """Map of applied version -> applied_at timestamp."""
    _ensure_migrations_table(conn)
    cur = conn.execute("SELECT version, applied_at FROM schema_migrations ORDER BY version")
    return {row[0]: row[1] for row in cur.fetchall()}


def pending_versions(conn) -> List[int]:
    applied = applied_versions(conn)
    return sorted(v for v in MIGRATIONS if v not in applied)


def apply_migrations(conn) -> List[int]:
    """Apply pending migrations to the given sqlite3 connection.

    Each migration runs in its own transaction together with its
    bookkeeping row. Returns the list of applied migration versions.
    """
    applied_now = []
    for v in pending_versions(conn):
        try:
            conn.execute("BEGIN IMMEDIATE")
            MIGRATIONS[v](conn)
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES(?, ?)",
                (v, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
            applied_now.append(v)
        except Exception:
            conn.rollback()
            raise
    return applied_now


def rollback_migration(conn, version: int) -> None:
    """Rollback a specific migration version if a down migration is registered."""
    if version not in MIGRATION_DOWNS:
        raise RuntimeError(f"No down migration registered for version {version}")

    try:
        conn.execute("BEGIN IMMEDIATE")
        MIGRATION_DOWNS[version](conn)
        conn.execute("DELETE FROM schema_migrations WHERE version = ?", (version,))
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def rollback_last(conn) -> Optional[int]:
    """Rollback the latest applied migration; returns the version or None."""
    applied = applied_versions(conn)
    if not applied:
        return None
    v = max(applied)
    rollback_migration(conn, v)
    return v
