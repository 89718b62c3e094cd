from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Callable, Iterator, ParamSpec, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def default_db_path() -> Path:
    # src/db/sqlite.py -> src/db -> src -> project root
    return Path(__file__).resolve().parents[2] / "pairtrader.db"


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS bot_state (
        bot_key TEXT PRIMARY KEY,
        state_json TEXT NOT NULL,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trade_intents (
        id TEXT PRIMARY KEY,
        bot_key TEXT NOT NULL,
        action TEXT NOT NULL,
        amount REAL NOT NULL,
        price REAL,
        status TEXT NOT NULL,
        error TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_trade_intents_bot_status ON trade_intents (bot_key, status)",
    """
    CREATE TABLE IF NOT EXISTS trades (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
        bot_key TEXT,
        pair TEXT,
        action TEXT,
        amount REAL,
        price REAL,
        client_order_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_decisions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
        pair TEXT,
        model TEXT,
        action TEXT,
        reasoning TEXT,
        risk_percent REAL,
        leverage REAL,
        stop_loss REAL,
        take_profit REAL,
        price REAL,
        quote_balance REAL,
        position_side TEXT,
        position_amount REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS balance_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
        bot_key TEXT,
        pair TEXT,
        base_balance REAL,
        quote_balance REAL,
        price REAL,
        equity REAL
    )
    """,
]


def safe_db_read(default_factory: Callable[[], T]) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator for read helpers used by the API: return a default value instead of raising
    when the database is locked, missing or otherwise unavailable.
    """
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except sqlite3.OperationalError as e:
                logger.warning(f"Database read failed ({func.__name__}): {e}")
                return default_factory()
            except sqlite3.DatabaseError as e:
                logger.error(f"Database error ({func.__name__}): {e}")
                return default_factory()
        return wrapper
    return decorator


class SQLiteDatabase:
    """
    One SQLite file shared by the trader (writes) and the API (reads).

    Writes go through a single persistent connection serialised by a lock; readers open
    short-lived query-only connections.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = str(path or default_db_path())
        self._conn_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._write_conn: sqlite3.Connection | None = None

    def _get_write_conn(self) -> sqlite3.Connection:
        if self._write_conn is None:
            with self._conn_lock:
                if self._write_conn is None:
                    conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
                    conn.execute("PRAGMA journal_mode=WAL")
                    conn.execute("PRAGMA synchronous=NORMAL")
                    conn.execute("PRAGMA busy_timeout=10000")
                    self._write_conn = conn
                    logger.info(f"Opened write connection to {self.path}")
        return self._write_conn

    @contextmanager
    def write(self) -> Iterator[sqlite3.Connection]:
        """Run statements in one transaction; commit on success, roll back on error."""
        with self._write_lock:
            conn = self._get_write_conn()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def connect_ro(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=2, isolation_level=None)
        conn.execute("PRAGMA query_only = 1")
        return conn

    def init_schema(self) -> None:
        """Create tables if missing (idempotent)."""
        with self.write() as conn:
            for stmt in _SCHEMA:
                conn.execute(stmt)

    def close(self) -> None:
        if self._write_conn is not None:
            with self._conn_lock:
                if self._write_conn is not None:
                    self._write_conn.close()
                    self._write_conn = None
                    logger.info("Closed write connection")
