from __future__ import annotations

import pandas as pd

from src.db.sqlite import SQLiteDatabase, safe_db_read
from src.domain.models import BalanceSnapshot


class BalanceSnapshotRepository:
    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def record(self, snapshot: BalanceSnapshot) -> None:
        with self.db.write() as conn:
            conn.execute(
                """
                INSERT INTO balance_snapshots (timestamp, bot_key, pair, base_balance, quote_balance, price, equity)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.timestamp.isoformat(),
                    snapshot.bot_key,
                    snapshot.pair,
                    float(snapshot.base_balance),
                    float(snapshot.quote_balance),
                    float(snapshot.price),
                    float(snapshot.equity),
                ),
            )

    @safe_db_read(default_factory=pd.DataFrame)
    def history(self, limit: int = 1000) -> pd.DataFrame:
        conn = self.db.connect_ro()
        try:
            return pd.read_sql_query(
                "SELECT * FROM balance_snapshots ORDER BY timestamp ASC, id ASC LIMIT ?",
                conn,
                params=(int(limit),),
            )
        finally:
            conn.close()

    @safe_db_read(default_factory=pd.DataFrame)
    def latest_per_bot(self) -> pd.DataFrame:
        conn = self.db.connect_ro()
        try:
            return pd.read_sql_query(
                """
                SELECT bot_key, pair, base_balance, quote_balance, price, equity, timestamp
                FROM (
                    SELECT *, ROW_NUMBER() OVER (PARTITION BY bot_key ORDER BY timestamp DESC, id DESC) AS rn
                    FROM balance_snapshots
                ) x
                WHERE rn = 1
                ORDER BY bot_key
                """,
                conn,
            )
        finally:
            conn.close()
