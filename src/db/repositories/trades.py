from __future__ import annotations

import pandas as pd

from src.db.sqlite import SQLiteDatabase, safe_db_read
from src.domain.models import TradeEvent


class TradeRepository:
    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def record(self, bot_key: str, event: TradeEvent) -> None:
        with self.db.write() as conn:
            conn.execute(
                """
                INSERT INTO trades (timestamp, bot_key, pair, action, amount, price, client_order_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.timestamp.isoformat(),
                    bot_key,
                    str(event.pair),
                    event.action.value,
                    float(event.amount),
                    float(event.price),
                    event.client_order_id,
                ),
            )

    @safe_db_read(default_factory=pd.DataFrame)
    def recent(self, limit: int = 500, bot_key: str | None = None) -> pd.DataFrame:
        conn = self.db.connect_ro()
        try:
            if bot_key:
                return pd.read_sql_query(
                    "SELECT * FROM trades WHERE bot_key = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
                    conn,
                    params=(bot_key, int(limit)),
                )
            return pd.read_sql_query(
                "SELECT * FROM trades ORDER BY timestamp DESC, id DESC LIMIT ?",
                conn,
                params=(int(limit),),
            )
        finally:
            conn.close()
