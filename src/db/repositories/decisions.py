from __future__ import annotations

import pandas as pd

from src.db.sqlite import SQLiteDatabase, safe_db_read
from src.domain.models import DecisionRecord


class DecisionLogRepository:
    """Audit trail of every parsed AI decision."""

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def append(self, record: DecisionRecord) -> None:
        with self.db.write() as conn:
            conn.execute(
                """
                INSERT INTO ai_decisions (
                    timestamp, pair, model, action, reasoning, risk_percent, leverage,
                    stop_loss, take_profit, price, quote_balance, position_side, position_amount
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.timestamp.isoformat(),
                    record.pair,
                    record.model,
                    record.action,
                    record.reasoning,
                    float(record.risk_percent),
                    float(record.leverage),
                    record.stop_loss,
                    record.take_profit,
                    float(record.price),
                    float(record.quote_balance),
                    record.position_side,
                    float(record.position_amount),
                ),
            )

    @safe_db_read(default_factory=pd.DataFrame)
    def recent(self, limit: int = 200) -> pd.DataFrame:
        conn = self.db.connect_ro()
        try:
            return pd.read_sql_query(
                "SELECT * FROM ai_decisions ORDER BY timestamp DESC, id DESC LIMIT ?",
                conn,
                params=(int(limit),),
            )
        finally:
            conn.close()
