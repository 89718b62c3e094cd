from __future__ import annotations

from datetime import datetime

from src.db.sqlite import SQLiteDatabase
from src.domain.models import Action, IntentStatus, TradeIntent


class TradeIntentRepository:
    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def insert(self, intent: TradeIntent) -> None:
        with self.db.write() as conn:
            conn.execute(
                """
                INSERT INTO trade_intents (id, bot_key, action, amount, price, status, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    intent.id,
                    intent.bot_key,
                    intent.action.value,
                    float(intent.amount),
                    float(intent.price),
                    intent.status.value,
                    intent.error,
                    intent.created_at.isoformat(),
                ),
            )

    def update_status(self, intent_id: str, status: IntentStatus, error: str | None = None) -> None:
        with self.db.write() as conn:
            cur = conn.execute(
                "UPDATE trade_intents SET status = ?, error = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (status.value, error, intent_id),
            )
            if cur.rowcount == 0:
                raise KeyError(f"Unknown trade intent {intent_id}")

    def get(self, intent_id: str) -> TradeIntent | None:
        conn = self.db.connect_ro()
        try:
            row = conn.execute(
                "SELECT id, bot_key, action, amount, price, status, error, created_at FROM trade_intents WHERE id = ?",
                (intent_id,),
            ).fetchone()
        finally:
            conn.close()
        return _row_to_intent(row) if row else None

    def pending(self, bot_key: str) -> list[TradeIntent]:
        conn = self.db.connect_ro()
        try:
            rows = conn.execute(
                """
                SELECT id, bot_key, action, amount, price, status, error, created_at
                FROM trade_intents
                WHERE bot_key = ? AND status = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (bot_key, IntentStatus.PENDING.value),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_intent(r) for r in rows]


def _row_to_intent(row: tuple) -> TradeIntent:
    return TradeIntent(
        id=row[0],
        bot_key=row[1],
        action=Action(row[2]),
        amount=float(row[3]),
        price=float(row[4] or 0.0),
        status=IntentStatus(row[5]),
        error=row[6],
        created_at=datetime.fromisoformat(row[7]),
    )
