from __future__ import annotations

import json
from typing import Any

import pandas as pd

from src.db.sqlite import SQLiteDatabase, safe_db_read


class BotStateRepository:
    """Per-bot JSON state blobs (strategy bookkeeping, simulated wallets)."""

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def load(self, bot_key: str) -> dict[str, Any] | None:
        conn = self.db.connect_ro()
        try:
            row = conn.execute("SELECT state_json FROM bot_state WHERE bot_key = ?", (bot_key,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        doc = json.loads(row[0])
        if not isinstance(doc, dict):
            raise ValueError(f"Stored state for {bot_key} is not a JSON object")
        return doc

    def save(self, bot_key: str, state: dict[str, Any]) -> None:
        with self.db.write() as conn:
            conn.execute(
                """
                INSERT INTO bot_state (bot_key, state_json, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(bot_key) DO UPDATE SET state_json = excluded.state_json, updated_at = CURRENT_TIMESTAMP
                """,
                (bot_key, json.dumps(state, sort_keys=True)),
            )

    @safe_db_read(default_factory=pd.DataFrame)
    def list_states(self) -> pd.DataFrame:
        conn = self.db.connect_ro()
        try:
            return pd.read_sql_query("SELECT bot_key, state_json, updated_at FROM bot_state ORDER BY bot_key", conn)
        finally:
            conn.close()
