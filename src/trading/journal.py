from __future__ import annotations

import logging
import uuid
from typing import Callable

from src.db.repositories.trade_intents import TradeIntentRepository
from src.domain.models import Action, IntentStatus, TradeIntent

logger = logging.getLogger(__name__)


def new_client_order_id() -> str:
    return uuid.uuid4().hex


class TradeJournal:
    """
    Write-ahead record of order intents for one bot.

    An intent is stored as pending *before* the order is submitted; its id doubles as the
    client order id, so a restart can ask the venue whether that exact order was filled.
    """

    def __init__(
        self,
        repo: TradeIntentRepository,
        bot_key: str,
        *,
        id_factory: Callable[[], str] = new_client_order_id,
    ):
        self.repo = repo
        self.bot_key = bot_key
        self._id_factory = id_factory

    def prepare(self, action: Action, amount: float, price: float) -> TradeIntent:
        intent = TradeIntent(
            id=self._id_factory(),
            bot_key=self.bot_key,
            action=action,
            amount=float(amount),
            price=float(price),
        )
        self.repo.insert(intent)
        logger.debug(f"[{self.bot_key}] prepared {action.value} intent {intent.id} amount={amount}")
        return intent

    def mark_done(self, intent_id: str) -> None:
        self.repo.update_status(intent_id, IntentStatus.DONE)

    def mark_failed(self, intent_id: str, error: str) -> None:
        self.repo.update_status(intent_id, IntentStatus.FAILED, error=error[:500])
        logger.warning(f"[{self.bot_key}] intent {intent_id} failed: {error}")

    def pending(self) -> list[TradeIntent]:
        return self.repo.pending(self.bot_key)
