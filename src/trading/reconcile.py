from __future__ import annotations

import logging
from typing import Callable

from src.domain.errors import OrderNotFilledError
from src.domain.models import TradeIntent
from src.trading.executor import OrderExecutor
from src.trading.journal import TradeJournal

logger = logging.getLogger(__name__)


async def reconcile_pending(
    journal: TradeJournal,
    executor: OrderExecutor,
    *,
    wait: bool,
    apply: Callable[[TradeIntent, float], None] | None = None,
) -> bool:
    """
    Settle intents left pending by an interrupted submission.

    With `wait=True` (startup) each intent gets the full fill-poll budget and is marked
    failed if it never fills. With `wait=False` (start of a tick) a single check is made and
    an unfilled intent stops the scan. `apply` receives each filled intent and its filled
    amount before the intent is marked done.

    Returns True when no pending intent is left unsettled.
    """
    for intent in journal.pending():
        if wait:
            try:
                filled_amount = await executor.await_fill(intent.id)
            except OrderNotFilledError as e:
                journal.mark_failed(intent.id, str(e))
                continue
        else:
            filled, filled_amount = await executor.check_fill(intent.id)
            if not filled:
                logger.info(f"[{journal.bot_key}] intent {intent.id} still pending; skipping tick")
                return False

        amount = filled_amount if filled_amount > 0 else intent.amount
        if apply is not None:
            apply(intent, amount)
        journal.mark_done(intent.id)
        logger.info(f"[{journal.bot_key}] reconciled {intent.action.value} intent {intent.id} filled={amount:.8f}")
    return True
