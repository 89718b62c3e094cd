from __future__ import annotations

import logging

from src.db.repositories.balances import BalanceSnapshotRepository
from src.domain.models import BalanceSnapshot, Pair
from src.ports.market import PricePort
from src.ports.trading import TradeExecutionPort

logger = logging.getLogger(__name__)


async def snapshot_balances(
    *,
    bot_key: str,
    pair: Pair,
    trader: TradeExecutionPort,
    pricer: PricePort,
    repo: BalanceSnapshotRepository,
) -> BalanceSnapshot | None:
    """
    Record wallet balances and equity after a trade for the status API.

    Equity is quote + base * price when flat, and quote + position margin + unrealised PnL
    while a position is open (for a spot long this reduces to quote + quantity * price). Failures are logged, never raised.
    """
    try:
        base = float(await trader.get_balance(pair.base))
        quote = float(await trader.get_balance(pair.quote))
        price = float(await pricer.get_price(pair))
        position = await trader.get_position(pair)

        if position is not None and position.is_open:
            equity = quote + position.margin() + position.pnl(price)
        else:
            equity = quote + base * price

        snapshot = BalanceSnapshot(
            bot_key=bot_key,
            pair=str(pair),
            base_balance=base,
            quote_balance=quote,
            price=price,
            equity=equity,
        )
        repo.record(snapshot)
        return snapshot
    except Exception as e:
        logger.error(f"[{bot_key}] failed to snapshot balances: {type(e).__name__}: {e}")
        return None
