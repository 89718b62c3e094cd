from __future__ import annotations

import json
from typing import Any

from src.research.analyser import MarketContext


DECISION_BASE_LINES: list[str] = [
    "You are a disciplined cryptocurrency margin trader managing a single trading pair.",
    "",
    "=== YOUR OBJECTIVE ===",
    "Grow the account while preserving capital. Trade only when the data gives you a clear edge.",
    "You may open long positions when you expect price to rise and short positions when you expect it to fall.",
    "",
    "=== TRADING CONSTRAINTS ===",
    "- One position at a time: close the current position before opening the opposite side.",
    "- risk_percent is the share of the available balance committed as margin (0..15).",
    "- Leverage is capped by the account; any higher value you suggest is reduced.",
    "- Every new position needs a stop-loss and a take-profit level.",
    "",
    "=== DATA PROVIDED ===",
    "You'll receive the current price, indicator summaries for a primary and a higher timeframe",
    "(EMA20, EMA50, RSI14, ATR14, trend, volume), the most recent bars, the available balance",
    "and the open position if there is one. Some fields may be null - work with what's available.",
    "",
    "=== HOW TO DECIDE ===",
    "- Prefer trades in the direction of the higher timeframe trend.",
    "- Place stops beyond recent structure, roughly 1-2 ATR from entry; aim for at least 1.5R.",
    "- Close a position when its thesis is invalidated or the target is reached; otherwise HOLD.",
    "- HOLD is always acceptable. Do not trade out of boredom.",
    "",
]

DECISION_OUTPUT_LINES: list[str] = [
    "=== OUTPUT ===",
    "Return ONLY valid JSON (no markdown):",
    "  action: open_long | close_long | open_short | close_short | hold",
    "  risk_percent: number 0.0..15.0 (required when opening)",
    "  leverage: number >= 1 (optional)",
    "  reasoning: string (<= 300 chars)",
    "  exit_plan: {stop_loss_price: number, take_profit_price: number, invalidation_condition: string}",
]


def _clean_str(v: Any) -> str | None:
    if not isinstance(v, str):
        return None
    vv = v.strip()
    return vv if vv else None


def _ai_cfg(config: Any) -> dict[str, Any]:
    if not isinstance(config, dict):
        return {}
    ai = config.get("ai")
    if not isinstance(ai, dict):
        return {}
    return ai


def _build_prompt(
    *,
    config: dict[str, Any],
    base_lines: list[str],
    output_lines: list[str],
    override_key: str,
) -> str:
    """
    Build a system prompt from:
    - default base prompt (or the override from the `ai` config section)
    - output schema (always appended; code controls the format)
    """
    override = _clean_str(_ai_cfg(config).get(override_key))
    lines = override.splitlines() if override else list(base_lines)
    lines.extend(output_lines)
    return "\n".join(lines)


def build_decision_system_prompt(config: dict[str, Any]) -> str:
    return _build_prompt(
        config=config,
        base_lines=DECISION_BASE_LINES,
        output_lines=DECISION_OUTPUT_LINES,
        override_key="decision_system_prompt",
    )


def build_user_prompt(context: MarketContext) -> str:
    """Render the market context as the JSON user message."""
    position = None
    if context.position is not None:
        p = context.position
        position = {
            **p.to_dict(),
            "unrealised_pnl": round(p.pnl(context.price), 8),
        }

    payload = {
        "pair": str(context.pair),
        "price": context.price,
        "available_balance": {"currency": context.pair.quote, "amount": context.quote_balance},
        "position": position,
        "primary_timeframe": context.primary,
        "higher_timeframe": context.higher,
        "recent_bars": context.recent_bars,
    }
    return json.dumps(payload, ensure_ascii=False)


def get_prompt_templates() -> dict[str, str]:
    """
    Prompt templates for the status API.

    Strategy instructions only (no OUTPUT schema); the output format is owned by the code.
    """
    return {"decision": "\n".join(DECISION_BASE_LINES)}
