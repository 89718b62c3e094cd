from __future__ import annotations

import json
import logging
import math
from typing import Any

from src.domain.models import Action, Decision

logger = logging.getLogger(__name__)

MAX_RISK_PERCENT = 15.0

# Model label -> engine action. Position-specific labels (open_*/close_*) are checked
# against the venue position by the strategy.
_ACTIONS: dict[str, Action] = {
    "buy": Action.BUY,
    "long": Action.BUY,
    "open_long": Action.BUY,
    "close_short": Action.BUY,
    "sell": Action.SELL,
    "short": Action.SELL,
    "open_short": Action.SELL,
    "close_long": Action.SELL,
    "close": Action.SELL,
    "hold": Action.NONE,
    "wait": Action.NONE,
}


def _strip_fences(raw: str) -> str:
    text = (raw or "").strip()
    if text.startswith("```json"):
        text = text[len("```json"):]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def _optional_number(doc: dict[str, Any], key: str) -> float | None:
    """Positive finite number or None. Raises ValueError on a non-numeric value."""
    v = doc.get(key)
    if v is None or v == "":
        return None
    if isinstance(v, bool):
        raise ValueError(f"{key} must be a number")
    num = float(v)
    if math.isnan(num) or math.isinf(num):
        raise ValueError(f"{key} must be finite")
    return num if num > 0 else None


def parse_decision(raw: str) -> Decision:
    """
    Parse the decision service reply.

    Anything that is not valid JSON with a recognised action becomes HOLD; this function
    never raises for malformed model output.
    """
    text = _strip_fences(raw)
    if not text:
        return Decision.hold("Empty response")

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        logger.warning(f"Decision reply is not JSON: {text[:200]!r}")
        return Decision.hold("Invalid JSON structure")

    if not isinstance(parsed, dict):
        return Decision.hold(f"Unexpected JSON type {type(parsed).__name__}")

    # Older prompts wrapped the payload as {"decision": {...}}.
    if isinstance(parsed.get("decision"), dict):
        parsed = parsed["decision"]

    label = str(parsed.get("action") or "").strip().lower()
    if label not in _ACTIONS:
        logger.warning(f"Decision reply has unknown action {label!r}")
        return Decision.hold(f"Invalid action: {label or '<missing>'}")

    reasoning = str(parsed.get("reasoning") or "").strip()
    action = _ACTIONS[label]
    if action == Action.NONE:
        return Decision(action=Action.NONE, reasoning=reasoning, label="hold")

    exit_plan = parsed.get("exit_plan") if isinstance(parsed.get("exit_plan"), dict) else {}
    try:
        risk = parsed.get("risk_percent", 0.0)
        risk_percent = float(risk) if risk is not None and not isinstance(risk, bool) else 0.0
        leverage = _optional_number(parsed, "leverage")
        stop_loss = _optional_number(exit_plan, "stop_loss_price") or _optional_number(parsed, "stop_loss")
        take_profit = _optional_number(exit_plan, "take_profit_price") or _optional_number(parsed, "take_profit")
    except (TypeError, ValueError) as e:
        logger.warning(f"Decision reply has malformed numbers: {e}")
        return Decision.hold(f"Malformed numeric field: {e}")

    if math.isnan(risk_percent) or not (0.0 <= risk_percent <= MAX_RISK_PERCENT):
        return Decision.hold(f"Invalid risk_percent: {risk_percent} (must be 0.0-{MAX_RISK_PERCENT})")

    if stop_loss is not None and take_profit is not None:
        if label == "open_long" and stop_loss >= take_profit:
            return Decision.hold("stop_loss_price must be below take_profit_price for a long")
        if label == "open_short" and stop_loss <= take_profit:
            return Decision.hold("stop_loss_price must be above take_profit_price for a short")

    return Decision(
        action=action,
        reasoning=reasoning,
        risk_percent=risk_percent,
        leverage=leverage,
        stop_loss=stop_loss,
        take_profit=take_profit,
        invalidation=str(exit_plan.get("invalidation_condition") or "").strip(),
        label=label,
    )
