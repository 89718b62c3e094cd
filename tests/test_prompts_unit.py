import json

from src.domain.models import Pair, Position, PositionSide
from src.research.analyser import MarketContext
from src.research.prompts import build_decision_system_prompt, build_user_prompt, get_prompt_templates


def test_decision_prompt_contains_output_schema_and_action_values():
    cfg = {"ai": {}}
    p = build_decision_system_prompt(cfg)
    assert "=== OUTPUT ===" in p
    assert "action: open_long | close_long | open_short | close_short | hold" in p


def test_decision_prompt_override_is_used_and_output_is_appended():
    cfg = {"ai": {"decision_system_prompt": "CUSTOM DECISION PROMPT"}}
    p = build_decision_system_prompt(cfg)
    assert p.splitlines()[0] == "CUSTOM DECISION PROMPT"
    assert "=== OUTPUT ===" in p


def test_blank_override_falls_back_to_default():
    p = build_decision_system_prompt({"ai": {"decision_system_prompt": "   "}})
    assert p.splitlines()[0].startswith("You are a disciplined")


def test_get_prompt_templates_excludes_output_schema():
    t = get_prompt_templates()
    assert "decision" in t
    assert "=== OUTPUT ===" not in t["decision"]


def test_user_prompt_renders_context_with_position_pnl():
    ctx = MarketContext(
        pair=Pair("ETH", "USDT"),
        price=110.0,
        quote_balance=500.0,
        primary={"timeframe": "3m", "trend": "bullish"},
        higher=None,
        recent_bars=[{"close": 110.0}],
        position=Position(PositionSide.LONG, 2.0, 100.0, leverage=2.0),
    )
    doc = json.loads(build_user_prompt(ctx))
    assert doc["pair"] == "ETH_USDT"
    assert doc["available_balance"] == {"currency": "USDT", "amount": 500.0}
    assert doc["position"]["side"] == "long"
    assert doc["position"]["unrealised_pnl"] == 20.0
    assert doc["higher_timeframe"] is None
    assert doc["primary_timeframe"]["trend"] == "bullish"
