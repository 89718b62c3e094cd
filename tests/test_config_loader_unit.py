import copy

import pytest
import yaml

from src.domain.errors import ConfigError
from src.domain.models import MarketType, Pair
from src.utils.config_loader import load_config, load_settings, parse_settings, validate_config

BASE = {
    "app": {"database_path": "data/test.db", "poll_interval_seconds": 60},
    "retry": {"max_retries": 2},
    "ai": {"model": "gpt-4.1-mini", "timeout_seconds": 30},
    "bots": [
        {
            "name": "dca",
            "platform": "simulate",
            "pair": "BTC_USDT",
            "strategy": "averaging",
            "market_type": "spot",
            "averaging": {"amount_percent": 5, "buy_threshold_percent": 2},
        },
        {
            "name": "sig",
            "platform": "simulate",
            "pair": "eth_usdt",
            "strategy": "signal",
            "market_type": "margin",
            "leverage": 2,
            "signal": {"max_leverage": 4, "primary_lookback": 60},
        },
    ],
}


def _cfg(**bot_overrides):
    cfg = copy.deepcopy(BASE)
    cfg["bots"][0].update(bot_overrides)
    return cfg


@pytest.fixture(autouse=True)
def _llm_credentials(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.delenv("OPENAI_BASE_URL", raising=False)
    for key in ("PAIRTRADER_DATABASE_PATH", "PAIRTRADER_LOG_LEVEL", "PAIRTRADER_POLL_INTERVAL_SECONDS",
                "PAIRTRADER_AI_MODEL"):
        monkeypatch.delenv(key, raising=False)


def test_parse_settings_builds_typed_bots():
    s = parse_settings(copy.deepcopy(BASE))

    dca, sig = s.bots
    assert dca.pair == Pair("BTC", "USDT")
    assert dca.market_type == MarketType.SPOT
    assert dca.poll_interval_seconds == 60
    assert dca.averaging.amount_percent == 5
    assert dca.averaging.buy_threshold_percent == 2
    assert dca.averaging.max_dca_trades == 15
    assert dca.averaging.sell_threshold_percent == 7

    assert sig.pair == Pair("ETH", "USDT")
    assert sig.signal.max_leverage == 4
    assert sig.signal.default_leverage == 2
    assert sig.signal.higher_timeframe == "15m"

    assert s.app.retry.max_retries == 2
    assert s.app.database_path.name == "test.db"
    assert s.app.database_path.is_absolute()
    assert s.ai.timeout_seconds == 30


@pytest.mark.parametrize(
    "overrides",
    [
        {"pair": "BTCUSDT"},
        {"strategy": "martingale"},
        {"platform": "binance"},
        {"market_type": "futures"},
        {"leverage": 3},
        {"leverage": 0.5},
        {"poll_interval_seconds": 0},
        {"averaging": {"amount_percent": 0}},
        {"averaging": {"amount_percent": 150}},
        {"averaging": {"max_dca_trades": 0}},
        {"averaging": {"max_dca_trades": 2.5}},
        {"averaging": {"sell_threshold_percent": -1}},
        {"strategy": "signal"},
        {"name": "sig"},
    ],
)
def test_invalid_bot_config_is_rejected(overrides):
    with pytest.raises(ConfigError):
        validate_config(_cfg(**overrides))


@pytest.mark.parametrize(
    "signal", [{"primary_lookback": 10}, {"higher_lookback": 5}, {"max_leverage": 0}, {"max_leverage": 1}]
)
def test_invalid_signal_settings_are_rejected(signal):
    cfg = copy.deepcopy(BASE)
    cfg["bots"][1]["signal"] = signal
    with pytest.raises(ConfigError):
        validate_config(cfg)


@pytest.mark.parametrize(
    "execution",
    [{"fill_poll_attempts": 0}, {"fill_poll_attempts": 2.5}, {"fill_poll_interval_seconds": -1},
     {"fill_poll_attempts": "many"}],
)
def test_invalid_execution_settings_are_rejected(execution):
    cfg = copy.deepcopy(BASE)
    cfg["execution"] = execution
    with pytest.raises(ConfigError):
        parse_settings(cfg)


def test_missing_or_empty_bots_is_rejected():
    with pytest.raises(ConfigError):
        validate_config({"app": {}})
    with pytest.raises(ConfigError):
        validate_config({"bots": []})


def test_invalid_retry_policy_is_rejected():
    cfg = copy.deepcopy(BASE)
    cfg["retry"] = {"initial_interval_seconds": 10, "max_interval_seconds": 1}
    with pytest.raises(ConfigError):
        validate_config(cfg)


def test_signal_strategy_requires_llm_credentials(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ConfigError):
        parse_settings(copy.deepcopy(BASE))

    monkeypatch.setenv("OPENAI_BASE_URL", "http://localhost:11434/v1")
    assert len(parse_settings(copy.deepcopy(BASE)).bots) == 2


def test_averaging_only_config_needs_no_credentials(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    cfg = copy.deepcopy(BASE)
    cfg["bots"] = cfg["bots"][:1]
    assert parse_settings(cfg).bots[0].name == "dca"


def test_load_config_reads_yaml_applies_env_and_returns_copies(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(BASE), encoding="utf-8")
    monkeypatch.setenv("PAIRTRADER_AI_MODEL", "other-model")
    monkeypatch.setenv("PAIRTRADER_POLL_INTERVAL_SECONDS", "15")
    monkeypatch.setenv("PAIRTRADER_DATABASE_PATH", str(tmp_path / "env.db"))

    cfg = load_config(path, force_reload=True)
    assert cfg["ai"]["model"] == "other-model"
    assert cfg["app"]["poll_interval_seconds"] == 15.0

    cfg["bots"].clear()
    assert len(load_config(path)["bots"]) == 2

    settings = load_settings(path)
    assert settings.app.database_path == tmp_path / "env.db"
    assert settings.bots[0].poll_interval_seconds == 15.0


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml", force_reload=True)


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path, force_reload=True)
