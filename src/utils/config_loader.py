from __future__ import annotations

import logging
import os
import threading
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.broker.providers import SUPPORTED_PLATFORMS
from src.domain.errors import ConfigError
from src.domain.models import MarketType, Pair
from src.strategy.averaging import AveragingSettings
from src.strategy.signal_driven import SignalSettings
from src.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

_cache_lock = threading.Lock()
_cached: dict[str, Any] | None = None
_cached_path: str | None = None

STRATEGIES = ("averaging", "signal")
DEFAULT_POLL_INTERVAL_SECONDS = 300
MIN_PRIMARY_LOOKBACK = 50
MIN_HIGHER_LOOKBACK = 20


def _project_root() -> Path:
    # src/utils/config_loader.py -> src/utils -> src -> project root
    return Path(__file__).resolve().parents[2]


def default_config_path() -> Path:
    return _project_root() / "config" / "config.yaml"


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    """Override selected YAML settings with PAIRTRADER_* environment variables."""
    app = cfg.setdefault("app", {}) or {}
    cfg["app"] = app
    if os.getenv("PAIRTRADER_DATABASE_PATH"):
        app["database_path"] = os.environ["PAIRTRADER_DATABASE_PATH"]
    if os.getenv("PAIRTRADER_LOG_LEVEL"):
        app["log_level"] = os.environ["PAIRTRADER_LOG_LEVEL"]
    if os.getenv("PAIRTRADER_POLL_INTERVAL_SECONDS"):
        app["poll_interval_seconds"] = float(os.environ["PAIRTRADER_POLL_INTERVAL_SECONDS"])

    ai = cfg.setdefault("ai", {}) or {}
    cfg["ai"] = ai
    if os.getenv("PAIRTRADER_AI_MODEL"):
        ai["model"] = os.environ["PAIRTRADER_AI_MODEL"]


def _section(cfg: dict[str, Any], key: str) -> dict[str, Any]:
    v = cfg.get(key)
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise ConfigError(f"{key} must be a mapping")
    return v


def _number(doc: dict[str, Any], key: str, default: float, where: str) -> float:
    v = doc.get(key, default)
    if isinstance(v, bool):
        raise ConfigError(f"{where}.{key} must be a number")
    try:
        return float(v)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{where}.{key} must be a number, got {v!r}") from exc


def validate_config(cfg: dict[str, Any]) -> None:
    """
    Fail fast on configuration mistakes before any strategy is constructed.
    Structural checks only; values are converted in `parse_settings`.
    """
    app_cfg = _section(cfg, "app")
    if _number(app_cfg, "poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS, "app") <= 0:
        raise ConfigError("app.poll_interval_seconds must be > 0")

    execution = _section(cfg, "execution")
    attempts = _number(execution, "fill_poll_attempts", 10, "execution")
    if attempts < 1 or int(attempts) != attempts:
        raise ConfigError("execution.fill_poll_attempts must be a positive integer")
    if _number(execution, "fill_poll_interval_seconds", 1.0, "execution") < 0:
        raise ConfigError("execution.fill_poll_interval_seconds must be >= 0")

    bots = cfg.get("bots")
    if not isinstance(bots, list) or not bots:
        raise ConfigError("Config must define a non-empty `bots` list")

    seen: set[str] = set()
    for i, bot in enumerate(bots):
        where = f"bots[{i}]"
        if not isinstance(bot, dict):
            raise ConfigError(f"{where} must be a mapping")

        try:
            pair = Pair.parse(bot.get("pair", ""))
        except ValueError as exc:
            raise ConfigError(f"{where}.pair: {exc}") from exc

        strategy = str(bot.get("strategy", "")).strip().lower()
        if strategy not in STRATEGIES:
            raise ConfigError(f"{where}.strategy must be one of {', '.join(STRATEGIES)}; got {strategy!r}")

        platform = str(bot.get("platform", "")).strip().lower()
        if platform not in SUPPORTED_PLATFORMS:
            raise ConfigError(f"{where}.platform must be one of {', '.join(sorted(SUPPORTED_PLATFORMS))}")

        market_raw = str(bot.get("market_type", "spot")).strip().lower()
        try:
            market_type = MarketType(market_raw)
        except ValueError as exc:
            raise ConfigError(f"{where}.market_type must be spot or margin; got {market_raw!r}") from exc

        leverage = _number(bot, "leverage", 1, where)
        if leverage < 1:
            raise ConfigError(f"{where}.leverage must be >= 1")
        if market_type == MarketType.SPOT and leverage > 1:
            raise ConfigError(f"{where}: leverage > 1 is not allowed on spot markets")

        poll = _number(bot, "poll_interval_seconds", 1, where)
        if poll <= 0:
            raise ConfigError(f"{where}.poll_interval_seconds must be > 0")

        if strategy == "averaging":
            dca = _section(bot, "averaging")
            percent = _number(dca, "amount_percent", AveragingSettings.amount_percent, f"{where}.averaging")
            if not (1 <= percent <= 100):
                raise ConfigError(f"{where}.averaging.amount_percent must be within 1..100")
            max_trades = _number(dca, "max_dca_trades", AveragingSettings.max_dca_trades, f"{where}.averaging")
            if max_trades < 1 or int(max_trades) != max_trades:
                raise ConfigError(f"{where}.averaging.max_dca_trades must be a positive integer")
            for key in ("buy_threshold_percent", "sell_threshold_percent"):
                if _number(dca, key, 1, f"{where}.averaging") <= 0:
                    raise ConfigError(f"{where}.averaging.{key} must be > 0")
        else:
            if market_type != MarketType.MARGIN:
                raise ConfigError(f"{where}: the signal strategy requires market_type: margin")
            sig = _section(bot, "signal")
            if _number(sig, "primary_lookback", MIN_PRIMARY_LOOKBACK, f"{where}.signal") < MIN_PRIMARY_LOOKBACK:
                raise ConfigError(f"{where}.signal.primary_lookback must be >= {MIN_PRIMARY_LOOKBACK}")
            if _number(sig, "higher_lookback", MIN_HIGHER_LOOKBACK, f"{where}.signal") < MIN_HIGHER_LOOKBACK:
                raise ConfigError(f"{where}.signal.higher_lookback must be >= {MIN_HIGHER_LOOKBACK}")
            max_leverage = _number(sig, "max_leverage", SignalSettings.max_leverage, f"{where}.signal")
            if max_leverage < 1:
                raise ConfigError(f"{where}.signal.max_leverage must be >= 1")
            if leverage > max_leverage:
                raise ConfigError(f"{where}.leverage must not exceed signal.max_leverage ({max_leverage})")

        name = str(bot.get("name") or f"{strategy}-{pair}")
        if name in seen:
            raise ConfigError(f"Duplicate bot name {name!r}")
        seen.add(name)

    try:
        RetryPolicy.from_dict(_section(cfg, "retry"))
        RetryPolicy.from_dict(_section(_section(cfg, "ai"), "retry"))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid retry policy: {exc}") from exc


def load_config(config_path: str | Path | None = None, *, force_reload: bool = False) -> dict[str, Any]:
    """
    Load the YAML config once and reuse it across the process.

    - Reads `config/config.yaml` by default.
    - Applies environment overrides for a small set of operational settings.
    - Returns a deep copy so callers can safely mutate local copies.
    """
    global _cached, _cached_path

    path = Path(config_path) if config_path else default_config_path()
    path_str = str(path.resolve())

    with _cache_lock:
        if not force_reload and _cached is not None and _cached_path == path_str:
            return deepcopy(_cached)

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

        if not isinstance(cfg, dict):
            raise ConfigError(f"Config must be a YAML mapping (dict); got {type(cfg).__name__}")

        _apply_env_overrides(cfg)
        validate_config(cfg)

        _cached = cfg
        _cached_path = path_str
        logger.info("Loaded config from %s", path_str)
        return deepcopy(cfg)


def resolve_database_path(cfg: dict[str, Any]) -> Path:
    """SQLite file from `app.database_path`; relative paths are anchored at the project root."""
    db_path = Path(_section(cfg, "app").get("database_path") or "pairtrader.db")
    if not db_path.is_absolute():
        db_path = _project_root() / db_path
    return db_path


@dataclass(frozen=True)
class AppSettings:
    database_path: Path
    log_level: str = "INFO"
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    fill_poll_interval_seconds: float = 1.0
    fill_poll_attempts: int = 10


@dataclass(frozen=True)
class AISettings:
    model: str = "gpt-4.1-mini"
    timeout_seconds: float = 60.0
    max_tokens: int = 1200
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    # Raw `ai` section, used for prompt overrides.
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BotConfig:
    name: str
    platform: str
    pair: Pair
    strategy: str
    market_type: MarketType
    leverage: float = 1.0
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    averaging: AveragingSettings | None = None
    signal: SignalSettings | None = None


@dataclass(frozen=True)
class Settings:
    app: AppSettings
    ai: AISettings
    bots: tuple[BotConfig, ...]


def _parse_bot(bot: dict[str, Any], default_poll: float) -> BotConfig:
    pair = Pair.parse(bot["pair"])
    strategy = str(bot["strategy"]).strip().lower()
    market_type = MarketType(str(bot.get("market_type", "spot")).strip().lower())
    leverage = float(bot.get("leverage", 1))

    averaging = None
    signal = None
    if strategy == "averaging":
        dca = bot.get("averaging") or {}
        d = AveragingSettings()
        averaging = AveragingSettings(
            amount_percent=float(dca.get("amount_percent", d.amount_percent)),
            max_dca_trades=int(dca.get("max_dca_trades", d.max_dca_trades)),
            buy_threshold_percent=float(dca.get("buy_threshold_percent", d.buy_threshold_percent)),
            sell_threshold_percent=float(dca.get("sell_threshold_percent", d.sell_threshold_percent)),
        )
    else:
        sig = bot.get("signal") or {}
        d = SignalSettings()
        signal = SignalSettings(
            primary_timeframe=str(sig.get("primary_timeframe", d.primary_timeframe)),
            primary_lookback=int(sig.get("primary_lookback", d.primary_lookback)),
            higher_timeframe=str(sig.get("higher_timeframe", d.higher_timeframe)),
            higher_lookback=int(sig.get("higher_lookback", d.higher_lookback)),
            max_leverage=float(sig.get("max_leverage", d.max_leverage)),
            default_leverage=leverage,
        )

    return BotConfig(
        name=str(bot.get("name") or f"{strategy}-{pair}"),
        platform=str(bot["platform"]).strip().lower(),
        pair=pair,
        strategy=strategy,
        market_type=market_type,
        leverage=leverage,
        poll_interval_seconds=float(bot.get("poll_interval_seconds", default_poll)),
        averaging=averaging,
        signal=signal,
    )


def parse_settings(cfg: dict[str, Any]) -> Settings:
    """Convert a validated config mapping into typed settings."""
    validate_config(cfg)
    app_cfg = _section(cfg, "app")
    ai_cfg = _section(cfg, "ai")
    execution = _section(cfg, "execution")

    app = AppSettings(
        database_path=resolve_database_path(cfg),
        log_level=str(app_cfg.get("log_level", "INFO")).upper(),
        retry=RetryPolicy.from_dict(_section(cfg, "retry")),
        fill_poll_interval_seconds=float(execution.get("fill_poll_interval_seconds", 1.0)),
        fill_poll_attempts=int(execution.get("fill_poll_attempts", 10)),
    )
    ai = AISettings(
        model=str(ai_cfg.get("model") or AISettings.model),
        timeout_seconds=float(ai_cfg.get("timeout_seconds", AISettings.timeout_seconds)),
        max_tokens=int(ai_cfg.get("max_tokens", AISettings.max_tokens)),
        retry=RetryPolicy.from_dict(_section(ai_cfg, "retry")),
        raw=dict(ai_cfg),
    )

    default_poll = float(app_cfg.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS))
    bots = tuple(_parse_bot(b, default_poll) for b in cfg["bots"])

    if any(b.strategy == "signal" for b in bots):
        has_key = bool((os.getenv("OPENAI_API_KEY") or "").strip())
        has_url = bool((os.getenv("OPENAI_BASE_URL") or "").strip())
        if not (has_key or has_url):
            raise ConfigError("The signal strategy needs OPENAI_API_KEY (or OPENAI_BASE_URL) in the environment")

    return Settings(app=app, ai=ai, bots=bots)


def load_settings(config_path: str | Path | None = None, *, force_reload: bool = False) -> Settings:
    return parse_settings(load_config(config_path, force_reload=force_reload))
