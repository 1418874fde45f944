"""optiontrader — application configuration.

Two layers:

* ``load_config`` loads ``.env`` variables into a typed ``Config`` and
  validates the required broker credentials on startup.
* ``load_strategy_config`` reads the strategy JSON file into a typed
  ``StrategyConfig`` where every recognised field has an explicit default.
"""

import json
import os
import re
from dataclasses import dataclass, field, fields
from typing import Any, Optional

from dotenv import load_dotenv


_REQUIRED_VARS = [
    "SMARTAPI_API_KEY",
    "SMARTAPI_CLIENT_CODE",
    "SMARTAPI_JWT_TOKEN",
]


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    smartapi_api_key: str
    smartapi_client_code: str
    smartapi_jwt_token: str
    smartapi_base_url: str
    strategy_config_path: str
    instruments_path: str
    db_path: str
    log_level: str
    health_port: int
    poll_interval_seconds: float
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @property
    def telegram_enabled(self) -> bool:
        """``True`` when both Telegram credentials are present."""
        return bool(self.telegram_bot_token and self.telegram_chat_id)


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    return Config(
        smartapi_api_key=os.environ["SMARTAPI_API_KEY"],
        smartapi_client_code=os.environ["SMARTAPI_CLIENT_CODE"],
        smartapi_jwt_token=os.environ["SMARTAPI_JWT_TOKEN"],
        smartapi_base_url=os.environ.get(
            "SMARTAPI_BASE_URL", "https://apiconnect.angelone.in"
        ),
        strategy_config_path=os.environ.get("STRATEGY_CONFIG_PATH", "strategy.json"),
        instruments_path=os.environ.get("INSTRUMENTS_PATH", "data/instruments.json"),
        db_path=os.environ.get("DB_PATH", "data/optiontrader.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        health_port=int(os.environ.get("HEALTH_PORT", "8080")),
        poll_interval_seconds=float(os.environ.get("POLL_INTERVAL_SECONDS", "1.0")),
        telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN") or None,
        telegram_chat_id=os.environ.get("TELEGRAM_CHAT_ID") or None,
    )


# ── Strategy settings ────────────────────────────────────────────────────


@dataclass(frozen=True)
class BollingerConfig:
    period: int = 20
    width: float = 2.0


@dataclass(frozen=True)
class RsiConfig:
    period: int = 14
    bull_threshold: float = 60.0
    bear_threshold: float = 40.0


@dataclass(frozen=True)
class AtrConfig:
    period: int = 14
    sl_multiplier: float = 1.5
    tp_multiplier: float = 2.0


@dataclass(frozen=True)
class LevelDetectionConfig:
    enabled: bool = True
    sensitivity: float = 0.005  # fraction of price in "percent" mode
    sensitivity_mode: str = "percent"  # "percent" or "absolute"
    strength_threshold: int = 2
    breakout_confirmation_candles: int = 2
    pivot_window: int = 2
    lookback: int = 100


@dataclass(frozen=True)
class RiskConfig:
    max_daily_loss: float = 5000.0
    max_daily_profit: Optional[float] = None
    cooldown_minutes: float = 15.0
    default_quantity: int = 1


@dataclass(frozen=True)
class TrailingStopConfig:
    enabled: bool = False
    activation_atr_multiple: float = 1.0
    trail_atr_multiple: float = 1.0


@dataclass(frozen=True)
class MarketHoursConfig:
    timezone: str = "Asia/Kolkata"
    open: str = "09:15"
    close: str = "15:30"
    square_off: str = "15:15"


@dataclass(frozen=True)
class StrategyConfig:
    """Every setting consumed by the trading core, with defaults."""

    candle_interval_minutes: int = 15
    max_candles_to_keep: int = 100
    history_days: int = 5
    history_concurrency: int = 1
    history_call_delay_seconds: float = 0.35
    close_all_delay_seconds: float = 0.2
    instruments: tuple[str, ...] = ()
    bollinger: BollingerConfig = field(default_factory=BollingerConfig)
    rsi: RsiConfig = field(default_factory=RsiConfig)
    atr: AtrConfig = field(default_factory=AtrConfig)
    level_detection: LevelDetectionConfig = field(default_factory=LevelDetectionConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    trailing_stop: TrailingStopConfig = field(default_factory=TrailingStopConfig)
    market_hours: MarketHoursConfig = field(default_factory=MarketHoursConfig)


_NESTED = {
    "bollinger": BollingerConfig,
    "rsi": RsiConfig,
    "atr": AtrConfig,
    "level_detection": LevelDetectionConfig,
    "risk": RiskConfig,
    "trailing_stop": TrailingStopConfig,
    "market_hours": MarketHoursConfig,
}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    """``candleIntervalMinutes`` → ``candle_interval_minutes``."""
    return _CAMEL_RE.sub("_", key).lower()


def _build(cls, data: dict[str, Any], section: str):
    """Instantiate dataclass *cls* from a mapping, rejecting unknown keys."""
    if not isinstance(data, dict):
        raise ValueError(f"Strategy config section '{section}' must be an object")
    known = {f.name for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        name = _snake(key)
        if name not in known:
            raise ValueError(f"Unknown strategy config key '{section}.{key}'")
        if section == "root" and name in _NESTED:
            value = _build(_NESTED[name], value, name)
        elif name == "instruments":
            value = tuple(str(v) for v in value)
        kwargs[name] = value
    return cls(**kwargs)


def parse_strategy_config(data: dict[str, Any]) -> StrategyConfig:
    """Build a validated ``StrategyConfig`` from a decoded JSON object."""
    cfg = _build(StrategyConfig, data, "root")
    if cfg.candle_interval_minutes <= 0:
        raise ValueError("candle_interval_minutes must be positive")
    if cfg.max_candles_to_keep <= 0:
        raise ValueError("max_candles_to_keep must be positive")
    if cfg.level_detection.sensitivity_mode not in ("percent", "absolute"):
        raise ValueError(
            "level_detection.sensitivity_mode must be 'percent' or 'absolute', "
            f"got '{cfg.level_detection.sensitivity_mode}'"
        )
    if cfg.risk.max_daily_loss <= 0:
        raise ValueError("risk.max_daily_loss must be positive")
    return cfg


def load_strategy_config(path: str | None = None) -> StrategyConfig:
    """Load the strategy JSON file; an absent file yields all defaults."""
    if path is None or not os.path.exists(path):
        return StrategyConfig()
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return parse_strategy_config(data)
