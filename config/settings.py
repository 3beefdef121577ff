"""Typed, validated views over the raw YAML configuration."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from orchestration.errors import ConfigurationError


DEFAULT_SYMBOLS = ['BTCUSDT', 'ETHUSDT']


@dataclass(frozen=True)
class ExchangeSettings:
    name: str = 'binance'
    api_key: Optional[str] = None
    secret_key: Optional[str] = None
    testnet: bool = True
    base_url: str = ''


@dataclass(frozen=True)
class StrategySettings:
    type: str = 'simple_moving_average'
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RiskSettings:
    max_order_value: float = 0.0
    max_open_positions: int = 0
    max_drawdown: float = 10.0
    var_limit: float = 0.05
    max_exposure: float = 0.0


@dataclass(frozen=True)
class TradingSettings:
    symbols: List[str] = field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    max_position_size: float = 1000.0
    stop_loss_percent: float = 2.0
    take_profit_percent: float = 5.0
    max_daily_loss: float = 500.0
    trading_interval_seconds: int = 60
    min_order_value: float = 10.0
    max_leverage: int = 5
    risk_per_trade_percent: float = 1.0
    enable_paper_trading: bool = True
    margin_type: str = 'CROSSED'
    kline_interval: str = '1m'
    kline_limit: int = 100
    strategy: StrategySettings = field(default_factory=StrategySettings)


@dataclass(frozen=True)
class DatabaseSettings:
    host: Optional[str] = None
    port: int = 5432
    database: str = 'trading_bot'
    user: Optional[str] = None
    password: Optional[str] = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass(frozen=True)
class Settings:
    exchange: ExchangeSettings
    trading: TradingSettings
    risk: RiskSettings
    database: DatabaseSettings
    log_level: str = 'info'
    log_format: Optional[str] = None
    prometheus_port: Optional[int] = None
    alert_webhook: Optional[str] = None


def _section(source: Any, name: str) -> Dict[str, Any]:
    if source is None:
        return {}
    getter = getattr(source, 'get', None)
    value = getter(name, {}) if callable(getter) else {}
    if value is None:
        return {}
    to_dict = getattr(value, 'to_dict', None)
    if callable(to_dict):
        return dict(to_dict())
    if isinstance(value, Mapping):
        return dict(value)
    raise ConfigurationError(f"Config section '{name}' must be a mapping")


def _secret(value: Any) -> Optional[str]:
    """Unresolved ${VAR} placeholders count as missing."""
    if value is None:
        return None
    text = str(value).strip()
    if not text or (text.startswith('${') and text.endswith('}')):
        return None
    return text


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _number(raw: Dict[str, Any], key: str, default, cast):
    value = raw.get(key, default)
    try:
        return cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Config value '{key}' is not a valid {cast.__name__}: {value!r}") from exc


def _build_trading(raw: Dict[str, Any]) -> TradingSettings:
    defaults = TradingSettings()
    strategy_raw = raw.get('strategy') or {}
    if not isinstance(strategy_raw, Mapping):
        raise ConfigurationError("trading.strategy must be a mapping")
    parameters = strategy_raw.get('parameters') or {}
    if not isinstance(parameters, Mapping):
        raise ConfigurationError("trading.strategy.parameters must be a mapping")
    symbols = raw.get('symbols', defaults.symbols)
    if isinstance(symbols, str):
        symbols = [s.strip() for s in symbols.split(',') if s.strip()]
    return TradingSettings(
        symbols=[str(s).upper() for s in (symbols or [])],
        max_position_size=_number(raw, 'max_position_size', defaults.max_position_size, float),
        stop_loss_percent=_number(raw, 'stop_loss_percent', defaults.stop_loss_percent, float),
        take_profit_percent=_number(raw, 'take_profit_percent', defaults.take_profit_percent, float),
        max_daily_loss=_number(raw, 'max_daily_loss', defaults.max_daily_loss, float),
        trading_interval_seconds=_number(raw, 'trading_interval_seconds', defaults.trading_interval_seconds, int),
        min_order_value=_number(raw, 'min_order_value', defaults.min_order_value, float),
        max_leverage=_number(raw, 'max_leverage', defaults.max_leverage, int),
        risk_per_trade_percent=_number(raw, 'risk_per_trade_percent', defaults.risk_per_trade_percent, float),
        enable_paper_trading=_as_bool(raw.get('enable_paper_trading', defaults.enable_paper_trading)),
        margin_type=str(raw.get('margin_type', defaults.margin_type)).upper(),
        kline_interval=str(raw.get('kline_interval', defaults.kline_interval)),
        kline_limit=_number(raw, 'kline_limit', defaults.kline_limit, int),
        strategy=StrategySettings(
            type=str(strategy_raw.get('type', 'simple_moving_average')),
            parameters=dict(parameters),
        ),
    )


def validate_settings(settings: Settings) -> None:
    """Raise ConfigurationError on the first violated constraint."""
    trading = settings.trading
    if not trading.symbols:
        raise ConfigurationError("at least one trading symbol is required")
    if trading.max_position_size <= 0:
        raise ConfigurationError("max position size must be positive")
    if not 0 < trading.stop_loss_percent <= 50:
        raise ConfigurationError("stop loss percent must be between 0 and 50")
    if not 0 < trading.take_profit_percent <= 100:
        raise ConfigurationError("take profit percent must be between 0 and 100")
    if not 1 <= trading.max_leverage <= 125:
        raise ConfigurationError("max leverage must be between 1 and 125")
    if not 0.1 <= trading.risk_per_trade_percent <= 10:
        raise ConfigurationError("risk per trade percent must be between 0.1 and 10")
    if trading.trading_interval_seconds <= 0:
        raise ConfigurationError("trading interval must be positive")
    if trading.kline_limit <= 0:
        raise ConfigurationError("kline limit must be positive")

    if trading.enable_paper_trading:
        return
    if not settings.exchange.api_key:
        raise ConfigurationError("exchange API key is required")
    if not settings.exchange.secret_key:
        raise ConfigurationError("exchange secret key is required")
    if not settings.database.host:
        raise ConfigurationError("database host is required")


def load_settings(source: Any = None) -> Settings:
    """Build validated Settings from the global config, a Config object or a plain dict."""
    if source is None:
        from config import config as source

    exchange_raw = _section(source, 'exchange')
    risk_raw = _section(source, 'risk')
    db_raw = _section(source, 'database')
    logger_raw = _section(source, 'logger')
    monitoring_raw = _section(source, 'monitoring')

    port = monitoring_raw.get('prometheus_port')
    settings = Settings(
        exchange=ExchangeSettings(
            name=str(exchange_raw.get('name', 'binance')),
            api_key=_secret(exchange_raw.get('api_key')),
            secret_key=_secret(exchange_raw.get('secret_key')),
            testnet=_as_bool(exchange_raw.get('testnet', True)),
            base_url=str(exchange_raw.get('base_url') or ''),
        ),
        trading=_build_trading(_section(source, 'trading')),
        risk=RiskSettings(
            max_order_value=_number(risk_raw, 'max_order_value', 0.0, float),
            max_open_positions=_number(risk_raw, 'max_open_positions', 0, int),
            max_drawdown=_number(risk_raw, 'max_drawdown', 10.0, float),
            var_limit=_number(risk_raw, 'var_limit', 0.05, float),
            max_exposure=_number(risk_raw, 'max_exposure', 0.0, float),
        ),
        database=DatabaseSettings(
            host=_secret(db_raw.get('host')),
            port=_number(db_raw, 'port', 5432, int),
            database=str(db_raw.get('database', 'trading_bot')),
            user=_secret(db_raw.get('user')),
            password=_secret(db_raw.get('password')),
            min_pool_size=_number(db_raw, 'min_pool_size', 2, int),
            max_pool_size=_number(db_raw, 'max_pool_size', 10, int),
        ),
        log_level=str(logger_raw.get('level', 'info')),
        log_format=logger_raw.get('format'),
        prometheus_port=int(port) if port else None,
        alert_webhook=_secret(monitoring_raw.get('alert_webhook')),
    )
    validate_settings(settings)
    return settings
