"""Bot configuration: strategies, risk limits, execution settings and watchlist.

A ``BotConfiguration`` is immutable for the lifetime of a session.  It can be
built from the YAML file on disk (headless runs) or from the JSON body posted
to the control surface; both camelCase and snake_case keys are accepted.

All position/loss/drawdown limits are percentages of account equity
(``10`` means 10%).  Confidences are fractions in [0, 1].
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

import yaml
from loguru import logger


class ConfigurationError(ValueError):
    """Raised when a bot configuration is invalid. Never retried."""


MODES = ("CONSERVATIVE", "BALANCED", "AGGRESSIVE")

DEFAULT_WATCHLIST: tuple[str, ...] = (
    "AAPL", "MSFT", "GOOGL", "AMZN", "META", "NVDA", "TSLA",
    "SPY", "QQQ", "IWM",
    "AMD", "INTC", "NFLX", "ADBE", "CRM", "ORCL",
    "SNOW", "PLTR", "RBLX", "COIN", "RIVN",
    "WMT", "HD", "NKE", "SBUX", "MCD",
)


@dataclass(frozen=True)
class StrategyConfig:
    id: str
    name: str
    enabled: bool = True
    weight: float = 1.0
    parameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RiskManagementConfig:
    max_position_size: float = 10.0      # % of equity per position
    max_daily_loss: float = 2.0          # % of day-start equity
    max_drawdown: float = 15.0           # % below peak equity
    min_confidence: float = 0.70
    stop_loss_percent: float = 2.0
    take_profit_percent: float = 4.0
    correlation_limit: float = 0.7
    min_risk_reward_ratio: float = 1.5


@dataclass(frozen=True)
class ExecutionSettings:
    auto_execute: bool = False
    min_confidence_for_order: float = 0.75
    max_orders_per_day: int = 20
    order_size_percent: float = 2.0
    slippage_tolerance: float = 0.5
    market_hours_only: bool = True
    cooldown_minutes: int = 5


@dataclass(frozen=True)
class BotConfiguration:
    mode: str
    strategies: tuple[StrategyConfig, ...]
    risk_management: RiskManagementConfig
    execution_settings: ExecutionSettings
    watchlist: tuple[str, ...] = DEFAULT_WATCHLIST

    @property
    def enabled_strategies(self) -> tuple[StrategyConfig, ...]:
        return tuple(s for s in self.strategies if s.enabled)

    def summary(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "strategiesEnabled": len(self.enabled_strategies),
            "strategies": [s.id for s in self.enabled_strategies],
            "autoExecute": self.execution_settings.auto_execute,
            "marketHoursOnly": self.execution_settings.market_hours_only,
            "minConfidenceForOrder": self.execution_settings.min_confidence_for_order,
            "maxOrdersPerDay": self.execution_settings.max_orders_per_day,
            "watchlistSize": len(self.watchlist),
        }


# ── Mode presets ──────────────────────────────────────────────────

MODE_PRESETS: dict[str, tuple[RiskManagementConfig, ExecutionSettings]] = {
    "CONSERVATIVE": (
        RiskManagementConfig(
            max_position_size=5.0,
            max_daily_loss=1.0,
            max_drawdown=8.0,
            min_confidence=0.80,
            stop_loss_percent=1.5,
            take_profit_percent=3.0,
            correlation_limit=0.6,
            min_risk_reward_ratio=2.0,
        ),
        ExecutionSettings(
            min_confidence_for_order=0.85,
            max_orders_per_day=10,
            order_size_percent=1.0,
            slippage_tolerance=0.25,
            cooldown_minutes=15,
        ),
    ),
    "BALANCED": (RiskManagementConfig(), ExecutionSettings()),
    "AGGRESSIVE": (
        RiskManagementConfig(
            max_position_size=20.0,
            max_daily_loss=4.0,
            max_drawdown=25.0,
            min_confidence=0.60,
            stop_loss_percent=3.0,
            take_profit_percent=6.0,
            correlation_limit=0.85,
            min_risk_reward_ratio=1.5,
        ),
        ExecutionSettings(
            min_confidence_for_order=0.65,
            max_orders_per_day=40,
            order_size_percent=4.0,
            slippage_tolerance=1.0,
            cooldown_minutes=2,
        ),
    ),
}

DEFAULT_STRATEGIES: tuple[StrategyConfig, ...] = (
    StrategyConfig(id="enhanced_mean_reversion", name="Enhanced Mean Reversion", weight=0.4),
    StrategyConfig(id="momentum", name="Momentum Trading", weight=0.3),
    StrategyConfig(id="breakout", name="Breakout Strategy", weight=0.3),
)


def default_bot_config(mode: str = "BALANCED") -> BotConfiguration:
    mode = mode.upper()
    if mode not in MODE_PRESETS:
        raise ConfigurationError(f"Unknown mode '{mode}'. Valid modes: {', '.join(MODES)}")
    risk, execution = MODE_PRESETS[mode]
    return BotConfiguration(
        mode=mode,
        strategies=DEFAULT_STRATEGIES,
        risk_management=risk,
        execution_settings=execution,
        watchlist=DEFAULT_WATCHLIST,
    )


# ── Parsing ───────────────────────────────────────────────────────

_RISK_KEYS = {
    "maxPositionSize": "max_position_size",
    "maxDailyLoss": "max_daily_loss",
    "maxDrawdown": "max_drawdown",
    "minConfidence": "min_confidence",
    "stopLossPercent": "stop_loss_percent",
    "takeProfitPercent": "take_profit_percent",
    "correlationLimit": "correlation_limit",
    "minRiskRewardRatio": "min_risk_reward_ratio",
}

_EXECUTION_KEYS = {
    "autoExecute": "auto_execute",
    "minConfidenceForOrder": "min_confidence_for_order",
    "maxOrdersPerDay": "max_orders_per_day",
    "orderSizePercent": "order_size_percent",
    "slippageTolerance": "slippage_tolerance",
    "marketHoursOnly": "market_hours_only",
    "cooldownMinutes": "cooldown_minutes",
}


def _pick(raw: Mapping[str, Any], camel: str, snake: str) -> Any:
    if camel in raw:
        return raw[camel]
    return raw.get(snake)


def _as_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc


def _as_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false", "1", "0", "yes", "no"}:
        return value.strip().lower() in {"true", "1", "yes"}
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _parse_block(raw: Any, keys: dict[str, str], base: Any, block_name: str) -> Any:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{block_name} must be an object")
    changes: dict[str, Any] = {}
    for camel, snake in keys.items():
        value = _pick(raw, camel, snake)
        if value is None:
            continue
        current = getattr(base, snake)
        if isinstance(current, bool):
            changes[snake] = _as_bool(value, camel)
        elif isinstance(current, int):
            number = _as_float(value, camel)
            if number != int(number):
                raise ConfigurationError(f"{camel} must be a whole number, got {value!r}")
            changes[snake] = int(number)
        else:
            changes[snake] = _as_float(value, camel)
    return replace(base, **changes)


def _parse_strategies(raw: Any) -> tuple[StrategyConfig, ...]:
    if not isinstance(raw, (list, tuple)):
        raise ConfigurationError("strategies must be a list")
    parsed: list[StrategyConfig] = []
    seen: set[str] = set()
    for idx, item in enumerate(raw):
        if not isinstance(item, Mapping):
            raise ConfigurationError(f"strategies[{idx}] must be an object")
        strategy_id = str(item.get("id") or "").strip()
        if not strategy_id:
            raise ConfigurationError(f"strategies[{idx}] is missing an id")
        if strategy_id in seen:
            raise ConfigurationError(f"Duplicate strategy id '{strategy_id}'")
        seen.add(strategy_id)
        weight = _as_float(item.get("weight", 1.0), f"strategies[{idx}].weight")
        if weight < 0:
            raise ConfigurationError(f"strategies[{idx}].weight must be >= 0")
        parameters = item.get("parameters") or {}
        if not isinstance(parameters, Mapping):
            raise ConfigurationError(f"strategies[{idx}].parameters must be an object")
        parsed.append(
            StrategyConfig(
                id=strategy_id,
                name=str(item.get("name") or strategy_id),
                enabled=_as_bool(item.get("enabled", True), f"strategies[{idx}].enabled"),
                weight=weight,
                parameters=dict(parameters),
            )
        )
    return tuple(parsed)


def _parse_watchlist(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return DEFAULT_WATCHLIST
    if not isinstance(raw, (list, tuple, set)):
        raise ConfigurationError("watchlist must be a list of symbols")
    symbols: list[str] = []
    for value in raw:
        symbol = str(value or "").strip().upper()
        if symbol and symbol not in symbols:
            symbols.append(symbol)
    if not symbols:
        raise ConfigurationError("watchlist must contain at least one symbol")
    return tuple(symbols)


def _validate(config: BotConfiguration) -> None:
    risk = config.risk_management
    execution = config.execution_settings
    for name in ("min_confidence", "correlation_limit"):
        value = getattr(risk, name)
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError(f"riskManagement.{name} must be between 0 and 1, got {value}")
    for name in ("max_position_size", "max_daily_loss", "max_drawdown", "stop_loss_percent", "take_profit_percent"):
        value = getattr(risk, name)
        if not 0.0 < value <= 100.0:
            raise ConfigurationError(f"riskManagement.{name} must be in (0, 100], got {value}")
    if risk.min_risk_reward_ratio < 0:
        raise ConfigurationError("riskManagement.min_risk_reward_ratio must be >= 0")
    if not 0.0 <= execution.min_confidence_for_order <= 1.0:
        raise ConfigurationError("executionSettings.min_confidence_for_order must be between 0 and 1")
    if execution.max_orders_per_day < 0:
        raise ConfigurationError("executionSettings.max_orders_per_day must be >= 0")
    if not 0.0 < execution.order_size_percent <= 100.0:
        raise ConfigurationError("executionSettings.order_size_percent must be in (0, 100]")
    if execution.cooldown_minutes < 0:
        raise ConfigurationError("executionSettings.cooldown_minutes must be >= 0")


def parse_bot_config(raw: Mapping[str, Any] | None) -> BotConfiguration:
    """Build a validated ``BotConfiguration`` from a plain mapping.

    ``None`` yields the default BALANCED configuration.  A provided mapping
    must carry a strategies list with at least one enabled entry plus the
    risk-management and execution blocks; fields missing inside a block fall
    back to the preset for ``mode``.
    """
    if raw is None:
        return default_bot_config()
    if not isinstance(raw, Mapping):
        raise ConfigurationError("Bot configuration must be an object")

    mode = str(raw.get("mode") or "BALANCED").upper()
    if mode not in MODE_PRESETS:
        raise ConfigurationError(f"Unknown mode '{mode}'. Valid modes: {', '.join(MODES)}")
    base_risk, base_execution = MODE_PRESETS[mode]

    strategies_raw = raw.get("strategies")
    if strategies_raw is None:
        raise ConfigurationError("Invalid bot configuration: strategies are required")
    strategies = _parse_strategies(strategies_raw)
    if not any(s.enabled for s in strategies):
        raise ConfigurationError("Invalid bot configuration: at least one strategy must be enabled")

    risk_raw = _pick(raw, "riskManagement", "risk_management")
    if risk_raw is None:
        raise ConfigurationError("Invalid bot configuration: riskManagement is required")
    execution_raw = _pick(raw, "executionSettings", "execution_settings")
    if execution_raw is None:
        raise ConfigurationError("Invalid bot configuration: executionSettings is required")

    # cooldown lived under scheduleSettings in older payloads
    schedule_raw = _pick(raw, "scheduleSettings", "schedule_settings")
    if isinstance(schedule_raw, Mapping) and isinstance(execution_raw, Mapping):
        cooldown = _pick(schedule_raw, "cooldownMinutes", "cooldown_minutes")
        if cooldown is not None and _pick(execution_raw, "cooldownMinutes", "cooldown_minutes") is None:
            execution_raw = {**execution_raw, "cooldownMinutes": cooldown}

    config = BotConfiguration(
        mode=mode,
        strategies=strategies,
        risk_management=_parse_block(risk_raw, _RISK_KEYS, base_risk, "riskManagement"),
        execution_settings=_parse_block(execution_raw, _EXECUTION_KEYS, base_execution, "executionSettings"),
        watchlist=_parse_watchlist(raw.get("watchlist")),
    )
    _validate(config)
    return config


def load_bot_config(file_path: Path = Path("config/bot_config.yaml")) -> BotConfiguration:
    if not file_path.exists():
        logger.info("Bot config {} not found, using BALANCED defaults", file_path)
        return default_bot_config()

    try:
        raw = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Could not parse {file_path}: {exc}") from exc
    return parse_bot_config(raw)
