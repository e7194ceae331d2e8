from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger

from .broker import BrokerClient, PaperBroker, RobinhoodBroker
from .config import load_bot_config
from .gateway import RateLimitedGateway
from .health import HealthThresholds
from .market_data import YahooMarketData
from .session import SessionController
from .settings import Settings
from .storage import BotStorage
from .strategies import STRATEGY_REGISTRY


@dataclass
class ServiceRegistry:
    """Process-wide services, built once and handed to the API and the CLI."""

    settings: Settings
    storage: BotStorage
    broker: BrokerClient
    gateway: RateLimitedGateway
    controller: SessionController

    def close(self) -> None:
        self.controller.stop()
        self.gateway.close()
        logger.info("Services shut down")


def build_broker(settings: Settings) -> BrokerClient:
    robinhood = RobinhoodBroker(
        username=settings.robinhood_username,
        password=settings.robinhood_password,
        mfa_code=settings.robinhood_mfa_code,
    )
    if settings.bot_mode == "live":
        return robinhood
    if robinhood.has_credentials:
        logger.info("Paper broker using Robinhood market data")
        return PaperBroker(settings.paper_starting_equity, market_data=robinhood)
    logger.info("Paper broker using Yahoo Finance market data")
    return PaperBroker(settings.paper_starting_equity, market_data=YahooMarketData())


def build_services(settings: Settings, broker: BrokerClient | None = None, **controller_overrides: Any) -> ServiceRegistry:
    storage = BotStorage(settings.db_path)
    storage.initialize()

    broker = broker or build_broker(settings)
    gateway = RateLimitedGateway(
        max_requests=settings.gateway_max_requests,
        window_seconds=settings.gateway_window_seconds,
        max_retries=settings.gateway_max_retries,
        backoff_base_seconds=settings.gateway_backoff_base_seconds,
    )
    controller_kwargs = dict(
        registry=STRATEGY_REGISTRY,
        default_config=load_bot_config(settings.bot_config_path),
        health_thresholds=HealthThresholds(
            error_rate_warning=settings.health_error_rate_warning,
            error_rate_error=settings.health_error_rate_error,
            stale_warning_seconds=settings.health_stale_warning_seconds,
            stale_error_seconds=settings.health_stale_error_seconds,
        ),
        scan_interval_seconds=settings.scan_interval_seconds,
        max_symbols_per_scan=settings.max_symbols_per_scan,
        consensus_max_workers=settings.consensus_max_workers,
        producer_timeout_seconds=settings.producer_timeout_seconds,
        candle_interval=settings.candle_interval,
        candle_span=settings.candle_span,
        timezone_name=settings.timezone,
    )
    controller_kwargs.update(controller_overrides)
    controller = SessionController(storage, broker, gateway, **controller_kwargs)

    logger.info(
        "Services ready: mode={} broker={} db={} gateway={}/{}s",
        settings.bot_mode, type(broker).__name__, settings.db_path,
        settings.gateway_max_requests, settings.gateway_window_seconds,
    )
    return ServiceRegistry(
        settings=settings,
        storage=storage,
        broker=broker,
        gateway=gateway,
        controller=controller,
    )
