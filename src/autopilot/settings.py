from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    bot_mode: Literal["paper", "live"] = "paper"
    live_mode_unlock: bool = False
    require_explicit_live_confirm: bool = True

    robinhood_username: str = ""
    robinhood_password: str = ""
    robinhood_mfa_code: str = ""

    timezone: str = "America/New_York"
    scan_interval_seconds: int = Field(default=60, ge=5, le=3600)
    max_symbols_per_scan: int = Field(default=10, ge=1, le=100)
    consensus_max_workers: int = Field(default=4, ge=1, le=32)
    producer_timeout_seconds: float = Field(default=10.0, ge=0.1, le=120)
    candle_interval: str = "day"
    candle_span: str = "3month"

    # Request budget shared by every brokerage call
    gateway_max_requests: int = Field(default=200, ge=1, le=10_000)
    gateway_window_seconds: float = Field(default=60.0, ge=0.1, le=3600)
    gateway_max_retries: int = Field(default=3, ge=0, le=10)
    gateway_backoff_base_seconds: float = Field(default=1.0, ge=0.0, le=60)
    gateway_default_throttle_ms: int = Field(default=10_000, ge=0, le=3_600_000)

    health_error_rate_warning: float = Field(default=0.2, ge=0, le=1)
    health_error_rate_error: float = Field(default=0.5, ge=0, le=1)
    health_stale_warning_seconds: int = Field(default=120, ge=1, le=86_400)
    health_stale_error_seconds: int = Field(default=300, ge=1, le=86_400)

    paper_starting_equity: float = Field(default=10_000, ge=100, le=10_000_000)

    db_path: Path = Path("data/autopilot.sqlite3")
    bot_config_path: Path = Path("config/bot_config.yaml")
    log_level: str = "INFO"
    log_file: str = ""
    api_host: str = "0.0.0.0"
    api_port: int = Field(default=8501, ge=1, le=65_535)

    @model_validator(mode="after")
    def validate_live_mode(self) -> "Settings":
        if self.bot_mode == "live" and self.require_explicit_live_confirm and not self.live_mode_unlock:
            raise ValueError(
                "Live mode is blocked. Set LIVE_MODE_UNLOCK=true to explicitly permit live execution."
            )
        return self

    @model_validator(mode="after")
    def validate_health_thresholds(self) -> "Settings":
        if self.health_error_rate_warning > self.health_error_rate_error:
            raise ValueError("health_error_rate_warning must not exceed health_error_rate_error")
        if self.health_stale_warning_seconds > self.health_stale_error_seconds:
            raise ValueError("health_stale_warning_seconds must not exceed health_stale_error_seconds")
        return self


settings = Settings()
