from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from .config import ConfigurationError
from .risk import assess_trade, default_exit_levels
from .services import ServiceRegistry


class BotControlPayload(BaseModel):
    action: str
    config: dict[str, Any] | None = None


class BotConfigPayload(BaseModel):
    config: dict[str, Any] | None = None


class RateLimiterPayload(BaseModel):
    action: str
    duration: int | None = Field(default=None, ge=0, le=3_600_000)


class RiskAssessPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    symbol: str = Field(..., min_length=1)
    action: str
    quantity: float = Field(..., gt=0)
    entry_price: float = Field(..., alias="entryPrice", gt=0)
    account_balance: float = Field(..., alias="accountBalance", gt=0)
    stop_loss: float | None = Field(default=None, alias="stopLoss", ge=0)
    target_price: float | None = Field(default=None, alias="targetPrice", ge=0)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data, "timestamp": _timestamp()}


def fail(message: str, status_code: int = 400, data: Any = None) -> JSONResponse:
    content = {"success": False, "error": message, "timestamp": _timestamp()}
    if data is not None:
        content["data"] = data
    return JSONResponse(status_code=status_code, content=content)


def create_app(services: ServiceRegistry) -> FastAPI:
    app = FastAPI(title="Trading Autopilot API", version="1.0.0")
    app.state.services = services
    controller = services.controller
    gateway = services.gateway

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        services.close()

    @app.exception_handler(RequestValidationError)
    def on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ()) if part != 'body')}: {err.get('msg')}"
            for err in exc.errors()
        )
        return fail(f"Invalid request: {problems}")

    # ── Bot lifecycle ─────────────────────────────────────────────

    def start_bot(config: dict[str, Any] | None) -> Any:
        try:
            result = controller.start(config)
        except ConfigurationError as exc:
            logger.warning("Bot start rejected: {}", exc)
            return fail(str(exc))
        if not result["started"]:
            return fail(result["message"], data=result.get("session"))
        return ok(result)

    def restart_bot(config: dict[str, Any] | None) -> Any:
        try:
            return ok(controller.restart(config))
        except ConfigurationError as exc:
            logger.warning("Bot restart rejected: {}", exc)
            return fail(str(exc))

    @app.post("/bot/control")
    def post_bot_control(payload: BotControlPayload) -> Any:
        action = payload.action.lower()
        if action == "start":
            return start_bot(payload.config)
        if action == "stop":
            return ok(controller.stop())
        if action == "status":
            return ok(controller.status())
        if action == "restart":
            return restart_bot(payload.config)
        return fail("Invalid action. Use: start, stop, status, restart")

    @app.post("/bot/start")
    def post_bot_start(payload: BotConfigPayload | None = None) -> Any:
        return start_bot(payload.config if payload else None)

    @app.post("/bot/stop")
    def post_bot_stop() -> dict[str, Any]:
        return ok(controller.stop())

    @app.post("/bot/restart")
    def post_bot_restart(payload: BotConfigPayload | None = None) -> Any:
        return restart_bot(payload.config if payload else None)

    @app.get("/bot/status")
    def get_bot_status() -> dict[str, Any]:
        return ok(controller.status())

    @app.get("/bot/activity")
    def get_bot_activity(limit: int = Query(default=50, ge=1, le=500)) -> dict[str, Any]:
        return ok({
            "metrics": services.storage.get_metrics(),
            "activity": services.storage.recent_activity(limit),
            "pendingRecommendations": services.storage.pending_recommendations(limit),
        })

    # ── Rate limiter ──────────────────────────────────────────────

    @app.get("/rate-limiter")
    def get_rate_limiter() -> dict[str, Any]:
        return ok(gateway.get_stats())

    @app.post("/rate-limiter")
    def post_rate_limiter(payload: RateLimiterPayload) -> Any:
        action = payload.action.lower()
        if action == "stats":
            return ok(gateway.get_stats())
        if action == "clear":
            dropped = gateway.clear_queue()
            return ok({"message": "Rate limiter queue cleared", "dropped": dropped, "stats": gateway.get_stats()})
        if action == "throttle":
            duration = payload.duration if payload.duration is not None else services.settings.gateway_default_throttle_ms
            gateway.throttle(duration)
            return ok({"message": f"Rate limiter throttled for {duration}ms", "stats": gateway.get_stats()})
        return fail("Invalid action. Use: clear, throttle, stats")

    # ── Risk ──────────────────────────────────────────────────────

    @app.post("/risk/assess")
    def post_risk_assess(payload: RiskAssessPayload) -> Any:
        action = payload.action.upper()
        if action not in {"BUY", "SELL"}:
            return fail("action must be BUY or SELL")
        default_stop, default_target = default_exit_levels(action, payload.entry_price)
        try:
            assessment = assess_trade(
                payload.symbol,
                action,
                payload.quantity,
                payload.entry_price,
                payload.stop_loss if payload.stop_loss is not None else default_stop,
                payload.target_price if payload.target_price is not None else default_target,
                payload.account_balance,
            )
        except ValueError as exc:
            return fail(str(exc))
        return ok(assessment.to_dict())

    @app.get("/healthz")
    def get_healthz() -> dict[str, Any]:
        status = controller.status()
        return ok({
            "status": "ok",
            "botRunning": status["isRunning"],
            "health": status["health"]["status"],
            "mode": services.broker.mode,
        })

    return app
