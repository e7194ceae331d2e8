"""Command-line entry point.

Usage:
    autopilot serve                          # FastAPI control surface
    autopilot run                            # headless session until Ctrl+C
    autopilot run --config my_config.yaml    # headless with a specific config
    autopilot run --once                     # single scan, then exit
"""

from __future__ import annotations

import argparse
import json
import signal
import threading
from pathlib import Path

import uvicorn
from loguru import logger

from .api import create_app
from .config import ConfigurationError, load_bot_config
from .logging_config import configure_logging
from .services import build_services
from .settings import settings


def serve() -> None:
    services = build_services(settings)
    app = create_app(services)
    logger.info("Control API listening on {}:{}", settings.api_host, settings.api_port)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())


def run_headless(config_path: Path | None, once: bool) -> int:
    try:
        bot_config = load_bot_config(config_path or settings.bot_config_path)
    except ConfigurationError as exc:
        logger.error("Invalid bot configuration: {}", exc)
        return 2

    services = build_services(settings)
    controller = services.controller
    try:
        if once:
            controller.start(bot_config, schedule=False)
            result = controller.tick()
            print(json.dumps(result, indent=2, default=str))
            return 0 if result.get("status") != "failed" else 1

        stop_event = threading.Event()

        def _request_stop(signum: int, _frame: object) -> None:
            logger.info("Signal {} received, stopping", signum)
            stop_event.set()

        signal.signal(signal.SIGINT, _request_stop)
        signal.signal(signal.SIGTERM, _request_stop)

        started = controller.start(bot_config)
        logger.info("Autopilot running in {} mode as {}", settings.bot_mode, started["sessionId"])
        logger.info("Press Ctrl+C to stop")
        while not stop_event.wait(timeout=5):
            status = controller.status()
            logger.debug(
                "Heartbeat: scans={} skipped={} errors={} health={}",
                status["scanCount"], status["skippedScans"], status["errorCount"], status["health"]["status"],
            )
        return 0
    finally:
        services.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Autonomous trading bot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run the FastAPI control surface")

    run_parser = subparsers.add_parser("run", help="Run a headless bot session")
    run_parser.add_argument("--config", type=Path, default=None, help="Bot config YAML (default: BOT_CONFIG_PATH)")
    run_parser.add_argument("--once", action="store_true", help="Run a single scan and exit")
    args = parser.parse_args()

    configure_logging(settings.log_level, settings.log_file)

    if args.command == "serve":
        serve()
        return
    raise SystemExit(run_headless(args.config, args.once))


if __name__ == "__main__":
    main()
