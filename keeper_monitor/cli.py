from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

import httpx
import structlog

from .alerts import AlertDispatcher
from .config import load_config
from .errors import ChainReadError, ConfigurationError
from .logging_setup import configure_logging
from .runner import build_job_monitor
from .scheduler import MonitorScheduler

logger = structlog.get_logger(__name__)


async def _notify_config_error(exc: ConfigurationError) -> None:
    # The config could not be loaded, so fall back to the raw webhook variable if present.
    webhook_url = os.getenv("DISCORD_WEBHOOK_URL", "").strip()
    if not webhook_url or not exc.missing:
        return
    async with httpx.AsyncClient() as client:
        try:
            await AlertDispatcher(client, webhook_url).send_config_error_alert(exc.missing)
        except Exception as alert_exc:
            logger.error("Failed to send config error alert", error=str(alert_exc))


async def _run(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        configure_logging(args.log_level or os.getenv("LOG_LEVEL", "INFO"))
        logger.error("Configuration invalid", error=str(exc), missing=exc.missing)
        await _notify_config_error(exc)
        return 2

    configure_logging(args.log_level or config.log_level)
    logger.info("Configuration loaded", **config.redacted())
    monitor = build_job_monitor(config)
    try:
        if args.test_alert:
            ok = await monitor.dispatcher.test_connection()
            return 0 if ok else 1

        if args.once:
            result = await monitor.run_once()
            print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
            return 0 if result.success else 1

        try:
            await monitor.verify_registry()
        except (ConfigurationError, ChainReadError) as exc:
            logger.error("Registry check failed", error=str(exc))
            return 2
        await MonitorScheduler(monitor).run_forever()
        return 0
    finally:
        await monitor.aclose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Keeper job staleness monitor")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: $KEEPER_MONITOR_CONFIG)")
    parser.add_argument("--once", action="store_true", help="Run one check cycle, print the result and exit")
    parser.add_argument("--test-alert", action="store_true", help="Send a webhook connection test and exit")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ...); defaults to the configured log_level",
    )
    args = parser.parse_args()

    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
