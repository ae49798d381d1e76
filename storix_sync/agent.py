"""Command line entry point running the sync scheduler."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from aiohttp import ClientSession

from .config import SyncConfig
from .const import (
    CONF_PENDING_PATH,
    CONF_REQUEST_TIMEOUT,
    CONF_SCRIPT_ID,
    CONF_SCRIPT_URL,
    CONF_SYNC_INTERVAL,
    DEFAULT_PENDING_PATH,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SYNC_INTERVAL,
)
from .errors import ConfigurationError
from .service import SyncService
from .transport import JsonpTransport

_LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Storix spreadsheet sync agent")
    endpoint = parser.add_mutually_exclusive_group(required=True)
    endpoint.add_argument("--script-url", help="Full Apps Script endpoint URL")
    endpoint.add_argument("--script-id", help="Apps Script deployment id")
    parser.add_argument("--interval", type=int, default=DEFAULT_SYNC_INTERVAL, help="Poll interval in seconds")
    parser.add_argument(
        "--timeout", type=float, default=DEFAULT_REQUEST_TIMEOUT, help="Per-request timeout in seconds"
    )
    parser.add_argument(
        "--pending-db", default=DEFAULT_PENDING_PATH, help="SQLite path for queued writes (default: in memory)"
    )
    parser.add_argument("--check", action="store_true", help="Test the endpoint connection and exit")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> SyncConfig:
    return SyncConfig.from_options(
        {
            CONF_SCRIPT_URL: args.script_url,
            CONF_SCRIPT_ID: args.script_id,
            CONF_SYNC_INTERVAL: args.interval,
            CONF_REQUEST_TIMEOUT: args.timeout,
            CONF_PENDING_PATH: args.pending_db,
        }
    )


async def check_connection(config: SyncConfig) -> bool:
    async with ClientSession() as session:
        transport = JsonpTransport(
            session, config.script_url, callback_name=config.callback_name, timeout=config.request_timeout
        )
        result = await transport.probe()
        await transport.async_close()
    print(json.dumps(result, indent=2))
    return bool(result["success"])


async def main_async(args: argparse.Namespace) -> int:
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))
    config = build_config(args)
    if args.check:
        return 0 if await check_connection(config) else 1
    async with SyncService(config) as service:
        _LOGGER.info("Starting sync loop against %s every %ss", config.script_url, config.interval)
        try:
            await asyncio.Event().wait()
        finally:
            _LOGGER.info("Sync status at shutdown: %s", service.status())
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(main_async(args))
    except ConfigurationError as err:
        print(f"error: {err}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        _LOGGER.info("Sync agent stopped")
        return 0


if __name__ == "__main__":
    sys.exit(main())
