#!/usr/bin/env python3
"""Command-line entry point for the weather alert service.

Usage:
    # Run every subscription's scheduler until SIGINT/SIGTERM (default command)
    cron-weather run

    # Subscribe a chat (takes effect on the next start)
    cron-weather add-subscription 123456789 --interval 10m --start-at 07:30 --lat 55.75 --lon 37.62

    # Unsubscribe a chat
    cron-weather remove-subscription 123456789

    # Show stored subscriptions
    cron-weather list-subscriptions
"""

import argparse
import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog
from pydantic import ValidationError

from cron_weather import __version__
from cron_weather.app import Application
from cron_weather.core.config import Settings, require_config, settings
from cron_weather.core.database import dispose_engine, get_session_factory, init_database
from cron_weather.core.logging import configure_logging, resolve_logging_options
from cron_weather.scheduler.cron_service import InvalidStartTimeError, compute_first_run
from cron_weather.schemas.subscription import Subscription
from cron_weather.services.subscription_service import SubscriptionRepository

logger = structlog.get_logger(__name__)

RepositoryCommand = Callable[[argparse.Namespace, SubscriptionRepository], Awaitable[int]]


async def cmd_run(args: argparse.Namespace, app_settings: Settings) -> int:
    """
    Start all schedulers and block until a termination signal arrives.

    Args:
        args: Parsed command-line arguments
        app_settings: Loaded settings

    Returns:
        Exit code (0 for success, 1 for error)
    """
    started_at = datetime.now(UTC)
    logger.info("start_weather_cron_job", version=__version__)

    try:
        require_config("WEATHER_API_KEY", "TG_TOKEN")
    except ValueError as e:
        logger.error("configuration_invalid", error=str(e))
        return 1

    app = await Application.build(app_settings, started_at)
    app.run()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def on_signal(sig: signal.Signals) -> None:
        logger.info("signal_received", signal=sig.name)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, on_signal, sig)

    await stop.wait()
    await app.shutdown(app_settings.SHUTDOWN_TIMEOUT)
    logger.info("cron_service_stop")
    return 0


async def cmd_add_subscription(args: argparse.Namespace, repository: SubscriptionRepository) -> int:
    """
    Store (or replace) the subscription for a chat.

    Args:
        args: Parsed command-line arguments
        repository: Subscription storage

    Returns:
        Exit code (0 for success, 1 for error)
    """
    try:
        subscription = Subscription(
            chat_id=args.chat_id,
            interval=args.interval or settings.INTERVAL,
            start_at=args.start_at,
            lat=settings.WEATHER_LAT if args.lat is None else args.lat,
            lon=settings.WEATHER_LON if args.lon is None else args.lon,
        )
        if subscription.start_at:
            compute_first_run(subscription.start_at, datetime.now(UTC))
    except (ValidationError, InvalidStartTimeError) as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        return 1

    await repository.add(subscription)

    print("✅ Subscription saved")
    print(f"   Chat ID:   {subscription.chat_id}")
    print(f"   Interval:  {subscription.interval}")
    print(f"   Start at:  {subscription.start_at or '-'}")
    print(f"   Location:  {subscription.lat:.4f}, {subscription.lon:.4f}")
    print()
    print("💡 Restart the service to schedule the new subscription")
    return 0


async def cmd_remove_subscription(args: argparse.Namespace, repository: SubscriptionRepository) -> int:
    """
    Delete the subscription for a chat.

    Returns:
        Exit code (0 for success, 1 if the chat had no subscription)
    """
    if not await repository.remove(args.chat_id):
        print(f"❌ Error: no subscription for chat {args.chat_id}", file=sys.stderr)
        return 1

    print(f"✅ Removed subscription for chat {args.chat_id}")
    return 0


async def cmd_list_subscriptions(args: argparse.Namespace, repository: SubscriptionRepository) -> int:
    """List stored subscriptions."""
    subscriptions = await repository.get_all()

    if not subscriptions:
        print("No subscriptions found")
        return 0

    print(f"Found {len(subscriptions)} subscription(s):\n")
    print(f"{'Chat ID':<16} {'Interval':<12} {'Start at':<9} Location")
    print("-" * 60)

    for subscription in subscriptions:
        print(
            f"{subscription.chat_id:<16} {subscription.interval!s:<12} "
            f"{subscription.start_at or '-':<9} {subscription.lat:.4f}, {subscription.lon:.4f}"
        )

    return 0


async def run_with_repository(handler: RepositoryCommand, args: argparse.Namespace) -> int:
    """Run a subscription-management command against the configured database."""
    try:
        await init_database()
        return await handler(args, SubscriptionRepository(get_session_factory()))
    except Exception as e:
        print(f"❌ Unexpected error: {e}", file=sys.stderr)
        return 1
    finally:
        await dispose_engine()


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all commands."""
    parser = argparse.ArgumentParser(
        prog="cron-weather",
        description="Weather alert delivery service for Telegram chats",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the service (default command)
  cron-weather run

  # Subscribe a chat, first run at 07:30 then every 10 minutes
  cron-weather add-subscription 123456789 --interval 10m --start-at 07:30

  # Unsubscribe a chat
  cron-weather remove-subscription 123456789
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser(
        "run",
        help="Run all subscription schedulers",
        description="Start one scheduler per stored subscription and run until SIGINT/SIGTERM.",
    )

    add_parser = subparsers.add_parser(
        "add-subscription",
        help="Add or replace a chat subscription",
        description="Store a subscription. Missing values fall back to INTERVAL, WEATHER_LAT and WEATHER_LON.",
    )
    add_parser.add_argument("chat_id", type=int, help="Telegram chat ID")
    add_parser.add_argument("--interval", default=None, help="Polling interval, e.g. 30s, 10m, 1h (default: INTERVAL)")
    add_parser.add_argument("--start-at", default="", help="Time of the first run, HH:MM (default: start at once)")
    add_parser.add_argument("--lat", type=float, default=None, help="Latitude (default: WEATHER_LAT)")
    add_parser.add_argument("--lon", type=float, default=None, help="Longitude (default: WEATHER_LON)")

    remove_parser = subparsers.add_parser(
        "remove-subscription",
        help="Remove a chat subscription",
        description="Delete the subscription of a chat. Delivery records are kept.",
    )
    remove_parser.add_argument("chat_id", type=int, help="Telegram chat ID")

    subparsers.add_parser(
        "list-subscriptions",
        help="List stored subscriptions",
        description="Display every stored subscription.",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for the CLI tool.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    args = build_parser().parse_args(argv)
    command = args.command or "run"

    log_level, json_logs = resolve_logging_options(settings.ENV, settings.LOG_LEVEL)
    configure_logging(log_level=log_level, json_logs=json_logs)

    if command == "run":
        return asyncio.run(cmd_run(args, settings))

    command_handlers: dict[str, RepositoryCommand] = {
        "add-subscription": cmd_add_subscription,
        "remove-subscription": cmd_remove_subscription,
        "list-subscriptions": cmd_list_subscriptions,
    }

    if handler := command_handlers.get(command):
        return asyncio.run(run_with_repository(handler, args))

    print(f"❌ Unknown command: {command}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
