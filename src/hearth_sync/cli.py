from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import orjson

from .config import get_settings
from .errors import HearthSyncError
from .logging import get_logger, setup_logging
from .service import SyncService

logger = get_logger("hearth_sync.cli")


def parse_time_bound(value: str) -> timedelta:
    """Parse a lookback such as ``12h``, ``5d``, ``30m`` or ``3600s``."""

    if not value:
        raise ValueError("Time bound cannot be empty")

    unit = value[-1]
    try:
        amount = float(value[:-1])
    except ValueError:
        raise ValueError(f"Invalid time bound format: {value}. Expected format like '12h' or '5d'")

    if amount <= 0:
        raise ValueError(f"Time bound must be positive: {value}")

    units = {"d": "days", "h": "hours", "m": "minutes", "s": "seconds"}
    if unit not in units:
        raise ValueError(f"Invalid time unit '{unit}'. Supported units: d, h, m, s")
    return timedelta(**{units[unit]: amount})


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync iMessage conversations to Hearth")
    parser.add_argument(
        "--check-access",
        action="store_true",
        help="Report whether chat.db is readable (Full Disk Access) and exit",
    )
    parser.add_argument(
        "--drain",
        action="store_true",
        help="Repeat sync cycles until the local backlog is fully pushed",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum messages per sync batch",
    )
    parser.add_argument(
        "--lookback",
        type=str,
        help=(
            "Only used on a first sync, when the server has no cursor yet. "
            "Examples: '12h', '5d', '30m', '3600s'."
        ),
    )
    parser.add_argument(
        "--backfill-contacts",
        action="store_true",
        help="Send AddressBook names for every known handle after syncing",
    )
    parser.add_argument(
        "--upload-images",
        action="store_true",
        help="Upload AddressBook avatars for every known handle after syncing",
    )
    parser.add_argument(
        "--sign-out",
        action="store_true",
        help="Delete the stored session and exit",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default from HEARTH_LOG_LEVEL)")
    return parser.parse_args(argv)


def _print(payload: object) -> None:
    print(orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode())


async def run(args: argparse.Namespace) -> int:
    service = SyncService(get_settings())
    try:
        if args.check_access:
            status = await service.check_access()
            _print(status)
            return 0 if status["hasAccess"] else 1

        if args.sign_out:
            _print(await service.sign_out())
            return 0

        if not await service.start():
            logger.error("not_signed_in")
            return 2

        since_date = None
        if args.lookback:
            since_date = datetime.now(timezone.utc) - parse_time_bound(args.lookback)

        orchestrator = service.orchestrator
        try:
            if args.drain:
                reports = await orchestrator.drain(args.limit, since_date)
            else:
                reports = [await orchestrator.run_cycle(args.limit, since_date)]
        except HearthSyncError as exc:
            logger.error("sync_cycle_failed", error=str(exc))
            return 1

        for report in reports:
            logger.info(
                "sync_report",
                total_messages=report.total_messages,
                handles=len(report.handles),
                last_message_id=report.last_message_id,
            )

        if args.backfill_contacts:
            _print(await service.backfill_contact_info())
        if args.upload_images:
            _print(await service.upload_handle_images())
        return 0
    finally:
        await service.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level or get_settings().log_level)
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
