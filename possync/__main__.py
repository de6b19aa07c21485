"""
Command line entry point.

Usage:
    python -m possync sync                 # full history back to POS_EARLIEST_YEAR
    python -m possync sync --months 3      # current month and the two before it
    python -m possync serve                # sync, then keep periodic jobs running
    python -m possync status
    python -m possync show this_month 2024-03-15
    python -m possync show today --refresh
    python -m possync clear --date 2024-03
"""
import argparse
import asyncio
import json
import sys
from datetime import date
from typing import List, Optional

from possync.cache_store import SalesCacheStore
from possync.client import PosApiClient
from possync.config import ConfigurationError, config, validate_config
from possync.dashboard import DashboardService
from possync.date_keys import ALL_MONTHS, PeriodKind, parse_day_key
from possync.events import SyncEvent, events
from possync.exceptions import ValidationError
from possync.models import ItemsTopic
from possync.observability import get_logger, setup_logging
from possync.scheduler import SyncJobScheduler
from possync.sync_service import LAST_FULL_SYNC_KEY, BackgroundSyncService

logger = get_logger(__name__)


def _months(value: str) -> int:
    if value.strip().lower() == "all":
        return ALL_MONTHS
    try:
        months = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a number or 'all', got {value!r}")
    if months <= 0:
        raise argparse.ArgumentTypeError("months must be positive")
    return months


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="possync", description="Offline-first POS sales cache")
    parser.add_argument("--db", help="Cache database path (default: POS_CACHE_PATH)")
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Run one background sync to completion")
    sync.add_argument("--months", type=_months, default=ALL_MONTHS, help="Number of months or 'all' (default)")

    serve = commands.add_parser("serve", help="Sync, then keep periodic refresh jobs running")
    serve.add_argument("--months", type=_months, default=ALL_MONTHS)

    commands.add_parser("status", help="Show cache and sync status")

    show = commands.add_parser("show", help="Show cached data for a period")
    show.add_argument("period", choices=[p.value for p in PeriodKind])
    show.add_argument("date", nargs="?", help="Reference day YYYY-MM-DD (default: today)")
    show.add_argument("--refresh", action="store_true", help="Fetch from the backend first")

    clear = commands.add_parser("clear", help="Remove cached data")
    clear.add_argument("--date", dest="date_key", help="Only entries with this date key")
    clear.add_argument("--older-than", type=int, metavar="DAYS", help="Only entries older than DAYS days")

    return parser


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _progress(data: dict) -> None:
    print(f"  {data['cursor']}/{data['total']} {data['unit']} ({data['outcome']})")


async def cmd_sync(service: BackgroundSyncService, months: int) -> int:
    events.subscribe(SyncEvent.SYNC_PROGRESS, _progress)
    await service.start(months_back=months)
    await service.wait()
    _print_json(service.get_status())
    return 0 if service.is_complete() else 1


async def cmd_serve(service: BackgroundSyncService, store: SalesCacheStore, months: int) -> int:
    scheduler = SyncJobScheduler(service, store)
    await service.start(months_back=months)
    await scheduler.start()
    logger.info("Serving; press Ctrl+C to stop")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown()
    return 0


async def cmd_status(store: SalesCacheStore) -> int:
    months_cached, months = await store.sync_progress()
    stock = await store.get_item(ItemsTopic.ITEMS_STOCK)
    _print_json({
        "db_path": str(store.db_path),
        "entries": await store.entry_count(),
        "months_cached": months_cached,
        "months": months,
        "has_current_month": await store.has_current_month_data(),
        "last_full_sync_ms": await store.get_metadata(LAST_FULL_SYNC_KEY),
        "stock_snapshot_age_ms": store.now() - stock.stored_at if stock else None,
    })
    return 0


async def cmd_show(dashboard: DashboardService, period: str, day: Optional[str], refresh: bool) -> int:
    reference = parse_day_key(day) if day else date.today()
    snapshot = await dashboard.set_period(period, reference)
    if refresh:
        snapshot = await dashboard.refresh()
    _print_json(snapshot.to_dict())
    return 0 if snapshot.has_data else 1


async def cmd_clear(store: SalesCacheStore, date_key: Optional[str], older_than: Optional[int]) -> int:
    if date_key:
        removed = await store.clear(date_key)
        print(f"Removed {removed} entries for {date_key}")
    elif older_than is not None:
        removed = await store.clear_older_than(older_than)
        print(f"Removed {removed} entries older than {older_than} days")
    else:
        await store.clear_all()
        print("Cache cleared")
    return 0


async def run(args: argparse.Namespace) -> int:
    needs_backend = args.command in ("sync", "serve") or (args.command == "show" and args.refresh)
    if needs_backend:
        validate_config()

    store = SalesCacheStore(db_path=args.db) if args.db else SalesCacheStore()
    client = PosApiClient()
    service = BackgroundSyncService(store, client)
    try:
        await store.connect()
        if args.command == "sync":
            return await cmd_sync(service, args.months)
        if args.command == "serve":
            return await cmd_serve(service, store, args.months)
        if args.command == "status":
            return await cmd_status(store)
        if args.command == "show":
            return await cmd_show(DashboardService(store, service), args.period, args.date, args.refresh)
        return await cmd_clear(store, args.date_key, args.older_than)
    finally:
        await service.close()
        await client.close()
        await store.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(config.logging.level, config.logging.json_format)
    try:
        return asyncio.run(run(args))
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        return 2
    except ValidationError as e:
        print(f"Invalid input: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
