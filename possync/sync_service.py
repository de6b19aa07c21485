"""
Background sync of POS sales data into the local cache.

A run walks a list of months, newest first, and for each month either
skips it (cache still fresh) or fetches the four sales metrics, folds the
daily data and writes the month rollups plus every per-day breakdown.

Features:
- Resumable: progress lives in an explicit SyncRunState cursor
- Pausable: foreground refreshes pause the run at the next unit/fetch boundary
- Failure isolation: a failed unit is logged, reported and skipped
- Observability: one correlation ID per run, progress events on the bus
"""
import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from possync.cache_store import CacheEntry, SalesCacheStore
from possync.client import PosApiClient
from possync.config import SyncConfig, TrailingDaysPolicy, config
from possync.date_keys import (
    ALL_MONTHS,
    PeriodKind,
    build_month_units,
    day_key,
    month_key,
    month_range,
    parse_period,
    trailing_days,
    validate_date_range,
)
from possync.events import EventBus, SyncEvent, events
from possync.exceptions import PosSyncError, SyncUnitError, ValidationError
from possync.models import Envelope, ItemsTopic, MetricKind
from possync.observability import Timer, correlation_context, get_logger
from possync.processor import AggregatedMonthResult, SalesDataProcessor

logger = get_logger(__name__)

LAST_FULL_SYNC_KEY = "last_full_sync"

# Errors that fail a single unit instead of the whole run
UNIT_ERRORS = (PosSyncError, ValidationError, ValueError, TypeError, KeyError, ArithmeticError)


class SyncStatus(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETE = "complete"


class UnitOutcome(str, Enum):
    SYNCED = "synced"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class SyncRunState:
    """
    Progress of one sync run.

    ``cursor`` only moves forward; a fresh ``start()`` builds a new state.
    """
    units: List[str] = field(default_factory=list)
    cursor: int = 0
    paused: bool = False
    status: SyncStatus = SyncStatus.IDLE
    current_month: str = ""
    synced: int = 0
    skipped: int = 0
    failed: int = 0

    def is_complete(self) -> bool:
        return not self.units or self.cursor >= len(self.units)

    @property
    def current_unit(self) -> Optional[str]:
        return None if self.is_complete() else self.units[self.cursor]

    def record(self, outcome: UnitOutcome) -> None:
        if outcome == UnitOutcome.SYNCED:
            self.synced += 1
        elif outcome == UnitOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
        self.cursor += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "cursor": self.cursor,
            "total": len(self.units),
            "paused": self.paused,
            "current_month": self.current_month,
            "next_unit": self.current_unit,
            "synced": self.synced,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class BackgroundSyncService:
    """
    Drives month-by-month sync from the POS backend into the cache.

    Usage:
        service = BackgroundSyncService(store, client)
        await service.start()          # all months back to the earliest year
        ...
        await service.pause()          # before a foreground refresh
        await service.resume()
        await service.close()
    """

    def __init__(
        self,
        store: SalesCacheStore,
        client: PosApiClient,
        processor: SalesDataProcessor = None,
        sync_config: SyncConfig = None,
        event_bus: EventBus = None,
        today: Callable[[], date] = None,
    ):
        self.store = store
        self.client = client
        self.processor = processor or SalesDataProcessor()
        self.config = sync_config or config.sync
        self.events = event_bus or events
        self._today = today or date.today
        self.state = SyncRunState()
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._trailing_done = False

    # ═══════════════════════════════════════════════════════════════════════
    # RUN CONTROL
    # ═══════════════════════════════════════════════════════════════════════

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_complete(self) -> bool:
        return self.state.is_complete()

    async def start(self, months_back: int = ALL_MONTHS) -> None:
        """
        Start a new run unless one is already active.

        Args:
            months_back: Number of months ending at the current month, or
                ALL_MONTHS to walk back to the configured earliest year
        """
        if self._stopping:
            await self.wait()
        if self.is_running:
            logger.info("Sync already running, start ignored")
            return

        today = self._today()
        self.state = SyncRunState(status=SyncStatus.BUILDING, current_month=month_key(today))
        units = build_month_units(months_back, today, self.config.earliest_year)
        self.state.units = units
        self._resume_event.set()

        logger.info(
            f"Starting sync of {len(units)} months",
            extra={"months_back": months_back, "first": units[0] if units else None},
        )
        self._task = asyncio.create_task(self._run(include_stock=True))

    async def pause(self) -> None:
        """Hold the run at the next unit or fetch boundary."""
        if self.state.paused:
            return
        self._resume_event.clear()
        self.state.paused = True
        if self.state.status == SyncStatus.RUNNING:
            self.state.status = SyncStatus.PAUSED
        logger.info("Sync paused", extra={"cursor": self.state.cursor})
        await self.events.emit(SyncEvent.SYNC_PAUSED, {"cursor": self.state.cursor})

    async def resume(self) -> None:
        """
        Release a paused run.

        A run that was stopped before finishing continues from its cursor;
        the stock step is not repeated, and a stop still winding down is
        awaited first.
        """
        if self._stopping:
            await self.wait()
        was_paused = self.state.paused
        self.state.paused = False
        self._resume_event.set()

        if self.is_running:
            if self.state.status == SyncStatus.PAUSED:
                self.state.status = SyncStatus.RUNNING
        elif not self.state.is_complete():
            logger.info(f"Resuming sync from unit {self.state.cursor}/{len(self.state.units)}")
            self._task = asyncio.create_task(self._run(include_stock=False))
        elif not was_paused:
            return

        await self.events.emit(SyncEvent.SYNC_RESUMED, {"cursor": self.state.cursor})

    def stop(self) -> None:
        """
        Cancel the run task. The cursor is kept for ``resume()``.

        A month being written when the stop lands is written in full
        before the task ends.
        """
        if self._task and not self._task.done():
            self._task.cancel()
            self._stopping = True
        self.state.status = SyncStatus.IDLE
        self.state.paused = False
        self._resume_event.set()

    async def wait(self) -> None:
        """Wait for the current run task to finish or be cancelled."""
        if self._task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._stopping = False

    async def close(self) -> None:
        self.stop()
        await self.wait()

    def get_status(self) -> Dict[str, Any]:
        status = self.state.to_dict()
        status["running"] = self.is_running
        status["circuit"] = self.client.circuit_breaker.to_dict()
        return status

    async def _wait_if_paused(self) -> None:
        await self._resume_event.wait()

    # ═══════════════════════════════════════════════════════════════════════
    # RUN LOOP
    # ═══════════════════════════════════════════════════════════════════════

    async def _run(self, include_stock: bool) -> None:
        with correlation_context() as run_id:
            started = time.perf_counter()
            self.state.status = SyncStatus.PAUSED if self.state.paused else SyncStatus.RUNNING
            await self.events.emit(SyncEvent.SYNC_STARTED, {
                "run_id": run_id,
                "cursor": self.state.cursor,
                "total": len(self.state.units),
            })

            try:
                if include_stock:
                    await self._sync_stock_step()

                while not self.state.is_complete():
                    await self._wait_if_paused()
                    self.state.status = SyncStatus.RUNNING
                    unit = self.state.units[self.state.cursor]
                    outcome = await self._sync_unit(unit)
                    self.state.record(outcome)
                    await self.events.emit(SyncEvent.SYNC_PROGRESS, {
                        "cursor": self.state.cursor,
                        "total": len(self.state.units),
                        "unit": unit,
                        "outcome": outcome.value,
                    })
                    if outcome == UnitOutcome.SYNCED and self.config.unit_delay_seconds > 0:
                        await asyncio.sleep(self.config.unit_delay_seconds)

                await self.store.set_metadata(LAST_FULL_SYNC_KEY, str(self.store.now()))
                self.state.status = SyncStatus.COMPLETE
                duration_ms = round((time.perf_counter() - started) * 1000, 2)
                logger.info(
                    "Sync complete",
                    extra={
                        "synced": self.state.synced,
                        "skipped": self.state.skipped,
                        "failed": self.state.failed,
                        "duration_ms": duration_ms,
                    },
                )
                await self.events.emit(SyncEvent.SYNC_COMPLETED, {
                    "total": len(self.state.units),
                    "synced": self.state.synced,
                    "skipped": self.state.skipped,
                    "failed": self.state.failed,
                    "duration_ms": duration_ms,
                })

            except asyncio.CancelledError:
                logger.info("Sync cancelled", extra={"cursor": self.state.cursor})
                raise
            except Exception as e:
                # Cache failures end the run; the cursor is kept for resume()
                self.state.status = SyncStatus.IDLE
                logger.error(f"Sync run failed: {e}", exc_info=True)
                await self.events.emit(SyncEvent.SYNC_FAILED, {
                    "error": str(e),
                    "cursor": self.state.cursor,
                })

    async def _sync_stock_step(self) -> None:
        try:
            await self.sync_items_stock()
        except UNIT_ERRORS as e:
            logger.warning(f"Stock sync failed: {e}")

    async def _sync_unit(self, unit: str) -> UnitOutcome:
        """Sync one month. Never raises for fetch or processing problems."""
        is_current = unit == self.state.current_month
        max_age = (
            self.config.current_data_max_age_ms if is_current
            else self.config.historical_data_max_age_ms
        )

        if await self.store.is_fresh(MetricKind.SUMMARY, PeriodKind.THIS_MONTH, unit, max_age):
            logger.debug(f"Skipping {unit}: cache fresh")
            await self.events.emit(SyncEvent.UNIT_SKIPPED, {"unit": unit})
            return UnitOutcome.SKIPPED

        start_date, end_date = month_range(unit)
        try:
            with Timer(f"sync_unit_{unit}", logger):
                raw = await self._fetch_metrics(start_date, end_date, unit, wait_between=True)
                result = self.processor.aggregate(
                    unit, start_date, end_date,
                    raw[MetricKind.SUMMARY],
                    raw[MetricKind.BY_ITEM],
                    raw[MetricKind.BY_CATEGORY],
                    raw[MetricKind.BY_EMPLOYEE],
                )
            await self._persist_month(result)
        except UNIT_ERRORS as e:
            logger.warning(f"Unit {unit} failed: {e}", extra={"unit": unit})
            await self.events.emit(SyncEvent.UNIT_FAILED, {"unit": unit, "error": str(e)})
            return UnitOutcome.FAILED

        await self.events.emit(SyncEvent.UNIT_SYNCED, {"unit": unit, "days": len(result.daily)})

        if is_current:
            await self._sync_trailing_days()
        return UnitOutcome.SYNCED

    async def _fetch_metrics(
        self, start_date: str, end_date: str, unit: str, wait_between: bool = False
    ) -> Dict[MetricKind, Dict[str, Any]]:
        """
        Fetch the four metrics in order.

        Raises:
            SyncUnitError: On the first unsuccessful envelope
        """
        raw: Dict[MetricKind, Dict[str, Any]] = {}
        for metric in MetricKind.ordered():
            if wait_between:
                await self._wait_if_paused()
            envelope = await self.client.fetch(metric.value, start_date, end_date)
            parsed = Envelope.from_api(envelope)
            if not parsed.success:
                raise SyncUnitError(
                    f"Fetch failed for {unit}",
                    details=parsed.error or "unsuccessful response",
                    unit=unit,
                    actions=[metric.value],
                )
            raw[metric] = envelope
        return raw

    async def _persist_month(self, result: AggregatedMonthResult) -> None:
        entries = [
            CacheEntry(metric, PeriodKind.THIS_MONTH, result.period_key, result.start_date, result.end_date, payload)
            for metric, payload in result.payloads()
        ]
        for day, breakdown in result.daily.items():
            entries.extend(
                CacheEntry(metric, PeriodKind.TODAY, day, day, day, payload)
                for metric, payload in breakdown.payloads()
            )
        await self._write(entries)

    async def _write(self, entries: List[CacheEntry]) -> None:
        """
        Write entries in one transaction that always runs to completion.

        The summary entry doubles as the freshness marker, so a unit must
        never be left with only part of its entries. If the run is cancelled
        meanwhile, the cancellation is re-raised once the write is done.
        """
        write = asyncio.ensure_future(self.store.put_many(entries))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            await write
            raise

    # ─── Trailing days of the current month ─────────────────────────────────

    async def _sync_trailing_days(self) -> None:
        policy = self.config.trailing_days_policy
        if policy == TrailingDaysPolicy.DISABLED:
            return
        if policy == TrailingDaysPolicy.ONCE_PER_SESSION and self._trailing_done:
            return
        self._trailing_done = True

        today = day_key(self._today())
        for day in trailing_days(self._today(), self.config.trailing_days):
            await self._wait_if_paused()
            max_age = (
                self.config.current_data_max_age_ms if day == today
                else self.config.historical_data_max_age_ms
            )
            if await self.store.is_fresh(MetricKind.SUMMARY, PeriodKind.TODAY, day, max_age):
                continue
            await self._sync_single_day(day)

    async def _sync_single_day(self, day: str) -> None:
        """Fetch each metric of one day and store them together; failures skip that metric."""
        entries = []
        for metric in MetricKind.ordered():
            await self._wait_if_paused()
            envelope = await self.client.fetch(metric.value, day, day)
            if not Envelope.from_api(envelope).success:
                logger.warning(f"Day {day} {metric.value} failed: {envelope.get('error')}")
                continue
            payload = self.processor.project_single_day(metric, envelope)
            entries.append(CacheEntry(metric, PeriodKind.TODAY, day, day, day, payload))
        await self._write(entries)

    # ═══════════════════════════════════════════════════════════════════════
    # ON-DEMAND SYNC
    # ═══════════════════════════════════════════════════════════════════════

    async def sync_items_stock(self, force: bool = False) -> bool:
        """
        Refresh the stock snapshot from stock history.

        Returns:
            True if a new snapshot was stored
        """
        if not force and await self.store.is_item_fresh(
            ItemsTopic.ITEMS_STOCK, self.config.items_stock_max_age_ms
        ):
            logger.debug("Stock snapshot fresh, skipping")
            return False

        envelope = await self.client.fetch_stock_history()
        parsed = Envelope.from_api(envelope)
        if not parsed.success:
            logger.warning(f"Stock history fetch failed: {parsed.error}")
            return False

        snapshot = self.processor.derive_stock_snapshot(envelope)
        await self.store.put_item(ItemsTopic.STOCK_HISTORY, envelope)
        await self.store.put_item(ItemsTopic.ITEMS_STOCK, snapshot)

        product_count = len(snapshot["data"]["items"])
        logger.info(f"Stock snapshot updated: {product_count} products")
        await self.events.emit(SyncEvent.STOCK_SYNCED, {"products": product_count})
        return True

    async def sync_date_range(
        self, start_date: str, end_date: str, period, date_key: str
    ) -> Dict[MetricKind, Dict[str, Any]]:
        """
        Force-refresh one period and store it under (metric, period, date_key).

        Single-day today/custom ranges are projected directly; anything
        longer goes through the multi-day fold.

        Raises:
            SyncUnitError: If any metric fetch is unsuccessful
            ValidationError: If the range or period is invalid
        """
        validate_date_range(start_date, end_date)
        period = parse_period(period)

        raw = await self._fetch_metrics(start_date, end_date, date_key)

        if start_date == end_date and period.is_single_day:
            payloads = {
                metric: self.processor.project_single_day(metric, envelope)
                for metric, envelope in raw.items()
            }
        else:
            result = self.processor.aggregate(
                date_key, start_date, end_date,
                raw[MetricKind.SUMMARY],
                raw[MetricKind.BY_ITEM],
                raw[MetricKind.BY_CATEGORY],
                raw[MetricKind.BY_EMPLOYEE],
            )
            payloads = dict(result.payloads())

        await self.store.put_many([
            CacheEntry(metric, period, date_key, start_date, end_date, payload)
            for metric, payload in payloads.items()
        ])

        logger.info(f"Refreshed {period.value}/{date_key}", extra={"start_date": start_date, "end_date": end_date})
        return payloads
