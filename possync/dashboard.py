"""
Headless dashboard consumer.

Reads the four sales metrics for the visible period straight from the
cache. Only an explicit refresh (or a stale/missing entry on ``load``)
goes to the network, and a failed refresh falls back to whatever is
cached, however old.
"""
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from possync.cache_store import CachedPayload
from possync.config import SyncConfig, config
from possync.date_keys import (
    PeriodKind,
    date_key,
    date_range,
    is_current_period,
    parse_period,
    shift,
)
from possync.exceptions import ValidationError
from possync.models import Envelope, ItemsTopic, MetricKind
from possync.observability import get_logger
from possync.sync_service import UNIT_ERRORS, BackgroundSyncService

logger = get_logger(__name__)

NO_CACHE_MESSAGE = "No cached data for this date"

LIST_TOPICS = (ItemsTopic.INVOICES, ItemsTopic.EXPENSES, ItemsTopic.PURCHASES)


class SnapshotSource(str, Enum):
    CACHE = "cache"    # fresh (or cache-only) read
    REMOTE = "remote"  # just fetched
    STALE = "stale"    # refresh failed, showing older cache
    EMPTY = "empty"    # nothing to show


@dataclass
class DashboardState:
    """The period currently on screen."""
    period: PeriodKind = PeriodKind.TODAY
    reference_date: date = field(default_factory=date.today)

    @property
    def date_key(self) -> str:
        return date_key(self.period, self.reference_date)

    @property
    def date_range(self) -> Tuple[str, str]:
        return date_range(self.period, self.reference_date)


@dataclass
class DashboardSnapshot:
    period: PeriodKind
    date_key: str
    start_date: str
    end_date: str
    source: SnapshotSource
    summary: Optional[Dict[str, Any]] = None
    items: Optional[Dict[str, Any]] = None
    categories: Optional[Dict[str, Any]] = None
    employees: Optional[Dict[str, Any]] = None
    stored_at: Optional[int] = None
    message: Optional[str] = None

    @property
    def has_data(self) -> bool:
        return self.summary is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period.value,
            "date_key": self.date_key,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "source": self.source.value,
            "stored_at": self.stored_at,
            "message": self.message,
            "summary": self.summary,
            "items": self.items,
            "categories": self.categories,
            "employees": self.employees,
        }


class DashboardService:
    """
    Cache-first view of one period at a time.

    Usage:
        dashboard = DashboardService(store, sync_service)
        snapshot = await dashboard.load()
        snapshot = await dashboard.navigate(-1)   # previous period, cache only
        snapshot = await dashboard.refresh()      # force fetch, pausing sync
    """

    def __init__(
        self,
        store,
        sync_service: BackgroundSyncService,
        sync_config: SyncConfig = None,
        today: Callable[[], date] = None,
        state: DashboardState = None,
    ):
        self.store = store
        self.sync = sync_service
        self.config = sync_config or config.sync
        self._today = today or date.today
        self.state = state or DashboardState(reference_date=self._today())

    # ─── Navigation (cache only) ─────────────────────────────────────────────

    async def navigate(self, direction: int) -> DashboardSnapshot:
        """Move one period back (-1) or forward (+1) and read the cache."""
        self.state.reference_date = shift(self.state.period, self.state.reference_date, direction)
        return await self.load_cached()

    async def set_period(self, period, reference_date: date = None) -> DashboardSnapshot:
        self.state.period = parse_period(period)
        if reference_date is not None:
            self.state.reference_date = reference_date
        return await self.load_cached()

    async def load_cached(self) -> DashboardSnapshot:
        cached = await self._read_cache()
        if not _any_cached(cached):
            return self._snapshot(SnapshotSource.EMPTY, message=NO_CACHE_MESSAGE)
        return self._snapshot(SnapshotSource.CACHE, cached=cached)

    # ─── Loading with network fallback ───────────────────────────────────────

    async def load(self, force_refresh: bool = False) -> DashboardSnapshot:
        """
        Show the current period, fetching when the cache is stale or missing.

        Falls back to any cached entry if the fetch fails.
        """
        if not force_refresh:
            cached = await self._read_cache()
            summary = cached[MetricKind.SUMMARY]
            if summary is not None and self.store.now() - summary.stored_at < self._max_age():
                return self._snapshot(SnapshotSource.CACHE, cached=cached)

        period = self.state.period
        key = self.state.date_key
        start_date, end_date = self.state.date_range
        try:
            payloads = await self.sync.sync_date_range(start_date, end_date, period, key)
        except UNIT_ERRORS as e:
            logger.warning(f"Refresh of {period.value}/{key} failed: {e}")
            cached = await self._read_cache()
            if _any_cached(cached):
                return self._snapshot(
                    SnapshotSource.STALE, cached=cached,
                    message=f"Using cached data. Refresh failed: {e}",
                )
            return self._snapshot(SnapshotSource.EMPTY, message=f"Failed to load data: {e}")

        return self._snapshot(
            SnapshotSource.REMOTE,
            cached={metric: CachedPayload(payload, self.store.now()) for metric, payload in payloads.items()},
        )

    async def refresh(self) -> DashboardSnapshot:
        """Force a fetch of the visible period, pausing an unfinished sync run."""
        paused = False
        if self.sync.is_running and not self.sync.is_complete():
            await self.sync.pause()
            paused = True
        try:
            return await self.load(force_refresh=True)
        finally:
            if paused:
                await self.sync.resume()

    # ─── Undated lists ───────────────────────────────────────────────────────

    async def cached_list(self, topic, fetch: bool = True) -> Optional[Dict[str, Any]]:
        """
        Invoices, expenses or purchases.

        Fresh cache is returned as is; otherwise the list is fetched and
        stored, falling back to the stale blob when the fetch fails.
        """
        try:
            topic = ItemsTopic(topic)
        except ValueError:
            raise ValidationError("topic", "Unknown list topic", topic)
        if topic not in LIST_TOPICS:
            raise ValidationError("topic", "Not a list topic", topic.value)

        cached = await self.store.get_item(topic)
        if cached and self.store.now() - cached.stored_at < self.config.list_max_age_ms:
            return cached.payload
        if not fetch:
            return cached.payload if cached else None

        envelope = await self.sync.client.fetch_list(topic.value)
        if Envelope.from_api(envelope).success:
            await self.store.put_item(topic, envelope)
            return envelope

        logger.warning(f"Fetching {topic.value} failed: {envelope.get('error')}")
        return cached.payload if cached else envelope

    # ─── Helpers ─────────────────────────────────────────────────────────────

    def _max_age(self) -> int:
        if is_current_period(self.state.period, self.state.reference_date, self._today()):
            return self.config.current_data_max_age_ms
        return self.config.historical_data_max_age_ms

    async def _read_cache(self) -> Dict[MetricKind, Optional[CachedPayload]]:
        key = self.state.date_key
        return {
            metric: await self.store.get(metric, self.state.period, key)
            for metric in MetricKind.ordered()
        }

    def _snapshot(
        self,
        source: SnapshotSource,
        cached: Dict[MetricKind, Optional[CachedPayload]] = None,
        message: str = None,
    ) -> DashboardSnapshot:
        cached = cached or {}
        start_date, end_date = self.state.date_range

        def payload(metric: MetricKind) -> Optional[Dict[str, Any]]:
            entry = cached.get(metric)
            return entry.payload if entry else None

        # a day synced metric by metric may lack its summary
        stamp = cached.get(MetricKind.SUMMARY) or next((e for e in cached.values() if e), None)
        return DashboardSnapshot(
            period=self.state.period,
            date_key=self.state.date_key,
            start_date=start_date,
            end_date=end_date,
            source=source,
            summary=payload(MetricKind.SUMMARY),
            items=payload(MetricKind.BY_ITEM),
            categories=payload(MetricKind.BY_CATEGORY),
            employees=payload(MetricKind.BY_EMPLOYEE),
            stored_at=stamp.stored_at if stamp else None,
            message=message,
        )


def _any_cached(cached: Dict[MetricKind, Optional[CachedPayload]]) -> bool:
    return any(entry is not None for entry in cached.values())
