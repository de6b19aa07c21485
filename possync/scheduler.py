"""
Periodic jobs using APScheduler.

Jobs:
- current_month_refresh: restart a one-month sync once the previous run
  finished (every 15 minutes by default)
- stock_refresh: refresh the stock snapshot (every 5 minutes)
- cache_cleanup: drop old dated entries at 03:00, only when a retention
  period is configured

Jobs never overlap themselves (max_instances=1) and missed runs are
coalesced into one. Each job keeps a short execution history.
"""
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from possync.cache_store import SalesCacheStore
from possync.config import CacheConfig, SyncConfig, config
from possync.events import SyncEvent
from possync.observability import correlation_context, get_logger
from possync.sync_service import BackgroundSyncService

logger = get_logger(__name__)

HISTORY_SIZE = 50


class JobStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    MISSED = "missed"


@dataclass(frozen=True)
class JobSpec:
    id: str
    name: str
    description: str
    func: Callable[[], Awaitable[Dict[str, Any]]]
    trigger: BaseTrigger


@dataclass
class JobRunRecord:
    finished_at: datetime
    status: JobStatus
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


@dataclass
class JobRecord:
    """Bookkeeping for one registered job."""
    spec: JobSpec
    run_count: int = 0
    error_count: int = 0
    history: Deque[JobRunRecord] = field(default_factory=lambda: deque(maxlen=HISTORY_SIZE))

    @property
    def last(self) -> Optional[JobRunRecord]:
        return self.history[-1] if self.history else None

    @property
    def last_error(self) -> Optional[str]:
        return next((run.error for run in reversed(self.history) if run.error), None)


class SyncJobScheduler:
    """
    Runs the periodic sync jobs next to a BackgroundSyncService.

    Usage:
        scheduler = SyncJobScheduler(sync_service, store)
        await scheduler.start()
        ...
        scheduler.shutdown()
    """

    def __init__(
        self,
        sync_service: BackgroundSyncService,
        store: SalesCacheStore,
        sync_config: SyncConfig = None,
        cache_config: CacheConfig = None,
        timezone=None,
    ):
        self.sync = sync_service
        self.store = store
        self.sync_config = sync_config or config.sync
        self.cache_config = cache_config or config.cache
        self._timezone = timezone
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._jobs: Dict[str, JobRecord] = {}

    def job_specs(self) -> List[JobSpec]:
        specs = [
            JobSpec(
                id="current_month_refresh",
                name="Current Month Refresh",
                description="Restart a one-month sync when the previous run is complete",
                func=self.run_current_month_refresh,
                trigger=IntervalTrigger(minutes=self.sync_config.current_month_refresh_minutes),
            ),
            JobSpec(
                id="stock_refresh",
                name="Stock Refresh",
                description="Rebuild the stock snapshot from stock history",
                func=self.run_stock_refresh,
                trigger=IntervalTrigger(minutes=self.sync_config.stock_refresh_minutes),
            ),
        ]
        if self.cache_config.retention_days > 0:
            specs.append(JobSpec(
                id="cache_cleanup",
                name="Cache Cleanup",
                description=f"Remove cache entries older than {self.cache_config.retention_days} days",
                func=self.run_cache_cleanup,
                trigger=CronTrigger(hour=3, minute=0),
            ))
        return specs

    async def start(self) -> None:
        """Register the jobs and start scheduling on the running loop."""
        if self.is_running:
            logger.warning("Scheduler already running, start ignored")
            return

        self._scheduler = AsyncIOScheduler(**({"timezone": self._timezone} if self._timezone else {}))
        self._scheduler.add_listener(
            self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED
        )
        self._jobs = {}
        for spec in self.job_specs():
            self._scheduler.add_job(
                spec.func,
                trigger=spec.trigger,
                id=spec.id,
                name=spec.name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self._jobs[spec.id] = JobRecord(spec)

        self._scheduler.start()
        logger.info(f"Scheduler started with {len(self._jobs)} jobs", extra={"jobs": list(self._jobs)})

    def shutdown(self, wait: bool = False) -> None:
        if self.is_running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")
        self._scheduler = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ═══════════════════════════════════════════════════════════════════════
    # JOBS
    # ═══════════════════════════════════════════════════════════════════════

    async def _run_job(self, job_id: str, body: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        """Run a job body under its own correlation ID and report the outcome on the bus."""
        with correlation_context():
            try:
                result = await body()
            except Exception as e:
                await self.sync.events.emit(
                    SyncEvent.JOB_FAILED, {"job_id": job_id, "error": str(e)}, source="scheduler"
                )
                raise
            await self.sync.events.emit(
                SyncEvent.JOB_COMPLETED, {"job_id": job_id, "result": result}, source="scheduler"
            )
            return result

    async def run_current_month_refresh(self) -> Dict[str, Any]:
        async def body():
            if self.sync.is_running or not self.sync.is_complete():
                logger.debug("Previous sync run unfinished, current month refresh skipped")
                return {"started": False}
            await self.sync.start(months_back=1)
            return {"started": True}

        return await self._run_job("current_month_refresh", body)

    async def run_stock_refresh(self) -> Dict[str, Any]:
        async def body():
            return {"updated": await self.sync.sync_items_stock()}

        return await self._run_job("stock_refresh", body)

    async def run_cache_cleanup(self) -> Dict[str, Any]:
        days = self.cache_config.retention_days

        async def body():
            removed = await self.store.clear_older_than(days)
            if removed:
                await self.sync.events.emit(
                    SyncEvent.CACHE_CLEARED, {"removed": removed, "older_than_days": days}, source="scheduler"
                )
            return {"removed": removed}

        return await self._run_job("cache_cleanup", body)

    # ═══════════════════════════════════════════════════════════════════════
    # EXECUTION TRACKING
    # ═══════════════════════════════════════════════════════════════════════

    def _on_job_event(self, event: JobExecutionEvent) -> None:
        record = self._jobs.get(event.job_id)
        if record is None:
            return

        if event.code == EVENT_JOB_MISSED:
            record.history.append(JobRunRecord(datetime.now(), JobStatus.MISSED))
            logger.warning(f"Job {event.job_id} missed its run time", extra={"job_id": event.job_id})
            return

        record.run_count += 1
        if event.code == EVENT_JOB_ERROR:
            error = str(event.exception) if event.exception else "Unknown error"
            record.error_count += 1
            record.history.append(JobRunRecord(datetime.now(), JobStatus.FAILED, error=error))
            logger.error(f"Job {event.job_id} failed: {error}", extra={"job_id": event.job_id})
        else:
            record.history.append(JobRunRecord(datetime.now(), JobStatus.SUCCESS, result=event.retval))

    def get_jobs(self) -> List[Dict[str, Any]]:
        jobs = []
        for job_id, record in self._jobs.items():
            job = self._scheduler.get_job(job_id) if self._scheduler else None
            next_run = getattr(job, "next_run_time", None)
            last = record.last
            jobs.append({
                "id": job_id,
                "name": record.spec.name,
                "description": record.spec.description,
                "trigger": str(record.spec.trigger),
                "next_run": next_run.isoformat() if next_run else None,
                "last_run": last.finished_at.isoformat() if last else None,
                "last_status": last.status.value if last else None,
                "run_count": record.run_count,
                "error_count": record.error_count,
                "last_error": record.last_error,
            })
        return jobs

    def get_job_history(self, job_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent runs first."""
        record = self._jobs.get(job_id)
        runs = list(record.history)[-limit:] if record else []
        return [
            {
                "finished_at": run.finished_at.isoformat(),
                "status": run.status.value,
                "error": run.error,
                "result": run.result,
            }
            for run in reversed(runs)
        ]
