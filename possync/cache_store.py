"""
DuckDB-backed cache for sales payloads.

Two namespaces share one database file:

- ``sales_cache``: dated entries keyed by (metric_kind, period_kind, date_key)
- ``items_cache``: undated blobs keyed by topic (stock snapshot, lists)

plus a small ``sync_metadata`` table for the last full sync timestamp.

Every write is a whole-payload replacement stamped with the store's clock,
so freshness checks are a single comparison against ``stored_at``.
"""
import asyncio
import json
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

import duckdb

from possync.config import config
from possync.date_keys import PeriodKind, month_key, parse_period, validate_date_range
from possync.exceptions import QueryTimeoutError, ValidationError
from possync.models import MetricKind
from possync.observability import get_logger

logger = get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def _key(value: Any) -> str:
    """Enum members are stored by value."""
    return value.value if isinstance(value, Enum) else str(value)


class CachedPayload(NamedTuple):
    payload: Dict[str, Any]
    stored_at: int


class CacheEntry(NamedTuple):
    """One dated entry to write with ``put_many``."""
    metric: Any
    period: Any
    date_key: str
    start_date: str
    end_date: str
    payload: Dict[str, Any]


@dataclass
class CacheStats:
    """Cache statistics for monitoring."""

    hits: int = 0
    misses: int = 0
    writes: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "writes": self.writes,
            "invalidations": self.invalidations,
            "hit_rate_percent": round(self.hit_rate, 2),
        }

    def reset(self) -> None:
        self.hits = 0
        self.misses = 0
        self.writes = 0
        self.invalidations = 0


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sales_cache (
    metric_kind VARCHAR NOT NULL,
    period_kind VARCHAR NOT NULL,
    date_key VARCHAR NOT NULL,
    start_date VARCHAR NOT NULL,
    end_date VARCHAR NOT NULL,
    payload VARCHAR NOT NULL,
    stored_at BIGINT NOT NULL,
    PRIMARY KEY (metric_kind, period_kind, date_key)
);

CREATE TABLE IF NOT EXISTS items_cache (
    topic VARCHAR PRIMARY KEY,
    payload VARCHAR NOT NULL,
    stored_at BIGINT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_metadata (
    key VARCHAR PRIMARY KEY,
    value VARCHAR,
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
);
"""

_UPSERT_SQL = (
    "INSERT OR REPLACE INTO sales_cache "
    "(metric_kind, period_kind, date_key, start_date, end_date, payload, stored_at) "
    "VALUES (?, ?, ?, ?, ?, ?, ?)"
)


class SalesCacheStore:
    """
    Async-compatible DuckDB cache.

    DuckDB connections are not thread-safe, so all access is serialized by
    an asyncio lock and blocking calls run on a single worker thread.
    """

    def __init__(
        self,
        db_path: Path = None,
        clock: Callable[[], int] = None,
        query_timeout: float = None,
    ):
        self.db_path = Path(db_path) if db_path else config.cache.db_path
        self.query_timeout = query_timeout or config.cache.query_timeout
        self._clock = clock or now_ms
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = asyncio.Lock()
        self._stats = CacheStats()
        self._total_queries = 0

    # ─── Connection lifecycle ────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the database and create the schema if needed."""
        async with self._lock:
            if self._connection is not None:
                return
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="duckdb")
            loop = asyncio.get_running_loop()
            self._connection = await loop.run_in_executor(
                self._executor, duckdb.connect, str(self.db_path)
            )
            await loop.run_in_executor(self._executor, self._connection.execute, _SCHEMA_SQL)
            logger.info(f"Cache store connected: {self.db_path}")

    async def close(self) -> None:
        """Close the connection and worker thread."""
        async with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
                logger.info("Cache store closed")
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None

    @asynccontextmanager
    async def connection(self):
        """Yield the connection while holding the store lock."""
        if self._connection is None:
            await self.connect()
        async with self._lock:
            yield self._connection

    async def _run(self, label: str, fn: Callable[[duckdb.DuckDBPyConnection], Any]) -> Any:
        """Run ``fn(conn)`` on the worker thread with the query timeout."""
        async with self.connection() as conn:
            self._total_queries += 1
            loop = asyncio.get_running_loop()
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(self._executor, fn, conn),
                    timeout=self.query_timeout,
                )
            except asyncio.TimeoutError:
                raise QueryTimeoutError(label, self.query_timeout, "Cache query failed")

    def now(self) -> int:
        return self._clock()

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def get_connection_info(self) -> Dict[str, Any]:
        return {
            "status": "active" if self._connection else "not_initialized",
            "total_queries": self._total_queries,
            "db_path": str(self.db_path),
            "stats": self._stats.to_dict(),
        }

    # ═══════════════════════════════════════════════════════════════════════
    # DATED ENTRIES
    # ═══════════════════════════════════════════════════════════════════════

    async def get(self, metric, period, date_key: str) -> Optional[CachedPayload]:
        """Payload and stored-at millis for one entry, or None."""
        params = [_key(metric), _key(period), date_key]

        def _select(conn):
            return conn.execute(
                "SELECT payload, stored_at FROM sales_cache "
                "WHERE metric_kind = ? AND period_kind = ? AND date_key = ?",
                params,
            ).fetchone()

        row = await self._run("get", _select)
        if row is None:
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return CachedPayload(json.loads(row[0]), int(row[1]))

    async def put(
        self,
        metric,
        period,
        date_key: str,
        start_date: str,
        end_date: str,
        payload: Dict[str, Any],
    ) -> None:
        """
        Store a payload, replacing any existing entry under the same key.

        Raises:
            ValidationError: If the range is inverted or the payload is not an object
        """
        params = self._row(CacheEntry(metric, period, date_key, start_date, end_date, payload))

        def _upsert(conn):
            conn.execute(_UPSERT_SQL, params)

        await self._run("put", _upsert)
        self._stats.writes += 1
        logger.debug(f"Cached {params[0]}/{params[1]}/{date_key}")

    async def put_many(self, entries: List[CacheEntry]) -> int:
        """
        Store several payloads in one transaction; either all are written or none.

        Every entry is validated before anything is written.

        Raises:
            ValidationError: If any entry is invalid
        """
        rows = [self._row(entry) for entry in entries]
        if not rows:
            return 0

        def _upsert_all(conn):
            conn.execute("BEGIN TRANSACTION")
            try:
                for row in rows:
                    conn.execute(_UPSERT_SQL, row)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        await self._run("put_many", _upsert_all)
        self._stats.writes += len(rows)
        logger.debug(f"Cached {len(rows)} entries in one transaction")
        return len(rows)

    def _row(self, entry: CacheEntry) -> List[Any]:
        period = parse_period(entry.period)
        validate_date_range(entry.start_date, entry.end_date)
        if not entry.date_key:
            raise ValidationError("date_key", "Date key is required", entry.date_key)
        if not isinstance(entry.payload, dict):
            raise ValidationError("payload", "Payload must be a JSON object", type(entry.payload).__name__)
        return [
            _key(entry.metric), period.value, entry.date_key, entry.start_date, entry.end_date,
            json.dumps(entry.payload), self.now(),
        ]

    async def cache_age(self, metric, period, date_key: str) -> Optional[int]:
        """Milliseconds since the entry was written, or None if absent."""
        params = [_key(metric), _key(period), date_key]

        def _select(conn):
            return conn.execute(
                "SELECT stored_at FROM sales_cache "
                "WHERE metric_kind = ? AND period_kind = ? AND date_key = ?",
                params,
            ).fetchone()

        row = await self._run("cache_age", _select)
        return None if row is None else self.now() - int(row[0])

    async def is_fresh(self, metric, period, date_key: str, max_age_ms: int) -> bool:
        age = await self.cache_age(metric, period, date_key)
        return age is not None and age < max_age_ms

    async def cached_date_keys(self, metric, period) -> List[str]:
        """Distinct cached date keys for a metric/period, newest first."""
        params = [_key(metric), _key(period)]

        def _select(conn):
            return conn.execute(
                "SELECT DISTINCT date_key FROM sales_cache "
                "WHERE metric_kind = ? AND period_kind = ? ORDER BY date_key DESC",
                params,
            ).fetchall()

        return [row[0] for row in await self._run("cached_date_keys", _select)]

    # ─── Invalidation ────────────────────────────────────────────────────────

    async def clear(self, date_key: str) -> int:
        """Remove every dated entry with this date key. Returns rows removed."""
        def _delete(conn):
            count = conn.execute(
                "SELECT COUNT(*) FROM sales_cache WHERE date_key = ?", [date_key]
            ).fetchone()[0]
            conn.execute("DELETE FROM sales_cache WHERE date_key = ?", [date_key])
            return count

        removed = await self._run("clear", _delete)
        self._stats.invalidations += removed
        logger.info(f"Cleared cache for {date_key}", extra={"removed": removed})
        return removed

    async def clear_all(self) -> None:
        """Drop both namespaces. Sync metadata is kept."""
        def _delete(conn):
            conn.execute("DELETE FROM sales_cache")
            conn.execute("DELETE FROM items_cache")

        await self._run("clear_all", _delete)
        logger.info("Cleared all cached data")

    async def clear_older_than(self, days: int = 30) -> int:
        """Remove dated entries written more than ``days`` days ago."""
        cutoff = self.now() - days * DAY_MS

        def _delete(conn):
            count = conn.execute(
                "SELECT COUNT(*) FROM sales_cache WHERE stored_at < ?", [cutoff]
            ).fetchone()[0]
            conn.execute("DELETE FROM sales_cache WHERE stored_at < ?", [cutoff])
            return count

        removed = await self._run("clear_older_than", _delete)
        self._stats.invalidations += removed
        if removed:
            logger.info(f"Removed {removed} cache entries older than {days} days")
        return removed

    # ─── Diagnostics ─────────────────────────────────────────────────────────

    async def has_current_month_data(self, today: date = None) -> bool:
        today = today or date.today()
        entry = await self.get(MetricKind.SUMMARY, PeriodKind.THIS_MONTH, month_key(today))
        return entry is not None

    async def entry_count(self) -> int:
        def _count(conn):
            return conn.execute("SELECT COUNT(*) FROM sales_cache").fetchone()[0]

        return int(await self._run("entry_count", _count))

    async def sync_progress(self) -> Tuple[int, List[str]]:
        """(number of cached months, month keys newest first)."""
        months = await self.cached_date_keys(MetricKind.SUMMARY, PeriodKind.THIS_MONTH)
        return len(months), months

    # ═══════════════════════════════════════════════════════════════════════
    # ITEMS NAMESPACE
    # ═══════════════════════════════════════════════════════════════════════

    async def get_item(self, topic) -> Optional[CachedPayload]:
        params = [_key(topic)]

        def _select(conn):
            return conn.execute(
                "SELECT payload, stored_at FROM items_cache WHERE topic = ?", params
            ).fetchone()

        row = await self._run("get_item", _select)
        if row is None:
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return CachedPayload(json.loads(row[0]), int(row[1]))

    async def put_item(self, topic, payload: Dict[str, Any]) -> None:
        if not isinstance(payload, dict):
            raise ValidationError("payload", "Payload must be a JSON object", type(payload).__name__)
        params = [_key(topic), json.dumps(payload), self.now()]

        def _upsert(conn):
            conn.execute(
                "INSERT OR REPLACE INTO items_cache (topic, payload, stored_at) VALUES (?, ?, ?)",
                params,
            )

        await self._run("put_item", _upsert)
        self._stats.writes += 1

    async def is_item_fresh(self, topic, max_age_ms: int = 5 * 60 * 1000) -> bool:
        params = [_key(topic)]

        def _select(conn):
            return conn.execute(
                "SELECT stored_at FROM items_cache WHERE topic = ?", params
            ).fetchone()

        row = await self._run("is_item_fresh", _select)
        return row is not None and self.now() - int(row[0]) < max_age_ms

    # ═══════════════════════════════════════════════════════════════════════
    # SYNC METADATA
    # ═══════════════════════════════════════════════════════════════════════

    async def get_metadata(self, key: str) -> Optional[str]:
        def _select(conn):
            return conn.execute(
                "SELECT value FROM sync_metadata WHERE key = ?", [key]
            ).fetchone()

        row = await self._run("get_metadata", _select)
        return row[0] if row else None

    async def set_metadata(self, key: str, value: str) -> None:
        def _upsert(conn):
            conn.execute(
                "INSERT OR REPLACE INTO sync_metadata (key, value, updated_at) "
                "VALUES (?, ?, CURRENT_TIMESTAMP)",
                [key, str(value)],
            )

        await self._run("set_metadata", _upsert)
