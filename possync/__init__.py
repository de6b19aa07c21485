"""
Offline-first sync and cache engine for POS sales analytics.

This package contains:
- cache_store: DuckDB cache of dated sales payloads and undated item blobs
- processor: folds raw daily backend data into month rollups and per-day breakdowns
- sync_service: resumable, pausable month-by-month background sync
- dashboard: cache-first reader for one period at a time
- scheduler: periodic refresh jobs
"""

# Import in dependency order
from possync.exceptions import (
    PosSyncError,
    PosConnectionError,
    PosAPIError,
    PosDataError,
    SyncUnitError,
    ValidationError,
    QueryTimeoutError,
)

from possync.config import config

from possync.date_keys import (
    ALL_MONTHS,
    PeriodKind,
    date_key,
    date_range,
)

from possync.models import MetricKind, ItemsTopic

from possync.cache_store import SalesCacheStore, CachedPayload
from possync.processor import SalesDataProcessor, AggregatedMonthResult
from possync.client import PosApiClient
from possync.sync_service import BackgroundSyncService, SyncRunState, SyncStatus
from possync.dashboard import DashboardService, DashboardSnapshot

__version__ = config.version

__all__ = [
    # Exceptions
    "PosSyncError",
    "PosConnectionError",
    "PosAPIError",
    "PosDataError",
    "SyncUnitError",
    "ValidationError",
    "QueryTimeoutError",
    # Config
    "config",
    # Date keys
    "ALL_MONTHS",
    "PeriodKind",
    "date_key",
    "date_range",
    # Models
    "MetricKind",
    "ItemsTopic",
    # Services
    "SalesCacheStore",
    "CachedPayload",
    "SalesDataProcessor",
    "AggregatedMonthResult",
    "PosApiClient",
    "BackgroundSyncService",
    "SyncRunState",
    "SyncStatus",
    "DashboardService",
    "DashboardSnapshot",
    "__version__",
]
