"""
Pytest configuration and shared fixtures.
"""
import inspect
import pytest
import pytest_asyncio
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

from possync.cache_store import SalesCacheStore
from possync.config import SyncConfig, TrailingDaysPolicy
from possync.events import EventBus
from possync.models import Envelope
from possync.resilience import CircuitBreaker

TODAY = date(2024, 3, 15)
START_MS = 1_710_000_000_000


def ok(data: Dict[str, Any]) -> Dict[str, Any]:
    return {"success": True, "data": data}


def summary_day(
    day: str,
    gross: float,
    net: float,
    profit: float = 0.0,
    count: int = 1,
    receipts: List[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "date": day,
        "metrics": {
            "gross_sales": gross,
            "refunds": 0,
            "discounts": 0,
            "taxes": 0,
            "net_sales": net,
            "cost_of_goods": net - profit,
            "gross_profit": profit,
        },
        "transactions": {"total_count": count, "refund_count": 0, "items_sold": count},
        "receipts": receipts or [],
    }


def default_response(action: str, start_date: Optional[str], end_date: Optional[str]) -> Dict[str, Any]:
    """One day of data dated ``start_date`` for every metric action."""
    if action == "stock-history":
        return ok({"products": [{
            "product_id": "p1",
            "product_name": "Gummy Bears",
            "product_sku": "GB-01",
            "movements": [
                {"timestamp": "2024-03-01T10:00:00Z", "new_stock": 40},
                {"timestamp": "2024-03-10T10:00:00Z", "new_stock": 25},
            ],
        }]})
    if action in ("invoices", "expenses", "purchases"):
        return ok({action: [{"id": 1}]})

    day = start_date
    if action == "sales-summary":
        receipts = [{"employee_id": "e1", "employee_name": "Jane", "total": 100.0}]
        return ok({"daily_data": [summary_day(day, 110.0, 100.0, profit=40.0, receipts=receipts)]})
    if action == "sales-by-item":
        return ok({"daily_data": [{"date": day, "items": [
            {"item_id": "i1", "item_name": "Gummy Bears", "quantity_sold": 2,
             "gross_sales": 110.0, "net_sales": 100.0, "gross_profit": 40.0},
        ]}]})
    if action == "sales-by-category":
        return ok({"daily_data": [{"date": day, "categories": [
            {"category_id": "c1", "category_name": "Candy", "gross_sales": 110.0, "net_sales": 100.0},
        ]}]})
    if action == "sales-by-employee":
        return ok({"daily_data": [{"date": day, "employees": [
            {"employee_id": "e1", "employee_name": "Unknown", "gross_sales": 110.0,
             "net_sales": 100.0, "transaction_count": 1},
        ]}]})
    return Envelope.failure(f"Unknown action {action}")


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakePosClient:
    """
    Stands in for PosApiClient.

    Records every call and answers through ``handler``, which may be a
    plain function or a coroutine function. Units listed in ``failing``
    (by action and start date) get an unsuccessful envelope.
    """

    def __init__(self, handler: Callable = None):
        self.handler = handler or default_response
        self.calls: List[Tuple[str, Optional[str], Optional[str]]] = []
        self.failing: set = set()
        self.circuit_breaker = CircuitBreaker()

    async def fetch(self, action: str, start_date: str = None, end_date: str = None) -> Dict[str, Any]:
        self.calls.append((action, start_date, end_date))
        if (action, start_date) in self.failing:
            return Envelope.failure("API returned 500")
        result = self.handler(action, start_date, end_date)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def fetch_list(self, topic: str) -> Dict[str, Any]:
        return await self.fetch(topic)

    async def fetch_stock_history(self) -> Dict[str, Any]:
        return await self.fetch("stock-history")

    def calls_starting(self, start_date: str) -> List[Tuple[str, Optional[str], Optional[str]]]:
        return [c for c in self.calls if c[1] == start_date]

    async def close(self) -> None:
        pass


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def store(tmp_path, clock):
    """DuckDB cache store in a temp directory with a fake clock."""
    cache = SalesCacheStore(db_path=tmp_path / "cache" / "sales.duckdb", clock=clock)
    await cache.connect()
    yield cache
    await cache.close()


@pytest.fixture
def fake_client() -> FakePosClient:
    return FakePosClient()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def sync_config() -> SyncConfig:
    """No inter-unit delay and no trailing-day fetches unless a test asks."""
    return SyncConfig(
        unit_delay_seconds=0,
        earliest_year=2023,
        trailing_days=3,
        trailing_days_policy=TrailingDaysPolicy.DISABLED,
    )


@pytest.fixture
def make_summary_day() -> Callable[..., Dict[str, Any]]:
    return summary_day


@pytest.fixture
def three_day_summary() -> Dict[str, Any]:
    """Three days whose gross/net sales sum to 60/48."""
    return ok({"daily_data": [
        summary_day("2024-02-03", 30.0, 24.0, profit=12.0, count=3),
        summary_day("2024-02-01", 10.0, 8.0, profit=2.0, count=1),
        summary_day("2024-02-02", 20.0, 16.0, profit=4.0, count=2),
    ]})


@pytest.fixture
def stock_history() -> Dict[str, Any]:
    return ok({"products": [
        {
            "product_id": "p1",
            "product_name": "Sour Worms",
            "product_sku": "SW-1",
            "movements": [
                {"timestamp": "2024-03-02T09:00:00Z", "new_stock": 12},
                {"timestamp": "2024-03-05T09:00:00Z", "new_stock": 7},
                {"timestamp": "2024-03-04T09:00:00Z", "new_stock": 30},
            ],
        },
        {
            "product_id": "p2",
            "product_name": "Lollipop",
            "movements": [
                {"timestamp": "not-a-date", "new_stock": 99},
                {"timestamp": "2024-01-01T00:00:00", "new_stock": 0},
            ],
        },
        {
            "product_id": "p3",
            "product_name": "Mints",
            "movements": [
                {"timestamp": "2024-03-01T00:00:00Z", "new_stock": 5},
                {"timestamp": "2024-03-01T00:00:00Z", "new_stock": 50},
            ],
        },
        {"product_id": "p4", "product_name": "Toffee", "movements": []},
    ]})
