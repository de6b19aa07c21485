"""
Typed models for POS backend payloads.

Every field is read through a defaulting accessor, so missing or malformed
values degrade to 0 / "" / [] instead of raising. These models are the
single deserialization boundary between raw JSON and the processor.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

UNKNOWN_NAME = "Unknown"


class MetricKind(str, Enum):
    """The four dated sales metrics, valued by their backend action name."""

    SUMMARY = "sales-summary"
    BY_ITEM = "sales-by-item"
    BY_CATEGORY = "sales-by-category"
    BY_EMPLOYEE = "sales-by-employee"

    @classmethod
    def ordered(cls) -> List["MetricKind"]:
        """Fetch/write order for one unit."""
        return [cls.SUMMARY, cls.BY_ITEM, cls.BY_CATEGORY, cls.BY_EMPLOYEE]


class ItemsTopic(str, Enum):
    """Undated blobs kept in the items namespace of the cache."""

    ITEMS_STOCK = "items-stock"
    STOCK_HISTORY = "stock-history"
    INVOICES = "invoices"
    EXPENSES = "expenses"
    PURCHASES = "purchases"


# ═══════════════════════════════════════════════════════════════════════════════
# DEFAULTING ACCESSORS
# ═══════════════════════════════════════════════════════════════════════════════

def as_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def as_str(value: Any, default: str = "") -> str:
    if value is None or isinstance(value, (dict, list)):
        return default
    return str(value)


def as_dict(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


def as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


# ═══════════════════════════════════════════════════════════════════════════════
# SALES FRAGMENTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class SummaryMetrics:
    """Money totals for one day (or one pre-aggregated range)."""
    gross_sales: float = 0.0
    refunds: float = 0.0
    discounts: float = 0.0
    taxes: float = 0.0
    net_sales: float = 0.0
    cost_of_goods: float = 0.0
    gross_profit: float = 0.0

    @classmethod
    def from_api(cls, data: Any) -> Optional["SummaryMetrics"]:
        """None when the metrics object is absent or not an object."""
        data = as_dict(data)
        if data is None:
            return None
        return cls(
            gross_sales=as_float(data.get("gross_sales")),
            refunds=as_float(data.get("refunds")),
            discounts=as_float(data.get("discounts")),
            taxes=as_float(data.get("taxes")),
            net_sales=as_float(data.get("net_sales")),
            cost_of_goods=as_float(data.get("cost_of_goods")),
            gross_profit=as_float(data.get("gross_profit")),
        )


@dataclass
class TransactionCounts:
    total_count: int = 0
    refund_count: int = 0
    items_sold: int = 0

    @classmethod
    def from_api(cls, data: Any) -> "TransactionCounts":
        data = as_dict(data) or {}
        return cls(
            total_count=as_int(data.get("total_count")),
            refund_count=as_int(data.get("refund_count")),
            items_sold=as_int(data.get("items_sold")),
        )


@dataclass
class Receipt:
    employee_id: str = ""
    employee_name: str = ""
    total: float = 0.0

    @classmethod
    def from_api(cls, data: Any) -> Optional["Receipt"]:
        data = as_dict(data)
        if data is None:
            return None
        return cls(
            employee_id=as_str(data.get("employee_id")),
            employee_name=as_str(data.get("employee_name")),
            total=as_float(data.get("total")),
        )


@dataclass
class ItemSales:
    item_id: str
    item_name: str = UNKNOWN_NAME
    category: str = ""
    sku: str = ""
    quantity_sold: int = 0
    gross_sales: float = 0.0
    net_sales: float = 0.0
    cost_of_goods: float = 0.0
    discounts: float = 0.0
    gross_profit: float = 0.0
    transaction_count: int = 0

    @classmethod
    def from_api(cls, data: Any, position: int) -> Optional["ItemSales"]:
        data = as_dict(data)
        if data is None:
            return None
        return cls(
            item_id=as_str(data.get("item_id")) or f"unknown_{position}",
            item_name=as_str(data.get("item_name"), UNKNOWN_NAME),
            category=as_str(data.get("category")),
            sku=as_str(data.get("sku")),
            quantity_sold=as_int(data.get("quantity_sold")),
            gross_sales=as_float(data.get("gross_sales")),
            net_sales=as_float(data.get("net_sales")),
            cost_of_goods=as_float(data.get("cost_of_goods")),
            discounts=as_float(data.get("discounts")),
            gross_profit=as_float(data.get("gross_profit")),
            transaction_count=as_int(data.get("transaction_count")),
        )


@dataclass
class CategorySales:
    category_id: str
    category_name: str = UNKNOWN_NAME
    quantity_sold: int = 0
    gross_sales: float = 0.0
    net_sales: float = 0.0
    cost_of_goods: float = 0.0
    discounts: float = 0.0
    gross_profit: float = 0.0
    item_count: int = 0

    @classmethod
    def from_api(cls, data: Any, position: int) -> Optional["CategorySales"]:
        data = as_dict(data)
        if data is None:
            return None
        return cls(
            category_id=as_str(data.get("category_id")) or f"unknown_{position}",
            category_name=as_str(data.get("category_name"), UNKNOWN_NAME),
            quantity_sold=as_int(data.get("quantity_sold")),
            gross_sales=as_float(data.get("gross_sales")),
            net_sales=as_float(data.get("net_sales")),
            cost_of_goods=as_float(data.get("cost_of_goods")),
            discounts=as_float(data.get("discounts")),
            gross_profit=as_float(data.get("gross_profit")),
            item_count=as_int(data.get("item_count")),
        )


@dataclass
class EmployeeSales:
    employee_id: str
    employee_name: str = UNKNOWN_NAME
    gross_sales: float = 0.0
    refunds: float = 0.0
    discounts: float = 0.0
    net_sales: float = 0.0
    transaction_count: int = 0
    refund_count: int = 0
    items_sold: int = 0

    @classmethod
    def from_api(cls, data: Any, position: int) -> Optional["EmployeeSales"]:
        data = as_dict(data)
        if data is None:
            return None
        return cls(
            employee_id=as_str(data.get("employee_id")) or f"unknown_{position}",
            employee_name=as_str(data.get("employee_name"), UNKNOWN_NAME),
            gross_sales=as_float(data.get("gross_sales")),
            refunds=as_float(data.get("refunds")),
            discounts=as_float(data.get("discounts")),
            net_sales=as_float(data.get("net_sales")),
            transaction_count=as_int(data.get("transaction_count")),
            refund_count=as_int(data.get("refund_count")),
            items_sold=as_int(data.get("items_sold")),
        )

    @property
    def has_name(self) -> bool:
        return is_known_name(self.employee_name)


def is_known_name(name: str) -> bool:
    return bool(name) and name != UNKNOWN_NAME


def _parse_list(values: Any, factory) -> list:
    parsed = []
    for position, value in enumerate(as_list(values)):
        item = factory(value, position)
        if item is not None:
            parsed.append(item)
    return parsed


@dataclass
class DayRecord:
    """
    One entry of ``data.daily_data`` (or a whole pre-aggregated ``data``).

    ``raw`` keeps the original object so per-day projections can pass the
    backend's fields through untouched.
    """
    date: str
    metrics: Optional[SummaryMetrics] = None
    transactions: TransactionCounts = field(default_factory=TransactionCounts)
    receipts: List[Receipt] = field(default_factory=list)
    items: List[ItemSales] = field(default_factory=list)
    categories: List[CategorySales] = field(default_factory=list)
    employees: List[EmployeeSales] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Any, default_date: str = "") -> Optional["DayRecord"]:
        data = as_dict(data)
        if data is None:
            return None
        day = as_str(data.get("date")) or default_date
        if not day:
            return None
        return cls(
            date=day,
            metrics=SummaryMetrics.from_api(data.get("metrics")),
            transactions=TransactionCounts.from_api(data.get("transactions")),
            receipts=[r for r in (Receipt.from_api(x) for x in as_list(data.get("receipts"))) if r],
            items=_parse_list(data.get("items"), ItemSales.from_api),
            categories=_parse_list(data.get("categories"), CategorySales.from_api),
            employees=_parse_list(data.get("employees"), EmployeeSales.from_api),
            raw=data,
        )


@dataclass
class Envelope:
    """Backend response envelope: {success, data, error}."""
    success: bool = False
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, payload: Any) -> "Envelope":
        payload = as_dict(payload) or {}
        error = payload.get("error")
        return cls(
            success=payload.get("success") is True,
            data=as_dict(payload.get("data")),
            error=as_str(error) if error is not None else None,
            raw=payload,
        )

    @staticmethod
    def failure(error: str) -> Dict[str, Any]:
        """Well-formed envelope for a request that produced no usable data."""
        return {"success": False, "data": None, "error": error}

    @property
    def has_daily_data(self) -> bool:
        return self.data is not None and isinstance(self.data.get("daily_data"), list)

    def days(self, default_date: str = "") -> List[DayRecord]:
        """
        Day records carried by this envelope.

        Without ``daily_data`` the whole ``data`` object is one
        day-granular record dated ``default_date``.
        """
        if self.data is None:
            return []
        if self.has_daily_data:
            records = (DayRecord.from_api(d) for d in self.data["daily_data"])
            return [r for r in records if r is not None]
        record = DayRecord.from_api(self.data, default_date)
        return [record] if record else []


# ═══════════════════════════════════════════════════════════════════════════════
# STOCK HISTORY
# ═══════════════════════════════════════════════════════════════════════════════

def parse_timestamp_ms(value: Any) -> Optional[int]:
    """Epoch milliseconds for an ISO-8601 timestamp; naive values are UTC."""
    text = as_str(value).strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


@dataclass
class StockMovement:
    timestamp: str = ""
    new_stock: int = 0

    @classmethod
    def from_api(cls, data: Any, position: int = 0) -> Optional["StockMovement"]:
        data = as_dict(data)
        if data is None:
            return None
        return cls(
            timestamp=as_str(data.get("timestamp")),
            new_stock=as_int(data.get("new_stock")),
        )

    @property
    def sort_key(self) -> float:
        """Unparseable timestamps sort as the oldest possible time."""
        millis = parse_timestamp_ms(self.timestamp)
        return float("-inf") if millis is None else float(millis)


@dataclass
class ProductHistory:
    product_id: str
    product_name: str = UNKNOWN_NAME
    product_sku: str = ""
    movements: List[StockMovement] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Any, position: int = 0) -> Optional["ProductHistory"]:
        data = as_dict(data)
        if data is None:
            return None
        return cls(
            product_id=as_str(data.get("product_id")),
            product_name=as_str(data.get("product_name"), UNKNOWN_NAME),
            product_sku=as_str(data.get("product_sku")),
            movements=_parse_list(data.get("movements"), StockMovement.from_api),
        )

    @property
    def current_stock(self) -> int:
        """``new_stock`` of the latest movement; ties keep the later entry."""
        if not self.movements:
            return 0
        latest = self.movements[0]
        for movement in self.movements[1:]:
            if movement.sort_key >= latest.sort_key:
                latest = movement
        return latest.new_stock
