"""
Raw-to-aggregate processing for POS sales payloads.

The backend returns day-granular data (``data.daily_data``). This module
folds those days into month/year rollups, projects single days into the
standard per-metric response shape, and replays stock movements into a
point-in-time stock snapshot.

Every function here is pure: identical input always produces identical
output, so re-aggregating a month is safe.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from possync.models import (
    UNKNOWN_NAME,
    CategorySales,
    DayRecord,
    EmployeeSales,
    Envelope,
    ItemSales,
    MetricKind,
    ProductHistory,
    Receipt,
    SummaryMetrics,
    TransactionCounts,
    as_dict,
    as_list,
    is_known_name,
)
from possync.observability import get_logger

logger = get_logger(__name__)

LOW_STOCK_THRESHOLD = 10

_SUMMARY_AMOUNTS = (
    "gross_sales", "refunds", "discounts", "taxes",
    "net_sales", "cost_of_goods", "gross_profit",
)
_ITEM_SUMS = (
    "quantity_sold", "gross_sales", "net_sales", "cost_of_goods",
    "discounts", "gross_profit", "transaction_count",
)
_CATEGORY_SUMS = (
    "quantity_sold", "gross_sales", "net_sales", "cost_of_goods",
    "discounts", "gross_profit", "item_count",
)
_EMPLOYEE_SUMS = (
    "gross_sales", "refunds", "discounts", "net_sales",
    "transaction_count", "refund_count", "items_sold",
)

# Data key each metric's list lives under
_LIST_KEYS = {
    MetricKind.BY_ITEM: "items",
    MetricKind.BY_CATEGORY: "categories",
    MetricKind.BY_EMPLOYEE: "employees",
}


def response(metric, data: Dict[str, Any]) -> Dict[str, Any]:
    """Standard success envelope for a processed metric."""
    action = metric.value if isinstance(metric, MetricKind) else metric
    return {"success": True, "action": action, "data": data}


def _ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    return numerator / denominator * scale if denominator > 0 else 0.0


def _accumulate(target, source, fields: Tuple[str, ...]) -> None:
    for name in fields:
        setattr(target, name, getattr(target, name) + getattr(source, name))


def _chronological(days: List[DayRecord]) -> List[DayRecord]:
    return sorted(days, key=lambda d: d.date)


@dataclass
class DayBreakdown:
    """Per-day projections of the four metrics (None when the day is absent)."""
    summary: Optional[Dict[str, Any]] = None
    items: Optional[Dict[str, Any]] = None
    categories: Optional[Dict[str, Any]] = None
    employees: Optional[Dict[str, Any]] = None

    def payloads(self) -> List[Tuple[MetricKind, Dict[str, Any]]]:
        pairs = [
            (MetricKind.SUMMARY, self.summary),
            (MetricKind.BY_ITEM, self.items),
            (MetricKind.BY_CATEGORY, self.categories),
            (MetricKind.BY_EMPLOYEE, self.employees),
        ]
        return [(metric, payload) for metric, payload in pairs if payload is not None]


@dataclass
class AggregatedMonthResult:
    period_key: str
    start_date: str
    end_date: str
    summary: Dict[str, Any]
    items: Dict[str, Any]
    categories: Dict[str, Any]
    employees: Dict[str, Any]
    daily: Dict[str, DayBreakdown] = field(default_factory=dict)

    def payloads(self) -> List[Tuple[MetricKind, Dict[str, Any]]]:
        """The four rollups in write order."""
        return [
            (MetricKind.SUMMARY, self.summary),
            (MetricKind.BY_ITEM, self.items),
            (MetricKind.BY_CATEGORY, self.categories),
            (MetricKind.BY_EMPLOYEE, self.employees),
        ]


class SalesDataProcessor:
    """Folds raw backend payloads into aggregated responses."""

    # ═══════════════════════════════════════════════════════════════════════
    # MULTI-DAY FOLD
    # ═══════════════════════════════════════════════════════════════════════

    def aggregate(
        self,
        period_key: str,
        start_date: str,
        end_date: str,
        raw_summary: Dict[str, Any],
        raw_items: Dict[str, Any],
        raw_categories: Dict[str, Any],
        raw_employees: Dict[str, Any],
    ) -> AggregatedMonthResult:
        """
        Aggregate the four raw payloads of one period.

        A payload without ``daily_data`` counts as one day dated
        ``start_date``. Missing arrays contribute nothing.
        """
        summary_env = Envelope.from_api(raw_summary)
        summary_days = _chronological(summary_env.days(start_date))
        item_days = _chronological(Envelope.from_api(raw_items).days(start_date))
        category_days = _chronological(Envelope.from_api(raw_categories).days(start_date))
        employee_days = _chronological(Envelope.from_api(raw_employees).days(start_date))

        names = self._employee_names(summary_env, summary_days)

        result = AggregatedMonthResult(
            period_key=period_key,
            start_date=start_date,
            end_date=end_date,
            summary=self.fold_summary(summary_days),
            items=self.fold_items(item_days),
            categories=self.fold_categories(category_days),
            employees=self.fold_employees(employee_days, names),
            daily=self._daily_breakdown(summary_days, item_days, category_days, employee_days),
        )
        logger.debug(
            f"Aggregated {period_key}",
            extra={"days": len(result.daily), "start_date": start_date, "end_date": end_date},
        )
        return result

    def fold_summary(self, days: List[DayRecord]) -> Dict[str, Any]:
        """Sum day metrics and recompute ratios from the totals."""
        totals = SummaryMetrics()
        counts = TransactionCounts()
        chart_data = []

        for index, day in enumerate(days):
            if day.metrics is not None:
                _accumulate(totals, day.metrics, _SUMMARY_AMOUNTS)
            _accumulate(counts, day.transactions, ("total_count", "refund_count", "items_sold"))
            chart_data.append({
                "x": index,
                "y": day.metrics.net_sales if day.metrics else 0.0,
                "date": day.date,
            })

        return response(MetricKind.SUMMARY, {
            "metrics": {
                "gross_sales": totals.gross_sales,
                "refunds": totals.refunds,
                "discounts": totals.discounts,
                "taxes": totals.taxes,
                "net_sales": totals.net_sales,
                "cost_of_goods": totals.cost_of_goods,
                "gross_profit": totals.gross_profit,
                "profit_margin": _ratio(totals.gross_profit, totals.net_sales, 100),
            },
            "transactions": {
                "total_count": counts.total_count,
                "refund_count": counts.refund_count,
                "average_value": _ratio(totals.net_sales, counts.total_count),
                "items_sold": counts.items_sold,
            },
            "chart_data": chart_data,
        })

    def fold_items(self, days: List[DayRecord]) -> Dict[str, Any]:
        groups: Dict[str, ItemSales] = {}
        for day in days:
            for item in day.items:
                existing = groups.get(item.item_id)
                if existing is None:
                    groups[item.item_id] = ItemSales(
                        item_id=item.item_id,
                        item_name=item.item_name,
                        category=item.category,
                        sku=item.sku,
                    )
                    existing = groups[item.item_id]
                _accumulate(existing, item, _ITEM_SUMS)

        rows = [
            {
                "item_id": item.item_id,
                "item_name": item.item_name,
                "category": item.category,
                "sku": item.sku,
                "quantity_sold": item.quantity_sold,
                "gross_sales": item.gross_sales,
                "net_sales": item.net_sales,
                "cost_of_goods": item.cost_of_goods,
                "discounts": item.discounts,
                "gross_profit": item.gross_profit,
                "profit_margin": _ratio(item.gross_profit, item.net_sales, 100),
                "average_price": _ratio(item.gross_sales, item.quantity_sold),
                "transaction_count": item.transaction_count,
            }
            for item in groups.values()
        ]
        rows.sort(key=lambda r: r["gross_sales"], reverse=True)
        return response(MetricKind.BY_ITEM, {"items": rows})

    def fold_categories(self, days: List[DayRecord]) -> Dict[str, Any]:
        groups: Dict[str, CategorySales] = {}
        for day in days:
            for category in day.categories:
                existing = groups.get(category.category_id)
                if existing is None:
                    groups[category.category_id] = CategorySales(
                        category_id=category.category_id,
                        category_name=category.category_name,
                    )
                    existing = groups[category.category_id]
                _accumulate(existing, category, _CATEGORY_SUMS)

        total_sales = sum(c.gross_sales for c in groups.values())
        rows = [
            {
                "category_id": c.category_id,
                "category_name": c.category_name,
                "quantity_sold": c.quantity_sold,
                "gross_sales": c.gross_sales,
                "net_sales": c.net_sales,
                "cost_of_goods": c.cost_of_goods,
                "discounts": c.discounts,
                "gross_profit": c.gross_profit,
                "profit_margin": _ratio(c.gross_profit, c.net_sales, 100),
                "item_count": c.item_count,
                "percentage_of_sales": _ratio(c.gross_sales, total_sales, 100),
            }
            for c in groups.values()
        ]
        rows.sort(key=lambda r: r["gross_sales"], reverse=True)
        return response(MetricKind.BY_CATEGORY, {"categories": rows})

    def fold_employees(self, days: List[DayRecord], names: Dict[str, str] = None) -> Dict[str, Any]:
        """
        Group employees by id, backfilling missing names.

        An empty or "Unknown" name is replaced from ``names`` (built from
        receipts). A resolved name is never replaced by a later unknown one.
        """
        names = names or {}
        groups: Dict[str, EmployeeSales] = {}
        for day in days:
            for employee in day.employees:
                name = employee.employee_name
                if not is_known_name(name):
                    name = names.get(employee.employee_id, name)

                existing = groups.get(employee.employee_id)
                if existing is None:
                    groups[employee.employee_id] = EmployeeSales(
                        employee_id=employee.employee_id,
                        employee_name=name or UNKNOWN_NAME,
                    )
                    existing = groups[employee.employee_id]
                elif not existing.has_name and is_known_name(name):
                    existing.employee_name = name
                _accumulate(existing, employee, _EMPLOYEE_SUMS)

        rows = [
            {
                "employee_id": e.employee_id,
                "employee_name": e.employee_name,
                "gross_sales": e.gross_sales,
                "refunds": e.refunds,
                "discounts": e.discounts,
                "net_sales": e.net_sales,
                "transaction_count": e.transaction_count,
                "refund_count": e.refund_count,
                "items_sold": e.items_sold,
                "average_transaction": _ratio(e.net_sales, e.transaction_count),
            }
            for e in groups.values()
        ]
        rows.sort(key=lambda r: r["gross_sales"], reverse=True)
        return response(MetricKind.BY_EMPLOYEE, {"employees": rows})

    @staticmethod
    def _employee_names(summary: Envelope, days: List[DayRecord]) -> Dict[str, str]:
        """First known receipt name per employee id, in chronological order."""
        receipts: List[Receipt] = [r for day in days for r in day.receipts]
        if summary.has_daily_data:
            top_level = (Receipt.from_api(r) for r in as_list(summary.data.get("receipts")))
            receipts.extend(r for r in top_level if r is not None)

        names: Dict[str, str] = {}
        for receipt in receipts:
            if receipt.employee_id and is_known_name(receipt.employee_name):
                names.setdefault(receipt.employee_id, receipt.employee_name)
        return names

    # ═══════════════════════════════════════════════════════════════════════
    # PER-DAY PROJECTIONS
    # ═══════════════════════════════════════════════════════════════════════

    def _daily_breakdown(
        self,
        summary_days: List[DayRecord],
        item_days: List[DayRecord],
        category_days: List[DayRecord],
        employee_days: List[DayRecord],
    ) -> Dict[str, DayBreakdown]:
        daily: Dict[str, DayBreakdown] = {}

        for day in summary_days:
            daily.setdefault(day.date, DayBreakdown()).summary = self._day_summary(day.raw, with_receipts=True)
        for day in item_days:
            daily.setdefault(day.date, DayBreakdown()).items = self._day_list(MetricKind.BY_ITEM, day.raw)
        for day in category_days:
            daily.setdefault(day.date, DayBreakdown()).categories = self._day_list(MetricKind.BY_CATEGORY, day.raw)
        for day in employee_days:
            daily.setdefault(day.date, DayBreakdown()).employees = self._day_list(MetricKind.BY_EMPLOYEE, day.raw)

        return {day: daily[day] for day in sorted(daily)}

    @staticmethod
    def _day_summary(raw_day: Dict[str, Any], with_receipts: bool) -> Dict[str, Any]:
        data = {
            "metrics": as_dict(raw_day.get("metrics")) or {},
            "transactions": as_dict(raw_day.get("transactions")) or {},
        }
        if with_receipts:
            receipts = as_list(raw_day.get("receipts"))
            data["receipts"] = receipts
            data["chart_data"] = [
                {"x": index, "y": receipt.total}
                for index, receipt in enumerate(
                    r for r in (Receipt.from_api(x) for x in receipts) if r is not None
                )
            ]
        else:
            data["chart_data"] = []
        return response(MetricKind.SUMMARY, data)

    @staticmethod
    def _day_list(metric: MetricKind, raw_day: Dict[str, Any]) -> Dict[str, Any]:
        key = _LIST_KEYS[metric]
        return response(metric, {key: as_list(raw_day.get(key))})

    def project_single_day(self, metric, envelope: Dict[str, Any]) -> Dict[str, Any]:
        """
        Project ``daily_data[0]`` into the metric's standard shape.

        Envelopes that are unsuccessful or carry no ``daily_data`` are
        returned unchanged.
        """
        parsed = Envelope.from_api(envelope)
        if not parsed.success or not parsed.has_daily_data:
            return envelope

        daily = parsed.data["daily_data"]
        first = as_dict(daily[0]) if daily else None
        metric = MetricKind(metric)
        if metric == MetricKind.SUMMARY:
            return self._day_summary(first or {}, with_receipts=False)
        return self._day_list(metric, first or {})

    # ═══════════════════════════════════════════════════════════════════════
    # STOCK SNAPSHOT
    # ═══════════════════════════════════════════════════════════════════════

    def derive_stock_snapshot(self, envelope: Dict[str, Any]) -> Dict[str, Any]:
        """
        Current stock per product from a ``stock-history`` response.

        The latest movement (by parsed timestamp) wins; see
        ``ProductHistory.current_stock``.
        """
        parsed = Envelope.from_api(envelope)
        products: List[ProductHistory] = []
        if parsed.success and parsed.data is not None:
            for position, raw in enumerate(as_list(parsed.data.get("products"))):
                product = ProductHistory.from_api(raw, position)
                if product is not None:
                    products.append(product)

        items = []
        for product in products:
            stock = product.current_stock
            items.append({
                "product_id": product.product_id,
                "product_name": product.product_name,
                "sku": product.product_sku,
                "category": "Other",
                "current_stock": stock,
                "price": 0.0,
                "is_low_stock": stock <= LOW_STOCK_THRESHOLD,
                "is_out_of_stock": stock <= 0,
            })

        return {"success": True, "action": "stock", "data": {"items": items}}
