"""
Tests for possync.processor module.
"""
import json
import pytest

from possync.models import MetricKind
from possync.processor import SalesDataProcessor


def ok(data):
    return {"success": True, "data": data}


EMPTY = ok({"daily_data": []})


@pytest.fixture
def processor():
    return SalesDataProcessor()


class TestSummaryFold:
    """Multi-day summary aggregation."""

    def test_sums_amounts(self, processor, three_day_summary):
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", three_day_summary, EMPTY, EMPTY, EMPTY)
        metrics = result.summary["data"]["metrics"]

        assert metrics["gross_sales"] == 60.0
        assert metrics["net_sales"] == 48.0
        assert metrics["gross_profit"] == 18.0

    def test_margin_from_totals(self, processor, three_day_summary):
        """18 / 48, not the mean of the per-day margins (25, 25, 50)."""
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", three_day_summary, EMPTY, EMPTY, EMPTY)
        assert result.summary["data"]["metrics"]["profit_margin"] == pytest.approx(37.5)

    def test_transactions(self, processor, three_day_summary):
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", three_day_summary, EMPTY, EMPTY, EMPTY)
        transactions = result.summary["data"]["transactions"]

        assert transactions["total_count"] == 6
        assert transactions["items_sold"] == 6
        assert transactions["average_value"] == pytest.approx(8.0)

    def test_chart_is_chronological(self, processor, three_day_summary):
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", three_day_summary, EMPTY, EMPTY, EMPTY)
        chart = result.summary["data"]["chart_data"]

        assert [p["date"] for p in chart] == ["2024-02-01", "2024-02-02", "2024-02-03"]
        assert [p["x"] for p in chart] == [0, 1, 2]
        assert [p["y"] for p in chart] == [8.0, 16.0, 24.0]

    def test_envelope_shape(self, processor, three_day_summary):
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", three_day_summary, EMPTY, EMPTY, EMPTY)
        assert result.summary["success"] is True
        assert result.summary["action"] == "sales-summary"

    def test_zero_net_sales_gives_zero_ratios(self, processor):
        raw = ok({"daily_data": [{"date": "2024-02-01", "metrics": {"gross_profit": 5}}]})
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", raw, EMPTY, EMPTY, EMPTY)

        assert result.summary["data"]["metrics"]["profit_margin"] == 0.0
        assert result.summary["data"]["transactions"]["average_value"] == 0.0

    def test_malformed_metrics_day_still_counts(self, processor, make_summary_day):
        raw = ok({"daily_data": [
            make_summary_day("2024-02-01", 10.0, 8.0),
            {"date": "2024-02-02", "metrics": "garbage", "transactions": {"total_count": 4}},
        ]})
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", raw, EMPTY, EMPTY, EMPTY)
        data = result.summary["data"]

        assert data["metrics"]["net_sales"] == 8.0
        assert data["transactions"]["total_count"] == 5
        assert data["chart_data"][1] == {"x": 1, "y": 0.0, "date": "2024-02-02"}

    def test_pre_aggregated_payload_is_one_day(self, processor):
        raw = ok({"metrics": {"net_sales": 12.0, "gross_sales": 15.0}, "transactions": {"total_count": 2}})
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", raw, EMPTY, EMPTY, EMPTY)

        assert result.summary["data"]["metrics"]["net_sales"] == 12.0
        assert result.summary["data"]["chart_data"] == [{"x": 0, "y": 12.0, "date": "2024-02-01"}]
        assert list(result.daily) == ["2024-02-01"]

    def test_failed_payload_contributes_nothing(self, processor):
        result = processor.aggregate(
            "2024-02", "2024-02-01", "2024-02-29",
            {"success": False, "data": None, "error": "x"}, EMPTY, EMPTY, EMPTY,
        )
        assert result.summary["data"]["metrics"]["net_sales"] == 0.0
        assert result.daily == {}


class TestIdempotence:

    def test_same_input_same_json(self, processor, three_day_summary):
        items = ok({"daily_data": [{"date": "2024-02-01", "items": [{"item_id": "a", "gross_sales": 3}]}]})

        first = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", three_day_summary, items, EMPTY, EMPTY)
        second = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", three_day_summary, items, EMPTY, EMPTY)

        for (metric, a), (_, b) in zip(first.payloads(), second.payloads()):
            assert json.dumps(a) == json.dumps(b), metric
        assert list(first.daily) == list(second.daily)


class TestItemAndCategoryFold:

    def test_items_grouped_and_sorted(self, processor):
        items = ok({"daily_data": [
            {"date": "2024-02-01", "items": [
                {"item_id": "a", "item_name": "Fudge", "quantity_sold": 2, "gross_sales": 5.0, "net_sales": 4.0, "gross_profit": 1.0},
                {"item_id": "b", "item_name": "Taffy", "quantity_sold": 1, "gross_sales": 20.0},
            ]},
            {"date": "2024-02-02", "items": [
                {"item_id": "a", "item_name": "Fudge", "quantity_sold": 3, "gross_sales": 10.0, "net_sales": 4.0, "gross_profit": 1.0},
            ]},
        ]})
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", EMPTY, items, EMPTY, EMPTY)
        rows = result.items["data"]["items"]

        assert [r["item_id"] for r in rows] == ["b", "a"]
        fudge = rows[1]
        assert fudge["quantity_sold"] == 5
        assert fudge["gross_sales"] == 15.0
        assert fudge["average_price"] == pytest.approx(3.0)
        assert fudge["profit_margin"] == pytest.approx(25.0)

    def test_ties_keep_first_seen_order(self, processor):
        items = ok({"daily_data": [{"date": "2024-02-01", "items": [
            {"item_id": "x", "gross_sales": 5.0},
            {"item_id": "y", "gross_sales": 9.0},
            {"item_id": "z", "gross_sales": 5.0},
        ]}]})
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", EMPTY, items, EMPTY, EMPTY)
        assert [r["item_id"] for r in result.items["data"]["items"]] == ["y", "x", "z"]

    def test_missing_item_id_falls_back_to_position(self, processor):
        items = ok({"daily_data": [{"date": "2024-02-01", "items": [{"item_name": "Mystery", "gross_sales": 1}]}]})
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", EMPTY, items, EMPTY, EMPTY)
        assert result.items["data"]["items"][0]["item_id"] == "unknown_0"

    def test_category_share_of_sales(self, processor):
        categories = ok({"daily_data": [{"date": "2024-02-01", "categories": [
            {"category_id": "c2", "category_name": "Mints", "gross_sales": 10.0},
            {"category_id": "c1", "category_name": "Candy", "gross_sales": 30.0},
        ]}]})
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", EMPTY, EMPTY, categories, EMPTY)
        rows = result.categories["data"]["categories"]

        assert [r["category_id"] for r in rows] == ["c1", "c2"]
        assert rows[0]["percentage_of_sales"] == pytest.approx(75.0)
        assert rows[1]["percentage_of_sales"] == pytest.approx(25.0)


class TestEmployeeFold:
    """Employee grouping and name backfill from receipts."""

    def test_unknown_name_backfilled_from_receipt(self, processor, make_summary_day):
        summary = ok({"daily_data": [
            make_summary_day("2024-02-01", 10.0, 8.0, receipts=[
                {"employee_id": "E1", "employee_name": "Jane", "total": 8.0},
            ]),
        ]})
        employees = ok({"daily_data": [{"date": "2024-02-01", "employees": [
            {"employee_id": "E1", "employee_name": "Unknown", "gross_sales": 10.0,
             "net_sales": 8.0, "transaction_count": 2},
        ]}]})

        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", summary, EMPTY, EMPTY, employees)
        row = result.employees["data"]["employees"][0]

        assert row["employee_name"] == "Jane"
        assert row["average_transaction"] == pytest.approx(4.0)

    def test_top_level_receipts_used(self, processor):
        summary = ok({
            "daily_data": [{"date": "2024-02-01"}],
            "receipts": [{"employee_id": "E2", "employee_name": "Somchai", "total": 1}],
        })
        employees = ok({"daily_data": [{"date": "2024-02-01", "employees": [{"employee_id": "E2", "employee_name": ""}]}]})

        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", summary, EMPTY, EMPTY, employees)
        assert result.employees["data"]["employees"][0]["employee_name"] == "Somchai"

    def test_first_known_receipt_name_wins(self, processor, make_summary_day):
        summary = ok({"daily_data": [
            make_summary_day("2024-02-02", 1, 1, receipts=[{"employee_id": "E1", "employee_name": "Later"}]),
            make_summary_day("2024-02-01", 1, 1, receipts=[
                {"employee_id": "E1", "employee_name": "Unknown"},
                {"employee_id": "E1", "employee_name": "Earlier"},
            ]),
        ]})
        employees = ok({"daily_data": [{"date": "2024-02-01", "employees": [{"employee_id": "E1"}]}]})

        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", summary, EMPTY, EMPTY, employees)
        assert result.employees["data"]["employees"][0]["employee_name"] == "Earlier"

    def test_resolved_name_not_overwritten(self, processor):
        employees = ok({"daily_data": [
            {"date": "2024-02-01", "employees": [{"employee_id": "E1", "employee_name": "Ann", "gross_sales": 1}]},
            {"date": "2024-02-02", "employees": [{"employee_id": "E1", "employee_name": "", "gross_sales": 2}]},
        ]})
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", EMPTY, EMPTY, EMPTY, employees)
        row = result.employees["data"]["employees"][0]

        assert row["employee_name"] == "Ann"
        assert row["gross_sales"] == 3.0

    def test_no_receipt_keeps_unknown(self, processor):
        employees = ok({"daily_data": [{"date": "2024-02-01", "employees": [{"employee_id": "E9"}]}]})
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", EMPTY, EMPTY, EMPTY, employees)
        assert result.employees["data"]["employees"][0]["employee_name"] == "Unknown"


class TestDailyBreakdown:

    def test_days_sorted_and_partial(self, processor, three_day_summary):
        items = ok({"daily_data": [{"date": "2024-02-02", "items": [{"item_id": "a"}]}]})
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", three_day_summary, items, EMPTY, EMPTY)

        assert list(result.daily) == ["2024-02-01", "2024-02-02", "2024-02-03"]
        assert result.daily["2024-02-01"].items is None
        assert result.daily["2024-02-02"].items["data"]["items"] == [{"item_id": "a"}]
        assert [m for m, _ in result.daily["2024-02-01"].payloads()] == [MetricKind.SUMMARY]

    def test_day_summary_has_receipt_chart(self, processor, make_summary_day):
        summary = ok({"daily_data": [make_summary_day("2024-02-01", 10.0, 8.0, receipts=[
            {"employee_id": "E1", "total": 3.0},
            {"employee_id": "E2", "total": 5.0},
        ])]})
        result = processor.aggregate("2024-02", "2024-02-01", "2024-02-29", summary, EMPTY, EMPTY, EMPTY)
        day = result.daily["2024-02-01"].summary["data"]

        assert len(day["receipts"]) == 2
        assert day["chart_data"] == [{"x": 0, "y": 3.0}, {"x": 1, "y": 5.0}]
        assert day["metrics"]["net_sales"] == 8.0


class TestSingleDayProjection:

    def test_summary_projection(self, processor, make_summary_day):
        envelope = ok({"daily_data": [make_summary_day("2024-03-15", 10.0, 8.0, receipts=[{"total": 8.0}])]})
        payload = processor.project_single_day(MetricKind.SUMMARY, envelope)

        assert payload["action"] == "sales-summary"
        assert payload["data"]["metrics"]["net_sales"] == 8.0
        assert payload["data"]["chart_data"] == []
        assert "receipts" not in payload["data"]

    def test_list_projection(self, processor):
        envelope = ok({"daily_data": [{"date": "2024-03-15", "employees": [{"employee_id": "E1"}]}]})
        payload = processor.project_single_day("sales-by-employee", envelope)
        assert payload == {"success": True, "action": "sales-by-employee", "data": {"employees": [{"employee_id": "E1"}]}}

    def test_unsuccessful_returned_unchanged(self, processor):
        envelope = {"success": False, "data": None, "error": "down"}
        assert processor.project_single_day(MetricKind.SUMMARY, envelope) is envelope

    def test_no_daily_data_returned_unchanged(self, processor):
        envelope = ok({"metrics": {"net_sales": 1}})
        assert processor.project_single_day(MetricKind.SUMMARY, envelope) is envelope

    def test_empty_daily_data(self, processor):
        payload = processor.project_single_day(MetricKind.BY_ITEM, ok({"daily_data": []}))
        assert payload["data"] == {"items": []}


class TestStockSnapshot:
    """Replay of stock movements."""

    def _by_id(self, snapshot):
        return {item["product_id"]: item for item in snapshot["data"]["items"]}

    def test_latest_timestamp_wins(self, processor, stock_history):
        items = self._by_id(processor.derive_stock_snapshot(stock_history))
        assert items["p1"]["current_stock"] == 7
        assert items["p1"]["is_low_stock"] is True
        assert items["p1"]["is_out_of_stock"] is False

    def test_unparseable_timestamp_is_oldest(self, processor, stock_history):
        items = self._by_id(processor.derive_stock_snapshot(stock_history))
        assert items["p2"]["current_stock"] == 0
        assert items["p2"]["is_out_of_stock"] is True

    def test_ties_keep_later_element(self, processor, stock_history):
        items = self._by_id(processor.derive_stock_snapshot(stock_history))
        assert items["p3"]["current_stock"] == 50
        assert items["p3"]["is_low_stock"] is False

    def test_no_movements(self, processor, stock_history):
        items = self._by_id(processor.derive_stock_snapshot(stock_history))
        assert items["p4"]["current_stock"] == 0

    def test_snapshot_shape(self, processor, stock_history):
        snapshot = processor.derive_stock_snapshot(stock_history)
        assert snapshot["success"] is True
        assert snapshot["action"] == "stock"
        first = snapshot["data"]["items"][0]
        assert first["sku"] == "SW-1"
        assert first["category"] == "Other"
        assert first["price"] == 0.0

    def test_unsuccessful_envelope(self, processor):
        snapshot = processor.derive_stock_snapshot({"success": False, "data": None, "error": "x"})
        assert snapshot["data"]["items"] == []
