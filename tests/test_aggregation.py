"""
Tests for line item aggregation and report export.
"""

import pytest
from decimal import Decimal

from services.royalty.aggregation import AggregationReporter, dimension_value


@pytest.fixture
def reporter():
    return AggregationReporter()


@pytest.fixture
def line_items(make_line_item):
    return [
        make_line_item(sales_id=1, territory="US", calculated_fee=Decimal("50.00"),
                       gross_amount=Decimal("1000.00"), dimensions={"channel": "Retail"}),
        make_line_item(sales_id=2, territory="CA", calculated_fee=Decimal("30.00"),
                       gross_amount=Decimal("600.00"), rule_name="Canada Royalty"),
        make_line_item(sales_id=3, territory="US", calculated_fee=Decimal("20.01"),
                       gross_amount=Decimal("400.00"), dimensions={"channel": "Online"}),
        make_line_item(sales_id=4, territory=None, item_class=None, calculated_fee=Decimal("0.00"),
                       gross_amount=Decimal("250.00"), status="unmatched",
                       rule_name=None, rule_type=None),
    ]


def test_groups_in_first_appearance_order(reporter, line_items):
    report = reporter.aggregate(line_items, "territory", calculation_id=42)

    assert report.calculation_id == 42
    assert [row.dimension_value for row in report.rows] == ["US", "CA", "Unknown"]
    us = report.rows[0]
    assert us.transaction_count == 2
    assert us.total_fee == Decimal("70.01")
    assert us.total_sales_amount == Decimal("1400.00")


def test_row_fees_sum_to_run_total(reporter, line_items):
    report = reporter.aggregate(line_items, "territory")

    assert sum(row.total_fee for row in report.rows) == report.totals.total_fee
    assert report.totals.total_fee == Decimal("100.01")
    assert report.totals.transaction_count == 4


def test_percent_of_total_is_zero_when_total_is_zero(reporter, make_line_item):
    items = [make_line_item(calculated_fee=Decimal("0.00")), make_line_item(sales_id=2, calculated_fee=Decimal("0.00"))]

    report = reporter.aggregate(items, "vendor")

    assert report.rows[0].percent_of_total == Decimal("0")


def test_aliases_and_custom_dimensions(line_items):
    assert dimension_value(line_items[0], "vendor") == "Northwind Brewing"
    assert dimension_value(line_items[0], "category") == "Beer"
    assert dimension_value(line_items[0], "channel") == "Retail"
    assert dimension_value(line_items[1], "channel") == "Unknown"


def test_invalid_custom_dimension_key(reporter, line_items):
    with pytest.raises(ValueError, match="Invalid dimension key"):
        reporter.aggregate(line_items, "channel; DROP TABLE")


def test_adjustment_items_are_not_counted_as_transactions(reporter, line_items, make_line_item):
    adjustment = make_line_item(
        sales_id=None, is_adjustment=True, calculated_fee=Decimal("900.00"),
        quantity=Decimal("0"), gross_amount=Decimal("0"),
        rule_name="Annual Minimum", rule_type="minimum_guarantee",
    )

    report = reporter.aggregate(line_items + [adjustment], "rule_name")
    minimum = next(row for row in report.rows if row.dimension_value == "Annual Minimum")

    assert minimum.transaction_count == 0
    assert minimum.total_fee == Decimal("900.00")
    assert report.totals.total_fee == Decimal("1000.01")


def test_csv_export_has_dimension_header_and_totals(reporter, line_items):
    csv = reporter.to_csv(reporter.aggregate(line_items, "territory"))
    lines = csv.strip().splitlines()

    assert lines[0].startswith("territory,transaction_count,")
    assert lines[1].startswith("US,2,")
    assert lines[-1].startswith("Total,4,")


def test_summary_counts_statuses(reporter, line_items):
    summary = reporter.summary(line_items, calculation_id=42)

    assert summary["calculation_id"] == 42
    assert summary["status_counts"] == {"matched": 3, "unmatched": 1}
    assert all(type(v) is int for v in summary["status_counts"].values())
    assert summary["totals"].total_fee == Decimal("100.01")
    assert [row.dimension_value for row in summary["by_rule"]] == [
        "Standard Royalty", "Canada Royalty", "Unknown"
    ]
