"""
Tests for minimum guarantee enforcement.
"""

import pytest
from datetime import date
from decimal import Decimal

from services.royalty.minimum_guarantee import (
    MinimumGuaranteeEnforcer,
    closes_year,
    period_label,
    quarters_in_period,
)


@pytest.fixture
def enforcer():
    return MinimumGuaranteeEnforcer()


@pytest.fixture
def annual_rule(make_rule):
    return make_rule(
        id=5,
        rule_type="minimum_guarantee",
        rule_name="Annual Minimum",
        base_rate=None,
        minimum_guarantee=Decimal("85000"),
    )


@pytest.fixture
def quarterly_rule(make_rule):
    return make_rule(
        id=6,
        rule_type="minimum_guarantee",
        rule_name="Quarterly Minimum",
        base_rate=None,
        minimum_guarantee=Decimal("100000"),
        quarterly_minimums={"Q1": "10000", "Q2": "10000", "Q3": "10000", "Q4": "10000"},
        annual_true_up=True,
    )


def test_full_year_shortfall(enforcer, annual_rule):
    """$60,000 calculated against an $85,000 annual minimum."""
    result = enforcer.enforce_rule(
        annual_rule, Decimal("60000"), date(2024, 1, 1), date(2024, 12, 31)
    )

    assert result.applied is True
    assert result.period_label == "2024"
    assert result.minimum == Decimal("85000.00")
    assert result.final_total == Decimal("85000.00")
    assert result.shortfall == Decimal("25000.00")
    assert result.rule_id == 5


def test_annual_minimum_prorated_by_quarter(enforcer, annual_rule):
    assert enforcer.minimum_for_period(annual_rule, date(2024, 1, 1), date(2024, 3, 31)) == Decimal("21250.00")
    assert enforcer.minimum_for_period(annual_rule, date(2024, 1, 1), date(2024, 6, 30)) == Decimal("42500.00")


def test_quarterly_schedule_takes_precedence(enforcer, quarterly_rule):
    assert enforcer.minimum_for_period(quarterly_rule, date(2024, 4, 1), date(2024, 6, 30)) == Decimal("10000")
    assert enforcer.minimum_for_period(quarterly_rule, date(2024, 1, 1), date(2024, 6, 30)) == Decimal("20000")


def test_no_shortfall_when_calculated_exceeds_minimum(enforcer, annual_rule):
    result = enforcer.enforce_rule(
        annual_rule, Decimal("21300.50"), date(2024, 1, 1), date(2024, 3, 31)
    )

    assert result.applied is False
    assert result.final_total == Decimal("21300.50")
    assert result.shortfall == Decimal("0.00")


def test_annual_true_up_on_closing_quarter(enforcer, quarterly_rule):
    result = enforcer.enforce_rule(
        quarterly_rule,
        Decimal("12000"),
        date(2024, 10, 1),
        date(2024, 12, 31),
        prior_period_totals=[Decimal("15000"), Decimal("20000"), Decimal("25000")],
    )

    assert result.shortfall == Decimal("0.00")
    assert result.true_up_applied is True
    assert result.true_up_amount == Decimal("28000.00")
    assert result.final_total == Decimal("40000.00")


def test_true_up_skipped_when_year_already_met(enforcer, quarterly_rule):
    result = enforcer.enforce_rule(
        quarterly_rule,
        Decimal("30000"),
        date(2024, 10, 1),
        date(2024, 12, 31),
        prior_period_totals=[Decimal("30000"), Decimal("30000"), Decimal("30000")],
    )

    assert result.true_up_applied is False
    assert result.final_total == Decimal("30000.00")


def test_true_up_counts_earlier_top_ups(enforcer, quarterly_rule):
    """Q1 was billed its 10,000 minimum on zero sales; the year is already covered."""
    result = enforcer.enforce_rule(
        quarterly_rule,
        Decimal("12000"),
        date(2024, 10, 1),
        date(2024, 12, 31),
        prior_period_totals=[Decimal("10000"), Decimal("40000"), Decimal("40000")],
    )

    assert result.true_up_applied is False
    assert result.true_up_amount == Decimal("0")
    assert result.final_total == Decimal("12000.00")


def test_true_up_not_applied_before_year_end(enforcer, quarterly_rule):
    result = enforcer.enforce_rule(
        quarterly_rule, Decimal("0"), date(2024, 7, 1), date(2024, 9, 30), prior_period_totals=[]
    )

    assert result.true_up_applied is False
    assert result.final_total == Decimal("10000.00")


@pytest.mark.parametrize("calculated,minimum", [
    ("0", "500"),
    ("499.99", "500"),
    ("500", "500"),
    ("12345.67", "500"),
])
def test_final_is_max_of_calculated_and_minimum(enforcer, calculated, minimum):
    result = enforcer.enforce(Decimal(calculated), Decimal(minimum))

    assert result.final_total == max(Decimal(calculated), Decimal(minimum)).quantize(Decimal("0.01"))
    assert result.final_total == result.calculated_total + result.shortfall


def test_period_helpers():
    assert quarters_in_period(date(2024, 2, 1), date(2024, 5, 31)) == [(2024, 1), (2024, 2)]
    assert period_label(date(2024, 1, 1), date(2024, 3, 31)) == "2024-Q1"
    assert period_label(date(2024, 1, 1), date(2024, 12, 31)) == "2024"
    assert period_label(date(2024, 2, 1), date(2024, 5, 31)) == "2024-02-01..2024-05-31"
    assert closes_year(date(2024, 12, 31))
    assert not closes_year(date(2024, 9, 30))
