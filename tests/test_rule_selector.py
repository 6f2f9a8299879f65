"""
Tests for rule selection and fee multipliers.
"""

import pytest
from datetime import date, datetime
from decimal import Decimal

from models.royalty import BlueprintDimension, CalculationBlueprint, DimensionType, RuleType
from services.royalty.errors import UnmatchedTransactionWarning
from services.royalty.rule_selector import (
    RuleSelector,
    fee_multipliers,
    season_for_month,
    sort_rules,
)


@pytest.fixture
def selector():
    return RuleSelector()


def test_lowest_priority_value_wins(selector, make_rule, make_txn):
    general = make_rule(id=1, rule_name="General", priority=20)
    beer = make_rule(id=2, rule_name="Beer Royalty", priority=5, product_categories=["Beer"])

    selection = selector.select(make_txn(), [general, beer])

    assert selection.primary.rule_name == "Beer Royalty"
    assert not selection.unmatched


def test_priority_tie_broken_by_creation_then_id(make_rule):
    older = make_rule(id=9, rule_name="Older", created_at=datetime(2023, 1, 1))
    newer = make_rule(id=3, rule_name="Newer", created_at=datetime(2024, 1, 1))
    low_id = make_rule(id=1, rule_name="Low Id")
    high_id = make_rule(id=2, rule_name="High Id")

    assert [r.rule_name for r in sort_rules([newer, older])] == ["Older", "Newer"]
    assert [r.rule_name for r in sort_rules([high_id, low_id])] == ["Low Id", "High Id"]


def test_empty_and_all_dimensions_are_wildcards(selector, make_rule, make_txn):
    rule = make_rule(product_categories=["All"], territories=[])

    assert selector.matches(rule, make_txn(category=None, product_name=None, territory=None))


def test_set_membership_is_case_insensitive(selector, make_rule, make_txn):
    rule = make_rule(territories=["us", "CA"])

    assert selector.matches(rule, make_txn(territory="US"))
    assert not selector.matches(rule, make_txn(territory="MX"))


def test_product_matches_category_or_product_name(selector, make_rule, make_txn):
    rule = make_rule(product_categories=["Cascade Pale Ale"])

    assert selector.matches(rule, make_txn(category="Beer"))


def test_range_criteria_is_half_open(selector, make_rule, make_txn):
    rule = make_rule(custom_criteria={"quantity": {"kind": "range", "min": 100, "max": 500}})

    assert selector.matches(rule, make_txn(quantity=Decimal("200")))
    assert selector.matches(rule, make_txn(quantity=Decimal("100")))
    assert not selector.matches(rule, make_txn(quantity=Decimal("500")))


def test_custom_criteria_reads_custom_fields(selector, make_rule, make_txn):
    rule = make_rule(custom_criteria={"channel": ["Retail"]})

    assert selector.matches(rule, make_txn(custom_fields={"channel": "retail"}))
    assert not selector.matches(rule, make_txn(custom_fields={"channel": "Online"}))


def test_unmatched_transaction_warns(selector, make_rule, make_txn):
    rule = make_rule(product_categories=["Wine"])

    with pytest.warns(UnmatchedTransactionWarning):
        selection = selector.select(make_txn(category="Beer", product_name="Lager"), [rule])

    assert selection.unmatched
    assert selection.conditions_checked[0]["matched"] is False


def test_collects_additive_adjustment_and_minimum_rules(selector, make_rule, make_txn):
    rules = [
        make_rule(id=1, rule_name="Base"),
        make_rule(id=2, rule_name="Second Base", priority=50),
        make_rule(id=3, rule_name="Bonus", rule_type="bonus", base_rate=Decimal("1")),
        make_rule(id=4, rule_name="Cap", rule_type="cap", cap_amount=Decimal("40")),
        make_rule(id=5, rule_name="Annual Minimum", rule_type="minimum_guarantee",
                  minimum_guarantee=Decimal("85000")),
    ]

    selection = selector.select(make_txn(), rules)

    assert selection.primary.rule_name == "Base"
    assert [r.rule_name for r in selection.additive] == ["Bonus"]
    assert [r.rule_name for r in selection.adjustments] == ["Cap"]
    assert [r.rule_name for r in selection.minimum_guarantees] == ["Annual Minimum"]


def test_inactive_rules_are_ignored(selector, make_rule, make_txn):
    rules = [
        make_rule(id=1, rule_name="Retired", priority=1, is_active=False),
        make_rule(id=2, rule_name="Current", priority=5),
    ]

    assert selector.select(make_txn(), rules).primary.rule_name == "Current"


def test_container_rule_requires_rate_card(selector, make_rule, make_txn):
    rule = make_rule(
        rule_type="container_size_tiered",
        base_rate=None,
        container_size_rates=[{"size": "1-gallon", "base_rate": "1.25"}],
    )

    assert selector.matches(rule, make_txn(container_size="1-Gallon"))
    assert not selector.matches(rule, make_txn(container_size="5-gallon"))


def test_blueprint_reads_bound_erp_field(selector, make_rule, make_txn):
    rule = make_rule(id=11, product_categories=["Beer"])
    blueprint = CalculationBlueprint(
        id=501,
        contract_id=7,
        royalty_rule_id=11,
        name="Standard Royalty",
        rule_type=RuleType.PERCENTAGE,
        dimensions=[BlueprintDimension(
            dimension_type=DimensionType.PRODUCT,
            contract_term="Beer",
            match_value="Beer",
            erp_field_name="item_class_code",
            is_mapped=True,
        )],
        is_fully_mapped=True,
    )
    txn = make_txn(category=None, product_name=None, custom_fields={"item_class_code": "BEER"})

    selection = selector.select(txn, [rule], blueprints={11: blueprint})

    assert selection.primary.id == 11
    assert selection.primary_blueprint.id == 501
    check = selection.conditions_checked[0]["checks"][0]
    assert check["erp_fields"] == ["item_class_code"]
    assert check["passed"] is True


def test_seasonal_and_territory_multipliers(make_rule, make_txn):
    rule = make_rule(
        seasonal_adjustments={"Summer": Decimal("1.15")},
        territory_premiums={"us": Decimal("1.05")},
    )

    july = fee_multipliers(rule, make_txn(transaction_date=date(2024, 7, 4)))
    assert july == [("season:Summer", Decimal("1.15")), ("territory:us", Decimal("1.05"))]

    february = fee_multipliers(rule, make_txn(transaction_date=date(2024, 2, 1), territory="CA"))
    assert february == []


def test_season_for_month():
    assert season_for_month(12) == "holiday"
    assert season_for_month(1) == "holiday"
    assert season_for_month(7) == "summer"
