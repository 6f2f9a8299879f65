"""
Unit tests for tier evaluation.
"""

import pytest
from decimal import Decimal

from models.royalty import ContainerSizeRate, RoundingMode, TierBasis, TierMethod, VolumeTier
from services.royalty.errors import RuleValidationError
from services.royalty.tier_evaluator import (
    TierAccumulator,
    TierEvaluator,
    find_container_rate,
    validate_tiers,
)


# Test Data Fixtures

@pytest.fixture
def evaluator():
    return TierEvaluator()


@pytest.fixture
def per_unit_tiers():
    """Per-unit marginal tiers from the royalty schedule."""
    return [
        VolumeTier(min=0, max=4999, rate=Decimal("1.25")),
        VolumeTier(min=5000, max=14999, rate=Decimal("1.10")),
        VolumeTier(min=15000, max=None, rate=Decimal("1.00")),
    ]


@pytest.fixture
def rebate_tiers():
    """Quarterly purchase rebate tiers (percentages of amount)."""
    return [
        VolumeTier(min=0, max=999999, rate=Decimal("0")),
        VolumeTier(min=1000000, max=2499999, rate=Decimal("2")),
        VolumeTier(min=2500000, max=None, rate=Decimal("4")),
    ]


@pytest.fixture
def contiguous_tiers():
    """Touching bands, so each unit u is charged at the rate of the band with min <= u < max."""
    return [
        VolumeTier(min=0, max=100, rate=Decimal("2.00")),
        VolumeTier(min=100, max=250, rate=Decimal("1.50")),
        VolumeTier(min=250, max=None, rate=Decimal("1.00")),
    ]


def reference_marginal(tiers, quantity):
    """Unit-by-unit sum over the rate step function."""
    total = Decimal("0")
    for unit in range(quantity):
        rate = next(
            t.rate for t in tiers
            if t.min <= unit and (t.max is None or unit < t.max)
        )
        total += rate
    return total


# Tests

def test_marginal_golden_regression(evaluator, per_unit_tiers):
    """6,500 units: 4999 x 1.25 + 1501 x 1.10."""
    result = evaluator.evaluate(per_unit_tiers, Decimal("6500"))

    assert result.amount == Decimal("4999") * Decimal("1.25") + Decimal("1501") * Decimal("1.10")
    assert evaluator.round(result.amount) == Decimal("7899.85")
    assert result.tier_applied == "Tier 2 (5000-14999)"
    assert [band.units for band in result.bands] == [Decimal("4999"), Decimal("1501")]


def test_marginal_band_subtotals_stay_unrounded(evaluator):
    tiers = [
        VolumeTier(min=0, max=10, rate=Decimal("0.333")),
        VolumeTier(min=10, max=None, rate=Decimal("0.111")),
    ]
    result = evaluator.evaluate(tiers, Decimal("15"))

    assert result.bands[0].subtotal == Decimal("3.330")
    assert result.bands[1].subtotal == Decimal("0.555")
    assert evaluator.round(result.amount) == Decimal("3.89")


@pytest.mark.parametrize("quantity", [0, 1, 99, 100, 101, 130, 249, 250, 251, 399])
def test_marginal_matches_unit_by_unit_reference(evaluator, contiguous_tiers, quantity):
    result = evaluator.evaluate(contiguous_tiers, Decimal(quantity))
    assert result.amount == reference_marginal(contiguous_tiers, quantity)


def test_blended_rebate_uses_rate_of_cumulative_tier(evaluator, rebate_tiers):
    """$3,000,000 of quarterly purchases lands in the 4% tier: $120,000."""
    result = evaluator.evaluate(
        rebate_tiers,
        Decimal("3000000"),
        method=TierMethod.TOTAL,
        tier_basis=TierBasis.AMOUNT,
    )

    assert evaluator.round(result.amount) == Decimal("120000.00")
    assert result.applied_rate == Decimal("4")
    assert result.tier_applied.startswith("Tier 3")


def test_blended_transaction_priced_at_period_total(evaluator, rebate_tiers):
    """A single $1,000,000 order is charged 4% when the quarter totals $3,000,000."""
    result = evaluator.evaluate(
        rebate_tiers,
        Decimal("1000000"),
        method=TierMethod.TOTAL,
        tier_basis=TierBasis.AMOUNT,
        cumulative_total=Decimal("3000000"),
    )

    assert evaluator.round(result.amount) == Decimal("40000.00")


def test_blended_below_first_threshold_is_zero(evaluator, rebate_tiers):
    result = evaluator.evaluate(
        rebate_tiers, Decimal("500000"), method=TierMethod.TOTAL, tier_basis=TierBasis.AMOUNT
    )
    assert result.amount == Decimal("0")


def test_container_size_discount_from_cumulative_volume(evaluator):
    rates = [ContainerSizeRate(
        size="1-gallon",
        base_rate=Decimal("1.25"),
        volume_threshold=Decimal("5000"),
        discounted_rate=Decimal("1.10"),
    )]

    discounted = evaluator.evaluate_container_size(rates, "1-Gallon", Decimal("6000"), Decimal("6000"))
    assert evaluator.round(discounted.amount) == Decimal("6600.00")
    assert discounted.applied_rate == Decimal("1.10")

    base = evaluator.evaluate_container_size(rates, "1-gallon", Decimal("4000"), Decimal("4000"))
    assert evaluator.round(base.amount) == Decimal("5000.00")

    assert evaluator.evaluate_container_size(rates, "5-gallon", Decimal("10"), Decimal("10")) is None
    assert find_container_rate(rates, None) is None


def test_negative_quantity_reapplies_sign(evaluator, per_unit_tiers):
    result = evaluator.evaluate(per_unit_tiers, Decimal("-6500"))
    assert evaluator.round(result.amount) == Decimal("-7899.85")
    assert all(band.subtotal < 0 for band in result.bands)


@pytest.mark.parametrize("mode,amount,expected", [
    (RoundingMode.HALF_UP, "1.235", "1.24"),
    (RoundingMode.HALF_UP, "1.234", "1.23"),
    (RoundingMode.DOWN, "1.239", "1.23"),
    (RoundingMode.UP, "1.231", "1.24"),
])
def test_rounding_modes(mode, amount, expected):
    assert TierEvaluator(rounding_mode=mode).round(Decimal(amount)) == Decimal(expected)


def test_validate_tiers_rejects_overlap():
    tiers = [
        VolumeTier(min=0, max=5000, rate=Decimal("1.25")),
        VolumeTier(min=4000, max=None, rate=Decimal("1.10")),
    ]
    with pytest.raises(RuleValidationError, match="overlaps"):
        validate_tiers(tiers, "Volume Royalty")


def test_validate_tiers_rejects_unsorted():
    tiers = [
        VolumeTier(min=5000, max=9999, rate=Decimal("1.10")),
        VolumeTier(min=0, max=4999, rate=Decimal("1.25")),
    ]
    with pytest.raises(RuleValidationError, match="not sorted"):
        validate_tiers(tiers)


def test_validate_tiers_rejects_open_max_before_last():
    tiers = [
        VolumeTier(min=0, max=None, rate=Decimal("1.25")),
        VolumeTier(min=5000, max=None, rate=Decimal("1.10")),
    ]
    with pytest.raises(RuleValidationError, match="open max"):
        validate_tiers(tiers)


def test_validate_tiers_rejects_negative_rate():
    with pytest.raises(RuleValidationError, match="negative rate"):
        validate_tiers([VolumeTier(min=0, max=None, rate=Decimal("-1"))])


def test_validate_tiers_accepts_touching_bands(contiguous_tiers):
    validate_tiers(contiguous_tiers)


def test_empty_tier_table_raises(evaluator):
    with pytest.raises(RuleValidationError):
        evaluator.evaluate([], Decimal("10"))


def test_accumulator_is_immutable():
    start = TierAccumulator()
    after = start.add(("tier", 1, "beer"), Decimal("600")).add(("tier", 1, "beer"), Decimal("600"))

    assert start.total(("tier", 1, "beer")) == Decimal("0")
    assert after.total(("tier", 1, "beer")) == Decimal("1200")
    with pytest.raises(TypeError):
        after.totals[("tier", 1, "beer")] = Decimal("0")
