"""
Minimum Guarantee Enforcer.

Formula: FINAL = MAX(Calculated_Period_Total, Minimum_For_Period)

Minimum_For_Period: the quarterly schedule entries for the quarters the period
covers, or the flat annual minimum prorated by covered quarters (a full year
gets the whole annual amount).

Annual true-up: when the rule asks for it and the period closes the year,
the year's total (earlier quarters' final totals + this period) is compared
once against the annual minimum and any residual is added.

Comparison is always at period level, never per transaction.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple
import logging

from models.royalty import MinimumGuaranteeShortfall, RoyaltyRule

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quarters_in_period(period_start: date, period_end: date) -> List[Tuple[int, int]]:
    """(year, quarter) pairs touched by the period, in order."""
    quarters = []
    year, month = period_start.year, period_start.month
    while (year, month) <= (period_end.year, period_end.month):
        key = (year, (month - 1) // 3 + 1)
        if key not in quarters:
            quarters.append(key)
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return quarters


def period_label(period_start: date, period_end: date) -> str:
    quarters = quarters_in_period(period_start, period_end)
    if len(quarters) == 1:
        year, quarter = quarters[0]
        return f"{year}-Q{quarter}"
    if len(quarters) == 4 and period_start == date(period_start.year, 1, 1) \
            and period_end == date(period_start.year, 12, 31):
        return str(period_start.year)
    return f"{period_start.isoformat()}..{period_end.isoformat()}"


def closes_year(period_end: date) -> bool:
    return period_end.month == 12 and period_end.day == 31


class MinimumGuaranteeEnforcer:
    """
    Floors a period's calculated royalty total against a contractual minimum.

    A shortfall is informational: it is reported on the run as a
    MinimumGuaranteeShortfall and carried as an adjustment line item.
    """

    def minimum_for_period(
        self,
        rule: RoyaltyRule,
        period_start: date,
        period_end: date
    ) -> Decimal:
        """
        Minimum owed for the period under a minimum_guarantee rule.

        Args:
            rule: Rule carrying minimum_guarantee and/or quarterly_minimums
            period_start: First day of the period (inclusive)
            period_end: Last day of the period (inclusive)

        Returns:
            Minimum amount for the period (0 when none defined)
        """
        quarters = quarters_in_period(period_start, period_end)

        if rule.quarterly_minimums:
            schedule = {key.strip().upper(): amount for key, amount in rule.quarterly_minimums.items()}
            return sum(
                (schedule.get(f"Q{quarter}", ZERO) for _, quarter in quarters),
                ZERO,
            )

        if rule.minimum_guarantee:
            return (rule.minimum_guarantee * Decimal(len(quarters)) / Decimal(4)).quantize(CENT)

        return ZERO

    def annual_minimum(self, rule: RoyaltyRule) -> Decimal:
        if rule.minimum_guarantee:
            return rule.minimum_guarantee
        return sum(rule.quarterly_minimums.values(), ZERO)

    def enforce(
        self,
        calculated_total: Decimal,
        minimum: Decimal,
        label: Optional[str] = None,
        rule_id: Optional[int] = None
    ) -> MinimumGuaranteeShortfall:
        """
        Apply FINAL = MAX(calculated, minimum).

        Returns:
            MinimumGuaranteeShortfall with applied flag and shortfall amount
        """
        shortfall = max(ZERO, minimum - calculated_total)
        final_total = max(calculated_total, minimum)

        result = MinimumGuaranteeShortfall(
            applied=shortfall > 0,
            period_label=label,
            minimum=minimum.quantize(CENT),
            calculated_total=calculated_total.quantize(CENT),
            final_total=final_total.quantize(CENT),
            shortfall=shortfall.quantize(CENT),
            rule_id=rule_id,
        )

        logger.info(
            f"Minimum guarantee ({label or 'period'}): "
            f"calculated={calculated_total:.2f}, minimum={minimum:.2f}, "
            f"final={final_total:.2f}, shortfall={shortfall:.2f}"
        )

        return result

    def enforce_rule(
        self,
        rule: RoyaltyRule,
        calculated_total: Decimal,
        period_start: date,
        period_end: date,
        prior_period_totals: Sequence[Decimal] = ()
    ) -> MinimumGuaranteeShortfall:
        """
        Enforce a minimum_guarantee rule for a period, with optional true-up.

        Args:
            rule: The contract's minimum_guarantee rule
            calculated_total: Sum of the period's line item fees
            period_start: First day of the period
            period_end: Last day of the period
            prior_period_totals: Final (billed) totals of earlier approved or
                paid periods in the same year, shortfall top-ups included;
                used only by the annual true-up

        Returns:
            MinimumGuaranteeShortfall
        """
        minimum = self.minimum_for_period(rule, period_start, period_end)
        result = self.enforce(
            calculated_total,
            minimum,
            label=period_label(period_start, period_end),
            rule_id=rule.id,
        )

        full_year = len(quarters_in_period(period_start, period_end)) >= 4
        if not (rule.annual_true_up and closes_year(period_end) and not full_year):
            return result

        annual_total = sum(prior_period_totals, ZERO) + result.final_total
        residual = max(ZERO, self.annual_minimum(rule) - annual_total).quantize(CENT)
        if residual <= 0:
            return result

        logger.info(
            f"Annual true-up for {period_end.year}: year total={annual_total:.2f}, "
            f"annual minimum={self.annual_minimum(rule):.2f}, residual={residual:.2f}"
        )

        return result.model_copy(update={
            "applied": True,
            "final_total": result.final_total + residual,
            "true_up_applied": True,
            "true_up_amount": residual,
        })
