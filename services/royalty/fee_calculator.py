"""
Per-transaction royalty fee calculation for the manual rule path.

Dispatches the selected primary rule to its calculator (fee_calculators
registry keyed by rule type), applies seasonal and territory multipliers,
then additive rules (bonus, usage_based) and adjustments (cap, deduction).
The fee is rounded once at the end; every intermediate value is kept
unrounded in calculation_steps.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Hashable, List, Optional
import logging

from models.royalty import (
    RoyaltyRule,
    RuleType,
    SalesTransaction,
    TierBasis,
    TierMethod,
)
from services.royalty.errors import RuleExecutionFailure
from services.royalty.formula_evaluator import FormulaEvaluator
from services.royalty.rule_selector import RuleSelection, fee_multipliers
from services.royalty.tier_evaluator import TierAccumulator, TierEvaluator, TierResult

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
ZERO = Decimal("0")


@dataclass
class FeeResult:
    """Rounded fee for one transaction plus its audit trail."""
    fee: Decimal
    unrounded_fee: Decimal
    applied_rate: Optional[Decimal] = None
    tier_applied: Optional[str] = None
    rule: Optional[RoyaltyRule] = None
    blueprint_id: Optional[int] = None
    calculation_steps: List[Dict[str, Any]] = field(default_factory=list)
    conditions_checked: List[Dict[str, Any]] = field(default_factory=list)


def _basis(rule: RoyaltyRule, transaction: SalesTransaction) -> Decimal:
    if rule.tier_basis == TierBasis.AMOUNT:
        return transaction.gross_amount
    return transaction.quantity


def accumulation_key(rule: RoyaltyRule, transaction: SalesTransaction) -> Optional[Hashable]:
    """
    Group key under which a transaction adds to a cumulative period total.

    Blended tiers group by (rule, category); container-size rules by
    (rule, size). Other rules need no cumulative state.
    """
    rule_key = rule.id if rule.id is not None else rule.rule_name
    if rule.rule_type == RuleType.TIERED and rule.tier_method == TierMethod.TOTAL:
        return ("tier", rule_key, (transaction.category or "").strip().lower())
    if rule.rule_type == RuleType.CONTAINER_SIZE_TIERED:
        return ("size", rule_key, (transaction.container_size or "").strip().lower())
    return None


class RoyaltyFeeCalculator:
    """
    Computes the fee for one transaction from its RuleSelection.

    Usage:
        calculator = RoyaltyFeeCalculator()
        totals = calculator.accumulate(txn, selection, TierAccumulator())
        result = calculator.calculate(txn, selection, totals)
    """

    def __init__(
        self,
        tier_evaluator: Optional[TierEvaluator] = None,
        formula_evaluator: Optional[FormulaEvaluator] = None,
        safety_tolerance: Optional[Decimal] = Decimal("1.01")
    ):
        """
        Args:
            tier_evaluator: Evaluator for tier and container-size rules
            formula_evaluator: Evaluator for formula rules
            safety_tolerance: Reject fees above gross_amount x tolerance;
                None disables the guard
        """
        self.tier_evaluator = tier_evaluator or TierEvaluator()
        self.formula_evaluator = formula_evaluator or FormulaEvaluator()
        self.safety_tolerance = safety_tolerance
        self.fee_calculators: Dict[RuleType, Callable[..., TierResult]] = {
            RuleType.PERCENTAGE: self._percentage,
            RuleType.TIERED: self._tiered,
            RuleType.CONTAINER_SIZE_TIERED: self._container_size,
            RuleType.FORMULA: self._formula,
            RuleType.FIXED_FEE: self._fixed_fee,
        }

    # -------------------------------------------------------------------------
    # Primary fee calculators
    # -------------------------------------------------------------------------

    def _percentage(self, rule, transaction, period_totals) -> TierResult:
        rate = rule.base_rate or ZERO
        return TierResult(
            amount=transaction.gross_amount * rate / HUNDRED,
            applied_rate=rate,
            tier_applied=None,
        )

    def _tiered(self, rule, transaction, period_totals) -> TierResult:
        key = accumulation_key(rule, transaction)
        cumulative = period_totals.total(key) if key is not None else None
        return self.tier_evaluator.evaluate(
            rule.volume_tiers,
            _basis(rule, transaction),
            method=rule.tier_method,
            tier_basis=rule.tier_basis,
            cumulative_total=cumulative,
        )

    def _container_size(self, rule, transaction, period_totals) -> TierResult:
        key = accumulation_key(rule, transaction)
        result = self.tier_evaluator.evaluate_container_size(
            rule.container_size_rates,
            transaction.container_size,
            transaction.quantity,
            cumulative_volume=period_totals.total(key),
        )
        if result is None:
            raise RuleExecutionFailure(
                f"No container size rate for '{transaction.container_size}' in rule '{rule.rule_name}'",
                transaction.id,
            )
        return result

    def _formula(self, rule, transaction, period_totals) -> TierResult:
        if rule.formula_definition is None:
            raise RuleExecutionFailure(f"Formula rule '{rule.rule_name}' has no formula", transaction.id)
        record = transaction.as_record()
        if rule.base_rate is not None:
            record.setdefault("base_rate", rule.base_rate)
        amount = self.formula_evaluator.evaluate_decimal(rule.formula_definition, record)
        rate = amount / transaction.gross_amount * HUNDRED if transaction.gross_amount else None
        return TierResult(amount=amount, applied_rate=rate, tier_applied=None)

    def _fixed_fee(self, rule, transaction, period_totals) -> TierResult:
        amount = rule.fixed_amount or ZERO
        sign = -1 if transaction.quantity < 0 else 1
        return TierResult(amount=amount * sign, applied_rate=amount, tier_applied=None)

    # -------------------------------------------------------------------------
    # Additive and adjustment rules
    # -------------------------------------------------------------------------

    def _additive_amount(self, rule: RoyaltyRule, transaction: SalesTransaction) -> Decimal:
        if rule.rule_type == RuleType.USAGE_BASED:
            if rule.formula_definition is not None:
                return self.formula_evaluator.evaluate_decimal(rule.formula_definition, transaction.as_record())
            return transaction.quantity * (rule.base_rate or ZERO)
        # bonus
        if rule.base_rate is not None:
            return transaction.gross_amount * rule.base_rate / HUNDRED
        return rule.fixed_amount or ZERO

    def _adjust(self, rule: RoyaltyRule, fee: Decimal) -> Decimal:
        if rule.rule_type == RuleType.CAP and rule.cap_amount is not None:
            return min(fee, rule.cap_amount)
        if rule.rule_type == RuleType.DEDUCTION:
            if rule.base_rate is not None:
                reduced = fee - fee * rule.base_rate / HUNDRED
            else:
                reduced = fee - (rule.fixed_amount or ZERO)
            return max(reduced, ZERO) if fee >= 0 else reduced
        return fee

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def accumulate(
        self,
        transaction: SalesTransaction,
        selection: RuleSelection,
        accumulator: TierAccumulator
    ) -> TierAccumulator:
        """Add a transaction to the cumulative period totals its primary rule needs."""
        rule = selection.primary
        if rule is None:
            return accumulator
        key = accumulation_key(rule, transaction)
        if key is None:
            return accumulator
        amount = transaction.quantity if rule.rule_type == RuleType.CONTAINER_SIZE_TIERED else _basis(rule, transaction)
        return accumulator.add(key, amount)

    def check_safety(self, transaction: SalesTransaction, amount: Decimal, source: str) -> None:
        """
        Reject a fee above gross_amount x safety_tolerance.

        Applies to every priced fee, whether it came from a royalty rule or an
        ERP rule set. Sales with no positive gross amount are not checked.

        Raises:
            RuleExecutionFailure: If the fee exceeds the tolerated sale amount
        """
        if (
            self.safety_tolerance is not None
            and transaction.gross_amount > 0
            and amount > transaction.gross_amount * self.safety_tolerance
        ):
            raise RuleExecutionFailure(
                f"Royalty ({amount:.2f}) exceeds sale amount ({transaction.gross_amount:.2f}) "
                f"for {source}; check tier rates or formula",
                transaction.id,
            )

    def calculate(
        self,
        transaction: SalesTransaction,
        selection: RuleSelection,
        period_totals: Optional[TierAccumulator] = None
    ) -> FeeResult:
        """
        Calculate the fee for one matched transaction.

        Args:
            transaction: Sales transaction
            selection: Rules selected for it (primary and/or additive)
            period_totals: Closing cumulative totals for the period

        Returns:
            FeeResult with the rounded fee

        Raises:
            RuleExecutionFailure: If the rule cannot be evaluated or the fee
                fails the safety guard
        """
        period_totals = period_totals or TierAccumulator()
        rule = selection.primary
        steps: List[Dict[str, Any]] = []
        amount = ZERO
        applied_rate = None
        tier_applied = None

        if rule is not None:
            calculator = self.fee_calculators.get(rule.rule_type)
            if calculator is None:
                raise RuleExecutionFailure(f"Unsupported rule type: {rule.rule_type.value}", transaction.id)

            result = calculator(rule, transaction, period_totals)
            amount, applied_rate, tier_applied = result.amount, result.applied_rate, result.tier_applied
            steps.append({
                "step": "primary",
                "rule": rule.rule_name,
                "rule_type": rule.rule_type.value,
                "amount": str(result.amount),
                "applied_rate": str(applied_rate) if applied_rate is not None else None,
                "tier_applied": tier_applied,
                "bands": [band.as_dict() for band in result.bands],
            })

            for label, multiplier in fee_multipliers(rule, transaction):
                amount = amount * multiplier
                steps.append({"step": "multiplier", "label": label, "multiplier": str(multiplier), "amount": str(amount)})

        for extra in selection.additive:
            addition = self._additive_amount(extra, transaction)
            amount += addition
            steps.append({"step": "additive", "rule": extra.rule_name, "amount": str(addition)})

        for adjustment in selection.adjustments:
            adjusted = self._adjust(adjustment, amount)
            if adjusted != amount:
                steps.append({
                    "step": adjustment.rule_type.value,
                    "rule": adjustment.rule_name,
                    "before": str(amount),
                    "after": str(adjusted),
                })
            amount = adjusted

        self.check_safety(transaction, amount, f"rule '{rule.rule_name if rule else 'additive'}'")

        fee = self.tier_evaluator.round(amount)
        steps.append({"step": "round", "unrounded": str(amount), "fee": str(fee)})

        return FeeResult(
            fee=fee,
            unrounded_fee=amount,
            applied_rate=applied_rate,
            tier_applied=tier_applied,
            rule=rule,
            blueprint_id=selection.primary_blueprint.id if selection.primary_blueprint else None,
            calculation_steps=steps,
            conditions_checked=selection.conditions_checked,
        )
