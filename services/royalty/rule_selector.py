"""
Rule selection: matches a sales transaction to the royalty rules that apply.

Dimensions are tagged MatchCriteria (Wildcard | SetMembership | Range)
evaluated by the pure predicates in this module.

Fee-determining rule types are mutually exclusive: the first match in
precedence order (priority ascending, then earliest creation) wins. Additive,
adjustment and minimum-guarantee rules are collected separately.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging
import warnings

from models.royalty import (
    ADDITIVE_TYPES,
    ADJUSTMENT_TYPES,
    FEE_DETERMINING_TYPES,
    BlueprintDimension,
    CalculationBlueprint,
    DimensionType,
    Range,
    RoyaltyRule,
    RuleType,
    SalesTransaction,
    SetMembership,
    Wildcard,
)
from services.royalty.errors import FormulaEvaluationError, UnmatchedTransactionWarning
from services.royalty.formula_evaluator import to_decimal
from services.royalty.tier_evaluator import find_container_rate

logger = logging.getLogger(__name__)

# Standard sales fields consulted when a bound ERP field is absent
STANDARD_DIMENSION_FIELDS = {
    DimensionType.PRODUCT: ("category", "product_name"),
    DimensionType.TERRITORY: ("territory",),
    DimensionType.CONTAINER_SIZE: ("container_size",),
}


# =============================================================================
# MatchCriteria predicates
# =============================================================================

def matches_wildcard(criteria: Wildcard, values: Sequence[Any]) -> bool:
    return True


def matches_set(criteria: SetMembership, values: Sequence[Any]) -> bool:
    wanted = {v.strip().lower() for v in criteria.values}
    return any(
        value is not None and str(value).strip().lower() in wanted
        for value in values
    )


def matches_range(criteria: Range, values: Sequence[Any]) -> bool:
    for value in values:
        if value is None:
            continue
        try:
            number = to_decimal(value)
        except FormulaEvaluationError:
            continue
        if criteria.min is not None and number < criteria.min:
            continue
        if criteria.max is not None and number >= criteria.max:
            continue
        return True
    return False


CRITERIA_PREDICATES = {
    "wildcard": matches_wildcard,
    "set": matches_set,
    "range": matches_range,
}


def criteria_matches(criteria, values: Sequence[Any]) -> bool:
    """Evaluate one MatchCriteria against the candidate values of a dimension."""
    return CRITERIA_PREDICATES[criteria.kind](criteria, values)


def describe_criteria(criteria) -> str:
    if isinstance(criteria, SetMembership):
        return ", ".join(criteria.values)
    if isinstance(criteria, Range):
        return f"[{criteria.min if criteria.min is not None else '-inf'}, {criteria.max if criteria.max is not None else 'inf'})"
    return "any"


# =============================================================================
# Selection
# =============================================================================

def precedence_key(rule: RoyaltyRule) -> Tuple:
    """Priority ascending, then earliest creation, then id."""
    created = rule.created_at or datetime.max
    if created.tzinfo is not None:
        created = created.replace(tzinfo=None)
    return (rule.priority, created, rule.id if rule.id is not None else float("inf"))


def sort_rules(rules: Iterable[RoyaltyRule]) -> List[RoyaltyRule]:
    return sorted(rules, key=precedence_key)


@dataclass
class RuleSelection:
    """Rules that apply to one transaction."""
    primary: Optional[RoyaltyRule] = None
    primary_blueprint: Optional[CalculationBlueprint] = None
    additive: List[RoyaltyRule] = field(default_factory=list)
    adjustments: List[RoyaltyRule] = field(default_factory=list)
    minimum_guarantees: List[RoyaltyRule] = field(default_factory=list)
    conditions_checked: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def unmatched(self) -> bool:
        return self.primary is None and not self.additive


class RuleSelector:
    """
    Matches a transaction to the contract's active rules.

    Usage:
        selector = RuleSelector()
        selection = selector.select(transaction, rules)
        if selection.unmatched:
            ...
    """

    def blueprint_checks(
        self,
        blueprint: CalculationBlueprint,
        transaction: SalesTransaction
    ) -> List[Dict[str, Any]]:
        """
        Evaluate a blueprint's ERP-bound dimensions against a transaction.

        Values are read from the bound ERP field (standard or custom), falling
        back to the standard field for the dimension. Within one dimension
        type any value may match; every type must match.
        """
        grouped: Dict[DimensionType, List[BlueprintDimension]] = {}
        for dim in blueprint.dimensions:
            if dim.dimension_type != DimensionType.SALES_FIELD:
                grouped.setdefault(dim.dimension_type, []).append(dim)

        results = []
        for dimension_type, dims in grouped.items():
            values = []
            for dim in dims:
                bound = transaction.get_field(dim.erp_field_name) if dim.erp_field_name else None
                values.append(bound)
            values += [transaction.get_field(f) for f in STANDARD_DIMENSION_FIELDS[dimension_type]]
            criteria = SetMembership(values=[d.match_value for d in dims])
            results.append({
                "dimension": dimension_type.value,
                "erp_fields": sorted({d.erp_field_name for d in dims if d.erp_field_name}),
                "expected": describe_criteria(criteria),
                "actual": next((str(v) for v in values if v is not None), None),
                "passed": criteria_matches(criteria, values),
            })
        return results

    def dimension_checks(
        self,
        rule: RoyaltyRule,
        transaction: SalesTransaction,
        blueprint: Optional[CalculationBlueprint] = None
    ) -> List[Dict[str, Any]]:
        """
        Evaluate every dimension of a rule against a transaction.

        Product categories are matched against the category or product name.
        With a blueprint, the product, territory and container-size
        dimensions are read through its ERP field bindings.
        """
        checks = []
        if blueprint is None:
            checks += [
                ("product", rule.product_categories, [transaction.category, transaction.product_name]),
                ("territory", rule.territories, [transaction.territory]),
                ("container_size", rule.container_sizes, [transaction.container_size]),
            ]
        for field_name, criteria in rule.custom_criteria.items():
            checks.append((field_name, criteria, [transaction.get_field(field_name)]))

        results = self.blueprint_checks(blueprint, transaction) if blueprint is not None else []
        for dimension, criteria, values in checks:
            results.append({
                "dimension": dimension,
                "expected": describe_criteria(criteria),
                "actual": next((str(v) for v in values if v is not None), None),
                "passed": criteria_matches(criteria, values),
            })

        # A container-size rule only covers sizes it has a rate card for
        if rule.rule_type == RuleType.CONTAINER_SIZE_TIERED:
            has_card = find_container_rate(rule.container_size_rates, transaction.container_size) is not None
            results.append({
                "dimension": "container_size_rate",
                "expected": ", ".join(r.size for r in rule.container_size_rates),
                "actual": transaction.container_size,
                "passed": has_card,
            })

        return results

    def matches(
        self,
        rule: RoyaltyRule,
        transaction: SalesTransaction,
        blueprint: Optional[CalculationBlueprint] = None
    ) -> bool:
        return all(check["passed"] for check in self.dimension_checks(rule, transaction, blueprint))

    def select(
        self,
        transaction: SalesTransaction,
        rules: Sequence[RoyaltyRule],
        blueprints: Optional[Mapping[int, CalculationBlueprint]] = None
    ) -> RuleSelection:
        """
        Select the rules applying to a transaction.

        Args:
            transaction: Sales transaction
            rules: Active rules for the contract, any order
            blueprints: Fully mapped blueprints keyed by royalty_rule_id;
                rules present here are matched through their ERP bindings

        Returns:
            RuleSelection; ``unmatched`` is True when nothing applies
        """
        selection = RuleSelection()
        blueprints = blueprints or {}

        for rule in sort_rules(r for r in rules if r.is_active):
            blueprint = blueprints.get(rule.id) if rule.id is not None else None
            checks = self.dimension_checks(rule, transaction, blueprint)
            passed = all(check["passed"] for check in checks)
            selection.conditions_checked.append({
                "rule_id": rule.id,
                "rule_name": rule.rule_name,
                "priority": rule.priority,
                "blueprint_id": blueprint.id if blueprint is not None else None,
                "matched": passed,
                "checks": checks,
            })
            if not passed:
                continue

            if rule.rule_type in FEE_DETERMINING_TYPES:
                if selection.primary is None:
                    selection.primary = rule
                    selection.primary_blueprint = blueprint
            elif rule.rule_type in ADDITIVE_TYPES:
                selection.additive.append(rule)
            elif rule.rule_type in ADJUSTMENT_TYPES:
                selection.adjustments.append(rule)
            elif rule.rule_type == RuleType.MINIMUM_GUARANTEE:
                selection.minimum_guarantees.append(rule)

        if selection.unmatched:
            message = (
                f"No royalty rule matched transaction {transaction.id or transaction.transaction_id} "
                f"(category={transaction.category}, territory={transaction.territory})"
            )
            warnings.warn(message, UnmatchedTransactionWarning, stacklevel=2)
            logger.warning(message)

        return selection


# =============================================================================
# Fee multipliers
# =============================================================================

SEASON_MONTHS = {
    "spring": (3, 4, 5),
    "summer": (6, 7, 8),
    "fall": (9, 10, 11),
    "holiday": (12, 1),
    "winter": (2,),
}


def season_for_month(month: int) -> Optional[str]:
    for season, months in SEASON_MONTHS.items():
        if month in months:
            return season
    return None


def fee_multipliers(rule: RoyaltyRule, transaction: SalesTransaction) -> List[Tuple[str, Decimal]]:
    """
    Seasonal and territory multipliers that apply to a rule's fee.

    Returns:
        List of (label, multiplier) pairs; empty when none apply
    """
    multipliers = []

    season = season_for_month(transaction.transaction_date.month)
    if season and rule.seasonal_adjustments:
        for name, multiplier in rule.seasonal_adjustments.items():
            if name.strip().lower() == season:
                multipliers.append((f"season:{name}", multiplier))
                break

    if transaction.territory and rule.territory_premiums:
        territory = transaction.territory.strip().lower()
        for name, multiplier in rule.territory_premiums.items():
            if name.strip().lower() == territory:
                multipliers.append((f"territory:{name}", multiplier))
                break

    return multipliers
