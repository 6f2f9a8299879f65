"""
ERP mapping rule execution.

The alternate calculation path: a rule set of ERP mapping rules, each with an
ordered condition chain, a source -> target transformation and a list of
outputs. Produces the same line item shape as the manual rule path.

Condition chains are evaluated strictly left to right as a boolean fold:

    result = c0
    result = result <op_1> c1
    result = result <op_2> c2 ...

where <op_i> is condition i's own logic_operator (the first condition's
operator is ignored). There is no AND-before-OR precedence.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, ROUND_UP
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import logging
import time

from models.formula import parse_expression
from models.royalty import (
    ConditionOperator,
    ErpExecutionLog,
    ErpMappingCondition,
    ErpMappingOutput,
    ErpMappingRule,
    ErpMappingRuleSet,
    ExecutionStatus,
    LogicOperator,
    OutputCalculationType,
    OutputRoundingMode,
    SalesTransaction,
    TierBasis,
    TierMethod,
    TransformationType,
    VolumeTier,
)
from services.royalty.errors import FormulaEvaluationError, RuleExecutionFailure
from services.royalty.formula_evaluator import FormulaEvaluator, to_decimal
from services.royalty.tier_evaluator import TierAccumulator, TierEvaluator, validate_tiers

logger = logging.getLogger(__name__)

OUTPUT_ROUNDING = {
    OutputRoundingMode.UP: ROUND_UP,
    OutputRoundingMode.DOWN: ROUND_DOWN,
    OutputRoundingMode.NEAREST: ROUND_HALF_UP,
}


# =============================================================================
# Conditions
# =============================================================================

def _as_number(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return to_decimal(value)
    except FormulaEvaluationError:
        return None


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip()).date()
        except ValueError:
            return None
    return None


def _normalize(value: Any) -> str:
    return str(value).strip().lower() if value is not None else ""


def _ordered_pair(field_value: Any, compare_value: Any) -> Optional[Tuple[Any, Any]]:
    """Comparable (field, compare) pair: dates if the field is a date, else numbers."""
    if isinstance(field_value, (date, datetime)):
        left, right = _as_date(field_value), _as_date(compare_value)
    else:
        left, right = _as_number(field_value), _as_number(compare_value)
    if left is None or right is None:
        return None
    return left, right


def _equals(field_value: Any, compare_value: Any) -> bool:
    pair = _ordered_pair(field_value, compare_value)
    if pair is not None:
        return pair[0] == pair[1]
    return _normalize(field_value) == _normalize(compare_value)


def _value_list(condition: ErpMappingCondition) -> List[str]:
    if condition.value_list:
        return [_normalize(v) for v in condition.value_list]
    if isinstance(condition.value, str):
        return [_normalize(v) for v in condition.value.split(",") if v.strip()]
    if condition.value is not None:
        return [_normalize(condition.value)]
    return []


def evaluate_condition(condition: ErpMappingCondition, record: Mapping[str, Any]) -> bool:
    """
    Check one condition against a record.

    Numeric operands may carry "$" and "," formatting. Comparisons against
    missing or non-numeric values are False rather than errors.
    """
    field_value = record.get(condition.field_name)
    op = condition.operator

    if op == ConditionOperator.IS_EMPTY:
        return field_value is None or _normalize(field_value) == ""
    if op == ConditionOperator.IS_NOT_EMPTY:
        return field_value is not None and _normalize(field_value) != ""
    if op == ConditionOperator.NOT_NULL:
        return field_value is not None

    if op == ConditionOperator.EQUALS:
        return _equals(field_value, condition.value)
    if op == ConditionOperator.NOT_EQUALS:
        return not _equals(field_value, condition.value)

    text, needle = _normalize(field_value), _normalize(condition.value)
    if op == ConditionOperator.CONTAINS:
        return needle in text
    if op == ConditionOperator.NOT_CONTAINS:
        return needle not in text
    if op == ConditionOperator.STARTS_WITH:
        return text.startswith(needle)
    if op == ConditionOperator.ENDS_WITH:
        return text.endswith(needle)
    if op == ConditionOperator.IN:
        return text in _value_list(condition)
    if op == ConditionOperator.NOT_IN:
        return text not in _value_list(condition)

    if op == ConditionOperator.BETWEEN:
        low = _ordered_pair(field_value, condition.value)
        high = _ordered_pair(field_value, condition.value_end)
        if low is None or high is None:
            return False
        return low[1] <= low[0] <= high[1]

    pair = _ordered_pair(field_value, condition.value)
    if pair is None:
        return False
    left, right = pair
    if op == ConditionOperator.GREATER_THAN:
        return left > right
    if op == ConditionOperator.LESS_THAN:
        return left < right
    if op == ConditionOperator.GTE:
        return left >= right
    if op == ConditionOperator.LTE:
        return left <= right

    raise RuleExecutionFailure(f"Unsupported condition operator: {op}")


def evaluate_conditions(conditions: Sequence[ErpMappingCondition], record: Mapping[str, Any]) -> bool:
    """Fold an ordered condition chain left to right. An empty chain passes."""
    ordered = sorted(conditions, key=lambda c: c.order_index)
    if not ordered:
        return True

    result = evaluate_condition(ordered[0], record)
    for condition in ordered[1:]:
        outcome = evaluate_condition(condition, record)
        if condition.logic_operator == LogicOperator.OR:
            result = result or outcome
        else:
            result = result and outcome
    return result


# =============================================================================
# Executor
# =============================================================================

@dataclass
class ErpExecutionResult:
    """Outcome of running one transaction through a rule set."""
    record: Dict[str, Any]
    outputs: Dict[str, Decimal] = field(default_factory=dict)
    fee: Optional[Decimal] = None
    applied_rate: Optional[Decimal] = None
    tier_applied: Optional[str] = None
    rules_applied: List[str] = field(default_factory=list)
    conditions_checked: List[Dict[str, Any]] = field(default_factory=list)
    calculation_steps: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    log: Optional[ErpExecutionLog] = None


def tier_group_key(rule_set: ErpMappingRuleSet, output: ErpMappingOutput, record: Mapping[str, Any]) -> Tuple:
    """Accumulator key for a tiered output: (rule set, output field, group value)."""
    group_by = output.calculation_config.get("group_by")
    group_value = _normalize(record.get(group_by)) if group_by else ""
    return ("erp", rule_set.id or rule_set.name, output.output_field, group_value)


class ErpMappingRuleExecutor:
    """
    Executes ERP mapping rule sets against sales transactions.

    Tiered outputs reuse TierEvaluator. Blended tiers read the group's period
    total from a TierAccumulator built by accumulate() over the whole period
    before execute() prices each transaction.

    Usage:
        executor = ErpMappingRuleExecutor()
        totals = TierAccumulator()
        for txn in transactions:
            totals = executor.accumulate(rule_set, txn, totals)
        for txn in transactions:
            result = executor.execute(rule_set, txn, totals)
    """

    def __init__(
        self,
        tier_evaluator: Optional[TierEvaluator] = None,
        formula_evaluator: Optional[FormulaEvaluator] = None,
        lookup_tables: Optional[Dict[str, Dict[str, Any]]] = None
    ):
        """
        Args:
            tier_evaluator: Evaluator for tiered outputs
            formula_evaluator: Evaluator for formula transformations/outputs
            lookup_tables: Named reference tables for 'lookup' transformations
        """
        self.tier_evaluator = tier_evaluator or TierEvaluator()
        self.formula_evaluator = formula_evaluator or FormulaEvaluator()
        self.lookup_tables = lookup_tables or {}

    # -------------------------------------------------------------------------
    # Transformations
    # -------------------------------------------------------------------------

    def _lookup(self, rule: ErpMappingRule, record: Mapping[str, Any], warnings: List[str]) -> Any:
        config = rule.transformation_config
        table = config.get("lookup_table")
        if table is None:
            table = self.lookup_tables.get(config.get("table_name", ""))
        if table is None:
            warnings.append(f"{rule.name}: lookup table not found")
            logger.warning(f"ERP rule '{rule.name}': lookup table not found, value set to null")
            return None

        key = _normalize(record.get(rule.source_field))
        for candidate, value in table.items():
            if _normalize(candidate) == key:
                return value

        warnings.append(f"{rule.name}: no lookup entry for '{record.get(rule.source_field)}'")
        logger.warning(
            f"ERP rule '{rule.name}': no lookup entry for "
            f"{rule.source_field}='{record.get(rule.source_field)}', value set to null"
        )
        return config.get("default")

    def _conditional(self, rule: ErpMappingRule, record: Mapping[str, Any]) -> Any:
        config = rule.transformation_config
        for branch in config.get("branches", []):
            conditions = [ErpMappingCondition.model_validate(c) for c in branch.get("conditions", [])]
            if evaluate_conditions(conditions, record):
                return self.formula_evaluator.evaluate(parse_expression(branch["expression"]), record)
        if config.get("default") is not None:
            return self.formula_evaluator.evaluate(parse_expression(config["default"]), record)
        return None

    def transform(self, rule: ErpMappingRule, record: Mapping[str, Any], warnings: List[str]) -> Any:
        """Compute a rule's target value from the working record."""
        kind = rule.transformation_type

        if kind == TransformationType.DIRECT:
            if rule.source_field:
                return record.get(rule.source_field)
            return rule.transformation_config.get("value")

        if kind == TransformationType.LOOKUP:
            return self._lookup(rule, record, warnings)

        if kind == TransformationType.FORMULA:
            expression = rule.transformation_config.get("expression")
            if expression is None:
                raise RuleExecutionFailure(f"ERP rule '{rule.name}' has no formula expression")
            return self.formula_evaluator.evaluate(parse_expression(expression), record)

        if kind == TransformationType.CONDITIONAL:
            return self._conditional(rule, record)

        raise RuleExecutionFailure(f"Unsupported transformation type: {kind}")

    # -------------------------------------------------------------------------
    # Outputs
    # -------------------------------------------------------------------------

    def _round_output(self, output: ErpMappingOutput, value: Decimal) -> Decimal:
        if output.rounding_mode == OutputRoundingMode.NONE:
            return value
        quantum = Decimal(1).scaleb(-output.decimal_places)
        return value.quantize(quantum, rounding=OUTPUT_ROUNDING[output.rounding_mode])

    def _tier_settings(self, output: ErpMappingOutput):
        config = output.calculation_config
        tiers = [VolumeTier.model_validate(t) for t in config.get("tiers", [])]
        validate_tiers(tiers, output.output_field)
        method = TierMethod(config.get("tier_method", TierMethod.MARGINAL.value))
        basis = TierBasis(config.get("tier_basis", TierBasis.QUANTITY.value))
        basis_field = config.get("basis_field", "quantity" if basis == TierBasis.QUANTITY else "gross_amount")
        return tiers, method, basis, basis_field

    def compute_output(
        self,
        rule_set: ErpMappingRuleSet,
        output: ErpMappingOutput,
        record: Mapping[str, Any],
        period_totals: TierAccumulator
    ) -> Tuple[Decimal, Dict[str, Any]]:
        """
        Compute one output value.

        Returns:
            (rounded value, audit step dict)
        """
        config = output.calculation_config
        step: Dict[str, Any] = {"output": output.output_field, "type": output.calculation_type.value}

        if output.calculation_type == OutputCalculationType.PERCENTAGE:
            basis = to_decimal(record.get(config.get("basis_field", "gross_amount")) or 0)
            rate = to_decimal(record.get(config["rate_field"]) if "rate_field" in config else config.get("rate", 0))
            value = basis * rate / Decimal("100")
            step.update({"basis": str(basis), "rate": str(rate)})

        elif output.calculation_type == OutputCalculationType.FIXED:
            amount = to_decimal(config.get("amount", 0))
            per_unit_field = config.get("per_unit_field")
            units = to_decimal(record.get(per_unit_field) or 0) if per_unit_field else Decimal("1")
            value = amount * units
            step.update({"amount": str(amount), "units": str(units)})

        elif output.calculation_type == OutputCalculationType.TIERED:
            tiers, method, tier_basis, basis_field = self._tier_settings(output)
            basis = to_decimal(record.get(basis_field) or 0)
            key = tier_group_key(rule_set, output, record)
            cumulative = period_totals.total(key) if method == TierMethod.TOTAL else None
            result = self.tier_evaluator.evaluate(
                tiers, basis, method=method, tier_basis=tier_basis, cumulative_total=cumulative
            )
            value = result.amount
            step.update({
                "basis": str(basis),
                "tier_applied": result.tier_applied,
                "applied_rate": str(result.applied_rate),
                "bands": [band.as_dict() for band in result.bands],
            })

        elif output.calculation_type == OutputCalculationType.FORMULA:
            expression = config.get("expression")
            if expression is None:
                raise RuleExecutionFailure(f"Output '{output.output_field}' has no formula expression")
            value = self.formula_evaluator.evaluate_decimal(parse_expression(expression), record)

        else:
            raise RuleExecutionFailure(f"Unsupported output type: {output.calculation_type}")

        rounded = self._round_output(output, value)
        step["value"] = str(rounded)
        return rounded, step

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _resolve(self, rule_set: ErpMappingRuleSet, transaction: SalesTransaction):
        """Run conditions and transformations only; yields (rule, passed, record) per rule."""
        record = transaction.as_record()
        warnings: List[str] = []
        for rule in sorted((r for r in rule_set.rules if r.is_active), key=lambda r: r.priority):
            passed = evaluate_conditions(rule.conditions, record)
            if passed:
                record[rule.target_field] = self.transform(rule, record, warnings)
            yield rule, passed, record, warnings

    def claims(self, rule_set: ErpMappingRuleSet, transaction: SalesTransaction) -> bool:
        """
        Whether execute() would settle this transaction under the rule set.

        True when a rule whose conditions pass writes the fee output field, or
        when resolving the rules raises (execute() then records a failed
        item). Outputs are not computed, so no period totals are needed.
        """
        try:
            for rule, passed, _, _ in self._resolve(rule_set, transaction):
                if passed and any(o.output_field == rule_set.fee_output_field for o in rule.outputs):
                    return True
        except Exception:
            return True
        return False

    def accumulate(
        self,
        rule_set: ErpMappingRuleSet,
        transaction: SalesTransaction,
        accumulator: TierAccumulator
    ) -> TierAccumulator:
        """
        Add a transaction's basis for blended tiered outputs to the accumulator.

        Transactions that fail to resolve contribute nothing; the failure is
        recorded when execute() runs.
        """
        try:
            for rule, passed, record, _ in self._resolve(rule_set, transaction):
                if not passed:
                    continue
                for output in rule.outputs:
                    if output.calculation_type != OutputCalculationType.TIERED:
                        continue
                    config = output.calculation_config
                    if config.get("tier_method") != TierMethod.TOTAL.value:
                        continue
                    basis_field = config.get(
                        "basis_field",
                        "gross_amount" if config.get("tier_basis") == TierBasis.AMOUNT.value else "quantity",
                    )
                    accumulator = accumulator.add(
                        tier_group_key(rule_set, output, record),
                        to_decimal(record.get(basis_field) or 0),
                    )
        except Exception as e:
            logger.warning(f"Skipping transaction {transaction.id} in tier accumulation: {e}")
        return accumulator

    def execute(
        self,
        rule_set: ErpMappingRuleSet,
        transaction: SalesTransaction,
        period_totals: Optional[TierAccumulator] = None
    ) -> ErpExecutionResult:
        """
        Execute a rule set against one transaction.

        Never raises for a transaction-level error: the result's log carries
        status 'failed' and the error message, and ``fee`` is None.

        Args:
            rule_set: Active ERP mapping rule set
            transaction: Sales transaction
            period_totals: Closing tier accumulator for the period

        Returns:
            ErpExecutionResult with outputs, fee and execution log
        """
        period_totals = period_totals or TierAccumulator()
        started = time.perf_counter()
        input_data = {k: _jsonable(v) for k, v in transaction.as_record().items()}
        result = ErpExecutionResult(record={})

        try:
            for rule, passed, record, warnings in self._resolve(rule_set, transaction):
                result.conditions_checked.append({
                    "rule_name": rule.name,
                    "priority": rule.priority,
                    "matched": passed,
                    "conditions": [c.model_dump(mode="json") for c in rule.conditions],
                })
                if not passed:
                    continue

                result.rules_applied.append(rule.name)
                result.calculation_steps.append({
                    "rule": rule.name,
                    "transformation": rule.transformation_type.value,
                    "target_field": rule.target_field,
                    "value": _jsonable(record.get(rule.target_field)),
                })

                for output in rule.outputs:
                    value, step = self.compute_output(rule_set, output, record, period_totals)
                    record[output.output_field] = value
                    result.outputs[output.output_field] = value
                    result.calculation_steps.append(step)
                    if output.output_field == rule_set.fee_output_field:
                        result.applied_rate = _step_rate(step)
                        result.tier_applied = step.get("tier_applied")

                result.record = record
                result.warnings = warnings

            result.fee = result.outputs.get(rule_set.fee_output_field)
            status = ExecutionStatus.PARTIAL if result.warnings else ExecutionStatus.SUCCESS
            error_message = "; ".join(result.warnings) or None

        except Exception as e:
            logger.error(
                f"ERP rule set '{rule_set.name}' failed for transaction {transaction.id}: {e}",
                exc_info=True
            )
            result.fee = None
            status = ExecutionStatus.FAILED
            error_message = str(e)

        result.log = ErpExecutionLog(
            rule_set_id=rule_set.id,
            sales_id=transaction.id,
            input_data=input_data,
            output_data={k: _jsonable(v) for k, v in result.outputs.items()},
            rules_applied=result.rules_applied,
            execution_time_ms=int((time.perf_counter() - started) * 1000),
            status=status,
            error_message=error_message,
        )
        return result


def _step_rate(step: Dict[str, Any]) -> Optional[Decimal]:
    rate = step.get("applied_rate") or step.get("rate")
    return Decimal(rate) if rate is not None else None


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value
