"""
Royalty calculation engine orchestrator.

Runs a contract's royalty rules (or ERP mapping rule sets) over a period's
sales transactions, enforces the minimum guarantee, and persists the run
with its line items for approval.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from pydantic import ValidationError

from db.erp_mapping_repository import ErpMappingRepository
from db.royalty_repository import RoyaltyRepository
from models.royalty import (
    AggregationReport,
    CalculationApproach,
    CalculationBlueprint,
    CalculationLineItem,
    CalculationRun,
    ErpExecutionLog,
    ErpMappingRuleSet,
    ExecutionStatus,
    FieldMapping,
    LineItemStatus,
    MinimumGuaranteeShortfall,
    RoyaltyRule,
    RuleType,
    RunStatus,
    SalesTransaction,
)
from services.royalty.aggregation import AggregationReporter
from services.royalty.blueprint_materializer import (
    BlueprintMaterializer,
    MaterializationSummary,
    require_fully_mapped,
)
from services.royalty.config import INCOMPLETE_POLICY_HALT, EngineConfig
from services.royalty.erp_mapping_executor import ErpMappingRuleExecutor
from services.royalty.errors import (
    CalculationNotFoundError,
    CalculationRunError,
    MappingIncompleteError,
    RoyaltyEngineError,
    RuleExecutionFailure,
    RuleValidationError,
)
from services.royalty.fee_calculator import RoyaltyFeeCalculator
from services.royalty.formula_evaluator import FormulaEvaluator
from services.royalty.line_items import LineItemGenerator
from services.royalty.minimum_guarantee import MinimumGuaranteeEnforcer
from services.royalty.rule_selector import RuleSelection, RuleSelector, sort_rules
from services.royalty.tier_evaluator import (
    TierAccumulator,
    TierEvaluator,
    validate_container_sizes,
    validate_tiers,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# Keys that are report views rather than groupable dimensions
NON_GROUPABLE_KEYS = ("summary", "detail")


def load_rules(rows: Sequence[Dict[str, Any]]) -> List[RoyaltyRule]:
    """
    Build and validate rule snapshots from rule rows.

    Raises:
        RuleValidationError: If any rule is malformed
    """
    rules = []
    for row in rows:
        try:
            rule = RoyaltyRule.model_validate(row)
        except ValidationError as e:
            raise RuleValidationError(
                f"invalid rule definition: {e.errors()[0]['msg']}", row.get("rule_name")
            ) from e

        if rule.volume_tiers:
            validate_tiers(rule.volume_tiers, rule.rule_name)
        elif rule.rule_type == RuleType.TIERED:
            raise RuleValidationError("tiered rule has no volume tiers", rule.rule_name)

        if rule.rule_type == RuleType.CONTAINER_SIZE_TIERED:
            if not rule.container_size_rates:
                raise RuleValidationError("container size rule has no rate card", rule.rule_name)
            validate_container_sizes(rule.container_size_rates, rule.rule_name)

        rules.append(rule)
    return sort_rules(rules)


class RoyaltyCalculationEngine:
    """
    Main orchestrator for royalty calculation runs.

    Workflow:
    1. Load contract and active royalty rules (validated at load)
    2. Resolve the organization's calculation approach
    3. For ERP approaches, materialize blueprints and load ERP rule sets
    4. Fold transactions (sorted by date, id) into cumulative tier totals
    5. Price every transaction; failures become failed line items
    6. Enforce the minimum guarantee for the period
    7. Persist run + line items atomically as pending_approval (or discard on dry run)

    Usage:
        engine = RoyaltyCalculationEngine()
        run = engine.run_calculation(
            contract_id=7,
            period_start=date(2024, 1, 1),
            period_end=date(2024, 3, 31)
        )
    """

    def __init__(
        self,
        repository: Optional[RoyaltyRepository] = None,
        erp_repository: Optional[ErpMappingRepository] = None,
        config: Optional[EngineConfig] = None
    ):
        """
        Initialize the engine.

        Args:
            repository: Optional custom royalty repository
            erp_repository: Optional custom ERP mapping repository
            config: Engine configuration (defaults to EngineConfig.from_env())
        """
        self.config = config or EngineConfig.from_env()
        self.repository = repository or RoyaltyRepository()
        self.erp_repository = erp_repository or ErpMappingRepository()

        self.tier_evaluator = TierEvaluator(self.config.rounding_mode, self.config.decimal_places)
        self.formula_evaluator = FormulaEvaluator()
        self.selector = RuleSelector()
        self.fee_calculator = RoyaltyFeeCalculator(
            self.tier_evaluator, self.formula_evaluator, self.config.safety_tolerance
        )
        self.erp_executor = ErpMappingRuleExecutor(self.tier_evaluator, self.formula_evaluator)
        self.materializer = BlueprintMaterializer()
        self.enforcer = MinimumGuaranteeEnforcer()
        self.line_item_generator = LineItemGenerator()
        self.reporter = AggregationReporter()

    # =========================================================================
    # CALCULATION RUN
    # =========================================================================

    def run_calculation(
        self,
        contract_id: int,
        period_start: date,
        period_end: date,
        dry_run: bool = False
    ) -> CalculationRun:
        """
        Calculate royalties for a contract period.

        Args:
            contract_id: Contract to calculate
            period_start: First day of the period (inclusive)
            period_end: Last day of the period (inclusive)
            dry_run: Compute and return without persisting anything

        Returns:
            CalculationRun in pending_approval (or failed) status, with
            line_items attached

        Raises:
            ValueError: If period_end is before period_start
            CalculationRunError: If the computed run cannot be persisted
        """
        if period_end < period_start:
            raise ValueError(f"period_end {period_end} is before period_start {period_start}")

        logger.info(
            f"Starting royalty calculation for contract {contract_id}, "
            f"period {period_start} to {period_end}{' (dry run)' if dry_run else ''}"
        )

        processing_notes: List[str] = []
        approach = self.config.default_approach

        try:
            # Step 1: Contract and rules
            contract = self.repository.get_contract(contract_id)
            if not contract:
                raise CalculationRunError(f"Contract {contract_id} not found")

            rules = load_rules(self.repository.get_active_rules(contract_id))
            if not rules:
                raise CalculationRunError(f"No active royalty rules for contract {contract_id}")

            processing_notes.append(f"Loaded {len(rules)} active royalty rules")
            logger.info(processing_notes[-1])

            # Step 2: Approach
            approach = self._calculation_approach(contract)
            processing_notes.append(f"Calculation approach: {approach.value}")

            # Step 3: ERP bindings
            blueprints: Dict[int, CalculationBlueprint] = {}
            rule_sets: List[ErpMappingRuleSet] = []
            if approach != CalculationApproach.MANUAL:
                blueprints = self._bound_blueprints(contract_id, rules, approach, processing_notes, dry_run)
                rule_sets = [
                    ErpMappingRuleSet.model_validate(row)
                    for row in self.erp_repository.get_active_rule_sets(contract_id, period_end)
                ]
                processing_notes.append(
                    f"{len(blueprints)} fully mapped blueprints, {len(rule_sets)} active ERP rule sets"
                )
                logger.info(processing_notes[-1])

            # Step 4: Transactions
            transactions = sorted(
                (
                    SalesTransaction.model_validate(row)
                    for row in self.repository.get_sales_transactions(contract_id, period_start, period_end)
                ),
                key=lambda t: (t.transaction_date, t.id if t.id is not None else 0),
            )
            processing_notes.append(f"Loaded {len(transactions)} sales transactions")
            logger.info(processing_notes[-1])

            # Step 5: Price
            line_items, execution_logs = self._price_transactions(
                transactions, rules, blueprints, rule_sets
            )

            # Step 6: Minimum guarantee
            calculated_fee = sum((item.calculated_fee for item in line_items), ZERO)
            guarantee = self._minimum_guarantee_rule(contract_id, rules)
            shortfall = None
            if guarantee is not None:
                prior_totals: List[Decimal] = []
                if guarantee.annual_true_up:
                    prior_totals = self.repository.get_prior_period_totals(
                        contract_id, period_start.year, period_start
                    )
                shortfall = self.enforcer.enforce_rule(
                    guarantee, calculated_fee, period_start, period_end, prior_totals
                )

            if shortfall is not None and (shortfall.shortfall + shortfall.true_up_amount) > 0:
                line_items.append(
                    self.line_item_generator.minimum_guarantee_adjustment(
                        shortfall, period_end, guarantee.rule_name
                    )
                )
                processing_notes.append(
                    f"Minimum guarantee applied: shortfall {shortfall.shortfall:,.2f}"
                    + (f", annual true-up {shortfall.true_up_amount:,.2f}" if shortfall.true_up_applied else "")
                )
                logger.info(processing_notes[-1])

        except Exception as e:
            if not isinstance(e, (CalculationRunError, RuleValidationError)):
                logger.error(f"Royalty calculation failed for contract {contract_id}: {e}", exc_info=True)
            return self._failed_run(
                contract_id, period_start, period_end, approach, str(e), processing_notes, dry_run
            )

        run = self._build_run(
            contract_id, period_start, period_end, approach, transactions,
            line_items, execution_logs, calculated_fee, shortfall, processing_notes, dry_run,
        )

        if dry_run:
            logger.info(f"Dry run complete for contract {contract_id}: total fee {run.total_fee}")
            return run

        try:
            calculation_id = self.repository.save_calculation_run(run)
        except Exception as e:
            raise CalculationRunError(f"Failed to persist calculation run: {e}") from e

        return run.model_copy(update={
            "id": calculation_id,
            "line_items": [
                item.model_copy(update={"calculation_id": calculation_id}) for item in run.line_items
            ],
        })

    def _calculation_approach(self, contract: Dict[str, Any]) -> CalculationApproach:
        setting = self.repository.get_calculation_approach(contract.get("organization_id"))
        if not setting:
            return self.config.default_approach
        return CalculationApproach(setting)

    def _bound_blueprints(
        self,
        contract_id: int,
        rules: Sequence[RoyaltyRule],
        approach: CalculationApproach,
        processing_notes: List[str],
        dry_run: bool
    ) -> Dict[int, CalculationBlueprint]:
        """
        Materialize blueprints and keep the fully mapped ones, keyed by rule id.

        Rules whose blueprint is incomplete are matched manually, unless the
        approach is erp_mapping and the policy is 'halt'.

        Raises:
            CalculationRunError: On an incomplete blueprint under the halt policy
        """
        # Committed on their own; unchanged blueprints are reused on a retry
        summary = self.materialize_blueprints(contract_id, rules, persist=not dry_run)

        bound: Dict[int, CalculationBlueprint] = {}
        for blueprint in summary.blueprints:
            try:
                require_fully_mapped(blueprint)
            except MappingIncompleteError as e:
                if (
                    approach == CalculationApproach.ERP_MAPPING
                    and self.config.incomplete_blueprint_policy == INCOMPLETE_POLICY_HALT
                ):
                    raise CalculationRunError(str(e)) from e
                processing_notes.append(f"WARNING: {e}; matching rule manually")
                logger.warning(processing_notes[-1])
                continue
            if blueprint.royalty_rule_id is not None:
                bound[blueprint.royalty_rule_id] = blueprint
        return bound

    def _price_transactions(
        self,
        transactions: Sequence[SalesTransaction],
        rules: Sequence[RoyaltyRule],
        blueprints: Dict[int, CalculationBlueprint],
        rule_sets: Sequence[ErpMappingRuleSet]
    ) -> Tuple[List[CalculationLineItem], List[ErpExecutionLog]]:
        """
        Price every transaction in two passes over the date-sorted batch.

        The first pass folds each transaction into the cumulative tier totals
        (a new TierAccumulator per step); the second prices each transaction
        against the closing totals, so blended fees are order independent.
        """
        generator = self.line_item_generator
        items: Dict[int, CalculationLineItem] = {}
        execution_logs: List[ErpExecutionLog] = []

        # ERP rule sets take precedence; transactions they do not price fall through
        manual: List[Tuple[int, SalesTransaction]] = []
        if rule_sets:
            # Each transaction counts toward the totals of the rule set that prices it
            erp_totals = TierAccumulator()
            for txn in transactions:
                owner = next((rs for rs in rule_sets if self.erp_executor.claims(rs, txn)), None)
                if owner is not None:
                    erp_totals = self.erp_executor.accumulate(owner, txn, erp_totals)

            for index, txn in enumerate(transactions):
                for rule_set in rule_sets:
                    result = self.erp_executor.execute(rule_set, txn, erp_totals)
                    execution_logs.append(result.log)
                    if result.log.status == ExecutionStatus.FAILED:
                        items[index] = generator.failed(
                            txn, result.log.error_message or "ERP rule set failed",
                            rule_set.name, result.conditions_checked,
                        )
                        break
                    if result.fee is not None:
                        try:
                            self.fee_calculator.check_safety(txn, result.fee, f"ERP rule set '{rule_set.name}'")
                        except RuleExecutionFailure as e:
                            logger.warning(f"Transaction {txn.id} failed under ERP rule set '{rule_set.name}': {e}")
                            items[index] = generator.failed(txn, str(e), rule_set.name, result.conditions_checked)
                            break
                        fee = self.tier_evaluator.round(result.fee)
                        items[index] = generator.from_erp(txn, result, fee, rule_set.name)
                        break
                else:
                    manual.append((index, txn))
        else:
            manual = list(enumerate(transactions))

        # Pass 1: select rules and fold cumulative totals
        selections: Dict[int, RuleSelection] = {}
        totals = TierAccumulator()
        for index, txn in manual:
            try:
                selection = self.selector.select(txn, rules, blueprints)
            except Exception as e:
                logger.error(f"Rule selection failed for transaction {txn.id}: {e}", exc_info=True)
                items[index] = generator.failed(txn, f"Rule selection failed: {e}")
                continue
            selections[index] = selection
            if not selection.unmatched:
                totals = self.fee_calculator.accumulate(txn, selection, totals)

        # Pass 2: price each transaction against the closing totals
        for index, txn in manual:
            selection = selections.get(index)
            if selection is None:
                continue
            if selection.unmatched:
                items[index] = generator.unmatched(txn, selection.conditions_checked)
                continue
            try:
                result = self.fee_calculator.calculate(txn, selection, totals)
                items[index] = generator.matched(txn, result)
            except (RoyaltyEngineError, ArithmeticError) as e:
                rule_name = selection.primary.rule_name if selection.primary else None
                logger.warning(f"Transaction {txn.id} failed under rule '{rule_name}': {e}")
                items[index] = generator.failed(txn, str(e), rule_name, selection.conditions_checked)
            except Exception as e:
                logger.error(f"Unexpected error pricing transaction {txn.id}: {e}", exc_info=True)
                items[index] = generator.failed(txn, str(e), None, selection.conditions_checked)

        return [items[index] for index in sorted(items)], execution_logs

    def _minimum_guarantee_rule(
        self,
        contract_id: int,
        rules: Sequence[RoyaltyRule]
    ) -> Optional[RoyaltyRule]:
        """Highest-precedence minimum_guarantee rule; the guarantee is contract-wide."""
        guarantees = [r for r in rules if r.rule_type == RuleType.MINIMUM_GUARANTEE]
        if not guarantees:
            return None
        if len(guarantees) > 1:
            logger.warning(
                f"Contract {contract_id} has {len(guarantees)} minimum guarantee rules; "
                f"enforcing '{guarantees[0].rule_name}'"
            )
        return guarantees[0]

    def _breakdown(self, line_items: Sequence[CalculationLineItem]) -> List[Dict[str, Any]]:
        """Per-rule totals for the run summary."""
        groups: Dict[Any, Dict[str, Any]] = {}
        for item in line_items:
            if item.status != LineItemStatus.MATCHED:
                continue
            entry = groups.setdefault(item.rule_name, {
                "rule_id": item.rule_id,
                "rule_name": item.rule_name,
                "rule_type": item.rule_type,
                "transaction_count": 0,
                "total_sales": ZERO,
                "total_fee": ZERO,
            })
            if not item.is_adjustment:
                entry["transaction_count"] += 1
            entry["total_sales"] += item.gross_amount
            entry["total_fee"] += item.calculated_fee

        return [
            {**entry, "total_sales": str(entry["total_sales"]), "total_fee": str(entry["total_fee"])}
            for entry in groups.values()
        ]

    def _build_run(
        self,
        contract_id: int,
        period_start: date,
        period_end: date,
        approach: CalculationApproach,
        transactions: Sequence[SalesTransaction],
        line_items: List[CalculationLineItem],
        execution_logs: List[ErpExecutionLog],
        calculated_fee: Decimal,
        shortfall: Optional[MinimumGuaranteeShortfall],
        processing_notes: List[str],
        dry_run: bool
    ) -> CalculationRun:
        sales_items = [item for item in line_items if not item.is_adjustment]
        matched = sum(1 for item in sales_items if item.status == LineItemStatus.MATCHED)
        unmatched = sum(1 for item in sales_items if item.status == LineItemStatus.UNMATCHED)
        failed = sum(1 for item in sales_items if item.status == LineItemStatus.FAILED)
        total_fee = sum((item.calculated_fee for item in line_items), ZERO)
        total_sales = sum((txn.gross_amount for txn in transactions), ZERO).quantize(CENT)

        processing_notes.append(
            f"Calculation complete: {matched} matched, {unmatched} unmatched, "
            f"{failed} failed of {len(transactions)} transactions; "
            f"total fee ${total_fee:,.2f} on sales ${total_sales:,.2f}"
        )
        logger.info(processing_notes[-1])

        return CalculationRun(
            contract_id=contract_id,
            period_start=period_start,
            period_end=period_end,
            calculation_approach=approach,
            status=RunStatus.PENDING_APPROVAL,
            total_sales_amount=total_sales,
            calculated_fee=calculated_fee,
            total_fee=total_fee,
            sales_count=len(transactions),
            matched_count=matched,
            unmatched_count=unmatched,
            failed_count=failed,
            minimum_guarantee=shortfall,
            breakdown=self._breakdown(line_items),
            processing_notes=processing_notes,
            dry_run=dry_run,
            line_items=line_items,
            execution_logs=execution_logs,
        )

    def _failed_run(
        self,
        contract_id: int,
        period_start: date,
        period_end: date,
        approach: CalculationApproach,
        error_message: str,
        processing_notes: List[str],
        dry_run: bool
    ) -> CalculationRun:
        """Run-level failure: recorded with its message, never with line items."""
        processing_notes.append(f"ERROR: {error_message}")
        logger.error(f"Calculation for contract {contract_id} failed: {error_message}")

        run = CalculationRun(
            contract_id=contract_id,
            period_start=period_start,
            period_end=period_end,
            calculation_approach=approach,
            status=RunStatus.FAILED,
            error_message=error_message,
            processing_notes=processing_notes,
            dry_run=dry_run,
        )
        if dry_run:
            return run
        return run.model_copy(update={"id": self.repository.record_failed_run(run)})

    # =========================================================================
    # BLUEPRINTS
    # =========================================================================

    def materialize_blueprints(
        self,
        contract_id: int,
        rules: Optional[Sequence[RoyaltyRule]] = None,
        persist: bool = True
    ) -> MaterializationSummary:
        """
        Materialize (and optionally persist) blueprints for a contract's rules.

        Raises:
            RuleValidationError: If a rule is malformed
        """
        if rules is None:
            rules = load_rules(self.repository.get_active_rules(contract_id))

        mappings = [FieldMapping.model_validate(row) for row in self.repository.get_confirmed_mappings(contract_id)]
        existing = {
            bp.royalty_rule_id: bp for bp in self.get_blueprints(contract_id)
            if bp.royalty_rule_id is not None
        }

        summary = self.materializer.materialize_contract(contract_id, rules, mappings, existing)
        if persist and summary.blueprints_created:
            summary.blueprints = self.repository.save_blueprints(summary.blueprints)
        return summary

    def get_blueprints(self, contract_id: int) -> List[CalculationBlueprint]:
        return [
            CalculationBlueprint.model_validate(row)
            for row in self.repository.get_latest_blueprints(contract_id)
        ]

    # =========================================================================
    # RESULTS
    # =========================================================================

    def get_calculation(self, calculation_id: int) -> CalculationRun:
        """
        Raises:
            CalculationNotFoundError: If the run does not exist
        """
        row = self.repository.get_calculation(calculation_id)
        if not row:
            raise CalculationNotFoundError(f"Calculation {calculation_id} not found")
        return CalculationRun.model_validate(row)

    def get_line_items(self, calculation_id: int) -> List[CalculationLineItem]:
        self.get_calculation(calculation_id)
        return [
            CalculationLineItem.model_validate(row)
            for row in self.repository.get_line_items(calculation_id)
        ]

    def get_aggregate(self, calculation_id: int, dimension_key: str) -> AggregationReport:
        """
        Aggregate a run's line items along one dimension.

        Raises:
            CalculationNotFoundError: If the run does not exist
            ValueError: If the dimension key is not groupable or is invalid
        """
        if dimension_key in NON_GROUPABLE_KEYS:
            raise ValueError(f"'{dimension_key}' is a report view, not a groupable dimension")
        return self.reporter.aggregate(self.get_line_items(calculation_id), dimension_key, calculation_id)

    def get_summary(self, calculation_id: int) -> Dict[str, Any]:
        return self.reporter.summary(self.get_line_items(calculation_id), calculation_id)


class CalculationApprovalService:
    """
    One-way approval workflow for calculation runs.

    pending_approval -> approved | rejected, approved -> paid. Each
    transition locks the run row so concurrent approvals are serialized.
    """

    def __init__(self, repository: Optional[RoyaltyRepository] = None):
        self.repository = repository or RoyaltyRepository()

    def approve(self, calculation_id: int, approver_id: str) -> CalculationRun:
        """
        Raises:
            CalculationNotFoundError: If the run does not exist
            InvalidStatusTransitionError: If the run is not pending approval
        """
        row = self.repository.transition_status(calculation_id, RunStatus.APPROVED, actor_id=approver_id)
        return CalculationRun.model_validate(row)

    def reject(self, calculation_id: int, approver_id: str, reason: str) -> CalculationRun:
        """
        Raises:
            ValueError: If no reason is given
            CalculationNotFoundError: If the run does not exist
            InvalidStatusTransitionError: If the run is not pending approval
        """
        if not reason or not reason.strip():
            raise ValueError("A rejection reason is required")
        row = self.repository.transition_status(
            calculation_id, RunStatus.REJECTED, actor_id=approver_id, reason=reason.strip()
        )
        return CalculationRun.model_validate(row)

    def mark_paid(self, calculation_id: int, actor_id: Optional[str] = None) -> CalculationRun:
        row = self.repository.transition_status(calculation_id, RunStatus.PAID, actor_id=actor_id)
        return CalculationRun.model_validate(row)
