"""
Repository for royalty calculation database operations.

Handles royalty rules, sales data, term mappings, calculation blueprints,
calculation runs, line items and approval transitions.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
import json
import logging

from psycopg2.extras import Json, execute_values

from db.database import get_db_connection
from models.royalty import CalculationBlueprint, CalculationRun, RunStatus
from services.royalty.errors import CalculationNotFoundError, InvalidStatusTransitionError

logger = logging.getLogger(__name__)

# One-way approval lifecycle
ALLOWED_TRANSITIONS = {
    RunStatus.APPROVED: (RunStatus.PENDING_APPROVAL,),
    RunStatus.REJECTED: (RunStatus.PENDING_APPROVAL,),
    RunStatus.PAID: (RunStatus.APPROVED,),
}


def _json(value: Any) -> Json:
    """Json adapter that serializes Decimal and dates as strings."""
    return Json(value, dumps=lambda obj: json.dumps(obj, default=str))


class RoyaltyRepository:
    """
    Database operations for the royalty calculation engine.

    Reads that feed a fee (contract, rules, sales, mappings, prior totals)
    and stored results log and re-raise, so a database error fails the run
    instead of pricing an empty period. The optional reads (calculation
    approach, latest blueprints) log and return empty. Writes that must be
    atomic (run persistence, status transitions) raise.
    """

    # =========================================================================
    # CONTRACT AND SETTINGS
    # =========================================================================

    def get_contract(self, contract_id: int) -> Optional[Dict[str, Any]]:
        query = """
            SELECT id, organization_id, name
            FROM contract
            WHERE id = %s
        """
        try:
            with get_db_connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, (contract_id,))
                    return cursor.fetchone()
        except Exception as e:
            logger.error(f"Failed to load contract {contract_id}: {e}")
            raise

    def get_calculation_approach(self, organization_id: Optional[int]) -> Optional[str]:
        if organization_id is None:
            return None
        query = """
            SELECT calculation_approach
            FROM org_calculation_settings
            WHERE organization_id = %s
        """
        try:
            with get_db_connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, (organization_id,))
                    row = cursor.fetchone()
            return row["calculation_approach"] if row else None
        except Exception as e:
            logger.error(f"Failed to load calculation settings for org {organization_id}: {e}")
            return None

    # =========================================================================
    # RULES, SALES AND MAPPINGS
    # =========================================================================

    def get_active_rules(self, contract_id: int) -> List[Dict[str, Any]]:
        """
        Get active royalty rules for a contract.

        Returns:
            Rule rows ordered by priority, then creation
        """
        query = """
            SELECT
                id, contract_id, rule_type, rule_name, priority, created_at,
                product_categories, territories, container_sizes, custom_criteria,
                base_rate, volume_tiers, tier_method, tier_basis,
                container_size_rates, formula_definition, fixed_amount, cap_amount,
                seasonal_adjustments, territory_premiums,
                minimum_guarantee, quarterly_minimums, annual_true_up,
                is_active, review_status, version, predecessor_id
            FROM royalty_rule
            WHERE contract_id = %s
              AND is_active = true
            ORDER BY priority, created_at, id
        """
        try:
            with get_db_connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, (contract_id,))
                    rows = cursor.fetchall()

            logger.info(f"Loaded {len(rows)} active royalty rules for contract {contract_id}")
            return [_drop_nulls(row) for row in rows]

        except Exception as e:
            logger.error(f"Failed to load royalty rules for contract {contract_id}: {e}")
            raise

    def get_sales_transactions(
        self,
        contract_id: int,
        period_start: date,
        period_end: date
    ) -> List[Dict[str, Any]]:
        """
        Get sales transactions in a period (both bounds inclusive).

        Returns:
            Rows ordered by transaction_date, id
        """
        query = """
            SELECT
                id, transaction_date, transaction_id, product_code, product_name,
                category, territory, container_size, vendor, currency,
                quantity, gross_amount, net_amount, unit_price, custom_fields
            FROM sales_data
            WHERE contract_id = %s
              AND transaction_date >= %s
              AND transaction_date <= %s
            ORDER BY transaction_date, id
        """
        try:
            with get_db_connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, (contract_id, period_start, period_end))
                    rows = cursor.fetchall()

            logger.info(
                f"Loaded {len(rows)} sales transactions for contract {contract_id} "
                f"({period_start} to {period_end})"
            )
            return [_drop_nulls(row) for row in rows]

        except Exception as e:
            logger.error(f"Failed to load sales data for contract {contract_id}: {e}")
            raise

    def get_confirmed_mappings(self, contract_id: int) -> List[Dict[str, Any]]:
        query = """
            SELECT id, original_term, original_value, erp_field_name, erp_entity,
                   confidence::float AS confidence, status
            FROM term_mapping
            WHERE contract_id = %s
              AND status = 'confirmed'
            ORDER BY id
        """
        try:
            with get_db_connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, (contract_id,))
                    return [_drop_nulls(row) for row in cursor.fetchall()]
        except Exception as e:
            logger.error(f"Failed to load term mappings for contract {contract_id}: {e}")
            raise

    # =========================================================================
    # BLUEPRINTS
    # =========================================================================

    def get_latest_blueprints(self, contract_id: int) -> List[Dict[str, Any]]:
        """
        Latest active blueprint per royalty rule, with its dimensions.
        """
        query = """
            SELECT
                b.id, b.contract_id, b.royalty_rule_id, b.name, b.rule_type, b.priority,
                b.calculation_logic, b.matching_criteria, b.erp_field_bindings,
                b.dual_terminology_map, b.is_fully_mapped, b.unmapped_fields,
                b.version, b.predecessor_id, b.status, b.created_at,
                COALESCE(
                    (SELECT json_agg(json_build_object(
                        'dimension_type', d.dimension_type,
                        'contract_term', d.contract_term,
                        'erp_field_name', d.erp_field_name,
                        'match_value', d.match_value,
                        'is_mapped', d.is_mapped,
                        'confidence', d.confidence
                    ) ORDER BY d.id)
                     FROM blueprint_dimension d WHERE d.blueprint_id = b.id),
                    '[]'::json
                ) AS dimensions
            FROM calculation_blueprint b
            WHERE b.contract_id = %s
              AND b.status = 'active'
            ORDER BY b.priority, b.id
        """
        try:
            with get_db_connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, (contract_id,))
                    return [_drop_nulls(row) for row in cursor.fetchall()]
        except Exception as e:
            logger.error(f"Failed to load blueprints for contract {contract_id}: {e}")
            return []

    def save_blueprints(self, blueprints: Sequence[CalculationBlueprint]) -> List[CalculationBlueprint]:
        """
        Persist new blueprint versions and supersede their predecessors.

        Blueprints that already have an id are returned unchanged.

        Returns:
            The blueprints with ids assigned
        """
        saved: List[CalculationBlueprint] = []
        with get_db_connection() as conn:
            with conn.cursor() as cursor:
                for blueprint in blueprints:
                    if blueprint.id is not None:
                        saved.append(blueprint)
                        continue

                    if blueprint.predecessor_id is not None:
                        cursor.execute(
                            "UPDATE calculation_blueprint SET status = 'superseded' WHERE id = %s",
                            (blueprint.predecessor_id,),
                        )

                    cursor.execute(
                        """
                        INSERT INTO calculation_blueprint (
                            contract_id, royalty_rule_id, name, rule_type, priority,
                            calculation_logic, matching_criteria, erp_field_bindings,
                            dual_terminology_map, is_fully_mapped, unmapped_fields,
                            version, predecessor_id, status
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'active')
                        RETURNING id, created_at
                        """,
                        (
                            blueprint.contract_id,
                            blueprint.royalty_rule_id,
                            blueprint.name,
                            blueprint.rule_type.value,
                            blueprint.priority,
                            _json(blueprint.calculation_logic),
                            _json(blueprint.matching_criteria),
                            _json(blueprint.erp_field_bindings),
                            _json(blueprint.dual_terminology_map),
                            blueprint.is_fully_mapped,
                            _json(blueprint.unmapped_fields),
                            blueprint.version,
                            blueprint.predecessor_id,
                        ),
                    )
                    row = cursor.fetchone()

                    if blueprint.dimensions:
                        execute_values(
                            cursor,
                            """
                            INSERT INTO blueprint_dimension (
                                blueprint_id, dimension_type, contract_term, erp_field_name,
                                match_value, is_mapped, confidence
                            ) VALUES %s
                            """,
                            [
                                (
                                    row["id"], d.dimension_type.value, d.contract_term,
                                    d.erp_field_name, d.match_value, d.is_mapped, d.confidence,
                                )
                                for d in blueprint.dimensions
                            ],
                        )

                    saved.append(blueprint.model_copy(update={"id": row["id"], "created_at": row["created_at"]}))

        logger.info(f"Saved {sum(1 for b in blueprints if b.id is None)} new blueprint versions")
        return saved

    # =========================================================================
    # CALCULATION RUNS
    # =========================================================================

    def get_prior_period_totals(self, contract_id: int, year: int, before: date) -> List[Decimal]:
        """Final totals of approved or paid runs earlier in the same year."""
        query = """
            SELECT total_fee
            FROM royalty_calculation
            WHERE contract_id = %s
              AND status IN ('approved', 'paid')
              AND EXTRACT(YEAR FROM period_start) = %s
              AND period_end < %s
            ORDER BY period_start
        """
        try:
            with get_db_connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, (contract_id, year, before))
                    return [row["total_fee"] for row in cursor.fetchall()]
        except Exception as e:
            logger.error(f"Failed to load prior totals for contract {contract_id}: {e}")
            raise

    def _insert_run(self, cursor, run: CalculationRun) -> int:
        cursor.execute(
            """
            INSERT INTO royalty_calculation (
                contract_id, period_start, period_end, calculation_approach, status,
                total_sales_amount, calculated_fee, total_fee, sales_count,
                matched_count, unmatched_count, failed_count,
                minimum_guarantee, breakdown, processing_notes, error_message
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                run.contract_id,
                run.period_start,
                run.period_end,
                run.calculation_approach.value,
                run.status.value,
                run.total_sales_amount,
                run.calculated_fee,
                run.total_fee,
                run.sales_count,
                run.matched_count,
                run.unmatched_count,
                run.failed_count,
                _json(run.minimum_guarantee.model_dump(mode="json")) if run.minimum_guarantee else None,
                _json(run.breakdown),
                _json(run.processing_notes),
                run.error_message,
            ),
        )
        return cursor.fetchone()["id"]

    def save_calculation_run(self, run: CalculationRun) -> int:
        """
        Persist a run with its line items and ERP execution logs atomically.

        Either everything is written or nothing is.

        Returns:
            royalty_calculation.id

        Raises:
            psycopg2.Error: On any database failure (transaction rolled back)
        """
        with get_db_connection() as conn:
            try:
                with conn.cursor() as cursor:
                    calculation_id = self._insert_run(cursor, run)

                    if run.line_items:
                        execute_values(
                            cursor,
                            """
                            INSERT INTO calculation_line_item (
                                calculation_id, sales_id, transaction_date, quantity, gross_amount,
                                calculated_fee, applied_rate, rule_id, rule_name, rule_type,
                                tier_applied, blueprint_id, status, is_adjustment,
                                vendor_name, item_name, item_class, territory, period,
                                dimensions, calculation_steps, conditions_checked, error_message
                            ) VALUES %s
                            """,
                            [
                                (
                                    calculation_id, item.sales_id, item.transaction_date,
                                    item.quantity, item.gross_amount, item.calculated_fee,
                                    item.applied_rate, item.rule_id, item.rule_name, item.rule_type,
                                    item.tier_applied, item.blueprint_id, item.status.value,
                                    item.is_adjustment, item.vendor_name, item.item_name,
                                    item.item_class, item.territory, item.period,
                                    _json(item.dimensions), _json(item.calculation_steps),
                                    _json(item.conditions_checked), item.error_message,
                                )
                                for item in run.line_items
                            ],
                        )

                    if run.execution_logs:
                        execute_values(
                            cursor,
                            """
                            INSERT INTO erp_rule_execution_log (
                                calculation_id, rule_set_id, sales_id, input_data, output_data,
                                rules_applied, execution_time_ms, status, error_message
                            ) VALUES %s
                            """,
                            [
                                (
                                    calculation_id, log.rule_set_id, log.sales_id,
                                    _json(log.input_data), _json(log.output_data),
                                    _json(log.rules_applied), log.execution_time_ms,
                                    log.status.value, log.error_message,
                                )
                                for log in run.execution_logs
                            ],
                        )

                conn.commit()
            except Exception as e:
                conn.rollback()
                logger.error(f"Failed to persist calculation run for contract {run.contract_id}: {e}", exc_info=True)
                raise

        logger.info(
            f"Persisted calculation {calculation_id} for contract {run.contract_id}: "
            f"{len(run.line_items)} line items, total fee {run.total_fee}"
        )
        return calculation_id

    def record_failed_run(self, run: CalculationRun) -> Optional[int]:
        """Store a failed run (no line items) so the error message is retained."""
        try:
            with get_db_connection() as conn:
                with conn.cursor() as cursor:
                    return self._insert_run(cursor, run)
        except Exception as e:
            logger.error(f"Failed to record failed run for contract {run.contract_id}: {e}")
            return None

    def get_calculation(self, calculation_id: int) -> Optional[Dict[str, Any]]:
        query = """
            SELECT *
            FROM royalty_calculation
            WHERE id = %s
        """
        try:
            with get_db_connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, (calculation_id,))
                    row = cursor.fetchone()
            return _drop_nulls(row) if row else None
        except Exception as e:
            logger.error(f"Failed to load calculation {calculation_id}: {e}")
            raise

    def get_line_items(self, calculation_id: int) -> List[Dict[str, Any]]:
        query = """
            SELECT *
            FROM calculation_line_item
            WHERE calculation_id = %s
            ORDER BY is_adjustment, transaction_date, id
        """
        try:
            with get_db_connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, (calculation_id,))
                    return [_drop_nulls(row) for row in cursor.fetchall()]
        except Exception as e:
            logger.error(f"Failed to load line items for calculation {calculation_id}: {e}")
            raise

    def transition_status(
        self,
        calculation_id: int,
        target: RunStatus,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Move a run to a new approval status.

        The row is locked (SELECT ... FOR UPDATE) so concurrent approvals of
        the same run are serialized; the second one sees the new status and
        is rejected.

        Raises:
            CalculationNotFoundError: If the run does not exist
            InvalidStatusTransitionError: If the lifecycle forbids the change
        """
        now = datetime.now(timezone.utc)
        updates = {
            RunStatus.APPROVED: ("approved_by = %s, approved_at = %s", (actor_id, now)),
            RunStatus.REJECTED: (
                "rejected_by = %s, rejected_at = %s, rejection_reason = %s",
                (actor_id, now, reason),
            ),
            RunStatus.PAID: ("paid_at = %s", (now,)),
        }
        set_clause, params = updates[target]

        with get_db_connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(
                    "SELECT id, status FROM royalty_calculation WHERE id = %s FOR UPDATE",
                    (calculation_id,),
                )
                row = cursor.fetchone()
                if row is None:
                    raise CalculationNotFoundError(f"Calculation {calculation_id} not found")

                current = RunStatus(row["status"])
                if current not in ALLOWED_TRANSITIONS[target]:
                    raise InvalidStatusTransitionError(calculation_id, current.value, target.value)

                cursor.execute(
                    f"""
                    UPDATE royalty_calculation
                    SET status = %s, {set_clause}
                    WHERE id = %s AND status = %s
                    RETURNING *
                    """,
                    (target.value, *params, calculation_id, current.value),
                )
                updated = cursor.fetchone()

        logger.info(
            f"Calculation {calculation_id}: {current.value} -> {target.value}"
            f"{f' by {actor_id}' if actor_id else ''}"
        )
        return _drop_nulls(updated)


def _drop_nulls(row: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Row as a plain dict without NULL columns, so model defaults apply."""
    return {key: value for key, value in dict(row or {}).items() if value is not None}
