"""
Repository for ERP mapping rule sets.

Loads active rule sets for a contract together with their rules,
conditions and outputs, in the shape ErpMappingRuleSet validates.
"""

from datetime import date
from typing import Any, Dict, List
import logging

from db.database import get_db_connection

logger = logging.getLogger(__name__)


class ErpMappingRepository:
    """Database reads for ERP mapping rule sets."""

    def get_active_rule_sets(self, contract_id: int, as_of: date) -> List[Dict[str, Any]]:
        """
        Active rule sets effective on ``as_of``, with nested rules.

        Rule sets scoped to no contract apply to every contract.

        Args:
            contract_id: Contract being calculated
            as_of: Date the rule set must be effective on (period end)

        Returns:
            Rule set dicts with 'rules', each with 'conditions' and 'outputs'
        """
        set_query = """
            SELECT id, contract_id, name, status, version,
                   effective_date, expiry_date, fee_output_field
            FROM erp_mapping_rule_set
            WHERE status = 'active'
              AND (contract_id = %s OR contract_id IS NULL)
              AND (effective_date IS NULL OR effective_date <= %s)
              AND (expiry_date IS NULL OR expiry_date >= %s)
            ORDER BY contract_id NULLS LAST, version DESC, id
        """
        rule_query = """
            SELECT id, rule_set_id, name, priority, source_field, target_field,
                   transformation_type, transformation_config, is_active
            FROM erp_mapping_rule
            WHERE rule_set_id = ANY(%s)
              AND is_active = true
            ORDER BY priority, id
        """
        condition_query = """
            SELECT rule_id, field_name, operator, value, value_end,
                   COALESCE(value_list, '[]'::jsonb) AS value_list,
                   logic_operator, order_index
            FROM erp_mapping_condition
            WHERE rule_id = ANY(%s)
            ORDER BY order_index, id
        """
        output_query = """
            SELECT rule_id, output_field, calculation_type, calculation_config,
                   rounding_mode, decimal_places
            FROM erp_mapping_output
            WHERE rule_id = ANY(%s)
            ORDER BY id
        """
        try:
            with get_db_connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(set_query, (contract_id, as_of, as_of))
                    rule_sets = [dict(row) for row in cursor.fetchall()]
                    if not rule_sets:
                        return []

                    cursor.execute(rule_query, ([rs["id"] for rs in rule_sets],))
                    rules = [dict(row) for row in cursor.fetchall()]

                    rule_ids = [rule["id"] for rule in rules]
                    conditions: List[Dict[str, Any]] = []
                    outputs: List[Dict[str, Any]] = []
                    if rule_ids:
                        cursor.execute(condition_query, (rule_ids,))
                        conditions = [dict(row) for row in cursor.fetchall()]
                        cursor.execute(output_query, (rule_ids,))
                        outputs = [dict(row) for row in cursor.fetchall()]

        except Exception as e:
            logger.error(f"Failed to load ERP rule sets for contract {contract_id}: {e}")
            raise

        by_rule: Dict[int, Dict[str, Any]] = {}
        for rule in rules:
            rule["conditions"] = []
            rule["outputs"] = []
            by_rule[rule["id"]] = rule
        for condition in conditions:
            by_rule[condition.pop("rule_id")]["conditions"].append(condition)
        for output in outputs:
            by_rule[output.pop("rule_id")]["outputs"].append(output)

        by_set: Dict[int, Dict[str, Any]] = {}
        for rule_set in rule_sets:
            rule_set["rules"] = []
            by_set[rule_set["id"]] = rule_set
        for rule in rules:
            by_set[rule.pop("rule_set_id")]["rules"].append(rule)

        logger.info(
            f"Loaded {len(rule_sets)} ERP rule sets ({len(rules)} rules) "
            f"for contract {contract_id} as of {as_of}"
        )
        return rule_sets
