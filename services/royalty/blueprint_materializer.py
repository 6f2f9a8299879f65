"""
Blueprint materialization: binds royalty rules to confirmed ERP field mappings.

A blueprint is a derived, versioned snapshot of one rule plus the ERP field
each of its matching dimensions reads from. Only fully mapped blueprints may
be executed on the ERP path.
"""

from typing import Any, Dict, List, Optional, Sequence
import logging

from pydantic import BaseModel, Field

from models.formula import field_references
from models.royalty import (
    BlueprintDimension,
    CalculationBlueprint,
    DimensionType,
    FieldMapping,
    RoyaltyRule,
    RuleType,
    SalesTransaction,
    SetMembership,
)
from services.royalty.errors import MappingIncompleteError

logger = logging.getLogger(__name__)

# Sales fields that need no ERP binding
STANDARD_SALES_FIELDS = frozenset(
    name for name in SalesTransaction.model_fields if name != "custom_fields"
)


class MaterializationSummary(BaseModel):
    """Outcome of materializing every rule of a contract."""
    contract_id: int
    blueprints_created: int = 0
    fully_mapped: int = 0
    partially_mapped: int = 0
    unchanged: int = 0
    blueprints: List[CalculationBlueprint] = Field(default_factory=list)


def _criteria_values(criteria) -> List[str]:
    if isinstance(criteria, SetMembership):
        return list(criteria.values)
    return []


def extract_dimensions(rule: RoyaltyRule) -> List[BlueprintDimension]:
    """
    Matching dimensions a rule needs bound before ERP execution.

    Product categories, territories and container sizes contribute one
    dimension per value; formula variables and custom criteria that are not
    standard sales fields contribute a sales_field dimension.
    """
    dimensions: List[BlueprintDimension] = []

    for value in _criteria_values(rule.product_categories):
        dimensions.append(BlueprintDimension(
            dimension_type=DimensionType.PRODUCT, contract_term=value, match_value=value
        ))

    for value in _criteria_values(rule.territories):
        dimensions.append(BlueprintDimension(
            dimension_type=DimensionType.TERRITORY, contract_term=value, match_value=value
        ))

    sizes = _criteria_values(rule.container_sizes)
    if rule.rule_type == RuleType.CONTAINER_SIZE_TIERED:
        sizes += [r.size for r in rule.container_size_rates if r.size not in sizes]
    for value in sizes:
        dimensions.append(BlueprintDimension(
            dimension_type=DimensionType.CONTAINER_SIZE, contract_term=value, match_value=value
        ))

    fields = list(rule.custom_criteria)
    if rule.formula_definition is not None:
        fields += [f for f in field_references(rule.formula_definition) if f not in fields]
    for name in fields:
        if name in STANDARD_SALES_FIELDS:
            continue
        dimensions.append(BlueprintDimension(
            dimension_type=DimensionType.SALES_FIELD, contract_term=name, match_value=name
        ))

    return dimensions


def find_mapping(mappings: Sequence[FieldMapping], value: str) -> Optional[FieldMapping]:
    """First confirmed mapping whose original value or term equals ``value`` (case-insensitive)."""
    wanted = value.strip().lower()
    for mapping in mappings:
        if mapping.status != "confirmed" or not mapping.erp_field_name:
            continue
        candidates = (mapping.original_value, mapping.original_term)
        if any(c is not None and c.strip().lower() == wanted for c in candidates):
            return mapping
    return None


def _content(blueprint: CalculationBlueprint) -> Dict[str, Any]:
    """Fields that decide whether a re-materialization is a new version."""
    return blueprint.model_dump(
        mode="json",
        include={
            "calculation_logic", "matching_criteria", "erp_field_bindings",
            "dimensions", "is_fully_mapped", "unmapped_fields", "priority",
        },
    )


def require_fully_mapped(blueprint: CalculationBlueprint) -> CalculationBlueprint:
    """
    Readiness check before ERP-path execution.

    Raises:
        MappingIncompleteError: If any dimension is unmapped
    """
    if not blueprint.is_fully_mapped or any(not d.is_mapped for d in blueprint.dimensions):
        raise MappingIncompleteError(blueprint.name, blueprint.unmapped_fields)
    return blueprint


def blueprint_rule(blueprint: CalculationBlueprint) -> RoyaltyRule:
    """Rehydrate the rule snapshot a blueprint was materialized from."""
    return RoyaltyRule.model_validate(blueprint.calculation_logic["rule"])


class BlueprintMaterializer:
    """
    Creates executable calculation blueprints by merging royalty rules
    (calculation logic) with confirmed ERP field mappings (data bindings).

    Usage:
        materializer = BlueprintMaterializer()
        summary = materializer.materialize_contract(contract_id, rules, mappings, existing)
    """

    def materialize_rule(
        self,
        rule: RoyaltyRule,
        mappings: Sequence[FieldMapping],
        previous: Optional[CalculationBlueprint] = None
    ) -> CalculationBlueprint:
        """
        Materialize one rule.

        Args:
            rule: Active royalty rule
            mappings: Confirmed field mappings for the contract
            previous: Latest existing blueprint for the rule, if any

        Returns:
            ``previous`` unchanged when nothing differs, otherwise a new
            blueprint versioned after ``previous``
        """
        dimensions: List[BlueprintDimension] = []
        bindings: Dict[str, str] = {}
        dual_terminology: Dict[str, str] = {}
        unmapped: List[str] = []

        for dim in extract_dimensions(rule):
            mapping = find_mapping(mappings, dim.match_value)
            if mapping is None:
                unmapped.append(f"{dim.dimension_type.value}: {dim.match_value}")
                dimensions.append(dim)
                continue

            bindings[dim.dimension_type.value] = mapping.erp_field_name
            dual_terminology[dim.match_value] = f"{dim.match_value} (ERP: {mapping.erp_field_name})"
            dimensions.append(dim.model_copy(update={
                "erp_field_name": mapping.erp_field_name,
                "is_mapped": True,
                "confidence": mapping.confidence,
            }))

        is_fully_mapped = bool(dimensions) and not unmapped

        blueprint = CalculationBlueprint(
            contract_id=rule.contract_id,
            royalty_rule_id=rule.id,
            name=rule.rule_name,
            rule_type=rule.rule_type,
            priority=rule.priority,
            calculation_logic={
                "rule": rule.model_dump(mode="json"),
                "erp_selectors": bindings,
            },
            matching_criteria={
                "dimensions": [
                    {
                        "erp_field": d.erp_field_name,
                        "match_value": d.match_value,
                        "dimension_type": d.dimension_type.value,
                    }
                    for d in dimensions if d.is_mapped
                ],
                "match_mode": "all",
            },
            erp_field_bindings=bindings,
            dual_terminology_map=dual_terminology,
            dimensions=dimensions,
            is_fully_mapped=is_fully_mapped,
            unmapped_fields=unmapped,
        )

        if previous is not None:
            if _content(previous) == _content(blueprint):
                return previous
            blueprint = blueprint.model_copy(update={
                "version": previous.version + 1,
                "predecessor_id": previous.id,
            })

        logger.info(
            f"Materialized blueprint '{rule.rule_name}' v{blueprint.version} "
            f"({len(dimensions)} dimensions, {'fully' if is_fully_mapped else 'partially'} mapped)"
        )
        return blueprint

    def materialize_contract(
        self,
        contract_id: int,
        rules: Sequence[RoyaltyRule],
        mappings: Sequence[FieldMapping],
        existing: Optional[Dict[int, CalculationBlueprint]] = None
    ) -> MaterializationSummary:
        """
        Materialize every active rule of a contract.

        Args:
            contract_id: Contract ID
            rules: Active royalty rules
            mappings: Confirmed field mappings
            existing: Latest blueprint per royalty_rule_id

        Returns:
            MaterializationSummary; ``blueprints`` holds one blueprint per
            rule, new versions having ``id`` None until persisted
        """
        existing = existing or {}
        summary = MaterializationSummary(contract_id=contract_id)

        for rule in rules:
            if not rule.is_active:
                continue
            # A superseded rule's blueprint is the predecessor of its successor's
            previous = existing.get(rule.id) or existing.get(rule.predecessor_id)
            blueprint = self.materialize_rule(rule, mappings, previous)

            if previous is not None and blueprint is previous:
                summary.unchanged += 1
            else:
                summary.blueprints_created += 1

            if blueprint.is_fully_mapped:
                summary.fully_mapped += 1
            elif blueprint.dimensions:
                summary.partially_mapped += 1
            summary.blueprints.append(blueprint)

        logger.info(
            f"Materialized contract {contract_id}: {summary.blueprints_created} new, "
            f"{summary.unchanged} unchanged, {summary.fully_mapped} fully mapped, "
            f"{summary.partially_mapped} partially mapped"
        )
        return summary
