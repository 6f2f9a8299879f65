"""
Pydantic models for royalty / license-fee calculation.

Covers the contract-side rule definitions (royalty rules, ERP mapping rule
sets, blueprints), the consumed sales transactions, and the calculation
results (line items, runs, aggregation rows).

Database Reference: db/migrations/001_royalty_calculation_schema.sql
"""

from enum import Enum
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.formula import Expression


# =============================================================================
# ENUMS (matching database enums from migration 001)
# =============================================================================

class RuleType(str, Enum):
    """Royalty rule types."""
    PERCENTAGE = "percentage"
    TIERED = "tiered"
    MINIMUM_GUARANTEE = "minimum_guarantee"
    CAP = "cap"
    DEDUCTION = "deduction"
    FIXED_FEE = "fixed_fee"
    CONTAINER_SIZE_TIERED = "container_size_tiered"
    FORMULA = "formula"
    BONUS = "bonus"
    USAGE_BASED = "usage_based"


# Mutually exclusive: the first matching rule by priority determines the fee
FEE_DETERMINING_TYPES = frozenset({
    RuleType.PERCENTAGE,
    RuleType.TIERED,
    RuleType.CONTAINER_SIZE_TIERED,
    RuleType.FORMULA,
    RuleType.FIXED_FEE,
})

# Applied on top of the primary fee
ADDITIVE_TYPES = frozenset({RuleType.BONUS, RuleType.USAGE_BASED})

# Clamp or reduce the per-transaction fee
ADJUSTMENT_TYPES = frozenset({RuleType.CAP, RuleType.DEDUCTION})


class TierMethod(str, Enum):
    """How a tier table is applied to the basis."""
    MARGINAL = "marginal"
    TOTAL = "total"


class TierBasis(str, Enum):
    """
    What the tier bands measure.

    quantity: tier rates are per unit.
    amount: tier rates are percentages of the gross amount.
    """
    QUANTITY = "quantity"
    AMOUNT = "amount"


class RoundingMode(str, Enum):
    """Final rounding applied once to each calculated fee."""
    HALF_UP = "half_up"
    DOWN = "down"
    UP = "up"


class CalculationApproach(str, Enum):
    """Organization-level setting choosing the rule path."""
    MANUAL = "manual"
    ERP_MAPPING = "erp_mapping"
    HYBRID = "hybrid"


class RunStatus(str, Enum):
    """CalculationRun lifecycle status."""
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    FAILED = "failed"


class LineItemStatus(str, Enum):
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    FAILED = "failed"


class DimensionType(str, Enum):
    PRODUCT = "product"
    TERRITORY = "territory"
    CONTAINER_SIZE = "container_size"
    SALES_FIELD = "sales_field"


class RuleSetStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class TransformationType(str, Enum):
    DIRECT = "direct"
    LOOKUP = "lookup"
    FORMULA = "formula"
    CONDITIONAL = "conditional"


class ConditionOperator(str, Enum):
    """Operators available to ERP mapping conditions."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GTE = "gte"
    LTE = "lte"
    BETWEEN = "between"
    IN = "in"
    NOT_IN = "not_in"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    NOT_NULL = "not_null"


class LogicOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class OutputCalculationType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    TIERED = "tiered"
    FORMULA = "formula"


class OutputRoundingMode(str, Enum):
    NONE = "none"
    UP = "up"
    DOWN = "down"
    NEAREST = "nearest"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


# =============================================================================
# MATCH CRITERIA
# =============================================================================

class Wildcard(BaseModel):
    """Matches every value, including missing ones."""
    kind: Literal["wildcard"] = "wildcard"


class SetMembership(BaseModel):
    """Matches when the value is one of ``values`` (case-insensitive)."""
    kind: Literal["set"] = "set"
    values: List[str] = Field(..., min_length=1)


class Range(BaseModel):
    """Matches numeric values in [min, max). Either bound may be open."""
    kind: Literal["range"] = "range"
    min: Optional[Decimal] = None
    max: Optional[Decimal] = None


MatchCriteria = Annotated[
    Union[Wildcard, SetMembership, Range],
    Field(discriminator="kind"),
]


def coerce_match_criteria(value: Any) -> Any:
    """
    Normalize stored dimension values into a tagged MatchCriteria.

    Rule rows store dimensions as JSON arrays; null, [] and ["All"] all
    mean "any value".
    """
    if value is None:
        return Wildcard()
    if isinstance(value, (list, tuple, set)):
        values = [str(v).strip() for v in value if v is not None and str(v).strip()]
        if not values or any(v.lower() == "all" for v in values):
            return Wildcard()
        return SetMembership(values=values)
    if isinstance(value, str):
        return SetMembership(values=[value]) if value.strip() else Wildcard()
    return value


# =============================================================================
# ROYALTY RULES
# =============================================================================

class VolumeTier(BaseModel):
    """One band of a tier table. ``max`` is None for the open last band."""
    min: Decimal = Field(..., description="Band lower bound (inclusive)")
    max: Optional[Decimal] = Field(None, description="Band upper bound, None = open")
    rate: Decimal = Field(..., description="Per-unit rate or percentage, by tier basis")


class ContainerSizeRate(BaseModel):
    """Rate card for one container size."""
    size: str
    base_rate: Decimal
    volume_threshold: Optional[Decimal] = None
    discounted_rate: Optional[Decimal] = None


class RoyaltyRule(BaseModel):
    """
    A contract-scoped royalty rule snapshot.

    Rules are immutable once used by an approved calculation. Changes create
    a new version pointing at its predecessor; the old version is
    deactivated.
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    contract_id: int
    rule_type: RuleType
    rule_name: str
    priority: int = Field(10, description="Ascending: lower value wins")
    created_at: Optional[datetime] = None

    # Matching dimensions
    product_categories: MatchCriteria = Field(default_factory=Wildcard)
    territories: MatchCriteria = Field(default_factory=Wildcard)
    container_sizes: MatchCriteria = Field(default_factory=Wildcard)
    custom_criteria: Dict[str, MatchCriteria] = Field(
        default_factory=dict,
        description="Extra criteria keyed by transaction or custom field name"
    )

    # Rates
    base_rate: Optional[Decimal] = Field(None, description="Percentage for percentage rules")
    volume_tiers: List[VolumeTier] = Field(default_factory=list)
    tier_method: TierMethod = TierMethod.MARGINAL
    tier_basis: TierBasis = TierBasis.QUANTITY
    container_size_rates: List[ContainerSizeRate] = Field(default_factory=list)
    formula_definition: Optional[Expression] = None
    fixed_amount: Optional[Decimal] = None
    cap_amount: Optional[Decimal] = None
    seasonal_adjustments: Dict[str, Decimal] = Field(default_factory=dict)
    territory_premiums: Dict[str, Decimal] = Field(default_factory=dict)

    # Minimum guarantee
    minimum_guarantee: Optional[Decimal] = Field(None, description="Flat annual minimum")
    quarterly_minimums: Dict[str, Decimal] = Field(
        default_factory=dict, description="Per-quarter schedule keyed Q1..Q4"
    )
    annual_true_up: bool = False

    is_active: bool = True
    review_status: str = "approved"
    version: int = 1
    predecessor_id: Optional[int] = None

    @field_validator("product_categories", "territories", "container_sizes", mode="before")
    @classmethod
    def _coerce_dimension(cls, value):
        return coerce_match_criteria(value)

    @field_validator("custom_criteria", mode="before")
    @classmethod
    def _coerce_custom_criteria(cls, value):
        if not value:
            return {}
        return {key: coerce_match_criteria(criteria) for key, criteria in value.items()}


# =============================================================================
# SALES TRANSACTIONS (consumed from the ingestion subsystem)
# =============================================================================

class SalesTransaction(BaseModel):
    """One imported sales record."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    transaction_date: date
    transaction_id: Optional[str] = None
    product_code: Optional[str] = None
    product_name: Optional[str] = None
    category: Optional[str] = None
    territory: Optional[str] = None
    container_size: Optional[str] = None
    vendor: Optional[str] = None
    currency: str = "USD"
    quantity: Decimal = Decimal("0")
    gross_amount: Decimal = Decimal("0")
    net_amount: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    custom_fields: Dict[str, Any] = Field(default_factory=dict)

    def get_field(self, name: str) -> Any:
        """Return a named attribute, falling back to custom_fields."""
        if name in SalesTransaction.model_fields and name != "custom_fields":
            return getattr(self, name)
        return self.custom_fields.get(name)

    def as_record(self) -> Dict[str, Any]:
        """Flat dict of standard fields plus custom fields."""
        record = self.model_dump(exclude={"custom_fields"})
        for key, value in self.custom_fields.items():
            record.setdefault(key, value)
        return record


# =============================================================================
# FIELD MAPPINGS AND BLUEPRINTS
# =============================================================================

class FieldMapping(BaseModel):
    """A confirmed contract-term to ERP-field mapping."""
    id: Optional[int] = None
    original_term: str
    original_value: Optional[str] = None
    erp_field_name: str
    erp_entity: Optional[str] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    status: str = "confirmed"


class BlueprintDimension(BaseModel):
    """One dimension of a rule bound (or not) to an ERP field."""

    model_config = ConfigDict(frozen=True)

    dimension_type: DimensionType
    contract_term: str
    match_value: str
    erp_field_name: Optional[str] = None
    is_mapped: bool = False
    confidence: Optional[float] = None


class CalculationBlueprint(BaseModel):
    """
    A royalty rule materialized against confirmed ERP field mappings.

    Derived and versioned: a new version is created whenever the source rule
    or its mappings change; published versions are never edited.
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    contract_id: int
    royalty_rule_id: Optional[int] = None
    name: str
    rule_type: RuleType
    priority: int = 10
    calculation_logic: Dict[str, Any] = Field(default_factory=dict)
    matching_criteria: Dict[str, Any] = Field(default_factory=dict)
    erp_field_bindings: Dict[str, str] = Field(default_factory=dict)
    dual_terminology_map: Dict[str, str] = Field(default_factory=dict)
    dimensions: List[BlueprintDimension] = Field(default_factory=list)
    is_fully_mapped: bool = False
    unmapped_fields: List[str] = Field(default_factory=list)
    version: int = 1
    predecessor_id: Optional[int] = None
    status: str = "active"
    created_at: Optional[datetime] = None


# =============================================================================
# ERP MAPPING RULE SETS
# =============================================================================

class ErpMappingCondition(BaseModel):
    field_name: str
    operator: ConditionOperator
    value: Optional[Any] = None
    value_end: Optional[Any] = Field(None, description="Upper bound for 'between'")
    value_list: List[Any] = Field(default_factory=list)
    logic_operator: LogicOperator = LogicOperator.AND
    order_index: int = 0


class ErpMappingOutput(BaseModel):
    output_field: str
    calculation_type: OutputCalculationType
    calculation_config: Dict[str, Any] = Field(default_factory=dict)
    rounding_mode: OutputRoundingMode = OutputRoundingMode.NEAREST
    decimal_places: int = Field(2, ge=0, le=10)


class ErpMappingRule(BaseModel):
    id: Optional[int] = None
    name: str
    priority: int = 10
    source_field: Optional[str] = None
    target_field: str
    transformation_type: TransformationType = TransformationType.DIRECT
    transformation_config: Dict[str, Any] = Field(default_factory=dict)
    conditions: List[ErpMappingCondition] = Field(default_factory=list)
    outputs: List[ErpMappingOutput] = Field(default_factory=list)
    is_active: bool = True


class ErpMappingRuleSet(BaseModel):
    id: Optional[int] = None
    name: str
    contract_id: Optional[int] = None
    status: RuleSetStatus = RuleSetStatus.ACTIVE
    version: int = 1
    effective_date: Optional[date] = None
    expiry_date: Optional[date] = None
    fee_output_field: str = Field(
        "royalty_fee", description="Output field that carries the calculated fee"
    )
    rules: List[ErpMappingRule] = Field(default_factory=list)


class ErpExecutionLog(BaseModel):
    """Audit record of one transaction executed through a rule set."""
    rule_set_id: Optional[int] = None
    sales_id: Optional[int] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Dict[str, Any] = Field(default_factory=dict)
    rules_applied: List[str] = Field(default_factory=list)
    execution_time_ms: int = 0
    status: ExecutionStatus = ExecutionStatus.SUCCESS
    error_message: Optional[str] = None


# =============================================================================
# CALCULATION RESULTS
# =============================================================================

class CalculationLineItem(BaseModel):
    """
    Immutable per-transaction calculation result.

    Created once per (calculation run, transaction).
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    calculation_id: Optional[int] = None
    sales_id: Optional[int] = None
    transaction_date: Optional[date] = None
    quantity: Decimal = Decimal("0")
    gross_amount: Decimal = Decimal("0")
    calculated_fee: Decimal = Decimal("0.00")
    applied_rate: Optional[Decimal] = None
    rule_id: Optional[int] = None
    rule_name: Optional[str] = None
    rule_type: Optional[str] = None
    tier_applied: Optional[str] = None
    blueprint_id: Optional[int] = None
    status: LineItemStatus = LineItemStatus.MATCHED
    is_adjustment: bool = Field(False, description="Period-level adjustment, not a sale")
    vendor_name: Optional[str] = None
    item_name: Optional[str] = None
    item_class: Optional[str] = None
    territory: Optional[str] = None
    period: Optional[str] = Field(None, description="YYYY-MM")
    dimensions: Dict[str, Any] = Field(default_factory=dict)
    calculation_steps: List[Dict[str, Any]] = Field(default_factory=list)
    conditions_checked: List[Dict[str, Any]] = Field(default_factory=list)
    error_message: Optional[str] = None


class MinimumGuaranteeShortfall(BaseModel):
    """Informational result of minimum guarantee enforcement."""
    applied: bool = False
    period_label: Optional[str] = None
    minimum: Decimal = Decimal("0.00")
    calculated_total: Decimal = Decimal("0.00")
    final_total: Decimal = Decimal("0.00")
    shortfall: Decimal = Decimal("0.00")
    true_up_applied: bool = False
    true_up_amount: Decimal = Decimal("0.00")
    rule_id: Optional[int] = None


class CalculationRun(BaseModel):
    """
    Result of one calculation execution over a contract period.

    Status moves pending_approval -> approved | rejected, approved -> paid.
    Runs that abort are stored as failed with the message retained.
    """

    id: Optional[int] = None
    contract_id: int
    period_start: date
    period_end: date
    calculation_approach: CalculationApproach = CalculationApproach.MANUAL
    status: RunStatus = RunStatus.PENDING_APPROVAL
    total_sales_amount: Decimal = Decimal("0.00")
    calculated_fee: Decimal = Field(Decimal("0.00"), description="Before minimum guarantee")
    total_fee: Decimal = Decimal("0.00")
    sales_count: int = 0
    matched_count: int = 0
    unmatched_count: int = 0
    failed_count: int = 0
    minimum_guarantee: Optional[MinimumGuaranteeShortfall] = None
    breakdown: List[Dict[str, Any]] = Field(default_factory=list)
    processing_notes: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    dry_run: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    line_items: List[CalculationLineItem] = Field(default_factory=list, exclude=True)
    execution_logs: List[ErpExecutionLog] = Field(default_factory=list, exclude=True)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": 42,
                "contract_id": 7,
                "period_start": "2024-01-01",
                "period_end": "2024-03-31",
                "calculation_approach": "manual",
                "status": "pending_approval",
                "total_sales_amount": "3000000.00",
                "calculated_fee": "120000.00",
                "total_fee": "120000.00",
                "sales_count": 12,
                "matched_count": 12,
                "unmatched_count": 0,
                "failed_count": 0,
                "breakdown": [
                    {"rule_name": "Volume Rebate", "transaction_count": 12, "total_fee": "120000.00"}
                ],
            }
        }
    )


class AggregationRow(BaseModel):
    """One group of line items along a reporting dimension."""
    dimension_value: str
    transaction_count: int = 0
    total_quantity: Decimal = Decimal("0")
    total_sales_amount: Decimal = Decimal("0.00")
    total_fee: Decimal = Decimal("0.00")
    average_rate: Decimal = Decimal("0")
    percent_of_total: Decimal = Decimal("0.00")


class AggregationReport(BaseModel):
    calculation_id: Optional[int] = None
    dimension_key: str
    rows: List[AggregationRow] = Field(default_factory=list)
    totals: AggregationRow
