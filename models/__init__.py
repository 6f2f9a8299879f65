"""
Pydantic models for the royalty calculation system.

This module exports the rule definitions, sales transactions, ERP mapping
rule sets, blueprints, calculation results and formula expressions.
"""

from .formula import (
    BinaryOp,
    Expression,
    FieldRef,
    FunctionCall,
    LiteralExpr,
    field_references,
    parse_expression,
)

from .royalty import (
    # Enums
    RuleType,
    TierMethod,
    TierBasis,
    RoundingMode,
    CalculationApproach,
    RunStatus,
    LineItemStatus,
    DimensionType,
    ConditionOperator,
    LogicOperator,
    OutputCalculationType,
    ExecutionStatus,
    # Match criteria
    Wildcard,
    SetMembership,
    Range,
    # Rules and inputs
    VolumeTier,
    ContainerSizeRate,
    RoyaltyRule,
    SalesTransaction,
    FieldMapping,
    # Blueprints
    BlueprintDimension,
    CalculationBlueprint,
    # ERP mapping
    ErpMappingCondition,
    ErpMappingOutput,
    ErpMappingRule,
    ErpMappingRuleSet,
    ErpExecutionLog,
    # Results
    CalculationLineItem,
    MinimumGuaranteeShortfall,
    CalculationRun,
    AggregationRow,
    AggregationReport,
)

__all__ = [
    # Formula expressions
    "BinaryOp",
    "Expression",
    "FieldRef",
    "FunctionCall",
    "LiteralExpr",
    "field_references",
    "parse_expression",
    # Enums
    "RuleType",
    "TierMethod",
    "TierBasis",
    "RoundingMode",
    "CalculationApproach",
    "RunStatus",
    "LineItemStatus",
    "DimensionType",
    "ConditionOperator",
    "LogicOperator",
    "OutputCalculationType",
    "ExecutionStatus",
    # Match criteria
    "Wildcard",
    "SetMembership",
    "Range",
    # Rules and inputs
    "VolumeTier",
    "ContainerSizeRate",
    "RoyaltyRule",
    "SalesTransaction",
    "FieldMapping",
    # Blueprints
    "BlueprintDimension",
    "CalculationBlueprint",
    # ERP mapping
    "ErpMappingCondition",
    "ErpMappingOutput",
    "ErpMappingRule",
    "ErpMappingRuleSet",
    "ErpExecutionLog",
    # Results
    "CalculationLineItem",
    "MinimumGuaranteeShortfall",
    "CalculationRun",
    "AggregationRow",
    "AggregationReport",
]
