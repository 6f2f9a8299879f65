"""
Exceptions raised by the royalty calculation engine.

Per-transaction problems (no matching rule, a rule that throws) are recorded
on the line item and never abort a run. Run-level problems raise
CalculationRunError and the run is stored as failed.
"""

from typing import List, Optional


class RoyaltyEngineError(Exception):
    """Base exception for royalty calculation."""
    pass


class RuleValidationError(RoyaltyEngineError, ValueError):
    """Raised when a rule is malformed (unsorted or overlapping tiers, bad rates)."""
    def __init__(self, message: str, rule_name: Optional[str] = None):
        self.rule_name = rule_name
        if rule_name:
            message = f"Rule '{rule_name}': {message}"
        super().__init__(message)


class UnmatchedTransactionWarning(UserWarning):
    """No rule matched a transaction. The fee is zero and the item is flagged."""
    pass


class MappingIncompleteError(RoyaltyEngineError):
    """Raised when a blueprint without full ERP bindings is selected for execution."""
    def __init__(self, blueprint_name: str, unmapped_fields: List[str]):
        self.blueprint_name = blueprint_name
        self.unmapped_fields = list(unmapped_fields)
        super().__init__(
            f"Blueprint '{blueprint_name}' is not fully mapped: "
            f"{', '.join(self.unmapped_fields) or 'no dimensions'}"
        )


class RuleExecutionFailure(RoyaltyEngineError):
    """Raised when evaluating a single transaction fails."""
    def __init__(self, message: str, sales_id: Optional[int] = None):
        self.sales_id = sales_id
        super().__init__(message)


class FormulaEvaluationError(RoyaltyEngineError):
    """Raised when a formula expression cannot be evaluated."""
    pass


class CalculationRunError(RoyaltyEngineError):
    """Raised when a whole run must abort (missing contract, no active rules)."""
    pass


class CalculationNotFoundError(RoyaltyEngineError):
    """Raised when a calculation run id does not exist."""
    pass


class InvalidStatusTransitionError(RoyaltyEngineError):
    """Raised on an approval-state change that the lifecycle does not allow."""
    def __init__(self, calculation_id: int, current_status: str, target_status: str):
        self.calculation_id = calculation_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Calculation {calculation_id} cannot move from "
            f"'{current_status}' to '{target_status}'"
        )
