"""
Side-effect-free evaluator for royalty formula expressions.

Walks the tagged expression tree from models.formula. No dynamic code
execution: only the operators in BINARY_OPERATORS and the functions in
FUNCTION_REGISTRY are available.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping
import logging

from models.formula import BinaryOp, Expression, FieldRef, FunctionCall, LiteralExpr
from services.royalty.errors import FormulaEvaluationError

logger = logging.getLogger(__name__)


def to_decimal(value: Any) -> Decimal:
    """
    Coerce a field or literal value to Decimal.

    Strings may carry currency formatting ("$1,250.00").

    Raises:
        FormulaEvaluationError: If the value is not numeric
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(1) if value else Decimal(0)
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        cleaned = value.replace("$", "").replace(",", "").strip()
        try:
            return Decimal(cleaned)
        except InvalidOperation:
            raise FormulaEvaluationError(f"'{value}' is not a number")
    raise FormulaEvaluationError(f"Cannot use {type(value).__name__} as a number")


def _truthy(value: Any) -> bool:
    if isinstance(value, Decimal):
        return value != 0
    return bool(value)


def _compare(op: str, left: Any, right: Any) -> bool:
    if op in ("==", "!="):
        try:
            equal = to_decimal(left) == to_decimal(right)
        except FormulaEvaluationError:
            equal = str(left).strip().lower() == str(right).strip().lower()
        return equal if op == "==" else not equal

    lhs, rhs = to_decimal(left), to_decimal(right)
    if op == ">":
        return lhs > rhs
    if op == ">=":
        return lhs >= rhs
    if op == "<":
        return lhs < rhs
    return lhs <= rhs


def _fn_min(args: List[Any]) -> Decimal:
    return min(to_decimal(a) for a in args)


def _fn_max(args: List[Any]) -> Decimal:
    return max(to_decimal(a) for a in args)


def _fn_abs(args: List[Any]) -> Decimal:
    return abs(to_decimal(args[0]))


def _fn_round(args: List[Any]) -> Decimal:
    places = int(to_decimal(args[1])) if len(args) > 1 else 0
    return to_decimal(args[0]).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def _fn_coalesce(args: List[Any]) -> Any:
    for arg in args:
        if arg is not None:
            return arg
    return None


# Arity: (min, max); None = unbounded
FUNCTION_REGISTRY: Dict[str, tuple] = {
    "min": (_fn_min, 1, None),
    "max": (_fn_max, 1, None),
    "abs": (_fn_abs, 1, 1),
    "round": (_fn_round, 1, 2),
    "coalesce": (_fn_coalesce, 1, None),
}


class FormulaEvaluator:
    """
    Evaluates an expression against a record of field values.

    The record is usually the transaction's fields merged with target fields
    already resolved by earlier ERP mapping rules.

    Usage:
        evaluator = FormulaEvaluator()
        fee = evaluator.evaluate(rule.formula_definition, transaction.as_record())
    """

    def evaluate(self, expression: Expression, record: Mapping[str, Any]) -> Any:
        """
        Evaluate an expression tree.

        Args:
            expression: Parsed expression
            record: Field values available to FieldRef nodes

        Returns:
            Decimal for arithmetic, bool for comparisons, or a literal value

        Raises:
            FormulaEvaluationError: On unknown fields, non-numeric operands,
                division by zero or bad function arity
        """
        if isinstance(expression, LiteralExpr):
            return expression.value

        if isinstance(expression, FieldRef):
            value = record.get(expression.field)
            if value is None:
                if expression.default is not None:
                    return expression.default
                raise FormulaEvaluationError(f"Field '{expression.field}' has no value")
            return value

        if isinstance(expression, BinaryOp):
            return self._binary(expression, record)

        if isinstance(expression, FunctionCall):
            return self._call(expression, record)

        raise FormulaEvaluationError(f"Unsupported expression node: {type(expression).__name__}")

    def evaluate_decimal(self, expression: Expression, record: Mapping[str, Any]) -> Decimal:
        """Evaluate and coerce the result to Decimal."""
        return to_decimal(self.evaluate(expression, record))

    def _binary(self, node: BinaryOp, record: Mapping[str, Any]) -> Any:
        # Short-circuit boolean operators
        if node.op == "and":
            return _truthy(self.evaluate(node.left, record)) and _truthy(self.evaluate(node.right, record))
        if node.op == "or":
            return _truthy(self.evaluate(node.left, record)) or _truthy(self.evaluate(node.right, record))

        left = self.evaluate(node.left, record)
        right = self.evaluate(node.right, record)

        if node.op in ("==", "!=", ">", ">=", "<", "<="):
            return _compare(node.op, left, right)

        lhs, rhs = to_decimal(left), to_decimal(right)
        if node.op == "+":
            return lhs + rhs
        if node.op == "-":
            return lhs - rhs
        if node.op == "*":
            return lhs * rhs
        if rhs == 0:
            raise FormulaEvaluationError("Division by zero")
        return lhs / rhs

    def _call(self, node: FunctionCall, record: Mapping[str, Any]) -> Any:
        if node.name == "if":
            # Only the chosen branch is evaluated
            if len(node.args) != 3:
                raise FormulaEvaluationError("if() takes exactly 3 arguments")
            condition = _truthy(self.evaluate(node.args[0], record))
            return self.evaluate(node.args[1] if condition else node.args[2], record)

        func, min_args, max_args = FUNCTION_REGISTRY[node.name]
        if len(node.args) < min_args or (max_args is not None and len(node.args) > max_args):
            raise FormulaEvaluationError(f"{node.name}() called with {len(node.args)} arguments")

        if node.name == "coalesce":
            args = []
            for arg in node.args:
                try:
                    args.append(self.evaluate(arg, record))
                except FormulaEvaluationError:
                    args.append(None)
            return func(args)

        return func([self.evaluate(arg, record) for arg in node.args])
