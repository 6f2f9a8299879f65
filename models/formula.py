"""
Pydantic models for royalty formula expressions.

A formula is a small expression tree stored as JSON on the rule
(royalty_rule.formula_definition) or on an ERP mapping rule
(transformation_config.expression). Nodes are tagged by ``kind`` so the
stored JSON round-trips into the right node type.

Example (``quantity * 0.85 + max(gross_amount * 0.02, 5)``):

    {
        "kind": "binary", "op": "+",
        "left": {"kind": "binary", "op": "*",
                 "left": {"kind": "field", "field": "quantity"},
                 "right": {"kind": "literal", "value": 0.85}},
        "right": {"kind": "call", "name": "max", "args": [
            {"kind": "binary", "op": "*",
             "left": {"kind": "field", "field": "gross_amount"},
             "right": {"kind": "literal", "value": 0.02}},
            {"kind": "literal", "value": 5}
        ]}
    }
"""

from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


BINARY_OPERATORS = ("+", "-", "*", "/", ">", ">=", "<", "<=", "==", "!=", "and", "or")
FUNCTIONS = ("min", "max", "abs", "round", "if", "coalesce")


class LiteralExpr(BaseModel):
    """A constant number, string or boolean."""
    kind: Literal["literal"] = "literal"
    value: Union[Decimal, bool, str, None] = None


class FieldRef(BaseModel):
    """Reference to a transaction field or an already-resolved target field."""
    kind: Literal["field"] = "field"
    field: str = Field(..., min_length=1)
    default: Optional[Decimal] = Field(
        None, description="Value used when the field is missing or null"
    )


class BinaryOp(BaseModel):
    kind: Literal["binary"] = "binary"
    op: Literal["+", "-", "*", "/", ">", ">=", "<", "<=", "==", "!=", "and", "or"]
    left: "Expression"
    right: "Expression"


class FunctionCall(BaseModel):
    kind: Literal["call"] = "call"
    name: Literal["min", "max", "abs", "round", "if", "coalesce"]
    args: List["Expression"] = Field(default_factory=list)


Expression = Annotated[
    Union[LiteralExpr, FieldRef, BinaryOp, FunctionCall],
    Field(discriminator="kind"),
]

BinaryOp.model_rebuild()
FunctionCall.model_rebuild()

expression_adapter = TypeAdapter(Expression)


def parse_expression(data) -> Expression:
    """Parse stored JSON (dict) into an expression tree."""
    return expression_adapter.validate_python(data)


def field_references(expression: Expression) -> List[str]:
    """Collect the field names an expression reads, in first-seen order."""
    found: List[str] = []

    def walk(node):
        if isinstance(node, FieldRef):
            if node.field not in found:
                found.append(node.field)
        elif isinstance(node, BinaryOp):
            walk(node.left)
            walk(node.right)
        elif isinstance(node, FunctionCall):
            for arg in node.args:
                walk(arg)

    walk(expression)
    return found
