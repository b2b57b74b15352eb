"""
Restricted AST for approval-rule conditions.

Rule conditions in configuration are written as text, e.g.
``totalAmount > 1000``.  This module parses that text with Python's own
parser in ``eval`` mode, walks the tree against a tiny whitelist, and
compiles it into the typed ``Comparison`` node evaluated at runtime.
Nothing is ever ``eval``-ed.

Allowed:
  - Exactly one comparison: <, <=, >, >=, ==, !=
  - One side a registered field name (see FIELD_REGISTRY)
  - The other side a numeric literal (int or decimal, optionally negative)

Rejected:
  - chained comparisons, boolean operators, arithmetic, calls,
    attribute access, unknown names, string/bool/None literals
"""

import ast
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping

from p2p_kernel.domain.condition import (
    FIELD_REGISTRY,
    Comparison,
    ComparisonOp,
    FieldRef,
)
from p2p_kernel.exceptions import ConditionSyntaxError

_AST_OPERATORS: dict[type, ComparisonOp] = {
    ast.Lt: ComparisonOp.LT,
    ast.LtE: ComparisonOp.LE,
    ast.Gt: ComparisonOp.GT,
    ast.GtE: ComparisonOp.GE,
    ast.Eq: ComparisonOp.EQ,
    ast.NotEq: ComparisonOp.NE,
}

# ``1000 < totalAmount`` is read as ``totalAmount > 1000``
_MIRRORED: dict[ComparisonOp, ComparisonOp] = {
    ComparisonOp.LT: ComparisonOp.GT,
    ComparisonOp.LE: ComparisonOp.GE,
    ComparisonOp.GT: ComparisonOp.LT,
    ComparisonOp.GE: ComparisonOp.LE,
    ComparisonOp.EQ: ComparisonOp.EQ,
    ComparisonOp.NE: ComparisonOp.NE,
}


@dataclass(frozen=True)
class ConditionASTError:
    """A validation error found in a condition expression."""

    expression: str
    message: str
    node_type: str = ""
    lineno: int = 0
    col_offset: int = 0


def _numeric_literal(node: ast.AST) -> Decimal | None:
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
        inner = _numeric_literal(node.operand)
        if inner is None:
            return None
        return -inner if isinstance(node.op, ast.USub) else inner
    if isinstance(node, ast.Constant):
        value = node.value
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return Decimal(str(value))
    return None


def _field_name(node: ast.AST) -> str | None:
    if isinstance(node, ast.Name) and node.id in FIELD_REGISTRY:
        return node.id
    return None


def _error(expression: str, message: str, node: ast.AST | None = None) -> ConditionASTError:
    return ConditionASTError(
        expression=expression,
        message=message,
        node_type=type(node).__name__ if node is not None else "",
        lineno=getattr(node, "lineno", 0) or 0,
        col_offset=getattr(node, "col_offset", 0) or 0,
    )


def _compile(expression: str) -> tuple[Comparison | None, list[ConditionASTError]]:
    if not isinstance(expression, str) or not expression.strip():
        return None, [_error(str(expression), "Condition is empty")]

    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        return None, [
            ConditionASTError(
                expression=expression,
                message=f"Syntax error: {e.msg}",
                lineno=e.lineno or 0,
                col_offset=e.offset or 0,
            )
        ]

    node = tree.body
    if not isinstance(node, ast.Compare):
        return None, [_error(expression, "Condition must be a single comparison", node)]
    if len(node.ops) != 1:
        return None, [_error(expression, "Chained comparisons are not allowed", node)]

    op_type = type(node.ops[0])
    if op_type not in _AST_OPERATORS:
        return None, [_error(expression, f"Disallowed comparison: {op_type.__name__}", node)]
    op = _AST_OPERATORS[op_type]

    left, right = node.left, node.comparators[0]
    errors: list[ConditionASTError] = []

    field = _field_name(left)
    literal = _numeric_literal(right)
    if field is None and literal is None:
        # Mirrored form: literal on the left
        field = _field_name(right)
        literal = _numeric_literal(left)
        op = _MIRRORED[op]

    if field is None:
        names = sorted(FIELD_REGISTRY)
        errors.append(_error(
            expression, f"Condition must reference one of the fields {names}", node,
        ))
    if literal is None:
        errors.append(_error(expression, "Condition must compare against a numeric literal", node))
    if errors:
        return None, errors

    return Comparison(field=FieldRef(field), op=op, value=literal), []


def validate_condition_expression(expression: str) -> list[ConditionASTError]:
    """Validate a condition expression.  Empty list means it compiles."""
    return _compile(expression)[1]


def compile_condition(expression: str) -> Comparison:
    """
    Compile condition text into a typed Comparison.

    Raises:
        ConditionSyntaxError: with the first validation error.
    """
    comparison, errors = _compile(expression)
    if comparison is None:
        raise ConditionSyntaxError(str(expression), errors[0].message)
    return comparison


def evaluate_condition(expression: str, attributes: Mapping[str, Any]) -> bool:
    """Compile-and-evaluate convenience.  Anything unparseable is False."""
    comparison, _ = _compile(expression)
    if comparison is None:
        return False
    return comparison.evaluate(attributes)
