"""
Rule condition expression tree (``p2p_kernel.domain.condition``).

Responsibility
--------------
Typed representation of an approval-rule predicate and its evaluation.
Conditions are compiled once, when configuration loads
(``p2p_config.condition_ast``), into a ``Comparison`` over a field from
``FIELD_REGISTRY``.  Evaluation never touches condition text.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* A ``FieldRef`` can only name a registered field.
* Comparison literals are Decimal, never float.
* Evaluation is total: a missing or non-numeric attribute makes the
  comparison False rather than raising.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Mapping


class ComparisonOp(str, Enum):
    """Operators a rule condition may use."""

    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    EQ = "=="
    NE = "!="

    def apply(self, left: Decimal, right: Decimal) -> bool:
        return _OPERATORS[self](left, right)


_OPERATORS: dict[ComparisonOp, Callable[[Any, Any], bool]] = {
    ComparisonOp.LT: operator.lt,
    ComparisonOp.LE: operator.le,
    ComparisonOp.GT: operator.gt,
    ComparisonOp.GE: operator.ge,
    ComparisonOp.EQ: operator.eq,
    ComparisonOp.NE: operator.ne,
}


@dataclass(frozen=True)
class FieldSpec:
    """A field conditions may reference."""

    name: str
    description: str


FIELD_REGISTRY: Mapping[str, FieldSpec] = {
    "totalAmount": FieldSpec(
        name="totalAmount",
        description="Requisition total: sum of estimated price x quantity",
    ),
}


@dataclass(frozen=True)
class FieldRef:
    """Reference to a registered field."""

    name: str

    def __post_init__(self) -> None:
        if self.name not in FIELD_REGISTRY:
            raise ValueError(f"Unknown condition field: {self.name!r}")

    def resolve(self, attributes: Mapping[str, Any]) -> Decimal | None:
        raw = attributes.get(self.name)
        if raw is None or isinstance(raw, bool):
            return None
        if isinstance(raw, Decimal):
            return raw
        try:
            return Decimal(str(raw))
        except (InvalidOperation, ValueError):
            return None


@dataclass(frozen=True)
class Comparison:
    """``<field> <op> <numeric literal>``."""

    field: FieldRef
    op: ComparisonOp
    value: Decimal

    def evaluate(self, attributes: Mapping[str, Any]) -> bool:
        left = self.field.resolve(attributes)
        if left is None:
            return False
        return self.op.apply(left, self.value)

    def render(self) -> str:
        return f"{self.field.name} {self.op.value} {self.value}"


# The only node kind today; rules hold a Condition so richer trees can slot in.
Condition = Comparison
