"""
Approval domain types (``p2p_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for conditional, multi-level requisition approval:
approval-rule configuration, the per-approver record lifecycle, planned
records produced at creation time, and the tally result.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.  May
import only from ``domain/condition``.

Invariants enforced
-------------------
* ``APPROVAL_RECORD_TRANSITIONS`` defines the only valid record status
  changes.  A decided record (APPROVED/REJECTED) never changes again.
* An ``ApproverDefinition`` names exactly one of user or role, at a
  level >= 1.
* Rules are evaluated in ascending ``priority``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Protocol, runtime_checkable
from uuid import UUID

from p2p_kernel.domain.condition import Condition


# =========================================================================
# Approval record lifecycle
# =========================================================================


class ApprovalRecordStatus(str, Enum):
    """Per-approver decision state."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


APPROVAL_RECORD_TRANSITIONS: dict[ApprovalRecordStatus, frozenset[ApprovalRecordStatus]] = {
    ApprovalRecordStatus.PENDING: frozenset({
        ApprovalRecordStatus.APPROVED,
        ApprovalRecordStatus.REJECTED,
    }),
    ApprovalRecordStatus.APPROVED: frozenset(),
    ApprovalRecordStatus.REJECTED: frozenset(),
}


def can_transition_record(
    current: ApprovalRecordStatus, target: ApprovalRecordStatus,
) -> bool:
    return target in APPROVAL_RECORD_TRANSITIONS[current]


# =========================================================================
# Rule configuration
# =========================================================================


@dataclass(frozen=True)
class ApproverDefinition:
    """One approver slot in a rule: a user or a role, at a level."""

    level: int
    user_id: str | None = None
    role_id: str | None = None
    required: bool = True

    def __post_init__(self) -> None:
        if (self.user_id is None) == (self.role_id is None):
            raise ValueError("Approver must name exactly one of user_id or role_id")
        if self.level < 1:
            raise ValueError(f"Approver level must be >= 1, got {self.level}")

    @property
    def approver_id(self) -> str:
        """Identifier matched against the acting approver."""
        return self.user_id if self.user_id is not None else self.role_id


@dataclass(frozen=True)
class ApprovalRule:
    """
    A configured approval rule.

    ``condition`` is the compiled predicate; ``None`` with no
    ``condition_error`` means the rule is unconditional.  A rule whose
    condition text failed to compile keeps the error and never applies.
    """

    rule_id: str
    process_type: str
    approvers: tuple[ApproverDefinition, ...]
    condition: Condition | None = None
    condition_text: str | None = None
    condition_error: str | None = None
    is_active: bool = True
    priority: int = 100
    description: str = ""

    def applies_to(self, attributes: Mapping[str, Any]) -> bool:
        """Fail-closed condition check."""
        if self.condition_error is not None:
            return False
        if self.condition is None:
            return True
        return self.condition.evaluate(attributes)


@dataclass(frozen=True)
class RuleLookup:
    """Answer from a RuleConfigurationProvider, or its degraded variant."""

    available: bool
    rules: tuple[ApprovalRule, ...] = ()
    reason: str | None = None

    @classmethod
    def found(cls, rules) -> RuleLookup:
        return cls(available=True, rules=tuple(rules))

    @classmethod
    def unavailable(cls, reason: str) -> RuleLookup:
        return cls(available=False, rules=(), reason=reason)


@runtime_checkable
class RuleConfigurationProvider(Protocol):
    """Supplies the approval rules for a process type."""

    def get_approval_rules(self, process_type: str) -> RuleLookup: ...


# =========================================================================
# Materialized records
# =========================================================================


@dataclass(frozen=True)
class PlannedApproval:
    """An approval record to be written at requisition creation."""

    approver_id: str
    level: int
    required: bool
    rule_id: str
    approver_role: str | None = None


@dataclass(frozen=True)
class ApprovalRecord:
    """Persisted approval record as seen by callers."""

    id: UUID
    requisition_id: UUID
    approver_id: str
    level: int
    required: bool
    status: ApprovalRecordStatus
    created_at: datetime
    approver_role: str | None = None
    rule_id: str | None = None
    comments: str | None = None
    decided_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalRecordStatus.PENDING


@dataclass(frozen=True)
class ApprovalTally:
    """Required-approval count for a requisition."""

    required_total: int
    required_approved: int
    optional_total: int = 0
    rejected: int = 0
    pending_levels: tuple[int, ...] = field(default_factory=tuple)

    @property
    def is_complete(self) -> bool:
        return self.required_approved == self.required_total
