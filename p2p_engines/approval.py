"""
p2p_engines.approval -- Pure approval materialization and tally engine.

Responsibility:
    Decide which approval rules apply to a requisition, turn the
    applicable rules into the approval records written at creation, and
    answer the tally questions asked on every approval decision: is the
    chain complete, which pending record does an approver act on, what
    level is next.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import p2p_kernel/domain types.

Invariants enforced:
    - Rules are evaluated in ascending ``priority`` (ties keep their
      configured order); inactive rules and rules for other process types
      never apply.
    - Conditions are fail-closed: a rule whose condition did not compile
      never applies; a rule with no condition always applies.
    - One planned record per (rule, approver).  Only an exact repeat of
      the same ``(approver_id, level)`` collapses into one record, with
      ``required`` OR-ed, so ``(requisition, approver, level)`` stays unique.
    - Completion: every required record is APPROVED.  Optional records
      never block.  Zero required records is trivially complete.
    - Purity: no clock access, no I/O, no database.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable, Sequence

from p2p_engines.tracer import traced_engine
from p2p_kernel.domain.approval import (
    ApprovalRecord,
    ApprovalRecordStatus,
    ApprovalRule,
    ApprovalTally,
    PlannedApproval,
)


def condition_attributes(total_amount: Decimal) -> dict[str, Any]:
    """Named fields a rule condition can reference."""
    return {"totalAmount": total_amount}


@traced_engine("approval", "1.0", fingerprint_fields=("process_type", "attributes"))
def select_applicable_rules(
    rules: Iterable[ApprovalRule],
    process_type: str,
    attributes: dict[str, Any],
) -> tuple[ApprovalRule, ...]:
    """Active rules for ``process_type`` whose condition holds, by priority.

    Args:
        rules: Candidate rules, typically a whole rule set.
        process_type: e.g. ``REQUISITION``.
        attributes: Field values from ``condition_attributes``.

    Returns:
        The applicable rules sorted by ascending priority.
    """
    candidates = [
        r for r in rules
        if r.is_active and r.process_type == process_type
    ]
    candidates.sort(key=lambda r: r.priority)
    return tuple(r for r in candidates if r.applies_to(attributes))


def materialize_approvals(
    rules: Sequence[ApprovalRule],
) -> tuple[PlannedApproval, ...]:
    """Expand applicable rules into the approval records to persist.

    Order is rule order, then approver order within a rule; the position
    in the returned tuple is the record's creation order.
    """
    planned: list[PlannedApproval] = []
    index: dict[tuple[str, int], int] = {}

    for rule in rules:
        for approver in rule.approvers:
            key = (approver.approver_id, approver.level)
            if key in index:
                existing = planned[index[key]]
                if approver.required and not existing.required:
                    planned[index[key]] = PlannedApproval(
                        approver_id=existing.approver_id,
                        level=existing.level,
                        required=True,
                        rule_id=existing.rule_id,
                        approver_role=existing.approver_role,
                    )
                continue
            index[key] = len(planned)
            planned.append(
                PlannedApproval(
                    approver_id=approver.approver_id,
                    level=approver.level,
                    required=approver.required,
                    rule_id=rule.rule_id,
                    approver_role=approver.role_id,
                )
            )

    return tuple(planned)


def evaluate_tally(records: Sequence[ApprovalRecord]) -> ApprovalTally:
    """Count required approvals and report the levels still pending."""
    required = [r for r in records if r.required]
    pending_levels = sorted({
        r.level for r in required if r.status == ApprovalRecordStatus.PENDING
    })
    return ApprovalTally(
        required_total=len(required),
        required_approved=sum(
            1 for r in required if r.status == ApprovalRecordStatus.APPROVED
        ),
        optional_total=len(records) - len(required),
        rejected=sum(1 for r in records if r.status == ApprovalRecordStatus.REJECTED),
        pending_levels=tuple(pending_levels),
    )


def select_pending_record(
    records: Sequence[ApprovalRecord],
    approver_id: str,
) -> ApprovalRecord | None:
    """The approver's first pending record by level, then creation order.

    ``records`` must already be in (level, creation) order, which is how
    the requisition loads them.
    """
    for record in sorted(records, key=lambda r: r.level):
        if record.approver_id == approver_id and record.is_pending:
            return record
    return None


def next_approval_level(records: Sequence[ApprovalRecord]) -> int | None:
    """Lowest level that still has a pending required record."""
    levels = evaluate_tally(records).pending_levels
    return levels[0] if levels else None
