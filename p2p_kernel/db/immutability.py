"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

The requisition audit story depends on some rows never changing once
written: the audit chain, the line items a total was computed from, and
every approval decision.  Services never issue such writes; these listeners
make a bug that tries to fail loudly instead of silently rewriting history.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database:

    session.flush()
         |
         v
    [before_update event] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity               | When Immutable                        | Mutable fields
---------------------|---------------------------------------|------------------------
AuditEvent           | ALWAYS                                | none
RequisitionLine      | ALWAYS                                | none
ApprovalRecord       | Once decided, or once the requisition | status/comments/decided_at
                     | is no longer SUBMITTED                | on PENDING -> decided only
Requisition          | Once APPROVED / REJECTED / CANCELLED  | none
(all of the above)   | DELETE is never allowed               |

updated_at/updated_by_id are audit metadata and may change whenever the
record itself may.

"Original" status is read from SQLAlchemy attribute history, so a flush
that moves a requisition SUBMITTED -> APPROVED and decides its last
approval record in the same unit of work is judged against SUBMITTED.

===============================================================================
USAGE
===============================================================================

    from p2p_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup, idempotent

Tests that must violate a rule on purpose call
``unregister_immutability_listeners()`` and re-register afterwards.
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from p2p_kernel.exceptions import ImmutabilityViolationError
from p2p_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_METADATA_FIELDS = frozenset({"updated_at", "updated_by_id"})
_APPROVAL_DECISION_FIELDS = frozenset({"status", "comments", "decided_at"})
_TERMINAL_REQUISITION_STATUSES = frozenset({"APPROVED", "REJECTED", "CANCELLED"})


def _blocked(entity_type: str, entity_id, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _original_value(target, attribute: str):
    """Value of ``attribute`` as loaded, before pending changes."""
    history = get_history(target, attribute)
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return history.added[0] if history.added else None


def _changed_fields(mapper, target) -> set[str]:
    return {
        attr.key
        for attr in mapper.column_attrs
        if get_history(target, attr.key).has_changes()
    }


# ---------------------------------------------------------------------------
# AuditEvent
# ---------------------------------------------------------------------------


def _check_audit_event_immutability(mapper, connection, target):
    raise _blocked(
        "AuditEvent", target.id, "UPDATE",
        "Audit events are immutable and cannot be modified",
    )


def _check_audit_event_delete(mapper, connection, target):
    raise _blocked(
        "AuditEvent", target.id, "DELETE",
        "Audit events are immutable and cannot be deleted",
    )


# ---------------------------------------------------------------------------
# Requisition line items
# ---------------------------------------------------------------------------


def _check_line_immutability(mapper, connection, target):
    changed = _changed_fields(mapper, target) - _METADATA_FIELDS
    if changed:
        raise _blocked(
            "RequisitionLine", target.id, "UPDATE",
            f"Line items are fixed at creation (attempted: {sorted(changed)})",
        )


def _check_line_delete(mapper, connection, target):
    raise _blocked(
        "RequisitionLine", target.id, "DELETE",
        "Line items cannot be deleted",
    )


# ---------------------------------------------------------------------------
# Approval records
# ---------------------------------------------------------------------------


def _check_approval_record_immutability(mapper, connection, target):
    changed = _changed_fields(mapper, target) - _METADATA_FIELDS
    if not changed:
        return

    structural = changed - _APPROVAL_DECISION_FIELDS
    if structural:
        raise _blocked(
            "ApprovalRecord", target.id, "UPDATE",
            f"Approval record assignment is fixed at creation (attempted: {sorted(structural)})",
        )

    original_status = _original_value(target, "status")
    if original_status != "PENDING":
        raise _blocked(
            "ApprovalRecord", target.id, "UPDATE",
            f"Approval record already decided ({original_status})",
        )

    parent = target.requisition
    parent_status = _original_value(parent, "status") if parent is not None else None
    if parent_status != "SUBMITTED":
        raise _blocked(
            "ApprovalRecord", target.id, "UPDATE",
            f"Requisition is {parent_status}; approval records are frozen",
        )


def _check_approval_record_delete(mapper, connection, target):
    raise _blocked(
        "ApprovalRecord", target.id, "DELETE",
        "Approval records cannot be deleted",
    )


# ---------------------------------------------------------------------------
# Requisitions
# ---------------------------------------------------------------------------


def _check_requisition_immutability(mapper, connection, target):
    original_status = _original_value(target, "status")
    if original_status not in _TERMINAL_REQUISITION_STATUSES:
        return
    # version is bumped by the mapper itself on every UPDATE
    changed = _changed_fields(mapper, target) - _METADATA_FIELDS - {"version"}
    if changed:
        raise _blocked(
            "Requisition", target.id, "UPDATE",
            f"Requisition is {original_status} (attempted: {sorted(changed)})",
        )


def _check_requisition_delete(mapper, connection, target):
    raise _blocked(
        "Requisition", target.id, "DELETE",
        "Requisitions are never deleted",
    )


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def _listener_table():
    from p2p_kernel.models.audit_event import AuditEvent
    from p2p_modules.requisition.orm import (
        ApprovalRecordModel,
        RequisitionLineModel,
        RequisitionModel,
    )

    return (
        (AuditEvent, "before_update", _check_audit_event_immutability),
        (AuditEvent, "before_delete", _check_audit_event_delete),
        (RequisitionLineModel, "before_update", _check_line_immutability),
        (RequisitionLineModel, "before_delete", _check_line_delete),
        (ApprovalRecordModel, "before_update", _check_approval_record_immutability),
        (ApprovalRecordModel, "before_delete", _check_approval_record_delete),
        (RequisitionModel, "before_update", _check_requisition_immutability),
        (RequisitionModel, "before_delete", _check_requisition_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call once after models are importable; repeated calls are harmless.
    """
    for target, event_name, fn in _listener_table():
        if not event.contains(target, event_name, fn):
            event.listen(target, event_name, fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that intentionally violate the rules.
    """
    for target, event_name, fn in _listener_table():
        _safe_remove_listener(target, event_name, fn)
