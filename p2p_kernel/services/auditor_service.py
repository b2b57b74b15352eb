"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every requisition
    state change, every approval decision and every degraded collaborator
    call.  Provides chain validation for tamper detection and trace queries
    for review.  This is the AuditRecorder the lifecycle depends on.

Architecture position:
    Kernel > Services -- imperative shell, called by RequisitionService and
    RequisitionValidationService.

Invariants enforced:
    - Sequence monotonicity via SequenceService (never max+1).
    - Chain integrity: every audit event carries a hash link to its
      predecessor.
    - Append-only: audit events are never modified or deleted (ORM listener).

Failure modes:
    - AuditChainBrokenError: recomputed hash does not match stored hash,
      or prev_hash does not match the predecessor's hash.

Audit relevance:
    This IS the audit service.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from p2p_kernel.domain.clock import Clock, SystemClock
from p2p_kernel.domain.integration import IntegrationOutcome
from p2p_kernel.exceptions import AuditChainBrokenError
from p2p_kernel.logging_config import get_logger
from p2p_kernel.models.audit_event import AuditAction, AuditEvent
from p2p_kernel.services.sequence_service import SequenceService
from p2p_kernel.utils.hashing import canonicalize_json, hash_audit_event, hash_payload

logger = get_logger("services.auditor")

REQUISITION_ENTITY = "Requisition"


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: str
    occurred_at: datetime
    actor_id: str
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one entity, in chronological order."""

    entity_type: str
    entity_id: str
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[str, ...]:
        return tuple(e.action for e in self.entries)

    @property
    def last_action(self) -> str | None:
        return self.entries[-1].action if self.entries else None


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last_event = self._session.execute(
            select(AuditEvent)
            .order_by(AuditEvent.seq.desc())
            .limit(1)
        ).scalar_one_or_none()
        return last_event.hash if last_event else None

    def _create_audit_event(
        self,
        entity_type: str,
        entity_id: Any,
        action: AuditAction,
        actor_id: str,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Create a new audit event with hash chain linkage.

        Postconditions:
            - A new ``AuditEvent`` row is flushed with a strictly
              increasing ``seq`` and a valid hash chain link.
        """
        # The audit counter lock also serializes reading the chain head
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        # Round-trip through canonical JSON so the JSON column and the hash
        # see the same values (Decimal/UUID/datetime become strings)
        payload_data = json.loads(canonicalize_json(payload or {}))
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )

        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )

        return audit_event

    def log_event(
        self,
        action: AuditAction,
        entity_type: str,
        entity_id: Any,
        actor_id: str,
        details: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """Generic recording entry point for callers without a helper below."""
        return self._create_audit_event(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            payload=details,
        )

    # Requisition lifecycle recording methods

    def record_requisition_created(
        self,
        requisition_id: Any,
        request_number: str,
        total_amount: Decimal,
        item_count: int,
        approval_count: int,
        actor_id: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type=REQUISITION_ENTITY,
            entity_id=requisition_id,
            action=AuditAction.REQUISITION_CREATED,
            actor_id=actor_id,
            payload={
                "request_number": request_number,
                "total_amount": total_amount,
                "item_count": item_count,
                "approval_count": approval_count,
            },
        )

    def record_requisition_submitted(
        self,
        requisition_id: Any,
        request_number: str,
        actor_id: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type=REQUISITION_ENTITY,
            entity_id=requisition_id,
            action=AuditAction.REQUISITION_SUBMITTED,
            actor_id=actor_id,
            payload={"request_number": request_number},
        )

    def record_approval_decision(
        self,
        requisition_id: Any,
        record_id: Any,
        level: int,
        decision: str,
        actor_id: str,
        comments: str | None = None,
    ) -> AuditEvent:
        """One approver's APPROVED/REJECTED decision on one record."""
        return self._create_audit_event(
            entity_type=REQUISITION_ENTITY,
            entity_id=requisition_id,
            action=AuditAction.APPROVAL_RECORDED,
            actor_id=actor_id,
            payload={
                "approval_record_id": record_id,
                "level": level,
                "decision": decision,
                "comments": comments,
            },
        )

    def record_status_change(
        self,
        requisition_id: Any,
        action: AuditAction,
        from_status: str,
        to_status: str,
        actor_id: str,
        reason: str | None = None,
    ) -> AuditEvent:
        """Promotion, rejection or cancellation of a requisition."""
        return self._create_audit_event(
            entity_type=REQUISITION_ENTITY,
            entity_id=requisition_id,
            action=action,
            actor_id=actor_id,
            payload={
                "from_status": from_status,
                "to_status": to_status,
                "reason": reason,
            },
        )

    def record_workflow_started(
        self,
        requisition_id: Any,
        instance_id: str,
        actor_id: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type=REQUISITION_ENTITY,
            entity_id=requisition_id,
            action=AuditAction.WORKFLOW_STARTED,
            actor_id=actor_id,
            payload={"workflow_instance_id": instance_id},
        )

    def record_workflow_error(
        self,
        requisition_id: Any,
        reason: str,
        actor_id: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type=REQUISITION_ENTITY,
            entity_id=requisition_id,
            action=AuditAction.WORKFLOW_ERROR,
            actor_id=actor_id,
            payload={"reason": reason},
        )

    def record_integration_degraded(
        self,
        requisition_id: Any,
        outcome: IntegrationOutcome,
        actor_id: str,
        context: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """An event-bus or budget call failed; the operation itself stood."""
        return self._create_audit_event(
            entity_type=REQUISITION_ENTITY,
            entity_id=requisition_id,
            action=AuditAction.INTEGRATION_DEGRADED,
            actor_id=actor_id,
            payload={
                "collaborator": outcome.collaborator,
                "status": outcome.status.value,
                "reason": outcome.reason,
                **(context or {}),
            },
        )

    # Chain validation and queries

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Raises:
            AuditChainBrokenError: If chain validation fails at any point.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        if not events:
            return True

        if events[0].prev_hash is not None:
            logger.critical(
                "audit_chain_broken",
                extra={"audit_event_id": str(events[0].id), "position": 0},
            )
            raise AuditChainBrokenError(
                str(events[0].id),
                "None",
                events[0].prev_hash,
            )

        for i, event in enumerate(events):
            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                action=event.action,
                payload_hash=event.payload_hash,
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"audit_event_id": str(event.id), "position": i},
                )
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)

            if i > 0 and event.prev_hash != events[i - 1].hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"audit_event_id": str(event.id), "position": i},
                )
                raise AuditChainBrokenError(
                    str(event.id),
                    events[i - 1].hash,
                    event.prev_hash or "None",
                )

        return True

    def get_trace(self, entity_type: str, entity_id: Any) -> AuditTrace:
        """All audit events for an entity, oldest first."""
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == str(entity_id),
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        entries = tuple(
            AuditTraceEntry(
                seq=event.seq,
                action=event.action,
                occurred_at=event.occurred_at,
                actor_id=event.actor_id,
                payload=event.payload or {},
                hash=event.hash,
            )
            for event in events
        )

        return AuditTrace(
            entity_type=entity_type,
            entity_id=str(entity_id),
            entries=entries,
        )
