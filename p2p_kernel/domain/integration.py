"""
Integration contracts (``p2p_kernel.domain.integration``).

Responsibility
--------------
Capability protocols for the collaborators the requisition lifecycle calls
out to (workflow engine, event bus, budget service) and the explicit
outcome type every best-effort call is reduced to.  A collaborator
failure is a value here, never an exception that escapes the lifecycle.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects and Protocols.  ZERO I/O.
Concrete adapters live in ``p2p_services.integration``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import UUID, uuid4


class IntegrationStatus(str, Enum):
    """How a best-effort collaborator call ended."""

    STARTED = "STARTED"
    DELIVERED = "DELIVERED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class IntegrationOutcome:
    """Result of a best-effort collaborator call.

    ``reference`` carries the collaborator's handle (e.g. a workflow
    instance id) when one was issued; ``reason`` explains SKIPPED/FAILED.
    """

    collaborator: str
    status: IntegrationStatus
    reference: str | None = None
    reason: str | None = None

    @classmethod
    def started(cls, collaborator: str, reference: str) -> IntegrationOutcome:
        return cls(collaborator, IntegrationStatus.STARTED, reference=reference)

    @classmethod
    def delivered(cls, collaborator: str) -> IntegrationOutcome:
        return cls(collaborator, IntegrationStatus.DELIVERED)

    @classmethod
    def skipped(cls, collaborator: str, reason: str) -> IntegrationOutcome:
        return cls(collaborator, IntegrationStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, collaborator: str, reason: str) -> IntegrationOutcome:
        return cls(collaborator, IntegrationStatus.FAILED, reason=reason)

    @property
    def is_degraded(self) -> bool:
        return self.status == IntegrationStatus.FAILED


class RequisitionEventType(str, Enum):
    """Event types published for requisitions."""

    REQUISITION_CREATED = "REQUISITION_CREATED"
    REQUISITION_SUBMITTED = "REQUISITION_SUBMITTED"
    REQUISITION_APPROVED = "REQUISITION_APPROVED"
    REQUISITION_REJECTED = "REQUISITION_REJECTED"
    REQUISITION_CANCELLED = "REQUISITION_CANCELLED"
    WORKFLOW_ERROR = "WORKFLOW_ERROR"


@dataclass(frozen=True)
class DomainEvent:
    """Envelope handed to the event bus."""

    event_type: str
    entity_type: str
    entity_id: str
    data: dict[str, Any]
    user_id: str
    timestamp: datetime
    correlation_id: str
    source: str
    version: str
    event_id: UUID = field(default_factory=uuid4)


@dataclass(frozen=True)
class WorkflowContext:
    """What the workflow engine is told when a requisition is submitted."""

    process_type: str
    entity_id: str
    initiator_id: str
    current_step: str
    correlation_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class WorkflowEngine(Protocol):
    """Starts an approval workflow instance for a submitted document."""

    def start_workflow(self, context: WorkflowContext) -> IntegrationOutcome: ...


@runtime_checkable
class EventPublisher(Protocol):
    """Fire-and-forget domain event publication."""

    def publish(self, event: DomainEvent) -> None: ...


@runtime_checkable
class BudgetCollaborator(Protocol):
    """Remaining spendable budget for a department (and optional category)."""

    def get_available(self, department_id: str, category: str | None = None) -> Decimal: ...
