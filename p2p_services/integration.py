"""
Collaborator adapters for the requisition lifecycle.

Concrete implementations of the integration protocols declared in
``p2p_kernel.domain.integration`` and ``p2p_kernel.domain.approval``,
plus the two boundary helpers the lifecycle uses to call them:

    outcome = start_workflow_safely(engine, context)
    outcome = publish_safely(publisher, event)

Both helpers reduce every collaborator failure, including an unexpected
exception, to an ``IntegrationOutcome``; nothing a workflow engine or
event bus does can abort a requisition transaction.

Usage:

    from p2p_services.integration import (
        ConfiguredRuleProvider,
        InMemoryEventPublisher,
        NullWorkflowEngine,
    )

    service = RequisitionService(
        session,
        clock,
        rule_provider=ConfiguredRuleProvider(),
        workflow_engine=NullWorkflowEngine(),
        event_publisher=InMemoryEventPublisher(),
    )
"""

from __future__ import annotations

import threading
from decimal import Decimal
from pathlib import Path
from typing import Iterable
from uuid import uuid4

from p2p_config import get_active_rules
from p2p_kernel.domain.approval import ApprovalRule, RuleLookup
from p2p_kernel.domain.integration import (
    DomainEvent,
    EventPublisher,
    IntegrationOutcome,
    WorkflowContext,
    WorkflowEngine,
)
from p2p_kernel.exceptions import ConfigError
from p2p_kernel.logging_config import get_logger

logger = get_logger("services.integration")

WORKFLOW_ENGINE = "workflow_engine"
EVENT_PUBLISHER = "event_publisher"


# ---------------------------------------------------------------------------
# Boundary helpers
# ---------------------------------------------------------------------------


def start_workflow_safely(
    engine: WorkflowEngine | None, context: WorkflowContext,
) -> IntegrationOutcome:
    """Start a workflow instance; failures come back as FAILED outcomes."""
    if engine is None:
        return IntegrationOutcome.skipped(WORKFLOW_ENGINE, "No workflow engine configured")
    try:
        outcome = engine.start_workflow(context)
    except Exception as exc:
        logger.warning(
            "workflow_start_failed",
            extra={
                "entity_id": context.entity_id,
                "process_type": context.process_type,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )
        return IntegrationOutcome.failed(WORKFLOW_ENGINE, f"{type(exc).__name__}: {exc}")
    if outcome is None:
        return IntegrationOutcome.failed(WORKFLOW_ENGINE, "Workflow engine returned no outcome")
    return outcome


def publish_safely(
    publisher: EventPublisher | None, event: DomainEvent,
) -> IntegrationOutcome:
    """Publish an event; failures come back as FAILED outcomes."""
    if publisher is None:
        return IntegrationOutcome.skipped(EVENT_PUBLISHER, "No event publisher configured")
    try:
        publisher.publish(event)
    except Exception as exc:
        logger.warning(
            "event_publish_failed",
            extra={
                "event_type": event.event_type,
                "entity_id": event.entity_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )
        return IntegrationOutcome.failed(EVENT_PUBLISHER, f"{type(exc).__name__}: {exc}")
    return IntegrationOutcome.delivered(EVENT_PUBLISHER)


# ---------------------------------------------------------------------------
# Workflow engines
# ---------------------------------------------------------------------------


class NullWorkflowEngine:
    """No workflow subsystem: every start is SKIPPED."""

    def start_workflow(self, context: WorkflowContext) -> IntegrationOutcome:
        return IntegrationOutcome.skipped(WORKFLOW_ENGINE, "Workflow engine disabled")


class InMemoryWorkflowEngine:
    """Records started instances in memory.  Used by tests and demos.

    ``fail_with`` makes every start raise that exception instead.
    """

    def __init__(self, fail_with: Exception | None = None):
        self.fail_with = fail_with
        self.instances: dict[str, WorkflowContext] = {}
        self._lock = threading.Lock()

    def start_workflow(self, context: WorkflowContext) -> IntegrationOutcome:
        if self.fail_with is not None:
            raise self.fail_with
        instance_id = f"WF-{uuid4().hex[:12].upper()}"
        with self._lock:
            self.instances[instance_id] = context
        return IntegrationOutcome.started(WORKFLOW_ENGINE, instance_id)


# ---------------------------------------------------------------------------
# Event publishers
# ---------------------------------------------------------------------------


class LoggingEventPublisher:
    """Writes each event to the structured log."""

    def publish(self, event: DomainEvent) -> None:
        logger.info(
            "domain_event_published",
            extra={
                "event_id": str(event.event_id),
                "event_type": event.event_type,
                "entity_type": event.entity_type,
                "entity_id": event.entity_id,
                "user_id": event.user_id,
                "source": event.source,
                "version": event.version,
            },
        )


class InMemoryEventPublisher:
    """Collects published events.  ``fail_with`` makes publish raise."""

    def __init__(self, fail_with: Exception | None = None):
        self.fail_with = fail_with
        self.events: list[DomainEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: DomainEvent) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> list[DomainEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------


class FixedBudgetCollaborator:
    """Budget service backed by a fixed table.

    Lookups try ``(department, category)`` first, then the department
    alone.  An unknown department raises ``LookupError``.
    """

    def __init__(
        self,
        budgets: dict[str, Decimal] | None = None,
        category_budgets: dict[tuple[str, str], Decimal] | None = None,
        fail_with: Exception | None = None,
    ):
        self.budgets = dict(budgets or {})
        self.category_budgets = dict(category_budgets or {})
        self.fail_with = fail_with

    def get_available(self, department_id: str, category: str | None = None) -> Decimal:
        if self.fail_with is not None:
            raise self.fail_with
        if category is not None and (department_id, category) in self.category_budgets:
            return self.category_budgets[(department_id, category)]
        if department_id in self.budgets:
            return self.budgets[department_id]
        raise LookupError(f"No budget for department {department_id}")


# ---------------------------------------------------------------------------
# Approval rule providers
# ---------------------------------------------------------------------------


class StaticRuleProvider:
    """Serves a fixed list of rules; ``available=False`` simulates an outage."""

    def __init__(
        self,
        rules: Iterable[ApprovalRule] = (),
        available: bool = True,
        reason: str = "Rule provider unavailable",
    ):
        self.rules = tuple(rules)
        self.available = available
        self.reason = reason

    def get_approval_rules(self, process_type: str) -> RuleLookup:
        if not self.available:
            return RuleLookup.unavailable(self.reason)
        return RuleLookup.found(r for r in self.rules if r.process_type == process_type)


class ConfiguredRuleProvider:
    """Rules from ``p2p_config.get_active_rules``.

    The rule set is loaded on first use and held for the provider's
    lifetime.  A load failure is reported as an unavailable lookup and
    retried on the next call.
    """

    def __init__(self, config_path: Path | str | None = None, strict: bool = False):
        self.config_path = config_path
        self.strict = strict
        self._rule_set = None
        self._lock = threading.Lock()

    def get_approval_rules(self, process_type: str) -> RuleLookup:
        with self._lock:
            if self._rule_set is None:
                try:
                    self._rule_set = get_active_rules(self.config_path, strict=self.strict)
                except (OSError, ConfigError) as exc:
                    logger.error(
                        "approval_rules_unavailable",
                        extra={
                            "process_type": process_type,
                            "config_path": str(self.config_path) if self.config_path else None,
                            "error": str(exc),
                        },
                    )
                    return RuleLookup.unavailable(str(exc))
            rule_set = self._rule_set
        return RuleLookup.found(rule_set.rules_for(process_type))
