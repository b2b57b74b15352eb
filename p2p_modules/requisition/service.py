"""
Requisition Module Service (``p2p_modules.requisition.service``).

Responsibility
--------------
Orchestrates the purchase requisition lifecycle -- creation with
rule-conditioned approval routing, submission into the workflow
subsystem, per-approver approval and rejection with atomic tally and
promotion, cancellation, and the read side (get, query, approval
history) -- by delegating pure computation to ``p2p_engines`` and audit
to ``p2p_kernel.services.auditor_service``.

Architecture position
---------------------
**Modules layer** -- ``RequisitionService`` is the sole public entry
point for requisition state changes.  It composes the approval and
check engines, the kernel sequence and audit services, and the
collaborator adapters from ``p2p_services``.

Invariants enforced
-------------------
* Each public method owns the transaction boundary (``commit`` on
  success, ``rollback`` and re-raise on any failure), reads included.
* Every state change is looked up in ``REQUISITION_WORKFLOW``; an action
  with no transition from the current status changes nothing.
* ``total_amount`` is the Decimal sum of estimated price x quantity.
* Request numbers come from a locked per-year counter row, never
  ``max + 1``.
* Approval records are materialized once, at creation.
* Approve/reject lock the requisition row, then its approval records,
  before reading them; tally and promotion happen under that lock.
* Workflow start and event publication are best-effort: their failure
  is audited, never raised.

Failure modes
-------------
* ``RequisitionValidationError`` -- creation payload invalid; nothing
  persisted; every violation listed.
* ``RequisitionNotFoundError`` / ``InvalidRequisitionTransitionError`` /
  ``UnauthorizedApproverError`` -- raised before any mutation.
* ``ApprovalRulesUnavailableError`` -- creation aborted, rolled back.
* ``OptimisticLockError`` -- a concurrent writer changed the requisition.
* ``RequisitionPersistenceError`` -- any other storage failure; the
  database error is chained and logged, never shown to callers.

Usage::

    service = RequisitionService(
        session, clock=clock,
        rule_provider=ConfiguredRuleProvider(),
        workflow_engine=NullWorkflowEngine(),
        event_publisher=LoggingEventPublisher(),
    )
    requisition = service.create_requisition(payload, requestor_id="u-1")
    service.submit_requisition(requisition.id, user_id="u-1")
    service.approve_requisition(requisition.id, approver_id="manager-001")
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from p2p_engines.approval import (
    condition_attributes,
    evaluate_tally,
    materialize_approvals,
    next_approval_level,
    select_applicable_rules,
    select_pending_record,
)
from p2p_engines.requisition_checks import CREATION_CHECKS, compute_total, run_checks
from p2p_kernel.domain.approval import (
    ApprovalRecord,
    ApprovalRecordStatus,
    RuleConfigurationProvider,
)
from p2p_kernel.domain.clock import Clock, SystemClock
from p2p_kernel.domain.integration import (
    DomainEvent,
    EventPublisher,
    IntegrationOutcome,
    IntegrationStatus,
    RequisitionEventType,
    WorkflowContext,
    WorkflowEngine,
)
from p2p_kernel.domain.workflow import Transition
from p2p_kernel.exceptions import (
    ApprovalRulesUnavailableError,
    InvalidRequisitionTransitionError,
    OptimisticLockError,
    RequisitionNotFoundError,
    RequisitionPersistenceError,
    RequisitionValidationError,
    UnauthorizedApproverError,
)
from p2p_kernel.logging_config import LogContext, get_logger
from p2p_kernel.models.audit_event import AuditAction
from p2p_kernel.services.auditor_service import AuditorService
from p2p_kernel.services.sequence_service import RequisitionNumberAllocator
from p2p_modules.requisition.config import RequisitionConfig
from p2p_modules.requisition.models import (
    CreateRequisitionInput,
    Requisition,
    RequisitionFilter,
    RequisitionPage,
    RequisitionStatus,
    parse_requisition_id,
)
from p2p_modules.requisition.orm import (
    ApprovalRecordModel,
    RequisitionLineModel,
    RequisitionModel,
)
from p2p_modules.requisition.selectors import RequisitionSelector
from p2p_modules.requisition.workflows import (
    APPROVE,
    CANCEL,
    REJECT,
    REQUISITION_WORKFLOW,
    SUBMIT,
)
from p2p_services.integration import (
    ConfiguredRuleProvider,
    LoggingEventPublisher,
    NullWorkflowEngine,
    publish_safely,
    start_workflow_safely,
)

logger = get_logger("modules.requisition.service")

EVENT_ENTITY_TYPE = "REQUISITION"


class RequisitionService:
    """
    Orchestrates the requisition lifecycle through engines and kernel.

    Contract
    --------
    * Mutating methods return the refreshed ``Requisition`` DTO.
    * Events are published only after the owning transaction commits.

    Guarantees
    ----------
    * One operation, one transaction.
    * Clock is injectable for deterministic testing.

    Non-goals
    ---------
    * Does NOT authenticate callers; actor ids are opaque.
    * Does NOT re-evaluate approval rules after creation.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        rule_provider: RuleConfigurationProvider | None = None,
        workflow_engine: WorkflowEngine | None = None,
        event_publisher: EventPublisher | None = None,
        config: RequisitionConfig | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or RequisitionConfig.with_defaults()
        self._rule_provider = rule_provider or ConfiguredRuleProvider()
        self._workflow_engine = workflow_engine or NullWorkflowEngine()
        self._event_publisher = event_publisher or LoggingEventPublisher()
        self._auditor = AuditorService(session, self._clock)
        self._numbers = RequisitionNumberAllocator(
            session,
            prefix=self._config.number_prefix,
            width=self._config.number_width,
        )
        self._selector = RequisitionSelector(session)

    # =========================================================================
    # Transaction and integration plumbing
    # =========================================================================

    @contextmanager
    def _transaction(self, operation: str, requisition_id: UUID | None = None) -> Iterator[None]:
        try:
            yield
            self._session.commit()
        except StaleDataError as exc:
            self._session.rollback()
            logger.warning(
                "requisition_concurrent_modification",
                extra={"operation": operation, "requisition_id": str(requisition_id)},
            )
            raise OptimisticLockError("Requisition", str(requisition_id)) from exc
        except SQLAlchemyError as exc:
            self._session.rollback()
            logger.error(
                "requisition_persistence_failed",
                extra={
                    "operation": operation,
                    "requisition_id": str(requisition_id) if requisition_id else None,
                    "error_type": type(exc).__name__,
                },
                exc_info=True,
            )
            raise RequisitionPersistenceError(operation) from exc
        except Exception:
            self._session.rollback()
            raise

    def _event(
        self,
        event_type: RequisitionEventType,
        requisition: Requisition,
        user_id: str,
        data: dict[str, Any],
    ) -> DomainEvent:
        return DomainEvent(
            event_type=event_type.value,
            entity_type=EVENT_ENTITY_TYPE,
            entity_id=str(requisition.id),
            data={"request_number": requisition.request_number, **data},
            user_id=user_id,
            timestamp=self._clock.now(),
            correlation_id=str(requisition.id),
            source=self._config.event_source,
            version=self._config.event_version,
        )

    def _publish(self, events: list[DomainEvent], requisition_id: UUID, actor_id: str) -> None:
        """Publish committed events; record each failure in its own transaction."""
        for event in events:
            outcome = publish_safely(self._event_publisher, event)
            if outcome.is_degraded:
                self._record_degradation(
                    requisition_id, outcome, actor_id, {"event_type": event.event_type},
                )

    def _record_degradation(
        self,
        requisition_id: UUID,
        outcome: IntegrationOutcome,
        actor_id: str,
        context: dict[str, Any],
    ) -> None:
        try:
            self._auditor.record_integration_degraded(
                requisition_id, outcome, actor_id, context,
            )
            self._session.commit()
        except SQLAlchemyError:
            self._session.rollback()
            logger.error(
                "integration_degradation_not_recorded",
                extra={
                    "requisition_id": str(requisition_id),
                    "collaborator": outcome.collaborator,
                    **context,
                },
                exc_info=True,
            )

    # =========================================================================
    # Locking and guards
    # =========================================================================

    def _lock_requisition(self, requisition_id: UUID) -> RequisitionModel:
        model = self._session.execute(
            select(RequisitionModel)
            .where(RequisitionModel.id == requisition_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            logger.warning("requisition_not_found", extra={"requisition_id": str(requisition_id)})
            raise RequisitionNotFoundError(str(requisition_id))
        return model

    def _lock_approval_records(self, requisition_id: UUID) -> list[ApprovalRecordModel]:
        return list(self._session.execute(
            select(ApprovalRecordModel)
            .where(ApprovalRecordModel.requisition_id == requisition_id)
            .order_by(ApprovalRecordModel.level, ApprovalRecordModel.position)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all())

    def _require_transition(self, model: RequisitionModel, action: str) -> Transition:
        transition = REQUISITION_WORKFLOW.find_transition(model.status, action)
        if transition is None:
            logger.warning(
                "requisition_transition_rejected",
                extra={
                    "requisition_id": str(model.id),
                    "current_status": model.status,
                    "action": action,
                    "allowed_actions": list(REQUISITION_WORKFLOW.allowed_actions(model.status)),
                },
            )
            raise InvalidRequisitionTransitionError(str(model.id), model.status, action)
        return transition

    def _pending_record_for(
        self,
        model: RequisitionModel,
        records: list[ApprovalRecordModel],
        approver_id: str,
    ) -> ApprovalRecordModel:
        chosen = select_pending_record([r.to_dto() for r in records], approver_id)
        if chosen is None:
            logger.warning(
                "unauthorized_approver",
                extra={"requisition_id": str(model.id), "approver_id": approver_id},
            )
            raise UnauthorizedApproverError(str(model.id), approver_id)
        return next(r for r in records if r.id == chosen.id)

    # =========================================================================
    # Creation
    # =========================================================================

    def create_requisition(
        self,
        data: CreateRequisitionInput | Mapping[str, Any],
        requestor_id: str,
    ) -> Requisition:
        """
        Validate, number, route and persist a new DRAFT requisition.

        Raises:
            RequisitionValidationError: listing every violated rule.
            ApprovalRulesUnavailableError: the rule provider could not answer.
        """
        if isinstance(data, Mapping):
            data = CreateRequisitionInput.from_dict(data)

        with LogContext.bind(actor_id=requestor_id):
            logger.info(
                "requisition_create_started",
                extra={"department_id": data.department_id, "item_count": len(data.items)},
            )

            validation = run_checks(CREATION_CHECKS, data, self._clock.today())
            if not validation.is_valid:
                logger.warning(
                    "requisition_validation_failed",
                    extra={"errors": list(validation.messages)},
                )
                raise RequisitionValidationError(validation.errors)

            process_type = self._config.process_type
            with self._transaction("create_requisition"):
                lookup = self._rule_provider.get_approval_rules(process_type)
                if not lookup.available:
                    logger.error(
                        "approval_rules_unavailable",
                        extra={"process_type": process_type, "reason": lookup.reason},
                    )
                    raise ApprovalRulesUnavailableError(
                        process_type, lookup.reason or "no reason given",
                    )

                now = self._clock.now()
                total = compute_total(data.items)
                request_number = self._numbers.allocate(now.year)
                model = self._build_requisition(data, requestor_id, request_number, total, now)

                rules = select_applicable_rules(
                    rules=lookup.rules,
                    process_type=process_type,
                    attributes=condition_attributes(total),
                )
                planned = materialize_approvals(rules)
                for position, plan in enumerate(planned):
                    model.approvals.append(ApprovalRecordModel(
                        approver_id=plan.approver_id,
                        approver_role=plan.approver_role,
                        level=plan.level,
                        position=position,
                        required=plan.required,
                        status=ApprovalRecordStatus.PENDING.value,
                        rule_id=plan.rule_id,
                        created_at=now,
                        updated_at=now,
                        created_by_id=requestor_id,
                    ))

                self._session.add(model)
                self._session.flush()

                self._auditor.record_requisition_created(
                    requisition_id=model.id,
                    request_number=request_number,
                    total_amount=total,
                    item_count=len(model.lines),
                    approval_count=len(planned),
                    actor_id=requestor_id,
                )
                requisition = model.to_dto()

            logger.info(
                "requisition_created",
                extra={
                    "requisition_id": str(requisition.id),
                    "request_number": requisition.request_number,
                    "total_amount": str(requisition.total_amount),
                    "rule_ids": [r.rule_id for r in rules],
                    "approval_count": len(requisition.approvals),
                },
            )

            self._publish(
                [self._event(
                    RequisitionEventType.REQUISITION_CREATED, requisition, requestor_id,
                    {
                        "title": requisition.title,
                        "department_id": requisition.department_id,
                        "total_amount": str(requisition.total_amount),
                        "currency": requisition.currency,
                        "status": requisition.status.value,
                        "approval_count": len(requisition.approvals),
                    },
                )],
                requisition.id,
                requestor_id,
            )
            return requisition

    def _build_requisition(self, data, requestor_id, request_number, total, now) -> RequisitionModel:
        currency = self._config.default_currency
        model = RequisitionModel(
            request_number=request_number,
            title=data.title.strip(),
            description=data.description,
            requestor_id=requestor_id,
            department_id=data.department_id.strip(),
            priority=data.priority.value,
            requisition_type=data.requisition_type.value,
            status=REQUISITION_WORKFLOW.initial_state,
            total_amount=total,
            currency=currency,
            required_by=data.required_by,
            justification=data.justification,
            created_at=now,
            updated_at=now,
            created_by_id=requestor_id,
        )
        for line_number, item in enumerate(data.items, start=1):
            model.lines.append(RequisitionLineModel(
                line_number=line_number,
                product_id=item.product_id,
                description=item.description.strip(),
                quantity=item.quantity,
                unit_price=item.unit_price,
                estimated_price=item.estimated_price,
                currency=item.currency or currency,
                unit_of_measure=item.unit_of_measure,
                category=item.category.strip(),
                requested_delivery_date=item.requested_delivery_date,
                specifications=item.specifications,
                preferred_supplier=item.preferred_supplier,
                suggested_suppliers=list(item.suggested_suppliers),
                notes=item.notes,
                created_at=now,
                updated_at=now,
                created_by_id=requestor_id,
            ))
        return model

    # =========================================================================
    # Submission
    # =========================================================================

    def submit_requisition(self, requisition_id: UUID | str, user_id: str) -> Requisition:
        """
        DRAFT -> SUBMITTED, then try to start an approval workflow.

        A workflow engine failure is audited (``WORKFLOW_ERROR``) and
        announced with a ``WORKFLOW_ERROR`` event; the submission stands.
        """
        requisition_id = parse_requisition_id(requisition_id)
        with LogContext.bind(requisition_id=requisition_id, actor_id=user_id):
            events: list[DomainEvent] = []
            with self._transaction("submit_requisition", requisition_id):
                model = self._lock_requisition(requisition_id)
                transition = self._require_transition(model, SUBMIT)

                now = self._clock.now()
                model.status = transition.to_state
                model.submitted_at = now
                model.updated_at = now
                model.updated_by_id = user_id
                self._session.flush()

                outcome = start_workflow_safely(
                    self._workflow_engine,
                    WorkflowContext(
                        process_type=self._config.process_type,
                        entity_id=str(model.id),
                        initiator_id=user_id,
                        current_step=transition.to_state,
                        correlation_id=str(model.id),
                        variables={
                            "request_number": model.request_number,
                            "total_amount": str(model.total_amount),
                            "department_id": model.department_id,
                            "priority": model.priority,
                        },
                        metadata={"source": self._config.event_source},
                    ),
                )
                if outcome.status == IntegrationStatus.STARTED:
                    model.workflow_instance_id = outcome.reference
                    self._auditor.record_workflow_started(model.id, outcome.reference, user_id)
                elif outcome.is_degraded:
                    self._auditor.record_workflow_error(model.id, outcome.reason, user_id)
                else:
                    logger.info(
                        "workflow_start_skipped",
                        extra={"requisition_id": str(model.id), "reason": outcome.reason},
                    )

                self._auditor.record_requisition_submitted(
                    model.id, model.request_number, user_id,
                )
                self._session.flush()
                requisition = model.to_dto()

            logger.info(
                "requisition_submitted",
                extra={
                    "request_number": requisition.request_number,
                    "workflow_status": outcome.status.value,
                    "workflow_instance_id": requisition.workflow_instance_id,
                },
            )

            events.append(self._event(
                RequisitionEventType.REQUISITION_SUBMITTED, requisition, user_id,
                {
                    "status": requisition.status.value,
                    "submitted_at": requisition.submitted_at.isoformat(),
                    "workflow_instance_id": requisition.workflow_instance_id,
                },
            ))
            if outcome.is_degraded:
                events.append(self._event(
                    RequisitionEventType.WORKFLOW_ERROR, requisition, user_id,
                    {"error": outcome.reason, "collaborator": outcome.collaborator},
                ))
            self._publish(events, requisition.id, user_id)
            return requisition

    # =========================================================================
    # Approval decisions
    # =========================================================================

    def approve_requisition(
        self,
        requisition_id: UUID | str,
        approver_id: str,
        comments: str | None = None,
    ) -> Requisition:
        """
        Record one approver's approval; promote to APPROVED when every
        required record is approved.

        Raises:
            RequisitionNotFoundError, InvalidRequisitionTransitionError,
            UnauthorizedApproverError: before anything changes.
        """
        requisition_id = parse_requisition_id(requisition_id)
        with LogContext.bind(requisition_id=requisition_id, actor_id=approver_id):
            with self._transaction("approve_requisition", requisition_id):
                model = self._lock_requisition(requisition_id)
                promotion = self._require_transition(model, APPROVE)
                records = self._lock_approval_records(model.id)
                record = self._pending_record_for(model, records, approver_id)

                now = self._clock.now()
                record.status = ApprovalRecordStatus.APPROVED.value
                record.decided_at = now
                record.comments = comments
                record.updated_at = now
                record.updated_by_id = approver_id
                self._session.flush()

                self._auditor.record_approval_decision(
                    requisition_id=model.id,
                    record_id=record.id,
                    level=record.level,
                    decision=ApprovalRecordStatus.APPROVED.value,
                    actor_id=approver_id,
                    comments=comments,
                )

                tally = evaluate_tally([r.to_dto() for r in records])
                model.updated_at = now
                model.updated_by_id = approver_id
                if tally.is_complete:
                    model.status = promotion.to_state
                    model.approved_at = now
                    self._auditor.record_status_change(
                        requisition_id=model.id,
                        action=AuditAction.REQUISITION_APPROVED,
                        from_status=promotion.from_state,
                        to_status=promotion.to_state,
                        actor_id=approver_id,
                    )
                self._session.flush()
                approval_level = record.level
                requisition = model.to_dto()

            logger.info(
                "requisition_approval_recorded",
                extra={
                    "approval_level": approval_level,
                    "required_approved": tally.required_approved,
                    "required_total": tally.required_total,
                    "final_status": requisition.status.value,
                },
            )

            self._publish(
                [self._event(
                    RequisitionEventType.REQUISITION_APPROVED, requisition, approver_id,
                    {
                        "final_status": requisition.status.value,
                        "approval_level": approval_level,
                        "approver_id": approver_id,
                        "comments": comments,
                    },
                )],
                requisition.id,
                approver_id,
            )
            return requisition

    def reject_requisition(
        self,
        requisition_id: UUID | str,
        approver_id: str,
        reason: str | None = None,
    ) -> Requisition:
        """
        Record one approver's rejection; the requisition becomes REJECTED.

        Same guards as ``approve_requisition``.  Records still pending
        stay PENDING and are frozen with the requisition.
        """
        requisition_id = parse_requisition_id(requisition_id)
        with LogContext.bind(requisition_id=requisition_id, actor_id=approver_id):
            with self._transaction("reject_requisition", requisition_id):
                model = self._lock_requisition(requisition_id)
                transition = self._require_transition(model, REJECT)
                records = self._lock_approval_records(model.id)
                record = self._pending_record_for(model, records, approver_id)

                now = self._clock.now()
                record.status = ApprovalRecordStatus.REJECTED.value
                record.decided_at = now
                record.comments = reason
                record.updated_at = now
                record.updated_by_id = approver_id
                self._session.flush()

                self._auditor.record_approval_decision(
                    requisition_id=model.id,
                    record_id=record.id,
                    level=record.level,
                    decision=ApprovalRecordStatus.REJECTED.value,
                    actor_id=approver_id,
                    comments=reason,
                )

                model.status = transition.to_state
                model.updated_at = now
                model.updated_by_id = approver_id
                self._auditor.record_status_change(
                    requisition_id=model.id,
                    action=AuditAction.REQUISITION_REJECTED,
                    from_status=transition.from_state,
                    to_status=transition.to_state,
                    actor_id=approver_id,
                    reason=reason,
                )
                self._session.flush()
                approval_level = record.level
                requisition = model.to_dto()

            logger.info(
                "requisition_rejected",
                extra={"approval_level": approval_level, "reason": reason},
            )

            self._publish(
                [self._event(
                    RequisitionEventType.REQUISITION_REJECTED, requisition, approver_id,
                    {
                        "final_status": requisition.status.value,
                        "approval_level": approval_level,
                        "approver_id": approver_id,
                        "reason": reason,
                    },
                )],
                requisition.id,
                approver_id,
            )
            return requisition

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel_requisition(
        self,
        requisition_id: UUID | str,
        user_id: str,
        reason: str | None = None,
    ) -> Requisition:
        """DRAFT or SUBMITTED -> CANCELLED."""
        requisition_id = parse_requisition_id(requisition_id)
        with LogContext.bind(requisition_id=requisition_id, actor_id=user_id):
            with self._transaction("cancel_requisition", requisition_id):
                model = self._lock_requisition(requisition_id)
                transition = self._require_transition(model, CANCEL)

                now = self._clock.now()
                from_status = model.status
                model.status = transition.to_state
                model.updated_at = now
                model.updated_by_id = user_id
                self._auditor.record_status_change(
                    requisition_id=model.id,
                    action=AuditAction.REQUISITION_CANCELLED,
                    from_status=from_status,
                    to_status=transition.to_state,
                    actor_id=user_id,
                    reason=reason,
                )
                self._session.flush()
                requisition = model.to_dto()

            logger.info(
                "requisition_cancelled",
                extra={"from_status": from_status, "reason": reason},
            )

            self._publish(
                [self._event(
                    RequisitionEventType.REQUISITION_CANCELLED, requisition, user_id,
                    {"previous_status": from_status, "reason": reason},
                )],
                requisition.id,
                user_id,
            )
            return requisition

    # =========================================================================
    # Reads
    # =========================================================================

    def get_requisition(self, requisition_id: UUID | str) -> Requisition:
        requisition_id = parse_requisition_id(requisition_id)
        with self._transaction("get_requisition", requisition_id):
            requisition = self._selector.get(requisition_id)
            if requisition is None:
                raise RequisitionNotFoundError(str(requisition_id))
        return requisition

    def query_requisitions(self, criteria: RequisitionFilter | None = None) -> RequisitionPage:
        criteria = criteria or RequisitionFilter()
        with self._transaction("query_requisitions"):
            page = self._selector.query(
                criteria,
                default_page_size=self._config.default_page_size,
                max_page_size=self._config.max_page_size,
            )
        return page

    def get_approval_history(self, requisition_id: UUID | str) -> tuple[ApprovalRecord, ...]:
        """Approval records ordered by level, then creation."""
        requisition_id = parse_requisition_id(requisition_id)
        with self._transaction("get_approval_history", requisition_id):
            if not self._selector.exists(requisition_id):
                raise RequisitionNotFoundError(str(requisition_id))
            history = self._selector.approval_history(requisition_id)
        return history

    def get_next_approval_level(self, requisition_id: UUID | str) -> int | None:
        """Lowest level with a pending required record, or None."""
        return next_approval_level(self.get_requisition(requisition_id).approvals)

    def can_approve(self, requisition_id: UUID | str, user_id: str) -> bool:
        """True iff the requisition is SUBMITTED and ``user_id`` holds a pending record."""
        try:
            requisition = self.get_requisition(requisition_id)
        except RequisitionNotFoundError:
            return False
        if requisition.status != RequisitionStatus.SUBMITTED:
            return False
        return select_pending_record(requisition.approvals, user_id) is not None
