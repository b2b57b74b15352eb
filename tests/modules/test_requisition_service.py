"""
RequisitionService lifecycle: create, submit, approve, reject, cancel.

Every test runs against a real database session with in-memory workflow
and event collaborators; persistence, audit and events are asserted
together because they are produced together.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from p2p_kernel.domain.approval import ApprovalRecordStatus
from p2p_kernel.exceptions import (
    ApprovalRulesUnavailableError,
    InvalidRequisitionTransitionError,
    RequisitionNotFoundError,
    RequisitionPersistenceError,
    RequisitionValidationError,
    UnauthorizedApproverError,
)
from p2p_kernel.services.auditor_service import REQUISITION_ENTITY, AuditorService
from p2p_modules.requisition.models import (
    RequisitionFilter,
    RequisitionPriority,
    RequisitionStatus,
)
from p2p_services.integration import (
    InMemoryEventPublisher,
    InMemoryWorkflowEngine,
    NullWorkflowEngine,
    StaticRuleProvider,
)
from tests.factories import (
    DIRECTOR_ID,
    MANAGER_ID,
    REQUESTOR_ID,
    make_item,
    make_payload,
    make_rule,
)


def _actions(session, requisition_id) -> tuple[str, ...]:
    return AuditorService(session).get_trace(REQUISITION_ENTITY, requisition_id).actions


def _event_types(publisher) -> list[str]:
    return [e.event_type for e in publisher.events]


# =============================================================================
# Creation
# =============================================================================


class TestCreateRequisition:
    """create_requisition: validation, numbering, routing, persistence."""

    def test_small_requisition_needs_no_approval(
        self, requisition_service, small_payload, event_publisher, session,
    ):
        """Total below the threshold: no records."""
        requisition = requisition_service.create_requisition(small_payload, REQUESTOR_ID)

        assert requisition.status == RequisitionStatus.DRAFT
        assert requisition.request_number == "REQ-2026-001"
        assert requisition.total_amount == Decimal("500")
        assert requisition.requestor_id == REQUESTOR_ID
        assert requisition.approvals == ()
        assert len(requisition.lines) == 1
        assert requisition.lines[0].line_number == 1
        assert _event_types(event_publisher) == ["REQUISITION_CREATED"]
        assert _actions(session, requisition.id) == ("REQUISITION_CREATED",)

    def test_large_requisition_routes_to_manager(self, requisition_service, large_payload):
        """3 x 500 = 1,500 exceeds 1,000."""
        requisition = requisition_service.create_requisition(large_payload, REQUESTOR_ID)

        assert requisition.total_amount == Decimal("1500")
        (record,) = requisition.approvals
        assert record.approver_id == MANAGER_ID
        assert record.level == 1
        assert record.required is True
        assert record.status == ApprovalRecordStatus.PENDING
        assert record.rule_id == "REQ-HIGH-VALUE"
        assert record.decided_at is None

    def test_boundary_total_does_not_route(self, requisition_service):
        payload = make_payload(items=[make_item(quantity="2", estimated_price="500.00")])
        assert requisition_service.create_requisition(payload, REQUESTOR_ID).approvals == ()

    def test_numbers_increase(self, requisition_service, small_payload):
        first = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        second = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        assert (first.request_number, second.request_number) == ("REQ-2026-001", "REQ-2026-002")

    def test_created_at_from_clock(self, requisition_service, small_payload, deterministic_clock):
        requisition = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        assert requisition.created_at == deterministic_clock.now()
        assert requisition.submitted_at is None

    def test_header_fields_persisted(self, requisition_service):
        payload = make_payload(
            title="  Standing desks  ",
            priority="high",
            requisition_type="ASSET",
            justification="Ergonomics",
            description="Four desks for the design team",
        )
        requisition = requisition_service.create_requisition(payload, REQUESTOR_ID)
        stored = requisition_service.get_requisition(requisition.id)

        assert stored.title == "Standing desks"
        assert stored.priority == RequisitionPriority.HIGH
        assert stored.requisition_type.value == "ASSET"
        assert stored.justification == "Ergonomics"
        assert stored.currency == "USD"
        assert stored.lines[0].currency == "USD"
        assert stored.lines[0].unit_of_measure == "EA"

    def test_invalid_payload_lists_every_violation(self, requisition_service, session):
        payload = make_payload(
            title="", items=[make_item(quantity="0"), make_item(category="")],
        )
        with pytest.raises(RequisitionValidationError) as exc_info:
            requisition_service.create_requisition(payload, REQUESTOR_ID)

        assert exc_info.value.reasons == (
            "Title is required",
            "Item 1: Quantity must be positive",
            "Item 2: Category is required",
        )
        assert requisition_service.query_requisitions().total == 0

    def test_invalid_payload_consumes_no_number(self, requisition_service, small_payload):
        with pytest.raises(RequisitionValidationError):
            requisition_service.create_requisition(make_payload(items=[]), REQUESTOR_ID)
        requisition = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        assert requisition.request_number == "REQ-2026-001"

    @pytest.mark.parametrize("field", ["quantity", "estimated_price"])
    @pytest.mark.parametrize("value", [Decimal("NaN"), Decimal("sNaN"), Decimal("Infinity"), "NaN"])
    def test_non_finite_numbers_are_violations(self, requisition_service, field, value):
        payload = make_payload(items=[make_item(**{field: value})])
        with pytest.raises(RequisitionValidationError) as exc_info:
            requisition_service.create_requisition(payload, REQUESTOR_ID)

        label = "Quantity" if field == "quantity" else "Estimated price"
        assert exc_info.value.reasons == (f"Item 1: {label} must be positive",)
        assert requisition_service.query_requisitions().total == 0

    def test_non_text_fields_are_violations(self, requisition_service, small_payload):
        payload = make_payload(
            title=12345, department_id=7,
            items=[make_item(description=42, category=["IT"])],
        )
        with pytest.raises(RequisitionValidationError) as exc_info:
            requisition_service.create_requisition(payload, REQUESTOR_ID)

        assert exc_info.value.reasons == (
            "Title is required",
            "Department ID is required",
            "Item 1: Description is required",
            "Item 1: Category is required",
        )
        assert requisition_service.create_requisition(
            small_payload, REQUESTOR_ID,
        ).request_number == "REQ-2026-001"

    def test_total_of_mixed_lines(self, requisition_service):
        """10 x 25 + 5 x 60 = 550, below the manager threshold."""
        requisition = requisition_service.create_requisition(
            make_payload(items=[
                make_item(quantity="10", estimated_price="25"),
                make_item(description="Dock", quantity="5", estimated_price="60"),
            ]),
            REQUESTOR_ID,
        )
        assert requisition.total_amount == Decimal("550")
        assert requisition.approvals == ()

    def test_unavailable_rules_abort_creation(self, make_service, small_payload, event_publisher):
        service = make_service(
            rule_provider=StaticRuleProvider(available=False, reason="rules offline"),
        )
        with pytest.raises(ApprovalRulesUnavailableError, match="rules offline"):
            service.create_requisition(small_payload, REQUESTOR_ID)

        assert service.query_requisitions().total == 0
        assert event_publisher.events == []

    def test_two_level_rules_materialized_in_order(
        self, make_service, two_level_rules, large_payload,
    ):
        requisition = make_service(rules=two_level_rules).create_requisition(
            large_payload, REQUESTOR_ID,
        )
        assert [(a.approver_id, a.level, a.required) for a in requisition.approvals] == [
            (MANAGER_ID, 1, True),
            (DIRECTOR_ID, 2, True),
            ("FINANCE", 2, False),
        ]
        assert requisition.approvals[2].approver_role == "FINANCE"

    def test_created_event_payload(self, requisition_service, large_payload, event_publisher):
        requisition = requisition_service.create_requisition(large_payload, REQUESTOR_ID)
        (event,) = event_publisher.events

        assert event.entity_type == "REQUISITION"
        assert event.entity_id == str(requisition.id)
        assert event.user_id == REQUESTOR_ID
        assert event.source == "P2P_MODULE"
        assert event.version == "1.0"
        assert event.data["request_number"] == "REQ-2026-001"
        assert event.data["status"] == "DRAFT"
        assert event.data["approval_count"] == 1

    def test_creation_logged_with_actor(self, requisition_service, small_payload, captured_logs):
        requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        created = [r for r in captured_logs() if r["message"] == "requisition_created"]
        assert created[0]["actor_id"] == REQUESTOR_ID
        assert created[0]["request_number"] == "REQ-2026-001"


# =============================================================================
# Submission
# =============================================================================


class TestSubmitRequisition:

    def test_submit_starts_workflow(
        self, requisition_service, large_payload, workflow_engine, deterministic_clock,
    ):
        created = requisition_service.create_requisition(large_payload, REQUESTOR_ID)
        deterministic_clock.advance(60)
        submitted = requisition_service.submit_requisition(created.id, REQUESTOR_ID)

        assert submitted.status == RequisitionStatus.SUBMITTED
        assert submitted.submitted_at == deterministic_clock.now()
        assert submitted.workflow_instance_id in workflow_engine.instances
        context = workflow_engine.instances[submitted.workflow_instance_id]
        assert context.process_type == "REQUISITION"
        assert context.initiator_id == REQUESTOR_ID
        assert context.variables["request_number"] == "REQ-2026-001"

    def test_submit_audit_and_events(self, requisition_service, submitted_large, event_publisher, session):
        assert _actions(session, submitted_large.id) == (
            "REQUISITION_CREATED",
            "WORKFLOW_STARTED",
            "REQUISITION_SUBMITTED",
        )
        assert _event_types(event_publisher) == ["REQUISITION_CREATED", "REQUISITION_SUBMITTED"]

    def test_submit_accepts_string_id(self, requisition_service, small_payload):
        created = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        submitted = requisition_service.submit_requisition(str(created.id), REQUESTOR_ID)
        assert submitted.status == RequisitionStatus.SUBMITTED

    def test_second_submit_conflicts(self, requisition_service, submitted_large, session):
        before = _actions(session, submitted_large.id)
        with pytest.raises(InvalidRequisitionTransitionError) as exc_info:
            requisition_service.submit_requisition(submitted_large.id, REQUESTOR_ID)

        assert exc_info.value.current_status == "SUBMITTED"
        assert exc_info.value.action == "submit"
        stored = requisition_service.get_requisition(submitted_large.id)
        assert stored.submitted_at == submitted_large.submitted_at
        assert _actions(session, submitted_large.id) == before

    def test_unknown_requisition(self, requisition_service):
        with pytest.raises(RequisitionNotFoundError):
            requisition_service.submit_requisition(uuid4(), REQUESTOR_ID)

    def test_malformed_id_is_not_found(self, requisition_service):
        with pytest.raises(RequisitionNotFoundError):
            requisition_service.submit_requisition("not-a-uuid", REQUESTOR_ID)

    def test_workflow_failure_does_not_block_submission(
        self, make_service, large_payload, event_publisher, session,
    ):
        service = make_service(
            workflow_engine=InMemoryWorkflowEngine(fail_with=ConnectionError("engine down")),
        )
        created = service.create_requisition(large_payload, REQUESTOR_ID)
        submitted = service.submit_requisition(created.id, REQUESTOR_ID)

        assert submitted.status == RequisitionStatus.SUBMITTED
        assert submitted.workflow_instance_id is None
        assert _actions(session, created.id) == (
            "REQUISITION_CREATED",
            "WORKFLOW_ERROR",
            "REQUISITION_SUBMITTED",
        )
        assert _event_types(event_publisher) == [
            "REQUISITION_CREATED",
            "REQUISITION_SUBMITTED",
            "WORKFLOW_ERROR",
        ]
        assert "engine down" in event_publisher.of_type("WORKFLOW_ERROR")[0].data["error"]

    def test_disabled_workflow_engine_is_skipped(self, make_service, small_payload, session):
        service = make_service(workflow_engine=NullWorkflowEngine())
        created = service.create_requisition(small_payload, REQUESTOR_ID)
        submitted = service.submit_requisition(created.id, REQUESTOR_ID)

        assert submitted.workflow_instance_id is None
        assert _actions(session, created.id) == ("REQUISITION_CREATED", "REQUISITION_SUBMITTED")


# =============================================================================
# Approval
# =============================================================================


class TestApproveRequisition:

    def test_single_approval_promotes(
        self, requisition_service, submitted_large, event_publisher, deterministic_clock, session,
    ):
        """manager-001 approves the only required record."""
        deterministic_clock.advance(3600)
        approved = requisition_service.approve_requisition(
            submitted_large.id, MANAGER_ID, comments="Approved for onboarding",
        )

        assert approved.status == RequisitionStatus.APPROVED
        assert approved.approved_at == deterministic_clock.now()
        (record,) = approved.approvals
        assert record.status == ApprovalRecordStatus.APPROVED
        assert record.comments == "Approved for onboarding"
        assert record.decided_at == deterministic_clock.now()

        (event,) = event_publisher.of_type("REQUISITION_APPROVED")
        assert event.data["final_status"] == "APPROVED"
        assert event.data["approval_level"] == 1
        assert event.data["approver_id"] == MANAGER_ID
        assert _actions(session, submitted_large.id)[-2:] == (
            "APPROVAL_RECORDED",
            "REQUISITION_APPROVED",
        )

    def test_unauthorized_approver_changes_nothing(
        self, requisition_service, submitted_large, event_publisher, session,
    ):
        before = _actions(session, submitted_large.id)
        with pytest.raises(UnauthorizedApproverError) as exc_info:
            requisition_service.approve_requisition(submitted_large.id, "intruder")

        assert exc_info.value.approver_id == "intruder"
        stored = requisition_service.get_requisition(submitted_large.id)
        assert stored.status == RequisitionStatus.SUBMITTED
        assert stored.approvals[0].status == ApprovalRecordStatus.PENDING
        assert _actions(session, submitted_large.id) == before
        assert event_publisher.of_type("REQUISITION_APPROVED") == []

    def test_approve_draft_conflicts(self, requisition_service, large_payload):
        created = requisition_service.create_requisition(large_payload, REQUESTOR_ID)
        with pytest.raises(InvalidRequisitionTransitionError):
            requisition_service.approve_requisition(created.id, MANAGER_ID)
        assert requisition_service.get_requisition(created.id).status == RequisitionStatus.DRAFT

    def test_approve_twice_conflicts(self, requisition_service, submitted_large):
        requisition_service.approve_requisition(submitted_large.id, MANAGER_ID)
        with pytest.raises(InvalidRequisitionTransitionError):
            requisition_service.approve_requisition(submitted_large.id, MANAGER_ID)

    def test_two_levels_promote_only_when_all_required_approved(
        self, make_service, two_level_rules, large_payload, event_publisher,
    ):
        service = make_service(rules=two_level_rules)
        created = service.create_requisition(large_payload, REQUESTOR_ID)
        service.submit_requisition(created.id, REQUESTOR_ID)
        assert service.get_next_approval_level(created.id) == 1

        after_manager = service.approve_requisition(created.id, MANAGER_ID)
        assert after_manager.status == RequisitionStatus.SUBMITTED
        assert service.get_next_approval_level(created.id) == 2
        assert event_publisher.of_type("REQUISITION_APPROVED")[0].data["final_status"] == "SUBMITTED"

        after_director = service.approve_requisition(created.id, DIRECTOR_ID)
        assert after_director.status == RequisitionStatus.APPROVED
        finance = next(a for a in after_director.approvals if a.approver_id == "FINANCE")
        assert finance.status == ApprovalRecordStatus.PENDING
        assert service.get_next_approval_level(created.id) is None

    def test_levels_are_not_sequenced(self, make_service, two_level_rules, large_payload):
        service = make_service(rules=two_level_rules)
        created = service.create_requisition(large_payload, REQUESTOR_ID)
        service.submit_requisition(created.id, REQUESTOR_ID)

        after_director = service.approve_requisition(created.id, DIRECTOR_ID)
        assert after_director.status == RequisitionStatus.SUBMITTED
        assert service.approve_requisition(created.id, MANAGER_ID).status == RequisitionStatus.APPROVED

    def test_optional_approval_recorded_without_promotion(
        self, make_service, two_level_rules, large_payload,
    ):
        service = make_service(rules=two_level_rules)
        created = service.create_requisition(large_payload, REQUESTOR_ID)
        service.submit_requisition(created.id, REQUESTOR_ID)

        after_finance = service.approve_requisition(created.id, "FINANCE")
        assert after_finance.status == RequisitionStatus.SUBMITTED
        finance = next(a for a in after_finance.approvals if a.approver_id == "FINANCE")
        assert finance.status == ApprovalRecordStatus.APPROVED

    def test_same_approver_on_two_levels_approves_lowest_first(
        self, make_service, large_payload,
    ):
        rules = [
            make_rule("L1", condition=None, approvers=[{"user_id": MANAGER_ID, "level": 1}]),
            make_rule("L2", condition=None, approvers=[{"user_id": MANAGER_ID, "level": 2}]),
        ]
        service = make_service(rules=rules)
        created = service.create_requisition(large_payload, REQUESTOR_ID)
        service.submit_requisition(created.id, REQUESTOR_ID)

        first = service.approve_requisition(created.id, MANAGER_ID)
        assert first.status == RequisitionStatus.SUBMITTED
        assert [a.status for a in first.approvals] == [
            ApprovalRecordStatus.APPROVED, ApprovalRecordStatus.PENDING,
        ]
        assert service.approve_requisition(created.id, MANAGER_ID).status == RequisitionStatus.APPROVED

    def test_no_records_means_no_approver(self, requisition_service, small_payload):
        created = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        requisition_service.submit_requisition(created.id, REQUESTOR_ID)

        with pytest.raises(UnauthorizedApproverError):
            requisition_service.approve_requisition(created.id, MANAGER_ID)
        assert requisition_service.get_requisition(created.id).status == RequisitionStatus.SUBMITTED


# =============================================================================
# Rejection
# =============================================================================


class TestRejectRequisition:

    def test_reject(self, requisition_service, submitted_large, event_publisher, session):
        rejected = requisition_service.reject_requisition(
            submitted_large.id, MANAGER_ID, reason="Over budget",
        )

        assert rejected.status == RequisitionStatus.REJECTED
        assert rejected.approved_at is None
        (record,) = rejected.approvals
        assert record.status == ApprovalRecordStatus.REJECTED
        assert record.comments == "Over budget"
        (event,) = event_publisher.of_type("REQUISITION_REJECTED")
        assert event.data["reason"] == "Over budget"
        assert _actions(session, submitted_large.id)[-2:] == (
            "APPROVAL_RECORDED",
            "REQUISITION_REJECTED",
        )

    def test_any_rejection_is_final(self, make_service, two_level_rules, large_payload):
        service = make_service(rules=two_level_rules)
        created = service.create_requisition(large_payload, REQUESTOR_ID)
        service.submit_requisition(created.id, REQUESTOR_ID)

        rejected = service.reject_requisition(created.id, DIRECTOR_ID, reason="No")
        assert rejected.status == RequisitionStatus.REJECTED
        manager = next(a for a in rejected.approvals if a.approver_id == MANAGER_ID)
        assert manager.status == ApprovalRecordStatus.PENDING

        with pytest.raises(InvalidRequisitionTransitionError):
            service.approve_requisition(created.id, MANAGER_ID)

    def test_unauthorized_rejection(self, requisition_service, submitted_large):
        with pytest.raises(UnauthorizedApproverError):
            requisition_service.reject_requisition(submitted_large.id, REQUESTOR_ID)
        stored = requisition_service.get_requisition(submitted_large.id)
        assert stored.status == RequisitionStatus.SUBMITTED

    def test_reject_draft_conflicts(self, requisition_service, large_payload):
        created = requisition_service.create_requisition(large_payload, REQUESTOR_ID)
        with pytest.raises(InvalidRequisitionTransitionError):
            requisition_service.reject_requisition(created.id, MANAGER_ID)


# =============================================================================
# Cancellation
# =============================================================================


class TestCancelRequisition:

    def test_cancel_draft(self, requisition_service, small_payload, event_publisher, session):
        created = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        cancelled = requisition_service.cancel_requisition(created.id, REQUESTOR_ID, reason="Dup")

        assert cancelled.status == RequisitionStatus.CANCELLED
        (event,) = event_publisher.of_type("REQUISITION_CANCELLED")
        assert event.data["previous_status"] == "DRAFT"
        assert _actions(session, created.id)[-1] == "REQUISITION_CANCELLED"

    def test_cancel_submitted(self, requisition_service, submitted_large):
        cancelled = requisition_service.cancel_requisition(submitted_large.id, REQUESTOR_ID)
        assert cancelled.status == RequisitionStatus.CANCELLED
        assert cancelled.approvals[0].status == ApprovalRecordStatus.PENDING

    def test_cancelled_cannot_be_approved(self, requisition_service, submitted_large):
        requisition_service.cancel_requisition(submitted_large.id, REQUESTOR_ID)
        with pytest.raises(InvalidRequisitionTransitionError):
            requisition_service.approve_requisition(submitted_large.id, MANAGER_ID)

    @pytest.mark.parametrize("finish", ["approve", "reject", "cancel"])
    def test_terminal_cannot_be_cancelled(self, requisition_service, submitted_large, finish):
        if finish == "approve":
            requisition_service.approve_requisition(submitted_large.id, MANAGER_ID)
        elif finish == "reject":
            requisition_service.reject_requisition(submitted_large.id, MANAGER_ID)
        else:
            requisition_service.cancel_requisition(submitted_large.id, REQUESTOR_ID)

        with pytest.raises(InvalidRequisitionTransitionError):
            requisition_service.cancel_requisition(submitted_large.id, REQUESTOR_ID)


# =============================================================================
# Degraded collaborators and storage failures
# =============================================================================


class TestDegradedIntegration:

    def test_publisher_failure_is_audited_not_raised(self, make_service, small_payload, session):
        service = make_service(event_publisher=InMemoryEventPublisher(fail_with=RuntimeError("bus down")))
        created = service.create_requisition(small_payload, REQUESTOR_ID)

        assert created.status == RequisitionStatus.DRAFT
        trace = AuditorService(session).get_trace(REQUISITION_ENTITY, created.id)
        assert trace.actions == ("REQUISITION_CREATED", "INTEGRATION_DEGRADED")
        payload = trace.entries[-1].payload
        assert payload["collaborator"] == "event_publisher"
        assert payload["event_type"] == "REQUISITION_CREATED"
        assert "bus down" in payload["reason"]

    def test_full_lifecycle_with_failing_publisher(self, make_service, large_payload, session):
        service = make_service(event_publisher=InMemoryEventPublisher(fail_with=RuntimeError("x")))
        created = service.create_requisition(large_payload, REQUESTOR_ID)
        service.submit_requisition(created.id, REQUESTOR_ID)
        approved = service.approve_requisition(created.id, MANAGER_ID)

        assert approved.status == RequisitionStatus.APPROVED
        assert _actions(session, created.id).count("INTEGRATION_DEGRADED") == 3

    def test_storage_failure_is_opaque(self, requisition_service, small_payload, monkeypatch):
        created = requisition_service.create_requisition(small_payload, REQUESTOR_ID)

        def _fail(requisition_id):
            raise OperationalError("SELECT ...", {}, Exception("disk I/O error"))

        monkeypatch.setattr(requisition_service._selector, "get", _fail)
        with pytest.raises(RequisitionPersistenceError) as exc_info:
            requisition_service.get_requisition(created.id)

        assert "disk" not in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, OperationalError)

    def test_audit_chain_valid_after_lifecycle(self, requisition_service, submitted_large, session):
        requisition_service.approve_requisition(submitted_large.id, MANAGER_ID)
        assert AuditorService(session).validate_chain() is True

    def test_query_sees_every_requisition(self, requisition_service, small_payload):
        for _ in range(3):
            requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        page = requisition_service.query_requisitions(RequisitionFilter(status=RequisitionStatus.DRAFT))
        assert page.total == 3
