"""
RequisitionValidationService: review of persisted requisitions,
duplicate detection, and budget availability.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from p2p_kernel.exceptions import RequisitionNotFoundError
from p2p_kernel.services.auditor_service import REQUISITION_ENTITY, AuditorService
from p2p_modules.requisition.config import RequisitionConfig
from p2p_modules.requisition.models import BudgetStatus
from p2p_modules.requisition.validation import DUPLICATE_MESSAGE, RequisitionValidationService
from p2p_services.integration import FixedBudgetCollaborator
from tests.factories import REQUESTOR_ID, at, make_item, make_payload


@pytest.fixture
def budget_service(session, deterministic_clock):
    """Validation service wired to a budget collaborator of the test's choosing."""

    def _make(budget):
        return RequisitionValidationService(session, clock=deterministic_clock, budget=budget)

    return _make


class TestValidateRequisition:

    def test_valid(self, requisition_service, validation_service, small_payload):
        created = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        report = validation_service.validate_requisition(created.id)

        assert report.valid
        assert report.errors == ()
        assert report.requisition_id == created.id

    def test_required_by_passed(
        self, requisition_service, validation_service, small_payload, deterministic_clock,
    ):
        created = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        deterministic_clock.set_time(at(2026, 5, 1))

        report = validation_service.validate_requisition(created.id)
        assert not report.valid
        assert report.errors == ("Required date must be in the future",)

    def test_unknown_id(self, validation_service):
        with pytest.raises(RequisitionNotFoundError):
            validation_service.validate_requisition(uuid4())

    def test_string_id(self, requisition_service, validation_service, small_payload):
        created = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        assert validation_service.validate_requisition(str(created.id)).valid

    def test_review_logged(self, requisition_service, validation_service, small_payload, captured_logs):
        created = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        validation_service.validate_requisition(created.id)
        reviewed = [r for r in captured_logs() if r["message"] == "requisition_reviewed"]
        assert reviewed[0]["valid"] is True
        assert reviewed[0]["requisition_id"] == str(created.id)


class TestDuplicateDetection:
    """A submitted requisition with a similar title in the same department."""

    def _submitted(self, requisition_service, **payload):
        created = requisition_service.create_requisition(make_payload(**payload), REQUESTOR_ID)
        return requisition_service.submit_requisition(created.id, REQUESTOR_ID)

    def test_similar_title_flagged(
        self, requisition_service, validation_service, deterministic_clock,
    ):
        earlier = self._submitted(requisition_service)
        deterministic_clock.advance_days(2)
        later = requisition_service.create_requisition(
            make_payload(title="LAPTOPS for interns"), REQUESTOR_ID,
        )

        report = validation_service.validate_requisition(later.id)
        assert not report.valid
        assert report.errors == (DUPLICATE_MESSAGE,)
        (issue,) = report.issues
        assert issue.code == "POSSIBLE_DUPLICATE"
        assert issue.details["matches"] == [earlier.request_number]

    def test_is_symmetric_for_the_earlier_requisition(
        self, requisition_service, validation_service, deterministic_clock,
    ):
        earlier = self._submitted(requisition_service)
        deterministic_clock.advance_days(1)
        self._submitted(requisition_service, title="Laptops, spare")

        assert validation_service.validate_requisition(earlier.id).errors == (DUPLICATE_MESSAGE,)

    def test_draft_requisitions_not_compared(
        self, requisition_service, validation_service,
    ):
        requisition_service.create_requisition(make_payload(), REQUESTOR_ID)
        later = requisition_service.create_requisition(make_payload(), REQUESTOR_ID)
        assert validation_service.validate_requisition(later.id).valid

    def test_other_department_not_compared(self, requisition_service, validation_service):
        self._submitted(requisition_service, department_id="OPS")
        later = requisition_service.create_requisition(make_payload(), REQUESTOR_ID)
        assert validation_service.validate_requisition(later.id).valid

    def test_dissimilar_title(self, requisition_service, validation_service):
        self._submitted(requisition_service, title="Office chairs")
        later = requisition_service.create_requisition(make_payload(), REQUESTOR_ID)
        assert validation_service.validate_requisition(later.id).valid

    def test_outside_window(
        self, requisition_service, validation_service, deterministic_clock,
    ):
        self._submitted(requisition_service)
        deterministic_clock.advance_days(31)
        later = requisition_service.create_requisition(make_payload(), REQUESTOR_ID)
        assert validation_service.validate_requisition(later.id).valid

    def test_window_is_configurable(
        self, session, requisition_service, deterministic_clock,
    ):
        self._submitted(requisition_service)
        deterministic_clock.advance_days(5)
        later = requisition_service.create_requisition(make_payload(), REQUESTOR_ID)

        narrow = RequisitionValidationService(
            session, clock=deterministic_clock,
            config=RequisitionConfig(duplicate_window_days=3),
        )
        assert narrow.validate_requisition(later.id).valid


class TestBudgetAvailability:

    def test_available(self, requisition_service, budget_service, large_payload):
        created = requisition_service.create_requisition(large_payload, REQUESTOR_ID)
        result = budget_service(FixedBudgetCollaborator({"ENG": Decimal("2000")})).check_budget_availability(created.id)

        assert result.status == BudgetStatus.AVAILABLE
        assert result.available is True
        assert result.requested == Decimal("1500")
        assert result.remaining == Decimal("2000")
        assert result.reason is None

    def test_exactly_enough(self, requisition_service, budget_service, large_payload):
        created = requisition_service.create_requisition(large_payload, REQUESTOR_ID)
        result = budget_service(FixedBudgetCollaborator({"ENG": Decimal("1500")})).check_budget_availability(created.id)
        assert result.status == BudgetStatus.AVAILABLE

    def test_insufficient(self, requisition_service, budget_service, large_payload):
        created = requisition_service.create_requisition(large_payload, REQUESTOR_ID)
        result = budget_service(FixedBudgetCollaborator({"ENG": Decimal("1000")})).check_budget_availability(created.id)

        assert result.status == BudgetStatus.INSUFFICIENT
        assert result.available is False
        assert "exceeds" in result.reason

    def test_category_budget_used_when_lines_share_one(
        self, requisition_service, budget_service, large_payload,
    ):
        created = requisition_service.create_requisition(large_payload, REQUESTOR_ID)
        budget = FixedBudgetCollaborator(
            {"ENG": Decimal("5000")}, {("ENG", "IT"): Decimal("100")},
        )
        assert budget_service(budget).check_budget_availability(created.id).status == BudgetStatus.INSUFFICIENT

    def test_mixed_categories_use_department_budget(self, requisition_service, budget_service):
        created = requisition_service.create_requisition(
            make_payload(items=[make_item(category="IT"), make_item(category="FURNITURE")]),
            REQUESTOR_ID,
        )
        budget = FixedBudgetCollaborator(
            {"ENG": Decimal("5000")}, {("ENG", "IT"): Decimal("100")},
        )
        assert budget_service(budget).check_budget_availability(created.id).status == BudgetStatus.AVAILABLE

    def test_no_budget_service(self, requisition_service, validation_service, small_payload, session):
        created = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        result = validation_service.check_budget_availability(created.id)

        assert result.status == BudgetStatus.UNKNOWN
        assert result.available is None
        assert result.remaining is None
        trace = AuditorService(session).get_trace(REQUISITION_ENTITY, created.id)
        assert "INTEGRATION_DEGRADED" not in trace.actions

    def test_budget_failure_is_unknown_and_audited(
        self, requisition_service, budget_service, small_payload, session,
    ):
        created = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        service = budget_service(FixedBudgetCollaborator(fail_with=TimeoutError("budget timeout")))
        result = service.check_budget_availability(created.id)

        assert result.status == BudgetStatus.UNKNOWN
        assert "budget timeout" in result.reason
        trace = AuditorService(session).get_trace(REQUISITION_ENTITY, created.id)
        assert trace.last_action == "INTEGRATION_DEGRADED"
        assert trace.entries[-1].actor_id == "system"
        assert trace.entries[-1].payload["collaborator"] == "budget_service"
        assert trace.entries[-1].payload["category"] == "IT"

    def test_unrecorded_degradation_still_unknown(
        self, requisition_service, budget_service, small_payload, session, monkeypatch, captured_logs,
    ):
        created = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        service = budget_service(FixedBudgetCollaborator(fail_with=TimeoutError("budget timeout")))

        def broken_audit(*args, **kwargs):
            raise OperationalError("INSERT ...", {}, Exception("disk I/O error"))

        monkeypatch.setattr(service._auditor, "record_integration_degraded", broken_audit)
        result = service.check_budget_availability(created.id)

        assert result.status == BudgetStatus.UNKNOWN
        assert "budget timeout" in result.reason
        lost = [r for r in captured_logs() if r["message"] == "integration_degradation_not_recorded"]
        assert lost[0]["collaborator"] == "budget_service"
        assert lost[0]["department_id"] == "ENG"
        trace = AuditorService(session).get_trace(REQUISITION_ENTITY, created.id)
        assert "INTEGRATION_DEGRADED" not in trace.actions

    def test_unknown_department_is_unknown(
        self, requisition_service, budget_service, small_payload,
    ):
        created = requisition_service.create_requisition(small_payload, REQUESTOR_ID)
        result = budget_service(FixedBudgetCollaborator({"OPS": Decimal("1")})).check_budget_availability(
            created.id, actor_id="auditor-7",
        )
        assert result.status == BudgetStatus.UNKNOWN
        assert "LookupError" in result.reason

    def test_unknown_requisition(self, budget_service):
        with pytest.raises(RequisitionNotFoundError):
            budget_service(FixedBudgetCollaborator()).check_budget_availability(uuid4())

    def test_required_by_is_irrelevant_to_budget(
        self, requisition_service, budget_service, deterministic_clock,
    ):
        created = requisition_service.create_requisition(
            make_payload(required_by=date(2026, 3, 10)), REQUESTOR_ID,
        )
        deterministic_clock.set_time(at(2026, 6, 1))
        result = budget_service(FixedBudgetCollaborator({"ENG": Decimal("600")})).check_budget_availability(created.id)
        assert result.status == BudgetStatus.AVAILABLE
