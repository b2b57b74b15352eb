"""
Requisition review checks: duplicates and budget.

``RequisitionValidationService`` answers two questions a buyer asks
about an existing requisition before acting on it:

* ``validate_requisition`` -- is it still well-formed (items, positive
  total, required-by date in the future) and does it look like a
  duplicate of a recent SUBMITTED/APPROVED requisition of the same
  department?
* ``check_budget_availability`` -- does the department (and category,
  when every line shares one) have budget left for it?

Neither method changes the requisition.  A budget service failure comes
back as ``BudgetStatus.UNKNOWN`` and is written to the audit trail.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from p2p_engines.requisition_checks import (
    REVIEW_CHECKS,
    is_similar_title,
    run_checks,
    shared_category,
)
from p2p_kernel.domain.clock import Clock, SystemClock
from p2p_kernel.domain.dtos import ValidationError
from p2p_kernel.domain.integration import BudgetCollaborator, IntegrationOutcome
from p2p_kernel.exceptions import RequisitionNotFoundError, RequisitionPersistenceError
from p2p_kernel.logging_config import LogContext, get_logger
from p2p_kernel.services.auditor_service import AuditorService
from p2p_modules.requisition.config import RequisitionConfig
from p2p_modules.requisition.models import (
    BudgetCheckResult,
    BudgetStatus,
    Requisition,
    ValidationReport,
    parse_requisition_id,
)
from p2p_modules.requisition.selectors import RequisitionSelector

logger = get_logger("modules.requisition.validation")

BUDGET_SERVICE = "budget_service"

DUPLICATE_MESSAGE = "Duplicate requisition found for similar items"


class RequisitionValidationService:
    """
    Duplicate detection and budget checks for persisted requisitions.

    Owns its transaction boundary like ``RequisitionService``.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        budget: BudgetCollaborator | None = None,
        config: RequisitionConfig | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._budget = budget
        self._config = config or RequisitionConfig.with_defaults()
        self._selector = RequisitionSelector(session)
        self._auditor = AuditorService(session, self._clock)

    def _load(self, requisition_id: UUID) -> Requisition:
        requisition = self._selector.get(requisition_id)
        if requisition is None:
            raise RequisitionNotFoundError(str(requisition_id))
        return requisition

    def _read(self, operation: str, fn):
        try:
            result = fn()
            self._session.commit()
            return result
        except SQLAlchemyError as exc:
            self._session.rollback()
            logger.error(
                "requisition_persistence_failed",
                extra={"operation": operation, "error_type": type(exc).__name__},
                exc_info=True,
            )
            raise RequisitionPersistenceError(operation) from exc
        except Exception:
            self._session.rollback()
            raise

    def _record_budget_degradation(self, requisition, category, reason, actor_id) -> None:
        context = {"department_id": requisition.department_id, "category": category}
        try:
            self._auditor.record_integration_degraded(
                requisition.id,
                IntegrationOutcome.failed(BUDGET_SERVICE, reason),
                actor_id,
                context,
            )
            self._session.commit()
        except SQLAlchemyError:
            self._session.rollback()
            logger.error(
                "integration_degradation_not_recorded",
                extra={
                    "requisition_id": str(requisition.id),
                    "collaborator": BUDGET_SERVICE,
                    **context,
                },
                exc_info=True,
            )

    def validate_requisition(self, requisition_id: UUID | str) -> ValidationReport:
        """
        Review a persisted requisition.

        Raises:
            RequisitionNotFoundError: unknown id.
        """
        requisition_id = parse_requisition_id(requisition_id)
        with LogContext.bind(requisition_id=requisition_id):
            return self._read("validate_requisition", lambda: self._validate(requisition_id))

    def _validate(self, requisition_id: UUID) -> ValidationReport:
        requisition = self._load(requisition_id)
        result = run_checks(REVIEW_CHECKS, requisition, self._clock.today())
        issues = list(result.errors)

        since = self._clock.now() - timedelta(days=self._config.duplicate_window_days)
        candidates = self._selector.find_duplicate_candidates(
            requisition.id, requisition.department_id, since,
        )
        matches = [c for c in candidates if is_similar_title(requisition.title, c.title)]
        if matches:
            issues.append(ValidationError(
                "POSSIBLE_DUPLICATE",
                DUPLICATE_MESSAGE,
                field="title",
                details={"matches": [c.request_number for c in matches]},
            ))

        report = ValidationReport(
            requisition_id=requisition.id,
            valid=not issues,
            errors=tuple(i.message for i in issues),
            issues=tuple(issues),
        )
        logger.info(
            "requisition_reviewed",
            extra={
                "request_number": requisition.request_number,
                "valid": report.valid,
                "errors": list(report.errors),
            },
        )
        return report

    def check_budget_availability(
        self, requisition_id: UUID | str, actor_id: str = "system",
    ) -> BudgetCheckResult:
        """
        Compare the requisition total with the department's remaining budget.

        Never raises for budget service failures; those yield UNKNOWN.

        Raises:
            RequisitionNotFoundError: unknown id.
        """
        requisition_id = parse_requisition_id(requisition_id)
        with LogContext.bind(requisition_id=requisition_id):
            requisition = self._read("check_budget_availability", lambda: self._load(requisition_id))
            requested = requisition.total_amount

            if self._budget is None:
                logger.info("budget_check_skipped", extra={"reason": "no budget service"})
                return BudgetCheckResult.unknown(requested, "No budget service configured")

            category = shared_category(requisition.lines)
            try:
                remaining = self._budget.get_available(requisition.department_id, category)
            except Exception as exc:
                reason = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "budget_check_failed",
                    extra={"department_id": requisition.department_id, "error": reason},
                )
                self._record_budget_degradation(requisition, category, reason, actor_id)
                return BudgetCheckResult.unknown(requested, reason)

            status = BudgetStatus.AVAILABLE if remaining >= requested else BudgetStatus.INSUFFICIENT
            result = BudgetCheckResult(
                status=status,
                requested=requested,
                available=status == BudgetStatus.AVAILABLE,
                remaining=remaining,
                reason=None if status == BudgetStatus.AVAILABLE else (
                    f"Requested {requested} exceeds remaining budget {remaining}"
                ),
            )
            logger.info(
                "budget_checked",
                extra={
                    "department_id": requisition.department_id,
                    "category": category,
                    "requested": str(requested),
                    "remaining": str(remaining),
                    "status": status.value,
                },
            )
            return result
