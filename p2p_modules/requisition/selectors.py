"""
Module: p2p_modules.requisition.selectors
Responsibility: Read-only query access to requisitions and their approval
    records.  Converts ORM models to frozen DTOs.
Architecture position: Modules > Selectors.  Subclasses the kernel
    ``BaseSelector``; used by ``RequisitionService`` and
    ``RequisitionValidationService``, which own the transaction.

Invariants enforced:
    - Read-only: no session.add(), flush() or commit().
    - Sorting is restricted to ``SORTABLE_COLUMNS``; anything else falls
      back to ``created_at``.  Every ordering ends with the primary key so
      pages never overlap.
    - Approval records are ordered by (level, creation position).

Failure modes:
    - Returns None or empty results on absence of data (never raises).
"""

from datetime import datetime, time, timedelta, timezone
from uuid import UUID

from sqlalchemy import String, func, or_, select
from sqlalchemy.orm import Session

from p2p_kernel.domain.approval import ApprovalRecord
from p2p_kernel.logging_config import get_logger
from p2p_kernel.selectors.base import BaseSelector
from p2p_modules.requisition.models import (
    Requisition,
    RequisitionFilter,
    RequisitionPage,
    RequisitionStatus,
    SortOrder,
)
from p2p_modules.requisition.orm import ApprovalRecordModel, RequisitionModel

logger = get_logger("modules.requisition.selectors")

SORTABLE_COLUMNS = {
    "created_at": RequisitionModel.created_at,
    "updated_at": RequisitionModel.updated_at,
    "required_by": RequisitionModel.required_by,
    "total_amount": RequisitionModel.total_amount,
    "request_number": RequisitionModel.request_number,
    "title": RequisitionModel.title,
    "priority": RequisitionModel.priority,
    "status": RequisitionModel.status,
}

DEFAULT_SORT = "created_at"


def _as_datetime(value, end_of_day: bool = False) -> datetime:
    """Widen a bare date to a UTC datetime bound; pass datetimes through."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    start = datetime.combine(value, time.min, tzinfo=timezone.utc)
    return start + timedelta(days=1) if end_of_day else start


class RequisitionSelector(BaseSelector):
    """
    Selector for requisition queries.

    Guarantees:
        - All public methods return DTOs, never ORM instances.
        - Lines and approval records are eager-loaded with the header.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    def get(self, requisition_id: UUID) -> Requisition | None:
        model = self.session.get(RequisitionModel, requisition_id)
        return model.to_dto() if model is not None else None

    def exists(self, requisition_id: UUID) -> bool:
        return self.session.execute(
            select(RequisitionModel.id).where(RequisitionModel.id == requisition_id)
        ).first() is not None

    def get_by_number(self, request_number: str) -> Requisition | None:
        model = self.session.execute(
            select(RequisitionModel).where(
                RequisitionModel.request_number == request_number
            )
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def approval_history(self, requisition_id: UUID) -> tuple[ApprovalRecord, ...]:
        records = self.session.execute(
            select(ApprovalRecordModel)
            .where(ApprovalRecordModel.requisition_id == requisition_id)
            .order_by(ApprovalRecordModel.level, ApprovalRecordModel.position)
        ).scalars().all()
        return tuple(r.to_dto() for r in records)

    def query(
        self,
        criteria: RequisitionFilter,
        default_page_size: int = 10,
        max_page_size: int = 100,
    ) -> RequisitionPage:
        """
        Filter, search, sort and paginate requisitions.

        ``page`` below 1 is read as 1; ``page_size`` defaults to
        ``default_page_size`` and is capped at ``max_page_size``.
        """
        page = max(criteria.page or 1, 1)
        page_size = criteria.page_size or default_page_size
        if page_size < 1:
            page_size = default_page_size
        page_size = min(page_size, max_page_size)

        conditions = self._conditions(criteria)

        total = self.session.execute(
            select(func.count(RequisitionModel.id)).where(*conditions)
        ).scalar_one()

        sort_key = criteria.sort_by if criteria.sort_by in SORTABLE_COLUMNS else DEFAULT_SORT
        if sort_key != criteria.sort_by:
            logger.warning(
                "requisition_query_sort_rejected",
                extra={"sort_by": criteria.sort_by, "fallback": DEFAULT_SORT},
            )
        column = SORTABLE_COLUMNS[sort_key]
        if criteria.sort_order == SortOrder.ASC:
            ordering = (column.asc(), RequisitionModel.id.asc())
        else:
            ordering = (column.desc(), RequisitionModel.id.desc())

        models = self.session.execute(
            select(RequisitionModel)
            .where(*conditions)
            .order_by(*ordering)
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars().all()

        return RequisitionPage(
            items=tuple(m.to_dto() for m in models),
            total=total,
            page=page,
            page_size=page_size,
        )

    def _conditions(self, criteria: RequisitionFilter) -> list:
        conditions = []
        if criteria.status is not None:
            conditions.append(RequisitionModel.status == RequisitionStatus(criteria.status).value)
        if criteria.priority is not None:
            conditions.append(RequisitionModel.priority == criteria.priority.value)
        if criteria.requisition_type is not None:
            conditions.append(
                RequisitionModel.requisition_type == criteria.requisition_type.value
            )
        if criteria.requestor_id:
            conditions.append(RequisitionModel.requestor_id == criteria.requestor_id)
        if criteria.department_id:
            conditions.append(RequisitionModel.department_id == criteria.department_id)
        if criteria.date_from is not None:
            conditions.append(RequisitionModel.created_at >= _as_datetime(criteria.date_from))
        if criteria.date_to is not None:
            bound = _as_datetime(criteria.date_to, end_of_day=True)
            if isinstance(criteria.date_to, datetime):
                conditions.append(RequisitionModel.created_at <= bound)
            else:
                conditions.append(RequisitionModel.created_at < bound)
        if criteria.search and criteria.search.strip():
            term = criteria.search.strip().lower()
            conditions.append(
                or_(
                    func.lower(RequisitionModel.title, type_=String).contains(term, autoescape=True),
                    func.lower(RequisitionModel.description, type_=String).contains(term, autoescape=True),
                    func.lower(RequisitionModel.request_number, type_=String).contains(term, autoescape=True),
                )
            )
        return conditions

    def find_duplicate_candidates(
        self,
        requisition_id: UUID,
        department_id: str,
        since: datetime,
    ) -> tuple[Requisition, ...]:
        """Other SUBMITTED/APPROVED requisitions of a department created since ``since``."""
        models = self.session.execute(
            select(RequisitionModel)
            .where(
                RequisitionModel.id != requisition_id,
                RequisitionModel.department_id == department_id,
                RequisitionModel.status.in_((
                    RequisitionStatus.SUBMITTED.value,
                    RequisitionStatus.APPROVED.value,
                )),
                RequisitionModel.created_at >= since,
            )
            .order_by(RequisitionModel.created_at.desc(), RequisitionModel.id)
        ).scalars().all()
        return tuple(m.to_dto() for m in models)


__all__ = ["DEFAULT_SORT", "SORTABLE_COLUMNS", "RequisitionSelector"]
