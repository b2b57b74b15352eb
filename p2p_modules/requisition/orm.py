"""
SQLAlchemy ORM persistence models for the Requisition module.

Responsibility
--------------
Database-backed persistence for requisitions, their line items and their
approval records.

Architecture position
---------------------
**Modules layer** -- ORM models consumed by ``RequisitionService`` and
``RequisitionSelector``.  Inherits from ``TrackedBase`` (kernel db layer).

Invariants enforced
-------------------
* All monetary fields use ``Decimal`` (Numeric(38,9)) -- NEVER float.
* Enum fields stored as String for readability and portability.
* ``request_number`` is unique.
* ``(requisition_id, approver_id, level)`` is unique per approval record.
* ``RequisitionModel.version`` is the mapper version counter; a stale
  concurrent UPDATE raises ``StaleDataError``.
* Line items and decided approval records are frozen
  (``p2p_kernel.db.immutability``).
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from p2p_kernel.db.base import TrackedBase
from p2p_kernel.domain.approval import ApprovalRecord, ApprovalRecordStatus

# ---------------------------------------------------------------------------
# RequisitionModel
# ---------------------------------------------------------------------------


class RequisitionModel(TrackedBase):
    """
    A purchase requisition (internal request to procure goods/services).

    Maps to the ``Requisition`` DTO in ``p2p_modules.requisition.models``.
    """

    __tablename__ = "p2p_requisitions"

    __table_args__ = (
        UniqueConstraint("request_number", name="uq_requisition_request_number"),
        CheckConstraint(
            "status IN ('DRAFT', 'SUBMITTED', 'APPROVED', 'REJECTED', 'CANCELLED')",
            name="ck_requisition_status",
        ),
        Index("idx_requisition_status", "status"),
        Index("idx_requisition_requestor", "requestor_id"),
        Index("idx_requisition_department_created", "department_id", "created_at"),
        Index("idx_requisition_created", "created_at"),
    )

    request_number: Mapped[str] = mapped_column(String(30), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(String(4000), nullable=True)
    requestor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    department_id: Mapped[str] = mapped_column(String(100), nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="NORMAL")
    requisition_type: Mapped[str] = mapped_column(String(20), nullable=False, default="STOCK")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="DRAFT")
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    required_by: Mapped[date] = mapped_column(Date, nullable=False)
    justification: Mapped[str | None] = mapped_column(String(4000), nullable=True)
    submitted_at: Mapped[datetime | None]
    approved_at: Mapped[datetime | None]
    workflow_instance_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    lines: Mapped[list["RequisitionLineModel"]] = relationship(
        "RequisitionLineModel",
        back_populates="requisition",
        cascade="all, delete-orphan",
        order_by="RequisitionLineModel.line_number",
        lazy="selectin",
    )

    approvals: Mapped[list["ApprovalRecordModel"]] = relationship(
        "ApprovalRecordModel",
        back_populates="requisition",
        cascade="all, delete-orphan",
        order_by="[ApprovalRecordModel.level, ApprovalRecordModel.position]",
        lazy="selectin",
    )

    def to_dto(self):
        from p2p_modules.requisition.models import (
            Requisition,
            RequisitionPriority,
            RequisitionStatus,
            RequisitionType,
        )

        return Requisition(
            id=self.id,
            request_number=self.request_number,
            title=self.title,
            description=self.description,
            requestor_id=self.requestor_id,
            department_id=self.department_id,
            priority=RequisitionPriority(self.priority),
            requisition_type=RequisitionType(self.requisition_type),
            status=RequisitionStatus(self.status),
            total_amount=self.total_amount,
            currency=self.currency,
            required_by=self.required_by,
            justification=self.justification,
            created_at=self.created_at,
            updated_at=self.updated_at,
            submitted_at=self.submitted_at,
            approved_at=self.approved_at,
            workflow_instance_id=self.workflow_instance_id,
            lines=tuple(
                line.to_dto()
                for line in sorted(self.lines, key=lambda l: l.line_number)
            ),
            approvals=tuple(
                record.to_dto()
                for record in sorted(self.approvals, key=lambda r: (r.level, r.position))
            ),
        )

    def __repr__(self) -> str:
        return f"<RequisitionModel {self.request_number} [{self.status}]>"


# ---------------------------------------------------------------------------
# RequisitionLineModel
# ---------------------------------------------------------------------------


class RequisitionLineModel(TrackedBase):
    """
    A line item on a requisition.

    Guarantees:
        - Belongs to exactly one ``RequisitionModel``.
        - (requisition_id, line_number) is unique.
    """

    __tablename__ = "p2p_requisition_lines"

    __table_args__ = (
        UniqueConstraint(
            "requisition_id", "line_number",
            name="uq_requisition_line_number",
        ),
        Index("idx_req_line_requisition", "requisition_id"),
    )

    requisition_id: Mapped[UUID] = mapped_column(
        ForeignKey("p2p_requisitions.id"), nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    unit_price: Mapped[Decimal | None]
    estimated_price: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    unit_of_measure: Mapped[str] = mapped_column(String(20), nullable=False, default="EA")
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    requested_delivery_date: Mapped[date] = mapped_column(Date, nullable=False)
    specifications: Mapped[str | None] = mapped_column(String(4000), nullable=True)
    preferred_supplier: Mapped[str | None] = mapped_column(String(100), nullable=True)
    suggested_suppliers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    requisition: Mapped["RequisitionModel"] = relationship(
        "RequisitionModel",
        back_populates="lines",
    )

    def to_dto(self):
        from p2p_modules.requisition.models import RequisitionLine

        return RequisitionLine(
            id=self.id,
            requisition_id=self.requisition_id,
            line_number=self.line_number,
            product_id=self.product_id,
            description=self.description,
            quantity=self.quantity,
            unit_price=self.unit_price,
            estimated_price=self.estimated_price,
            currency=self.currency,
            unit_of_measure=self.unit_of_measure,
            category=self.category,
            requested_delivery_date=self.requested_delivery_date,
            specifications=self.specifications,
            preferred_supplier=self.preferred_supplier,
            suggested_suppliers=tuple(self.suggested_suppliers or ()),
            notes=self.notes,
        )

    def __repr__(self) -> str:
        return f"<RequisitionLineModel {self.requisition_id}#{self.line_number}>"


# ---------------------------------------------------------------------------
# ApprovalRecordModel
# ---------------------------------------------------------------------------


class ApprovalRecordModel(TrackedBase):
    """
    One approver's slot on one requisition.

    Guarantees:
        - (requisition_id, approver_id, level) is unique.
        - status follows PENDING -> APPROVED | REJECTED.
        - records of one requisition are ordered by (level, position).
    """

    __tablename__ = "p2p_approval_records"

    __table_args__ = (
        UniqueConstraint(
            "requisition_id", "approver_id", "level",
            name="uq_approval_record_approver_level",
        ),
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED')",
            name="ck_approval_record_status",
        ),
        Index("idx_approval_record_requisition", "requisition_id"),
        Index("idx_approval_record_approver_status", "approver_id", "status"),
    )

    requisition_id: Mapped[UUID] = mapped_column(
        ForeignKey("p2p_requisitions.id"), nullable=False,
    )
    approver_id: Mapped[str] = mapped_column(String(100), nullable=False)
    approver_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    # Materialization order within the requisition
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    required: Mapped[bool] = mapped_column(nullable=False, default=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ApprovalRecordStatus.PENDING.value,
    )
    comments: Mapped[str | None] = mapped_column(String(4000), nullable=True)
    decided_at: Mapped[datetime | None]
    rule_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    requisition: Mapped["RequisitionModel"] = relationship(
        "RequisitionModel",
        back_populates="approvals",
    )

    def to_dto(self) -> ApprovalRecord:
        return ApprovalRecord(
            id=self.id,
            requisition_id=self.requisition_id,
            approver_id=self.approver_id,
            approver_role=self.approver_role,
            level=self.level,
            required=self.required,
            status=ApprovalRecordStatus(self.status),
            comments=self.comments,
            decided_at=self.decided_at,
            created_at=self.created_at,
            rule_id=self.rule_id,
        )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRecordModel {self.approver_id} L{self.level} [{self.status}]>"
        )
