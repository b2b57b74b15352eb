"""
Requisition Domain Models.

The nouns of the requisition lifecycle: the requisition and its lines,
creation input, query filters and pages, and validation/budget answers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from p2p_kernel.domain.approval import ApprovalRecord
from p2p_kernel.domain.dtos import ValidationError
from p2p_kernel.exceptions import RequisitionNotFoundError


class RequisitionStatus(str, Enum):
    """Requisition lifecycle states."""
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


TERMINAL_REQUISITION_STATUSES: frozenset[RequisitionStatus] = frozenset({
    RequisitionStatus.APPROVED,
    RequisitionStatus.REJECTED,
    RequisitionStatus.CANCELLED,
})


class RequisitionPriority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class RequisitionType(str, Enum):
    STOCK = "STOCK"
    DIRECT = "DIRECT"
    SERVICE = "SERVICE"
    ASSET = "ASSET"


@dataclass(frozen=True)
class RequisitionLine:
    """A line item on a requisition."""
    id: UUID
    requisition_id: UUID
    line_number: int
    description: str
    quantity: Decimal
    estimated_price: Decimal
    currency: str
    unit_of_measure: str
    category: str
    requested_delivery_date: date
    product_id: str | None = None
    unit_price: Decimal | None = None
    specifications: str | None = None
    preferred_supplier: str | None = None
    suggested_suppliers: tuple[str, ...] = ()
    notes: str | None = None

    @property
    def line_total(self) -> Decimal:
        return self.estimated_price * self.quantity


@dataclass(frozen=True)
class Requisition:
    """A purchase requisition with its lines and approval records."""
    id: UUID
    request_number: str
    title: str
    requestor_id: str
    department_id: str
    priority: RequisitionPriority
    requisition_type: RequisitionType
    status: RequisitionStatus
    total_amount: Decimal
    currency: str
    required_by: date
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    justification: str | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    workflow_instance_id: str | None = None
    lines: tuple[RequisitionLine, ...] = ()
    approvals: tuple[ApprovalRecord, ...] = ()


def parse_requisition_id(requisition_id: UUID | str) -> UUID:
    """Accept a UUID or its string form; anything else is an unknown id."""
    if isinstance(requisition_id, UUID):
        return requisition_id
    try:
        return UUID(str(requisition_id))
    except ValueError:
        raise RequisitionNotFoundError(str(requisition_id)) from None


# ---------------------------------------------------------------------------
# Creation input
# ---------------------------------------------------------------------------


def _parse_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return parsed if parsed.is_finite() else None


def _parse_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _parse_enum(enum_cls, value: Any, default):
    if value is None:
        return default
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        return None


@dataclass(frozen=True)
class CreateRequisitionItem:
    """
    One requested item as supplied by the caller.

    Fields are optional at this level; the creation checks report every
    missing or non-positive value.
    """
    description: str | None
    quantity: Decimal | None
    estimated_price: Decimal | None
    category: str | None
    requested_delivery_date: date | None
    currency: str | None = None
    unit_of_measure: str = "EA"
    product_id: str | None = None
    unit_price: Decimal | None = None
    specifications: str | None = None
    preferred_supplier: str | None = None
    suggested_suppliers: tuple[str, ...] = ()
    notes: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CreateRequisitionItem:
        return cls(
            description=data.get("description"),
            quantity=_parse_decimal(data.get("quantity")),
            estimated_price=_parse_decimal(data.get("estimated_price")),
            category=data.get("category"),
            requested_delivery_date=_parse_date(data.get("requested_delivery_date")),
            currency=data.get("currency"),
            unit_of_measure=data.get("unit_of_measure") or "EA",
            product_id=data.get("product_id"),
            unit_price=_parse_decimal(data.get("unit_price")),
            specifications=data.get("specifications"),
            preferred_supplier=data.get("preferred_supplier"),
            suggested_suppliers=tuple(data.get("suggested_suppliers") or ()),
            notes=data.get("notes"),
        )


@dataclass(frozen=True)
class CreateRequisitionInput:
    """Payload for create_requisition."""
    title: str | None
    department_id: str | None
    required_by: date | None
    items: tuple[CreateRequisitionItem, ...] = ()
    description: str | None = None
    priority: RequisitionPriority | None = RequisitionPriority.NORMAL
    requisition_type: RequisitionType | None = RequisitionType.STOCK
    justification: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CreateRequisitionInput:
        """Lenient parse; unparseable values become None and fail validation."""
        return cls(
            title=data.get("title"),
            department_id=data.get("department_id"),
            required_by=_parse_date(data.get("required_by")),
            items=tuple(
                CreateRequisitionItem.from_dict(item)
                for item in (data.get("items") or ())
            ),
            description=data.get("description"),
            priority=_parse_enum(
                RequisitionPriority, data.get("priority"), RequisitionPriority.NORMAL,
            ),
            requisition_type=_parse_enum(
                RequisitionType, data.get("requisition_type"), RequisitionType.STOCK,
            ),
            justification=data.get("justification"),
        )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class RequisitionFilter:
    """Filter, search, sort and pagination for query_requisitions."""
    status: RequisitionStatus | None = None
    priority: RequisitionPriority | None = None
    requisition_type: RequisitionType | None = None
    requestor_id: str | None = None
    department_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None
    page: int = 1
    page_size: int | None = None
    sort_by: str = "created_at"
    sort_order: SortOrder = SortOrder.DESC


@dataclass(frozen=True)
class RequisitionPage:
    items: tuple[Requisition, ...]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------


class BudgetStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    INSUFFICIENT = "INSUFFICIENT"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class BudgetCheckResult:
    """
    Budget answer for a requisition.

    ``available`` is None and ``remaining`` is None when the budget
    collaborator could not answer (status UNKNOWN).
    """
    status: BudgetStatus
    requested: Decimal
    available: bool | None = None
    remaining: Decimal | None = None
    reason: str | None = None

    @classmethod
    def unknown(cls, requested: Decimal, reason: str) -> BudgetCheckResult:
        return cls(status=BudgetStatus.UNKNOWN, requested=requested, reason=reason)


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidationReport:
    """Answer of validate_requisition: ``errors`` are display messages."""
    requisition_id: UUID
    valid: bool
    errors: tuple[str, ...] = ()
    issues: tuple[ValidationError, ...] = ()
