"""
p2p_engines.requisition_checks -- Composable requisition validation checks.

Responsibility:
    Every structural rule a requisition must satisfy, written as a small
    check function that returns the violations it finds.  ``run_checks``
    runs a list of checks and concatenates their violations; it never
    stops at the first failure, so callers can report everything wrong
    with a payload at once.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  "Today" is always a
    parameter; the caller reads it from its clock.

Invariants enforced:
    - Checks never raise on bad input; a missing or unparseable value is
      a violation.
    - Item messages are numbered from 1 in input order ("Item 2: ...").
    - ``compute_total`` is Decimal-only and independent of item order.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Callable, Iterable, Sequence

from p2p_kernel.domain.dtos import ValidationError, ValidationResult

Check = Callable[[Any, date], list[ValidationError]]


def run_checks(checks: Iterable[Check], subject: Any, today: date) -> ValidationResult:
    """Run every check against ``subject`` and collect all violations."""
    errors: list[ValidationError] = []
    for check in checks:
        errors.extend(check(subject, today))
    return ValidationResult.from_errors(errors)


def _blank(value: Any) -> bool:
    """Missing, whitespace-only, or not text at all."""
    return not isinstance(value, str) or not value.strip()


def _positive(value: Any) -> bool:
    """A finite Decimal (or int) above zero."""
    if isinstance(value, bool) or not isinstance(value, (Decimal, int)):
        return False
    if isinstance(value, Decimal) and not value.is_finite():
        return False
    return value > 0


# ---------------------------------------------------------------------------
# Creation checks (subject: CreateRequisitionInput)
# ---------------------------------------------------------------------------


def check_title(data, today: date) -> list[ValidationError]:
    if _blank(data.title):
        return [ValidationError("TITLE_REQUIRED", "Title is required", field="title")]
    return []


def check_department(data, today: date) -> list[ValidationError]:
    if _blank(data.department_id):
        return [ValidationError(
            "DEPARTMENT_REQUIRED", "Department ID is required", field="department_id",
        )]
    return []


def check_required_by(data, today: date) -> list[ValidationError]:
    if data.required_by is None:
        return [ValidationError(
            "REQUIRED_DATE_REQUIRED", "Required date is required", field="required_by",
        )]
    return check_required_by_in_future(data, today)


def check_required_by_in_future(data, today: date) -> list[ValidationError]:
    """Strictly after today.  Also used on persisted requisitions."""
    if data.required_by is not None and data.required_by <= today:
        return [ValidationError(
            "REQUIRED_DATE_NOT_FUTURE",
            "Required date must be in the future",
            field="required_by",
            details={"required_by": data.required_by.isoformat(), "today": today.isoformat()},
        )]
    return []


def check_classification(data, today: date) -> list[ValidationError]:
    errors = []
    if data.priority is None:
        errors.append(ValidationError("INVALID_PRIORITY", "Priority is invalid", field="priority"))
    if data.requisition_type is None:
        errors.append(ValidationError(
            "INVALID_REQUISITION_TYPE", "Requisition type is invalid", field="requisition_type",
        ))
    return errors


def check_has_items(data, today: date) -> list[ValidationError]:
    if not data.items:
        return [ValidationError(
            "ITEMS_REQUIRED", "Requisition must have at least one item", field="items",
        )]
    return []


def check_items(data, today: date) -> list[ValidationError]:
    errors: list[ValidationError] = []
    for number, item in enumerate(data.items, start=1):
        errors.extend(check_item(item, number))
    return errors


def check_item(item, number: int) -> list[ValidationError]:
    """Violations for one item; ``number`` is 1-based."""
    prefix = f"Item {number}"
    path = f"items[{number - 1}]"
    errors = []
    if _blank(item.description):
        errors.append(ValidationError(
            "ITEM_DESCRIPTION_REQUIRED", f"{prefix}: Description is required",
            field=f"{path}.description",
        ))
    if not _positive(item.quantity):
        errors.append(ValidationError(
            "ITEM_QUANTITY_NOT_POSITIVE", f"{prefix}: Quantity must be positive",
            field=f"{path}.quantity",
        ))
    if not _positive(item.estimated_price):
        errors.append(ValidationError(
            "ITEM_PRICE_NOT_POSITIVE", f"{prefix}: Estimated price must be positive",
            field=f"{path}.estimated_price",
        ))
    if _blank(item.category):
        errors.append(ValidationError(
            "ITEM_CATEGORY_REQUIRED", f"{prefix}: Category is required",
            field=f"{path}.category",
        ))
    if item.requested_delivery_date is None:
        errors.append(ValidationError(
            "ITEM_DELIVERY_DATE_REQUIRED", f"{prefix}: Requested delivery date is required",
            field=f"{path}.requested_delivery_date",
        ))
    return errors


CREATION_CHECKS: tuple[Check, ...] = (
    check_title,
    check_department,
    check_required_by,
    check_classification,
    check_has_items,
    check_items,
)


# ---------------------------------------------------------------------------
# Persisted-requisition checks (subject: Requisition DTO)
# ---------------------------------------------------------------------------


def check_has_lines(requisition, today: date) -> list[ValidationError]:
    if not requisition.lines:
        return [ValidationError(
            "ITEMS_REQUIRED", "Requisition must have at least one item", field="lines",
        )]
    return []


def check_positive_total(requisition, today: date) -> list[ValidationError]:
    if requisition.total_amount is None or requisition.total_amount <= 0:
        return [ValidationError(
            "TOTAL_NOT_POSITIVE", "Total amount must be greater than zero",
            field="total_amount",
        )]
    return []


REVIEW_CHECKS: tuple[Check, ...] = (
    check_has_lines,
    check_positive_total,
    check_required_by_in_future,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def compute_total(items: Sequence) -> Decimal:
    """Sum of estimated price x quantity over the items."""
    return sum(
        (item.estimated_price * item.quantity for item in items),
        Decimal("0"),
    )


def leading_keyword(title: str | None) -> str | None:
    """First whitespace-delimited word of ``title``, lower-cased."""
    if _blank(title):
        return None
    return title.split()[0].lower()


def is_similar_title(title: str | None, other_title: str | None) -> bool:
    """True when ``other_title`` contains the leading keyword of ``title``."""
    keyword = leading_keyword(title)
    if keyword is None or other_title is None:
        return False
    return keyword in other_title.lower()


def shared_category(items: Sequence) -> str | None:
    """The category every item shares, or None if they differ."""
    categories = {item.category for item in items}
    if len(categories) == 1:
        return next(iter(categories))
    return None
