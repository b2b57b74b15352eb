"""
Requisition Module (``p2p_modules.requisition``).

Responsibility
--------------
The purchase requisition lifecycle: creation with rule-conditioned
approval routing, submission, multi-level approval and rejection,
cancellation, duplicate and budget review, and queries.

Architecture position
---------------------
**Modules layer** -- declarative workflow and config, ORM persistence,
read selectors, and two service facades (``RequisitionService`` and
``RequisitionValidationService``) that delegate computation to
``p2p_engines`` and audit to ``p2p_kernel``.

Failure modes
-------------
* Lifecycle errors are ``p2p_kernel.exceptions.RequisitionError``
  subclasses raised before any mutation.
* Database exceptions are rolled back and surface as
  ``RequisitionPersistenceError`` or ``OptimisticLockError``.
"""

from p2p_modules.requisition.config import RequisitionConfig
from p2p_modules.requisition.models import (
    BudgetCheckResult,
    BudgetStatus,
    CreateRequisitionInput,
    CreateRequisitionItem,
    Requisition,
    RequisitionFilter,
    RequisitionLine,
    RequisitionPage,
    RequisitionPriority,
    RequisitionStatus,
    RequisitionType,
    SortOrder,
    ValidationReport,
)
from p2p_modules.requisition.service import RequisitionService
from p2p_modules.requisition.validation import RequisitionValidationService
from p2p_modules.requisition.workflows import REQUISITION_WORKFLOW

__all__ = [
    "BudgetCheckResult",
    "BudgetStatus",
    "CreateRequisitionInput",
    "CreateRequisitionItem",
    "Requisition",
    "RequisitionFilter",
    "RequisitionLine",
    "RequisitionPage",
    "RequisitionPriority",
    "RequisitionStatus",
    "RequisitionType",
    "SortOrder",
    "ValidationReport",
    "RequisitionService",
    "RequisitionValidationService",
    "REQUISITION_WORKFLOW",
    "RequisitionConfig",
]
