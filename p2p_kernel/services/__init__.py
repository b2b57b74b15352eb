"""Kernel services: sequence allocation and the audit trail."""

from p2p_kernel.services.auditor_service import AuditorService, AuditTrace
from p2p_kernel.services.sequence_service import (
    RequisitionNumberAllocator,
    SequenceService,
)

__all__ = [
    "AuditorService",
    "AuditTrace",
    "RequisitionNumberAllocator",
    "SequenceService",
]
