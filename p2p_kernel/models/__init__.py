"""Kernel ORM models."""

from p2p_kernel.models.audit_event import AuditAction, AuditEvent

__all__ = ["AuditAction", "AuditEvent"]
