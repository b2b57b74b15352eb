"""
Typed Exception Hierarchy for the procure-to-pay kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the requisition lifecycle need to tell a bad payload from an
unknown id, an illegal transition from an approver who holds no pending
approval.  Parsing message strings for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Every exception has a CATEGORY (validation, not_found, conflict,
     authorization, concurrency, configuration, system)
  4. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        service.approve_requisition(requisition_id, approver_id="u-7")
    except UnauthorizedApproverError as e:
        api_response(403, code=e.code, approver=e.approver_id)
    except InvalidRequisitionTransitionError as e:
        api_response(409, code=e.code, status=e.current_status)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    P2PKernelError (base)
    |
    +-- RequisitionError
    |   +-- RequisitionValidationError
    |   +-- RequisitionNotFoundError
    |   +-- InvalidRequisitionTransitionError
    |   +-- UnauthorizedApproverError
    |   +-- ApprovalRulesUnavailableError
    |   +-- RequisitionPersistenceError
    |
    +-- ConfigError
    |   +-- ConditionSyntaxError
    |   +-- ConfigValidationError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- AuditError
        +-- AuditChainBrokenError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                           | When Raised
----------------|--------------------------------|---------------------------------------
Validation      | REQUISITION_VALIDATION_ERROR   | Creation payload violates one or more
                |                                | rules (all violations listed)
Not found       | REQUISITION_NOT_FOUND          | Unknown requisition id
Conflict        | INVALID_REQUISITION_TRANSITION | Action not allowed from current status
Authorization   | UNAUTHORIZED_APPROVER          | Approver holds no pending approval
Configuration   | APPROVAL_RULES_UNAVAILABLE     | Rule provider could not answer
                | CONDITION_SYNTAX_ERROR         | Rule condition text not parseable
                | CONFIG_VALIDATION_ERROR        | Strict rule-set load failed
System          | PERSISTENCE_FAILURE            | Storage failure (details logged only)
Concurrency     | OPTIMISTIC_LOCK_CONFLICT       | Concurrent modification detected
Immutability    | IMMUTABILITY_VIOLATION         | Modifying a frozen record
Audit           | AUDIT_CHAIN_BROKEN             | Hash chain validation failed

Integration failures (workflow engine, event bus, budget service) are NOT
raised.  They surface as IntegrationOutcome values and audit entries.

===============================================================================
"""


class P2PKernelError(Exception):
    """
    Base exception for all procure-to-pay kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification, and a `category` for coarse handling.
    """

    code: str = "P2P_KERNEL_ERROR"
    category: str = "system"

    @property
    def reasons(self) -> tuple[str, ...]:
        """Human-readable reasons, one per violation."""
        return (str(self),)


# Requisition lifecycle exceptions


class RequisitionError(P2PKernelError):
    """Base exception for requisition lifecycle errors."""

    code: str = "REQUISITION_ERROR"


class RequisitionValidationError(RequisitionError):
    """One or more validation rules failed.  Every violation is listed."""

    code: str = "REQUISITION_VALIDATION_ERROR"
    category: str = "validation"

    def __init__(self, errors: tuple):
        # errors: tuple of p2p_kernel.domain.dtos.ValidationError
        self.errors = tuple(errors)
        messages = "; ".join(e.message for e in self.errors)
        super().__init__(f"Requisition validation failed: {messages}")

    @property
    def reasons(self) -> tuple[str, ...]:
        return tuple(e.message for e in self.errors)


class RequisitionNotFoundError(RequisitionError):
    """Requisition id is unknown."""

    code: str = "REQUISITION_NOT_FOUND"
    category: str = "not_found"

    def __init__(self, requisition_id: str):
        self.requisition_id = str(requisition_id)
        super().__init__(f"Requisition not found: {requisition_id}")


class InvalidRequisitionTransitionError(RequisitionError):
    """The requested action is not allowed from the requisition's status."""

    code: str = "INVALID_REQUISITION_TRANSITION"
    category: str = "conflict"

    def __init__(self, requisition_id: str, current_status: str, action: str):
        self.requisition_id = str(requisition_id)
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} requisition {requisition_id} "
            f"in status {current_status}"
        )


class UnauthorizedApproverError(RequisitionError):
    """The approver holds no pending approval on the requisition."""

    code: str = "UNAUTHORIZED_APPROVER"
    category: str = "authorization"

    def __init__(self, requisition_id: str, approver_id: str):
        self.requisition_id = str(requisition_id)
        self.approver_id = approver_id
        super().__init__(
            f"Approver {approver_id} has no pending approval "
            f"on requisition {requisition_id}"
        )


class ApprovalRulesUnavailableError(RequisitionError):
    """The rule configuration provider could not supply approval rules."""

    code: str = "APPROVAL_RULES_UNAVAILABLE"
    category: str = "configuration"

    def __init__(self, process_type: str, reason: str):
        self.process_type = process_type
        self.reason = reason
        super().__init__(
            f"Approval rules unavailable for {process_type}: {reason}"
        )


class RequisitionPersistenceError(RequisitionError):
    """
    Storage failed during a requisition operation.

    The message is deliberately opaque; the underlying database error is
    chained as __cause__ and logged, never returned to callers.
    """

    code: str = "PERSISTENCE_FAILURE"
    category: str = "system"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Requisition operation failed: {operation}")


# Configuration exceptions


class ConfigError(P2PKernelError):
    """Base exception for approval-rule configuration errors."""

    code: str = "CONFIG_ERROR"
    category: str = "configuration"


class ConditionSyntaxError(ConfigError):
    """A rule condition could not be compiled into an expression tree."""

    code: str = "CONDITION_SYNTAX_ERROR"

    def __init__(self, expression: str, message: str):
        self.expression = expression
        self.message = message
        super().__init__(f"Invalid condition {expression!r}: {message}")


class ConfigValidationError(ConfigError):
    """Strict load of an approval rule set found errors."""

    code: str = "CONFIG_VALIDATION_ERROR"

    def __init__(self, source: str, errors: tuple[str, ...]):
        self.source = source
        self.errors = tuple(errors)
        super().__init__(
            f"Approval rule set {source} is invalid: {'; '.join(self.errors)}"
        )

    @property
    def reasons(self) -> tuple[str, ...]:
        return self.errors


# Concurrency-related exceptions


class ConcurrencyError(P2PKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"
    category: str = "concurrency"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Immutability-related exceptions


class ImmutabilityError(P2PKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete a frozen record.

    Audit events, line items, and approval records of terminal requisitions
    never change after they are written.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Audit-related exceptions


class AuditError(P2PKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = str(audit_event_id)
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )
