"""
DTOs -- shared validation value objects.

Responsibility:
    The single representation of a validation violation, used by the
    structural creation checks, the duplicate/budget validator and the
    aggregated RequisitionValidationError.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ValidationError:
    """
    A single validation error.

    Contract:
        Carries a machine-readable code, human-readable message, optional field
        path, and optional details dict.

    Non-goals:
        - Does NOT raise exceptions -- it IS the error representation.
    """

    code: str
    message: str
    field: str | None = None
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class ValidationResult:
    """
    Result of validation.

    Guarantees:
        - errors is always a tuple (never None)
        - bool(result) == result.is_valid
    """

    is_valid: bool
    errors: tuple[ValidationError, ...] = field(default_factory=tuple)

    @classmethod
    def success(cls) -> ValidationResult:
        return cls(is_valid=True, errors=())

    @classmethod
    def failure(cls, *errors: ValidationError) -> ValidationResult:
        return cls(is_valid=False, errors=tuple(errors))

    @classmethod
    def from_errors(cls, errors) -> ValidationResult:
        """Valid iff ``errors`` is empty."""
        errors = tuple(errors)
        return cls(is_valid=not errors, errors=errors)

    @property
    def messages(self) -> tuple[str, ...]:
        return tuple(e.message for e in self.errors)

    def __bool__(self) -> bool:
        return self.is_valid
