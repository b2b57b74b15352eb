"""
Requisition Configuration Schema.

Defines the structure and sensible defaults for requisition settings.
Approval rules themselves are YAML configuration (see ``p2p_config``);
this dataclass carries the module knobs around them.
"""

from dataclasses import dataclass, fields
from typing import Self

from p2p_kernel.logging_config import get_logger

logger = get_logger("modules.requisition.config")


@dataclass
class RequisitionConfig:
    """
    Configuration schema for the requisition module.

    Override at instantiation with deployment-specific values:

        config = RequisitionConfig(duplicate_window_days=14)
    """

    # Rule lookup key for approval rules
    process_type: str = "REQUISITION"

    # Numbering: REQ-2026-001
    number_prefix: str = "REQ"
    number_width: int = 3

    default_currency: str = "USD"

    # Duplicate detection looks back this many days
    duplicate_window_days: int = 30

    # Query pagination
    default_page_size: int = 10
    max_page_size: int = 100

    # Event envelope
    event_source: str = "P2P_MODULE"
    event_version: str = "1.0"

    def __post_init__(self):
        if self.number_width < 1:
            raise ValueError(f"number_width must be >= 1, got {self.number_width}")
        if self.duplicate_window_days < 0:
            raise ValueError(
                f"duplicate_window_days must be >= 0, got {self.duplicate_window_days}"
            )
        if not 0 < self.default_page_size <= self.max_page_size:
            raise ValueError(
                "default_page_size must be positive and no larger than max_page_size"
            )
        logger.info(
            "requisition_config_initialized",
            extra={
                "process_type": self.process_type,
                "number_prefix": self.number_prefix,
                "default_currency": self.default_currency,
                "duplicate_window_days": self.duplicate_window_days,
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create config from a dictionary (e.g. a YAML section); unknown keys are rejected."""
        logger.info(
            "requisition_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown requisition config keys: {unknown}")
        return cls(**data)
