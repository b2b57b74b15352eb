"""
Module: p2p_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines used by
    the requisition lifecycle.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import p2p_kernel/domain (and sibling engine modules).
    MUST NOT import p2p_services or p2p_modules.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()`` or ``date.today()``.
      Dates are passed in by the calling service.
    - Decimal-only arithmetic for money.
    - Determinism: identical inputs always produce identical outputs.

Usage:
    from p2p_engines.approval import materialize_approvals, evaluate_tally
    from p2p_engines.requisition_checks import run_checks, CREATION_CHECKS
"""

from p2p_engines.approval import (
    condition_attributes,
    evaluate_tally,
    materialize_approvals,
    next_approval_level,
    select_applicable_rules,
    select_pending_record,
)
from p2p_engines.requisition_checks import (
    CREATION_CHECKS,
    REVIEW_CHECKS,
    compute_total,
    is_similar_title,
    leading_keyword,
    run_checks,
    shared_category,
)
from p2p_engines.tracer import traced_engine

__all__ = [
    "CREATION_CHECKS",
    "REVIEW_CHECKS",
    "compute_total",
    "condition_attributes",
    "evaluate_tally",
    "is_similar_title",
    "leading_keyword",
    "materialize_approvals",
    "next_approval_level",
    "run_checks",
    "select_applicable_rules",
    "select_pending_record",
    "shared_category",
    "traced_engine",
]
