"""
Approval rule set schema.

The human-authored, reviewable source artifact for approval routing.
YAML files under ``p2p_config/sets/`` are parsed into these types by the
loader and checked by the validator before any rule reaches the
approval engine.  Rule and approver types are the kernel's own
(``p2p_kernel.domain.approval``) so nothing needs translating at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass

from p2p_kernel.domain.approval import ApprovalRule


@dataclass(frozen=True)
class ApprovalRuleSet:
    """A versioned collection of approval rules loaded from one file."""

    rule_set_id: str
    version: int
    rules: tuple[ApprovalRule, ...]
    checksum: str = ""
    source: str = ""

    def rules_for(self, process_type: str) -> tuple[ApprovalRule, ...]:
        return tuple(r for r in self.rules if r.process_type == process_type)

    @property
    def condition_errors(self) -> tuple[tuple[str, str], ...]:
        """``(rule_id, error)`` for every rule whose condition did not compile."""
        return tuple(
            (r.rule_id, r.condition_error)
            for r in self.rules
            if r.condition_error is not None
        )
