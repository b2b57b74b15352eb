"""
Approval rule set validator (``p2p_config.validator``).

Responsibility
--------------
Checks a parsed ``ApprovalRuleSet`` before it is handed to the approval
engine.

Invariants enforced
-------------------
* Rule id uniqueness -- duplicate ``rule_id`` values are errors.
* Approver presence -- every rule must name at least one approver.
* Approver uniqueness -- one rule may not list the same approver twice
  at the same level.
* Condition compilation -- a condition that failed to compile is a
  condition error.  Strict loading refuses such a set; lenient loading
  keeps the rule, which then never applies.

Failure modes
-------------
* ``errors``  -> the rule set MUST NOT be used.
* ``condition_errors``  -> rejected under strict loading only.
* ``warnings``  -> usable, should be reviewed.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from p2p_config.schema import ApprovalRuleSet


@dataclass
class ConfigValidationResult:
    """
    Result of rule-set validation.

    ``is_valid`` is True only when ``errors`` is empty; ``is_strictly_valid``
    additionally requires every condition to have compiled.
    """

    errors: list[str] = field(default_factory=list)
    condition_errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    @property
    def is_strictly_valid(self) -> bool:
        return self.is_valid and len(self.condition_errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_condition_error(self, msg: str) -> None:
        self.condition_errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_rule_set(rule_set: ApprovalRuleSet) -> ConfigValidationResult:
    """Validate a parsed approval rule set."""
    result = ConfigValidationResult()

    _validate_rule_uniqueness(rule_set, result)
    _validate_approvers(rule_set, result)
    _validate_conditions(rule_set, result)
    _validate_activity(rule_set, result)

    return result


def _validate_rule_uniqueness(
    rule_set: ApprovalRuleSet, result: ConfigValidationResult
) -> None:
    seen: set[str] = set()
    for rule in rule_set.rules:
        if rule.rule_id in seen:
            result.add_error(
                f"Duplicate rule: {rule.rule_id} appears more than once"
            )
        seen.add(rule.rule_id)


def _validate_approvers(
    rule_set: ApprovalRuleSet, result: ConfigValidationResult
) -> None:
    for rule in rule_set.rules:
        if not rule.approvers:
            result.add_error(f"Rule {rule.rule_id} has no approvers")
            continue
        pairs: set[tuple[str, int]] = set()
        for approver in rule.approvers:
            key = (approver.approver_id, approver.level)
            if key in pairs:
                result.add_error(
                    f"Rule {rule.rule_id} lists approver {approver.approver_id} "
                    f"twice at level {approver.level}"
                )
            pairs.add(key)


def _validate_conditions(
    rule_set: ApprovalRuleSet, result: ConfigValidationResult
) -> None:
    for rule_id, error in rule_set.condition_errors:
        result.add_condition_error(f"Rule {rule_id}: invalid condition: {error}")


def _validate_activity(
    rule_set: ApprovalRuleSet, result: ConfigValidationResult
) -> None:
    if rule_set.rules and not any(r.is_active for r in rule_set.rules):
        result.add_warning(
            f"Rule set {rule_set.rule_set_id} has no active rules"
        )
