"""
Approval rule loader (``p2p_config.loader``).

Responsibility
--------------
Loads approval-rule YAML files and parses them into the frozen
``ApprovalRuleSet`` / ``ApprovalRule`` dataclasses.  Rule conditions are
compiled here, once, into typed expression trees.  The single public
entry point for runtime rules is ``p2p_config.get_active_rules()``.

Invariants enforced
-------------------
* Required keys have no silent defaults: a missing ``rule_id``,
  ``process_type``, ``approvers`` or approver ``level`` raises ``KeyError``.
* A condition that does not compile is kept on the rule as
  ``condition_error``; the rule then never applies.
* ``compute_checksum`` is deterministic over the raw document.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Bad approver shape  -> ``ValueError`` from ``ApproverDefinition``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from p2p_config.condition_ast import compile_condition
from p2p_config.schema import ApprovalRuleSet
from p2p_kernel.domain.approval import ApprovalRule, ApproverDefinition
from p2p_kernel.domain.condition import Comparison
from p2p_kernel.exceptions import ConditionSyntaxError


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file.

    Raises:
        FileNotFoundError: if ``path`` does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def parse_approver(data: dict[str, Any]) -> ApproverDefinition:
    """Parse one approver entry (``user_id`` or ``role_id``, ``level``, ``required``)."""
    user_id = data.get("user_id")
    role_id = data.get("role_id")
    return ApproverDefinition(
        level=int(data["level"]),
        user_id=str(user_id) if user_id is not None else None,
        role_id=str(role_id) if role_id is not None else None,
        required=_parse_bool(data.get("required"), True),
    )


def parse_rule(data: dict[str, Any]) -> ApprovalRule:
    """
    Parse an ``ApprovalRule`` from a dict.

    Preconditions:
        - ``data`` contains ``rule_id``, ``process_type`` and a list of
          ``approvers``.
    Postconditions:
        - ``condition`` is compiled when present and valid; otherwise
          ``condition_error`` holds the first compile error.
    Raises:
        KeyError: if required keys are missing.
        ValueError: if an approver entry is malformed.
    """
    condition_text = data.get("condition")
    if condition_text is not None:
        condition_text = str(condition_text).strip() or None

    condition = None
    condition_error = None
    if condition_text is not None:
        condition, condition_error = _compile_or_error(condition_text)

    approvers = tuple(parse_approver(a) for a in data["approvers"])

    return ApprovalRule(
        rule_id=str(data["rule_id"]),
        process_type=str(data["process_type"]),
        approvers=approvers,
        condition=condition,
        condition_text=condition_text,
        condition_error=condition_error,
        is_active=_parse_bool(data.get("is_active"), True),
        priority=int(data.get("priority", 100)),
        description=str(data.get("description", "")),
    )


def _compile_or_error(text: str) -> tuple[Comparison | None, str | None]:
    try:
        return compile_condition(text), None
    except ConditionSyntaxError as e:
        return None, e.message


def parse_rule_set(data: dict[str, Any], source: str = "") -> ApprovalRuleSet:
    """
    Parse a whole rule-set document.

    Raises:
        KeyError: if ``rule_set_id`` or a rule's required keys are missing.
    """
    rules = tuple(parse_rule(r) for r in data.get("rules", []) or [])
    return ApprovalRuleSet(
        rule_set_id=str(data["rule_set_id"]),
        version=int(data.get("version", 1)),
        rules=rules,
        checksum=compute_checksum(data),
        source=source,
    )


def load_rule_set(path: Path) -> ApprovalRuleSet:
    """Load and parse an approval rule set from a YAML file."""
    return parse_rule_set(load_yaml_file(path), source=str(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


__all__ = [
    "compute_checksum",
    "load_rule_set",
    "load_yaml_file",
    "parse_approver",
    "parse_rule",
    "parse_rule_set",
]
