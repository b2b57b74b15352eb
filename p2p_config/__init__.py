"""
p2p_config -- single public entrypoint for approval-rule configuration.

Responsibility:
    Provides the ONLY way to obtain approval rules at runtime through
    ``get_active_rules()``.  YAML loading is internal tooling and never
    exposed to services.

Architecture position:
    Configuration -- YAML-driven rule sets with load-time validation.
    This package sits above ``p2p_kernel`` and below ``p2p_services`` /
    ``p2p_modules``.  The kernel MUST NEVER import from ``p2p_config``.

Invariants enforced:
    - Single entrypoint: all runtime rules flow through ``get_active_rules()``.
    - Conditions are compiled at load time; evaluation never parses text.
    - Deterministic checksum: the same YAML always yields the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the rule-set file does not exist.
    - ``ConfigValidationError`` -- structural errors, unparseable YAML, or
      conditions that do not compile.

Audit relevance:
    Every successful ``get_active_rules()`` call emits a
    ``P2P_CONFIG_TRACE`` log entry with the rule-set id, version,
    checksum and rule count.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from p2p_config.loader import load_rule_set
from p2p_config.schema import ApprovalRuleSet
from p2p_config.validator import validate_rule_set
from p2p_kernel.exceptions import ConfigValidationError

__all__ = ["ApprovalRuleSet", "get_active_rules"]

_logger = logging.getLogger("p2p_kernel.config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "approval_rules.yaml"


def get_active_rules(
    config_path: Path | str | None = None,
    strict: bool = False,
) -> ApprovalRuleSet:
    """
    Load, validate and return the active approval rule set.

    Args:
        config_path: Override path to a rule-set YAML file.
            Defaults to p2p_config/sets/approval_rules.yaml.
        strict: Reject rule sets containing conditions that do not
            compile instead of keeping those rules fail-closed.

    Returns:
        ApprovalRuleSet with compiled conditions.

    Raises:
        FileNotFoundError: If the rule-set file is missing.
        ConfigValidationError: If validation fails.
    """
    path = Path(config_path) if config_path is not None else _DEFAULT_CONFIG_PATH

    try:
        rule_set = load_rule_set(path)
    except (KeyError, ValueError, TypeError, yaml.YAMLError) as e:
        raise ConfigValidationError(str(path), (f"Malformed rule set: {e}",)) from e

    validation = validate_rule_set(rule_set)
    if not validation.is_valid:
        raise ConfigValidationError(str(path), tuple(validation.errors))
    if strict and not validation.is_strictly_valid:
        raise ConfigValidationError(str(path), tuple(validation.condition_errors))

    for message in validation.condition_errors + validation.warnings:
        _logger.warning(
            "approval_rule_config_warning",
            extra={"config_path": str(path), "detail": message},
        )

    _logger.info(
        "P2P_CONFIG_TRACE",
        extra={
            "trace_type": "P2P_CONFIG_TRACE",
            "rule_set_id": rule_set.rule_set_id,
            "rule_set_version": rule_set.version,
            "checksum": rule_set.checksum,
            "rule_count": len(rule_set.rules),
            "inactive_rule_count": sum(1 for r in rule_set.rules if not r.is_active),
        },
    )

    return rule_set
