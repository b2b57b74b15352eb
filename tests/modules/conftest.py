"""
Shared fixtures for requisition module tests.

DESIGN RULE: Every fixture is opt-in.  No autouse.  Each test declares
the rule set and collaborators it depends on in its signature.
"""

import pytest

from p2p_modules.requisition.service import RequisitionService
from p2p_services.integration import StaticRuleProvider
from tests.factories import DIRECTOR_ID, MANAGER_ID, make_rule


@pytest.fixture
def two_level_rules():
    """
    manager-001 at level 1 for everything; director-001 (required) and the
    FINANCE role (optional) at level 2 above 1,000.
    """
    return [
        make_rule(
            "REQ-ALL", condition=None, priority=10,
            approvers=[{"user_id": MANAGER_ID, "level": 1}],
        ),
        make_rule(
            "REQ-HIGH-VALUE", condition="totalAmount > 1000", priority=20,
            approvers=[
                {"user_id": DIRECTOR_ID, "level": 2},
                {"role_id": "FINANCE", "level": 2, "required": False},
            ],
        ),
    ]


@pytest.fixture
def make_service(session, deterministic_clock, workflow_engine, event_publisher):
    """
    Build a RequisitionService on the test session with overrides::

        service = make_service(rules=two_level_rules)
        service = make_service(rule_provider=StaticRuleProvider(available=False))
    """

    def _make(rules=None, **overrides):
        kwargs = {
            "clock": deterministic_clock,
            "rule_provider": StaticRuleProvider(rules if rules is not None else [make_rule()]),
            "workflow_engine": workflow_engine,
            "event_publisher": event_publisher,
        }
        kwargs.update(overrides)
        return RequisitionService(session, **kwargs)

    return _make
