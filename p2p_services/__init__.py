"""
p2p_services -- collaborator adapters for the requisition lifecycle.

Responsibility:
    Concrete workflow-engine, event-bus, budget and rule-provider adapters,
    and the boundary helpers that turn collaborator failures into
    ``IntegrationOutcome`` values.

Architecture position:
    Services -- above p2p_kernel, p2p_config and p2p_engines.
        p2p_services/ -> p2p_kernel/, p2p_config/  (allowed)
        p2p_kernel/   -> p2p_services/              (FORBIDDEN)
"""

from p2p_services.integration import (
    ConfiguredRuleProvider,
    FixedBudgetCollaborator,
    InMemoryEventPublisher,
    InMemoryWorkflowEngine,
    LoggingEventPublisher,
    NullWorkflowEngine,
    StaticRuleProvider,
    publish_safely,
    start_workflow_safely,
)

__all__ = [
    "ConfiguredRuleProvider",
    "FixedBudgetCollaborator",
    "InMemoryEventPublisher",
    "InMemoryWorkflowEngine",
    "LoggingEventPublisher",
    "NullWorkflowEngine",
    "StaticRuleProvider",
    "publish_safely",
    "start_workflow_safely",
]
