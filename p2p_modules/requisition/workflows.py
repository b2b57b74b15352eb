"""
Requisition Workflow.

The requisition state machine, declared as data.  Every lifecycle
operation looks up its transition here before touching state.
"""

from p2p_kernel.domain.workflow import Guard, Transition, Workflow
from p2p_kernel.logging_config import get_logger
from p2p_modules.requisition.models import RequisitionStatus

logger = get_logger("modules.requisition.workflows")


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------

SUBMIT = "submit"
APPROVE = "approve"
REJECT = "reject"
CANCEL = "cancel"


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

APPROVAL_COMPLETE = Guard(
    name="approval_complete",
    description="Every required approval record is APPROVED",
)

PENDING_APPROVER = Guard(
    name="pending_approver",
    description="Actor holds a PENDING approval record on the requisition",
)


# -----------------------------------------------------------------------------
# Requisition Workflow
# -----------------------------------------------------------------------------

_DRAFT = RequisitionStatus.DRAFT.value
_SUBMITTED = RequisitionStatus.SUBMITTED.value
_APPROVED = RequisitionStatus.APPROVED.value
_REJECTED = RequisitionStatus.REJECTED.value
_CANCELLED = RequisitionStatus.CANCELLED.value

REQUISITION_WORKFLOW = Workflow(
    name="requisition",
    description="Purchase requisition lifecycle",
    initial_state=_DRAFT,
    states=(_DRAFT, _SUBMITTED, _APPROVED, _REJECTED, _CANCELLED),
    transitions=(
        Transition(_DRAFT, _SUBMITTED, action=SUBMIT),
        Transition(
            _SUBMITTED, _APPROVED, action=APPROVE,
            guard=APPROVAL_COMPLETE, requires_approval=True,
        ),
        Transition(_SUBMITTED, _REJECTED, action=REJECT, guard=PENDING_APPROVER),
        Transition(_DRAFT, _CANCELLED, action=CANCEL),
        Transition(_SUBMITTED, _CANCELLED, action=CANCEL),
    ),
    terminal_states=(_APPROVED, _REJECTED, _CANCELLED),
)

logger.info(
    "requisition_workflow_registered",
    extra={
        "workflow_name": REQUISITION_WORKFLOW.name,
        "state_count": len(REQUISITION_WORKFLOW.states),
        "transition_count": len(REQUISITION_WORKFLOW.transitions),
        "initial_state": REQUISITION_WORKFLOW.initial_state,
    },
)
