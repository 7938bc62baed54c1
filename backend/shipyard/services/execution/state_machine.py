"""
Deployment State Machine.

Status is a closed enum and every allowed move is listed in an explicit
(status, action) -> status table:

    WAITING_APPROVAL --approve--> APPROVED
    WAITING_APPROVAL --reject/expire--> CANCELLED
    PENDING | APPROVED | FAILED --execute--> RUNNING
    RUNNING --succeed--> SUCCESS
    PENDING | APPROVED | RUNNING --fail--> FAILED
    PENDING | WAITING_APPROVAL | RUNNING --cancel--> CANCELLED

Anything not in the table is a precondition violation. ROLLED_BACK exists
as a status but no action leads to it.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from shipyard.models.deployment import DeploymentStatus
from shipyard.services.errors import PreconditionError


class DeploymentAction(str, Enum):
    """Actions that move a deployment between statuses."""
    APPROVE = "approve"
    REJECT = "reject"
    EXPIRE = "expire"
    EXECUTE = "execute"
    SUCCEED = "succeed"
    FAIL = "fail"
    CANCEL = "cancel"


S = DeploymentStatus
A = DeploymentAction

TRANSITIONS: dict[tuple[DeploymentStatus, DeploymentAction], DeploymentStatus] = {
    (S.WAITING_APPROVAL, A.APPROVE): S.APPROVED,
    (S.WAITING_APPROVAL, A.REJECT): S.CANCELLED,
    (S.WAITING_APPROVAL, A.EXPIRE): S.CANCELLED,
    (S.PENDING, A.EXECUTE): S.RUNNING,
    (S.APPROVED, A.EXECUTE): S.RUNNING,
    (S.FAILED, A.EXECUTE): S.RUNNING,  # Manual retry
    (S.RUNNING, A.SUCCEED): S.SUCCESS,
    (S.PENDING, A.FAIL): S.FAILED,  # Pre-flight failures
    (S.APPROVED, A.FAIL): S.FAILED,
    (S.RUNNING, A.FAIL): S.FAILED,
    (S.PENDING, A.CANCEL): S.CANCELLED,
    (S.WAITING_APPROVAL, A.CANCEL): S.CANCELLED,
    (S.RUNNING, A.CANCEL): S.CANCELLED,
}

del S, A

# Statuses after which the deployment never holds the workspace lock again
# (FAILED can be re-executed, which re-acquires it)
TERMINAL_STATES: set[DeploymentStatus] = {
    DeploymentStatus.SUCCESS,
    DeploymentStatus.FAILED,
    DeploymentStatus.CANCELLED,
    DeploymentStatus.ROLLED_BACK,
}

# Statuses in which a deployment is expected to hold its project's lock
LOCK_HOLDING_STATES: set[DeploymentStatus] = {
    DeploymentStatus.APPROVED,
    DeploymentStatus.RUNNING,
}


def next_status(current: DeploymentStatus | str, action: DeploymentAction) -> DeploymentStatus:
    """
    Look up the status an action leads to.

    Raises:
        PreconditionError: If the action is not allowed from current
    """
    current = DeploymentStatus(current)
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise PreconditionError(
            f"Cannot {action.value} a deployment in status {current.value}"
        ) from None


def can_apply(current: DeploymentStatus | str, action: DeploymentAction) -> bool:
    return (DeploymentStatus(current), action) in TRANSITIONS


def is_terminal(status: DeploymentStatus | str) -> bool:
    return DeploymentStatus(status) in TERMINAL_STATES


def initial_status(require_approval: bool, auto_approved: bool) -> DeploymentStatus:
    """
    Decide the status a new deployment starts in.

    Workflows that don't require approval start PENDING. Gated workflows start
    APPROVED for auto-approved requesters (super-admin or project owner) and
    WAITING_APPROVAL for everyone else.
    """
    if not require_approval:
        return DeploymentStatus.PENDING
    if auto_approved:
        return DeploymentStatus.APPROVED
    return DeploymentStatus.WAITING_APPROVAL


@dataclass
class DeploymentTransition:
    """Record of an applied action."""
    from_status: DeploymentStatus
    to_status: DeploymentStatus
    action: DeploymentAction
    timestamp: datetime
    reason: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"Transition({self.from_status.value} -{self.action.value}-> "
            f"{self.to_status.value} at {self.timestamp})"
        )


class DeploymentStateMachine:
    """
    Tracks a deployment's status through the transition table.

    Usage:
        machine = DeploymentStateMachine(deployment.status)
        deployment.status = machine.apply(DeploymentAction.EXECUTE).value
    """

    def __init__(self, initial: DeploymentStatus | str = DeploymentStatus.PENDING):
        self._status = DeploymentStatus(initial)
        self._history: list[DeploymentTransition] = []

    @property
    def status(self) -> DeploymentStatus:
        return self._status

    @property
    def history(self) -> list[DeploymentTransition]:
        return list(self._history)

    @property
    def is_terminal(self) -> bool:
        return self._status in TERMINAL_STATES

    def can_apply(self, action: DeploymentAction) -> bool:
        return can_apply(self._status, action)

    def allowed_actions(self) -> set[DeploymentAction]:
        return {action for (status, action) in TRANSITIONS if status == self._status}

    def apply(self, action: DeploymentAction, reason: Optional[str] = None) -> DeploymentStatus:
        """
        Apply an action and return the new status.

        Raises:
            PreconditionError: If the action is not allowed from the current status
        """
        new_status = next_status(self._status, action)
        self._history.append(DeploymentTransition(
            from_status=self._status,
            to_status=new_status,
            action=action,
            timestamp=datetime.utcnow(),
            reason=reason,
        ))
        self._status = new_status
        return new_status
