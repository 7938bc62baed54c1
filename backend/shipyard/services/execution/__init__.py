"""
Deployment execution core.

- DeploymentStateMachine: status transitions, approval gating, cancellation
- WorkspaceLockManager: durable one-deployment-per-project lock
- CommandRunner: runs one shell command and streams its output
- WorkflowExecutor: runs a workflow's commands in sequence
- BackgroundExecutor: one asyncio task per running deployment
- DeploymentRecoveryService: startup recovery and housekeeping
"""

from .state_machine import (
    DeploymentAction,
    DeploymentStateMachine,
    DeploymentTransition,
    TERMINAL_STATES,
    TRANSITIONS,
    initial_status,
    next_status,
)

from .workspace_locking import (
    LockResult,
    WorkspaceLockManager,
    get_lock_manager,
    reset_lock_manager,
)

from .command_runner import (
    CommandRunner,
    ExitResult,
    OutputChunk,
)

from .workflow_executor import (
    BackgroundExecutor,
    ExecutionResult,
    WorkflowExecutor,
    get_background_executor,
    reset_background_executor,
)

from .recovery import (
    DeploymentRecoveryService,
    RecoveryReport,
    get_recovery_service,
)

__all__ = [
    "DeploymentAction",
    "DeploymentStateMachine",
    "DeploymentTransition",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "initial_status",
    "next_status",
    "LockResult",
    "WorkspaceLockManager",
    "get_lock_manager",
    "reset_lock_manager",
    "CommandRunner",
    "ExitResult",
    "OutputChunk",
    "BackgroundExecutor",
    "ExecutionResult",
    "WorkflowExecutor",
    "get_background_executor",
    "reset_background_executor",
    "DeploymentRecoveryService",
    "RecoveryReport",
    "get_recovery_service",
]
