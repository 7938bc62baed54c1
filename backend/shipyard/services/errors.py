"""
Error kinds raised by the deployment core.

Request-time errors (validation, conflict, permission, precondition) are
returned to the caller of the triggering action. Execution errors are
recorded on the deployment and never reach the trigger caller.
"""


class DeploymentError(Exception):
    """Base class for deployment core errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(DeploymentError):
    """Request is missing something the core needs (workspace, workflow, commands)."""

    status_code = 400


class NotFoundError(DeploymentError):
    """Referenced record does not exist."""

    status_code = 404


class PermissionDeniedError(DeploymentError):
    """Caller lacks the role required for the action."""

    status_code = 403


class PreconditionError(DeploymentError):
    """Action is not allowed from the deployment's current status."""

    status_code = 400


class ConflictError(DeploymentError):
    """The project's workspace is locked by another deployment."""

    status_code = 409

    def __init__(self, message: str, holder_deployment_id: str | None = None):
        self.holder_deployment_id = holder_deployment_id
        super().__init__(message)


class ExecutionError(DeploymentError):
    """Something went wrong while running a workflow."""


class WorkspaceUnavailableError(ExecutionError):
    """Working directory does not exist or is not a directory."""


class CommandFailedError(ExecutionError):
    """A workflow command exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int):
        self.command = command
        self.exit_code = exit_code
        super().__init__(f"Command failed with exit code {exit_code}: {command}")


class CommandTimeoutError(CommandFailedError):
    """A workflow command exceeded its timeout and was killed."""

    def __init__(self, command: str, timeout: float, exit_code: int = -1):
        self.timeout = timeout
        ExecutionError.__init__(self, f"Command timed out after {timeout:g}s: {command}")
        self.command = command
        self.exit_code = exit_code
