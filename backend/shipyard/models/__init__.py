from shipyard.models.user import User, UserRole
from shipyard.models.project import Project, ProjectMember, ProjectRole
from shipyard.models.workflow import Workflow, WorkflowCommand
from shipyard.models.deployment import Deployment, DeploymentStatus
from shipyard.models.workspace_lock import WorkspaceLock
from shipyard.models.approval import Approval, ApprovalStatus

__all__ = [
    "User",
    "UserRole",
    "Project",
    "ProjectMember",
    "ProjectRole",
    "Workflow",
    "WorkflowCommand",
    "Deployment",
    "DeploymentStatus",
    "WorkspaceLock",
    "Approval",
    "ApprovalStatus",
]
