# Test data factories for creating model instances

from .base import BaseFactory, generate_branch_name, generate_uuid, persist
from .models import (
    ApprovalFactory,
    DeploymentFactory,
    ProjectFactory,
    ProjectMemberFactory,
    ProjectSetup,
    UserFactory,
    WorkflowCommandFactory,
    WorkflowFactory,
    WorkspaceLockFactory,
    add_member,
    create_project_setup,
)
from .api import (
    approval_decision_payload,
    deployment_create_payload,
    user_headers,
)

__all__ = [
    "BaseFactory",
    "generate_branch_name",
    "generate_uuid",
    "persist",
    "ApprovalFactory",
    "DeploymentFactory",
    "ProjectFactory",
    "ProjectMemberFactory",
    "ProjectSetup",
    "UserFactory",
    "WorkflowCommandFactory",
    "WorkflowFactory",
    "WorkspaceLockFactory",
    "add_member",
    "create_project_setup",
    "approval_decision_payload",
    "deployment_create_payload",
    "user_headers",
]
