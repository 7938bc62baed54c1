"""
Model factories for creating test data.

These factories create SQLAlchemy model instances for use in tests.
They can be used directly in unit tests or with database sessions
in integration tests.
"""
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

import factory
from faker import Faker

# Add backend to path for imports
backend_path = Path(__file__).parent.parent.parent.parent / "backend"
sys.path.insert(0, str(backend_path))

from shipyard.models import (
    Approval,
    ApprovalStatus,
    Deployment,
    DeploymentStatus,
    Project,
    ProjectMember,
    ProjectRole,
    User,
    UserRole,
    Workflow,
    WorkflowCommand,
    WorkspaceLock,
)

from .base import BaseFactory, generate_branch_name, generate_uuid, persist

fake = Faker()


class UserFactory(BaseFactory):
    """Factory for creating User instances."""

    class Meta:
        model = User

    id = factory.LazyFunction(generate_uuid)
    username = factory.Sequence(lambda n: f"{fake.user_name()}{n}")
    name = factory.LazyFunction(fake.name)
    role = UserRole.USER.value
    created_at = factory.LazyFunction(datetime.utcnow)

    class Params:
        super_admin = factory.Trait(role=UserRole.SUPER_ADMIN.value)


class ProjectFactory(BaseFactory):
    """Factory for creating Project instances."""

    class Meta:
        model = Project

    id = factory.LazyFunction(generate_uuid)
    name = factory.Sequence(lambda n: f"{fake.word().capitalize()}Service{n}")
    description = factory.LazyFunction(lambda: fake.sentence())
    repo_url = factory.LazyFunction(
        lambda: f"https://github.com/{fake.user_name()}/{fake.slug()}.git"
    )
    workspace = factory.LazyFunction(lambda: f"/srv/{fake.slug()}")
    default_branch = "main"
    created_at = factory.LazyFunction(datetime.utcnow)
    updated_at = factory.LazyFunction(datetime.utcnow)

    class Params:
        without_workspace = factory.Trait(workspace=None)


class ProjectMemberFactory(BaseFactory):
    """Factory for creating ProjectMember instances."""

    class Meta:
        model = ProjectMember

    id = factory.LazyFunction(generate_uuid)
    project_id = factory.LazyFunction(generate_uuid)
    user_id = factory.LazyFunction(generate_uuid)
    role = ProjectRole.MEMBER.value
    created_at = factory.LazyFunction(datetime.utcnow)


class WorkflowFactory(BaseFactory):
    """Factory for creating Workflow instances."""

    class Meta:
        model = Workflow

    id = factory.LazyFunction(generate_uuid)
    project_id = factory.LazyFunction(generate_uuid)
    name = factory.LazyFunction(lambda: f"Deploy {fake.word()}")
    description = None
    require_approval = False
    created_at = factory.LazyFunction(datetime.utcnow)
    updated_at = factory.LazyFunction(datetime.utcnow)

    class Params:
        gated = factory.Trait(require_approval=True)


class WorkflowCommandFactory(BaseFactory):
    """Factory for creating WorkflowCommand instances."""

    class Meta:
        model = WorkflowCommand

    id = factory.LazyFunction(generate_uuid)
    workflow_id = factory.LazyFunction(generate_uuid)
    sequence = factory.Sequence(lambda n: n)
    command = "echo ok"


class DeploymentFactory(BaseFactory):
    """Factory for creating Deployment instances."""

    class Meta:
        model = Deployment

    id = factory.LazyFunction(generate_uuid)
    project_id = factory.LazyFunction(generate_uuid)
    workflow_id = factory.LazyFunction(generate_uuid)
    user_id = factory.LazyFunction(generate_uuid)
    branch = factory.LazyFunction(lambda: generate_branch_name(fake.word()))
    status = DeploymentStatus.PENDING.value
    logs = ""
    error_message = None
    duration = None
    created_at = factory.LazyFunction(datetime.utcnow)
    started_at = None
    completed_at = None

    class Params:
        """Parameters for creating deployments in specific states."""

        running = factory.Trait(
            status=DeploymentStatus.RUNNING.value,
            started_at=factory.LazyFunction(datetime.utcnow),
        )
        succeeded = factory.Trait(
            status=DeploymentStatus.SUCCESS.value,
            started_at=factory.LazyFunction(lambda: datetime.utcnow() - timedelta(seconds=5)),
            completed_at=factory.LazyFunction(datetime.utcnow),
            duration=5,
        )
        failed = factory.Trait(
            status=DeploymentStatus.FAILED.value,
            error_message="Command failed with exit code 1: make deploy",
            started_at=factory.LazyFunction(lambda: datetime.utcnow() - timedelta(seconds=3)),
            completed_at=factory.LazyFunction(datetime.utcnow),
            duration=3,
        )
        waiting = factory.Trait(status=DeploymentStatus.WAITING_APPROVAL.value)


class ApprovalFactory(BaseFactory):
    """Factory for creating Approval instances."""

    class Meta:
        model = Approval

    id = factory.LazyFunction(generate_uuid)
    deployment_id = factory.LazyFunction(generate_uuid)
    requester_id = factory.LazyFunction(generate_uuid)
    approver_id = None
    status = ApprovalStatus.PENDING.value
    comment = None
    expires_at = factory.LazyFunction(lambda: datetime.utcnow() + timedelta(minutes=30))
    decided_at = None
    created_at = factory.LazyFunction(datetime.utcnow)

    class Params:
        expired = factory.Trait(
            expires_at=factory.LazyFunction(lambda: datetime.utcnow() - timedelta(minutes=1)),
        )


class WorkspaceLockFactory(BaseFactory):
    """Factory for creating WorkspaceLock instances."""

    class Meta:
        model = WorkspaceLock

    id = factory.LazyFunction(generate_uuid)
    project_id = factory.LazyFunction(generate_uuid)
    deployment_id = factory.LazyFunction(generate_uuid)
    acquired_at = factory.LazyFunction(datetime.utcnow)


# -----------------------------------------------------------------------------
# Scenario builders
# -----------------------------------------------------------------------------

@dataclass
class ProjectSetup:
    """A persisted project with a workflow and one member."""
    user: User
    project: Project
    workflow: Workflow
    member: ProjectMember | None


async def create_project_setup(
    session,
    workspace: str | None,
    commands: list[str] = ("echo ok",),
    require_approval: bool = False,
    role: ProjectRole | None = ProjectRole.MEMBER,
    super_admin: bool = False,
    default_branch: str = "main",
) -> ProjectSetup:
    """Persist user, project (with workspace), workflow with commands and membership."""
    user = UserFactory(super_admin=super_admin)
    project = ProjectFactory(workspace=workspace, default_branch=default_branch)
    workflow = WorkflowFactory(project_id=project.id, require_approval=require_approval)
    objects = [user, project, workflow]
    for index, command in enumerate(commands):
        objects.append(WorkflowCommandFactory(workflow_id=workflow.id, sequence=(index + 1) * 10, command=command))
    member = None
    if role is not None:
        member = ProjectMemberFactory(project_id=project.id, user_id=user.id, role=role.value)
        objects.append(member)
    await persist(session, *objects)
    return ProjectSetup(user=user, project=project, workflow=workflow, member=member)


async def add_member(session, project: Project, role: ProjectRole, super_admin: bool = False) -> User:
    """Persist another user with the given role on the project."""
    user = UserFactory(super_admin=super_admin)
    member = ProjectMemberFactory(project_id=project.id, user_id=user.id, role=role.value)
    await persist(session, user, member)
    return user
