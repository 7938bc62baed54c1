"""
Unit tests for the deployment data model.

These tests verify enums, defaults and model helpers, plus the database
constraints the lifecycle relies on.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from shipyard.models import (
    ApprovalStatus,
    Deployment,
    DeploymentStatus,
    ProjectRole,
    UserRole,
    Workflow,
    WorkflowCommand,
)
from shared.assertions import assert_enum_value, assert_model_fields
from shared.factories import (
    ApprovalFactory,
    DeploymentFactory,
    ProjectMemberFactory,
    UserFactory,
    WorkflowCommandFactory,
    WorkspaceLockFactory,
    create_project_setup,
    generate_branch_name,
    persist,
)


class TestEnums:

    def test_deployment_status_values(self):
        assert {s.value for s in DeploymentStatus} == {
            "PENDING",
            "WAITING_APPROVAL",
            "APPROVED",
            "RUNNING",
            "SUCCESS",
            "FAILED",
            "CANCELLED",
            "ROLLED_BACK",
        }

    def test_string_enums(self):
        assert issubclass(DeploymentStatus, str)
        assert DeploymentStatus.RUNNING == "RUNNING"
        assert ApprovalStatus.EXPIRED == "EXPIRED"
        assert {r.value for r in ProjectRole} == {"OWNER", "ADMIN", "MEMBER", "VIEWER"}


class TestModels:

    def test_super_admin_flag(self):
        assert UserFactory(super_admin=True).is_super_admin
        assert not UserFactory().is_super_admin
        assert UserFactory().role == UserRole.USER.value

    def test_deployment_traits(self):
        deployment = DeploymentFactory(succeeded=True)
        assert_enum_value(deployment, "status", DeploymentStatus.SUCCESS)
        assert deployment.completed_at >= deployment.started_at

    def test_factory_branch_names(self):
        assert generate_branch_name("Hot Fix!") == "release/hot-fix"
        assert DeploymentFactory().branch.startswith("release/")

    def test_approval_expiry(self):
        approval = ApprovalFactory()
        assert not approval.is_expired()
        assert approval.is_expired(now=approval.expires_at)
        assert ApprovalFactory(expired=True).is_expired()

    async def test_defaults_applied_on_insert(self, db_session, workspace):
        setup = await create_project_setup(db_session, str(workspace))
        deployment = Deployment(project_id=setup.project.id, workflow_id=setup.workflow.id, user_id=setup.user.id)
        await persist(db_session, deployment)

        assert_model_fields(deployment, {"status": "PENDING", "logs": "", "error_message": None})
        assert len(deployment.id) == 36
        assert deployment.created_at is not None

    async def test_commands_ordered_by_sequence(self, db_session, session_factory, workspace):
        setup = await create_project_setup(db_session, str(workspace), commands=[])
        await persist(
            db_session,
            WorkflowCommandFactory(workflow_id=setup.workflow.id, sequence=30, command="third"),
            WorkflowCommandFactory(workflow_id=setup.workflow.id, sequence=10, command="first"),
            WorkflowCommandFactory(workflow_id=setup.workflow.id, sequence=20, command="second"),
        )

        async with session_factory() as session:
            workflow = await session.get(Workflow, setup.workflow.id)
            await session.refresh(workflow, ["commands"])
            assert [c.command for c in workflow.commands] == ["first", "second", "third"]


class TestConstraints:

    async def test_one_lock_per_project(self, db_session, workspace):
        setup = await create_project_setup(db_session, str(workspace))
        await persist(db_session, WorkspaceLockFactory(project_id=setup.project.id))

        db_session.add(WorkspaceLockFactory(project_id=setup.project.id))
        with pytest.raises(IntegrityError):
            await db_session.commit()

    async def test_unique_command_sequence(self, db_session, workspace):
        setup = await create_project_setup(db_session, str(workspace), commands=["echo a"])

        db_session.add(WorkflowCommand(workflow_id=setup.workflow.id, sequence=10, command="echo b"))
        with pytest.raises(IntegrityError):
            await db_session.commit()

    async def test_one_membership_per_user(self, db_session, workspace):
        setup = await create_project_setup(db_session, str(workspace))

        db_session.add(ProjectMemberFactory(project_id=setup.project.id, user_id=setup.user.id))
        with pytest.raises(IntegrityError):
            await db_session.commit()

    async def test_one_approval_per_deployment(self, db_session, workspace):
        setup = await create_project_setup(db_session, str(workspace), require_approval=True)
        deployment = DeploymentFactory(project_id=setup.project.id, workflow_id=setup.workflow.id, waiting=True)
        await persist(db_session, deployment, ApprovalFactory(deployment_id=deployment.id))

        db_session.add(ApprovalFactory(
            deployment_id=deployment.id, expires_at=datetime.utcnow() + timedelta(minutes=5)
        ))
        with pytest.raises(IntegrityError):
            await db_session.commit()
