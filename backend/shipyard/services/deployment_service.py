"""
Deployment service.

Request-time side of the deployment lifecycle: create, approve, reject,
execute, cancel and query. Every action validates, checks roles, moves the
deployment through the state machine and commits status and lock changes in
one unit of work. Execution itself is handed to the background executor.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shipyard.config import get_settings
from shipyard.models import (
    Approval,
    ApprovalStatus,
    Deployment,
    DeploymentStatus,
    Project,
    ProjectMember,
    ProjectRole,
    User,
    Workflow,
)
from shipyard.services.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PreconditionError,
    ValidationError,
)
from shipyard.services.execution import process_registry
from shipyard.services.execution.state_machine import (
    DeploymentAction,
    DeploymentStateMachine,
    initial_status,
)
from shipyard.services.execution.workflow_executor import BackgroundExecutor, get_background_executor
from shipyard.services.execution.workspace_locking import WorkspaceLockManager, get_lock_manager
from shipyard.services.websocket import deployment_to_ws_dict, manager

logger = logging.getLogger(__name__)

DEPLOY_ROLES = {ProjectRole.OWNER, ProjectRole.ADMIN, ProjectRole.MEMBER}
APPROVER_ROLES = {ProjectRole.OWNER, ProjectRole.ADMIN}


class DeploymentService:
    def __init__(
        self,
        background: Optional[BackgroundExecutor] = None,
        lock_manager: Optional[WorkspaceLockManager] = None,
        broadcast=None,
    ):
        self.background = background or get_background_executor()
        self.lock_manager = lock_manager or get_lock_manager()
        self.broadcast = broadcast if broadcast is not None else manager.send_deployment_status

    # -------------------------------------------------------------------------
    # Lookups and permissions
    # -------------------------------------------------------------------------

    async def get_project_role(self, db: AsyncSession, project_id: str, user_id: str) -> Optional[ProjectRole]:
        result = await db.execute(
            select(ProjectMember.role).where(
                ProjectMember.project_id == project_id,
                ProjectMember.user_id == user_id,
            )
        )
        role = result.scalar_one_or_none()
        return ProjectRole(role) if role else None

    async def _require_role(
        self,
        db: AsyncSession,
        user: User,
        project_id: str,
        allowed: set[ProjectRole],
        action: str,
    ) -> Optional[ProjectRole]:
        role = await self.get_project_role(db, project_id, user.id)
        if user.is_super_admin:
            return role
        if role not in allowed:
            raise PermissionDeniedError(f"You do not have permission to {action} in this project")
        return role

    async def _load(self, db: AsyncSession, deployment_id: str) -> Deployment:
        result = await db.execute(
            select(Deployment)
            .where(Deployment.id == deployment_id)
            .options(
                selectinload(Deployment.approval),
                selectinload(Deployment.project),
                selectinload(Deployment.workflow).selectinload(Workflow.commands),
            )
            .execution_options(populate_existing=True)
        )
        deployment = result.scalar_one_or_none()
        if deployment is None:
            raise NotFoundError("Deployment not found")
        return deployment

    def _transition(self, deployment: Deployment, action: DeploymentAction, reason: Optional[str] = None) -> DeploymentStatus:
        """Check action against the deployment's status and return where it leads."""
        machine = DeploymentStateMachine(deployment.status)
        new_status = machine.apply(action, reason=reason)
        logger.debug(f"Deployment {deployment.id}: {machine.history[-1]!r}")
        return new_status

    def _validate_target(self, project: Project, workflow: Optional[Workflow]) -> None:
        if not project.workspace:
            raise ValidationError("Project has no workspace configured")
        if workflow is None or workflow.project_id != project.id:
            raise ValidationError("Workflow does not belong to this project")
        if not workflow.commands:
            raise ValidationError("Workflow has no commands")

    async def _notify(self, deployment: Deployment) -> None:
        try:
            await self.broadcast(deployment_to_ws_dict(deployment))
        except Exception:
            logger.exception(f"Status broadcast failed for deployment {deployment.id}")

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def create_deployment(
        self,
        db: AsyncSession,
        user: User,
        project_id: str,
        workflow_id: str,
        branch: Optional[str] = None,
    ) -> Deployment:
        """
        Create a deployment for (project, workflow).

        Starts PENDING, WAITING_APPROVAL (with an approval request) or, for
        auto-approved requesters on gated workflows, APPROVED with the lock
        taken and execution scheduled.
        """
        project = await db.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project not found")

        result = await db.execute(
            select(Workflow)
            .where(Workflow.id == workflow_id)
            .options(selectinload(Workflow.commands))
        )
        workflow = result.scalar_one_or_none()
        self._validate_target(project, workflow)

        role = await self._require_role(db, user, project_id, DEPLOY_ROLES, "deploy")

        holder = await self.lock_manager.get_holder(db, project_id)
        if holder is not None:
            raise ConflictError(
                f"Project workspace is locked by deployment {holder}",
                holder_deployment_id=holder,
            )

        auto_approved = user.is_super_admin or role == ProjectRole.OWNER
        status = initial_status(workflow.require_approval, auto_approved)

        deployment = Deployment(
            id=str(uuid4()),
            project_id=project_id,
            workflow_id=workflow_id,
            user_id=user.id,
            branch=branch,
            status=status.value,
            logs="",
        )
        db.add(deployment)

        if status == DeploymentStatus.WAITING_APPROVAL:
            window = timedelta(minutes=get_settings().approval_window_minutes)
            db.add(Approval(
                deployment_id=deployment.id,
                requester_id=user.id,
                status=ApprovalStatus.PENDING.value,
                expires_at=datetime.utcnow() + window,
            ))

        if status == DeploymentStatus.APPROVED:
            lock = await self.lock_manager.acquire(db, project_id, deployment.id)
            if not lock.acquired:
                raise ConflictError(
                    f"Project workspace is locked by deployment {lock.holder_deployment_id}",
                    holder_deployment_id=lock.holder_deployment_id,
                )
        else:
            await db.commit()

        deployment = await self._load(db, deployment.id)
        logger.info(f"Created deployment {deployment.id} ({deployment.status}) for project {project.name}")
        await self._notify(deployment)

        if status == DeploymentStatus.APPROVED:
            self.background.start(deployment.id)
        return deployment

    async def approve(
        self,
        db: AsyncSession,
        user: User,
        deployment_id: str,
        comment: Optional[str] = None,
    ) -> Deployment:
        deployment = await self._load(db, deployment_id)
        await self._require_role(db, user, deployment.project_id, APPROVER_ROLES, "approve deployments")

        approval = await self._pending_approval(db, deployment)
        new_status = self._transition(deployment, DeploymentAction.APPROVE, reason=f"approved by {user.username}")

        now = datetime.utcnow()
        approval.status = ApprovalStatus.APPROVED.value
        approval.approver_id = user.id
        approval.comment = comment
        approval.decided_at = now
        deployment.status = new_status.value

        lock = await self.lock_manager.acquire(db, deployment.project_id, deployment.id)
        if not lock.acquired:
            raise ConflictError(
                f"Project workspace is locked by deployment {lock.holder_deployment_id}",
                holder_deployment_id=lock.holder_deployment_id,
            )

        logger.info(f"Deployment {deployment.id} approved by {user.username}")
        await self._notify(deployment)
        self.background.start(deployment.id)
        return deployment

    async def reject(
        self,
        db: AsyncSession,
        user: User,
        deployment_id: str,
        comment: Optional[str] = None,
    ) -> Deployment:
        deployment = await self._load(db, deployment_id)
        await self._require_role(db, user, deployment.project_id, APPROVER_ROLES, "reject deployments")

        approval = await self._pending_approval(db, deployment)
        new_status = self._transition(deployment, DeploymentAction.REJECT, reason=f"rejected by {user.username}")

        now = datetime.utcnow()
        approval.status = ApprovalStatus.REJECTED.value
        approval.approver_id = user.id
        approval.comment = comment
        approval.decided_at = now
        deployment.status = new_status.value
        deployment.completed_at = now
        await db.commit()

        logger.info(f"Deployment {deployment.id} rejected by {user.username}")
        await self._notify(deployment)
        return deployment

    async def _pending_approval(self, db: AsyncSession, deployment: Deployment) -> Approval:
        """Return the deployment's undecided, unexpired approval request."""
        approval = deployment.approval
        if approval is None or approval.status != ApprovalStatus.PENDING.value:
            raise PreconditionError("Deployment has no pending approval request")

        if approval.is_expired():
            approval.status = ApprovalStatus.EXPIRED.value
            approval.decided_at = datetime.utcnow()
            deployment.status = self._transition(
                deployment, DeploymentAction.EXPIRE, reason="approval request expired"
            ).value
            deployment.completed_at = approval.decided_at
            deployment.error_message = "Approval request expired"
            await db.commit()
            await self._notify(deployment)
            raise PreconditionError("Approval request has expired")
        return approval

    async def execute(self, db: AsyncSession, user: User, deployment_id: str) -> Deployment:
        """
        Start (or retry) a deployment.

        Takes the workspace lock and moves to RUNNING in one commit, then
        schedules the run.
        """
        deployment = await self._load(db, deployment_id)
        await self._require_role(db, user, deployment.project_id, DEPLOY_ROLES, "execute deployments")

        new_status = self._transition(deployment, DeploymentAction.EXECUTE, reason=f"triggered by {user.username}")
        self._validate_target(deployment.project, deployment.workflow)

        deployment.status = new_status.value
        lock = await self.lock_manager.acquire(db, deployment.project_id, deployment.id)
        if not lock.acquired:
            raise ConflictError(
                f"Project workspace is locked by deployment {lock.holder_deployment_id}",
                holder_deployment_id=lock.holder_deployment_id,
            )

        logger.info(f"Deployment {deployment.id} triggered by {user.username}")
        await self._notify(deployment)
        self.background.start(deployment.id)
        return deployment

    async def cancel(self, db: AsyncSession, user: User, deployment_id: str) -> Deployment:
        """
        Cancel a pending, waiting or running deployment.

        Status, completion time and lock release commit together; a running
        command is then killed.
        """
        deployment = await self._load(db, deployment_id)
        if deployment.user_id != user.id:
            await self._require_role(db, user, deployment.project_id, APPROVER_ROLES, "cancel this deployment")

        current = deployment.status
        new_status = self._transition(deployment, DeploymentAction.CANCEL, reason=f"cancelled by {user.username}")

        now = datetime.utcnow()
        values = {"status": new_status.value, "completed_at": now}
        if deployment.started_at is not None:
            values["duration"] = max(int((now - deployment.started_at).total_seconds()), 0)

        # Conditional so a run that just finished is not overwritten
        result = await db.execute(
            update(Deployment)
            .where(Deployment.id == deployment.id, Deployment.status == current)
            .values(**values)
        )
        if not result.rowcount:
            await db.rollback()
            raise PreconditionError("Deployment status changed, reload and retry")

        approval = deployment.approval
        if approval is not None and approval.status == ApprovalStatus.PENDING.value:
            approval.status = ApprovalStatus.REJECTED.value
            approval.approver_id = user.id
            approval.comment = "Deployment cancelled"
            approval.decided_at = now

        await self.lock_manager.release(db, deployment.project_id, deployment.id)
        await db.commit()

        if current == DeploymentStatus.RUNNING.value:
            process_registry.terminate(deployment.id)
        deployment = await self._load(db, deployment.id)

        logger.info(f"Deployment {deployment.id} cancelled by {user.username}")
        await self._notify(deployment)
        return deployment

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_deployment(self, db: AsyncSession, user: User, deployment_id: str) -> Deployment:
        deployment = await self._load(db, deployment_id)
        if not user.is_super_admin:
            role = await self.get_project_role(db, deployment.project_id, user.id)
            if role is None:
                raise PermissionDeniedError("You are not a member of this project")
        return deployment

    async def holds_lock(self, db: AsyncSession, deployment: Deployment) -> bool:
        return await self.lock_manager.get_holder(db, deployment.project_id) == deployment.id

    async def list_deployments(
        self,
        db: AsyncSession,
        user: User,
        project_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        status: Optional[DeploymentStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Deployment], int]:
        """Filtered, newest-first page of deployments the user may see, plus the total count."""
        conditions = []
        if project_id:
            conditions.append(Deployment.project_id == project_id)
        if workflow_id:
            conditions.append(Deployment.workflow_id == workflow_id)
        if status:
            conditions.append(Deployment.status == DeploymentStatus(status).value)
        if start_date:
            conditions.append(Deployment.created_at >= start_date)
        if end_date:
            conditions.append(Deployment.created_at <= end_date)
        if not user.is_super_admin:
            member_projects = select(ProjectMember.project_id).where(ProjectMember.user_id == user.id)
            conditions.append(Deployment.project_id.in_(member_projects))

        total = (await db.execute(
            select(func.count()).select_from(Deployment).where(*conditions)
        )).scalar_one()

        result = await db.execute(
            select(Deployment)
            .where(*conditions)
            .options(selectinload(Deployment.approval))
            .order_by(Deployment.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total
