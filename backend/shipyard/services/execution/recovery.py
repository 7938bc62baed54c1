"""
Deployment Recovery.

Handles what a dead process leaves behind:
- Backend restarts -> RUNNING/APPROVED deployments fail as interrupted, their locks are released
- Crash between status change and lock release -> orphaned locks are swept
- Approval requests nobody decided on -> expired, deployment cancelled

The database is the source of truth; running recovery twice is harmless.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipyard import database
from shipyard.config import get_settings
from shipyard.models import Approval, ApprovalStatus, Deployment, DeploymentStatus
from shipyard.services.execution.state_machine import DeploymentAction, next_status
from shipyard.services.execution.workspace_locking import WorkspaceLockManager, get_lock_manager

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Deployment interrupted by a server restart"


@dataclass
class RecoveryReport:
    """What a recovery pass changed."""
    failed_deployments: list[str] = field(default_factory=list)
    released_locks: list[str] = field(default_factory=list)
    expired_approvals: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.failed_deployments or self.released_locks or self.expired_approvals)


class DeploymentRecoveryService:
    """
    Startup recovery and periodic housekeeping.

    Usage:
        recovery = DeploymentRecoveryService()
        await recovery.recover_on_startup(db)
        task = recovery.start_maintenance_loop()
    """

    def __init__(
        self,
        lock_manager: Optional[WorkspaceLockManager] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.lock_manager = lock_manager or get_lock_manager()
        self.session_factory = session_factory or database.async_session
        self._maintenance_task: Optional[asyncio.Task] = None

    async def recover_on_startup(self, db: AsyncSession) -> RecoveryReport:
        """
        Fail deployments that were active when the previous process died.

        Must run before the background executor accepts work, otherwise a
        freshly scheduled deployment would be mistaken for an orphan.
        """
        report = RecoveryReport()
        now = datetime.utcnow()

        result = await db.execute(
            select(Deployment).where(
                Deployment.status.in_([
                    DeploymentStatus.RUNNING.value,
                    DeploymentStatus.APPROVED.value,
                ])
            )
        )
        for deployment in result.scalars().all():
            deployment.status = next_status(deployment.status, DeploymentAction.FAIL).value
            deployment.error_message = INTERRUPTED_MESSAGE
            deployment.logs = (deployment.logs or "") + f"\n[ERROR] {INTERRUPTED_MESSAGE}\n"
            deployment.completed_at = now
            if deployment.started_at is not None:
                deployment.duration = max(int((now - deployment.started_at).total_seconds()), 0)
            if await self.lock_manager.release(db, deployment.project_id, deployment.id):
                report.released_locks.append(deployment.project_id)
            report.failed_deployments.append(deployment.id)
            logger.warning(f"Marked interrupted deployment {deployment.id} as FAILED")

        await db.commit()

        orphaned = await self.lock_manager.release_orphaned(db)
        report.released_locks.extend(lock.project_id for lock in orphaned)

        if report.changed:
            logger.info(
                f"Startup recovery: {len(report.failed_deployments)} deployment(s) failed, "
                f"{len(report.released_locks)} lock(s) released"
            )
        return report

    async def expire_approvals(self, db: AsyncSession, now: Optional[datetime] = None) -> list[str]:
        """Expire pending approvals past their window and cancel their deployments."""
        now = now or datetime.utcnow()
        result = await db.execute(
            select(Approval, Deployment)
            .join(Deployment, Approval.deployment_id == Deployment.id)
            .where(
                Approval.status == ApprovalStatus.PENDING.value,
                Approval.expires_at <= now,
            )
        )

        expired = []
        for approval, deployment in result.all():
            approval.status = ApprovalStatus.EXPIRED.value
            approval.decided_at = now
            if deployment.status == DeploymentStatus.WAITING_APPROVAL.value:
                deployment.status = next_status(deployment.status, DeploymentAction.EXPIRE).value
                deployment.completed_at = now
                deployment.error_message = "Approval request expired"
            expired.append(deployment.id)
            logger.info(f"Approval for deployment {deployment.id} expired")

        if expired:
            await db.commit()
        return expired

    async def run_maintenance(self, db: AsyncSession) -> RecoveryReport:
        """One housekeeping pass: expire approvals, sweep orphaned locks."""
        report = RecoveryReport()
        report.expired_approvals = await self.expire_approvals(db)
        orphaned = await self.lock_manager.release_orphaned(db)
        report.released_locks = [lock.project_id for lock in orphaned]
        return report

    def start_maintenance_loop(self, interval: Optional[float] = None) -> asyncio.Task:
        interval = interval or get_settings().maintenance_interval_seconds
        if self._maintenance_task is None or self._maintenance_task.done():
            self._maintenance_task = asyncio.create_task(self._maintenance_loop(interval))
        return self._maintenance_task

    async def stop_maintenance_loop(self) -> None:
        if self._maintenance_task is None:
            return
        self._maintenance_task.cancel()
        try:
            await self._maintenance_task
        except asyncio.CancelledError:
            pass
        self._maintenance_task = None

    async def _maintenance_loop(self, interval: float) -> None:
        logger.info(f"Maintenance loop started (every {interval:g}s)")
        while True:
            await asyncio.sleep(interval)
            try:
                async with self.session_factory() as db:
                    await self.run_maintenance(db)
            except Exception:
                logger.exception("Maintenance pass failed")


# Singleton instance
_recovery_service: Optional[DeploymentRecoveryService] = None


def get_recovery_service() -> DeploymentRecoveryService:
    """Get the DeploymentRecoveryService singleton instance."""
    global _recovery_service
    if _recovery_service is None:
        _recovery_service = DeploymentRecoveryService()
    return _recovery_service
