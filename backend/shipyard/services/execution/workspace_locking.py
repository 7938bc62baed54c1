"""
Workspace Locking.

At most one deployment runs against a project's workspace at a time:
- Acquire is an atomic create-if-absent of a row keyed by project id
- A held lock is reported with its holder instead of blocking
- Release is scoped to (project id, deployment id), so a stale release
  never frees another deployment's lock

The unique constraint on workspace_locks.project_id is the enforcement
mechanism, which keeps the guarantee across API workers and restarts. An
in-process asyncio.Lock per project additionally serializes contenders within
one process so they never race on the same SQLite write.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.models import Deployment, WorkspaceLock
from shipyard.services.execution.state_machine import TERMINAL_STATES

logger = logging.getLogger(__name__)


@dataclass
class LockResult:
    """Outcome of an acquire attempt."""
    acquired: bool
    project_id: str
    holder_deployment_id: Optional[str] = None


class WorkspaceLockManager:
    """
    Durable per-project lock manager.

    Callers pass their own session. acquire() commits the caller's unit of
    work together with the lock row (so e.g. a deployment insert and its lock
    land atomically); release() only stages the delete so the caller can
    commit it with the matching status change.
    """

    def __init__(self):
        # project_id -> asyncio.Lock for in-process serialization
        self._mutexes: dict[str, asyncio.Lock] = {}

    def _get_mutex(self, project_id: str) -> asyncio.Lock:
        if project_id not in self._mutexes:
            self._mutexes[project_id] = asyncio.Lock()
        return self._mutexes[project_id]

    async def get_holder(self, db: AsyncSession, project_id: str) -> Optional[str]:
        """Return the deployment id holding the project's lock, if any."""
        result = await db.execute(
            select(WorkspaceLock.deployment_id).where(WorkspaceLock.project_id == project_id)
        )
        return result.scalar_one_or_none()

    async def acquire(
        self,
        db: AsyncSession,
        project_id: str,
        deployment_id: str,
    ) -> LockResult:
        """
        Try to take the workspace lock for a deployment.

        On success the caller's pending changes are committed along with the
        lock row. On failure they are rolled back and the holder is reported.
        Re-acquiring a lock the deployment already holds succeeds.
        """
        async with self._get_mutex(project_id):
            holder = await self.get_holder(db, project_id)
            if holder is not None and holder != deployment_id:
                await db.rollback()
                logger.info(
                    f"Workspace of project {project_id} is busy "
                    f"(held by deployment {holder}); {deployment_id} rejected"
                )
                return LockResult(acquired=False, project_id=project_id, holder_deployment_id=holder)

            if holder is None:
                db.add(WorkspaceLock(project_id=project_id, deployment_id=deployment_id))
            try:
                await db.commit()
            except IntegrityError:
                # Another process inserted first
                await db.rollback()
                holder = await self.get_holder(db, project_id)
                await db.rollback()
                logger.info(f"Lost lock race for project {project_id} to deployment {holder}")
                return LockResult(acquired=False, project_id=project_id, holder_deployment_id=holder)

            logger.info(f"Deployment {deployment_id} acquired workspace lock of project {project_id}")
            return LockResult(acquired=True, project_id=project_id, holder_deployment_id=deployment_id)

    async def release(self, db: AsyncSession, project_id: str, deployment_id: str) -> bool:
        """
        Stage deletion of the lock held by deployment_id on project_id.

        Does not commit. Returns True if a row was deleted.
        """
        result = await db.execute(
            delete(WorkspaceLock).where(
                WorkspaceLock.project_id == project_id,
                WorkspaceLock.deployment_id == deployment_id,
            )
        )
        released = (result.rowcount or 0) > 0
        if released:
            logger.info(f"Deployment {deployment_id} released workspace lock of project {project_id}")
        return released

    async def release_orphaned(self, db: AsyncSession) -> list[WorkspaceLock]:
        """
        Delete locks whose deployment is terminal or missing, then commit.

        Used by recovery sweeps after a crash between a status change and its
        lock release.
        """
        result = await db.execute(
            select(WorkspaceLock, Deployment.status)
            .join(Deployment, WorkspaceLock.deployment_id == Deployment.id, isouter=True)
        )
        orphaned = []
        terminal = {status.value for status in TERMINAL_STATES}
        for lock, status in result.all():
            if status is None or status in terminal:
                orphaned.append(lock)

        for lock in orphaned:
            await db.delete(lock)
            logger.warning(
                f"Released orphaned workspace lock of project {lock.project_id} "
                f"(deployment {lock.deployment_id})"
            )

        if orphaned:
            await db.commit()
        return orphaned


# Global singleton
_lock_manager: Optional[WorkspaceLockManager] = None


def get_lock_manager() -> WorkspaceLockManager:
    """Get or create the global lock manager."""
    global _lock_manager
    if _lock_manager is None:
        _lock_manager = WorkspaceLockManager()
    return _lock_manager


def reset_lock_manager() -> None:
    """Reset the lock manager (for testing)."""
    global _lock_manager
    _lock_manager = None
