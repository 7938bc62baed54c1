"""
Workflow Executor.

Runs a deployment's workflow commands one after another against the project
workspace:
- Moves the deployment to RUNNING under the workspace lock
- Streams every command's output into the deployment log
- Stops at the first failing command
- Finalizes status and releases the lock in a single transaction

Execution errors are recorded on the deployment and never raised to the
caller that triggered the run.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from shipyard import database
from shipyard.config import get_settings
from shipyard.models import Deployment, DeploymentStatus, Workflow
from shipyard.services.errors import (
    CommandFailedError,
    CommandTimeoutError,
    ConflictError,
    PreconditionError,
    ValidationError,
    WorkspaceUnavailableError,
)
from shipyard.services.execution.command_runner import (
    STDERR,
    CommandRunner,
    ExitResult,
    OutputChunk,
)
from shipyard.services.execution.state_machine import (
    TRANSITIONS,
    DeploymentAction,
    next_status,
)
from shipyard.services.execution.workspace_locking import WorkspaceLockManager, get_lock_manager

logger = logging.getLogger(__name__)

StatusNotifier = Callable[[dict], Awaitable[None]]


@dataclass
class ExecutionResult:
    """Outcome of one workflow execution."""
    success: bool
    total_duration_seconds: float
    error_message: Optional[str] = None


@dataclass
class _DeploymentContext:
    """Plain snapshot of what the run needs, detached from the session."""
    deployment_id: str
    project_id: str
    project_name: str
    workspace: Optional[str]
    branch: str
    workflow_name: Optional[str]
    commands: list[str] = field(default_factory=list)
    status: DeploymentStatus = DeploymentStatus.PENDING
    started_at: Optional[datetime] = None


def _from_statuses(action: DeploymentAction) -> list[str]:
    return [status.value for (status, a) in TRANSITIONS if a == action]


# RUNNING is accepted because the execute trigger moves the deployment there
_STARTABLE_STATUSES = _from_statuses(DeploymentAction.EXECUTE) + [DeploymentStatus.RUNNING.value]


class DeploymentLog:
    """
    Append-only log buffer that persists itself at a bounded rate.

    The whole text is written on each flush; the stored value only ever grows.
    """

    def __init__(self, db: AsyncSession, deployment_id: str, initial: str, flush_interval: float):
        self.db = db
        self.deployment_id = deployment_id
        self.flush_interval = flush_interval
        self._parts: list[str] = [initial] if initial else []
        self._dirty = False
        self._last_flush = 0.0

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def append(self, text: str) -> None:
        if text:
            self._parts.append(text)
            self._dirty = True

    def mark_persisted(self) -> None:
        self._dirty = False
        self._last_flush = time.monotonic()

    async def flush(self, force: bool = False) -> None:
        if not self._dirty:
            return
        now = time.monotonic()
        if not force and now - self._last_flush < self.flush_interval:
            return
        await self.db.execute(
            update(Deployment)
            .where(Deployment.id == self.deployment_id)
            .values(logs=self.text)
        )
        await self.db.commit()
        self._dirty = False
        self._last_flush = now


class _Cancelled(Exception):
    """The deployment was cancelled while running."""


class WorkflowExecutor:
    """
    Executes one deployment's workflow with its own database session.

    Usage:
        executor = WorkflowExecutor()
        result = await executor.execute(deployment_id)
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        runner: Optional[CommandRunner] = None,
        lock_manager: Optional[WorkspaceLockManager] = None,
        command_timeout: Optional[float] = None,
        log_flush_interval: Optional[float] = None,
        notifier: Optional[StatusNotifier] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory or database.async_session
        self.command_timeout = command_timeout or settings.command_timeout_seconds
        self.runner = runner or CommandRunner(default_timeout=self.command_timeout)
        self.lock_manager = lock_manager or get_lock_manager()
        self.log_flush_interval = (
            settings.log_flush_interval if log_flush_interval is None else log_flush_interval
        )
        self.notifier = notifier

    async def execute(self, deployment_id: str) -> ExecutionResult:
        """
        Run the deployment's workflow to completion.

        Returns an ExecutionResult; failures are recorded on the deployment
        (status FAILED, error_message, log trailer) rather than raised.
        """
        clock_start = time.monotonic()

        async with self.session_factory() as db:
            ctx, initial_logs = await self._load(db, deployment_id)
            if ctx is None:
                logger.error(f"Deployment {deployment_id} not found, nothing to execute")
                return ExecutionResult(False, 0, "Deployment not found")

            if ctx.status == DeploymentStatus.CANCELLED:
                logger.info(f"Deployment {deployment_id} was cancelled before it started")
                return ExecutionResult(False, 0, "Deployment was cancelled")

            if ctx.status != DeploymentStatus.RUNNING:
                try:
                    next_status(ctx.status, DeploymentAction.EXECUTE)
                except PreconditionError as e:
                    logger.warning(f"Not executing deployment {deployment_id}: {e.message}")
                    return ExecutionResult(False, 0, e.message)

            log = DeploymentLog(db, deployment_id, initial_logs, self.log_flush_interval)

            try:
                self._preflight(ctx)
                if not await self._start(db, ctx, log):
                    if await self._is_cancelled(db, ctx):
                        logger.info(f"Deployment {deployment_id} was cancelled before it started")
                        return ExecutionResult(False, 0, "Deployment was cancelled")
                    logger.warning(f"Deployment {deployment_id} is no longer executable, not starting")
                    return ExecutionResult(False, 0, "Deployment is no longer executable")
                await self._run_commands(db, ctx, log)
                await self._complete(db, ctx, log)
                return ExecutionResult(True, time.monotonic() - clock_start)

            except _Cancelled:
                log.append("\n[CANCELLED] Deployment was cancelled\n")
                await log.flush(force=True)
                logger.info(f"Deployment {deployment_id} stopped after cancellation")
                return ExecutionResult(False, time.monotonic() - clock_start, "Deployment was cancelled")

            except asyncio.CancelledError:
                await self._fail(db, ctx, log, "Execution interrupted")
                raise

            except Exception as e:
                message = getattr(e, "message", None) or str(e) or type(e).__name__
                if not isinstance(e, (CommandFailedError, ValidationError, WorkspaceUnavailableError, ConflictError)):
                    logger.exception(f"Unexpected error executing deployment {deployment_id}")
                await self._fail(db, ctx, log, message)
                return ExecutionResult(False, time.monotonic() - clock_start, message)

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def _load(self, db: AsyncSession, deployment_id: str) -> tuple[Optional[_DeploymentContext], str]:
        result = await db.execute(
            select(Deployment)
            .where(Deployment.id == deployment_id)
            .options(
                selectinload(Deployment.project),
                selectinload(Deployment.workflow).selectinload(Workflow.commands),
            )
        )
        deployment = result.scalar_one_or_none()
        if deployment is None:
            return None, ""

        project = deployment.project
        workflow = deployment.workflow
        ctx = _DeploymentContext(
            deployment_id=deployment.id,
            project_id=deployment.project_id,
            project_name=project.name if project else "",
            workspace=project.workspace if project else None,
            branch=deployment.branch or (project.default_branch if project else None) or "",
            workflow_name=workflow.name if workflow else None,
            commands=[c.command for c in sorted(workflow.commands, key=lambda c: c.sequence)] if workflow else [],
            status=DeploymentStatus(deployment.status),
        )
        return ctx, deployment.logs or ""

    def _preflight(self, ctx: _DeploymentContext) -> None:
        if not ctx.workspace:
            raise ValidationError("Project has no workspace configured")
        if ctx.workflow_name is None:
            raise ValidationError("Workflow not found")
        if not ctx.commands:
            raise ValidationError("Workflow has no commands")

    async def _start(self, db: AsyncSession, ctx: _DeploymentContext, log: DeploymentLog) -> bool:
        """
        Move to RUNNING and write the header, committed together with the lock.

        Returns False without writing anything if the deployment left an
        executable status since it was loaded (e.g. a cancel got in first).
        """
        started_at = datetime.utcnow()
        header = (
            f"[{started_at.isoformat(timespec='seconds')}] Starting deployment {ctx.deployment_id}\n"
            f"Workspace: {ctx.workspace}\n"
            f"Workflow: {ctx.workflow_name} ({len(ctx.commands)} commands)\n"
        )
        result = await db.execute(
            update(Deployment)
            .where(
                Deployment.id == ctx.deployment_id,
                Deployment.status.in_(_STARTABLE_STATUSES),
            )
            .values(
                status=DeploymentStatus.RUNNING.value,
                started_at=started_at,
                completed_at=None,
                duration=None,
                error_message=None,
                logs=log.text + header,
            )
        )
        if not result.rowcount:
            await db.rollback()
            return False

        ctx.started_at = started_at
        log.append(header)
        lock = await self.lock_manager.acquire(db, ctx.project_id, ctx.deployment_id)
        if not lock.acquired:
            raise ConflictError(
                f"Workspace is locked by deployment {lock.holder_deployment_id}",
                holder_deployment_id=lock.holder_deployment_id,
            )
        ctx.status = DeploymentStatus.RUNNING
        log.mark_persisted()
        logger.info(f"Deployment {ctx.deployment_id} running {len(ctx.commands)} commands in {ctx.workspace}")
        await self._notify(ctx, DeploymentStatus.RUNNING)
        return True

    async def _run_commands(self, db: AsyncSession, ctx: _DeploymentContext, log: DeploymentLog) -> None:
        cwd = ctx.workspace
        env = {
            "DEPLOYMENT_ID": ctx.deployment_id,
            "PROJECT_NAME": ctx.project_name,
            "PROJECT_WORKSPACE": ctx.workspace,
            "DEPLOYMENT_BRANCH": ctx.branch,
        }

        for raw in ctx.commands:
            if await self._is_cancelled(db, ctx):
                raise _Cancelled()

            command = self.substitute(raw, ctx)
            log.append(f"[CMD] {command}\n")
            await log.flush(force=True)

            exit_result: Optional[ExitResult] = None
            async for item in self.runner.run(
                command,
                cwd=cwd,
                env=env,
                timeout=self.command_timeout,
                process_key=ctx.deployment_id,
            ):
                if isinstance(item, OutputChunk):
                    log.append(f"[ERR] {item.text}" if item.stream == STDERR else item.text)
                    await log.flush()
                else:
                    exit_result = item
            await log.flush(force=True)

            # A killed command after cancel is not a failure
            if await self._is_cancelled(db, ctx):
                raise _Cancelled()

            if exit_result.timed_out:
                log.append(f"[FAILED] Command timed out after {self.command_timeout:g}s\n")
                raise CommandTimeoutError(command, self.command_timeout, exit_result.exit_code)
            if exit_result.exit_code != 0:
                log.append(f"[FAILED] Command exited with code {exit_result.exit_code}\n")
                raise CommandFailedError(command, exit_result.exit_code)

            if exit_result.cwd:
                cwd = exit_result.cwd

    async def _complete(self, db: AsyncSession, ctx: _DeploymentContext, log: DeploymentLog) -> None:
        completed_at = datetime.utcnow()
        duration = self._duration(ctx, completed_at)
        log.append(f"\n[SUCCESS] Deployment completed in {duration}s\n")
        applied = await self._finalize(
            db, ctx, log,
            action=DeploymentAction.SUCCEED,
            completed_at=completed_at,
            duration=duration,
        )
        if applied:
            logger.info(f"Deployment {ctx.deployment_id} succeeded in {duration}s")

    async def _fail(self, db: AsyncSession, ctx: _DeploymentContext, log: DeploymentLog, message: str) -> None:
        """Record a failure and release the lock; never raises."""
        completed_at = datetime.utcnow()
        duration = self._duration(ctx, completed_at)
        log.append(f"\n[ERROR] {message}\n")
        logger.warning(f"Deployment {ctx.deployment_id} failed: {message}")
        try:
            await db.rollback()
            await self._finalize(
                db, ctx, log,
                action=DeploymentAction.FAIL,
                completed_at=completed_at,
                duration=duration,
                error_message=message,
            )
        except Exception:
            logger.exception(f"Could not finalize deployment {ctx.deployment_id}, retrying in a fresh session")
            try:
                async with self.session_factory() as fresh:
                    await self._finalize(
                        fresh, ctx, log,
                        action=DeploymentAction.FAIL,
                        completed_at=completed_at,
                        duration=duration,
                        error_message=message,
                    )
            except Exception:
                logger.exception(f"Lock release failed for deployment {ctx.deployment_id}")

    async def _finalize(
        self,
        db: AsyncSession,
        ctx: _DeploymentContext,
        log: DeploymentLog,
        action: DeploymentAction,
        completed_at: datetime,
        duration: int,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Apply a terminal action and release the lock in one transaction.

        The status update is conditional on the deployment still being in a
        status the action may leave, so a concurrent cancel is never
        overwritten. Returns True if the status changed.
        """
        target = TRANSITIONS[(DeploymentStatus.RUNNING, action)]
        values = {
            "status": target.value,
            "completed_at": completed_at,
            "duration": duration,
        }
        if error_message is not None:
            values["error_message"] = error_message

        result = await db.execute(
            update(Deployment)
            .where(
                Deployment.id == ctx.deployment_id,
                Deployment.status.in_(_from_statuses(action)),
            )
            .values(**values)
        )
        await db.execute(
            update(Deployment)
            .where(Deployment.id == ctx.deployment_id)
            .values(logs=log.text)
        )
        await self.lock_manager.release(db, ctx.project_id, ctx.deployment_id)
        await db.commit()

        applied = (result.rowcount or 0) > 0
        if applied:
            ctx.status = target
            await self._notify(ctx, target, duration=duration, error_message=error_message)
        else:
            logger.info(f"Deployment {ctx.deployment_id} left its active status before finalizing")
        return applied

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def substitute(command: str, ctx: _DeploymentContext) -> str:
        """Fill in ${branch} and ${projectPath}."""
        return command.replace("${branch}", ctx.branch).replace("${projectPath}", ctx.workspace or "")

    @staticmethod
    def _duration(ctx: _DeploymentContext, completed_at: datetime) -> int:
        if ctx.started_at is None:
            return 0
        return max(int((completed_at - ctx.started_at).total_seconds()), 0)

    async def _is_cancelled(self, db: AsyncSession, ctx: _DeploymentContext) -> bool:
        result = await db.execute(
            select(Deployment.status).where(Deployment.id == ctx.deployment_id)
        )
        return result.scalar_one_or_none() == DeploymentStatus.CANCELLED.value

    async def _notify(self, ctx: _DeploymentContext, status: DeploymentStatus, **extra) -> None:
        if self.notifier is None:
            return
        payload = {
            "id": ctx.deployment_id,
            "project_id": ctx.project_id,
            "status": status.value,
            **extra,
        }
        try:
            await self.notifier(payload)
        except Exception:
            logger.exception(f"Status broadcast failed for deployment {ctx.deployment_id}")


class BackgroundExecutor:
    """
    Schedules workflow executions as asyncio tasks, one per deployment.

    Usage:
        background = get_background_executor()
        background.start(deployment.id)
        ...
        await background.shutdown()
    """

    def __init__(self, executor: Optional[WorkflowExecutor] = None):
        self.executor = executor or WorkflowExecutor()
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def running(self) -> list[str]:
        return [deployment_id for deployment_id, task in self._tasks.items() if not task.done()]

    def is_running(self, deployment_id: str) -> bool:
        task = self._tasks.get(deployment_id)
        return task is not None and not task.done()

    def start(self, deployment_id: str) -> asyncio.Task:
        """Schedule execution unless this deployment already has a live task."""
        existing = self._tasks.get(deployment_id)
        if existing is not None and not existing.done():
            logger.debug(f"Deployment {deployment_id} already executing")
            return existing

        task = asyncio.create_task(self._run(deployment_id), name=f"deployment-{deployment_id}")
        self._tasks[deployment_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._tasks.get(deployment_id) is done:
                self._tasks.pop(deployment_id, None)

        task.add_done_callback(_forget)
        logger.info(f"Scheduled execution of deployment {deployment_id}")
        return task

    async def _run(self, deployment_id: str) -> ExecutionResult:
        try:
            return await self.executor.execute(deployment_id)
        except asyncio.CancelledError:
            logger.info(f"Execution of deployment {deployment_id} cancelled")
            raise
        except Exception as e:
            logger.exception(f"Executor crashed on deployment {deployment_id}")
            return ExecutionResult(False, 0, str(e))

    async def wait(self, deployment_id: Optional[str] = None, timeout: Optional[float] = None) -> None:
        """Wait for one deployment's task, or all of them."""
        if deployment_id is not None:
            tasks = [self._tasks[deployment_id]] if deployment_id in self._tasks else []
        else:
            tasks = list(self._tasks.values())
        if tasks:
            await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=timeout)

    async def shutdown(self) -> None:
        """Cancel every running execution and wait for them to record the interruption."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"Stopping {len(tasks)} running deployment(s)")
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


# Global singleton
_background_executor: Optional[BackgroundExecutor] = None


def get_background_executor() -> BackgroundExecutor:
    """Get or create the global background executor."""
    global _background_executor
    if _background_executor is None:
        from shipyard.services.websocket import manager
        _background_executor = BackgroundExecutor(
            WorkflowExecutor(notifier=manager.send_deployment_status)
        )
    return _background_executor


def reset_background_executor() -> None:
    """Reset the background executor (for testing)."""
    global _background_executor
    _background_executor = None
