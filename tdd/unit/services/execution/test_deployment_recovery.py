"""
Unit tests for DeploymentRecoveryService.

Tests cover:
- Interrupted deployments fail on startup and release their locks
- Orphaned locks are swept
- Stale approval requests expire
- Recovery is idempotent
"""
import asyncio
from datetime import datetime, timedelta

from shipyard.models import Approval, ApprovalStatus, DeploymentStatus
from shipyard.services.execution.recovery import INTERRUPTED_MESSAGE, DeploymentRecoveryService
from shared.assertions import assert_lock_absent, assert_lock_held_by, fetch_deployment
from shared.factories import ApprovalFactory, DeploymentFactory, WorkspaceLockFactory, persist


def make_service(lock_manager, session_factory):
    return DeploymentRecoveryService(lock_manager=lock_manager, session_factory=session_factory)


class TestStartupRecovery:

    async def test_running_deployment_marked_failed(self, db_session, session_factory, lock_manager):
        running = DeploymentFactory(running=True, logs="[CMD] make\n")
        await persist(db_session, running, WorkspaceLockFactory(project_id=running.project_id, deployment_id=running.id))

        report = await make_service(lock_manager, session_factory).recover_on_startup(db_session)

        assert report.failed_deployments == [running.id]
        stored = await fetch_deployment(session_factory, running.id)
        assert stored.status == DeploymentStatus.FAILED.value
        assert stored.error_message == INTERRUPTED_MESSAGE
        assert stored.completed_at is not None
        assert stored.duration is not None
        assert stored.logs.startswith("[CMD] make\n")
        assert INTERRUPTED_MESSAGE in stored.logs
        await assert_lock_absent(session_factory, running.project_id)

    async def test_approved_deployment_marked_failed(self, db_session, session_factory, lock_manager):
        approved = DeploymentFactory(status=DeploymentStatus.APPROVED.value)
        await persist(db_session, approved, WorkspaceLockFactory(project_id=approved.project_id, deployment_id=approved.id))

        await make_service(lock_manager, session_factory).recover_on_startup(db_session)

        assert (await fetch_deployment(session_factory, approved.id)).status == DeploymentStatus.FAILED.value
        await assert_lock_absent(session_factory, approved.project_id)

    async def test_other_statuses_untouched(self, db_session, session_factory, lock_manager):
        pending = DeploymentFactory()
        waiting = DeploymentFactory(waiting=True)
        done = DeploymentFactory(succeeded=True)
        await persist(db_session, pending, waiting, done)

        report = await make_service(lock_manager, session_factory).recover_on_startup(db_session)

        assert report.failed_deployments == []
        assert not report.changed
        for deployment in (pending, waiting, done):
            stored = await fetch_deployment(session_factory, deployment.id)
            assert stored.status == deployment.status

    async def test_orphaned_lock_swept(self, db_session, session_factory, lock_manager):
        done = DeploymentFactory(succeeded=True)
        await persist(db_session, done, WorkspaceLockFactory(project_id=done.project_id, deployment_id=done.id))

        report = await make_service(lock_manager, session_factory).recover_on_startup(db_session)

        assert report.released_locks == [done.project_id]
        await assert_lock_absent(session_factory, done.project_id)

    async def test_recovery_is_idempotent(self, db_session, session_factory, lock_manager):
        running = DeploymentFactory(running=True)
        await persist(db_session, running)
        service = make_service(lock_manager, session_factory)

        await service.recover_on_startup(db_session)
        second = await service.recover_on_startup(db_session)

        assert not second.changed


class TestApprovalExpiry:

    async def test_expired_request_cancels_deployment(self, db_session, session_factory, lock_manager):
        waiting = DeploymentFactory(waiting=True)
        approval = ApprovalFactory(deployment_id=waiting.id, requester_id=waiting.user_id, expired=True)
        await persist(db_session, waiting, approval)

        expired = await make_service(lock_manager, session_factory).expire_approvals(db_session)

        assert expired == [waiting.id]
        stored = await fetch_deployment(session_factory, waiting.id)
        assert stored.status == DeploymentStatus.CANCELLED.value
        assert stored.error_message == "Approval request expired"
        async with session_factory() as session:
            assert (await session.get(Approval, approval.id)).status == ApprovalStatus.EXPIRED.value

    async def test_open_request_kept(self, db_session, session_factory, lock_manager):
        waiting = DeploymentFactory(waiting=True)
        await persist(db_session, waiting, ApprovalFactory(deployment_id=waiting.id))

        expired = await make_service(lock_manager, session_factory).expire_approvals(db_session)

        assert expired == []
        assert (await fetch_deployment(session_factory, waiting.id)).status == DeploymentStatus.WAITING_APPROVAL.value

    async def test_expiry_uses_given_clock(self, db_session, session_factory, lock_manager):
        waiting = DeploymentFactory(waiting=True)
        await persist(db_session, waiting, ApprovalFactory(deployment_id=waiting.id))

        later = datetime.utcnow() + timedelta(hours=1)
        expired = await make_service(lock_manager, session_factory).expire_approvals(db_session, now=later)

        assert expired == [waiting.id]


class TestMaintenanceLoop:

    async def test_run_maintenance(self, db_session, session_factory, lock_manager):
        waiting = DeploymentFactory(waiting=True)
        failed = DeploymentFactory(failed=True)
        running = DeploymentFactory(running=True)
        await persist(
            db_session,
            waiting,
            failed,
            running,
            ApprovalFactory(deployment_id=waiting.id, expired=True),
            WorkspaceLockFactory(project_id=failed.project_id, deployment_id=failed.id),
            WorkspaceLockFactory(project_id=running.project_id, deployment_id=running.id),
        )

        report = await make_service(lock_manager, session_factory).run_maintenance(db_session)

        assert report.expired_approvals == [waiting.id]
        assert report.released_locks == [failed.project_id]
        await assert_lock_held_by(session_factory, running.project_id, running.id)

    async def test_loop_runs_periodically(self, db_session, session_factory, lock_manager):
        waiting = DeploymentFactory(waiting=True)
        await persist(db_session, waiting, ApprovalFactory(deployment_id=waiting.id, expired=True))
        service = make_service(lock_manager, session_factory)

        service.start_maintenance_loop(interval=0.05)
        try:
            for _ in range(100):
                stored = await fetch_deployment(session_factory, waiting.id)
                if stored.status == DeploymentStatus.CANCELLED.value:
                    break
                await asyncio.sleep(0.05)
        finally:
            await service.stop_maintenance_loop()

        assert stored.status == DeploymentStatus.CANCELLED.value
