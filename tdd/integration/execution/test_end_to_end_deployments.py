"""
End-to-end deployment scenarios against real shell commands.

Each scenario goes through the service (create, approve, execute, cancel),
the background executor and the database, and checks the final record,
the log transcript and the workspace lock.
"""
import asyncio

from shipyard.models import DeploymentStatus, ProjectRole
from shipyard.services.errors import ConflictError
from shared.assertions import assert_lock_absent, fetch_deployment
from shared.factories import add_member, create_project_setup
from shared.waiting import wait_for_log


class TestDeploymentScenarios:

    async def test_failing_command_stops_workflow(self, db_session, session_factory, deployment_service, background, workspace):
        setup = await create_project_setup(
            db_session, str(workspace), commands=["echo hello", "exit 1", "echo never"]
        )
        deployment = await deployment_service.create_deployment(
            db_session, setup.user, setup.project.id, setup.workflow.id
        )
        await deployment_service.execute(db_session, setup.user, deployment.id)
        await background.wait(deployment.id, timeout=10)

        stored = await fetch_deployment(session_factory, deployment.id)
        assert stored.status == DeploymentStatus.FAILED.value
        assert "exit code 1" in stored.error_message
        assert "hello\n" in stored.logs
        assert "[FAILED] Command exited with code 1" in stored.logs
        assert "[CMD] echo never" not in stored.logs
        assert stored.completed_at is not None
        assert stored.duration is not None
        await assert_lock_absent(session_factory, setup.project.id)

    async def test_working_directory_and_environment(self, db_session, session_factory, deployment_service, background, workspace):
        (workspace / "app").mkdir()
        setup = await create_project_setup(
            db_session,
            str(workspace),
            commands=[
                "cd app",
                "pwd",
                "echo deploying $PROJECT_NAME at $DEPLOYMENT_BRANCH",
                "echo warn >&2",
            ],
        )
        deployment = await deployment_service.create_deployment(
            db_session, setup.user, setup.project.id, setup.workflow.id, branch="release/7"
        )
        await deployment_service.execute(db_session, setup.user, deployment.id)
        await background.wait(deployment.id, timeout=10)

        stored = await fetch_deployment(session_factory, deployment.id)
        assert stored.status == DeploymentStatus.SUCCESS.value
        assert f"{workspace / 'app'}\n" in stored.logs
        assert f"deploying {setup.project.name} at release/7" in stored.logs
        assert "[ERR] warn" in stored.logs
        assert "[SUCCESS] Deployment completed" in stored.logs

    async def test_concurrent_triggers_one_runs(self, db_session, session_factory, deployment_service, background, workspace):
        setup = await create_project_setup(db_session, str(workspace), commands=["sleep 0.5", "echo done"])
        first = await deployment_service.create_deployment(db_session, setup.user, setup.project.id, setup.workflow.id)
        second = await deployment_service.create_deployment(db_session, setup.user, setup.project.id, setup.workflow.id)

        async def trigger(deployment_id):
            async with session_factory() as session:
                try:
                    await deployment_service.execute(session, setup.user, deployment_id)
                    return deployment_id
                except ConflictError:
                    return None

        winners = [w for w in await asyncio.gather(trigger(first.id), trigger(second.id)) if w]
        assert len(winners) == 1
        await background.wait(timeout=10)

        statuses = {
            d: (await fetch_deployment(session_factory, d)).status for d in (first.id, second.id)
        }
        loser = second.id if winners[0] == first.id else first.id
        assert statuses[winners[0]] == DeploymentStatus.SUCCESS.value
        assert statuses[loser] == DeploymentStatus.PENDING.value
        await assert_lock_absent(session_factory, setup.project.id)

    async def test_lock_freed_for_next_deployment(self, db_session, session_factory, deployment_service, background, workspace):
        setup = await create_project_setup(db_session, str(workspace), commands=["echo run"])

        for _ in range(2):
            deployment = await deployment_service.create_deployment(
                db_session, setup.user, setup.project.id, setup.workflow.id
            )
            await deployment_service.execute(db_session, setup.user, deployment.id)
            await background.wait(deployment.id, timeout=10)
            stored = await fetch_deployment(session_factory, deployment.id)
            assert stored.status == DeploymentStatus.SUCCESS.value

    async def test_approval_then_cancel_mid_run(self, db_session, session_factory, deployment_service, background, workspace):
        setup = await create_project_setup(
            db_session, str(workspace), commands=["echo started", "sleep 30"], require_approval=True
        )
        owner = await add_member(db_session, setup.project, ProjectRole.OWNER)
        deployment = await deployment_service.create_deployment(
            db_session, setup.user, setup.project.id, setup.workflow.id
        )
        assert deployment.status == DeploymentStatus.WAITING_APPROVAL.value

        await deployment_service.approve(db_session, owner, deployment.id)
        await wait_for_log(session_factory, deployment.id, "[CMD] sleep 30")
        await deployment_service.cancel(db_session, owner, deployment.id)
        await asyncio.wait_for(background.wait(deployment.id), timeout=5)

        stored = await fetch_deployment(session_factory, deployment.id)
        assert stored.status == DeploymentStatus.CANCELLED.value
        assert "started\n" in stored.logs
        await assert_lock_absent(session_factory, setup.project.id)

    async def test_timeout_fails_deployment(self, db_session, session_factory, deployment_service, executor, background, workspace):
        executor.command_timeout = 0.3
        setup = await create_project_setup(db_session, str(workspace), commands=["sleep 5"])
        deployment = await deployment_service.create_deployment(
            db_session, setup.user, setup.project.id, setup.workflow.id
        )
        await deployment_service.execute(db_session, setup.user, deployment.id)
        await asyncio.wait_for(background.wait(deployment.id), timeout=5)

        stored = await fetch_deployment(session_factory, deployment.id)
        assert stored.status == DeploymentStatus.FAILED.value
        assert "[FAILED] Command timed out after 0.3s" in stored.logs
        await assert_lock_absent(session_factory, setup.project.id)
