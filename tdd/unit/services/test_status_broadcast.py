"""
Unit tests for the status broadcaster.

The websocket manager fans deployment status changes out to every connected
client and drops clients that have gone away.
"""
from datetime import datetime

from shipyard.services.websocket import ConnectionManager, deployment_to_ws_dict
from shared.factories import DeploymentFactory
from shared.mocks import MockWebSocket


class TestConnectionManager:

    async def test_connect_accepts(self):
        manager = ConnectionManager()
        ws = MockWebSocket()

        await manager.connect(ws)

        assert ws.accepted
        assert manager.active_connections == [ws]

    async def test_status_reaches_every_client(self):
        manager = ConnectionManager()
        clients = [MockWebSocket(), MockWebSocket()]
        for ws in clients:
            await manager.connect(ws)

        await manager.send_deployment_status({"id": "d1", "status": "RUNNING"})

        for ws in clients:
            assert ws.messages == [{"type": "deployment_status", "payload": {"id": "d1", "status": "RUNNING"}}]

    async def test_closed_client_dropped(self):
        manager = ConnectionManager()
        alive, closed = MockWebSocket(), MockWebSocket()
        await manager.connect(alive)
        await manager.connect(closed)
        closed.close()

        await manager.broadcast("deployment_status", {"id": "d1"})

        assert manager.active_connections == [alive]
        assert len(alive.messages) == 1

    async def test_disconnect_unknown_is_noop(self):
        manager = ConnectionManager()
        manager.disconnect(MockWebSocket())
        assert manager.active_connections == []

    async def test_non_json_values_stringified(self):
        manager = ConnectionManager()
        ws = MockWebSocket()
        await manager.connect(ws)
        when = datetime(2024, 5, 1, 12, 0, 0)

        await manager.broadcast("deployment_status", {"at": when})

        assert ws.messages[0]["payload"]["at"] == str(when)


class TestDeploymentPayload:

    def test_payload_fields(self):
        deployment = DeploymentFactory(failed=True)

        payload = deployment_to_ws_dict(deployment)

        assert payload == {
            "id": deployment.id,
            "project_id": deployment.project_id,
            "workflow_id": deployment.workflow_id,
            "status": "FAILED",
            "error_message": deployment.error_message,
            "duration": 3,
        }
