from fastapi import WebSocket
from typing import Any
import json
import logging

logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self):
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message_type: str, payload: Any):
        message = json.dumps({"type": message_type, "payload": payload}, default=str)
        disconnected = []
        for connection in self.active_connections:
            try:
                await connection.send_text(message)
            except Exception:
                disconnected.append(connection)

        for conn in disconnected:
            logger.debug("Dropping closed websocket connection")
            self.disconnect(conn)

    async def send_deployment_status(self, deployment_data: dict):
        await self.broadcast("deployment_status", deployment_data)


def deployment_to_ws_dict(deployment) -> dict:
    return {
        "id": deployment.id,
        "project_id": deployment.project_id,
        "workflow_id": deployment.workflow_id,
        "status": deployment.status,
        "error_message": deployment.error_message,
        "duration": deployment.duration,
    }


manager = ConnectionManager()
