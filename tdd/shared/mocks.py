"""
Mock objects for testing.

Provides fakes for collaborators the deployment core talks to:
- MockWebSocket: records what the status broadcaster sends
- StatusRecorder: stands in for the broadcast callback
- ScriptedRunner: a CommandRunner that replays canned output
"""
import asyncio
import json
from typing import Any

from shipyard.services.execution.command_runner import ExitResult, OutputChunk


class WebSocketClosed(Exception):
    """Raised when sending on a closed mock websocket."""


class MockWebSocket:
    """
    Mock WebSocket for testing.

    Usage:
        ws = MockWebSocket()
        await manager.connect(ws)
        await manager.send_deployment_status({"id": "d1"})
        assert ws.messages[0]["type"] == "deployment_status"
    """

    def __init__(self):
        self.accepted: bool = False
        self.sent_messages: list[Any] = []
        self._closed: bool = False

    async def accept(self):
        self.accepted = True

    async def send_text(self, data: str):
        if self._closed:
            raise WebSocketClosed("WebSocket is closed")
        self.sent_messages.append(data)

    async def send_json(self, data: Any):
        await self.send_text(json.dumps(data))

    def close(self):
        self._closed = True

    @property
    def messages(self) -> list[dict]:
        return [json.loads(m) for m in self.sent_messages]


class StatusRecorder:
    """Async callable collecting broadcast payloads."""

    def __init__(self):
        self.payloads: list[dict] = []

    async def __call__(self, payload: dict) -> None:
        self.payloads.append(payload)

    def statuses(self, deployment_id: str) -> list[str]:
        return [p["status"] for p in self.payloads if p["id"] == deployment_id]


class ScriptedRunner:
    """
    CommandRunner replacement that replays a script per command.

    script maps command text to (chunks, exit_code); unknown commands exit 0
    with no output. Commands run are recorded in order.
    """

    def __init__(self, script: dict[str, tuple[list[tuple[str, str]], int]] | None = None, delay: float = 0):
        self.script = script or {}
        self.delay = delay
        self.calls: list[dict] = []

    async def run(self, command, cwd, env=None, timeout=None, process_key=None):
        self.calls.append({"command": command, "cwd": cwd, "env": env or {}, "timeout": timeout})
        chunks, exit_code = self.script.get(command, ([], 0))
        for stream, text in chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield OutputChunk(stream, text)
        yield ExitResult(exit_code=exit_code)

    @property
    def commands(self) -> list[str]:
        return [call["command"] for call in self.calls]
