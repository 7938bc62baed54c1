# Cross-cutting test utilities shared across all test types

from .mocks import (
    MockWebSocket,
    ScriptedRunner,
    StatusRecorder,
    WebSocketClosed,
)

from .waiting import (
    wait_for_condition,
    wait_for_log,
    wait_for_status,
)

__all__ = [
    # Mocks
    "MockWebSocket",
    "ScriptedRunner",
    "StatusRecorder",
    "WebSocketClosed",
    # Waiting
    "wait_for_condition",
    "wait_for_log",
    "wait_for_status",
]
