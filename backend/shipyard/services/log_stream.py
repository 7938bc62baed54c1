"""
Live deployment log feed.

Observers poll the persisted log with a character cursor and only ever
receive the suffix past it. The publisher never writes and holds no lock, so
any number of observers can follow a deployment without slowing the executor
down.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import AsyncGenerator, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from shipyard import database
from shipyard.config import get_settings
from shipyard.models import Deployment
from shipyard.services.execution.state_machine import is_terminal

logger = logging.getLogger(__name__)

CONNECTED = "connected"
LOGS = "logs"
HEARTBEAT = "heartbeat"
COMPLETE = "complete"
ERROR = "error"


@dataclass
class LogEvent:
    """One record of the feed. id is the log cursor, set on logs events."""
    type: str
    data: dict = field(default_factory=dict)
    id: Optional[str] = None

    def to_sse(self) -> dict:
        event = {
            "event": self.type,
            "data": json.dumps({"type": self.type, **self.data}),
        }
        if self.id is not None:
            event["id"] = self.id
        return event


class LogStreamPublisher:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        poll_interval: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory or database.async_session
        self.poll_interval = settings.log_poll_interval if poll_interval is None else poll_interval
        self.heartbeat_interval = (
            settings.log_heartbeat_interval if heartbeat_interval is None else heartbeat_interval
        )

    async def _read(self, deployment_id: str, cursor: int) -> Optional[tuple[int, str, str]]:
        """Return (log length, text past cursor, status), or None if missing."""
        logs = func.coalesce(Deployment.logs, "")
        async with self.session_factory() as db:
            result = await db.execute(
                select(
                    func.length(logs),
                    func.substr(logs, cursor + 1),
                    Deployment.status,
                ).where(Deployment.id == deployment_id)
            )
            row = result.one_or_none()
        if row is None:
            return None
        length, suffix, status = row
        return length or 0, suffix or "", status

    async def stream(self, deployment_id: str, offset: int = 0) -> AsyncGenerator[LogEvent, None]:
        """
        Follow a deployment's log from offset until it reaches a terminal status
        and the log has stopped growing.

        Yields connected first, then logs/heartbeat records, and finally
        complete (or error when the deployment does not exist).
        """
        cursor = max(offset, 0)
        yield LogEvent(CONNECTED, {"offset": cursor})

        loop = asyncio.get_running_loop()
        last_beat = loop.time()
        terminal_seen = False

        while True:
            try:
                snapshot = await self._read(deployment_id, cursor)
            except Exception as e:
                logger.warning(f"Log read failed for deployment {deployment_id}: {e}")
                yield LogEvent(ERROR, {"message": f"Failed to read logs: {e}"})
                await asyncio.sleep(self.poll_interval)
                continue

            if snapshot is None:
                yield LogEvent(ERROR, {"message": "Deployment not found"})
                return

            length, suffix, status = snapshot
            if cursor > length:
                # Offset past the end, nothing to resend
                cursor = length
            elif suffix:
                cursor += len(suffix)
                yield LogEvent(LOGS, {"data": suffix}, id=str(cursor))

            if is_terminal(status):
                # A cancelled run may still append its trailer after the status
                # flips, so wait for a read past the terminal one that adds nothing
                if terminal_seen and not suffix:
                    yield LogEvent(COMPLETE, {"status": status})
                    return
                terminal_seen = True

            now = loop.time()
            if now - last_beat >= self.heartbeat_interval:
                last_beat = now
                yield LogEvent(HEARTBEAT)

            await asyncio.sleep(self.poll_interval)


_publisher: Optional[LogStreamPublisher] = None


def get_log_stream_publisher() -> LogStreamPublisher:
    global _publisher
    if _publisher is None:
        _publisher = LogStreamPublisher()
    return _publisher
