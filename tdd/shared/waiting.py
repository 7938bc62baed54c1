"""
Polling helpers for asynchronous test conditions.
"""
import asyncio
from typing import Awaitable, Callable

from shipyard.models import DeploymentStatus

from .assertions.models import fetch_deployment


async def wait_for_condition(
    condition: Callable[[], Awaitable[bool]],
    timeout: float = 10.0,
    interval: float = 0.05,
) -> bool:
    """
    Wait for an async condition to become true.

    Raises:
        TimeoutError if condition not met within timeout
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while loop.time() < deadline:
        if await condition():
            return True
        await asyncio.sleep(interval)

    raise TimeoutError(f"Condition not met within {timeout}s")


async def wait_for_status(
    session_factory,
    deployment_id: str,
    status: DeploymentStatus,
    timeout: float = 10.0,
):
    """Wait until the persisted deployment reaches status, then return it."""
    async def reached() -> bool:
        deployment = await fetch_deployment(session_factory, deployment_id)
        return deployment.status == status.value

    await wait_for_condition(reached, timeout=timeout)
    return await fetch_deployment(session_factory, deployment_id)


async def wait_for_log(session_factory, deployment_id: str, text: str, timeout: float = 10.0):
    """Wait until the persisted log contains text."""
    async def contains() -> bool:
        deployment = await fetch_deployment(session_factory, deployment_id)
        return text in (deployment.logs or "")

    await wait_for_condition(contains, timeout=timeout)
