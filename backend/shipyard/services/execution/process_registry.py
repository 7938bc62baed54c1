"""Registry of deployment_id -> running command process, for hard cancel."""
import asyncio
import logging
import os
import signal

logger = logging.getLogger(__name__)
_registry: dict[str, asyncio.subprocess.Process] = {}


def register(deployment_id: str, process: asyncio.subprocess.Process) -> None:
    _registry[deployment_id] = process
    logger.debug(f"Registered process {process.pid} for deployment {deployment_id}")


def unregister(deployment_id: str, process: asyncio.subprocess.Process | None = None) -> None:
    if process is not None and _registry.get(deployment_id) is not process:
        return
    _registry.pop(deployment_id, None)
    logger.debug(f"Unregistered deployment {deployment_id}")


def get_process(deployment_id: str) -> asyncio.subprocess.Process | None:
    return _registry.get(deployment_id)


def kill_process_group(process: asyncio.subprocess.Process) -> None:
    """SIGKILL the process and everything it spawned (it leads its own session)."""
    if process.returncode is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass


def terminate(deployment_id: str) -> bool:
    """Kill the command running for deployment_id. Returns True if one was found."""
    process = _registry.pop(deployment_id, None)
    if process is None:
        return False
    logger.info(f"Terminating process {process.pid} of deployment {deployment_id}")
    kill_process_group(process)
    return True


def clear() -> None:
    """Forget all registered processes (for testing)."""
    _registry.clear()
