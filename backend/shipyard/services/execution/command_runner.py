"""
CommandRunner - runs one workflow command in a workspace.

Output is streamed as it arrives:
- stdout and stderr are read by independent tasks
- every chunk is yielded immediately, tagged with its stream
- a terminal ExitResult closes the stream

A few commands are resolved without spawning a shell, through a table of
recognized prefixes:
- `cd <dir>` moves the working directory of the *next* command
- `echo <args>` is printed locally
"""

import asyncio
import codecs
import logging
import os
import re
import shlex
from dataclasses import dataclass
from typing import AsyncGenerator, Callable, Optional, Union

from shipyard.services.errors import WorkspaceUnavailableError
from shipyard.services.execution import process_registry

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300
READ_SIZE = 4096

STDOUT = "stdout"
STDERR = "stderr"

# Characters that mean the shell would do more than print/chdir
SHELL_OPERATORS = set("|&;<>$`\\(){}*?[]~\n")


@dataclass
class OutputChunk:
    """A piece of command output as soon as it was read."""
    stream: str  # "stdout" or "stderr"
    text: str


@dataclass
class ExitResult:
    """
    Final outcome of one command.

    cwd is set when the command changed the working directory for the
    commands that follow it.
    """
    exit_code: int
    timed_out: bool = False
    cwd: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


RunnerItem = Union[OutputChunk, ExitResult]


# -----------------------------------------------------------------------------
# Built-in commands
# -----------------------------------------------------------------------------

def _split_plain(argument: str) -> Optional[list[str]]:
    """Shell-split argument if it uses nothing but words and quotes."""
    if any(ch in SHELL_OPERATORS for ch in argument):
        return None
    try:
        return shlex.split(argument)
    except ValueError:
        return None


def _change_directory(argument: str, cwd: str) -> Optional[list[RunnerItem]]:
    raw = argument.strip()
    if raw.startswith("~"):
        raw = os.path.expanduser(raw)
    tokens = _split_plain(raw)
    if tokens is None or len(tokens) != 1:
        return None

    target = os.path.normpath(os.path.join(cwd, tokens[0]))
    if not os.path.isdir(target):
        return [
            OutputChunk(STDERR, f"cd: {tokens[0]}: No such file or directory\n"),
            ExitResult(exit_code=1),
        ]
    return [ExitResult(exit_code=0, cwd=target)]


def _echo(argument: str, cwd: str) -> Optional[list[RunnerItem]]:
    tokens = _split_plain(argument)
    if not tokens or tokens[0].startswith("-"):
        return None
    return [OutputChunk(STDOUT, " ".join(tokens) + "\n"), ExitResult(exit_code=0)]


BuiltinHandler = Callable[[str, str], Optional[list[RunnerItem]]]

BUILTIN_COMMANDS: list[tuple[re.Pattern, BuiltinHandler]] = [
    (re.compile(r"^cd\s+(?P<arg>.+)$", re.IGNORECASE | re.DOTALL), _change_directory),
    (re.compile(r"^echo\s+(?P<arg>.+)$", re.IGNORECASE | re.DOTALL), _echo),
]


def resolve_builtin(command: str, cwd: str) -> Optional[list[RunnerItem]]:
    """
    Resolve a command locally if it matches a built-in prefix.

    Returns the items the command produces, or None when it has to be
    spawned through the shell.
    """
    trimmed = command.strip()
    for pattern, handler in BUILTIN_COMMANDS:
        match = pattern.match(trimmed)
        if match:
            return handler(match.group("arg"), cwd)
    return None


# -----------------------------------------------------------------------------
# Runner
# -----------------------------------------------------------------------------

class CommandRunner:
    """
    Runs shell commands and streams their output.

    Usage:
        runner = CommandRunner()
        async for item in runner.run("make build", cwd="/srv/app", env={"X": "1"}):
            if isinstance(item, OutputChunk):
                print(item.stream, item.text)
            else:
                print("exit", item.exit_code)
    """

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.default_timeout = default_timeout

    async def run(
        self,
        command: str,
        cwd: str,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        process_key: Optional[str] = None,
    ) -> AsyncGenerator[RunnerItem, None]:
        """
        Run a command, yielding OutputChunks then one ExitResult.

        Args:
            command: Shell command text
            cwd: Working directory (must exist)
            env: Variables layered over the host environment
            timeout: Seconds before the process group is killed
            process_key: Register the process under this key for hard cancel

        Raises:
            WorkspaceUnavailableError: If cwd is not an existing directory
        """
        if not os.path.isdir(cwd):
            raise WorkspaceUnavailableError(f"Working directory does not exist: {cwd}")

        builtin = resolve_builtin(command, cwd)
        if builtin is not None:
            for item in builtin:
                yield item
            return

        timeout = self.default_timeout if timeout is None else timeout
        merged_env = {**os.environ, **(env or {})}

        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            env=merged_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        if process_key:
            process_registry.register(process_key, process)

        queue: asyncio.Queue = asyncio.Queue()
        readers = [
            asyncio.create_task(self._read_stream(process.stdout, STDOUT, queue)),
            asyncio.create_task(self._read_stream(process.stderr, STDERR, queue)),
        ]

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        open_streams = len(readers)
        timed_out = False

        try:
            while open_streams:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    timed_out = True
                    break
                try:
                    chunk = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    timed_out = True
                    break
                if chunk is None:
                    open_streams -= 1
                    continue
                yield chunk

            if timed_out:
                logger.warning(f"Command timed out after {timeout:g}s: {command}")
                process_registry.kill_process_group(process)
                exit_code = await process.wait()
            else:
                remaining = max(deadline - loop.time(), 1.0)
                try:
                    exit_code = await asyncio.wait_for(process.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    # Output closed but the process lingers
                    timed_out = True
                    process_registry.kill_process_group(process)
                    exit_code = await process.wait()

            yield ExitResult(exit_code=exit_code, timed_out=timed_out)

        finally:
            # Consumer stopped early, was cancelled, or we are done
            if process.returncode is None:
                process_registry.kill_process_group(process)
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            if process_key:
                process_registry.unregister(process_key, process)

    async def _read_stream(
        self,
        stream: asyncio.StreamReader,
        name: str,
        queue: asyncio.Queue,
    ) -> None:
        """Push decoded chunks from one pipe onto the queue, then None at EOF."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = await stream.read(READ_SIZE)
                if not data:
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        queue.put_nowait(OutputChunk(name, tail))
                    break
                text = decoder.decode(data)
                if text:
                    queue.put_nowait(OutputChunk(name, text))
        finally:
            queue.put_nowait(None)
