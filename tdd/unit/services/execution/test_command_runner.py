"""
Unit tests for the CommandRunner.

These tests run real shell commands and verify:
- Output is streamed per stream as soon as it is read
- Exit codes, timeouts and hard kills are reported in the final ExitResult
- Built-in cd/echo are resolved without spawning a shell
"""
import asyncio
import os

import pytest

from shipyard.services.errors import WorkspaceUnavailableError
from shipyard.services.execution import process_registry
from shipyard.services.execution.command_runner import (
    STDERR,
    STDOUT,
    CommandRunner,
    ExitResult,
    OutputChunk,
    resolve_builtin,
)


async def collect(runner: CommandRunner, command: str, cwd, **kwargs):
    chunks, results = [], []
    async for item in runner.run(command, cwd=str(cwd), **kwargs):
        if isinstance(item, OutputChunk):
            chunks.append(item)
        else:
            results.append(item)
    return chunks, results


def text_of(chunks, stream):
    return "".join(c.text for c in chunks if c.stream == stream)


# -----------------------------------------------------------------------------
# Contract: Built-in commands
# -----------------------------------------------------------------------------

class TestBuiltins:

    def test_echo_is_printed_locally(self, tmp_path):
        items = resolve_builtin('echo "hello world" again', str(tmp_path))
        assert items == [OutputChunk(STDOUT, "hello world again\n"), ExitResult(exit_code=0)]

    @pytest.mark.parametrize("command", [
        "echo $HOME",
        "echo -n hello",
        "echo a | tr a b",
        "echo *.txt",
        "echo hi > out.txt",
    ])
    def test_echo_with_shell_features_is_spawned(self, tmp_path, command):
        assert resolve_builtin(command, str(tmp_path)) is None

    def test_cd_returns_new_cwd(self, tmp_path):
        (tmp_path / "app").mkdir()
        items = resolve_builtin("cd app", str(tmp_path))
        assert items == [ExitResult(exit_code=0, cwd=str(tmp_path / "app"))]

    def test_cd_absolute_and_parent(self, tmp_path):
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert resolve_builtin(f"cd {nested}", "/")[-1].cwd == str(nested)
        assert resolve_builtin("cd ..", str(nested))[-1].cwd == str(tmp_path / "a")

    def test_cd_missing_directory_fails(self, tmp_path):
        items = resolve_builtin("cd nowhere", str(tmp_path))
        assert items[0].stream == STDERR
        assert "nowhere" in items[0].text
        assert items[-1] == ExitResult(exit_code=1)
        assert not items[-1].success

    def test_cd_combined_with_other_commands_is_spawned(self, tmp_path):
        assert resolve_builtin("cd app && make", str(tmp_path)) is None

    def test_other_commands_are_spawned(self, tmp_path):
        assert resolve_builtin("make build", str(tmp_path)) is None


# -----------------------------------------------------------------------------
# Contract: Spawned commands
# -----------------------------------------------------------------------------

class TestRun:

    async def test_streams_stdout_and_stderr_separately(self, tmp_path):
        chunks, results = await collect(
            CommandRunner(), "printf out; printf err >&2; exit 3", tmp_path
        )
        assert text_of(chunks, STDOUT) == "out"
        assert text_of(chunks, STDERR) == "err"
        assert results == [ExitResult(exit_code=3)]

    async def test_success(self, tmp_path):
        chunks, results = await collect(CommandRunner(), "true", tmp_path)
        assert chunks == []
        assert results[0].success

    async def test_partial_line_emitted_before_exit(self, tmp_path):
        runner = CommandRunner()
        seen = []
        async for item in runner.run("printf partial; sleep 0.3; printf done", cwd=str(tmp_path)):
            seen.append(item)
        first = seen[0]
        assert isinstance(first, OutputChunk)
        assert first.text == "partial"
        assert isinstance(seen[-1], ExitResult)

    async def test_multibyte_output_is_decoded(self, tmp_path):
        chunks, _ = await collect(CommandRunner(), r"printf '\303\251t\303\251'", tmp_path)
        assert text_of(chunks, STDOUT) == "été"

    async def test_environment_overlay(self, tmp_path):
        chunks, _ = await collect(
            CommandRunner(), 'printf "%s" "$DEPLOYMENT_ID"', tmp_path, env={"DEPLOYMENT_ID": "d-42"}
        )
        assert text_of(chunks, STDOUT) == "d-42"

    async def test_host_environment_is_inherited(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHIPYARD_TEST_VALUE", "inherited")
        chunks, _ = await collect(CommandRunner(), 'printf "%s" "$SHIPYARD_TEST_VALUE"', tmp_path)
        assert text_of(chunks, STDOUT) == "inherited"

    async def test_runs_in_working_directory(self, tmp_path):
        chunks, _ = await collect(CommandRunner(), "pwd", tmp_path)
        assert os.path.realpath(text_of(chunks, STDOUT).strip()) == os.path.realpath(str(tmp_path))

    async def test_missing_working_directory(self, tmp_path):
        with pytest.raises(WorkspaceUnavailableError):
            await collect(CommandRunner(), "true", tmp_path / "missing")


class TestTimeoutAndKill:

    async def test_timeout_kills_process_group(self, tmp_path):
        loop = asyncio.get_running_loop()
        started = loop.time()
        _, results = await collect(CommandRunner(), "sleep 5 & sleep 5; wait", tmp_path, timeout=0.3)
        assert results[0].timed_out
        assert not results[0].success
        assert loop.time() - started < 3

    async def test_default_timeout_is_used(self, tmp_path):
        _, results = await collect(CommandRunner(default_timeout=0.2), "sleep 5", tmp_path)
        assert results[0].timed_out

    async def test_registered_while_running(self, tmp_path):
        runner = CommandRunner()
        registered = []
        async for item in runner.run("echo start; sleep 0.2", cwd=str(tmp_path), process_key="dep-1"):
            if isinstance(item, OutputChunk):
                registered.append(process_registry.get_process("dep-1") is not None)
        assert registered and all(registered)
        assert process_registry.get_process("dep-1") is None

    async def test_terminate_through_registry(self, tmp_path):
        runner = CommandRunner()

        async def consume():
            return await collect(runner, "echo go; sleep 10", tmp_path, process_key="dep-2")

        task = asyncio.create_task(consume())
        for _ in range(100):
            if process_registry.get_process("dep-2") is not None:
                break
            await asyncio.sleep(0.02)
        assert process_registry.terminate("dep-2")

        _, results = await asyncio.wait_for(task, timeout=5)
        assert results[0].exit_code != 0
        assert not results[0].timed_out

    async def test_terminate_unknown_deployment(self):
        assert process_registry.terminate("nothing-running") is False

    async def test_early_exit_kills_process(self, tmp_path):
        runner = CommandRunner()
        gen = runner.run("while true; do echo y; sleep 0.05; done", cwd=str(tmp_path), process_key="dep-3")
        async for item in gen:
            process = process_registry.get_process("dep-3")
            break
        await gen.aclose()

        assert process is not None
        await asyncio.wait_for(process.wait(), timeout=2)
        assert process.returncode is not None
        assert process_registry.get_process("dep-3") is None
