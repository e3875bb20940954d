import asyncio
import sys

import pytest

from agent_runtime.cancellation import CancellationRegistry, CancellationToken
from agent_runtime.execution import (
    CANCEL_MARKER,
    TIMEOUT_MARKER,
    CommandExecutionRuntime,
    CommandExecutionState,
)
from agent_runtime.models import CommandDraft, CommandResult

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups required")


def _runtime():
    return CommandExecutionRuntime(CancellationRegistry(), kill_grace_sec=0.2)

# ---------------------------------------------------------------------------
# Normal completion
# ---------------------------------------------------------------------------

def test_captures_stdout_stderr_and_exit_code():
    runtime = _runtime()
    result = asyncio.run(runtime.run("echo out; echo err 1>&2; exit 3", timeout_sec=10))
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert result.exit_code == 3
    assert result.killed is False
    assert result.runtime_ms >= 0
    assert len(runtime.registry) == 0


def test_runs_in_requested_cwd(tmp_path):
    result = asyncio.run(_runtime().run("pwd", cwd=str(tmp_path), timeout_sec=10))
    assert result.exit_code == 0
    assert result.stdout.strip().endswith(tmp_path.name)


def test_run_draft_uses_command_fields(tmp_path):
    (tmp_path / "marker.txt").write_text("x")
    draft = CommandDraft(run="ls", cwd=str(tmp_path), timeout_sec=10)
    result = asyncio.run(_runtime().run_draft(draft))
    assert "marker.txt" in result.stdout


def test_rejects_non_string_command():
    with pytest.raises(TypeError):
        asyncio.run(_runtime().run(["ls"]))

# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------

def test_timeout_kills_process():
    result = asyncio.run(_runtime().run("sleep 5", timeout_sec=1))
    assert result.killed is True
    assert result.exit_code is None
    assert "timed out" in result.stderr
    assert TIMEOUT_MARKER in result.stderr
    assert result.runtime_ms < 5000


def test_spawn_failure_is_a_result(tmp_path):
    missing = tmp_path / "does-not-exist"
    runtime = _runtime()
    result = asyncio.run(runtime.run("ls", cwd=str(missing), timeout_sec=10))
    assert result.exit_code is None
    assert result.killed is False
    assert result.stderr
    assert len(runtime.registry) == 0


def test_cancel_before_spawn_creates_no_process():
    runtime = _runtime()
    token = CancellationToken()
    token.trigger("esc")
    result = asyncio.run(runtime.run("sleep 5", timeout_sec=10, token=token))
    assert result.killed is True
    assert result.exit_code is None
    assert result.stderr == "Command was canceled: esc"
    assert result.runtime_ms < 1000
    assert len(runtime.registry) == 0


def test_cancel_while_running_terminates_process():
    runtime = _runtime()

    async def scenario():
        asyncio.get_running_loop().call_later(0.3, runtime.registry.cancel, "esc")
        return await runtime.run("sleep 5", timeout_sec=10)

    result = asyncio.run(scenario())
    assert result.killed is True
    assert result.exit_code is None
    assert CANCEL_MARKER in result.stderr
    assert "Command canceled: sleep 5" in result.stderr
    assert result.runtime_ms < 5000


def test_token_linked_to_registry_cancels_running_command():
    runtime = _runtime()
    token = CancellationToken()
    token.subscribe(runtime.registry.cancel)

    async def scenario():
        asyncio.get_running_loop().call_later(0.3, token.trigger, "esc")
        return await runtime.run("sleep 5", timeout_sec=10, token=token)

    result = asyncio.run(scenario())
    assert result.killed is True
    assert CANCEL_MARKER in result.stderr

# ---------------------------------------------------------------------------
# finalize()
# ---------------------------------------------------------------------------

def test_finalize_is_idempotent():
    async def scenario():
        loop = asyncio.get_running_loop()
        state = CommandExecutionState("true", None, 10, None, "test", loop)
        state.prepare_capture()
        first = state.finalize(CommandResult(stdout="close", exit_code=0))
        second = state.finalize(CommandResult(stderr="timeout", killed=True))
        return first, second, await state.future, state

    first, second, result, state = asyncio.run(scenario())
    assert (first, second) == (True, False)
    assert result.stdout == "close"
    assert result.killed is False
    assert state.stdout_file.closed
    assert state.settled
