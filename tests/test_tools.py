import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from agent_runtime import tools
from agent_runtime.cancellation import CancellationToken
from agent_runtime.models import CommandDraft, CommandResult
from agent_runtime.tools import CommandKind, ToolDispatcher, browse_url, classify_command, read_file


def _draft(run, **kwargs):
    return CommandDraft(run=run, shell="bash", **kwargs)

# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("run,kind", [
    ("read README.md", CommandKind.READ),
    ("READ notes.txt", CommandKind.READ),
    ("browse https://example.com", CommandKind.BROWSE),
    ("edit a.py", CommandKind.EDIT),
    ("replace a.py", CommandKind.REPLACE),
    ("apply_patch fix.diff", CommandKind.APPLY_PATCH),
    ("ls -la", CommandKind.RUN),
    ("reader x", CommandKind.RUN),
    ("", CommandKind.RUN),
])
def test_classify_command(run, kind):
    assert classify_command(_draft(run)) == kind


def test_classify_missing_draft_is_run():
    assert classify_command(None) == CommandKind.RUN

# ---------------------------------------------------------------------------
# read
# ---------------------------------------------------------------------------

def test_read_file_relative_to_cwd(tmp_path):
    (tmp_path / "notes.txt").write_text("hello\n")
    result = asyncio.run(read_file(_draft("read notes.txt", cwd=str(tmp_path))))
    assert result.exit_code == 0
    assert result.stdout == "hello\n"
    assert result.stderr == ""


def test_read_file_quoted_path(tmp_path):
    target = tmp_path / "my notes.txt"
    target.write_text("spaced")
    result = asyncio.run(read_file(_draft(f"read '{target}'")))
    assert result.stdout == "spaced"


def test_read_file_missing_path():
    result = asyncio.run(read_file(_draft("read")))
    assert result.exit_code == 1
    assert result.stderr == "read: no path provided."


def test_read_file_not_found(tmp_path):
    result = asyncio.run(read_file(_draft("read missing.txt", cwd=str(tmp_path))))
    assert result.exit_code == 1
    assert result.stderr.startswith("read: ")


def test_read_file_is_limited(tmp_path, monkeypatch):
    monkeypatch.setattr(tools, "READ_LIMIT_BYTES", 4)
    (tmp_path / "big.txt").write_text("abcdefgh")
    result = asyncio.run(read_file(_draft("read big.txt", cwd=str(tmp_path))))
    assert result.stdout == "abcd"
    assert "first 4 bytes" in result.stderr
    assert result.exit_code == 0

# ---------------------------------------------------------------------------
# browse
# ---------------------------------------------------------------------------

def _mock_client(mock_cls, get):
    client = mock_cls.return_value.__aenter__.return_value
    client.get = get
    return client


@patch("httpx.AsyncClient")
def test_browse_success(mock_cls):
    response = MagicMock(is_success=True, status_code=200, content=b"<html>", text="<html>")
    client = _mock_client(mock_cls, AsyncMock(return_value=response))

    result = asyncio.run(browse_url(_draft("browse https://example.com", timeout_sec=5)))
    assert result.exit_code == 0
    assert result.stdout == "<html>"
    client.get.assert_awaited_once_with("https://example.com")
    assert mock_cls.call_args.kwargs["timeout"] == 5


@patch("httpx.AsyncClient")
def test_browse_http_error_status(mock_cls):
    response = MagicMock(is_success=False, status_code=404, reason_phrase="Not Found",
                         content=b"", text="missing")
    _mock_client(mock_cls, AsyncMock(return_value=response))

    result = asyncio.run(browse_url(_draft("browse https://example.com/x")))
    assert result.exit_code == 1
    assert "404 Not Found" in result.stderr


@patch("httpx.AsyncClient")
def test_browse_timeout_marks_killed(mock_cls):
    _mock_client(mock_cls, AsyncMock(side_effect=httpx.ReadTimeout("slow")))
    result = asyncio.run(browse_url(_draft("browse https://example.com")))
    assert result.killed is True
    assert result.exit_code is None
    assert "timed out" in result.stderr


@patch("httpx.AsyncClient")
def test_browse_transport_error(mock_cls):
    _mock_client(mock_cls, AsyncMock(side_effect=httpx.ConnectError("refused")))
    result = asyncio.run(browse_url(_draft("browse https://example.com")))
    assert result.exit_code is None
    assert result.stderr == "browse: refused"


@patch("httpx.AsyncClient")
def test_browse_without_url(mock_cls):
    result = asyncio.run(browse_url(_draft("browse")))
    assert result.exit_code == 1
    mock_cls.assert_not_called()

# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

@pytest.fixture
def runtime():
    runtime = MagicMock()
    runtime.run_draft = AsyncMock(return_value=CommandResult(stdout="ran", exit_code=0))
    return runtime


def test_dispatch_routes_shell_commands_to_runtime(runtime):
    token = MagicMock()
    draft = _draft("ls")
    result = asyncio.run(ToolDispatcher(runtime).dispatch(draft, token=token))
    assert result.stdout == "ran"
    runtime.run_draft.assert_awaited_once_with(draft, token=token)


def test_dispatch_routes_builtin_kinds(runtime):
    read = AsyncMock(return_value=CommandResult(stdout="file", exit_code=0))
    edit = AsyncMock(return_value=CommandResult(stdout="edited", exit_code=0))
    dispatcher = ToolDispatcher(runtime, edit=edit, read=read)

    assert asyncio.run(dispatcher.dispatch(_draft("read a.txt"))).stdout == "file"
    assert asyncio.run(dispatcher.dispatch(_draft("edit a.txt"))).stdout == "edited"
    runtime.run_draft.assert_not_awaited()


@pytest.mark.parametrize("run,label", [
    ("replace a.py", "replace"),
    ("apply_patch x.diff", "apply_patch"),
])
def test_unconfigured_kinds_are_unsupported(runtime, run, label):
    result = asyncio.run(ToolDispatcher(runtime).dispatch(_draft(run)))
    assert result.exit_code == 1
    assert result.stderr == f"{label}: no executor is configured for this command kind."


def test_dispatch_with_triggered_token_skips_builtin_executor(runtime):
    read = AsyncMock(return_value=CommandResult(stdout="file", exit_code=0))
    token = CancellationToken()
    token.trigger("esc")

    result = asyncio.run(ToolDispatcher(runtime, read=read).dispatch(_draft("read a.txt"), token=token))
    assert result.killed is True
    assert result.exit_code is None
    assert result.stderr == "Command was canceled: esc"
    read.assert_not_awaited()


def test_dispatch_cancels_builtin_executor_in_flight(runtime):
    started = []

    async def slow_browse(draft):
        started.append(draft.run)
        await asyncio.Event().wait()

    async def scenario():
        token = CancellationToken()
        dispatcher = ToolDispatcher(runtime, browse=slow_browse)
        pending = asyncio.ensure_future(dispatcher.dispatch(_draft("browse https://example.com"), token=token))
        while not started:
            await asyncio.sleep(0)
        token.trigger("esc")
        return await asyncio.wait_for(pending, timeout=1)

    result = asyncio.run(scenario())
    assert started == ["browse https://example.com"]
    assert result.killed is True
    assert result.stderr == "Command was canceled: esc"
