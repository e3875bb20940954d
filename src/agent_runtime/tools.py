# tools.py
# Command kinds and the executors behind them.
#
# Every draft is classified once by the leading word of `run`. Shell commands
# go to the execution runtime; the other kinds are handled in-process and race
# the cancellation token. Every executor returns a CommandResult, never raises
# for tool-level failures.

import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path

from agent_runtime import safety
from agent_runtime.cancellation import Canceled, CancellationToken, race
from agent_runtime.execution import CommandExecutionRuntime
from agent_runtime.models import CommandDraft, CommandResult

logger = logging.getLogger(__name__)

READ_LIMIT_BYTES = 256 * 1024
BROWSE_USER_AGENT = "agent-runtime/0.1"

Executor = Callable[[CommandDraft], Awaitable[CommandResult]]


class CommandKind(str, Enum):
    RUN = "run"
    EDIT = "edit"
    REPLACE = "replace"
    BROWSE = "browse"
    READ = "read"
    APPLY_PATCH = "apply_patch"


_KIND_BY_WORD: dict[str, CommandKind] = {
    "read": CommandKind.READ,
    "browse": CommandKind.BROWSE,
    "edit": CommandKind.EDIT,
    "replace": CommandKind.REPLACE,
    "apply_patch": CommandKind.APPLY_PATCH,
}


def classify_command(draft: CommandDraft | None) -> CommandKind:
    if draft is None:
        return CommandKind.RUN
    run = draft.normalized_run
    if not run:
        return CommandKind.RUN
    return _KIND_BY_WORD.get(run.split(None, 1)[0].lower(), CommandKind.RUN)


def _arguments(draft: CommandDraft) -> list[str]:
    tokens = safety.shell_split(draft.normalized_run)
    return tokens[1:]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


# ---------------------------------------------------------------------------
# Built-in executors
# ---------------------------------------------------------------------------


async def read_file(draft: CommandDraft) -> CommandResult:
    """`read <path>`: return at most READ_LIMIT_BYTES of a text file."""
    started = time.monotonic()
    args = _arguments(draft)
    if not args:
        return CommandResult(stderr="read: no path provided.", exit_code=1)

    path = Path(args[0]).expanduser()
    if draft.cwd and not path.is_absolute():
        path = Path(draft.cwd) / path

    try:
        with open(path, "rb") as fh:
            data = fh.read(READ_LIMIT_BYTES + 1)
    except OSError as exc:
        return CommandResult(stderr=f"read: {exc}", exit_code=1, runtime_ms=_elapsed_ms(started))

    stderr = ""
    if len(data) > READ_LIMIT_BYTES:
        data = data[:READ_LIMIT_BYTES]
        stderr = f"read: output limited to the first {READ_LIMIT_BYTES} bytes of {path}."
    return CommandResult(
        stdout=data.decode("utf-8", errors="replace"),
        stderr=stderr,
        exit_code=0,
        runtime_ms=_elapsed_ms(started),
    )


async def browse_url(draft: CommandDraft) -> CommandResult:
    """`browse <url>`: HTTP GET, body on stdout."""
    import httpx

    started = time.monotonic()
    args = _arguments(draft)
    if not args:
        return CommandResult(stderr="browse: no URL provided.", exit_code=1)

    url = args[0]
    try:
        async with httpx.AsyncClient(follow_redirects=True, timeout=draft.timeout_sec,
                                     headers={"User-Agent": BROWSE_USER_AGENT}) as client:
            response = await client.get(url)
    except httpx.TimeoutException:
        return CommandResult(stderr=f"browse: timed out fetching {url}", exit_code=None,
                             killed=True, runtime_ms=_elapsed_ms(started))
    except httpx.HTTPError as exc:
        return CommandResult(stderr=f"browse: {exc}", exit_code=None, runtime_ms=_elapsed_ms(started))

    ok = response.is_success
    logger.debug("GET %s -> %d (%d bytes)", url, response.status_code, len(response.content))
    return CommandResult(
        stdout=response.text,
        stderr="" if ok else f"GET {url} → {response.status_code} {response.reason_phrase}",
        exit_code=0 if ok else 1,
        runtime_ms=_elapsed_ms(started),
    )


def unsupported(kind: CommandKind) -> Executor:
    async def _executor(draft: CommandDraft) -> CommandResult:
        return CommandResult(stderr=f"{kind.value}: no executor is configured for this command kind.",
                             exit_code=1)
    return _executor


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """
    Routes a draft to the executor for its kind.

    Edit, replace and apply_patch executors are injected; without one those
    kinds return an "unsupported" result.
    """

    def __init__(self, runtime: CommandExecutionRuntime,
                 edit: Executor | None = None,
                 replace: Executor | None = None,
                 apply_patch: Executor | None = None,
                 read: Executor = read_file,
                 browse: Executor = browse_url) -> None:
        self.runtime = runtime
        self.edit = edit or unsupported(CommandKind.EDIT)
        self.replace = replace or unsupported(CommandKind.REPLACE)
        self.apply_patch = apply_patch or unsupported(CommandKind.APPLY_PATCH)
        self.read = read
        self.browse = browse

    async def dispatch(self, draft: CommandDraft,
                       token: CancellationToken | None = None) -> CommandResult:
        kind = classify_command(draft)
        logger.debug("dispatching %s command: %s", kind.value, draft.normalized_run)
        match kind:
            case CommandKind.RUN:
                return await self.runtime.run_draft(draft, token=token)
            case CommandKind.READ:
                executor = self.read
            case CommandKind.BROWSE:
                executor = self.browse
            case CommandKind.EDIT:
                executor = self.edit
            case CommandKind.REPLACE:
                executor = self.replace
            case CommandKind.APPLY_PATCH:
                executor = self.apply_patch

        started = time.monotonic()
        result = await race(executor(draft), token)
        if isinstance(result, Canceled):
            logger.info("%s command canceled: %s", kind.value, result.payload)
            return CommandResult(
                stderr=f"Command was canceled: {result.payload}",
                exit_code=None,
                killed=True,
                runtime_ms=_elapsed_ms(started),
            )
        return result
