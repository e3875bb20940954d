# execution.py
# Command execution runtime: one OS process per command.
#
# Lifecycle per invocation:
#   IDLE → SPAWNING → RUNNING → {COMPLETING | TIMING_OUT | CANCELING} → SETTLED
#
# stdout/stderr go straight to files in a private temp directory and are read
# back once the process has exited. Timeout and cancellation both send SIGTERM
# to the process group, then SIGKILL after a grace period.
#
# run() never raises for process-level failures. Spawn errors, timeouts and
# cancellations all come back as a CommandResult. Every path ends in
# CommandExecutionState.finalize(), which settles the result exactly once.

import asyncio
import logging
import os
import shutil
import signal
import subprocess
import tempfile
import time
from enum import Enum
from typing import IO, Any

from agent_runtime.cancellation import CancellationRegistration, CancellationRegistry, CancellationToken
from agent_runtime.models import DEFAULT_TIMEOUT_SEC, CommandDraft, CommandResult

logger = logging.getLogger(__name__)

KILL_GRACE_SEC = 1.0

TIMEOUT_MARKER = "Command timed out and was terminated."
CANCEL_MARKER = "Command was canceled."


class ExecutionPhase(str, Enum):
    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETING = "completing"
    TIMING_OUT = "timing_out"
    CANCELING = "canceling"
    SETTLED = "settled"


def _append_line(text: str, line: str) -> str:
    if not line:
        return text
    if not text:
        return line
    separator = "" if text.endswith("\n") else "\n"
    return f"{text}{separator}{line}"


def _command_label(command: str, max_len: int = 80) -> str:
    label = " ".join(command.split())
    return label if len(label) <= max_len else label[: max_len - 1] + "…"


def _read_capture(path: str | None) -> str:
    if not path:
        return ""
    try:
        with open(path, encoding="utf-8", errors="replace") as fh:
            return fh.read()
    except OSError as exc:
        logger.debug("could not read capture file %s: %s", path, exc)
        return ""


# ---------------------------------------------------------------------------
# Per-invocation state
# ---------------------------------------------------------------------------


class CommandExecutionState:
    """
    Everything one invocation owns: the child process, the cancellation
    registration, the capture files and the timers.

    finalize() is the single exit. It is guarded by `settled`, so racing
    exit / timeout / cancel callbacks resolve the future at most once.
    """

    def __init__(self, command: str, cwd: str | None, timeout_sec: float | None,
                 shell: str | None, description: str, loop: asyncio.AbstractEventLoop) -> None:
        self.command = command
        self.cwd = cwd
        self.timeout_sec = timeout_sec
        self.shell = shell
        self.description = description
        self.label = _command_label(command)

        self.loop = loop
        self.future: asyncio.Future[CommandResult] = loop.create_future()
        self.started_at = time.monotonic()
        self.phase = ExecutionPhase.IDLE

        self.process: asyncio.subprocess.Process | None = None
        self.cancellation: CancellationRegistration | None = None

        self.temp_dir: str | None = None
        self.stdout_path: str | None = None
        self.stderr_path: str | None = None
        self.stdout_file: IO[bytes] | None = None
        self.stderr_file: IO[bytes] | None = None
        self.stderr_extras = ""

        self.timeout_handle: asyncio.TimerHandle | None = None
        self.force_kill_handle: asyncio.TimerHandle | None = None
        self.watch_task: asyncio.Future | None = None

        self.killed = False
        self.canceled = False
        self.timed_out = False
        self.settled = False
        self.cancel_reason: Any = None

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def prepare_capture(self) -> None:
        self.temp_dir = tempfile.mkdtemp(prefix="agent-cmd-")
        self.stdout_path = os.path.join(self.temp_dir, "stdout")
        self.stderr_path = os.path.join(self.temp_dir, "stderr")
        self.stdout_file = open(self.stdout_path, "wb")
        self.stderr_file = open(self.stderr_path, "wb")

    def close_capture(self) -> None:
        for handle in (self.stdout_file, self.stderr_file):
            if handle is not None and not handle.closed:
                try:
                    handle.close()
                except OSError:
                    logger.debug("failed to close capture file", exc_info=True)

    def clear_timers(self) -> None:
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None
        if self.force_kill_handle is not None:
            self.force_kill_handle.cancel()
            self.force_kill_handle = None

    def finalize(self, result: CommandResult) -> bool:
        """Release every resource and settle the result. Returns False if already settled."""
        if self.settled:
            return False

        self.settled = True
        self.phase = ExecutionPhase.SETTLED
        self.clear_timers()
        self.close_capture()
        if self.temp_dir:
            shutil.rmtree(self.temp_dir, ignore_errors=True)
        if self.cancellation is not None:
            self.cancellation.unregister()
            self.cancellation = None
        if not self.future.done():
            self.future.set_result(result)

        logger.debug(
            "command settled: %r exit=%s killed=%s runtime_ms=%s",
            self.label, result.exit_code, result.killed, result.runtime_ms,
        )
        return True


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


class CommandExecutionRuntime:
    """
    Spawns, monitors and terminates shell commands.

    Example:
        runtime = CommandExecutionRuntime(registry)
        result = await runtime.run("ls -la", cwd=".", timeout_sec=10)
    """

    def __init__(self, registry: CancellationRegistry | None = None,
                 kill_grace_sec: float = KILL_GRACE_SEC) -> None:
        self.registry = registry if registry is not None else CancellationRegistry()
        self.kill_grace_sec = kill_grace_sec

    async def run_draft(self, draft: CommandDraft,
                        token: CancellationToken | None = None) -> CommandResult:
        return await self.run(
            draft.normalized_run,
            cwd=draft.cwd,
            timeout_sec=draft.timeout_sec,
            shell=draft.shell,
            token=token,
        )

    async def run(self, command: str, cwd: str | None = None,
                  timeout_sec: float | None = DEFAULT_TIMEOUT_SEC, shell: str | None = None,
                  description: str | None = None,
                  token: CancellationToken | None = None) -> CommandResult:
        if not isinstance(command, str):
            raise TypeError("run() expects a command string.")

        command = command.strip()
        loop = asyncio.get_running_loop()
        state = CommandExecutionState(
            command, cwd or None, timeout_sec, shell,
            description or f"command: {_command_label(command)}", loop,
        )

        try:
            state.prepare_capture()
        except OSError as exc:
            state.finalize(CommandResult(
                stderr=f"Failed to prepare command capture: {exc or 'unknown error'}",
                exit_code=None,
                killed=False,
                runtime_ms=0,
            ))
            return await state.future

        state.cancellation = self.registry.register(
            state.description, lambda reason: self._handle_cancel(state, reason)
        )

        if token is not None and token.triggered:
            # Canceled before start: no process is ever created.
            self._handle_cancel(state, token.payload)
        else:
            await self._spawn(state)

        try:
            return await asyncio.shield(state.future)
        except asyncio.CancelledError:
            self._handle_cancel(state, "task cancelled")
            raise

    # ------------------------------------------------------------------
    # Spawn
    # ------------------------------------------------------------------

    def _resolve_shell(self, shell: str | None) -> str | None:
        if not shell:
            return None
        return shutil.which(shell) or shell

    async def _spawn(self, state: CommandExecutionState) -> None:
        state.phase = ExecutionPhase.SPAWNING
        logger.debug("spawning %r (cwd=%s, timeout=%ss)", state.label, state.cwd, state.timeout_sec)
        try:
            state.process = await asyncio.create_subprocess_shell(
                state.command,
                stdin=subprocess.DEVNULL,
                stdout=state.stdout_file,
                stderr=state.stderr_file,
                cwd=state.cwd,
                executable=self._resolve_shell(state.shell),
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            logger.info("spawn failed for %r: %s", state.label, exc)
            state.finalize(CommandResult(
                stderr=str(exc),
                exit_code=None,
                killed=False,
                runtime_ms=state.elapsed_ms(),
            ))
            return

        if state.settled:
            return

        if state.canceled:
            # Cancel arrived while the spawn was in flight.
            state.phase = ExecutionPhase.CANCELING
            self._terminate(state)
        else:
            state.phase = ExecutionPhase.RUNNING
            self._register_timeout(state)

        state.watch_task = asyncio.ensure_future(self._watch(state))

    async def _watch(self, state: CommandExecutionState) -> None:
        process = state.process
        try:
            code = await process.wait()
        except Exception as exc:
            state.stderr_extras = _append_line(state.stderr_extras, str(exc))
            code = None
        self._complete(state, code)

    # ------------------------------------------------------------------
    # Timeout / cancel / terminate
    # ------------------------------------------------------------------

    def _register_timeout(self, state: CommandExecutionState) -> None:
        if not state.timeout_sec or state.timeout_sec <= 0:
            return
        state.timeout_handle = state.loop.call_later(state.timeout_sec, self._on_timeout, state)

    def _on_timeout(self, state: CommandExecutionState) -> None:
        state.timeout_handle = None
        if state.settled:
            return
        logger.info("command timed out after %ss: %r", state.timeout_sec, state.label)
        state.killed = True
        state.timed_out = True
        state.phase = ExecutionPhase.TIMING_OUT
        self._terminate(state)

    def _handle_cancel(self, state: CommandExecutionState, reason: Any = None) -> None:
        if state.settled or state.canceled:
            return

        state.killed = True
        state.canceled = True
        state.cancel_reason = reason
        logger.info("canceling %r (%s)", state.label, reason)

        if state.process is not None:
            state.phase = ExecutionPhase.CANCELING
            self._terminate(state)
            return

        if state.phase == ExecutionPhase.SPAWNING:
            # _spawn() terminates the process as soon as it exists.
            return

        detail = f"{CANCEL_MARKER[:-1]}: {reason}" if reason else CANCEL_MARKER
        state.finalize(CommandResult(
            stderr=detail,
            exit_code=None,
            killed=True,
            runtime_ms=state.elapsed_ms(),
        ))

    def _send_signal(self, state: CommandExecutionState, sig: int) -> None:
        process = state.process
        if process is None or process.returncode is not None:
            return
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, sig)
                return
        except ProcessLookupError:
            return
        except OSError:
            logger.debug("killpg failed for pid %s, signalling process only", process.pid, exc_info=True)
        try:
            if sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except ProcessLookupError:
            pass

    def _terminate(self, state: CommandExecutionState) -> None:
        self._send_signal(state, signal.SIGTERM)
        if state.force_kill_handle is None:
            state.force_kill_handle = state.loop.call_later(
                self.kill_grace_sec, self._force_kill, state
            )

    def _force_kill(self, state: CommandExecutionState) -> None:
        state.force_kill_handle = None
        if state.settled or state.process is None:
            return
        logger.info("escalating to SIGKILL for %r", state.label)
        self._send_signal(state, getattr(signal, "SIGKILL", signal.SIGTERM))

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _complete(self, state: CommandExecutionState, code: int | None) -> None:
        if state.settled:
            return
        if state.phase == ExecutionPhase.RUNNING:
            state.phase = ExecutionPhase.COMPLETING

        state.close_capture()
        stdout = _read_capture(state.stdout_path)
        stderr = _append_line(_read_capture(state.stderr_path), state.stderr_extras)

        if state.timed_out:
            stderr = _append_line(stderr, TIMEOUT_MARKER)
            stderr = _append_line(stderr, f"Command timed out after {state.timeout_sec}s: {state.label}")
        elif state.canceled:
            stderr = _append_line(stderr, CANCEL_MARKER)
            stderr = _append_line(stderr, f"Command canceled: {state.label}")

        # Signal deaths report a negative return code; the contract is null.
        exit_code = code if code is not None and code >= 0 else None

        state.finalize(CommandResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            killed=state.killed,
            runtime_ms=state.elapsed_ms(),
        ))
