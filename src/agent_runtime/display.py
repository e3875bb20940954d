# display.py
# All terminal output for the agent runtime.
#
# This module owns presentation entirely. The orchestrator never formats
# strings; it emits events and render() turns each one into rich output.
# Swap this file to change the entire UI.
#
# Colour language:
#   cyan    : scaffolding / routing events
#   blue    : model calls and responses
#   yellow  : approval prompts and warnings
#   green   : success / completed
#   red     : failures, rejections, errors
#   magenta : command execution output

import asyncio
import json
from collections.abc import Callable
from typing import Any

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.status import Status
from rich.table import Table
from rich.text import Text

console = Console()

_spinner: Status | None = None

_STATUS_COLORS = {"info": "cyan", "warn": "yellow", "error": "red", "success": "green"}
_STEP_COLORS = {"pending": "white", "completed": "green", "failed": "red", "abandoned": "dim"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Session entry
# ---------------------------------------------------------------------------


def banner(model: str, auto_approve: bool) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Agent Runtime[/bold cyan]\n"
            "[dim]Plan, approve, execute, observe[/dim]\n\n"
            f"[dim]Model        :[/dim] [white]{escape(model)}[/white]\n"
            f"[dim]Auto-approve :[/dim] [white]{'on' if auto_approve else 'off'}[/white]\n"
            "[dim]Ctrl+C cancels the current operation.[/dim]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def prompt_received(prompt: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW REQUEST[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{escape(prompt)}[/white]",
            title=_label("USER PROMPT", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def run_finished(outcome: str) -> None:
    color = {"stop": "green", "canceled": "yellow"}.get(outcome, "cyan")
    console.print()
    console.print(Rule(f"[{color}]RUN {outcome.upper()}[/{color}]", style=color))


# ---------------------------------------------------------------------------
# Event renderers
# ---------------------------------------------------------------------------


def show_status(event: dict[str, Any]) -> None:
    color = _STATUS_COLORS.get(event.get("level", "info"), "cyan")
    console.print(_label(event.get("level", "info").upper(), color), f"[{color}] {escape(event['message'])}[/{color}]")


def show_error(event: dict[str, Any]) -> None:
    body = f"[bold red]{escape(event['message'])}[/bold red]"
    details = event.get("details")
    if isinstance(details, list):
        body += "\n\n" + "\n".join(f"[white]- {escape(str(item))}[/white]" for item in details)
    elif details:
        body += f"\n\n[white]{escape(str(details))}[/white]"
    for attempt in event.get("attempts") or []:
        body += f"\n[dim]{escape(str(attempt.get('strategy')))}: {escape(_mono(str(attempt.get('error')), 100))}[/dim]"
    console.print()
    console.print(Panel(body, title=_label("ERROR", "red"), border_style="red", padding=(0, 2)))


def show_debug(event: dict[str, Any]) -> None:
    console.print(f"[dim]debug: {escape(_mono(json.dumps(event.get('payload'), default=str), 200))}[/dim]")


def show_thinking(event: dict[str, Any]) -> None:
    global _spinner
    if event.get("state") == "start":
        if _spinner is None:
            _spinner = console.status("[blue]Waiting for the model…[/blue]", spinner="dots")
            _spinner.start()
    elif _spinner is not None:
        _spinner.stop()
        _spinner = None


def show_context_usage(event: dict[str, Any]) -> None:
    usage = event.get("usage") or {}
    console.print(
        f"[dim blue]context: {usage.get('used', 0):,} / {usage.get('total', 0):,} tokens "
        f"({usage.get('percent', 0)}%)[/dim blue]"
    )


def _plan_table(steps: list[dict[str, Any]]) -> Table:
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("ID", justify="center", width=6)
    table.add_column("Status", width=10)
    table.add_column("Waits on", style="dim white", width=12)
    table.add_column("Title", style="white")
    table.add_column("Command", style="dim white")

    for step in steps:
        status = str(step.get("status") or "pending")
        color = _STEP_COLORS.get(status, "white")
        command = step.get("command") or {}
        table.add_row(
            escape(str(step.get("id", ""))),
            f"[{color}]{status}[/{color}]",
            escape(", ".join(step.get("waitingForId") or [])),
            escape(str(step.get("title", ""))),
            escape(_mono(str(command.get("run") or ""), 40)),
        )
    return table


def show_plan(event: dict[str, Any]) -> None:
    steps = event.get("plan") or []
    console.print()
    if not steps:
        console.print(_label("PLAN", "cyan"), "[cyan] No active plan.[/cyan]")
        return
    console.print(Panel(_plan_table(steps), title=_label("PLAN", "cyan"), border_style="cyan", padding=(0, 1)))


def show_planning(event: dict[str, Any]) -> None:
    state = event.get("state")
    steps = event.get("plan") or []
    if state == "finish":
        console.print("[dim blue]  planning finished[/dim blue]")
    else:
        console.print(f"[dim blue]  planning ({state}): {len(steps)} step(s)[/dim blue]")


def show_assistant_message(event: dict[str, Any]) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(event['message'])}[/white]",
            title=_label("ASSISTANT", "blue"),
            border_style="blue",
            padding=(0, 2),
        )
    )


def show_request_input(event: dict[str, Any]) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(event['prompt'])}[/white]",
            title=_label("APPROVAL REQUIRED", "yellow"),
            border_style="yellow",
            padding=(0, 2),
        )
    )


def show_command_result(event: dict[str, Any]) -> None:
    command = event.get("command") or {}
    result = event.get("result") or {}
    preview = event.get("preview") or {}

    exit_code = result.get("exit_code")
    ok = exit_code == 0
    color = "green" if ok else "red"
    header = (
        f"[bold white]$ {escape(str(command.get('run', '')))}[/bold white]\n"
        f"[{color}]exit {exit_code if exit_code is not None else 'n/a'}[/{color}]"
        f"[dim]  {result.get('runtime_ms', 0)} ms"
        f"{'  killed' if result.get('killed') else ''}[/dim]"
    )
    body = [header]
    if preview.get("stdout_preview"):
        body.append(f"\n[white]{escape(preview['stdout_preview'])}[/white]")
    if preview.get("stderr_preview"):
        body.append(f"\n[red]{escape(preview['stderr_preview'])}[/red]")

    console.print()
    console.print(
        Panel(
            "\n".join(body),
            title=_label("COMMAND", "magenta"),
            border_style="magenta",
            padding=(0, 2),
        )
    )


RENDERERS: dict[str, Callable[[dict[str, Any]], None]] = {
    "status": show_status,
    "error": show_error,
    "debug": show_debug,
    "thinking": show_thinking,
    "context-usage": show_context_usage,
    "plan": show_plan,
    "planning": show_planning,
    "assistant-message": show_assistant_message,
    "request-input": show_request_input,
    "command-result": show_command_result,
}


def render(event: dict[str, Any]) -> None:
    renderer = RENDERERS.get(event.get("type", ""))
    if renderer is not None:
        renderer(event)


def notice(level: str, message: str) -> None:
    show_status({"type": "status", "level": level, "message": message})


# ---------------------------------------------------------------------------
# Human input
# ---------------------------------------------------------------------------


async def ask_human(prompt: str) -> str | None:
    """Read one approval answer. The prompt itself was already shown by show_request_input."""
    try:
        return await asyncio.to_thread(console.input, "[bold yellow]> [/bold yellow]")
    except EOFError:
        # End of input counts as a rejection.
        return "3"
