# run.py
# Entry point. Config and wiring only: no logic lives here.
#
# Any OpenAI-compatible endpoint works; set AGENT_BASE_URL to point the
# client somewhere other than api.openai.com.

import argparse
import asyncio
import logging
import signal
import sys

from rich.logging import RichHandler

from agent_runtime import display
from agent_runtime.approval import ApprovalManager, load_allowlist_config
from agent_runtime.cancellation import CancellationRegistry, CancellationToken
from agent_runtime.client import ModelClient
from agent_runtime.config import RuntimeConfig, load_config
from agent_runtime.events import EventEmitter
from agent_runtime.execution import CommandExecutionRuntime
from agent_runtime.history import HistoryCompactor, StaleEntryRedactor
from agent_runtime.orchestrator import AgentLoop, PassOrchestrator
from agent_runtime.tools import ToolDispatcher


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=display.console, rich_tracebacks=True)],
        force=True,
    )


def build_agent(config: RuntimeConfig, interactive: bool = True) -> AgentLoop:
    token = CancellationToken()
    emitter = EventEmitter()
    emitter.subscribe(display.render)

    approvals = ApprovalManager(
        config=load_allowlist_config(config.allowlist_path),
        auto_approve=config.auto_approve,
        ask_human=display.ask_human if interactive else None,
        token=token,
        on_notice=display.notice,
    )
    orchestrator = PassOrchestrator(
        client=ModelClient(config.model, api_key=config.api_key, base_url=config.base_url),
        dispatcher=ToolDispatcher(CommandExecutionRuntime(CancellationRegistry())),
        approvals=approvals,
        token=token,
        emitter=emitter,
        compactor=HistoryCompactor(max_chars=config.history_max_chars),
        redactor=StaleEntryRedactor(config.redact_after_passes),
        model=config.model,
    )
    return AgentLoop(orchestrator, max_passes=config.max_passes)


async def _run_prompt(agent: AgentLoop, prompt: str) -> None:
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGINT, agent.cancel, "user_interrupt")
    try:
        display.prompt_received(prompt)
        outcome = await agent.run(prompt)
        display.run_finished(outcome.value)
    finally:
        if sys.platform != "win32":
            loop.remove_signal_handler(signal.SIGINT)


async def _session(agent: AgentLoop, prompt: str | None) -> None:
    if prompt:
        await _run_prompt(agent, prompt)
        return

    while True:
        try:
            line = await asyncio.to_thread(display.console.input, "[bold cyan]you> [/bold cyan]")
        except (EOFError, KeyboardInterrupt):
            return
        line = line.strip()
        if line in {"exit", "quit"}:
            return
        if line:
            await _run_prompt(agent, line)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="agent-runtime", description="Plan-driven coding agent.")
    parser.add_argument("prompt", nargs="*", help="task to run; omit for an interactive session")
    parser.add_argument("--env-file", default=None, help="dotenv file to load")
    parser.add_argument("--non-interactive", action="store_true",
                        help="never prompt; commands that need approval are rejected")
    args = parser.parse_args(argv)

    config = load_config(args.env_file)
    configure_logging(config.log_level)

    agent = build_agent(config, interactive=not args.non_interactive)
    display.banner(config.model, config.auto_approve)
    try:
        asyncio.run(_session(agent, " ".join(args.prompt) or None))
    finally:
        agent.orchestrator.close()


if __name__ == "__main__":
    main()
