# orchestrator.py
# Pass orchestration for the agent runtime.
#
# The orchestrator owns all control flow. The model only proposes plans
# through the plan tool; this module validates them, decides what runs,
# asks for approval, executes, and feeds observations back.
#
# Control flow per pass:
#   redact stale entries → compact history
#   → model completion (streamed into the reconciler)
#   → recovery ladder → schema validation → plan merge (re-checked for cycles)
#   → run every ready step (approval gate → dispatch → observation)
#   → stop, continue, or canceled
#
# All terminal output is delegated to events. Nothing is formatted here.

import json
import logging
from enum import Enum
from typing import Any

import openai

from agent_runtime import events, safety
from agent_runtime.approval import ApprovalManager, build_prompt
from agent_runtime.cancellation import CancellationToken
from agent_runtime.client import extract_tool_call
from agent_runtime.errors import (
    ApprovalRejection,
    ParseRecoveryExhausted,
    SafetyRejection,
    ValidationError,
)
from agent_runtime.events import EventEmitter
from agent_runtime.history import HistoryCompactor, StaleEntryRedactor, summarize_context_usage
from agent_runtime.models import (
    ApprovalDecision,
    CommandDraft,
    HistoryEntry,
    PlanResponse,
    PlanStep,
)
from agent_runtime.observation import ObservationBuilder
from agent_runtime.parser import parse_plan_payload_or_raise
from agent_runtime.plan import NoExecutableOutcome, PlanGraph, merge_plans
from agent_runtime.reconciler import StructuredResponseReconciler
from agent_runtime.schema import PLAN_TOOL_NAME
from agent_runtime.tools import CommandKind, ToolDispatcher, classify_command
from agent_runtime.validation import validate_plan_response, validate_plan_steps

logger = logging.getLogger(__name__)


class PassOutcome(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"
    CANCELED = "canceled"


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = f"""\
You are a coding agent working in the user's terminal.

Always answer by calling the `{PLAN_TOOL_NAME}` tool with a JSON object:

{{
  "message": "short update for the user",
  "plan": [
    {{
      "id": "1",
      "title": "what this step does",
      "status": "pending",
      "waitingForId": [],
      "command": {{"reason": "why", "shell": "bash", "run": "ls -la", "cwd": "."}}
    }}
  ]
}}

Rules:
- Each step runs at most one command. Steps run only after every id in
  waitingForId has completed.
- Commands must be single invocations: no pipes, command chaining,
  redirection, subshells or here-documents.
- Besides shell commands, `read <path>` reads a file and `browse <url>`
  fetches a web page.
- The runtime executes the plan and reports each command's output as an
  observation on the step. Revise the plan after every observation.
- When a step fails, route around it by pointing waitingForId at new steps,
  or mark it abandoned.
- When the task is finished, send an empty plan with a final message.\
"""

PLAN_REMINDER = (
    "No step in the current plan can run. Pending steps are blocked or have no "
    "command. Revise waitingForId, abandon steps that cannot proceed, or send an "
    "empty plan if the task is finished."
)

PLAN_REMINDER_LIMIT = 3


# ---------------------------------------------------------------------------
# Pass orchestrator
# ---------------------------------------------------------------------------


class PassOrchestrator:
    """
    Runs one pass at a time against shared session state.

    `client` is any object with an async
    `request_completion(history, token=..., on_partial=...)` returning a
    CompletionResult; ModelClient is the production implementation.

    Example:
        orchestrator = PassOrchestrator(client, dispatcher, approvals, token, emitter)
        outcome = await orchestrator.execute_pass(1)
    """

    def __init__(self, client: Any, dispatcher: ToolDispatcher, approvals: ApprovalManager,
                 token: CancellationToken, emitter: EventEmitter | None = None,
                 plan: PlanGraph | None = None,
                 history: list[HistoryEntry] | None = None,
                 compactor: HistoryCompactor | None = None,
                 redactor: StaleEntryRedactor | None = None,
                 observations: ObservationBuilder | None = None,
                 model: str | None = None) -> None:
        self.client = client
        self.dispatcher = dispatcher
        self.approvals = approvals
        self.token = token
        self.emitter = emitter or EventEmitter()
        self.plan = plan or PlanGraph()
        self.history: list[HistoryEntry] = history if history is not None else []
        self.compactor = compactor or HistoryCompactor()
        self.redactor = redactor or StaleEntryRedactor()
        self.observations = observations or ObservationBuilder()
        self.model = model
        self.reconciler = StructuredResponseReconciler(self.emitter)
        self._reminders = 0

        # A triggered token kills whatever command is currently registered.
        registry = dispatcher.runtime.registry
        self._unlink = token.subscribe(lambda payload: registry.cancel(payload))

    def close(self) -> None:
        self._unlink()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _append(self, entry: HistoryEntry) -> None:
        self.history.append(entry)

    def _append_observation(self, pass_index: int, observation: dict[str, Any],
                            step: PlanStep | None = None) -> None:
        payload: dict[str, Any] = {"type": "observation"}
        if step is not None:
            payload["step_id"] = step.id
        payload["observation"] = observation.get("observation_for_llm", observation)
        self._append(HistoryEntry(
            role="user",
            content=json.dumps(payload, ensure_ascii=False),
            pass_index=pass_index,
            kind="observation",
        ))

    def _emit_plan(self) -> None:
        self.reconciler.emit_plan(self.plan.snapshot())

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    async def execute_pass(self, pass_index: int) -> PassOutcome:
        self.redactor.apply(self.history, pass_index)
        if self.compactor.compact_if_needed(self.history):
            self.emitter.emit(events.status("info", "Conversation history compacted."))
        self.emitter.emit(events.context_usage(summarize_context_usage(self.history, self.model)))

        self.reconciler.reset_turn()
        self.emitter.emit(events.thinking("start"))
        try:
            result = await self.client.request_completion(
                self.history, token=self.token, on_partial=self.reconciler.handle_stream_partial,
            )
        except openai.OpenAIError as exc:
            logger.warning("model request failed: %s", exc)
            self.emitter.emit(events.error("Model request failed.", details=str(exc)))
            return PassOutcome.STOP
        finally:
            self.emitter.emit(events.thinking("stop"))

        if result.status == "canceled":
            observation = self.observations.build_cancellation(
                "user_cancel", "The model request was canceled by the user.",
                {"reason": str(result.reason) if result.reason is not None else None},
            )
            self._append_observation(pass_index, observation)
            self.emitter.emit(events.status("warn", "Operation canceled."))
            return PassOutcome.CANCELED

        tool_call = extract_tool_call(result.completion)
        raw = tool_call.arguments if tool_call is not None else (result.completion.content if result.completion else "")
        if raw.strip():
            self._append(HistoryEntry(role="assistant", content=raw, pass_index=pass_index))

        response = self._parse(pass_index, raw)
        if response is None:
            return PassOutcome.CONTINUE

        merged = merge_plans(self.plan.steps, response.plan)
        merge_errors = validate_plan_steps(merged)
        if merge_errors:
            # The revision is valid alone but closes a cycle with kept steps.
            self._report_invalid_plan(pass_index, merge_errors)
            return PassOutcome.CONTINUE
        self.plan.replace(merged)
        self.reconciler.handle_final_response(PlanResponse(message=response.message, plan=self.plan.steps))

        return await self._run_ready_steps(pass_index)

    def _parse(self, pass_index: int, raw: str) -> PlanResponse | None:
        """Recovery ladder and validation. Failures become observations for the next pass."""
        try:
            payload = parse_plan_payload_or_raise(raw)
            return validate_plan_response(payload)
        except ParseRecoveryExhausted as exc:
            attempts = [attempt.model_dump() for attempt in exc.attempts]
            self.emitter.emit(events.error(str(exc), raw=raw, attempts=attempts))
            self._append_observation(pass_index, self.observations.build_parse_failure(str(exc), attempts))
        except ValidationError as exc:
            self._report_invalid_plan(pass_index, exc.errors)
        return None

    def _report_invalid_plan(self, pass_index: int, errors: list[str]) -> None:
        self.emitter.emit(events.error("Plan response failed validation.", details=errors))
        self._append_observation(pass_index, self.observations.build_validation_failure(errors))

    async def _run_ready_steps(self, pass_index: int) -> PassOutcome:
        executed = 0
        while (step := self.plan.select_next_executable_entry()) is not None:
            outcome = await self._execute_step(pass_index, step)
            if outcome is not None:
                return outcome
            executed += 1

        if executed:
            self._reminders = 0
            return PassOutcome.CONTINUE

        if self.plan.handle_no_executable() == NoExecutableOutcome.STOP:
            self._reminders = 0
            self.emitter.emit(events.status("success", "Plan complete."))
            return PassOutcome.STOP

        self._reminders += 1
        if self._reminders > PLAN_REMINDER_LIMIT:
            self._reminders = 0
            self.emitter.emit(events.status(
                "warn", f"Plan is stalled after {PLAN_REMINDER_LIMIT} reminders; stopping.",
            ))
            return PassOutcome.STOP

        logger.info("no executable step; %d steps still open", sum(not s.is_terminal for s in self.plan.steps))
        self.emitter.emit(events.status("warn", PLAN_REMINDER))
        self._append(HistoryEntry(role="user", content=PLAN_REMINDER, pass_index=pass_index))
        return PassOutcome.CONTINUE

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    async def _execute_step(self, pass_index: int, step: PlanStep) -> PassOutcome | None:
        """Returns None to keep going, or the outcome that ends the pass."""
        command = step.command or CommandDraft()
        kind = classify_command(command)

        outcome = await self._approve(pass_index, step, command, kind)
        if outcome is not None:
            return outcome

        result = await self.dispatcher.dispatch(command, token=self.token)
        observation, preview = self.observations.build(command, result)
        self.plan.apply_command_result(step, result, observation)

        self.emitter.emit(events.command_result(
            command.model_dump(mode="json", exclude_none=True),
            result.model_dump(),
            preview,
        ))
        self._emit_plan()
        self._append_observation(pass_index, observation, step)

        if self.token.triggered:
            self.emitter.emit(events.status("warn", "Operation canceled."))
            return PassOutcome.CANCELED
        return None

    async def _approve(self, pass_index: int, step: PlanStep, command: CommandDraft,
                       kind: CommandKind) -> PassOutcome | None:
        is_shell = kind == CommandKind.RUN
        auto = self.approvals.should_auto_approve(command, check_safety=is_shell)
        if auto.approved:
            logger.info("command auto-approved (%s): %s", auto.source, command.normalized_run)
            return None

        unsafe_rules = safety.check_command(command.normalized_run) if is_shell else []
        try:
            if unsafe_rules and not self.approvals.has_human_channel:
                safety.ensure_command_safe(command.normalized_run)

            self.emitter.emit(events.request_input(
                build_prompt(command, unsafe_rules),
                {"step_id": step.id, "unsafe_rules": unsafe_rules},
            ))
            decision = await self.approvals.request_human_decision(command, unsafe_rules)
            if decision.decision == ApprovalDecision.REJECT:
                raise ApprovalRejection(decision.reason or "human_declined")
        except SafetyRejection as exc:
            observation = self.observations.build_safety_rejection(exc.command, exc.rules)
            self.emitter.emit(events.status("warn", str(exc)))
        except ApprovalRejection as exc:
            if exc.reason == "canceled":
                observation = self.observations.build_cancellation(
                    "user_cancel", "Approval was canceled by the user.",
                )
            else:
                observation = self.observations.build_rejection(
                    "Command was not approved. Propose a different approach.", exc.reason,
                )
        else:
            return None

        self.plan.attach_observation(step, observation)
        self._emit_plan()
        self._append_observation(pass_index, observation, step)
        if self.token.triggered:
            return PassOutcome.CANCELED
        return PassOutcome.CONTINUE


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


class AgentLoop:
    """
    Repeats passes until the plan is finished, the user cancels, or
    `max_passes` is reached.

    The shared token is reset before every pass so a stale trigger from the
    previous pass cannot short-circuit the next one.
    """

    def __init__(self, orchestrator: PassOrchestrator, max_passes: int = 50,
                 system_prompt: str = SYSTEM_PROMPT) -> None:
        self.orchestrator = orchestrator
        self.max_passes = max_passes
        self.system_prompt = system_prompt
        self._pass_index = 0

    @property
    def token(self) -> CancellationToken:
        return self.orchestrator.token

    async def run(self, prompt: str) -> PassOutcome:
        history = self.orchestrator.history
        if not history:
            history.append(HistoryEntry(role="system", content=self.system_prompt))
        history.append(HistoryEntry(role="user", content=prompt, pass_index=self._pass_index + 1))

        outcome = PassOutcome.CONTINUE
        for _ in range(self.max_passes):
            self._pass_index += 1
            self.token.reset()
            outcome = await self.orchestrator.execute_pass(self._pass_index)
            if outcome != PassOutcome.CONTINUE:
                break
        else:
            self.orchestrator.emitter.emit(events.status(
                "warn", f"Stopped after {self.max_passes} passes without finishing the plan.",
            ))
        return outcome

    def cancel(self, reason: Any = "user_cancel") -> None:
        logger.info("cancel requested: %s", reason)
        self.token.trigger(reason)
