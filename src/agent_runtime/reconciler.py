# reconciler.py
# Folds streamed partial responses and the final response into stable
# snapshots, emitting events only when something observable changed.
#
# Streaming fragments are merged positionally: step i of a fragment merges
# field by field onto step i of the snapshot. Field presence is explicit
# (pydantic's model_fields_set), so a field missing from a fragment never
# erases what an earlier fragment delivered. Only an explicit `plan: null`
# clears the streaming snapshot.
#
# Planning lifecycle per model turn:
#   first change → planning/start, later changes → planning/update,
#   final response or plan clear → planning/finish (once).

import json
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict

from agent_runtime import events
from agent_runtime.events import EventEmitter
from agent_runtime.models import PlanResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Fragments
# ---------------------------------------------------------------------------


class CommandFragment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reason: str | None = None
    shell: str | None = None
    run: str | None = None
    cwd: str | None = None
    timeout_sec: float | None = None
    filter_regex: str | None = None
    tail_lines: float | None = None
    max_bytes: float | None = None


class StepFragment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    title: str | None = None
    status: str | None = None
    waitingForId: list[str] | None = None
    command: CommandFragment | None = None
    observation: dict[str, Any] | None = None
    priority: float | str | None = None

    def is_empty(self) -> bool:
        return not self.model_fields_set


_COMMAND_TYPES: dict[str, tuple[type, ...]] = {
    "reason": (str,), "shell": (str,), "run": (str,), "cwd": (str,), "filter_regex": (str,),
    "timeout_sec": (int, float), "tail_lines": (int, float), "max_bytes": (int, float),
}


def _command_fields(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value for key, value in raw.items()
        if key in _COMMAND_TYPES and isinstance(value, _COMMAND_TYPES[key]) and not isinstance(value, bool)
    }


def _step_fields(raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only well-typed fields; anything else counts as absent."""
    fields: dict[str, Any] = {}
    if isinstance(raw.get("id"), (str, int)) and not isinstance(raw.get("id"), bool):
        fields["id"] = str(raw["id"])
    for key in ("title", "status"):
        if isinstance(raw.get(key), str):
            fields[key] = raw[key]
    if isinstance(raw.get("waitingForId"), list):
        fields["waitingForId"] = [str(item) for item in raw["waitingForId"] if isinstance(item, (str, int))]
    if "command" in raw:
        if raw["command"] is None:
            fields["command"] = None
        elif isinstance(raw["command"], dict):
            fields["command"] = _command_fields(raw["command"])
    if isinstance(raw.get("observation"), dict):
        fields["observation"] = raw["observation"]
    if isinstance(raw.get("priority"), (int, float, str)) and not isinstance(raw.get("priority"), bool):
        fields["priority"] = raw["priority"]
    return fields


def fragment_from_partial(raw: dict[str, Any]) -> StepFragment:
    return StepFragment.model_validate(_step_fields(raw))


def merge_fragment(existing: StepFragment | None, incoming: StepFragment) -> StepFragment:
    """Overlay the present fields of `incoming` onto `existing`."""
    data = existing.model_dump(exclude_unset=True) if existing is not None else {}
    for name in incoming.model_fields_set:
        value = getattr(incoming, name)
        if name == "command" and value is not None and isinstance(data.get("command"), dict):
            data["command"] = {**data["command"], **value.model_dump(exclude_unset=True)}
        elif isinstance(value, BaseModel):
            data[name] = value.model_dump(exclude_unset=True)
        else:
            data[name] = value
    return StepFragment.model_validate(data)


def snapshot_of(steps: list[StepFragment]) -> list[dict[str, Any]]:
    return [step.model_dump(exclude_unset=True) for step in steps]


def signature_of(snapshot: list[dict[str, Any]]) -> str:
    return json.dumps(snapshot, default=str)


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


@dataclass
class EmissionSummary:
    message_emitted: bool = False
    plan_emitted: bool = False

    @property
    def noop(self) -> bool:
        return not (self.message_emitted or self.plan_emitted)


class StructuredResponseReconciler:
    """
    Reconciles one model turn at a time.

    Example:
        reconciler = StructuredResponseReconciler(emitter)
        reconciler.handle_stream_partial({"plan": [{"id": "1"}]})
        reconciler.handle_final_response(response)
    """

    def __init__(self, emitter: EventEmitter | None = None) -> None:
        self._emit = emitter.emit if emitter is not None else None

        self.streaming_plan: list[StepFragment] = []
        self.final_plan: list[dict[str, Any]] = []

        self._planning_active = False
        self._last_planning_signature: str | None = None
        self._last_plan_signature: str | None = None
        self._last_message_signature: str | None = None

    @property
    def planning_active(self) -> bool:
        return self._planning_active

    def _dispatch(self, event: dict[str, Any]) -> None:
        if self._emit is not None:
            self._emit(event)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def apply_message_update(self, message: Any) -> bool:
        if not isinstance(message, str):
            return False
        trimmed = message.strip()
        if not trimmed or trimmed == self._last_message_signature:
            return False
        self._last_message_signature = trimmed
        self._dispatch(events.assistant_message(trimmed))
        return True

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def handle_stream_partial(self, partial: Any) -> EmissionSummary:
        summary = EmissionSummary()
        if not isinstance(partial, dict):
            return summary

        if "message" in partial:
            summary.message_emitted = self.apply_message_update(partial["message"])

        if "plan" not in partial:
            return summary

        incoming = partial["plan"]
        if incoming is None:
            self._clear_streaming()
            return summary
        if not isinstance(incoming, list):
            return summary

        merged = list(self.streaming_plan)
        for index, raw in enumerate(incoming):
            if not isinstance(raw, dict):
                continue
            fragment = fragment_from_partial(raw)
            existing = merged[index] if index < len(merged) else None
            step = merge_fragment(existing, fragment)
            if index < len(merged):
                merged[index] = step
            elif not step.is_empty():
                merged.append(step)

        self.streaming_plan = merged
        snapshot = snapshot_of(merged)
        signature = signature_of(snapshot)
        if signature == self._last_planning_signature or not snapshot:
            return summary

        self._last_planning_signature = signature
        state = "update" if self._planning_active else "start"
        self._planning_active = True
        self._dispatch(events.planning(state, snapshot))
        summary.plan_emitted = True
        return summary

    def _clear_streaming(self) -> None:
        was_active = self._planning_active
        self.streaming_plan = []
        self._last_planning_signature = None
        self._planning_active = False
        if was_active:
            self._dispatch(events.planning("finish", None))

    # ------------------------------------------------------------------
    # Final response
    # ------------------------------------------------------------------

    def handle_final_response(self, response: PlanResponse | dict[str, Any]) -> EmissionSummary:
        if isinstance(response, dict):
            response = PlanResponse.model_validate(response)

        summary = EmissionSummary()
        summary.message_emitted = self.apply_message_update(response.message)

        snapshot = [step.model_dump(mode="json", exclude_none=True) for step in response.plan]
        signature = signature_of(snapshot)
        self.final_plan = snapshot

        if signature != self._last_plan_signature:
            self._last_plan_signature = signature
            self._dispatch(events.plan(snapshot))
            summary.plan_emitted = True

        if self._planning_active:
            self._dispatch(events.planning("finish", snapshot))
        self._planning_active = False
        self.streaming_plan = []
        self._last_planning_signature = None
        return summary

    def emit_plan(self, snapshot: list[dict[str, Any]]) -> bool:
        """Emit a `plan` event for a locally updated plan, deduplicated by signature."""
        signature = signature_of(snapshot)
        if signature == self._last_plan_signature:
            return False
        self._last_plan_signature = signature
        self.final_plan = snapshot
        self._dispatch(events.plan(snapshot))
        return True

    def reset_turn(self) -> None:
        """Forget streaming state and the message signature before a new model turn."""
        if self._planning_active:
            self._dispatch(events.planning("finish", None))
        self._planning_active = False
        self.streaming_plan = []
        self._last_planning_signature = None
        self._last_message_signature = None
