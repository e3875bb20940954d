# plan.py
# Plan DAG: dependency lookup, readiness, selection and revision merging.
#
# The graph only reports truth. A step waiting on a failed or abandoned
# dependency stays blocked until the model sends a revision that points
# waitingForId somewhere else; nothing here reroutes automatically.

import logging
import math
from enum import Enum
from typing import Any

from agent_runtime.models import CommandResult, PlanStep, StepStatus

logger = logging.getLogger(__name__)


class NoExecutableOutcome(str, Enum):
    STOP = "stop"
    CONTINUE = "continue"


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def normalize_id(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def build_lookup(plan: list[PlanStep]) -> dict[str, PlanStep]:
    """Map step ids to steps. Blank ids become `index:<n>`; the first duplicate wins."""
    lookup: dict[str, PlanStep] = {}
    for index, step in enumerate(plan):
        key = normalize_id(step.id) or f"index:{index}"
        lookup.setdefault(key, step)
    return lookup


def is_blocked(step: PlanStep, plan_or_lookup: list[PlanStep] | dict[str, PlanStep]) -> bool:
    """True iff the step waits on a dependency that is missing or not completed."""
    if not step.waitingForId:
        return False

    lookup = plan_or_lookup if isinstance(plan_or_lookup, dict) else build_lookup(plan_or_lookup)
    for raw_id in step.waitingForId:
        dependency = lookup.get(normalize_id(raw_id))
        if dependency is None or dependency.status != StepStatus.COMPLETED:
            return True
    return False


def is_executable(step: PlanStep, lookup: dict[str, PlanStep]) -> bool:
    if step.status != StepStatus.PENDING:
        return False
    if step.command is None or not step.command.normalized_run:
        return False
    return not is_blocked(step, lookup)


def find_dependency_cycle(plan: list[PlanStep]) -> list[str] | None:
    """
    Return one dependency cycle as a list of ids (first id repeated at the
    end), or None. Self-dependencies are reported as `[id, id]`.
    """
    graph: dict[str, list[str]] = {}
    for index, step in enumerate(plan):
        key = normalize_id(step.id) or f"index:{index}"
        deps = [normalize_id(dep) for dep in step.waitingForId if normalize_id(dep)]
        graph.setdefault(key, deps)

    visiting: list[str] = []
    done: set[str] = set()

    def visit(node: str) -> list[str] | None:
        if node in visiting:
            return visiting[visiting.index(node):] + [node]
        if node in done or node not in graph:
            return None
        visiting.append(node)
        for dep in graph[node]:
            cycle = visit(dep)
            if cycle:
                return cycle
        visiting.pop()
        done.add(node)
        return None

    for node in graph:
        cycle = visit(node)
        if cycle:
            return cycle
    return None


def _merge_key(step: PlanStep, index: int) -> str:
    step_id = normalize_id(step.id)
    if step_id:
        return f"id:{step_id.lower()}"
    if step.title.strip():
        return f"title:{step.title.strip().lower()}"
    return f"index:{index}"


def _merge_step(existing: PlanStep, incoming: PlanStep) -> PlanStep:
    merged = existing.model_copy(deep=True)

    # Rewiring is how the model routes around failed dependencies.
    merged.waitingForId = list(incoming.waitingForId)
    if incoming.title.strip():
        merged.title = incoming.title
    if incoming.priority is not None:
        merged.priority = incoming.priority

    # Status never regresses. The model may abandon an open step, and may
    # close one that has nothing to execute.
    if incoming.is_terminal and not merged.is_terminal:
        runnable = merged.command is not None and bool(merged.command.normalized_run)
        if incoming.status == StepStatus.ABANDONED or not runnable:
            merged.status = incoming.status

    if incoming.command is not None and not merged.is_terminal:
        merged.command = incoming.command.model_copy(deep=True)

    if incoming.observation is not None:
        merged.observation = incoming.observation
    return merged


def merge_plans(existing: list[PlanStep], incoming: list[PlanStep]) -> list[PlanStep]:
    """
    Fold a model-issued revision into the local plan.

    Steps match by id (case-insensitive), then title, then position. Matched
    steps keep their local status and observation; new steps are taken as
    sent; local steps the revision does not mention are kept at the end.
    An empty revision clears the plan.
    """
    if not incoming:
        return []

    existing_index: dict[str, PlanStep] = {}
    for index, step in enumerate(existing):
        existing_index.setdefault(_merge_key(step, index), step)

    used: set[str] = set()
    result: list[PlanStep] = []
    for index, step in enumerate(incoming):
        key = _merge_key(step, index)
        match = existing_index.get(key)
        if match is not None:
            used.add(key)
            result.append(_merge_step(match, step))
        else:
            result.append(step.model_copy(deep=True))

    for index, step in enumerate(existing):
        if _merge_key(step, index) not in used:
            result.append(step)
    return result


def compute_progress(plan: list[PlanStep]) -> dict[str, float]:
    total = len(plan)
    completed = sum(1 for step in plan if step.is_terminal)
    return {
        "completed_steps": completed,
        "remaining_steps": max(0, total - completed),
        "total_steps": total,
        "ratio": min(1.0, completed / total) if total else 0.0,
    }


def plan_to_markdown(plan: list[PlanStep]) -> str:
    header = "# Active Plan\n\n"
    if not plan:
        return f"{header}_No active plan._\n"

    lines = []
    for index, step in enumerate(plan):
        title = step.title.strip() or f"Task {index + 1}"
        details = []
        if step.priority is not None:
            details.append(f"priority {step.priority:g}")
        deps = [normalize_id(dep) for dep in step.waitingForId if normalize_id(dep)]
        if deps:
            details.append(f"waiting for {', '.join(deps)}")
        details_text = f" ({', '.join(details)})" if details else ""
        lines.append(f"Step {index + 1} - {title} [{step.status.value}]{details_text}")
    return header + "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


class PlanGraph:
    """Mutable holder for the active plan of one agent session."""

    def __init__(self, steps: list[PlanStep] | None = None) -> None:
        self._steps: list[PlanStep] = list(steps or [])

    @property
    def steps(self) -> list[PlanStep]:
        return self._steps

    def __len__(self) -> int:
        return len(self._steps)

    def replace(self, steps: list[PlanStep]) -> None:
        self._steps = list(steps)

    def merge(self, incoming: list[PlanStep]) -> list[PlanStep]:
        self._steps = merge_plans(self._steps, incoming)
        logger.debug("plan merged: %d steps", len(self._steps))
        return self._steps

    def lookup(self) -> dict[str, PlanStep]:
        return build_lookup(self._steps)

    def find(self, step_id: str) -> PlanStep | None:
        return self.lookup().get(normalize_id(step_id))

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_next_executable_entry(self) -> PlanStep | None:
        """Lowest priority first (missing priority sorts last); ties keep plan order."""
        lookup = self.lookup()
        candidates = [
            (step.priority if step.priority is not None else math.inf, index, step)
            for index, step in enumerate(self._steps)
            if is_executable(step, lookup)
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda item: (item[0], item[1]))
        return candidates[0][2]

    def has_open_steps(self) -> bool:
        return any(not step.is_terminal for step in self._steps)

    def handle_no_executable(self) -> NoExecutableOutcome:
        if not self.has_open_steps():
            return NoExecutableOutcome.STOP
        return NoExecutableOutcome.CONTINUE

    # ------------------------------------------------------------------
    # Mutation after execution
    # ------------------------------------------------------------------

    def attach_observation(self, step: PlanStep, observation: dict[str, Any]) -> None:
        step.observation = observation

    def apply_command_result(self, step: PlanStep, result: CommandResult,
                             observation: dict[str, Any]) -> None:
        step.observation = observation
        if step.is_terminal:
            return
        step.status = StepStatus.COMPLETED if result.succeeded else StepStatus.FAILED
        logger.debug("step %r -> %s", step.id, step.status.value)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def progress(self) -> dict[str, float]:
        return compute_progress(self._steps)

    def snapshot(self) -> list[dict[str, Any]]:
        return [step.model_dump(mode="json", exclude_none=True) for step in self._steps]

    def to_markdown(self) -> str:
        return plan_to_markdown(self._steps)
