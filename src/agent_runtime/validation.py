# validation.py
# Semantic validation of parsed plan responses.
#
# Structural checks come from the pydantic models; the cross-field rules
# (non-empty ids, commands on open steps, run/shell pairing, acyclic
# dependencies) are checked here. Every problem found is collected and raised
# together as a single ValidationError.

from typing import Any

from pydantic import ValidationError as PydanticValidationError

from agent_runtime.errors import ValidationError
from agent_runtime.models import PlanResponse, PlanStep
from agent_runtime.plan import find_dependency_cycle
from agent_runtime.schema import STEP_STATUSES

TERMINAL_STATUS_NAMES = frozenset({"completed", "failed", "abandoned"})


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _check_command(command: Any, path: str, status: str, errors: list[str]) -> None:
    if command is not None and not isinstance(command, dict):
        errors.append(f"{path}.command must be an object when present.")
        return

    run = _text((command or {}).get("run"))
    shell = _text((command or {}).get("shell"))
    reason = _text((command or {}).get("reason"))

    if status not in TERMINAL_STATUS_NAMES:
        if not (run or shell):
            errors.append(f"{path} requires a non-empty command while the step is {status or 'active'}.")
            return
    elif command and not (run or shell):
        errors.append(f"{path}.command must include execution details when provided.")
        return

    if bool(run) != bool(shell) and not reason:
        missing = "shell" if run else "run"
        errors.append(f'{path}.command is missing "{missing}"; provide it or justify the omission in "reason".')


def _check_step(step: Any, path: str, errors: list[str]) -> None:
    if not isinstance(step, dict):
        errors.append(f"{path} must be an object.")
        return

    if not _text(step.get("id")):
        hint = ' Provide an "id" value instead of "step".' if _text(step.get("step")) else ""
        errors.append(f'{path} is missing a non-empty "id" label.{hint}')

    if not _text(step.get("title")):
        errors.append(f'{path} is missing a non-empty "title".')

    status = _text(step.get("status")).lower()
    if not status:
        errors.append(f'{path} is missing a valid "status".')
    elif status not in STEP_STATUSES:
        errors.append(f"{path}.status must be one of: {', '.join(STEP_STATUSES)}.")

    waiting = step.get("waitingForId", [])
    if waiting is not None and not isinstance(waiting, list):
        errors.append(f"{path}.waitingForId must be an array of ids.")

    _check_command(step.get("command"), path, status, errors)


def _format_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    messages = []
    for error in exc.errors():
        location = ""
        for part in error.get("loc", ()):
            location += f"[{part}]" if isinstance(part, int) else (f".{part}" if location else str(part))
        messages.append(f"{location or 'response'}: {error.get('msg', 'invalid value')}")
    return messages


def collect_errors(payload: Any) -> list[str]:
    """Return every semantic problem in `payload` (empty list when valid)."""
    if not isinstance(payload, dict):
        return ["Assistant response must be a JSON object."]

    errors: list[str] = []
    message = payload.get("message")
    if message is not None and not isinstance(message, str):
        errors.append('"message" must be a string when provided.')

    plan = payload.get("plan", [])
    if plan is None:
        plan = []
    if not isinstance(plan, list):
        errors.append('"plan" must be an array.')
        return errors

    for index, step in enumerate(plan):
        _check_step(step, f"plan[{index}]", errors)
    return errors


def validate_plan_response(payload: Any) -> PlanResponse:
    """
    Validate a parsed payload and return the typed response.

    Raises ValidationError listing every problem found.
    """
    errors = collect_errors(payload)
    if errors:
        raise ValidationError(errors)

    normalized = {"message": payload.get("message") or "", "plan": payload.get("plan") or []}
    try:
        response = PlanResponse.model_validate(normalized)
    except PydanticValidationError as exc:
        raise ValidationError(_format_pydantic_errors(exc)) from exc

    cycle_errors = validate_plan_steps(response.plan)
    if cycle_errors:
        raise ValidationError(cycle_errors)
    return response


def validate_plan_steps(steps: list[PlanStep]) -> list[str]:
    """Cycle check for an already-typed plan (e.g. after a merge)."""
    cycle = find_dependency_cycle(steps)
    if not cycle:
        return []
    if len(cycle) == 2 and cycle[0] == cycle[1]:
        return [f'Step "{cycle[0]}" waits on itself.']
    return [f"Dependency cycle detected: {' -> '.join(cycle)}."]
