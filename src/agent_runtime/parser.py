# parser.py
# JSON recovery for model tool-call arguments.
#
# Models sometimes wrap JSON in markdown fences, put raw line breaks inside
# strings, or surround the object with prose. The ladder below tries, in
# order: direct → escaped_newlines → code_fence → balanced_slice, and records
# every failed attempt. Parsed payloads are normalized so that commands
# always look like {run, shell?, ...}.

import json
import logging
import re
from typing import Any

from pydantic import BaseModel, Field

from agent_runtime.errors import ParseRecoveryExhausted

logger = logging.getLogger(__name__)

STRATEGY_DIRECT = "direct"
STRATEGY_ESCAPED_NEWLINES = "escaped_newlines"
STRATEGY_CODE_FENCE = "code_fence"
STRATEGY_BALANCED_SLICE = "balanced_slice"

DEFAULT_SHELL = "bash"
KNOWN_SHELLS = frozenset({"bash", "sh", "zsh", "dash", "ksh", "fish", "pwsh", "powershell", "cmd"})

_CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]+?)```", re.IGNORECASE)
_LINE_ESCAPES = {"\n": "\\n", "\r": "\\r"}
_OPENERS = {"{": "}", "[": "]"}


class ParseAttempt(BaseModel):
    strategy: str
    error: str


class ParseResult(BaseModel):
    ok: bool
    value: Any = None
    normalized_text: str = ""
    strategy: str | None = None
    error: str | None = None
    attempts: list[ParseAttempt] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Command normalization
# ---------------------------------------------------------------------------


def _first_non_empty(*candidates: Any) -> str:
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return ""


def _looks_like_shell(value: str) -> bool:
    return value.strip().lower() in KNOWN_SHELLS


def _normalize_flat_command(command: dict[str, Any]) -> dict[str, Any]:
    run = _first_non_empty(command.get("run"), command.get("cmd"), command.get("command_line"))
    shell = _first_non_empty(command.get("shell"))
    rest = {k: v for k, v in command.items() if k not in ("run", "cmd", "command_line", "shell")}

    if run:
        rest["run"] = run
        if shell:
            rest["shell"] = shell
        return rest

    if shell:
        # {"shell": "ls -la"}: the command landed in the wrong field.
        if _looks_like_shell(shell):
            rest["shell"] = shell
        else:
            rest["run"] = shell
            rest["shell"] = DEFAULT_SHELL
    return rest


def _normalize_nested_command(command: dict[str, Any], field: str) -> dict[str, Any]:
    nested = dict(command[field])
    top = {k: v for k, v in command.items() if k != field}
    merged = {**top, **{k: v for k, v in nested.items()
                        if k not in ("run", "cmd", "command", "command_line", "shell")}}

    run = _first_non_empty(
        top.get("run") if field == "shell" else None,
        nested.get("command"), nested.get("run"), nested.get("cmd"), nested.get("command_line"),
        top.get("cmd"), top.get("command_line"),
    )
    shell = _first_non_empty(nested.get("shell"), top.get("shell") if field == "run" else None)
    merged.pop("cmd", None)
    merged.pop("command_line", None)
    merged.pop("shell", None)
    merged.pop("run", None)

    if run:
        merged["run"] = run
    elif shell and not _looks_like_shell(shell):
        merged["run"] = shell
    if shell and merged.get("run") != shell:
        merged["shell"] = shell
    return merged


def normalize_command(command: Any) -> Any:
    """
    Coerce the shapes models produce into a flat command object.

    Bare strings and token lists run under the default shell.
    """
    if isinstance(command, str):
        return {"run": command.strip(), "shell": DEFAULT_SHELL} if command.strip() else {}

    if isinstance(command, list):
        parts = [str(part).strip() for part in command if part is not None and str(part).strip()]
        return {"run": " ".join(parts), "shell": DEFAULT_SHELL} if parts else {}

    if not isinstance(command, dict):
        return command

    if isinstance(command.get("run"), dict):
        return _normalize_nested_command(command, "run")
    if isinstance(command.get("shell"), dict):
        return _normalize_nested_command(command, "shell")
    return _normalize_flat_command(command)


def normalize_payload(payload: Any) -> Any:
    if not isinstance(payload, dict):
        return payload

    normalized = dict(payload)
    if "command" in normalized:
        normalized["command"] = normalize_command(normalized["command"])

    plan = normalized.get("plan")
    if isinstance(plan, list):
        steps = []
        for step in plan:
            if isinstance(step, dict) and "command" in step:
                step = {**step, "command": normalize_command(step["command"])}
            steps.append(step)
        normalized["plan"] = steps
    return normalized


# ---------------------------------------------------------------------------
# Recovery strategies
# ---------------------------------------------------------------------------


def escape_bare_line_breaks(text: str) -> str | None:
    """Escape raw line breaks inside JSON strings; structural whitespace is left alone."""
    if "\n" not in text and "\r" not in text:
        return None

    out: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            elif char in _LINE_ESCAPES:
                out.append(_LINE_ESCAPES[char])
                continue
        elif char == '"':
            in_string = True
        out.append(char)
    return "".join(out)


def extract_code_fence(text: str) -> str | None:
    match = _CODE_FENCE.search(text)
    return match.group(1).strip() if match else None


def extract_balanced_json(text: str) -> str | None:
    """Return the first balanced {...} or [...] slice, honouring JSON strings."""
    in_string = False
    escaped = False
    stack: list[str] = []
    start = -1

    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in _OPENERS:
            if not stack:
                start = index
            stack.append(_OPENERS[char])
        elif char in ("}", "]"):
            if not stack:
                continue
            if char != stack.pop():
                return None
            if not stack and start != -1:
                return text[start:index + 1].strip()
    return None


def _attempt(text: str, strategy: str, attempts: list[ParseAttempt]) -> ParseResult | None:
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        attempts.append(ParseAttempt(strategy=strategy, error=str(exc)))
        return None
    return ParseResult(
        ok=True,
        value=normalize_payload(value),
        normalized_text=text,
        strategy=strategy,
        attempts=list(attempts),
    )


def parse_assistant_response(raw: Any) -> ParseResult:
    """Run the recovery ladder. Never raises."""
    attempts: list[ParseAttempt] = []
    if not isinstance(raw, str) or not raw.strip():
        return ParseResult(ok=False, error="Assistant response was empty or missing.")

    text = raw.strip()
    candidates = [
        (STRATEGY_DIRECT, text),
        (STRATEGY_ESCAPED_NEWLINES, escape_bare_line_breaks(text)),
        (STRATEGY_CODE_FENCE, extract_code_fence(text)),
        (STRATEGY_BALANCED_SLICE, extract_balanced_json(text)),
    ]
    for strategy, candidate in candidates:
        if not candidate:
            continue
        result = _attempt(candidate, strategy, attempts)
        if result is not None:
            if strategy != STRATEGY_DIRECT:
                logger.info("recovered assistant JSON via %s", strategy)
            return result

    message = "Failed to parse assistant JSON response."
    if attempts:
        message = f"{message} {attempts[0].error}"
    logger.warning("%s (%d attempts)", message, len(attempts))
    return ParseResult(ok=False, error=message, attempts=attempts)


def parse_plan_payload_or_raise(raw: Any) -> dict[str, Any]:
    """Like parse_assistant_response(), but raises ParseRecoveryExhausted on failure."""
    result = parse_assistant_response(raw)
    if not result.ok:
        raise ParseRecoveryExhausted(result.attempts, raw if isinstance(raw, str) else "")
    if not isinstance(result.value, dict):
        raise ParseRecoveryExhausted(
            result.attempts + [ParseAttempt(strategy=result.strategy or STRATEGY_DIRECT,
                                            error="top-level JSON value is not an object")],
            raw,
        )
    return result.value
