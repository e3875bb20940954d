# schema.py
# Frozen JSON Schema for the plan tool.
#
# Field names and enum values are part of the model tool protocol. The
# structures are wrapped in MappingProxyType so callers cannot mutate them;
# use as_json_schema() / plan_tool_definition() to get plain dicts for the API.

import copy
from types import MappingProxyType
from typing import Any

PLAN_TOOL_NAME = "plan_response"

STEP_STATUSES = ("pending", "completed", "failed", "abandoned")

_COMMAND_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Next shell invocation for this plan step. Must be an object, never a raw string. "
        'Example: {"reason":"list files","shell":"bash","run":"ls -la","cwd":".","timeout_sec":30}'
    ),
    "additionalProperties": False,
    "required": ["shell", "run"],
    "properties": {
        "reason": {
            "type": "string",
            "description": "Why this command is required. If only shell or run is provided, justify the omission.",
        },
        "shell": {
            "type": "string",
            "description": "Shell executable. Only set when run holds an actual command.",
        },
        "run": {
            "type": "string",
            "description": "Command string to execute. Must be set if shell has a value.",
        },
        "cwd": {"type": "string", "description": "Working directory for the command."},
        "timeout_sec": {
            "type": "integer",
            "minimum": 1,
            "default": 60,
            "description": "Timeout guard for long-running commands.",
        },
        "filter_regex": {
            "type": "string",
            "description": "Keep only output lines matching this regex (case-insensitive).",
        },
        "tail_lines": {
            "type": "integer",
            "minimum": 0,
            "description": "Return only this many trailing lines of output.",
        },
        "max_bytes": {
            "type": "integer",
            "minimum": 1,
            "description": "Upper bound on bytes returned per output stream.",
        },
    },
}

_STEP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "A single plan step.",
    "additionalProperties": False,
    "required": ["id", "title", "status", "waitingForId", "command"],
    "properties": {
        "id": {"type": "string", "description": "Unique id chosen by the assistant."},
        "title": {"type": "string"},
        "status": {"type": "string", "enum": list(STEP_STATUSES)},
        "priority": {
            "type": "number",
            "description": "Lower runs first. Steps without a priority run last.",
        },
        "waitingForId": {
            "type": "array",
            "description": "Ids that must be completed before this step can run.",
            "items": {"type": "string"},
        },
        "command": _COMMAND_SCHEMA,
        "observation": {
            "type": "object",
            "description": "Latest command observation for this step (stdout, stderr, metadata).",
        },
    },
}

_RESPONSE_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "additionalProperties": False,
    "required": ["message", "plan"],
    "properties": {
        "message": {"type": "string", "description": "Markdown message to the user."},
        "plan": {
            "type": "array",
            "description": "The assistant's current plan.",
            "items": _STEP_SCHEMA,
        },
    },
}


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, MappingProxyType):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return copy.deepcopy(value)


PLAN_RESPONSE_JSON_SCHEMA = _freeze(_RESPONSE_SCHEMA)

PLAN_TOOL = _freeze({
    "type": "function",
    "function": {
        "name": PLAN_TOOL_NAME,
        "description": "Return the response envelope: a message for the user and the current plan.",
        "parameters": _RESPONSE_SCHEMA,
    },
})


def as_json_schema() -> dict[str, Any]:
    """A mutable copy of the plan response schema."""
    return _thaw(PLAN_RESPONSE_JSON_SCHEMA)


def plan_tool_definition() -> dict[str, Any]:
    """A mutable copy of the tool definition, ready for chat.completions."""
    return _thaw(PLAN_TOOL)
