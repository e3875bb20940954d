# partial_json.py
# Best-effort parser for a streamed JSON prefix.
#
# The model streams tool-call arguments a few characters at a time. To show
# the plan while it is being written, each accumulated prefix is closed
# (open string terminated, open containers closed) and parsed. When the tail
# is an incomplete token (`tru`, `1e`, a dangling key) it is trimmed back to
# the previous structural boundary and the parse is retried.

import json
from typing import Any

_CLOSERS = {"{": "}", "[": "]"}
_STRUCTURAL = frozenset("{[,:")


def _scan(text: str) -> tuple[list[str], bool, bool, list[int]]:
    """Return (open container stack, in_string, dangling_escape, structural positions)."""
    stack: list[str] = []
    positions: list[int] = []
    in_string = False
    escaped = False

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
        elif char in _CLOSERS:
            stack.append(char)
            positions.append(index)
        elif char in "}]":
            if stack:
                stack.pop()
        elif char in _STRUCTURAL:
            positions.append(index)
    return stack, in_string, escaped, positions


def _close(text: str) -> tuple[str, list[int]]:
    stack, in_string, escaped, positions = _scan(text)
    completed = text
    if in_string:
        if escaped:
            completed = completed[:-1]
        completed += '"'
    completed += "".join(_CLOSERS[opener] for opener in reversed(stack))
    return completed, positions


def _trim(text: str, positions: list[int]) -> str:
    if not positions:
        return ""
    index = positions[-1]
    if index < len(text) - 1 and text[index] in _CLOSERS:
        return text[:index + 1]
    return text[:index]


def parse_partial_json(text: str | None) -> Any:
    """Parse the longest valid reading of a JSON prefix, or return None."""
    if not text or not text.strip():
        return None

    candidate = text.strip()
    while candidate:
        completed, positions = _close(candidate)
        try:
            return json.loads(completed)
        except json.JSONDecodeError:
            pass
        trimmed = _trim(candidate, positions).rstrip()
        if trimmed == candidate:
            break
        candidate = trimmed
    return None
