import json

import pytest

from agent_runtime.errors import ParseRecoveryExhausted
from agent_runtime.parser import (
    escape_bare_line_breaks,
    extract_balanced_json,
    extract_code_fence,
    normalize_command,
    normalize_payload,
    parse_assistant_response,
    parse_plan_payload_or_raise,
)

PAYLOAD = {"message": "hi", "plan": []}

# ---------------------------------------------------------------------------
# Recovery ladder
# ---------------------------------------------------------------------------

def test_direct_parse():
    result = parse_assistant_response(json.dumps(PAYLOAD))
    assert result.ok is True
    assert result.strategy == "direct"
    assert result.value == PAYLOAD
    assert result.attempts == []


def test_bare_line_break_inside_string_is_recovered():
    raw = '{\n  "message": "line one\nline two",\n  "plan": []\n}'
    result = parse_assistant_response(raw)
    assert result.ok is True
    assert result.strategy == "escaped_newlines"
    assert result.value["message"] == "line one\nline two"
    assert [attempt.strategy for attempt in result.attempts] == ["direct"]


def test_code_fence_is_recovered():
    raw = 'Here is the plan:\n```json\n{"message": "hi", "plan": []}\n```\nDone.'
    result = parse_assistant_response(raw)
    assert result.ok is True
    assert result.strategy == "code_fence"
    assert result.value == PAYLOAD


def test_balanced_slice_is_recovered():
    raw = 'Sure! {"message": "a {brace} in text", "plan": []} Hope that helps.'
    result = parse_assistant_response(raw)
    assert result.ok is True
    assert result.strategy == "balanced_slice"
    assert result.value["message"] == "a {brace} in text"


def test_exhaustion_records_every_attempt():
    result = parse_assistant_response("no json here\nat all")
    assert result.ok is False
    assert result.error.startswith("Failed to parse assistant JSON response.")
    assert [attempt.strategy for attempt in result.attempts] == ["direct", "escaped_newlines"]


@pytest.mark.parametrize("raw", ["", "   ", None, 42])
def test_empty_response(raw):
    result = parse_assistant_response(raw)
    assert result.ok is False
    assert result.error == "Assistant response was empty or missing."


def test_parse_or_raise_raises_with_attempts():
    with pytest.raises(ParseRecoveryExhausted) as info:
        parse_plan_payload_or_raise("nope")
    assert [attempt.strategy for attempt in info.value.attempts] == ["direct"]
    assert info.value.raw == "nope"


def test_parse_or_raise_requires_an_object():
    with pytest.raises(ParseRecoveryExhausted, match="tried"):
        parse_plan_payload_or_raise("[1, 2]")


def test_parse_or_raise_returns_normalized_payload():
    raw = json.dumps({"message": "m", "plan": [{"id": "1", "command": "ls -la"}]})
    value = parse_plan_payload_or_raise(raw)
    assert value["plan"][0]["command"] == {"run": "ls -la", "shell": "bash"}

# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def test_escape_leaves_structural_whitespace():
    assert escape_bare_line_breaks('{\n"a": 1\n}') == '{\n"a": 1\n}'
    assert escape_bare_line_breaks('{"a": "x\ny"}') == '{"a": "x\\ny"}'
    assert escape_bare_line_breaks('{"a": 1}') is None


def test_extract_code_fence_without_language():
    assert extract_code_fence("```\n[1]\n```") == "[1]"
    assert extract_code_fence("plain") is None


def test_extract_balanced_json_ignores_brackets_in_strings():
    assert extract_balanced_json('x {"a": "}"} y') == '{"a": "}"}'
    assert extract_balanced_json("x {] y") is None
    assert extract_balanced_json("{unclosed") is None

# ---------------------------------------------------------------------------
# Command normalization
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("command,expected", [
    ("ls -la", {"run": "ls -la", "shell": "bash"}),
    (["git", "status", ""], {"run": "git status", "shell": "bash"}),
    ("   ", {}),
    ({"cmd": "ls", "cwd": "."}, {"run": "ls", "cwd": "."}),
    ({"command_line": "ls", "shell": "sh"}, {"run": "ls", "shell": "sh"}),
    ({"shell": "ls -la"}, {"run": "ls -la", "shell": "bash"}),
    ({"shell": "bash"}, {"shell": "bash"}),
    ({"run": {"command": "ls", "shell": "zsh"}, "cwd": "/tmp"}, {"cwd": "/tmp", "run": "ls", "shell": "zsh"}),
    (None, None),
])
def test_normalize_command(command, expected):
    assert normalize_command(command) == expected


def test_normalize_payload_leaves_other_fields():
    payload = {"message": "m", "plan": [{"id": "1"}, "junk"], "extra": 1}
    assert normalize_payload(payload) == payload
    assert normalize_payload([1]) == [1]
