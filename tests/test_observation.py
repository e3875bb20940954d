from datetime import datetime, timezone

import pytest

from agent_runtime import text
from agent_runtime.models import CommandDraft, CommandResult
from agent_runtime.observation import CORRUPT_OUTPUT_MESSAGE, MAX_COMBINED_BYTES, ObservationBuilder

FIXED_NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


@pytest.fixture
def builder():
    return ObservationBuilder(now=lambda: FIXED_NOW)

# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def test_apply_filter_is_case_insensitive():
    assert text.apply_filter("Error: a\nok\nerror: b", "ERROR") == "Error: a\nerror: b"


def test_apply_filter_invalid_regex_passes_through():
    assert text.apply_filter("a\nb", "(") == "a\nb"


def test_tail_lines():
    assert text.tail_lines("1\n2\n3", 2) == "2\n3"
    assert text.tail_lines("1\n2\n3", None) == "1\n2\n3"


def test_limit_bytes_keeps_the_end_without_splitting_characters():
    assert text.limit_bytes("abcdef", 3) == "def"
    assert text.limit_bytes("aé", 1) == ""
    assert text.limit_bytes("short", 100) == "short"


def test_truncate_output_snips_the_middle():
    lines = "\n".join(str(n) for n in range(10))
    assert text.truncate_output(lines, head=2, tail=2) == "0\n1\n<snip....>\n8\n9"
    assert text.truncate_output(lines, head=20, tail=20) == lines
    assert text.truncate_output(None) == ""


def test_combine_std_streams_only_on_success():
    assert text.combine_std_streams("out", "warn", 0) == ("out\nwarn", "")
    assert text.combine_std_streams("", "warn", 0) == ("warn", "")
    assert text.combine_std_streams("out", "err", 1) == ("out", "err")
    assert text.combine_std_streams("out", "err", None) == ("out", "err")


def test_build_preview_limits_lines():
    body = "\n".join(str(n) for n in range(25))
    preview = text.build_preview(body, max_lines=20)
    assert preview.endswith("... (5 more lines)")
    assert text.build_preview("") == ""

# ---------------------------------------------------------------------------
# Command observations
# ---------------------------------------------------------------------------

def test_build_successful_command(builder):
    result = CommandResult(stdout="hello\n", stderr="", exit_code=0, runtime_ms=12)
    observation, preview = builder.build(CommandDraft(run="echo hello"), result)
    assert observation == {
        "observation_for_llm": {"stdout": "hello\n", "stderr": "", "exit_code": 0, "truncated": False},
        "observation_metadata": {"runtime_ms": 12, "killed": False, "timestamp": FIXED_NOW.isoformat()},
    }
    assert preview["stdout_preview"] == "hello\n"


def test_exit_code_omitted_when_unknown(builder):
    observation, _ = builder.build(None, CommandResult(stderr="timed out", exit_code=None, killed=True))
    assert "exit_code" not in observation["observation_for_llm"]
    assert observation["observation_metadata"]["killed"] is True


def test_filter_and_tail_mark_output_truncated(builder):
    command = CommandDraft(run="x", filter_regex="keep", tail_lines=1)
    result = CommandResult(stdout="keep 1\ndrop\nkeep 2", exit_code=1)
    observation, _ = builder.build(command, result)
    assert observation["observation_for_llm"]["stdout"] == "keep 2"
    assert observation["observation_for_llm"]["truncated"] is True


def test_max_bytes_applies_per_stream(builder):
    command = CommandDraft(run="x", max_bytes=4)
    observation, _ = builder.build(command, CommandResult(stdout="abcdefgh", stderr="12345678", exit_code=2))
    assert observation["observation_for_llm"]["stdout"] == "efgh"
    assert observation["observation_for_llm"]["stderr"] == "5678"


def test_oversized_output_is_replaced(builder):
    result = CommandResult(stdout="x" * (MAX_COMBINED_BYTES + 1), exit_code=0)
    observation, _ = builder.build(CommandDraft(run="cat big"), result)
    for_llm = observation["observation_for_llm"]
    assert for_llm["stdout"] == CORRUPT_OUTPUT_MESSAGE
    assert for_llm["exit_code"] == 1
    assert for_llm["truncated"] is True

# ---------------------------------------------------------------------------
# Synthetic observations
# ---------------------------------------------------------------------------

def test_rejection_observations(builder):
    declined = builder.build_rejection("no thanks")
    assert declined["observation_for_llm"]["canceled_by_human"] is True
    unsafe = builder.build_safety_rejection("ls | wc", ["pipe"])
    assert unsafe["observation_for_llm"]["rules"] == ["pipe"]
    assert "ls | wc" in unsafe["observation_for_llm"]["message"]


def test_cancellation_observation_merges_metadata(builder):
    observation = builder.build_cancellation("user_cancel", "stopped", {"reason": "esc"})
    assert observation["observation_for_llm"]["operation_canceled"] is True
    assert observation["observation_metadata"] == {"timestamp": FIXED_NOW.isoformat(), "reason": "esc"}


def test_parse_and_validation_failures(builder):
    parse = builder.build_parse_failure("bad json", [{"strategy": "direct", "error": "x"}])
    assert parse["observation_for_llm"]["json_parse_error"] is True
    invalid = builder.build_validation_failure(["plan[0] is missing a non-empty \"title\"."])
    assert invalid["observation_for_llm"]["schema_validation_error"] is True
    assert len(invalid["observation_for_llm"]["details"]) == 1
