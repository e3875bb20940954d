import json

from agent_runtime.history import (
    DEFAULT_CONTEXT_WINDOW,
    HistoryCompactor,
    StaleEntryRedactor,
    context_window_for,
    estimate_tokens,
    summarize_context_usage,
)
from agent_runtime.models import HistoryEntry


def _entry(role, content, kind="chat-message", pass_index=0):
    return HistoryEntry(role=role, content=content, kind=kind, pass_index=pass_index)

# ---------------------------------------------------------------------------
# Context usage
# ---------------------------------------------------------------------------

def test_estimate_tokens_rounds_up():
    assert estimate_tokens([_entry("user", "abcde")]) == 2
    assert estimate_tokens([]) == 0


def test_context_window_uses_longest_prefix():
    assert context_window_for("gpt-4o-mini-2024") == 128_000
    assert context_window_for("openai/gpt-4.1-mini") == 1_047_576
    assert context_window_for("some-local-model") == DEFAULT_CONTEXT_WINDOW
    assert context_window_for(None) == DEFAULT_CONTEXT_WINDOW


def test_summarize_context_usage():
    usage = summarize_context_usage([_entry("user", "x" * 400)], "gpt-4o")
    assert usage == {"total": 128_000, "used": 100, "remaining": 127_900, "percent": 0.1}

# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------

def test_small_history_is_left_alone():
    history = [_entry("system", "sys"), _entry("user", "task")]
    assert HistoryCompactor(max_chars=1000).compact_if_needed(history) is False
    assert len(history) == 2


def test_compaction_keeps_system_first_prompt_and_recent_entries():
    history = [_entry("system", "sys"), _entry("user", "the task")]
    history += [_entry("assistant", f"reply {n}\n" + "x" * 50, pass_index=n) for n in range(10)]

    compactor = HistoryCompactor(max_chars=200, keep_recent=3)
    assert compactor.compact_if_needed(history) is True

    assert [entry.content for entry in history[:2]] == ["sys", "the task"]
    summary = history[2]
    assert summary.kind == "summary"
    assert summary.role == "system"
    assert summary.content.startswith("Summary of 7 earlier messages (compacted):")
    assert "- [assistant/chat-message] reply 0" in summary.content
    assert summary.pass_index == 6
    assert [entry.pass_index for entry in history[3:]] == [7, 8, 9]


def test_nothing_to_collapse_returns_false():
    history = [_entry("system", "s" * 500), _entry("user", "u")]
    assert HistoryCompactor(max_chars=10, keep_recent=5).compact_if_needed(history) is False

# ---------------------------------------------------------------------------
# Stale-entry redaction
# ---------------------------------------------------------------------------

def _stale_history():
    plan_reply = json.dumps({"message": "listing", "plan": [{"id": "1", "title": "ls"}]})
    observation = json.dumps({
        "type": "observation",
        "step_id": "1",
        "observation": {"stdout": "a.txt\n", "stderr": "", "exit_code": 0},
    })
    return [
        _entry("system", json.dumps({"plan": ["keep"]})),
        _entry("user", "list the files", pass_index=1),
        _entry("assistant", plan_reply, pass_index=1),
        _entry("user", observation, kind="observation", pass_index=1),
        _entry("assistant", plan_reply, pass_index=5),
    ]


def test_redactor_strips_plans_and_outputs_from_old_entries():
    history = _stale_history()
    redactor = StaleEntryRedactor(threshold=3)
    assert redactor.apply(history, current_pass=5) is True

    assert json.loads(history[0].content) == {"plan": ["keep"]}
    assert history[1].content == "list the files"
    assert json.loads(history[2].content) == {"message": "listing"}

    observation = json.loads(history[3].content)
    assert observation["step_id"] == "1"
    assert observation["observation"] == {
        "stdout": "[redacted: older than 3 passes]",
        "stderr": "",
        "exit_code": 0,
    }
    assert "plan" in json.loads(history[4].content)
    assert history[3].kind == "observation"


def test_redactor_is_idempotent():
    history = _stale_history()
    redactor = StaleEntryRedactor(threshold=3)
    redactor.apply(history, current_pass=5)
    snapshot = [entry.content for entry in history]

    assert redactor.apply(history, current_pass=5) is False
    assert [entry.content for entry in history] == snapshot


def test_redactor_leaves_recent_entries():
    history = _stale_history()
    original = [entry.content for entry in history]
    assert StaleEntryRedactor(threshold=10).apply(history, current_pass=5) is False
    assert [entry.content for entry in history] == original


def test_zero_threshold_disables_redaction():
    history = _stale_history()
    assert StaleEntryRedactor(threshold=0).apply(history, current_pass=100) is False
    assert "plan" in json.loads(history[2].content)
