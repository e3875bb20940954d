# history.py
# Conversation history helpers: stale-entry redaction, compaction and
# context-usage estimates.

import json
import logging
from typing import Any

from agent_runtime.models import HistoryEntry

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
DEFAULT_CONTEXT_WINDOW = 128_000

# Matched against the model name by longest prefix.
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    "gpt-4.1-nano": 1_047_576,
    "gpt-4.1-mini": 1_047_576,
    "gpt-4.1": 1_047_576,
    "gpt-4o-mini": 128_000,
    "gpt-4o": 128_000,
    "gpt-5": 400_000,
    "o4-mini": 200_000,
    "o3": 200_000,
}


def history_chars(history: list[HistoryEntry]) -> int:
    return sum(len(entry.content) for entry in history)


def estimate_tokens(history: list[HistoryEntry]) -> int:
    chars = history_chars(history)
    return (chars + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


def context_window_for(model: str | None) -> int:
    if not model:
        return DEFAULT_CONTEXT_WINDOW
    name = model.split("/")[-1].lower()
    for prefix in sorted(MODEL_CONTEXT_WINDOWS, key=len, reverse=True):
        if name.startswith(prefix):
            return MODEL_CONTEXT_WINDOWS[prefix]
    return DEFAULT_CONTEXT_WINDOW


def summarize_context_usage(history: list[HistoryEntry], model: str | None) -> dict[str, Any]:
    total = context_window_for(model)
    used = estimate_tokens(history)
    return {
        "total": total,
        "used": used,
        "remaining": max(0, total - used),
        "percent": round(min(100.0, used / total * 100), 1) if total else 0.0,
    }


class HistoryCompactor:
    """
    Collapses older history into a single summary entry once the serialized
    history grows past `max_chars`.

    Leading system messages, the first user prompt and the `keep_recent`
    newest entries are always kept verbatim.
    """

    def __init__(self, max_chars: int = 400_000, keep_recent: int = 10,
                 summary_chars: int = 4_000, line_chars: int = 200) -> None:
        self.max_chars = max_chars
        self.keep_recent = keep_recent
        self.summary_chars = summary_chars
        self.line_chars = line_chars

    def needs_compaction(self, history: list[HistoryEntry]) -> bool:
        return history_chars(history) > self.max_chars

    def _summarize(self, entries: list[HistoryEntry]) -> str:
        lines = [f"Summary of {len(entries)} earlier messages (compacted):"]
        used = len(lines[0])
        for entry in entries:
            first_line = entry.content.strip().split("\n", 1)[0]
            if len(first_line) > self.line_chars:
                first_line = first_line[: self.line_chars] + "…"
            line = f"- [{entry.role}/{entry.kind}] {first_line}"
            if used + len(line) > self.summary_chars:
                lines.append("- …")
                break
            lines.append(line)
            used += len(line)
        return "\n".join(lines)

    def compact_if_needed(self, history: list[HistoryEntry]) -> bool:
        """Compact `history` in place. Returns True when anything changed."""
        if not self.needs_compaction(history):
            return False

        head = 0
        while head < len(history) and history[head].role == "system":
            head += 1
        first_user = next((i for i in range(head, len(history)) if history[i].role == "user"), None)
        if first_user is not None and first_user == head:
            head += 1

        tail_start = max(head, len(history) - self.keep_recent)
        collapsed = history[head:tail_start]
        if not collapsed:
            return False

        summary = HistoryEntry(
            role="system",
            content=self._summarize(collapsed),
            pass_index=collapsed[-1].pass_index,
            kind="summary",
        )
        history[head:tail_start] = [summary]
        logger.info("compacted %d history entries into a summary", len(collapsed))
        return True


# ---------------------------------------------------------------------------
# Stale-entry redaction
# ---------------------------------------------------------------------------

REDACTED_OUTPUT = "[redacted: older than {passes} passes]"


class StaleEntryRedactor:
    """
    Slims entries older than `threshold` passes.

    Assistant payloads lose their `plan` (the current plan is sent again on
    every pass) and observations lose their stdout/stderr. System entries,
    plain-text messages and anything newer than the cutoff are left alone.
    A threshold of 0 disables redaction.
    """

    def __init__(self, threshold: int = 10) -> None:
        self.threshold = max(0, threshold)

    @property
    def marker(self) -> str:
        return REDACTED_OUTPUT.format(passes=self.threshold)

    def _redact(self, entry: HistoryEntry) -> dict[str, Any] | None:
        try:
            content = json.loads(entry.content)
        except ValueError:
            return None
        if not isinstance(content, dict):
            return None

        if entry.kind == "observation":
            observation = content.get("observation")
            if not isinstance(observation, dict):
                return None
            streams = [key for key in ("stdout", "stderr")
                       if observation.get(key) and observation[key] != self.marker]
            if not streams:
                return None
            content["observation"] = {**observation, **{key: self.marker for key in streams}}
            return content

        if "plan" in content:
            del content["plan"]
            return content
        return None

    def apply(self, history: list[HistoryEntry], current_pass: int) -> bool:
        """Redact `history` in place. Returns True when anything changed."""
        if not self.threshold:
            return False

        cutoff = current_pass - self.threshold
        changed = 0
        for index, entry in enumerate(history):
            if entry.role == "system" or entry.pass_index >= cutoff:
                continue
            redacted = self._redact(entry)
            if redacted is None:
                continue
            history[index] = entry.model_copy(update={"content": json.dumps(redacted, ensure_ascii=False)})
            changed += 1

        if changed:
            logger.info("redacted %d history entries older than pass %d", changed, cutoff)
        return bool(changed)
