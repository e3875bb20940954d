# observation.py
# Builds the observation payloads attached to plan steps and fed back to the
# model, plus the human-facing previews shown alongside command results.

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from agent_runtime import text
from agent_runtime.models import CommandDraft, CommandResult

MAX_COMBINED_BYTES = 50 * 1024
CORRUPT_OUTPUT_MESSAGE = "!!!corrupt command, excessive output!!!"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ObservationBuilder:
    """
    Shapes a CommandResult into `{observation_for_llm, observation_metadata}`.

    Output that exceeds MAX_COMBINED_BYTES is replaced with a corruption
    marker and reported with exit code 1; otherwise filter_regex, tail_lines
    and max_bytes from the command are applied to each stream.
    """

    def __init__(self, now: Callable[[], datetime] | None = None) -> None:
        self._now = now or _utc_now

    def _timestamp(self) -> str:
        return self._now().isoformat()

    def build(self, command: CommandDraft | None, result: CommandResult) -> tuple[dict[str, Any], dict[str, Any]]:
        """Return (observation, render_payload)."""
        command = command or CommandDraft()
        stdout, stderr = text.combine_std_streams(result.stdout, result.stderr, result.exit_code)
        oversized = text.byte_length(stdout) + text.byte_length(stderr) > MAX_COMBINED_BYTES

        if oversized:
            shaped_out = shaped_err = CORRUPT_OUTPUT_MESSAGE
            truncated = True
        else:
            shaped_out = text.apply_filter(stdout, command.filter_regex)
            shaped_err = text.apply_filter(stderr, command.filter_regex)
            shaped_out = text.tail_lines(shaped_out, command.tail_lines)
            shaped_err = text.tail_lines(shaped_err, command.tail_lines)
            shaped_out = text.limit_bytes(shaped_out, command.max_bytes)
            shaped_err = text.limit_bytes(shaped_err, command.max_bytes)
            truncated = (shaped_out, shaped_err) != (stdout, stderr)

        exit_code = 1 if oversized else result.exit_code
        for_llm: dict[str, Any] = {"stdout": shaped_out, "stderr": shaped_err}
        if exit_code is not None:
            for_llm["exit_code"] = exit_code
        for_llm["truncated"] = truncated

        observation = {
            "observation_for_llm": for_llm,
            "observation_metadata": {
                "runtime_ms": result.runtime_ms,
                "killed": result.killed,
                "timestamp": self._timestamp(),
            },
        }
        render_payload = {
            "stdout": shaped_out,
            "stderr": shaped_err,
            "stdout_preview": text.build_preview(shaped_out),
            "stderr_preview": text.build_preview(shaped_err),
        }
        return observation, render_payload

    def build_cancellation(self, reason: str, message: str,
                           metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        return {
            "observation_for_llm": {
                "operation_canceled": True,
                "reason": reason,
                "message": message,
            },
            "observation_metadata": {"timestamp": self._timestamp(), **(metadata or {})},
        }

    def build_rejection(self, message: str, reason: str = "human_declined") -> dict[str, Any]:
        return {
            "observation_for_llm": {
                "canceled_by_human": reason == "human_declined",
                "reason": reason,
                "message": message,
            },
            "observation_metadata": {"timestamp": self._timestamp()},
        }

    def build_safety_rejection(self, command: str, rules: list[str]) -> dict[str, Any]:
        return {
            "observation_for_llm": {
                "command_rejected": True,
                "reason": "unsafe_command",
                "rules": list(rules),
                "message": (
                    f"The command `{command}` was rejected by the safety rules "
                    f"({', '.join(rules)}). Propose a simpler command without shell operators."
                ),
            },
            "observation_metadata": {"timestamp": self._timestamp()},
        }

    def build_parse_failure(self, message: str, attempts: list[dict[str, Any]]) -> dict[str, Any]:
        return {
            "observation_for_llm": {
                "json_parse_error": True,
                "message": message,
                "attempts": attempts,
                "response_format": "Call the plan tool with a JSON object: {message, plan}.",
            },
            "observation_metadata": {"timestamp": self._timestamp()},
        }

    def build_validation_failure(self, errors: list[str]) -> dict[str, Any]:
        return {
            "observation_for_llm": {
                "schema_validation_error": True,
                "message": "The plan response did not match the required schema.",
                "details": list(errors),
            },
            "observation_metadata": {"timestamp": self._timestamp()},
        }
