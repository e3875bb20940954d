# text.py
# Output shaping helpers for command results.
# Regex line filtering, tail/head truncation, byte bounds and previews.

import logging
import re

logger = logging.getLogger(__name__)

SNIP_MARKER = "<snip....>"


def apply_filter(text: str, regex: str | None) -> str:
    """Keep only lines matching `regex` (case-insensitive). Invalid patterns pass text through."""
    if not regex:
        return text
    try:
        pattern = re.compile(regex, re.IGNORECASE)
    except re.error as exc:
        logger.warning("invalid filter_regex %r: %s", regex, exc)
        return text
    return "\n".join(line for line in text.split("\n") if pattern.search(line))


def tail_lines(text: str, lines: int | None) -> str:
    if not lines:
        return text
    return "\n".join(text.split("\n")[-lines:])


def line_count(text: str) -> int:
    return len(text.split("\n")) if text else 0


def byte_length(text: str) -> int:
    return len(text.encode("utf-8")) if text else 0


def limit_bytes(text: str, max_bytes: int | None) -> str:
    """Keep the last `max_bytes` bytes of `text`, never splitting a character."""
    if not max_bytes:
        return text
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[-max_bytes:].decode("utf-8", errors="ignore")


def truncate_output(text: str | None, head: int = 5000, tail: int = 5000,
                    snip_marker: str = SNIP_MARKER) -> str:
    """Keep the first `head` and last `tail` lines, joined by a snip marker."""
    if not text:
        return ""
    lines = text.split("\n")
    if len(lines) <= head + tail:
        return text

    parts: list[str] = []
    if head > 0:
        parts.append("\n".join(lines[:head]))
    parts.append(snip_marker)
    if tail > 0:
        parts.append("\n".join(lines[-tail:]))
    return "\n".join(parts)


def combine_std_streams(stdout: str, stderr: str, exit_code: int | None) -> tuple[str, str]:
    """
    Fold stderr into stdout for successful commands.

    Many tools print progress to stderr even when they succeed; the model
    only needs a separate stderr channel when the command failed.
    """
    if exit_code != 0 or not stderr:
        return stdout, stderr
    if not stdout:
        return stderr, ""
    separator = "" if stdout.endswith("\n") else "\n"
    return f"{stdout}{separator}{stderr}", ""


def build_preview(text: str, max_lines: int = 20) -> str:
    if not text:
        return ""
    lines = text.split("\n")
    if len(lines) <= max_lines:
        return text
    return "\n".join(lines[:max_lines] + [f"... ({len(lines) - max_lines} more lines)"])
