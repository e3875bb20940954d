# safety.py
# Static rule engine for shell commands proposed by the model.
#
# Two layers:
#   1. String-level rules: reject shell syntax that chains, pipes, substitutes,
#      backgrounds, escalates or redirects (is_command_string_safe).
#   2. Per-executable argument rules for tools that are read-only only with
#      the right flags (validate_command_specific_args).
#
# Everything here is pure: no I/O, no process spawning, no logging side
# effects beyond debug messages. The approval layer decides what to do with
# a failing command.

import logging
import os
import re
import shlex
from collections.abc import Callable
from dataclasses import dataclass

from agent_runtime.errors import SafetyRejection

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# String-level rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SafetyRule:
    description: str
    pattern: re.Pattern


_STRING_RULES: tuple[SafetyRule, ...] = (
    SafetyRule("newline or carriage return", re.compile(r"[\r\n]")),
    SafetyRule("command chaining (; && ||)", re.compile(r";|&&|\|\|")),
    SafetyRule("pipe", re.compile(r"\|")),
    SafetyRule("backtick substitution", re.compile(r"`")),
    SafetyRule("command substitution $(", re.compile(r"\$\(")),
    SafetyRule("input process substitution <(", re.compile(r"<\s*\(")),
    SafetyRule("output process substitution >(", re.compile(r">\s*\(")),
    SafetyRule("background execution &", re.compile(r"(?:^|[^&])&(?:[^&>]|$)")),
    SafetyRule("here-string <<<", re.compile(r"<<<")),
    SafetyRule("here-document <<", re.compile(r"<<")),
    SafetyRule("combined redirect &>", re.compile(r"&>")),
    SafetyRule("sudo invocation", re.compile(r"^\s*sudo\b")),
    SafetyRule("file redirection > or >>", re.compile(r">")),
    SafetyRule("descriptor redirection N>&M", re.compile(r"\d?>&\d?")),
)


def find_unsafe_rules(raw: str) -> list[str]:
    """
    Return the description of every string-level rule `raw` violates.

    An empty list means the command passed. Empty or whitespace-only input
    fails with a dedicated description.
    """
    if not isinstance(raw, str) or not raw.strip():
        return ["empty command"]

    # Newlines are checked before trimming so trailing line breaks still fail.
    violations = [rule.description for rule in _STRING_RULES[:1] if rule.pattern.search(raw)]
    command = raw.strip()
    violations.extend(rule.description for rule in _STRING_RULES[1:] if rule.pattern.search(command))
    return violations


def is_command_string_safe(raw: str) -> bool:
    return not find_unsafe_rules(raw)


# ---------------------------------------------------------------------------
# Tokenizing
# ---------------------------------------------------------------------------


def shell_split(command: str) -> list[str]:
    """Split a command line into tokens, tolerating unbalanced quotes."""
    try:
        return shlex.split(command)
    except ValueError:
        return command.split()


def command_base(tokens: list[str]) -> str:
    return os.path.basename(tokens[0]) if tokens else ""


# ---------------------------------------------------------------------------
# Per-executable rules
# ---------------------------------------------------------------------------


def _joined(tokens: list[str]) -> str:
    return f" {' '.join(tokens[1:])} "


def _writes_to_file(tokens: list[str], short: str, long: str) -> bool:
    """True when `short`/`long` (or `-Xfile`, `--long=file`) names a real file."""
    args = tokens[1:]
    for index, token in enumerate(args):
        if token in (short, long):
            destination = args[index + 1] if index + 1 < len(args) else ""
            if destination != "-":
                return True
        elif token.startswith(short) and not token.startswith("--") and len(token) > len(short):
            return True
        elif token.startswith(f"{long}="):
            if token.split("=", 1)[1] != "-":
                return True
    return False


_SED_IN_PLACE = re.compile(r"\s(?:-[a-zA-Z]*i|--in-place\b)")
_FIND_ACTIONS = re.compile(r"\s-(?:exec|execdir|ok|okdir|delete)\b")
_CURL_METHOD = re.compile(r"\s-X\s*(?:POST|PUT|PATCH|DELETE)\b", re.IGNORECASE)
_CURL_REQUEST = re.compile(r"\s--request[\s=](?:POST|PUT|PATCH|DELETE)\b", re.IGNORECASE)
_CURL_UPLOAD = re.compile(
    r"\s(?:(?:--data(?:-[a-z]+)?|--json|--form(?:-string)?|--upload-file)(?=[\s=])|-[dFT])"
)
_CURL_REMOTE_NAME = re.compile(r"\s(?:-O|--remote-name(?:-all)?|--remote-header-name|-J)(?=\s)")
_WGET_SPIDER = re.compile(r"\s--spider\b")


def _sed_allowed(tokens: list[str]) -> bool:
    return not _SED_IN_PLACE.search(_joined(tokens))


def _find_allowed(tokens: list[str]) -> bool:
    return not _FIND_ACTIONS.search(_joined(tokens))


def _curl_allowed(tokens: list[str]) -> bool:
    joined = _joined(tokens)
    if _CURL_METHOD.search(joined) or _CURL_REQUEST.search(joined):
        return False
    if _CURL_UPLOAD.search(joined):
        return False
    if _CURL_REMOTE_NAME.search(joined):
        return False
    return not _writes_to_file(tokens, "-o", "--output")


def _wget_allowed(tokens: list[str]) -> bool:
    if _WGET_SPIDER.search(_joined(tokens)):
        return True
    if _writes_to_file(tokens, "-O", "--output-document"):
        return False
    return not _writes_to_file(tokens, "-o", "--output-file")


def _ping_allowed(tokens: list[str]) -> bool:
    if "-c" not in tokens:
        return False
    index = tokens.index("-c")
    try:
        count = int(tokens[index + 1])
    except (IndexError, ValueError):
        return False
    return 1 <= count <= 3


COMMAND_VALIDATORS: dict[str, Callable[[list[str]], bool]] = {
    "sed": _sed_allowed,
    "find": _find_allowed,
    "curl": _curl_allowed,
    "wget": _wget_allowed,
    "ping": _ping_allowed,
}


def validate_command_specific_args(base: str, tokens: list[str]) -> bool:
    """
    Apply the argument rules registered for `base`.

    `tokens` is the full token list including the executable itself.
    Executables without a registered rule pass unconditionally.
    """
    validator = COMMAND_VALIDATORS.get(base)
    if validator is None:
        return True
    return validator(tokens)


# ---------------------------------------------------------------------------
# Combined check
# ---------------------------------------------------------------------------


def check_command(raw: str) -> list[str]:
    """Run both layers and return every violation found."""
    violations = find_unsafe_rules(raw)
    if violations:
        return violations

    tokens = shell_split(raw.strip())
    base = command_base(tokens)
    if not validate_command_specific_args(base, tokens):
        return [f"disallowed arguments for {base}"]
    return []


def ensure_command_safe(raw: str) -> None:
    """Raise SafetyRejection when `raw` fails any rule."""
    violations = check_command(raw)
    if violations:
        logger.debug("command rejected by safety rules %s: %r", violations, raw)
        raise SafetyRejection(raw, violations)
