# approval.py
# Command approval: allowlist, session approvals, blanket flag, human prompt.
#
# Tiers are checked in order and the first match wins:
#   allowlist → session → flag → human
#
# A command that fails the safety rules is never auto-approved by any tier;
# it can only run if the human explicitly approves it after seeing the
# failing rules. Decision parsing and prompt building are pure functions; the
# human prompt loop is the only I/O here.

import json
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from agent_runtime import safety
from agent_runtime.cancellation import Canceled, CancellationToken, race
from agent_runtime.models import (
    AllowlistEntry,
    ApprovalConfig,
    ApprovalDecision,
    ApprovalOutcome,
    AutoApprovalResult,
    CommandDraft,
)

logger = logging.getLogger(__name__)

AskHuman = Callable[[str], Awaitable[str | None]]

ALLOWED_SHELLS = ("bash", "sh")

# Interpreters whose allowlisted subcommand must be the last token,
# otherwise `python -c ...` or `npm run anything` would slip through.
STRICT_SUBCOMMAND_BASES = ("python", "python3", "pip", "node", "npm")

DEFAULT_PROMPT = "\n".join([
    "Approve running this command?",
    "  1) Yes (run once)",
    "  2) Yes, for entire session (add to in-memory approvals)",
    "  3) No, tell the AI to do something else",
    "Select 1, 2, or 3: ",
])

_DECISION_TOKENS: dict[str, ApprovalDecision] = {
    "1": ApprovalDecision.APPROVE_ONCE,
    "y": ApprovalDecision.APPROVE_ONCE,
    "yes": ApprovalDecision.APPROVE_ONCE,
    "once": ApprovalDecision.APPROVE_ONCE,
    "approve_once": ApprovalDecision.APPROVE_ONCE,
    "2": ApprovalDecision.APPROVE_SESSION,
    "always": ApprovalDecision.APPROVE_SESSION,
    "session": ApprovalDecision.APPROVE_SESSION,
    "approve_session": ApprovalDecision.APPROVE_SESSION,
    "3": ApprovalDecision.REJECT,
    "n": ApprovalDecision.REJECT,
    "no": ApprovalDecision.REJECT,
    "reject": ApprovalDecision.REJECT,
}


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def parse_decision(raw: str | None) -> ApprovalDecision | None:
    """Map a human answer to a decision, or None when it is not recognized."""
    if raw is None:
        return None
    return _DECISION_TOKENS.get(str(raw).strip().lower())


def command_signature(command: CommandDraft) -> str:
    """Stable identity used for session approvals."""
    shell = (command.shell or "").strip() or "bash"
    cwd = (command.cwd or "").strip() or "."
    return json.dumps({"shell": shell, "run": command.run or "", "cwd": cwd})


def build_prompt(command: CommandDraft, unsafe_rules: list[str] | None = None) -> str:
    lines = [f"Command: {command.normalized_run}"]
    if command.shell:
        lines.append(f"Shell:   {command.shell}")
    if command.cwd:
        lines.append(f"Cwd:     {command.cwd}")
    if command.reason:
        lines.append(f"Reason:  {command.reason}")
    if unsafe_rules:
        lines.append(f"Safety checks failed: {', '.join(unsafe_rules)}")
    lines.append("")
    lines.append(DEFAULT_PROMPT)
    return "\n".join(lines)


def _find_allowlist_entry(base: str, config: ApprovalConfig) -> AllowlistEntry | None:
    for entry in config.allowlist:
        if entry.name == base:
            return entry
    return None


def _extract_subcommand(tokens: list[str]) -> str:
    for token in tokens[1:]:
        if not token.startswith("-"):
            return token
    return ""


def _subcommand_allowed(base: str, sub: str, entry: AllowlistEntry, tokens: list[str]) -> bool:
    if not entry.subcommands:
        return True
    if sub not in entry.subcommands:
        return False
    if base in STRICT_SUBCOMMAND_BASES:
        index = tokens.index(sub)
        return index == len(tokens) - 1
    return True


def _shell_allowed(command: CommandDraft) -> bool:
    if command.shell is None:
        return True
    return command.shell.strip().lower() in ALLOWED_SHELLS


def is_preapproved_command(command: CommandDraft | None, config: ApprovalConfig) -> bool:
    """True when `command` is safe and matches a static allowlist entry."""
    if command is None:
        return False
    run = command.normalized_run
    if not run or not safety.is_command_string_safe(run):
        return False
    if not _shell_allowed(command):
        return False

    tokens = safety.shell_split(run)
    if not tokens:
        return False
    base = safety.command_base(tokens)

    entry = _find_allowlist_entry(base, config)
    if entry is None:
        return False
    if not _subcommand_allowed(base, _extract_subcommand(tokens), entry, tokens):
        return False
    return safety.validate_command_specific_args(base, tokens)


def load_allowlist_config(path: str | os.PathLike | None = None) -> ApprovalConfig:
    """
    Read the allowlist JSON file.

    A missing file yields an empty allowlist. A malformed file logs a warning
    and also yields an empty allowlist.
    """
    cfg_path = Path(path) if path else Path.cwd() / "approved_commands.json"
    if not cfg_path.exists():
        return ApprovalConfig()
    try:
        data = json.loads(cfg_path.read_text(encoding="utf-8"))
        if not isinstance(data, dict) or "allowlist" not in data:
            return ApprovalConfig()
        return ApprovalConfig.model_validate(data)
    except (OSError, json.JSONDecodeError, PydanticValidationError) as exc:
        logger.warning("Failed to load %s: %s", cfg_path, exc)
        return ApprovalConfig()


# ---------------------------------------------------------------------------
# Session approvals
# ---------------------------------------------------------------------------


class SessionApprovals:
    """In-memory set of approved command signatures. Never persisted."""

    def __init__(self) -> None:
        self._signatures: set[str] = set()

    def approve(self, command: CommandDraft) -> None:
        self._signatures.add(command_signature(command))

    def is_approved(self, command: CommandDraft) -> bool:
        return command_signature(command) in self._signatures

    def reset(self) -> None:
        self._signatures.clear()

    def __len__(self) -> int:
        return len(self._signatures)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ApprovalManager:
    """
    Decides whether a command may run.

    `ask_human` is an async callable taking the prompt text and returning the
    raw answer. Without it, commands that need a human are rejected.
    """

    def __init__(self, config: ApprovalConfig | None = None,
                 session: SessionApprovals | None = None,
                 auto_approve: bool | Callable[[], bool] = False,
                 ask_human: AskHuman | None = None,
                 token: CancellationToken | None = None,
                 on_notice: Callable[[str, str], None] | None = None) -> None:
        self.config = config or ApprovalConfig()
        self.session = session or SessionApprovals()
        self._auto_approve = auto_approve
        self.ask_human = ask_human
        self.token = token
        self._on_notice = on_notice

    @property
    def has_human_channel(self) -> bool:
        return self.ask_human is not None

    def _auto_approve_flag(self) -> bool:
        flag = self._auto_approve
        return bool(flag()) if callable(flag) else bool(flag)

    def _notice(self, level: str, message: str) -> None:
        logger.info(message)
        if self._on_notice is not None:
            self._on_notice(level, message)

    def should_auto_approve(self, command: CommandDraft | None,
                            check_safety: bool = True) -> AutoApprovalResult:
        if command is None:
            return AutoApprovalResult(approved=False)

        if is_preapproved_command(command, self.config):
            return AutoApprovalResult(approved=True, source="allowlist")

        if check_safety and safety.check_command(command.normalized_run):
            return AutoApprovalResult(approved=False)

        if self.session.is_approved(command):
            return AutoApprovalResult(approved=True, source="session")

        if self._auto_approve_flag():
            return AutoApprovalResult(approved=True, source="flag")

        return AutoApprovalResult(approved=False)

    async def request_human_decision(self, command: CommandDraft,
                                     unsafe_rules: list[str] | None = None) -> ApprovalOutcome:
        """
        Prompt until the human gives a recognized answer.

        Unrecognized input re-prompts. A triggered cancellation token ends the
        prompt with a rejection whose reason is `canceled`.
        """
        if self.ask_human is None:
            return ApprovalOutcome(decision=ApprovalDecision.REJECT, reason="no_human_channel")

        prompt = build_prompt(command, unsafe_rules)
        while True:
            answer = await race(self.ask_human(prompt), self.token)
            if isinstance(answer, Canceled):
                self._notice("warn", "Approval prompt canceled.")
                return ApprovalOutcome(decision=ApprovalDecision.REJECT, reason="canceled")

            decision = parse_decision(answer)
            if decision == ApprovalDecision.APPROVE_ONCE:
                self._notice("success", "Approved (run once).")
                return ApprovalOutcome(decision=decision)
            if decision == ApprovalDecision.APPROVE_SESSION:
                self.record_session_approval(command)
                self._notice("success", "Approved and added to session approvals.")
                return ApprovalOutcome(decision=decision)
            if decision == ApprovalDecision.REJECT:
                self._notice("warn", "Command execution canceled by human (requested alternative).")
                return ApprovalOutcome(decision=decision, reason="human_declined")

            self._notice("warn", "Please enter 1, 2, or 3.")

    def record_session_approval(self, command: CommandDraft) -> None:
        self.session.approve(command)
