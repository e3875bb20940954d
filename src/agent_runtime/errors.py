# errors.py
# Exception taxonomy for the agent runtime.
#
# Pure helpers raise these; the pass orchestrator catches them and turns each
# one into a step observation or an `error` event. None of them may escape a
# pass. Duplicate reconciler signatures are not errors and have no class here.

from typing import Any


class AgentRuntimeError(Exception):
    """Base class for every runtime-level failure."""


class ValidationError(AgentRuntimeError):
    """Raised when a model payload does not match the plan response contract."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        summary = "; ".join(self.errors) if self.errors else "unknown validation failure"
        super().__init__(f"Plan response failed validation: {summary}")


class SafetyRejection(AgentRuntimeError):
    """Raised when a shell command fails one or more static safety rules."""

    def __init__(self, command: str, rules: list[str]) -> None:
        self.command = command
        self.rules = list(rules)
        super().__init__(f"Command rejected by safety rules: {', '.join(self.rules)}")


class ApprovalRejection(AgentRuntimeError):
    """Raised when the human declines to run a command."""

    def __init__(self, reason: str = "human_declined") -> None:
        self.reason = reason
        super().__init__(f"Command rejected: {reason}")


class ExecutionError(AgentRuntimeError):
    """
    Wraps an unsuccessful command result.

    Nothing inside the runtime raises this: failed commands travel as
    CommandResult values and become observations. The class completes the
    taxonomy for embedding callers that want to raise on a failed result.
    """

    def __init__(self, result: Any, message: str = "") -> None:
        self.result = result
        super().__init__(message or "Command did not complete successfully.")


class ParseRecoveryExhausted(AgentRuntimeError):
    """Raised when every JSON-recovery strategy failed on a model response."""

    def __init__(self, attempts: list[Any], raw: str = "") -> None:
        self.attempts = list(attempts)
        self.raw = raw
        strategies = ", ".join(getattr(a, "strategy", "?") for a in self.attempts)
        super().__init__(f"Failed to parse assistant JSON response (tried: {strategies}).")
