# models.py
# Data contracts for the agent runtime.
# No business logic lives here: pure schema and validation.
#
# Field names and enum values mirror the model tool protocol exactly; renaming
# any of them breaks compatibility with the plan tool definition in schema.py.

import math
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TIMEOUT_SEC = 60
DEFAULT_TAIL_LINES = 200
DEFAULT_MAX_BYTES = 16 * 1024


class StepStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


TERMINAL_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.ABANDONED})


class CommandDraft(BaseModel):
    """A shell invocation proposed by the model, not yet validated or approved."""

    model_config = ConfigDict(extra="ignore")

    reason: str = Field(default="", description="Why the command is needed.")
    shell: str | None = Field(default=None, description="Shell executable, e.g. bash.")
    run: str | None = Field(default=None, description="Command string to execute.")
    cwd: str | None = Field(default=None, description="Working directory.")
    timeout_sec: int = Field(default=DEFAULT_TIMEOUT_SEC, ge=1)
    filter_regex: str | None = None
    tail_lines: int | None = Field(default=None, ge=0)
    max_bytes: int | None = Field(default=None, ge=1)

    @property
    def normalized_run(self) -> str:
        return (self.run or "").strip()


class PlanStep(BaseModel):
    """A single node in the plan DAG."""

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    title: str = ""
    status: StepStatus = StepStatus.PENDING
    waitingForId: list[str] = Field(default_factory=list)
    command: CommandDraft | None = None
    observation: dict[str, Any] | None = None
    priority: float | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("priority", mode="before")
    @classmethod
    def _coerce_priority(cls, value: Any) -> float | None:
        # Non-numeric priorities sort last instead of failing validation.
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return number if math.isfinite(number) else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class PlanResponse(BaseModel):
    """The structured envelope the model returns through the plan tool."""

    model_config = ConfigDict(extra="ignore")

    message: str
    plan: list[PlanStep]


class CommandResult(BaseModel):
    """Outcome of one command invocation. Never an exception."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    killed: bool = False
    runtime_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


class ApprovalDecision(str, Enum):
    AUTO = "auto"
    APPROVE_ONCE = "approve_once"
    APPROVE_SESSION = "approve_session"
    REJECT = "reject"


class ApprovalOutcome(BaseModel):
    decision: ApprovalDecision
    reason: str | None = None


AutoApprovalSource = Literal["allowlist", "session", "flag", "none"]


class AutoApprovalResult(BaseModel):
    approved: bool
    source: AutoApprovalSource = "none"


class AllowlistEntry(BaseModel):
    name: str
    subcommands: list[str] | None = None


class ApprovalConfig(BaseModel):
    allowlist: list[AllowlistEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Model collaborators
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    name: str
    call_id: str = ""
    arguments: str = ""


class Completion(BaseModel):
    """Normalized view of one model completion."""

    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)


class CompletionResult(BaseModel):
    status: Literal["success", "canceled"]
    completion: Completion | None = None
    reason: Any = None


class HistoryEntry(BaseModel):
    """One message in the conversation forwarded to the model."""

    role: Literal["system", "user", "assistant"]
    content: str
    pass_index: int = 0
    kind: Literal["chat-message", "observation", "summary"] = "chat-message"

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}
