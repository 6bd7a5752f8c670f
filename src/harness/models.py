"""Core data models for the execution harness."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ── Enums ────────────────────────────────────────────────────────────────────


class RunState(str, enum.Enum):
    """Lifecycle of a single sandbox run.

    created → started → {completed | timed_out | resource_exceeded | crashed}
    → cleaned_up.  ``cleaned_up`` is reachable from every other state.
    """

    CREATED = "created"
    STARTED = "started"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    RESOURCE_EXCEEDED = "resource_exceeded"
    CRASHED = "crashed"
    CLEANED_UP = "cleaned_up"


class RoutingStrategy(str, enum.Enum):
    """How the router fulfils a tool call."""

    META = "meta"
    FILESYSTEM = "filesystem"
    DIRECT = "mcp-direct"


# ── Session ──────────────────────────────────────────────────────────────────


class Session(BaseModel):
    """One task invocation's isolation and authorization scope."""

    session_id: str = Field(description="uuid4, never reused")
    user_id: str
    auth_token: str = Field(repr=False, description="Raw bridge credential (hex)")
    skills_dir: Path = Field(description="Persistent per-user storage")
    workspace_dir: Path = Field(description="Ephemeral per-session storage")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deadline: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.deadline


# ── Execution ────────────────────────────────────────────────────────────────


class ExecutionResult(BaseModel):
    """Outcome of one sandbox run. Produced exactly once per run."""

    output: Any = None
    logs: list[str] = Field(default_factory=list)
    error: str | None = None
    state: RunState = RunState.CREATED
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


# ── Tool calls ───────────────────────────────────────────────────────────────


class ToolCallContext(BaseModel):
    """One inbound tool invocation."""

    tool_name: str
    input: Any = Field(default_factory=dict)
    session_id: str
    strategy: str | None = Field(default=None, description="Optional caller override")


class ToolCallResult(BaseModel):
    """The single result produced for a ToolCallContext."""

    success: bool
    result: Any = None
    error: str | None = None
    strategy: RoutingStrategy
    elapsed_ms: float = 0.0

    def to_wire(self) -> dict[str, Any]:
        """Bridge response shape: ``{success, result}`` or ``{success, error}``."""
        if self.success:
            return {"success": True, "result": self.result}
        return {"success": False, "error": self.error}


class CapabilityDescriptor(BaseModel):
    """Immutable description of a registered capability."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object"})
    category: str = ""

    @model_validator(mode="before")
    @classmethod
    def _derive_category(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("category"):
            name = data.get("name", "")
            data = {**data, "category": name.split("__", 1)[0] if "__" in name else "general"}
        return data

    @property
    def operation(self) -> str:
        """Name of the operation within its category."""
        prefix = f"{self.category}__"
        if self.name.startswith(prefix):
            return self.name[len(prefix):]
        return self.name

    def to_public(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
            "category": self.category,
        }


# ── Agent loop ───────────────────────────────────────────────────────────────


ReplyType = Literal["code_execution", "tool_call", "text"]


class ModelReply(BaseModel):
    """What the language-model callable returns for one turn."""

    type: ReplyType
    code: str | None = None
    text: str | None = None
    tool_name: str | None = None
    tool_input: Any = None


class TaskResult(BaseModel):
    """Model-facing result of ``SessionOrchestrator.run_task``."""

    session_id: str | None = None
    kind: ReplyType
    message: str
    output: Any = None
    logs: list[str] = Field(default_factory=list)
    error: str | None = None
    result: Any = None
