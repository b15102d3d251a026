# models.py
# Data contracts for the agent runtime.
# Pure schema and validation, no business logic.

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class ActionType(str, Enum):
    """Closed vocabulary of actions a plan may contain."""

    VALIDATE_ADDRESS = "validate_address"
    VALIDATE_CONTRACT = "validate_contract"
    CHECK_BALANCE = "check_balance"
    EXECUTE_TRANSFER = "execute_transfer"
    ESTIMATE_GAS = "estimate_gas"
    APPROVE_TOKEN = "approve_token"
    GET_QUOTE = "get_quote"
    EXECUTE_SWAP = "execute_swap"
    CALL_CONTRACT = "call_contract"
    DEPLOY_CONTRACT = "deploy_contract"
    QUERY_DATA = "query_data"
    NO_ACTION = "no_action"

    @classmethod
    def values(cls) -> list[str]:
        return [member.value for member in cls]


class Goal(BaseModel):
    """Free-text objective plus optional structured context."""

    text: str = ""
    context: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


class Action(BaseModel):
    """A single planned operation."""

    type: ActionType
    target: str | None = Field(default=None, description="Address or resource the action acts on.")
    params: dict[str, Any] = Field(default_factory=dict, description="Ordered handler arguments.")
    reason: str = Field(default="", description="Why the planner chose this action.")
    parallel_safe: bool = Field(
        default=False,
        description="May run concurrently with adjacent parallel-safe actions.",
    )


class Plan(BaseModel):
    """Ordered actions produced for one cycle."""

    goal: Goal
    actions: list[Action] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    dropped: int = Field(default=0, description="Actions removed during validation.")
    error: str | None = Field(default=None, description="Set when planning failed.")

    @property
    def planning_failed(self) -> bool:
        return self.error is not None

    def __len__(self) -> int:
        return len(self.actions)


class Context(BaseModel):
    """Situational snapshot handed to the planner."""

    values: dict[str, Any] = Field(default_factory=dict)
    degraded: bool = False
    missing: list[str] = Field(default_factory=list)
    built_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class ExecutionRecord(BaseModel):
    """Outcome of one action, including failures."""

    action: Action
    status: ExecutionStatus = ExecutionStatus.PENDING
    result: Any = None
    error: str | None = None
    retryable: bool | None = None
    attempt_count: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()


# ---------------------------------------------------------------------------
# Triggers and cycles
# ---------------------------------------------------------------------------


class TriggerKind(str, Enum):
    INTERVAL = "interval"
    EXTERNAL_EVENT = "external_event"
    MANUAL = "manual"


class TriggerSignal(BaseModel):
    """Message a trigger places on its agent's signal queue."""

    trigger_id: str
    kind: TriggerKind
    payload: dict[str, Any] = Field(default_factory=dict)
    fired_at: datetime = Field(default_factory=utcnow)


class CycleSummary(BaseModel):
    cycle_id: str
    trigger_id: str | None = None
    started_at: datetime
    ended_at: datetime | None = None
    action_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    planning_failed: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.planning_failed


# ---------------------------------------------------------------------------
# Memory entries
# ---------------------------------------------------------------------------


class _Entry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("entry"))
    timestamp: datetime = Field(default_factory=utcnow)
    cycle_id: str | None = None


class EventEntry(_Entry):
    """Something that happened to the agent (fire, coalesce, cycle end)."""

    kind: Literal["event"] = "event"
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)


class ActionEntry(_Entry):
    """One execution record committed by a cycle."""

    kind: Literal["action"] = "action"
    record: ExecutionRecord

    @property
    def payload(self) -> dict[str, Any]:
        return self.record.model_dump(mode="json")


MemoryEntry = Annotated[Union[EventEntry, ActionEntry], Field(discriminator="kind")]

memory_entry_adapter: TypeAdapter = TypeAdapter(MemoryEntry)
