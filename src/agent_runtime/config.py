# config.py
# Immutable configuration passed once at Agent construction.
#
# The runtime never reads the environment on its own. load_env_settings() is
# the single env touchpoint and is only used by entry points.

import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from agent_runtime.models import ActionType

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-3.5-haiku"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class PlannerConfig(_Frozen):
    timeout: float = Field(default=30.0, gt=0, description="Hard limit on the reasoning call, seconds.")
    temperature: float = Field(default=0.3, ge=0, le=2)
    max_tokens: int = Field(default=1000, gt=0)
    max_actions: int = Field(default=50, gt=0)
    system_prompt: str | None = None


class ExecutorConfig(_Frozen):
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0, description="First backoff delay, seconds.")
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.25, ge=0, description="Upper bound of the random backoff stretch.")
    max_concurrency: int = Field(default=4, ge=1)
    action_timeout: float | None = Field(default=30.0, gt=0)
    dry_run: bool = False


class ContextConfig(_Frozen):
    timeout: float = Field(default=5.0, gt=0)
    recent_entries: int = Field(default=10, ge=0, description="Memory entries summarised into context.")


class MemoryConfig(_Frozen):
    capacity: int = Field(default=1000, ge=1)


class RateLimit(_Frozen):
    max_actions: int = Field(gt=0)
    window: float = Field(gt=0, description="Sliding window, seconds.")


class PolicyConfig(_Frozen):
    """
    Operational limits checked between planning and execution.

    The defaults allow everything. An empty allowed_actions means every
    action type is allowed unless it is blocked; an empty allowed_senders
    means any signal sender may start a cycle.
    """

    allowed_actions: tuple[ActionType, ...] = ()
    blocked_actions: tuple[ActionType, ...] = ()
    min_transfer_amount: int | None = Field(default=None, ge=0)
    max_transfer_amount: int | None = Field(default=None, ge=0)
    cap_transfer_amount: bool = Field(
        default=False,
        description="Lower an oversized amount to max_transfer_amount instead of denying.",
    )
    max_gas_limit: int | None = Field(default=None, gt=0)
    rate_limit: RateLimit | None = None
    require_approval: bool = False
    allowed_senders: tuple[str, ...] = ()


class AgentConfig(_Frozen):
    """Everything an Agent needs, fixed for its lifetime."""

    name: str
    owner: str = ""
    description: str = ""
    capabilities: tuple[str, ...] = ()
    goal: str = ""
    goal_context: dict = Field(default_factory=dict)
    planner: PlannerConfig = Field(default_factory=PlannerConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)


class EnvSettings(_Frozen):
    api_key: str | None = None
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    log_level: str = "INFO"


def load_env_settings() -> EnvSettings:
    """Read reasoning endpoint settings from the environment (and a .env file)."""
    load_dotenv()
    return EnvSettings(
        api_key=os.getenv("OPENROUTER_API_KEY"),
        model=os.getenv("AGENT_MODEL", DEFAULT_MODEL),
        base_url=os.getenv("AGENT_BASE_URL", DEFAULT_BASE_URL),
        log_level=os.getenv("AGENT_LOG_LEVEL", "INFO"),
    )
