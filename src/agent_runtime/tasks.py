# tasks.py
# On-chain task contract, seen from the runtime.
#
# The contract itself (escrow, payment transfer, reentrancy protection) is an
# external collaborator. This module only knows its state machine and fee
# rule, and exposes it to plans as a call_contract handler.

import inspect
from enum import Enum
from typing import Any, Protocol

from agent_runtime.errors import ActionExecutionError
from agent_runtime.models import Action, ActionType

BASIS_POINTS = 10_000
MAX_PLATFORM_FEE_BPS = 1_000  # 10%
DEFAULT_PLATFORM_FEE_BPS = 250


class TaskState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.PENDING: {TaskState.IN_PROGRESS, TaskState.CANCELLED},
    TaskState.IN_PROGRESS: {TaskState.COMPLETED, TaskState.FAILED},
    TaskState.COMPLETED: set(),
    TaskState.FAILED: set(),
    TaskState.CANCELLED: set(),
}

# contract method → state it moves the task to
_METHOD_TRANSITIONS: dict[str, TaskState] = {
    "start_task": TaskState.IN_PROGRESS,
    "complete_task": TaskState.COMPLETED,
    "fail_task": TaskState.FAILED,
    "cancel_task": TaskState.CANCELLED,
}
_READ_METHODS = {"get_task", "get_task_state"}
_WRITE_METHODS = {"create_task", *_METHOD_TRANSITIONS}


class TaskContract(Protocol):
    """Methods may be sync or async."""

    def create_task(self, agent: str, data: str, reward: int) -> Any: ...

    def start_task(self, task_id: int) -> Any: ...

    def complete_task(self, task_id: int, result: str) -> Any: ...

    def fail_task(self, task_id: int) -> Any: ...

    def cancel_task(self, task_id: int) -> Any: ...

    def get_task(self, task_id: int) -> Any: ...

    def get_task_state(self, task_id: int) -> TaskState: ...


def can_transition(current: TaskState, target: TaskState) -> bool:
    return target in TRANSITIONS[current]


def net_reward(reward: int, fee_bps: int = DEFAULT_PLATFORM_FEE_BPS) -> tuple[int, int]:
    """
    Split an escrowed reward into (payout, platform fee).

    Raises ValueError for a non-positive reward or a fee above the cap.
    """
    if reward <= 0:
        raise ValueError("Reward must be greater than 0.")
    if not 0 <= fee_bps <= MAX_PLATFORM_FEE_BPS:
        raise ValueError(f"Platform fee must be between 0 and {MAX_PLATFORM_FEE_BPS} basis points.")
    fee = reward * fee_bps // BASIS_POINTS
    return reward - fee, fee


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def task_handlers(contract: TaskContract) -> dict[ActionType, Any]:
    """
    Handlers that route call_contract actions to `contract`.

    The action names the method in `params.method` and its keyword arguments
    in `params.args`. State transitions are checked before a write is sent,
    so a task in the wrong state fails permanently instead of being retried.
    """

    async def call_task_contract(action: Action) -> Any:
        method = action.params.get("method", "")
        args = dict(action.params.get("args") or {})

        if method not in _READ_METHODS | _WRITE_METHODS:
            raise ActionExecutionError(f"Unsupported task contract method: {method!r}", retryable=False)

        if method == "create_task":
            try:
                net_reward(int(args.get("reward", 0)))
            except ValueError as exc:
                raise ActionExecutionError(str(exc), retryable=False) from exc
        elif method in _METHOD_TRANSITIONS:
            task_id = args.get("task_id")
            if task_id is None:
                raise ActionExecutionError(f"{method} needs a task_id.", retryable=False)
            target = _METHOD_TRANSITIONS[method]
            current = TaskState(await _maybe_await(contract.get_task_state(task_id)))
            if not can_transition(current, target):
                raise ActionExecutionError(
                    f"Task {task_id} is {current.value}, cannot {method.replace('_', ' ')}.",
                    retryable=False,
                )

        return await _maybe_await(getattr(contract, method)(**args))

    return {ActionType.CALL_CONTRACT: call_task_contract}
