# executor.py
# Runs a Plan's actions against registered capability handlers.
#
# execute() never raises: every outcome, failures included, comes back as an
# ExecutionRecord in plan order.
#
# Ordering:
#   sequential by default
#   adjacent parallel_safe actions run as one bounded-concurrency group
#   the next non-parallel action waits for the whole group (barrier)
#
# With a Policy attached, each action is checked before its handler is looked
# up. A denied action comes back Failed with error "PolicyDenied".

import asyncio
import inspect
import random
from collections.abc import Callable
from typing import Any

import structlog

from agent_runtime.config import ExecutorConfig
from agent_runtime.errors import HandlerNotFound
from agent_runtime.models import Action, ActionType, ExecutionRecord, ExecutionStatus, Plan, utcnow
from agent_runtime.policy import POLICY_DENIED, Policy

logger = structlog.get_logger(__name__)

NO_HANDLER = "NoHandler"
CANCELLED = "Cancelled"

Handler = Callable[[Action], Any]


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------


class HandlerRegistry:
    """Explicit ActionType → handler map."""

    def __init__(self, handlers: dict[ActionType, Handler] | None = None) -> None:
        self._handlers: dict[ActionType, Handler] = {}
        for action_type, handler in (handlers or {}).items():
            self.register(action_type, handler)

    def register(self, action_type: ActionType | str, handler: Handler) -> None:
        self._handlers[ActionType(action_type)] = handler

    def unregister(self, action_type: ActionType | str) -> None:
        self._handlers.pop(ActionType(action_type), None)

    def get(self, action_type: ActionType) -> Handler | None:
        return self._handlers.get(action_type)

    def require(self, action_type: ActionType) -> Handler:
        handler = self._handlers.get(action_type)
        if handler is None:
            raise HandlerNotFound(f"No handler registered for action: {action_type.value}")
        return handler

    def types(self) -> list[ActionType]:
        return list(self._handlers)

    def __contains__(self, action_type: object) -> bool:
        return action_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


def _is_cancelled(cancel: asyncio.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


class Executor:
    def __init__(
        self,
        registry: HandlerRegistry | None = None,
        config: ExecutorConfig | None = None,
        rng: random.Random | None = None,
        policy: Policy | None = None,
    ) -> None:
        self._registry = registry if registry is not None else HandlerRegistry()
        self._config = config or ExecutorConfig()
        self._rng = rng or random.Random()
        self._policy = policy

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based): capped exponential plus jitter."""
        delay = min(self._config.base_delay * (2 ** (attempt - 1)), self._config.max_delay)
        return delay * (1 + self._rng.uniform(0, self._config.jitter))

    async def execute(self, plan: Plan, cancel: asyncio.Event | None = None) -> list[ExecutionRecord]:
        """
        Execute every action of `plan` and return one record per action.

        `cancel` is polled between actions and before each backoff sleep.
        Once it is set the current attempt finishes, nothing new starts, and
        the remaining actions come back as Pending records.
        """
        records: list[ExecutionRecord] = []
        actions = plan.actions
        index = 0

        while index < len(actions):
            if _is_cancelled(cancel):
                records.extend(self._skipped(a) for a in actions[index:])
                break

            if actions[index].parallel_safe:
                end = index
                while end < len(actions) and actions[end].parallel_safe:
                    end += 1
                records.extend(await self._run_group(actions[index:end], cancel))
                index = end
            else:
                records.append(await self._run_action(actions[index], cancel))
                index += 1

        return records

    async def _run_group(self, group: list[Action], cancel: asyncio.Event | None) -> list[ExecutionRecord]:
        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def bounded(action: Action) -> ExecutionRecord:
            async with semaphore:
                if _is_cancelled(cancel):
                    return self._skipped(action)
                return await self._run_action(action, cancel)

        return list(await asyncio.gather(*(bounded(a) for a in group)))

    async def _run_action(self, action: Action, cancel: asyncio.Event | None) -> ExecutionRecord:
        if self._policy is not None:
            decision = self._policy.check(action)
            if not decision.allowed:
                record = ExecutionRecord(action=action, started_at=utcnow())
                return self._finish(
                    record,
                    ExecutionStatus.FAILED,
                    error=POLICY_DENIED,
                    retryable=False,
                    result={"reason": decision.reason},
                )
            action = decision.action

        record = ExecutionRecord(action=action, started_at=utcnow())

        try:
            handler = self._registry.require(action.type)
        except HandlerNotFound as exc:
            logger.warning("handler_not_found", action_type=action.type.value, error=str(exc))
            return self._finish(record, ExecutionStatus.FAILED, error=NO_HANDLER, retryable=False)

        if self._config.dry_run:
            record.attempt_count = 1
            return self._finish(
                record,
                ExecutionStatus.SUCCESS,
                result={"simulated": True, "action": action.model_dump(mode="json")},
            )

        for attempt in range(1, self._config.max_attempts + 1):
            record.attempt_count = attempt
            try:
                result = await self._invoke(handler, action)
            except Exception as exc:
                retryable = getattr(exc, "retryable", True) is not False
                record.error = str(exc) or type(exc).__name__
                record.retryable = retryable

                if not retryable or attempt == self._config.max_attempts:
                    break
                if _is_cancelled(cancel):
                    logger.info("retry_cancelled", action_type=action.type.value, attempt=attempt)
                    break

                delay = self.backoff(attempt)
                logger.info(
                    "action_retry",
                    action_type=action.type.value,
                    attempt=attempt,
                    error=record.error,
                    delay=round(delay, 3),
                )
                await asyncio.sleep(delay)
            else:
                return self._finish(
                    record, ExecutionStatus.SUCCESS, result=result, error=None, retryable=None
                )

        logger.warning(
            "action_failed",
            action_type=action.type.value,
            attempts=record.attempt_count,
            error=record.error,
        )
        return self._finish(record, ExecutionStatus.FAILED, error=record.error, retryable=record.retryable)

    async def _invoke(self, handler: Handler, action: Action) -> Any:
        if inspect.iscoroutinefunction(handler):
            call = handler(action)
        else:
            call = self._call_sync(handler, action)
        if self._config.action_timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self._config.action_timeout)
        except asyncio.TimeoutError as exc:
            raise TimeoutError(f"Handler timed out after {self._config.action_timeout}s") from exc

    @staticmethod
    async def _call_sync(handler: Handler, action: Action) -> Any:
        # A timed-out worker thread is abandoned, not killed.
        outcome = await asyncio.to_thread(handler, action)
        if inspect.isawaitable(outcome):
            return await outcome
        return outcome

    @staticmethod
    def _finish(record: ExecutionRecord, status: ExecutionStatus, **fields: Any) -> ExecutionRecord:
        record.status = status
        for name, value in fields.items():
            setattr(record, name, value)
        record.ended_at = utcnow()
        return record

    @staticmethod
    def _skipped(action: Action) -> ExecutionRecord:
        return ExecutionRecord(action=action, status=ExecutionStatus.PENDING, error=CANCELLED)
