# triggers.py
# Sources of cycle-start signals.
#
# A trigger never calls into the agent directly. It hands a TriggerSignal to
# the sink it was started with (the agent's signal queue) and that is all.
#
# Contract shared by every trigger:
#   start() is idempotent while running
#   stop() returns only once no further signal can be emitted
#   misfires are logged here and never propagate

import asyncio
import contextlib
import operator
from collections.abc import AsyncIterable, Callable
from typing import Any, Literal

import structlog
from pydantic import BaseModel

from agent_runtime.errors import TriggerError
from agent_runtime.models import TriggerKind, TriggerSignal, new_id

logger = structlog.get_logger(__name__)

Sink = Callable[[TriggerSignal], None]


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class Trigger:
    kind: TriggerKind

    def __init__(self, trigger_id: str | None = None) -> None:
        self.id = trigger_id or new_id(self.kind.value)
        self.fire_count = 0
        self.last_fired_at = None
        self._sink: Sink | None = None
        self._running = False

    async def start(self, sink: Sink) -> None:
        if self._running:
            return
        self._sink = sink
        self._running = True
        await self._on_start()
        logger.debug("trigger_started", trigger_id=self.id, kind=self.kind.value)

    async def stop(self) -> None:
        if not self._running:
            return
        # Flip the flag first: from here on _emit() is a no-op, then join.
        self._running = False
        await self._on_stop()
        self._sink = None
        logger.debug("trigger_stopped", trigger_id=self.id, kind=self.kind.value)

    def is_running(self) -> bool:
        return self._running

    async def _on_start(self) -> None:
        pass

    async def _on_stop(self) -> None:
        pass

    def _emit(self, payload: dict[str, Any] | None = None) -> bool:
        if not self._running or self._sink is None:
            logger.info("fire_ignored", trigger_id=self.id, reason="trigger not running")
            return False

        signal = TriggerSignal(trigger_id=self.id, kind=self.kind, payload=payload or {})
        try:
            self._sink(signal)
        except Exception as exc:
            error = TriggerError(f"Trigger {self.id} could not deliver its signal: {exc}")
            logger.error("trigger_misfire", trigger_id=self.id, error=str(error))
            return False

        self.fire_count += 1
        self.last_fired_at = signal.fired_at
        return True

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "running": self._running,
            "fire_count": self.fire_count,
            "last_fired_at": self.last_fired_at.isoformat() if self.last_fired_at else None,
        }


# ---------------------------------------------------------------------------
# Manual
# ---------------------------------------------------------------------------


class ManualTrigger(Trigger):
    """Fires only when the caller says so."""

    kind = TriggerKind.MANUAL

    def fire(self, payload: dict[str, Any] | None = None) -> bool:
        return self._emit(payload)


# ---------------------------------------------------------------------------
# Interval
# ---------------------------------------------------------------------------


class IntervalTrigger(Trigger):
    """
    Fires every `interval` seconds.

    Ticks that fall behind (a slow event loop) are skipped rather than
    replayed. Whether a tick becomes a cycle is the agent's call: a tick that
    lands while a cycle is running is coalesced there.
    """

    kind = TriggerKind.INTERVAL

    def __init__(
        self,
        interval: float,
        start_immediately: bool = False,
        max_executions: int | None = None,
        trigger_id: str | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("Interval must be positive.")
        super().__init__(trigger_id)
        self.interval = interval
        self.start_immediately = start_immediately
        self.max_executions = max_executions
        self._task: asyncio.Task | None = None

    async def _on_start(self) -> None:
        self.fire_count = 0
        self._task = asyncio.create_task(self._run(), name=f"trigger:{self.id}")

    async def _on_stop(self) -> None:
        await _join(self._task)
        self._task = None

    def _exhausted(self) -> bool:
        return self.max_executions is not None and self.fire_count >= self.max_executions

    def _tick(self) -> None:
        self._emit({"execution": self.fire_count, "interval": self.interval})
        if self._exhausted():
            logger.info("trigger_exhausted", trigger_id=self.id, executions=self.fire_count)
            self._running = False

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        if self.start_immediately:
            self._tick()

        next_at = loop.time() + self.interval
        while self._running:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            next_at += self.interval
            if next_at < loop.time():
                skipped = int((loop.time() - next_at) // self.interval) + 1
                logger.warning("interval_ticks_skipped", trigger_id=self.id, skipped=skipped)
                next_at = loop.time() + self.interval
            if self._running:
                self._tick()


# ---------------------------------------------------------------------------
# External events
# ---------------------------------------------------------------------------

Op = Literal["eq", "ne", "gt", "gte", "lt", "lte", "contains"]

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "contains": lambda field, value: str(value) in str(field),
}


class TriggerCondition(BaseModel):
    """`field` is a dotted path into the event, e.g. "args.amount"."""

    field: str
    op: Op = "eq"
    value: Any = None

    def matches(self, event: dict[str, Any]) -> bool:
        current: Any = event
        for part in self.field.split("."):
            if not isinstance(current, dict) or part not in current:
                return False
            current = current[part]
        try:
            return bool(_COMPARATORS[self.op](current, self.value))
        except TypeError:
            return False


class ExternalEventTrigger(Trigger):
    """
    Fires once per qualifying event from an external source.

    Events arrive either through `deliver()` or from `source`, an async
    iterable (or a zero-argument callable returning one, so a restarted
    trigger gets a fresh stream) consumed by a background task. Delivery may
    be at-least-once; duplicates are not filtered here.
    """

    kind = TriggerKind.EXTERNAL_EVENT

    def __init__(
        self,
        source: AsyncIterable[dict] | Callable[[], AsyncIterable[dict]] | None = None,
        conditions: list[TriggerCondition] | None = None,
        event_name: str | None = None,
        trigger_id: str | None = None,
    ) -> None:
        super().__init__(trigger_id)
        self.source = source
        self.conditions = list(conditions or [])
        self.event_name = event_name
        self._task: asyncio.Task | None = None

    def qualifies(self, event: dict[str, Any]) -> bool:
        if self.event_name is not None and event.get("event") != self.event_name:
            return False
        return all(condition.matches(event) for condition in self.conditions)

    def deliver(self, event: dict[str, Any]) -> bool:
        if not self.qualifies(event):
            logger.debug("event_not_qualifying", trigger_id=self.id)
            return False
        return self._emit({"event": event})

    async def _on_start(self) -> None:
        if self.source is not None:
            self._task = asyncio.create_task(self._consume(), name=f"trigger:{self.id}")

    async def _on_stop(self) -> None:
        await _join(self._task)
        self._task = None

    async def _consume(self) -> None:
        stream = self.source() if callable(self.source) else self.source
        try:
            async for event in stream:
                if not self._running:
                    break
                self.deliver(event)
        except Exception as exc:
            error = TriggerError(f"Event source for {self.id} failed: {exc}")
            logger.error("event_source_failed", trigger_id=self.id, error=str(error))


async def _join(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task

