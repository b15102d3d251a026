# agent.py
# The orchestrator: lifecycle state machine plus the cycle algorithm.
#
# Control flow for one cycle:
#   trigger fires → signal queue → scheduler task → (coalesce | start cycle)
#   → context → plan → execute → commit to memory → telemetry
#
# Exactly one scheduler task consumes the signal queue, and a cycle only
# starts when none is in flight, so cycles never overlap. Anything a cycle
# raises is contained at the cycle boundary; only FatalRuntimeError (memory
# or guard faults) moves the agent to Errored.

import asyncio
import contextlib
from collections.abc import Iterator
from enum import Enum
from typing import Any

import structlog

from agent_runtime.config import AgentConfig
from agent_runtime.context import ContextBuilder, ContextSource
from agent_runtime.errors import AgentStateError, FatalRuntimeError, PolicyDenied
from agent_runtime.executor import Executor, HandlerRegistry
from agent_runtime.handlers import default_registry
from agent_runtime.memory import Memory, MemoryFilter
from agent_runtime.models import (
    ActionEntry,
    CycleSummary,
    EventEntry,
    ExecutionStatus,
    Goal,
    TriggerKind,
    TriggerSignal,
    new_id,
    utcnow,
)
from agent_runtime.persistence import PersistenceBackend
from agent_runtime.planner import Planner
from agent_runtime.policy import Policy
from agent_runtime.reasoning import Reasoner
from agent_runtime.telemetry import TelemetrySink
from agent_runtime.triggers import Trigger

logger = structlog.get_logger(__name__)

CYCLE_EVENTS = ("cycle_completed", "cycle_failed")


class AgentState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERRORED = "errored"


TRANSITIONS: dict[AgentState, set[AgentState]] = {
    AgentState.IDLE: {AgentState.STARTING},
    AgentState.STARTING: {AgentState.RUNNING, AgentState.ERRORED},
    AgentState.RUNNING: {AgentState.STOPPING, AgentState.ERRORED},
    AgentState.STOPPING: {AgentState.STOPPED, AgentState.ERRORED},
    AgentState.STOPPED: {AgentState.STARTING},
    AgentState.ERRORED: {AgentState.IDLE},
}


class Agent:
    """
    An autonomous agent driven by triggers.

    Example:
        agent = Agent(
            AgentConfig(name="watcher", goal="Check balance of 0xABC"),
            reasoner=OpenAIReasoner(api_key=...),
            handlers=default_registry(check_balance=lookup_balance),
            triggers=[IntervalTrigger(60)],
        )
        await agent.start()
        ...
        await agent.stop()
    """

    def __init__(
        self,
        config: AgentConfig,
        reasoner: Reasoner,
        handlers: HandlerRegistry | None = None,
        triggers: list[Trigger] | None = None,
        persistence: PersistenceBackend | None = None,
        telemetry: TelemetrySink | None = None,
        context_sources: dict[str, ContextSource] | None = None,
        agent_id: str | None = None,
    ) -> None:
        self.config = config
        self.agent_id = agent_id or new_id("agent")
        self._log = logger.bind(agent_id=self.agent_id, agent=config.name)

        self.memory = Memory(config.memory.capacity, backend=persistence)
        self.context_builder = ContextBuilder(
            memory=self.memory,
            sources=context_sources,
            config=config.context,
            identity=self.identity(),
        )
        self.planner = Planner(reasoner, config.planner)
        self.policy = Policy(config.policy)
        self.executor = Executor(
            handlers if handlers is not None else default_registry(),
            config.executor,
            policy=self.policy,
        )
        self._telemetry = telemetry

        self._triggers: dict[str, Trigger] = {t.id: t for t in (triggers or [])}
        self._state = AgentState.IDLE
        self._queue: asyncio.Queue | None = None
        self._scheduler: asyncio.Task | None = None
        self._cycle_task: asyncio.Task | None = None
        self._cycle_lock = asyncio.Lock()
        self._cancel = asyncio.Event()
        self._current_cycle: str | None = None
        self._teardown: asyncio.Task | None = None

        self.cycles_run = 0
        self.coalesced = 0
        self.last_cycle: CycleSummary | None = None
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> AgentState:
        return self._state

    def identity(self) -> dict[str, Any]:
        return {
            "id": self.agent_id,
            "name": self.config.name,
            "owner": self.config.owner,
            "capabilities": list(self.config.capabilities),
        }

    @property
    def triggers(self) -> list[Trigger]:
        return list(self._triggers.values())

    def is_busy(self) -> bool:
        """True while a cycle is in flight (or scheduled to start)."""
        if self._cycle_lock.locked():
            return True
        return self._cycle_task is not None and not self._cycle_task.done()

    def status(self) -> dict[str, Any]:
        return {
            "agent": self.identity(),
            "state": self._state.value,
            "busy": self.is_busy(),
            "cycles_run": self.cycles_run,
            "coalesced": self.coalesced,
            "memory": {"entries": len(self.memory), "capacity": self.memory.capacity,
                       "volatile": self.memory.volatile},
            "triggers": [t.describe() for t in self._triggers.values()],
            "last_cycle": self.last_cycle.model_dump(mode="json") if self.last_cycle else None,
            "last_error": self.last_error,
        }

    def cycles(self) -> Iterator[CycleSummary]:
        """Cycle summaries still held in memory, oldest first."""
        for entry in self.memory.query(MemoryFilter(kind="event")):
            if entry.name in CYCLE_EVENTS:
                yield CycleSummary.model_validate(entry.payload)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _set_state(self, new: AgentState) -> None:
        if new not in TRANSITIONS[self._state]:
            raise AgentStateError(f"Cannot move from {self._state.value} to {new.value}.")
        self._log.info("agent_state", old=self._state.value, new=new.value)
        self._state = new

    async def start(self) -> None:
        if self._state in (AgentState.STARTING, AgentState.RUNNING):
            self._log.info("start_ignored", state=self._state.value)
            return
        if self._state not in (AgentState.IDLE, AgentState.STOPPED):
            raise AgentStateError(f"Cannot start an agent that is {self._state.value}.")

        self._set_state(AgentState.STARTING)
        self._cancel = asyncio.Event()
        self._queue = asyncio.Queue()

        for trigger in list(self._triggers.values()):
            if self._state is not AgentState.STARTING:
                break
            await self._start_trigger(trigger)

        if self._state is not AgentState.STARTING:
            # stop() ran while triggers were starting; it owns the outcome.
            self._log.info("start_superseded", state=self._state.value)
            await self._stop_triggers()
            return

        self._set_state(AgentState.RUNNING)
        self._scheduler = asyncio.create_task(self._schedule(), name=f"scheduler:{self.agent_id}")
        self._record_safely(EventEntry(name="agent_started", payload={"triggers": list(self._triggers)}))
        self._emit("agent_started", {"agent_id": self.agent_id, "triggers": len(self._triggers)})
        await self.memory.flush_async()

    async def stop(self) -> None:
        """
        Stop triggers, let the in-flight cycle drain, then stop the scheduler.

        Cancellation is cooperative: the executor finishes the attempt it is
        on and starts nothing new.
        """
        if self._state not in (AgentState.STARTING, AgentState.RUNNING):
            self._log.info("stop_ignored", state=self._state.value)
            return

        self._set_state(AgentState.STOPPING)
        await self._stop_triggers()
        self._cancel.set()

        if self._cycle_task is not None:
            await asyncio.gather(self._cycle_task, return_exceptions=True)
        async with self._cycle_lock:
            pass

        await self._stop_scheduler()

        if self._state is AgentState.STOPPING:
            self._set_state(AgentState.STOPPED)
            self._record_safely(EventEntry(name="agent_stopped", payload={"cycles_run": self.cycles_run}))
            self._emit("agent_stopped", {"agent_id": self.agent_id, "cycles_run": self.cycles_run})
        await self.memory.flush_async()

    async def reset(self) -> None:
        """Return an Errored agent to Idle. Memory is cleared: it can no longer be trusted."""
        if self._state is not AgentState.ERRORED:
            raise AgentStateError(f"Only an errored agent can be reset, this one is {self._state.value}.")

        if self._teardown is not None:
            await asyncio.gather(self._teardown, return_exceptions=True)
            self._teardown = None
        await self._stop_triggers()
        if self._cycle_task is not None:
            await asyncio.gather(self._cycle_task, return_exceptions=True)
        await self._stop_scheduler()

        self.memory.clear()
        self.last_error = None
        self._set_state(AgentState.IDLE)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def add_trigger(self, trigger: Trigger) -> str:
        self._triggers[trigger.id] = trigger
        if self._state is AgentState.RUNNING:
            await self._start_trigger(trigger)
        return trigger.id

    async def remove_trigger(self, trigger_id: str) -> bool:
        trigger = self._triggers.pop(trigger_id, None)
        if trigger is None:
            return False
        await trigger.stop()
        return True

    async def _start_trigger(self, trigger: Trigger) -> None:
        try:
            await trigger.start(self._enqueue)
        except Exception as exc:
            self._log.error("trigger_start_failed", trigger_id=trigger.id, error=str(exc))

    async def _stop_triggers(self) -> None:
        for trigger in list(self._triggers.values()):
            try:
                await trigger.stop()
            except Exception as exc:
                self._log.error("trigger_stop_failed", trigger_id=trigger.id, error=str(exc))

    def _enqueue(self, signal: TriggerSignal) -> None:
        if self._queue is None:
            raise AgentStateError("Agent has no signal queue; it was never started.")
        self._queue.put_nowait(signal)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _schedule(self) -> None:
        while True:
            signal = await self._queue.get()
            if signal is None:
                return
            try:
                self._dispatch(signal)
            except FatalRuntimeError as exc:
                self._fault(exc)
            except Exception as exc:
                self._fault(FatalRuntimeError(f"Scheduler fault: {exc}"))

    async def _stop_scheduler(self) -> None:
        if self._scheduler is None:
            return
        if not self._scheduler.done():
            self._queue.put_nowait(None)
            with contextlib.suppress(asyncio.CancelledError):
                await self._scheduler
        self._scheduler = None

    def _dispatch(self, signal: TriggerSignal) -> None:
        if self._state is AgentState.ERRORED:
            self._log.warning("signal_dropped", trigger_id=signal.trigger_id, reason="agent errored")
            return
        if self._state is not AgentState.RUNNING:
            self._log.info("signal_discarded", trigger_id=signal.trigger_id, state=self._state.value)
            self.memory.append(EventEntry(name="signal_discarded", payload=self._signal_payload(signal)))
            return
        if self.is_busy():
            self._coalesce(signal)
            return
        self._cycle_task = asyncio.create_task(self._guarded_cycle(signal), name=f"cycle:{self.agent_id}")

    def _coalesce(self, signal: TriggerSignal) -> None:
        self.coalesced += 1
        payload = {**self._signal_payload(signal), "in_flight_cycle": self._current_cycle}
        self._log.info("cycle_coalesced", **payload)
        self.memory.append(EventEntry(name="coalesced", cycle_id=self._current_cycle, payload=payload))
        self._emit("cycle_coalesced", payload)

    async def run_once(self, payload: dict[str, Any] | None = None) -> CycleSummary | None:
        """
        Run one cycle now, under the same guard as triggered cycles.

        Returns None (and records a coalesced entry) if a cycle is already in
        flight.
        """
        if self._state in (AgentState.ERRORED, AgentState.STOPPING):
            raise AgentStateError(f"Cannot run a cycle while {self._state.value}.")

        if self._state is not AgentState.RUNNING:
            self._cancel = asyncio.Event()

        signal = TriggerSignal(trigger_id="run_once", kind=TriggerKind.MANUAL, payload=payload or {})
        try:
            if self.is_busy():
                self._coalesce(signal)
                return None
        except FatalRuntimeError as exc:
            self._fault(exc)
            return None
        async with self._cycle_lock:
            return await self._run_cycle(signal)

    async def _guarded_cycle(self, signal: TriggerSignal) -> CycleSummary:
        async with self._cycle_lock:
            return await self._run_cycle(signal)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _goal_for(self, signal: TriggerSignal) -> Goal:
        payload = signal.payload
        text = payload.get("goal") if isinstance(payload.get("goal"), str) else self.config.goal
        context = dict(self.config.goal_context)
        context.update(payload.get("context") or {})
        extra = {k: v for k, v in payload.items() if k not in ("goal", "context")}
        if extra:
            context["trigger"] = {"id": signal.trigger_id, "kind": signal.kind.value, **extra}
        return Goal(text=text or "", context=context)

    async def _run_cycle(self, signal: TriggerSignal) -> CycleSummary:
        cycle_id = new_id("cycle")
        self._current_cycle = cycle_id
        log = self._log.bind(cycle_id=cycle_id, trigger_id=signal.trigger_id)
        summary = CycleSummary(cycle_id=cycle_id, trigger_id=signal.trigger_id, started_at=utcnow())
        events = [EventEntry(name="trigger_fired", cycle_id=cycle_id, payload=self._signal_payload(signal))]
        records = []

        try:
            sender = signal.payload.get("sender")
            if not self.policy.permits_sender(sender):
                raise PolicyDenied(f"Sender {sender!r} may not start a cycle.")
            goal = self._goal_for(signal)
            context = await self.context_builder.build(goal)
            plan = await self.planner.plan(goal, context)
            events.append(
                EventEntry(
                    name="plan_created",
                    cycle_id=cycle_id,
                    payload={
                        "goal": goal.text,
                        "actions": [a.type.value for a in plan.actions],
                        "dropped": plan.dropped,
                        "error": plan.error,
                        "context_degraded": context.degraded,
                        "context_missing": context.missing,
                    },
                )
            )
            records = await self.executor.execute(plan, self._cancel)

            summary.planning_failed = plan.planning_failed
            summary.action_count = len(records)
            summary.success_count = sum(1 for r in records if r.status is ExecutionStatus.SUCCESS)
            summary.failure_count = sum(1 for r in records if r.status is ExecutionStatus.FAILED)
        except FatalRuntimeError as exc:
            summary.error = str(exc)
            self._fault(exc)
        except PolicyDenied as exc:
            summary.error = f"PolicyDenied: {exc}"
            log.warning("cycle_denied", error=str(exc))
        except Exception as exc:
            summary.error = f"{type(exc).__name__}: {exc}"
            log.exception("cycle_error", error=summary.error)

        summary.ended_at = utcnow()
        try:
            for event in events:
                self.memory.append(event)
            for record in records:
                self.memory.append(ActionEntry(cycle_id=cycle_id, record=record))
            name = "cycle_completed" if summary.ok else "cycle_failed"
            self.memory.append(EventEntry(name=name, cycle_id=cycle_id, payload=summary.model_dump(mode="json")))
        except FatalRuntimeError as exc:
            summary.error = summary.error or str(exc)
            self._fault(exc)
        finally:
            self._current_cycle = None

        await self.memory.flush_async()
        self.cycles_run += 1
        self.last_cycle = summary
        log.info(
            "cycle_finished",
            ok=summary.ok,
            actions=summary.action_count,
            successes=summary.success_count,
            failures=summary.failure_count,
            planning_failed=summary.planning_failed,
        )
        self._emit(
            "cycle_completed",
            {
                "agent_id": self.agent_id,
                "cycle_id": cycle_id,
                "ok": summary.ok,
                "success_count": summary.success_count,
                "failure_count": summary.failure_count,
                "planning_failed": summary.planning_failed,
            },
        )
        return summary

    # ------------------------------------------------------------------
    # Faults, memory and telemetry helpers
    # ------------------------------------------------------------------

    def _fault(self, exc: FatalRuntimeError) -> None:
        if self._state is AgentState.ERRORED:
            return
        self.last_error = str(exc)
        self._log.error("agent_fault", error=self.last_error, state=self._state.value)
        self._state = AgentState.ERRORED
        self._cancel.set()
        self._teardown = asyncio.create_task(self._stop_triggers(), name=f"teardown:{self.agent_id}")
        self._emit("agent_errored", {"agent_id": self.agent_id, "error": self.last_error})

    def _record_safely(self, entry: EventEntry) -> None:
        try:
            self.memory.append(entry)
        except FatalRuntimeError as exc:
            self._fault(exc)

    def _emit(self, event_name: str, payload: dict[str, Any]) -> None:
        if self._telemetry is None:
            return
        try:
            self._telemetry.emit(event_name, payload)
        except Exception as exc:
            self._log.warning("telemetry_failed", event=event_name, error=str(exc))

    @staticmethod
    def _signal_payload(signal: TriggerSignal) -> dict[str, Any]:
        return {
            "trigger_id": signal.trigger_id,
            "kind": signal.kind.value,
            "fired_at": signal.fired_at.isoformat(),
            "payload": signal.payload,
        }
