# context.py
# Builds the situational snapshot the planner reasons over.
#
# Sources run concurrently under one deadline. Whatever has not answered by
# then is cancelled and the context comes back partial, marked degraded.

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

import structlog

from agent_runtime.config import ContextConfig
from agent_runtime.memory import Memory, MemoryFilter
from agent_runtime.models import ActionEntry, Context, EventEntry, Goal

logger = structlog.get_logger(__name__)

ContextSource = Callable[[Goal], Any]


def summarize_entry(entry: EventEntry | ActionEntry) -> dict[str, Any]:
    """Compact, JSON-friendly view of a memory entry for prompts."""
    if entry.kind == "event":
        return {"at": entry.timestamp.isoformat(), "event": entry.name}
    record = entry.record
    summary: dict[str, Any] = {
        "at": entry.timestamp.isoformat(),
        "action": record.action.type.value,
        "status": record.status.value,
    }
    if record.action.target:
        summary["target"] = record.action.target
    if record.error:
        summary["error"] = record.error
    else:
        summary["result"] = record.result
    return summary


class ContextBuilder:
    def __init__(
        self,
        memory: Memory | None = None,
        sources: dict[str, ContextSource] | None = None,
        config: ContextConfig | None = None,
        identity: dict[str, Any] | None = None,
    ) -> None:
        self._memory = memory
        self._sources: dict[str, ContextSource] = dict(sources or {})
        self._config = config or ContextConfig()
        self._identity = dict(identity or {})

    def add_source(self, name: str, source: ContextSource) -> None:
        self._sources[name] = source

    def remove_source(self, name: str) -> None:
        self._sources.pop(name, None)

    async def build(self, goal: Goal) -> Context:
        """
        Assemble identity, recent memory and every source's output.

        Returns within the configured timeout. A source that times out or
        raises is listed in `missing` and the context is marked degraded.
        """
        values: dict[str, Any] = {}
        if self._identity:
            values["agent"] = self._identity
        if self._memory is not None and self._config.recent_entries:
            recent = self._memory.query(MemoryFilter(limit=self._config.recent_entries))
            values["recent"] = [summarize_entry(e) for e in recent]

        missing: list[str] = []
        if self._sources:
            tasks = {
                name: asyncio.create_task(self._call(source, goal), name=f"context:{name}")
                for name, source in self._sources.items()
            }
            done, pending = await asyncio.wait(tasks.values(), timeout=self._config.timeout)

            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

            for name, task in tasks.items():
                if task in pending:
                    logger.warning("context_source_timeout", source=name, timeout=self._config.timeout)
                    missing.append(name)
                elif task.exception() is not None:
                    logger.warning("context_source_failed", source=name, error=str(task.exception()))
                    missing.append(name)
                else:
                    values[name] = task.result()

        return Context(values=values, degraded=bool(missing), missing=missing)

    @staticmethod
    async def _call(source: ContextSource, goal: Goal) -> Any:
        # Sync sources run in a worker thread, off the event loop.
        if inspect.iscoroutinefunction(source):
            return await source(goal)
        outcome = await asyncio.to_thread(source, goal)
        if inspect.isawaitable(outcome):
            return await outcome
        return outcome
