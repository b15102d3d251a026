import asyncio
import time

import pytest

from agent_runtime.config import ContextConfig
from agent_runtime.context import ContextBuilder, summarize_entry
from agent_runtime.memory import Memory
from agent_runtime.models import (
    Action,
    ActionEntry,
    ActionType,
    EventEntry,
    ExecutionRecord,
    ExecutionStatus,
    Goal,
)

GOAL = Goal(text="watch")


@pytest.mark.asyncio
async def test_context_includes_identity_recent_memory_and_sources():
    memory = Memory()
    memory.append(EventEntry(name="trigger_fired"))

    async def prices(goal):
        return {"ETH": 3000}

    builder = ContextBuilder(
        memory=memory,
        sources={"prices": prices, "block": lambda goal: 123},
        identity={"name": "watcher"},
    )
    context = await builder.build(GOAL)

    assert context.degraded is False
    assert context.values["agent"] == {"name": "watcher"}
    assert context.values["recent"][0]["event"] == "trigger_fired"
    assert context.values["prices"] == {"ETH": 3000}
    assert context.values["block"] == 123


@pytest.mark.asyncio
async def test_slow_source_is_dropped_and_context_degraded():
    async def slow(goal):
        await asyncio.sleep(1)
        return "late"

    builder = ContextBuilder(
        sources={"slow": slow, "fast": lambda goal: "ok"},
        config=ContextConfig(timeout=0.05),
    )
    context = await builder.build(GOAL)

    assert context.degraded is True
    assert context.missing == ["slow"]
    assert "slow" not in context.values
    assert context.values["fast"] == "ok"


@pytest.mark.asyncio
async def test_failing_source_is_missing():
    def broken(goal):
        raise RuntimeError("rpc down")

    builder = ContextBuilder(sources={"broken": broken})
    context = await builder.build(GOAL)

    assert context.degraded is True
    assert context.missing == ["broken"]


@pytest.mark.asyncio
async def test_sources_can_be_added_and_removed():
    builder = ContextBuilder()
    builder.add_source("a", lambda goal: 1)
    builder.add_source("b", lambda goal: 2)
    builder.remove_source("a")

    context = await builder.build(GOAL)
    assert "a" not in context.values
    assert context.values["b"] == 2


@pytest.mark.asyncio
async def test_recent_entries_respects_config():
    memory = Memory()
    for i in range(5):
        memory.append(EventEntry(name=f"E{i}"))

    builder = ContextBuilder(memory=memory, config=ContextConfig(recent_entries=2))
    context = await builder.build(GOAL)

    assert [r["event"] for r in context.values["recent"]] == ["E3", "E4"]


@pytest.mark.asyncio
async def test_blocking_sync_source_does_not_stall_the_deadline():
    def blocking_balance(goal):
        time.sleep(0.5)
        return 1000

    builder = ContextBuilder(
        sources={"balance": blocking_balance, "block": lambda goal: 123},
        config=ContextConfig(timeout=0.05),
    )
    loop = asyncio.get_running_loop()
    began = loop.time()
    context = await builder.build(GOAL)
    elapsed = loop.time() - began

    assert elapsed < 0.4
    assert context.degraded is True
    assert context.missing == ["balance"]
    assert context.values["block"] == 123


def test_summarize_action_entry():
    record = ExecutionRecord(
        action=Action(type=ActionType.CHECK_BALANCE, target="0xA"),
        status=ExecutionStatus.FAILED,
        error="rpc down",
    )
    summary = summarize_entry(ActionEntry(record=record))

    assert summary["action"] == "check_balance"
    assert summary["target"] == "0xA"
    assert summary["error"] == "rpc down"
    assert "result" not in summary
