import asyncio
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from agent_runtime.errors import MemoryCorruption, PersistenceError
from agent_runtime.memory import Memory, MemoryFilter
from agent_runtime.models import (
    Action,
    ActionEntry,
    ActionType,
    EventEntry,
    ExecutionRecord,
    ExecutionStatus,
    utcnow,
)


def _event(name: str, cycle_id: str | None = None) -> EventEntry:
    return EventEntry(name=name, cycle_id=cycle_id)


def _action_entry(status: ExecutionStatus, cycle_id: str | None = None) -> ActionEntry:
    record = ExecutionRecord(action=Action(type=ActionType.CHECK_BALANCE), status=status)
    return ActionEntry(record=record, cycle_id=cycle_id)


# ---------------------------------------------------------------------------
# Capacity and ordering
# ---------------------------------------------------------------------------


def test_capacity_evicts_oldest_first():
    memory = Memory(capacity=3)
    for i in range(1, 6):
        memory.append(_event(f"E{i}"))

    assert len(memory) == 3
    assert [e.name for e in memory.query()] == ["E3", "E4", "E5"]


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        Memory(capacity=0)


def test_append_rejects_non_entries():
    with pytest.raises(MemoryCorruption):
        Memory().append({"name": "raw dict"})


def test_clear_empties_memory():
    memory = Memory()
    memory.append(_event("a"))
    memory.clear()
    assert len(memory) == 0


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def test_query_by_kind_name_and_status():
    memory = Memory()
    memory.append(_event("trigger_fired", "c1"))
    memory.append(_action_entry(ExecutionStatus.SUCCESS, "c1"))
    memory.append(_action_entry(ExecutionStatus.FAILED, "c1"))
    memory.append(_event("cycle_completed", "c1"))
    memory.append(_event("trigger_fired", "c2"))

    assert len(memory.query(MemoryFilter(kind="action"))) == 2
    assert len(memory.query(MemoryFilter(name="trigger_fired"))) == 2
    assert len(memory.query(MemoryFilter(status=ExecutionStatus.FAILED))) == 1
    assert len(memory.query(MemoryFilter(cycle_id="c2"))) == 1


def test_query_limit_returns_most_recent_matches():
    memory = Memory()
    for i in range(5):
        memory.append(_event(f"E{i}"))

    assert [e.name for e in memory.query(MemoryFilter(limit=2))] == ["E3", "E4"]
    assert list(memory.query(MemoryFilter(limit=0))) == []


def test_query_time_window():
    memory = Memory()
    memory.append(_event("old"))
    cutoff = utcnow() + timedelta(microseconds=1)
    later = EventEntry(name="new", timestamp=cutoff + timedelta(seconds=1))
    memory.append(later)

    assert [e.name for e in memory.query(MemoryFilter(since=cutoff))] == ["new"]
    assert [e.name for e in memory.query(MemoryFilter(until=cutoff))] == ["old"]


def test_view_is_a_snapshot_and_restartable():
    memory = Memory()
    memory.append(_event("a"))
    view = memory.query()
    memory.append(_event("b"))

    assert [e.name for e in view] == ["a"]
    assert [e.name for e in view] == ["a"]


def test_action_entry_payload_is_the_record():
    entry = _action_entry(ExecutionStatus.SUCCESS)
    assert entry.payload["status"] == "success"
    assert entry.payload["action"]["type"] == "check_balance"


# ---------------------------------------------------------------------------
# Persistence backend
# ---------------------------------------------------------------------------


def test_append_defers_backend_writes_until_flush():
    backend = MagicMock()
    memory = Memory(backend=backend)
    entry = _event("a")
    memory.append(entry)

    backend.save.assert_not_called()
    assert memory.pending == 1

    assert memory.flush() == 1
    backend.save.assert_called_once_with(entry)
    assert memory.pending == 0
    assert memory.volatile is False


def test_backend_failure_falls_back_to_volatile():
    backend = MagicMock()
    backend.save.side_effect = PersistenceError("disk full")
    memory = Memory(backend=backend)

    memory.append(_event("a"))
    memory.append(_event("b"))
    assert memory.flush() == 0
    memory.append(_event("c"))
    memory.flush()

    assert len(memory) == 3
    assert memory.volatile is True
    assert backend.save.call_count == 1
    assert memory.pending == 0


def test_restore_loads_capacity_tail():
    backend = MagicMock()
    backend.load_history.return_value = [_event(f"E{i}") for i in range(5)]
    memory = Memory(capacity=2, backend=backend)

    assert memory.restore() == 2
    assert [e.name for e in memory.query()] == ["E3", "E4"]


def test_restore_without_backend_is_a_noop():
    assert Memory().restore() == 0


@pytest.mark.asyncio
async def test_flush_async_keeps_event_loop_free():
    def slow_save(entry):
        time.sleep(0.2)

    backend = MagicMock()
    backend.save.side_effect = slow_save
    memory = Memory(backend=backend)
    memory.append(_event("a"))

    ticks = 0

    async def ticker():
        nonlocal ticks
        while True:
            await asyncio.sleep(0.01)
            ticks += 1

    counting = asyncio.create_task(ticker())
    saved = await memory.flush_async()
    counting.cancel()

    assert saved == 1
    assert ticks >= 5
    assert memory.pending == 0


@pytest.mark.asyncio
async def test_flush_async_writes_batches_in_order():
    saved = []
    backend = MagicMock()
    backend.save.side_effect = lambda entry: saved.append(entry.name)
    memory = Memory(backend=backend)

    memory.append(_event("a"))
    first = asyncio.create_task(memory.flush_async())
    await asyncio.sleep(0)
    memory.append(_event("b"))
    await asyncio.gather(first, memory.flush_async())

    assert saved == ["a", "b"]


def test_volatile_memory_queues_nothing():
    memory = Memory()
    memory.append(_event("a"))
    assert memory.pending == 0
    assert memory.flush() == 0
