import pytest

from agent_runtime.errors import PersistenceError
from agent_runtime.memory import Memory, MemoryFilter
from agent_runtime.models import Action, ActionEntry, ActionType, EventEntry, ExecutionRecord, ExecutionStatus
from agent_runtime.persistence import JsonlBackend


def test_save_and_load_history(tmp_path):
    backend = JsonlBackend(str(tmp_path / "history" / "agent.jsonl"))
    event = EventEntry(name="trigger_fired", cycle_id="c1", payload={"trigger_id": "t"})
    action = ActionEntry(
        cycle_id="c1",
        record=ExecutionRecord(action=Action(type=ActionType.NO_ACTION), status=ExecutionStatus.SUCCESS),
    )
    backend.save(event)
    backend.save(action)

    history = backend.load_history(MemoryFilter())

    assert [e.kind for e in history] == ["event", "action"]
    assert history[0] == event
    assert history[1].record.status is ExecutionStatus.SUCCESS


def test_load_history_applies_filter_and_limit(tmp_path):
    backend = JsonlBackend(str(tmp_path / "agent.jsonl"))
    for i in range(4):
        backend.save(EventEntry(name="tick", payload={"i": i}))
    backend.save(EventEntry(name="other"))

    history = backend.load_history(MemoryFilter(name="tick", limit=2))

    assert [e.payload["i"] for e in history] == [2, 3]


def test_load_history_skips_corrupt_lines(tmp_path):
    path = tmp_path / "agent.jsonl"
    backend = JsonlBackend(str(path))
    backend.save(EventEntry(name="good"))
    with open(path, "a", encoding="utf-8") as fh:
        fh.write('{"kind": "event", "name": \n')

    assert [e.name for e in backend.load_history(MemoryFilter())] == ["good"]


def test_missing_file_has_no_history(tmp_path):
    assert JsonlBackend(str(tmp_path / "nope.jsonl")).load_history(MemoryFilter()) == []


def test_unwritable_path_raises_persistence_error(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    backend = JsonlBackend(str(blocker / "agent.jsonl"))

    with pytest.raises(PersistenceError):
        backend.save(EventEntry(name="a"))


def test_memory_restores_from_jsonl(tmp_path):
    path = str(tmp_path / "agent.jsonl")
    first = Memory(backend=JsonlBackend(path))
    first.append(EventEntry(name="a"))
    first.append(EventEntry(name="b"))
    first.flush()

    second = Memory(backend=JsonlBackend(path))
    assert second.restore() == 2
    assert [e.name for e in second.query()] == ["a", "b"]
