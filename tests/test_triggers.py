import asyncio

import pytest

from agent_runtime.models import TriggerKind
from agent_runtime.triggers import (
    ExternalEventTrigger,
    IntervalTrigger,
    ManualTrigger,
    TriggerCondition,
)


class CountingSink:
    def __init__(self):
        self.signals = []

    def __call__(self, signal):
        self.signals.append(signal)


# ---------------------------------------------------------------------------
# Manual
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_manual_fire_delivers_signal():
    sink = CountingSink()
    trigger = ManualTrigger(trigger_id="m")
    await trigger.start(sink)

    assert trigger.fire({"goal": "x"}) is True
    assert sink.signals[0].trigger_id == "m"
    assert sink.signals[0].kind is TriggerKind.MANUAL
    assert sink.signals[0].payload == {"goal": "x"}
    assert trigger.fire_count == 1


@pytest.mark.asyncio
async def test_fire_after_stop_is_ignored():
    sink = CountingSink()
    trigger = ManualTrigger()
    await trigger.start(sink)
    await trigger.stop()

    assert trigger.fire() is False
    assert sink.signals == []


@pytest.mark.asyncio
async def test_start_is_idempotent():
    first, second = CountingSink(), CountingSink()
    trigger = ManualTrigger()
    await trigger.start(first)
    await trigger.start(second)
    trigger.fire()

    assert len(first.signals) == 1
    assert second.signals == []


@pytest.mark.asyncio
async def test_sink_failure_is_a_misfire_not_an_exception():
    def broken(signal):
        raise RuntimeError("queue gone")

    trigger = ManualTrigger()
    await trigger.start(broken)

    assert trigger.fire() is False
    assert trigger.fire_count == 0


# ---------------------------------------------------------------------------
# Interval
# ---------------------------------------------------------------------------


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        IntervalTrigger(0)


@pytest.mark.asyncio
async def test_interval_fires_repeatedly():
    sink = CountingSink()
    trigger = IntervalTrigger(0.02)
    await trigger.start(sink)
    await asyncio.sleep(0.09)
    await trigger.stop()

    assert len(sink.signals) >= 2
    assert all(s.kind is TriggerKind.INTERVAL for s in sink.signals)


@pytest.mark.asyncio
async def test_interval_start_immediately_and_max_executions():
    sink = CountingSink()
    trigger = IntervalTrigger(0.01, start_immediately=True, max_executions=3)
    await trigger.start(sink)
    await asyncio.sleep(0)
    assert len(sink.signals) == 1

    await asyncio.sleep(0.1)
    assert len(sink.signals) == 3
    assert trigger.is_running() is False
    await trigger.stop()


@pytest.mark.asyncio
async def test_no_fires_after_stop_returns():
    sink = CountingSink()
    trigger = IntervalTrigger(0.01)
    await trigger.start(sink)
    await asyncio.sleep(0.035)
    await trigger.stop()
    fired = len(sink.signals)

    await asyncio.sleep(0.05)
    assert len(sink.signals) == fired


@pytest.mark.asyncio
async def test_interval_restart_resets_count():
    sink = CountingSink()
    trigger = IntervalTrigger(0.01, start_immediately=True, max_executions=1)
    await trigger.start(sink)
    await asyncio.sleep(0)
    await trigger.stop()
    await trigger.start(sink)
    await asyncio.sleep(0)
    await trigger.stop()

    assert len(sink.signals) == 2


# ---------------------------------------------------------------------------
# External events
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "condition, expected",
    [
        (TriggerCondition(field="event", value="Transfer"), True),
        (TriggerCondition(field="args.amount", op="gt", value=100), True),
        (TriggerCondition(field="args.amount", op="lte", value=100), False),
        (TriggerCondition(field="args.to", op="contains", value="dead"), True),
        (TriggerCondition(field="args.missing", value=1), False),
        (TriggerCondition(field="args.to", op="gt", value=5), False),
    ],
)
def test_condition_matching(condition, expected):
    event = {"event": "Transfer", "args": {"amount": 500, "to": "0xdeadbeef"}}
    assert condition.matches(event) is expected


@pytest.mark.asyncio
async def test_deliver_only_fires_for_qualifying_events():
    sink = CountingSink()
    trigger = ExternalEventTrigger(
        event_name="Transfer",
        conditions=[TriggerCondition(field="args.amount", op="gte", value=10)],
    )
    await trigger.start(sink)

    assert trigger.deliver({"event": "Approval", "args": {"amount": 50}}) is False
    assert trigger.deliver({"event": "Transfer", "args": {"amount": 5}}) is False
    assert trigger.deliver({"event": "Transfer", "args": {"amount": 50}}) is True
    assert sink.signals[0].payload["event"]["args"]["amount"] == 50
    assert sink.signals[0].kind is TriggerKind.EXTERNAL_EVENT


@pytest.mark.asyncio
async def test_source_stream_is_consumed():
    async def stream():
        for amount in (1, 20, 30):
            yield {"event": "Transfer", "args": {"amount": amount}}

    sink = CountingSink()
    trigger = ExternalEventTrigger(
        source=stream,
        conditions=[TriggerCondition(field="args.amount", op="gt", value=10)],
    )
    await trigger.start(sink)
    await asyncio.sleep(0.01)
    await trigger.stop()

    assert [s.payload["event"]["args"]["amount"] for s in sink.signals] == [20, 30]


@pytest.mark.asyncio
async def test_failing_source_does_not_raise():
    async def stream():
        yield {"event": "Transfer"}
        raise ConnectionError("websocket closed")

    sink = CountingSink()
    trigger = ExternalEventTrigger(source=stream)
    await trigger.start(sink)
    await asyncio.sleep(0.01)
    await trigger.stop()

    assert len(sink.signals) == 1
