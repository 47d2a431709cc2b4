from __future__ import annotations

import asyncio
import threading

import pytest

from devpipe.broadcast import EventBroadcaster
from devpipe.models import EventKind, LogLevel, Stage, StageStatus


@pytest.mark.asyncio
async def test_subscribers_see_events_in_publish_order():
    broadcaster = EventBroadcaster()
    first = broadcaster.subscribe("TASK-1")
    second = broadcaster.subscribe("TASK-1")

    broadcaster.emit_stage_update("TASK-1", Stage.TRIAGE, StageStatus.IN_PROGRESS)
    broadcaster.emit_log("TASK-1", "analyzing")
    broadcaster.emit_complete("TASK-1", Stage.TRIAGE)

    for subscription in (first, second):
        events = subscription.drain()
        assert [event.sequence for event in events] == [1, 2, 3]
        assert [event.kind for event in events] == [EventKind.STAGE_UPDATE, EventKind.LOG, EventKind.COMPLETE]


@pytest.mark.asyncio
async def test_events_are_scoped_to_their_task():
    broadcaster = EventBroadcaster()
    subscription = broadcaster.subscribe("TASK-1")

    broadcaster.emit_log("TASK-2", "elsewhere")
    broadcaster.emit_log("TASK-1", "here")

    (event,) = subscription.drain()
    assert event.message == "here"
    assert event.sequence == 1


@pytest.mark.asyncio
async def test_principal_subscription_receives_owned_task_events():
    broadcaster = EventBroadcaster()
    broadcaster.register_owner("TASK-1", "alice")
    inbox = broadcaster.subscribe_principal("alice")
    other = broadcaster.subscribe_principal("bob")

    broadcaster.emit_error("TASK-1", "boom", stage=Stage.AGENTIC_LOOP)

    (event,) = inbox.drain()
    assert event.kind == EventKind.ERROR
    assert event.status == StageStatus.FAILED
    assert event.level == LogLevel.ERROR
    assert other.drain() == []
    assert broadcaster.subscriber_count("TASK-1") == 1


@pytest.mark.asyncio
async def test_full_subscriber_is_disconnected_without_blocking_others():
    broadcaster = EventBroadcaster(queue_size=2)
    slow = broadcaster.subscribe("TASK-1")

    for index in range(3):
        broadcaster.emit_log("TASK-1", f"event {index}")
    fresh = broadcaster.subscribe("TASK-1")
    broadcaster.emit_log("TASK-1", "after")

    assert slow.closed
    assert slow.dropped == 1
    assert [event.message for event in slow.drain()] == ["event 0", "event 1"]
    assert [event.sequence for event in fresh.drain()] == [4]
    assert broadcaster.subscriber_count("TASK-1") == 1


@pytest.mark.asyncio
async def test_async_iteration_ends_when_closed():
    broadcaster = EventBroadcaster()
    subscription = broadcaster.subscribe("TASK-1")
    broadcaster.emit_progress("TASK-1", Stage.AGENTIC_LOOP, 150)
    broadcaster.emit_progress("TASK-1", Stage.AGENTIC_LOOP, -3)
    subscription.close()

    received = [event async for event in subscription]

    assert [event.progress for event in received] == [100.0, 0.0]
    assert broadcaster.subscriber_count("TASK-1") == 0


@pytest.mark.asyncio
async def test_publish_from_worker_thread_reaches_async_subscriber():
    broadcaster = EventBroadcaster()
    subscription = broadcaster.subscribe("TASK-1")

    worker = threading.Thread(target=broadcaster.emit_log, args=("TASK-1", "from thread"))
    worker.start()
    event = await subscription.get(timeout=1)
    worker.join()

    assert event.message == "from thread"


@pytest.mark.asyncio
async def test_thread_and_loop_publishes_arrive_in_sequence_order():
    broadcaster = EventBroadcaster()
    subscription = broadcaster.subscribe("TASK-1")

    worker = threading.Thread(target=broadcaster.emit_log, args=("TASK-1", "from thread"))
    worker.start()
    worker.join()
    broadcaster.emit_log("TASK-1", "from loop")

    first = await subscription.get(timeout=1)
    second = await subscription.get(timeout=1)
    assert [(first.sequence, first.message), (second.sequence, second.message)] == [
        (1, "from thread"),
        (2, "from loop"),
    ]


@pytest.mark.asyncio
async def test_interleaved_thread_publishes_stay_ordered_for_a_waiting_consumer():
    broadcaster = EventBroadcaster()
    subscription = broadcaster.subscribe("TASK-1")

    def publish_from_thread() -> None:
        for index in range(20):
            broadcaster.emit_log("TASK-1", f"thread {index}")

    worker = threading.Thread(target=publish_from_thread)
    worker.start()
    for index in range(20):
        broadcaster.emit_log("TASK-1", f"loop {index}")
        await asyncio.sleep(0)
    received = [await subscription.get(timeout=1) for _ in range(40)]
    worker.join()

    assert [event.sequence for event in received] == list(range(1, 41))


@pytest.mark.asyncio
async def test_get_times_out_when_idle():
    broadcaster = EventBroadcaster()
    subscription = broadcaster.subscribe("TASK-1")

    with pytest.raises(asyncio.TimeoutError):
        await subscription.get(timeout=0.01)


def test_queue_size_must_be_positive():
    with pytest.raises(ValueError):
        EventBroadcaster(queue_size=0)
