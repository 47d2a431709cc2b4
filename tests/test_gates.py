from __future__ import annotations

import asyncio

import pytest

from devpipe.errors import Conflict, NotFound
from devpipe.gates import APPROVAL_TIMED_OUT
from devpipe.models import EventKind, GateStatus, GateType, Stage, StageStatus


@pytest.fixture
def loop_stage(task, ledger):
    ledger.transition(task.id, Stage.AGENTIC_LOOP, StageStatus.IN_PROGRESS)
    return Stage.AGENTIC_LOOP


def test_request_moves_stage_to_waiting_approval(task, ledger, gates, broadcaster, loop_stage):
    subscription = broadcaster.subscribe(task.id)

    handle = gates.request(task.id, GateType.ARCHITECTURE_DECISION, stage=loop_stage, context={"why": "new db"})

    assert ledger.entry(task.id, loop_stage).status == StageStatus.WAITING_APPROVAL
    gate = gates.get(handle.id)
    assert gate.status == GateStatus.PENDING
    assert gate.attempt == 1
    assert gate.context == {"why": "new db"}
    (event,) = subscription.drain()
    assert event.kind == EventKind.STAGE_UPDATE
    assert event.data["gate_id"] == handle.id


def test_second_pending_gate_for_task_conflicts(task, gates, loop_stage):
    gates.request(task.id, GateType.ARCHITECTURE_DECISION, stage=loop_stage)

    with pytest.raises(Conflict):
        gates.request(task.id, GateType.ARCHITECTURE_DECISION, stage=loop_stage)


def test_gate_resolves_only_once(task, gates, loop_stage):
    handle = gates.request(task.id, GateType.ARCHITECTURE_DECISION, stage=loop_stage)

    approved = gates.resolve(handle.id, True, "looks good")
    assert approved.status == GateStatus.APPROVED
    assert approved.responded_at is not None

    with pytest.raises(NotFound):
        gates.resolve(handle.id, False, "changed my mind")
    assert gates.get(handle.id).status == GateStatus.APPROVED


def test_unknown_gate_is_not_found(gates):
    with pytest.raises(NotFound):
        gates.resolve("GATE-missing", True)
    with pytest.raises(NotFound):
        gates.get("GATE-missing")


def test_resolved_gate_allows_a_new_request(task, gates, loop_stage):
    first = gates.request(task.id, GateType.ARCHITECTURE_DECISION, stage=loop_stage)
    gates.resolve(first.id, False)

    second = gates.request(task.id, GateType.ARCHITECTURE_DECISION, stage=loop_stage)

    assert [gate.id for gate in gates.gates(task.id)] == [first.id, second.id]
    assert gates.pending(task.id).id == second.id


@pytest.mark.asyncio
async def test_wait_wakes_on_resolution(task, gates, loop_stage):
    handle = gates.request(task.id, GateType.ARCHITECTURE_DECISION, stage=loop_stage)
    waiter = asyncio.create_task(handle.wait())
    await asyncio.sleep(0)

    assert not waiter.done()
    gates.resolve(handle.id, False, "no")
    gate = await asyncio.wait_for(waiter, 1)

    assert gate.status == GateStatus.REJECTED
    assert gate.approver_notes == "no"


@pytest.mark.asyncio
async def test_wait_on_resolved_gate_returns_immediately(task, gates, loop_stage):
    handle = gates.request(task.id, GateType.ARCHITECTURE_DECISION, stage=loop_stage)
    gates.resolve(handle.id, True)

    gate = await asyncio.wait_for(gates.wait(handle.id), 1)

    assert gate.status == GateStatus.APPROVED


@pytest.mark.asyncio
async def test_second_waiter_conflicts(task, gates, loop_stage):
    handle = gates.request(task.id, GateType.ARCHITECTURE_DECISION, stage=loop_stage)
    waiter = asyncio.create_task(gates.wait(handle.id))
    await asyncio.sleep(0)

    with pytest.raises(Conflict):
        await gates.wait(handle.id)

    gates.resolve(handle.id, True)
    await asyncio.wait_for(waiter, 1)


@pytest.mark.asyncio
async def test_wait_timeout_rejects_the_gate(task, gates, loop_stage):
    handle = gates.request(task.id, GateType.ARCHITECTURE_DECISION, stage=loop_stage)

    gate = await gates.wait(handle.id, timeout=0.05)

    assert gate.status == GateStatus.REJECTED
    assert gate.approver_notes == APPROVAL_TIMED_OUT
    assert gates.pending(task.id) is None
