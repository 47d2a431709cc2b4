from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any

from .broadcast import EventBroadcaster
from .errors import Conflict, NotFound
from .ledger import StageLedger
from .models import ApprovalGate, GateStatus, GateType, LogLevel, Stage, StageStatus
from .state_store import PendingGateError

logger = logging.getLogger(__name__)

APPROVAL_TIMED_OUT = "approval timed out"


@dataclass(slots=True)
class GateHandle:
    """Returned by :meth:`ApprovalGates.request`; await :meth:`wait` for the decision."""

    gate: ApprovalGate
    gates: ApprovalGates

    @property
    def id(self) -> str:
        return self.gate.id

    async def wait(self, timeout: float | None = None) -> ApprovalGate:
        return await self.gates.wait(self.gate.id, timeout=timeout)


class ApprovalGates:
    """Blocking human checkpoints.

    A task holds at most one Pending gate. A gate is resolved once; the
    first resolution wakes the single registered waiter and any later
    resolution fails with ``NotFound``. Waiting has no deadline unless the
    caller passes one.
    """

    def __init__(self, ledger: StageLedger, broadcaster: EventBroadcaster) -> None:
        self.ledger = ledger
        self.broadcaster = broadcaster
        self._lock = threading.Lock()
        self._waiters: dict[str, tuple[asyncio.AbstractEventLoop, asyncio.Future[ApprovalGate]]] = {}

    def request(
        self,
        task_id: str,
        gate_type: GateType,
        *,
        stage: Stage,
        attempt: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> GateHandle:
        """Open a Pending gate and move ``stage`` to WaitingApproval.

        Raises:
            Conflict: If the task already has a Pending gate.
            NotFound: If the task or stage does not exist.
        """
        entry = self.ledger.entry(task_id, stage)
        gate = ApprovalGate(
            task_id=task_id,
            gate_type=gate_type,
            stage=stage,
            attempt=entry.attempt if attempt is None else attempt,
            context=context or {},
        )
        try:
            self.ledger.store.create_pending_gate(gate)
        except PendingGateError as exc:
            raise Conflict(detail=str(exc)) from exc

        if entry.status == StageStatus.IN_PROGRESS:
            self.ledger.transition(task_id, stage, StageStatus.WAITING_APPROVAL)
        logger.info("Gate %s (%s) requested for %s/%s", gate.id, gate_type.value, task_id, stage.value)
        self.broadcaster.emit_stage_update(
            task_id,
            stage,
            StageStatus.WAITING_APPROVAL,
            message=f"Waiting for {gate_type.value} approval",
            data={"gate_id": gate.id, "gate_type": gate_type.value, "context": gate.context},
        )
        return GateHandle(gate=gate, gates=self)

    def get(self, gate_id: str) -> ApprovalGate:
        try:
            return self.ledger.store.read_gate(gate_id)
        except FileNotFoundError as exc:
            raise NotFound(detail=f"gate {gate_id}") from exc

    def gates(self, task_id: str) -> list[ApprovalGate]:
        return self.ledger.store.list_gates(task_id)

    def pending(self, task_id: str) -> ApprovalGate | None:
        for gate in self.gates(task_id):
            if gate.status == GateStatus.PENDING:
                return gate
        return None

    def resolve(self, gate_id: str, approved: bool, notes: str | None = None) -> ApprovalGate:
        """Record the decision and wake the waiter.

        Raises:
            NotFound: If the gate does not exist or is no longer Pending.
        """
        status = GateStatus.APPROVED if approved else GateStatus.REJECTED
        try:
            gate = self.ledger.store.transition_gate(gate_id, status, notes)
        except FileNotFoundError as exc:
            raise NotFound(detail=f"gate {gate_id}") from exc
        except ValueError as exc:
            raise NotFound(detail=str(exc)) from exc

        logger.info("Gate %s %s%s", gate_id, status.value, f" ({notes})" if notes else "")
        self.broadcaster.emit_log(
            gate.task_id,
            f"Gate {gate.gate_type.value} {status.value}",
            level=LogLevel.INFO if approved else LogLevel.WARNING,
            stage=gate.stage,
            data={"gate_id": gate.id, "status": status.value, "notes": notes},
        )
        self._wake(gate)
        return gate

    def _wake(self, gate: ApprovalGate) -> None:
        with self._lock:
            waiter = self._waiters.pop(gate.id, None)
        if waiter is None:
            return
        loop, future = waiter
        loop.call_soon_threadsafe(_settle, future, gate)

    async def wait(self, gate_id: str, *, timeout: float | None = None) -> ApprovalGate:
        """Suspend until the gate leaves Pending.

        On timeout the gate is rejected with notes "approval timed out".

        Raises:
            NotFound: If the gate does not exist.
            Conflict: If another coroutine is already waiting on the gate.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[ApprovalGate] = loop.create_future()
        with self._lock:
            if gate_id in self._waiters:
                raise Conflict(detail=f"gate {gate_id} already has a waiter")
            self._waiters[gate_id] = (loop, future)
        try:
            # Registered first so a resolution between the read and the await still wakes us.
            gate = self.get(gate_id)
            if gate.status != GateStatus.PENDING:
                return gate
            try:
                return await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                logger.warning("Gate %s timed out after %ss", gate_id, timeout)
                try:
                    return self.resolve(gate_id, False, APPROVAL_TIMED_OUT)
                except NotFound:
                    return self.get(gate_id)
        finally:
            with self._lock:
                current = self._waiters.get(gate_id)
                if current is not None and current[1] is future:
                    del self._waiters[gate_id]


def _settle(future: asyncio.Future[ApprovalGate], gate: ApprovalGate) -> None:
    if not future.done():
        future.set_result(gate)
