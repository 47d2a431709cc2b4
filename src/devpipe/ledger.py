from __future__ import annotations

import logging
from typing import Any

from .errors import Conflict, InvalidTransition, NotFound
from .models import (
    STAGE_ORDER,
    LoopIteration,
    LoopPhase,
    OpaquePayload,
    Stage,
    StageEntry,
    StageProgress,
    StageStatus,
    Task,
)
from .state_store import ActiveStageError, FileStateStore

logger = logging.getLogger(__name__)


class StageLedger:
    """Durable per-task stage state machine plus the loop iteration audit trail.

    Wraps :class:`FileStateStore` and translates its filesystem and
    validation errors into the engine's error taxonomy.
    """

    def __init__(self, store: FileStateStore) -> None:
        self.store = store

    def create_task(self, task: Task) -> list[StageEntry]:
        self.store.write_task(task)
        return self.store.initialize_stages(task.id)

    def task(self, task_id: str) -> Task:
        try:
            return self.store.read_task(task_id)
        except FileNotFoundError as exc:
            raise NotFound(detail=f"task {task_id}") from exc

    def entry(self, task_id: str, stage: Stage) -> StageEntry:
        try:
            return self.store.read_stage_entry(task_id, stage)
        except FileNotFoundError as exc:
            raise NotFound(detail=f"stage {stage.value} of task {task_id}") from exc

    def entries(self, task_id: str) -> list[StageEntry]:
        self.task(task_id)
        return self.store.list_stage_entries(task_id)

    def active_stage(self, task_id: str) -> StageEntry | None:
        for entry in self.entries(task_id):
            if entry.is_active:
                return entry
        return None

    def transition(
        self,
        task_id: str,
        stage: Stage,
        status: StageStatus,
        *,
        reason: str | None = None,
        outcome: OpaquePayload | None = None,
    ) -> StageEntry:
        """Apply one stage status transition.

        Raises:
            NotFound: If the task or stage entry does not exist.
            Conflict: If another stage of the task is already active.
            InvalidTransition: If the status table forbids the move.
        """
        try:
            return self.store.transition_stage(task_id, stage, status, reason=reason, outcome=outcome)
        except FileNotFoundError as exc:
            raise NotFound(detail=f"stage {stage.value} of task {task_id}") from exc
        except ActiveStageError as exc:
            raise Conflict(detail=str(exc)) from exc
        except ValueError as exc:
            raise InvalidTransition(detail=str(exc)) from exc

    # -- loop iterations --

    def append_iteration(
        self,
        task_id: str,
        *,
        iteration: int,
        phase: LoopPhase,
        payload: Any,
        attempt: int = 1,
    ) -> LoopIteration:
        """Append one iteration record; ``payload`` is wrapped as an opaque ``loop.<phase>`` blob."""
        if not isinstance(payload, OpaquePayload):
            payload = OpaquePayload.encode(payload, kind=f"loop.{phase.value}")
        try:
            return self.store.append_iteration(
                task_id, iteration=iteration, phase=phase, payload=payload, attempt=attempt
            )
        except FileNotFoundError as exc:
            raise NotFound(detail=f"task {task_id}") from exc
        except (FileExistsError, ValueError) as exc:
            raise Conflict(detail=str(exc)) from exc

    def iterations(self, task_id: str) -> list[LoopIteration]:
        return self.store.list_iterations(task_id)

    def mark_latest_iteration_failed(self, task_id: str, reason: str) -> LoopIteration | None:
        return self.store.mark_latest_iteration_failed(task_id, reason)

    # -- progress --

    def progress(self, task_id: str) -> StageProgress:
        entries = self.entries(task_id)
        completed = [entry.stage for entry in entries if entry.status == StageStatus.COMPLETED]
        current = next((entry.stage for entry in entries if entry.is_active), None)
        if current is None:
            current = next(
                (entry.stage for entry in entries if entry.status != StageStatus.COMPLETED),
                None,
            )
        return StageProgress(
            task_id=task_id,
            current_stage=current,
            completed_stages=completed,
            percentage=round(len(completed) / len(STAGE_ORDER) * 100, 2),
        )
