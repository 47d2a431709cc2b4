from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from .models import (
    ACTIVE_STAGE_STATUSES,
    STAGE_ORDER,
    STAGE_STATUS_TRANSITIONS,
    ApprovalGate,
    GateStatus,
    IterationStatus,
    LoopIteration,
    LoopPhase,
    OpaquePayload,
    ReviewIssue,
    ReviewStatus,
    ReviewSummary,
    Stage,
    StageEntry,
    StageStatus,
    Task,
    TaskPlan,
    TriageAnalysis,
    TriageQuestion,
    utc_now,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_QUESTIONS_ADAPTER = TypeAdapter(list[TriageQuestion])
_SAFE_COMPONENT_RE = re.compile(r"[^A-Za-z0-9_.-]+")


class ActiveStageError(ValueError):
    """Another stage of the same task is already InProgress or WaitingApproval."""


class PendingGateError(ValueError):
    """The task already has a Pending approval gate."""


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.  ``flock`` locks belong to the open file description, so two
    threads of one process exclude each other as well as two processes.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place.  This prevents partial/corrupt reads
    if the process crashes mid-write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        # Clean up the temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


def _read_model(path: Path, model: type[ModelT], model_name: str) -> ModelT:
    text = _safe_read_json(path, model_name)
    try:
        return model.model_validate_json(text)
    except ValidationError as exc:
        raise ValueError(f"{model_name} at {path} failed validation: {exc}") from exc


def safe_component(value: str, label: str) -> str:
    """Return a filesystem-safe path component or raise ValueError."""
    cleaned = _SAFE_COMPONENT_RE.sub("-", value.strip()).strip("-")
    if not cleaned or cleaned in {".", ".."}:
        raise ValueError(f"{label} must contain filesystem-safe characters, got: {value!r}")
    return cleaned


def _iteration_filename(record: LoopIteration) -> str:
    return f"{record.sequence:06d}-{record.attempt:03d}-{record.iteration:04d}-{record.phase.value}.json"


# ---------------------------------------------------------------------------
# FileStateStore
# ---------------------------------------------------------------------------


class FileStateStore:
    """Filesystem store for tasks, stage ledgers, loop iterations, gates and stage artifacts.

    Layout::

        <root>/tasks/<task_id>/task.json
        <root>/tasks/<task_id>/stages/<stage>.json
        <root>/tasks/<task_id>/iterations/<sequence>-<attempt>-<iteration>-<phase>.json
        <root>/tasks/<task_id>/reviews/<issue_id>.json
        <root>/tasks/<task_id>/{analysis,questions,task_plan,review_summary}.json
        <root>/gates/<gate_id>.json

    All writes use atomic temp-file-then-rename. Read-modify-write paths
    (stage transitions, iteration appends, gate and issue transitions) run
    under a per-task ``fcntl`` lock so the ledger invariants hold across
    threads and processes sharing the directory.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.tasks_dir = self.root / "tasks"
        self.gates_dir = self.root / "gates"
        self.ensure_structure()

    def ensure_structure(self) -> None:
        for directory in (self.root, self.tasks_dir, self.gates_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths and locks
    # ------------------------------------------------------------------

    def task_dir(self, task_id: str) -> Path:
        return self.tasks_dir / safe_component(task_id, "task_id")

    def _task_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / "task.json"

    def _stage_path(self, task_id: str, stage: Stage) -> Path:
        return self.task_dir(task_id) / "stages" / f"{stage.value}.json"

    def _iterations_dir(self, task_id: str) -> Path:
        return self.task_dir(task_id) / "iterations"

    def _gate_path(self, gate_id: str) -> Path:
        return self.gates_dir / f"{safe_component(gate_id, 'gate_id')}.json"

    def _review_path(self, task_id: str, issue_id: str) -> Path:
        return self.task_dir(task_id) / "reviews" / f"{safe_component(issue_id, 'issue_id')}.json"

    @contextmanager
    def task_lock(self, task_id: str) -> Iterator[None]:
        """Exclusive lock over every mutable record of one task."""
        with _locked_file(self.task_dir(task_id) / "ledger"):
            yield

    def _require_task(self, task_id: str) -> None:
        if not self._task_path(task_id).is_file():
            raise FileNotFoundError(f"task not found: {task_id}")

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def write_task(self, task: Task) -> Path:
        path = self._task_path(task.id)
        _atomic_write_text(path, task.model_dump_json(indent=2))
        return path

    def read_task(self, task_id: str) -> Task:
        """Read a task by ID.

        Raises:
            FileNotFoundError: If the task does not exist.
            ValueError: If the file is corrupt or fails validation.
        """
        return _read_model(self._task_path(task_id), Task, "task")

    def list_tasks(self) -> list[str]:
        return sorted(p.name for p in self.tasks_dir.iterdir() if (p / "task.json").is_file())

    # ------------------------------------------------------------------
    # Stage ledger
    # ------------------------------------------------------------------

    def initialize_stages(self, task_id: str) -> list[StageEntry]:
        """Create one Pending entry per stage. Existing entries are left untouched."""
        self._require_task(task_id)
        entries: list[StageEntry] = []
        with self.task_lock(task_id):
            for stage in STAGE_ORDER:
                path = self._stage_path(task_id, stage)
                if path.is_file():
                    entries.append(_read_model(path, StageEntry, f"stage {stage.value}"))
                    continue
                entry = StageEntry(task_id=task_id, stage=stage)
                _atomic_write_text(path, entry.model_dump_json(indent=2))
                entries.append(entry)
        return entries

    def read_stage_entry(self, task_id: str, stage: Stage) -> StageEntry:
        return _read_model(self._stage_path(task_id, stage), StageEntry, f"stage {stage.value}")

    def list_stage_entries(self, task_id: str) -> list[StageEntry]:
        """Return the task's stage entries in pipeline order."""
        return [
            self.read_stage_entry(task_id, stage)
            for stage in STAGE_ORDER
            if self._stage_path(task_id, stage).is_file()
        ]

    def transition_stage(
        self,
        task_id: str,
        stage: Stage,
        new_status: StageStatus,
        *,
        reason: str | None = None,
        outcome: OpaquePayload | None = None,
    ) -> StageEntry:
        """Transition a stage entry under the task lock.

        Entering InProgress from Pending or Failed opens a new attempt.
        Entering an active status is refused while another stage of the
        same task is active.

        Raises:
            FileNotFoundError: If the stage entry does not exist.
            ValueError: If the transition is not allowed by the state machine
                or would leave two stages active.
        """
        with self.task_lock(task_id):
            entry = self.read_stage_entry(task_id, stage)
            allowed = STAGE_STATUS_TRANSITIONS[entry.status]
            if new_status not in allowed:
                raise ValueError(
                    f"Illegal stage status transition for {task_id}/{stage.value}: "
                    f"{entry.status.value} -> {new_status.value}"
                )
            if new_status in ACTIVE_STAGE_STATUSES:
                for other in self.list_stage_entries(task_id):
                    if other.stage != stage and other.is_active:
                        raise ActiveStageError(
                            f"Stage {other.stage.value} of {task_id} is already {other.status.value}"
                        )

            now = utc_now()
            updates: dict[str, Any] = {"status": new_status, "updated_at": now}
            if new_status == StageStatus.IN_PROGRESS and entry.status in (StageStatus.PENDING, StageStatus.FAILED):
                updates.update(attempt=entry.attempt + 1, started_at=now, completed_at=None, reason=None)
            if new_status in (StageStatus.COMPLETED, StageStatus.FAILED):
                updates["completed_at"] = now
            if reason is not None:
                updates["reason"] = reason
            if outcome is not None:
                updates["outcome"] = outcome
            updated = entry.model_copy(update=updates)
            _atomic_write_text(self._stage_path(task_id, stage), updated.model_dump_json(indent=2))
        logger.info(
            "Stage %s/%s: %s -> %s",
            task_id,
            stage.value,
            entry.status.value,
            new_status.value,
        )
        return updated

    # ------------------------------------------------------------------
    # Loop iterations (append-only)
    # ------------------------------------------------------------------

    def append_iteration(
        self,
        task_id: str,
        *,
        iteration: int,
        phase: LoopPhase,
        payload: OpaquePayload,
        attempt: int = 1,
    ) -> LoopIteration:
        """Append one iteration record with the next per-task sequence number.

        Iteration numbers are monotonic within one stage attempt; a restarted
        stage opens a new attempt and counts from 1 again. Sequence numbers
        stay per-task across attempts.

        Raises:
            ValueError: If ``attempt`` is older than the latest recorded one, or
                ``iteration`` is lower than the latest one of the same attempt.
            FileExistsError: If a record with the computed name already exists.
        """
        self._require_task(task_id)
        directory = self._iterations_dir(task_id)
        with self.task_lock(task_id):
            existing = self.list_iterations(task_id)
            latest = existing[-1] if existing else None
            if latest is not None and attempt < latest.attempt:
                raise ValueError(
                    f"Attempt numbers for {task_id} must not decrease: {latest.attempt} -> {attempt}"
                )
            if latest is not None and attempt == latest.attempt and iteration < latest.iteration:
                raise ValueError(
                    f"Iteration numbers for {task_id} attempt {attempt} must not decrease: "
                    f"{latest.iteration} -> {iteration}"
                )
            record = LoopIteration(
                task_id=task_id,
                attempt=attempt,
                iteration=iteration,
                sequence=latest.sequence + 1 if latest is not None else 1,
                phase=phase,
                payload=payload,
            )
            path = directory / _iteration_filename(record)
            if path.exists():
                raise FileExistsError(f"iteration record already exists: {path}")
            _atomic_write_text(path, record.model_dump_json(indent=2))
        return record

    def list_iterations(self, task_id: str) -> list[LoopIteration]:
        directory = self._iterations_dir(task_id)
        if not directory.is_dir():
            return []
        records = [
            _read_model(path, LoopIteration, "loop iteration")
            for path in sorted(directory.glob("*.json"))
        ]
        return sorted(records, key=lambda record: record.sequence)

    def mark_latest_iteration_failed(self, task_id: str, reason: str) -> LoopIteration | None:
        """Flag the most recent record Failed. The only mutation iteration records allow."""
        directory = self._iterations_dir(task_id)
        with self.task_lock(task_id):
            records = self.list_iterations(task_id)
            if not records:
                return None
            latest = records[-1]
            if latest.status == IterationStatus.FAILED:
                return latest
            updated = latest.model_copy(
                update={"status": IterationStatus.FAILED, "failure_reason": reason}
            )
            _atomic_write_text(directory / _iteration_filename(latest), updated.model_dump_json(indent=2))
        return updated

    # ------------------------------------------------------------------
    # Approval gates
    # ------------------------------------------------------------------

    def write_gate(self, gate: ApprovalGate) -> Path:
        path = self._gate_path(gate.id)
        _atomic_write_text(path, gate.model_dump_json(indent=2))
        return path

    def read_gate(self, gate_id: str) -> ApprovalGate:
        return _read_model(self._gate_path(gate_id), ApprovalGate, "approval gate")

    def list_gates(self, task_id: str) -> list[ApprovalGate]:
        gates = [_read_model(path, ApprovalGate, "approval gate") for path in self.gates_dir.glob("*.json")]
        return sorted((gate for gate in gates if gate.task_id == task_id), key=lambda gate: gate.requested_at)

    def create_pending_gate(self, gate: ApprovalGate) -> ApprovalGate:
        """Persist ``gate`` unless the task already has a Pending gate.

        Raises:
            ValueError: If a Pending gate already exists for the task.
        """
        with self.task_lock(gate.task_id):
            for existing in self.list_gates(gate.task_id):
                if existing.status == GateStatus.PENDING:
                    raise PendingGateError(f"Task {gate.task_id} already has pending gate {existing.id}")
            self.write_gate(gate)
        return gate

    def transition_gate(self, gate_id: str, new_status: GateStatus, notes: str | None = None) -> ApprovalGate:
        """Resolve a Pending gate.

        Raises:
            FileNotFoundError: If the gate does not exist.
            ValueError: If the gate is no longer Pending.
        """
        gate = self.read_gate(gate_id)
        with self.task_lock(gate.task_id):
            gate = self.read_gate(gate_id)
            if gate.status != GateStatus.PENDING:
                raise ValueError(f"Gate {gate_id} is already {gate.status.value}")
            gate = gate.model_copy(
                update={"status": new_status, "responded_at": utc_now(), "approver_notes": notes}
            )
            self.write_gate(gate)
        return gate

    # ------------------------------------------------------------------
    # Triage and task creation artifacts
    # ------------------------------------------------------------------

    def write_analysis(self, task_id: str, analysis: TriageAnalysis) -> Path:
        path = self.task_dir(task_id) / "analysis.json"
        _atomic_write_text(path, analysis.model_dump_json(indent=2))
        return path

    def read_analysis(self, task_id: str) -> TriageAnalysis:
        return _read_model(self.task_dir(task_id) / "analysis.json", TriageAnalysis, "triage analysis")

    def write_questions(self, task_id: str, questions: list[TriageQuestion]) -> Path:
        path = self.task_dir(task_id) / "questions.json"
        _atomic_write_text(path, _QUESTIONS_ADAPTER.dump_json(questions, indent=2).decode("utf-8"))
        return path

    def read_questions(self, task_id: str) -> list[TriageQuestion]:
        path = self.task_dir(task_id) / "questions.json"
        if not path.is_file():
            return []
        text = _safe_read_json(path, "triage questions")
        try:
            return _QUESTIONS_ADAPTER.validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"triage questions at {path} failed validation: {exc}") from exc

    def write_task_plan(self, task_id: str, plan: TaskPlan) -> Path:
        path = self.task_dir(task_id) / "task_plan.json"
        _atomic_write_text(path, plan.model_dump_json(indent=2))
        return path

    def read_task_plan(self, task_id: str) -> TaskPlan | None:
        path = self.task_dir(task_id) / "task_plan.json"
        if not path.is_file():
            return None
        return _read_model(path, TaskPlan, "task plan")

    # ------------------------------------------------------------------
    # Code review
    # ------------------------------------------------------------------

    def write_review_issue(self, issue: ReviewIssue) -> Path:
        path = self._review_path(issue.task_id, issue.id)
        _atomic_write_text(path, issue.model_dump_json(indent=2))
        return path

    def read_review_issue(self, task_id: str, issue_id: str) -> ReviewIssue:
        return _read_model(self._review_path(task_id, issue_id), ReviewIssue, "review issue")

    def list_review_issues(self, task_id: str) -> list[ReviewIssue]:
        directory = self.task_dir(task_id) / "reviews"
        if not directory.is_dir():
            return []
        issues = [_read_model(path, ReviewIssue, "review issue") for path in directory.glob("*.json")]
        return sorted(issues, key=lambda issue: (issue.created_at, issue.id))

    def update_review_issue_status(self, task_id: str, issue_id: str, status: ReviewStatus) -> ReviewIssue:
        with self.task_lock(task_id):
            issue = self.read_review_issue(task_id, issue_id)
            issue = issue.model_copy(update={"status": status})
            self.write_review_issue(issue)
        return issue

    def write_review_summary(self, task_id: str, summary: ReviewSummary) -> Path:
        path = self.task_dir(task_id) / "review_summary.json"
        _atomic_write_text(path, summary.model_dump_json(indent=2))
        return path

    def read_review_summary(self, task_id: str) -> ReviewSummary:
        return _read_model(self.task_dir(task_id) / "review_summary.json", ReviewSummary, "review summary")
