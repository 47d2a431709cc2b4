from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from pydantic import BaseModel

from .broadcast import EventBroadcaster
from .errors import AdapterFailure, Conflict, InvalidTransition, NotFound, ToolFailure
from .gates import ApprovalGates
from .ledger import StageLedger
from .loop import AgenticLoop, CancellationToken, LoopResult
from .models import (
    ACTIVE_STAGE_STATUSES,
    ApprovalGate,
    GateStatus,
    GateType,
    OpaquePayload,
    ReviewIssue,
    ReviewStatus,
    ReviewSummary,
    Stage,
    StageEntry,
    StageProgress,
    StageStatus,
    Task,
    TaskPlan,
    TriageQuestion,
)
from .reasoning import ReasoningAdapter
from .review import CodeReviewAgent
from .settings import RuntimeSettings
from .state_store import FileStateStore
from .tools import ToolAdapter
from .triage import TriageAgent

logger = logging.getLogger(__name__)


class PipelineCoordinator:
    """Advances tasks through Triage -> TaskCreation -> AgenticLoop -> CodeReview -> PrCreation.

    Owns the only write path to the stage ledger. Completing a stage
    starts the next one; failing a stage never does, and nothing is
    retried here. Retrying means calling :meth:`start_stage` again.
    """

    def __init__(
        self,
        *,
        store: FileStateStore,
        broadcaster: EventBroadcaster,
        reasoning: ReasoningAdapter,
        tools: ToolAdapter,
        settings: RuntimeSettings,
        review_reasoning: ReasoningAdapter | None = None,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.reasoning = reasoning
        self.tools = tools
        self.settings = settings
        self.ledger = StageLedger(store)
        self.gates = ApprovalGates(self.ledger, broadcaster)
        self.triage_agent = TriageAgent(reasoning)
        self.review_agent = CodeReviewAgent(review_reasoning or reasoning)
        self._lock = threading.Lock()
        self._tokens: dict[str, CancellationToken] = {}

    # ------------------------------------------------------------------
    # Stage state machine
    # ------------------------------------------------------------------

    def create_task(self, title: str, requirements: str, *, owner: str | None = None) -> Task:
        if not requirements.strip():
            raise ValueError("requirements must be non-empty")
        task = Task(title=title, requirements=requirements, owner=owner)
        self.ledger.create_task(task)
        if owner is not None:
            self.broadcaster.register_owner(task.id, owner)
        logger.info("Task %s created: %s", task.id, title)
        return task

    def start_stage(self, task_id: str, stage: Stage) -> StageEntry:
        """Move ``stage`` to InProgress.

        Raises:
            InvalidTransition: If an earlier stage is not Completed or the stage already completed.
            Conflict: If this or another stage of the task is already active.
        """
        entries = {entry.stage: entry for entry in self.ledger.entries(task_id)}
        for prior in stage.predecessors:
            if entries[prior].status != StageStatus.COMPLETED:
                raise InvalidTransition(
                    detail=f"cannot start {stage.value}: {prior.value} is {entries[prior].status.value}"
                )
        entry = entries[stage]
        if entry.status == StageStatus.COMPLETED:
            raise InvalidTransition(detail=f"{stage.value} of {task_id} is already completed")
        if entry.status in ACTIVE_STAGE_STATUSES:
            raise Conflict(detail=f"{stage.value} of {task_id} is already {entry.status.value}")
        entry = self.ledger.transition(task_id, stage, StageStatus.IN_PROGRESS)
        self.broadcaster.emit_stage_update(
            task_id,
            stage,
            StageStatus.IN_PROGRESS,
            data={"attempt": entry.attempt},
        )
        return entry

    def complete_stage(self, task_id: str, stage: Stage, outcome: Any = None) -> StageEntry:
        """Mark ``stage`` Completed and start the next stage.

        Raises:
            InvalidTransition: If the stage is not active, a gate of the current
                attempt is not Approved, or (CodeReview) a Critical/Major issue
                is unresolved.
        """
        entry = self.ledger.entry(task_id, stage)
        if entry.status not in ACTIVE_STAGE_STATUSES:
            raise InvalidTransition(detail=f"cannot complete {stage.value}: it is {entry.status.value}")
        for gate in self.gates.gates(task_id):
            if gate.stage == stage and gate.attempt == entry.attempt and gate.status != GateStatus.APPROVED:
                raise InvalidTransition(
                    detail=f"cannot complete {stage.value}: gate {gate.id} is {gate.status.value}"
                )
        if stage == Stage.CODE_REVIEW:
            blocking = self._blocking_issues(task_id)
            if blocking:
                raise InvalidTransition(
                    detail=f"cannot complete {stage.value}: {len(blocking)} unresolved critical/major issue(s)"
                )

        payload = OpaquePayload.encode(outcome if outcome is not None else {}, kind=f"stage.{stage.value}")
        entry = self.ledger.transition(task_id, stage, StageStatus.COMPLETED, outcome=payload)
        data = payload.decode_json()
        self.broadcaster.emit_complete(task_id, stage, data=data if isinstance(data, dict) else {"outcome": data})
        following = stage.successor
        if following is not None:
            self.start_stage(task_id, following)
        else:
            logger.info("Task %s finished the pipeline", task_id)
        return entry

    def fail_stage(self, task_id: str, stage: Stage, reason: str) -> StageEntry:
        if not reason.strip():
            raise ValueError("a failed stage needs a reason")
        entry = self.ledger.transition(task_id, stage, StageStatus.FAILED, reason=reason)
        logger.warning("Stage %s/%s failed: %s", task_id, stage.value, reason)
        self.broadcaster.emit_error(task_id, f"{stage.value} failed: {reason}", stage=stage, data={"reason": reason})
        return entry

    def cancel(self, task_id: str) -> StageEntry | None:
        """Fail the active stage with reason "cancelled" and stop any in-flight loop at its next checkpoint."""
        with self._lock:
            token = self._tokens.get(task_id)
        if token is not None:
            token.cancel()
        pending = self.gates.pending(task_id)
        if pending is not None:
            self.gates.resolve(pending.id, False, "cancelled")
        active = self.ledger.active_stage(task_id)
        if active is None:
            logger.info("Cancel requested for %s with no active stage", task_id)
            return None
        return self.fail_stage(task_id, active.stage, "cancelled")

    def progress(self, task_id: str) -> StageProgress:
        return self.ledger.progress(task_id)

    def resolve_gate(self, gate_id: str, approved: bool, notes: str | None = None) -> ApprovalGate:
        """Resolve a gate; clarification gates also settle the Triage stage."""
        gate = self.gates.resolve(gate_id, approved, notes)
        if gate.gate_type == GateType.TRIAGE_CLARIFICATION:
            if approved:
                self.complete_stage(gate.task_id, Stage.TRIAGE, {"clarified": True})
            else:
                self.fail_stage(gate.task_id, Stage.TRIAGE, notes or "clarification rejected")
        return gate

    # ------------------------------------------------------------------
    # Stage drivers
    # ------------------------------------------------------------------

    def _ensure_started(self, task_id: str, stage: Stage) -> StageEntry:
        entry = self.ledger.entry(task_id, stage)
        if entry.status in (StageStatus.PENDING, StageStatus.FAILED):
            return self.start_stage(task_id, stage)
        if entry.status != StageStatus.IN_PROGRESS:
            raise InvalidTransition(detail=f"{stage.value} of {task_id} is {entry.status.value}")
        return entry

    @contextmanager
    def _failing_stage(self, task_id: str, stage: Stage) -> Iterator[None]:
        """Turn adapter and tool failures into a Failed stage before re-raising them."""
        try:
            yield
        except (AdapterFailure, ToolFailure) as exc:
            self.fail_stage(task_id, stage, exc.reason)
            raise

    def _blocking_issues(self, task_id: str) -> list[ReviewIssue]:
        return [issue for issue in self.store.list_review_issues(task_id) if issue.blocking]

    async def run_triage(self, task_id: str) -> list[TriageQuestion]:
        """Analyze the requirements; with no open questions Triage completes and TaskCreation starts."""
        task = self.ledger.task(task_id)
        self._ensure_started(task_id, Stage.TRIAGE)
        with self._failing_stage(task_id, Stage.TRIAGE):
            analysis = await self.triage_agent.analyze_requirements(task_id, task.requirements)
            self.store.write_analysis(task_id, analysis)
            questions = await self.triage_agent.generate_questions(task_id, analysis)
        self.store.write_questions(task_id, questions)

        if not questions:
            self.complete_stage(
                task_id,
                Stage.TRIAGE,
                {"complexity": analysis.estimated_complexity.value, "questions": 0},
            )
            return []

        self.gates.request(
            task_id,
            GateType.TRIAGE_CLARIFICATION,
            stage=Stage.TRIAGE,
            context={"questions": [question.id for question in questions if question.required]},
        )
        return questions

    def answer_question(self, task_id: str, question_id: str, answer: str) -> list[TriageQuestion]:
        """Record an answer; once every required question is answered Triage completes."""
        questions = self.store.read_questions(task_id)
        for index, question in enumerate(questions):
            if question.id == question_id:
                questions[index] = question.model_copy(update={"answer": answer})
                break
        else:
            raise NotFound(detail=f"question {question_id} of task {task_id}")
        self.store.write_questions(task_id, questions)

        if all(question.answered for question in questions if question.required):
            pending = self.gates.pending(task_id)
            if pending is not None and pending.gate_type == GateType.TRIAGE_CLARIFICATION:
                self.resolve_gate(pending.id, True, "all required questions answered")
        return questions

    async def run_task_creation(self, task_id: str) -> TaskPlan:
        self._ensure_started(task_id, Stage.TASK_CREATION)
        analysis = self.store.read_analysis(task_id)
        questions = self.store.read_questions(task_id)
        with self._failing_stage(task_id, Stage.TASK_CREATION):
            plan = await self.triage_agent.create_task_plan(task_id, analysis, questions)
        self.store.write_task_plan(task_id, plan)
        self.complete_stage(task_id, Stage.TASK_CREATION, {"steps": len(plan.steps)})
        return plan

    async def run_agentic_loop(self, task_id: str, initial_plan: TaskPlan | None = None) -> LoopResult:
        """Run one agentic loop invocation; a task never has two in flight.

        Raises:
            Conflict: If a loop is already running for the task.
            LoopFailure: On terminal loop failure (the stage is already Failed).
        """
        token = CancellationToken()
        with self._lock:
            if task_id in self._tokens:
                raise Conflict(detail=f"agentic loop already running for {task_id}")
            self._tokens[task_id] = token
        try:
            task = self.ledger.task(task_id)
            self._ensure_started(task_id, Stage.AGENTIC_LOOP)
            loop = AgenticLoop(
                task_id=task_id,
                requirements=task.requirements,
                ledger=self.ledger,
                broadcaster=self.broadcaster,
                gates=self.gates,
                reasoning=self.reasoning,
                tools=self.tools,
                settings=self.settings,
                initial_plan=initial_plan if initial_plan is not None else self.store.read_task_plan(task_id),
                token=token,
            )
            result = await loop.run()
        finally:
            with self._lock:
                self._tokens.pop(task_id, None)

        files_modified = sorted({path for entry in result.execution_log for path in entry.files_modified})
        self.complete_stage(
            task_id,
            Stage.AGENTIC_LOOP,
            {
                "iterations": result.iterations,
                "plan_revision": result.plan.revision,
                "files_modified": files_modified,
            },
        )
        return result

    async def _collect_files(self, task_id: str) -> dict[str, str]:
        entry = self.ledger.entry(task_id, Stage.AGENTIC_LOOP)
        if entry.outcome is None:
            return {}
        files: dict[str, str] = {}
        for path in entry.outcome.decode_json().get("files_modified", []):
            result = await self.tools.invoke("filesystem", "read_file", {"path": path})
            files[path] = str(result.output)
        return files

    async def run_code_review(
        self,
        task_id: str,
        files: dict[str, str] | None = None,
        context: str = "",
    ) -> ReviewSummary:
        """Review the changed files; with Critical/Major issues the stage waits for their resolution."""
        self._ensure_started(task_id, Stage.CODE_REVIEW)
        with self._failing_stage(task_id, Stage.CODE_REVIEW):
            if files is None:
                files = await self._collect_files(task_id)
            issues = await self.review_agent.review_code(task_id, files, context)
            summary = await self.review_agent.generate_summary(task_id, issues)
        for issue in issues:
            self.store.write_review_issue(issue)
        self.store.write_review_summary(task_id, summary)

        if self._blocking_issues(task_id):
            self.ledger.transition(task_id, Stage.CODE_REVIEW, StageStatus.WAITING_APPROVAL)
            self.broadcaster.emit_stage_update(
                task_id,
                Stage.CODE_REVIEW,
                StageStatus.WAITING_APPROVAL,
                message="Review found critical or major issues",
                data=summary.model_dump(mode="json"),
            )
        else:
            self.complete_stage(task_id, Stage.CODE_REVIEW, summary)
        return summary

    def resolve_review_issue(self, task_id: str, issue_id: str, status: ReviewStatus) -> ReviewIssue:
        try:
            issue = self.store.update_review_issue_status(task_id, issue_id, status)
        except FileNotFoundError as exc:
            raise NotFound(detail=f"review issue {issue_id} of task {task_id}") from exc
        entry = self.ledger.entry(task_id, Stage.CODE_REVIEW)
        if entry.status == StageStatus.WAITING_APPROVAL and not self._blocking_issues(task_id):
            self.complete_stage(task_id, Stage.CODE_REVIEW, self.store.read_review_summary(task_id))
        return issue

    async def run_pr_creation(
        self,
        task_id: str,
        *,
        head: str,
        base: str = "main",
        title: str | None = None,
        body: str | None = None,
    ) -> dict[str, Any]:
        task = self.ledger.task(task_id)
        self._ensure_started(task_id, Stage.PR_CREATION)
        if body is None:
            plan = self.store.read_task_plan(task_id)
            body = plan.overview if plan is not None else task.requirements
        with self._failing_stage(task_id, Stage.PR_CREATION):
            result = await self.tools.invoke(
                "github",
                "create_pull_request",
                {"title": title or task.title, "body": body, "head": head, "base": base},
            )
        output = result.output if isinstance(result.output, dict) else {}
        outcome = {"pr_number": output.get("number"), "pr_url": output.get("url")}
        self.complete_stage(task_id, Stage.PR_CREATION, outcome)
        return outcome


def outcome_of(entry: StageEntry, model: type[BaseModel] | None = None) -> Any:
    """Decode a stage outcome written by :meth:`PipelineCoordinator.complete_stage`."""
    if entry.outcome is None:
        return None
    if model is not None:
        return entry.outcome.decode(model, kind=f"stage.{entry.stage.value}")
    return entry.outcome.decode_json()
