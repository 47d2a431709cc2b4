from __future__ import annotations

import heapq
import json
import uuid
from collections import defaultdict
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Iterable, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .canonical import fingerprint, to_canonical_bytes

ModelT = TypeVar("ModelT", bound=BaseModel)


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


class RecordModel(BaseModel):
    """Base for every persisted record."""

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


class Stage(str, Enum):
    TRIAGE = "triage"
    TASK_CREATION = "task_creation"
    AGENTIC_LOOP = "agentic_loop"
    CODE_REVIEW = "code_review"
    PR_CREATION = "pr_creation"

    @property
    def position(self) -> int:
        return STAGE_ORDER.index(self)

    @property
    def successor(self) -> Stage | None:
        position = self.position + 1
        return STAGE_ORDER[position] if position < len(STAGE_ORDER) else None

    @property
    def predecessors(self) -> tuple[Stage, ...]:
        return STAGE_ORDER[: self.position]


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STAGE_STATUSES = frozenset({StageStatus.IN_PROGRESS, StageStatus.WAITING_APPROVAL})

# Failed -> InProgress is the explicit external retry.
STAGE_STATUS_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PENDING: frozenset({StageStatus.IN_PROGRESS}),
    StageStatus.IN_PROGRESS: frozenset(
        {StageStatus.WAITING_APPROVAL, StageStatus.COMPLETED, StageStatus.FAILED}
    ),
    StageStatus.WAITING_APPROVAL: frozenset(
        {StageStatus.IN_PROGRESS, StageStatus.COMPLETED, StageStatus.FAILED}
    ),
    StageStatus.COMPLETED: frozenset(),
    StageStatus.FAILED: frozenset({StageStatus.IN_PROGRESS}),
}


# ---------------------------------------------------------------------------
# Opaque payloads
# ---------------------------------------------------------------------------


class OpaquePayload(RecordModel):
    """Serialized blob decoded only by the component that produced it.

    ``data`` is RFC 8785 canonical JSON; ``kind`` and ``schema_version``
    document what the bytes contain.
    """

    kind: str
    schema_version: int = 1
    data: bytes

    @classmethod
    def encode(cls, value: Any, *, kind: str, schema_version: int = 1) -> "OpaquePayload":
        return cls(kind=kind, schema_version=schema_version, data=to_canonical_bytes(value))

    def decode(self, model: type[ModelT], *, kind: str | None = None) -> ModelT:
        """Decode into ``model``; ``kind`` guards against reading someone else's payload."""
        if kind is not None and kind != self.kind:
            raise ValueError(f"payload kind mismatch: expected {kind!r}, got {self.kind!r}")
        return model.model_validate_json(self.data)

    def decode_json(self) -> Any:
        return json.loads(self.data)


# ---------------------------------------------------------------------------
# Task, ledger and iteration records
# ---------------------------------------------------------------------------


class Task(RecordModel):
    id: str = Field(default_factory=lambda: new_id("TASK"))
    title: str
    requirements: str
    owner: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class StageEntry(RecordModel):
    task_id: str
    stage: Stage
    status: StageStatus = StageStatus.PENDING
    attempt: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    reason: str | None = None
    outcome: OpaquePayload | None = None
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STAGE_STATUSES


class LoopPhase(str, Enum):
    PLANNING = "planning"
    EXECUTION = "execution"
    VALIDATION = "validation"
    ITERATION = "iteration"


class IterationStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class LoopIteration(RecordModel):
    """Append-only audit record, one per phase transition of the agentic loop."""

    task_id: str
    attempt: int = Field(default=1, ge=1)
    iteration: int = Field(ge=1)
    sequence: int = Field(ge=1)
    phase: LoopPhase
    status: IterationStatus = IterationStatus.COMPLETED
    payload: OpaquePayload
    failure_reason: str | None = None
    recorded_at: datetime = Field(default_factory=utc_now)


class LoopState(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    VALIDATING = "validating"
    REFINING = "refining"
    SUCCEEDED = "succeeded"
    BLOCKED = "blocked"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Approval gates
# ---------------------------------------------------------------------------


class GateStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class GateType(str, Enum):
    ARCHITECTURE_DECISION = "architecture_decision"
    TRIAGE_CLARIFICATION = "triage_clarification"


class ApprovalGate(RecordModel):
    id: str = Field(default_factory=lambda: new_id("GATE"))
    task_id: str
    gate_type: GateType
    stage: Stage
    attempt: int = 0
    status: GateStatus = GateStatus.PENDING
    requested_at: datetime = Field(default_factory=utc_now)
    responded_at: datetime | None = None
    approver_notes: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


def _coerce_identifier(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class PlanStep(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    action: str
    description: str
    dependencies: tuple[str, ...] = ()
    tools: tuple[str, ...] = ()
    validation: tuple[str, ...] = ()

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _coerce_identifier(value)

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return tuple(_coerce_identifier(item) for item in value)
        return value


def _topological_order(steps: Iterable[PlanStep]) -> list[PlanStep]:
    """Kahn's algorithm with list order as the tie-break.

    Dependencies that name steps outside the plan are ignored.
    """
    ordered_steps = list(steps)
    by_id: dict[str, PlanStep] = {}
    for step in ordered_steps:
        if step.id in by_id:
            raise ValueError(f"Plan contains duplicate step id {step.id!r}")
        by_id[step.id] = step

    position = {step.id: index for index, step in enumerate(ordered_steps)}
    indegree = {step.id: 0 for step in ordered_steps}
    edges: dict[str, list[str]] = defaultdict(list)
    for step in ordered_steps:
        for dep in step.dependencies:
            if dep == step.id:
                raise ValueError(f"Plan step {step.id!r} depends on itself")
            if dep in by_id:
                indegree[step.id] += 1
                edges[dep].append(step.id)

    ready = [position[step.id] for step in ordered_steps if indegree[step.id] == 0]
    heapq.heapify(ready)
    ordered: list[PlanStep] = []
    while ready:
        current = ordered_steps[heapq.heappop(ready)]
        ordered.append(current)
        for nxt in edges[current.id]:
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                heapq.heappush(ready, position[nxt])

    if len(ordered) != len(ordered_steps):
        raise ValueError("Plan contains a cycle")
    return ordered


class PlanDraft(BaseModel):
    """Step list as returned by the reasoning adapter for planning and refinement."""

    steps: list[PlanStep]
    rationale: str = ""

    @model_validator(mode="after")
    def _check_steps(self) -> "PlanDraft":
        _topological_order(self.steps)
        return self


class Plan(BaseModel):
    """Immutable ordered step list. Refinement produces a new revision."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    steps: tuple[PlanStep, ...]
    revision: int = 1
    rationale: str = ""

    @model_validator(mode="after")
    def _check_steps(self) -> "Plan":
        _topological_order(self.steps)
        return self

    @classmethod
    def from_draft(cls, draft: PlanDraft) -> "Plan":
        return cls(steps=tuple(draft.steps), rationale=draft.rationale)

    def execution_order(self) -> list[PlanStep]:
        return _topological_order(self.steps)

    def revise(self, steps: Iterable[PlanStep], *, rationale: str = "") -> "Plan":
        return Plan(steps=tuple(steps), revision=self.revision + 1, rationale=rationale)

    def steps_requiring_approval(self, action_kinds: Iterable[str]) -> list[PlanStep]:
        kinds = {kind.upper() for kind in action_kinds}
        return [step for step in self.steps if step.action.upper() in kinds]

    @property
    def fingerprint(self) -> str:
        return fingerprint(self)


# ---------------------------------------------------------------------------
# Execution and validation
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    capability: str
    action: str
    args: dict[str, Any] = Field(default_factory=dict)


class StepImplementation(BaseModel):
    """Tool calls the reasoning adapter proposes for one plan step."""

    summary: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)


class ToolResult(BaseModel):
    capability: str
    action: str
    output: Any = None
    files_modified: list[str] = Field(default_factory=list)


class StepResult(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ExecutionLogEntry(RecordModel):
    timestamp: datetime = Field(default_factory=utc_now)
    iteration: int
    step_id: str
    action: str
    result: StepResult
    message: str = ""
    files_modified: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class CheckStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ValidationCheck(BaseModel):
    name: str
    status: CheckStatus
    message: str = ""


class ValidationVerdict(BaseModel):
    passed: bool
    checks: list[ValidationCheck] = Field(default_factory=list)
    needs_iteration: bool = False
    suggestions: list[str] = Field(default_factory=list)

    @property
    def failed_checks(self) -> list[ValidationCheck]:
        return [check for check in self.checks if check.status == CheckStatus.FAILED]


# ---------------------------------------------------------------------------
# Triage and task creation
# ---------------------------------------------------------------------------


class Complexity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"


class TriageAnalysis(BaseModel):
    summary: str
    technical_requirements: list[str] = Field(default_factory=list)
    functional_requirements: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    suggested_approach: str = ""
    estimated_complexity: Complexity = Complexity.MEDIUM
    requires_clarification: bool = False


class QuestionCategory(str, Enum):
    TECHNICAL = "technical"
    FUNCTIONAL = "functional"
    SCOPE = "scope"
    INTEGRATION = "integration"
    CONSTRAINTS = "constraints"


class TriageQuestion(BaseModel):
    id: str = Field(default_factory=lambda: new_id("Q"))
    question: str
    category: QuestionCategory = QuestionCategory.TECHNICAL
    required: bool = True
    context: str = ""
    answer: str | None = None

    @property
    def answered(self) -> bool:
        return bool(self.answer and self.answer.strip())


class QuestionSet(BaseModel):
    questions: list[TriageQuestion] = Field(default_factory=list)


class TaskPlanStep(BaseModel):
    id: str
    title: str
    description: str = ""
    dependencies: list[str] = Field(default_factory=list)
    estimated_effort: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _coerce_identifier(value)

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [_coerce_identifier(item) for item in value]
        return value


class TaskPlan(BaseModel):
    overview: str
    steps: list[TaskPlanStep] = Field(default_factory=list)
    technical_decisions: list[str] = Field(default_factory=list)
    resources: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Code review
# ---------------------------------------------------------------------------


class ReviewType(str, Enum):
    SECURITY = "SECURITY"
    PERFORMANCE = "PERFORMANCE"
    LOGIC = "LOGIC"
    ARCHITECTURE = "ARCHITECTURE"


class ReviewSeverity(str, Enum):
    CRITICAL = "CRITICAL"
    MAJOR = "MAJOR"
    MINOR = "MINOR"
    INFO = "INFO"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    IGNORED = "IGNORED"
    FALSE_POSITIVE = "FALSE_POSITIVE"


BLOCKING_SEVERITIES = frozenset({ReviewSeverity.CRITICAL, ReviewSeverity.MAJOR})
UNRESOLVED_REVIEW_STATUSES = frozenset({ReviewStatus.PENDING, ReviewStatus.ACKNOWLEDGED})


class ReviewFinding(BaseModel):
    file_path: str = ""
    line_number: int | None = None
    severity: ReviewSeverity = ReviewSeverity.MAJOR
    title: str
    description: str = ""
    suggestion: str | None = None


class ReviewFindings(BaseModel):
    issues: list[ReviewFinding] = Field(default_factory=list)


class ReviewIssue(RecordModel):
    id: str = Field(default_factory=lambda: new_id("ISSUE"))
    task_id: str
    review_type: ReviewType
    severity: ReviewSeverity
    file_path: str = ""
    line_number: int | None = None
    title: str
    description: str = ""
    suggestion: str | None = None
    status: ReviewStatus = ReviewStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def blocking(self) -> bool:
        return self.severity in BLOCKING_SEVERITIES and self.status in UNRESOLVED_REVIEW_STATUSES


class ReviewQuality(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    NEEDS_IMPROVEMENT = "NEEDS_IMPROVEMENT"
    POOR = "POOR"


class ReviewRecommendations(BaseModel):
    recommendations: list[str] = Field(default_factory=list)


class ReviewSummary(BaseModel):
    total_issues: int
    by_severity: dict[str, int]
    by_type: dict[str, int]
    overall_quality: ReviewQuality
    recommendations: list[str] = Field(default_factory=list)


class FixSuggestion(BaseModel):
    explanation: str
    fixed_code: str = ""


# ---------------------------------------------------------------------------
# Events and progress
# ---------------------------------------------------------------------------


class EventKind(str, Enum):
    STAGE_UPDATE = "stage_update"
    PROGRESS = "progress"
    LOG = "log"
    ERROR = "error"
    COMPLETE = "complete"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class WorkflowEvent(RecordModel):
    task_id: str
    kind: EventKind
    stage: Stage | None = None
    status: StageStatus | None = None
    message: str = ""
    progress: float | None = None
    level: LogLevel | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    sequence: int = 0
    emitted_at: datetime = Field(default_factory=utc_now)


class StageProgress(BaseModel):
    task_id: str
    current_stage: Stage | None
    completed_stages: list[Stage]
    total_stages: int = len(STAGE_ORDER)
    percentage: float
