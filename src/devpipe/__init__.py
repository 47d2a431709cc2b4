from importlib.metadata import PackageNotFoundError, version

from .broadcast import EventBroadcaster, Subscription
from .errors import (
    AdapterFailure,
    AdapterUnavailable,
    ApprovalRejected,
    Cancelled,
    Conflict,
    CriticalStepFailed,
    InvalidTransition,
    IterationExhausted,
    LoopFailure,
    MalformedResponse,
    NotFound,
    PipelineError,
    ToolFailure,
    UnrecoverableValidation,
)
from .gates import ApprovalGates, GateHandle
from .ledger import StageLedger
from .loop import AgenticLoop, CancellationToken, LoopResult
from .models import (
    ApprovalGate,
    EventKind,
    ExecutionLogEntry,
    GateStatus,
    GateType,
    LoopIteration,
    LoopPhase,
    LoopState,
    OpaquePayload,
    Plan,
    PlanStep,
    ReviewIssue,
    ReviewSeverity,
    ReviewStatus,
    ReviewSummary,
    Stage,
    StageEntry,
    StageProgress,
    StageStatus,
    Task,
    TaskPlan,
    TriageAnalysis,
    TriageQuestion,
    ValidationVerdict,
    WorkflowEvent,
)
from .pipeline import PipelineCoordinator
from .reasoning import LangChainReasoningAdapter, PromptContext, ReasoningAdapter, judge
from .review import CodeReviewAgent
from .settings import RuntimeSettings
from .state_store import FileStateStore
from .tools import CapabilityRegistry, GitCapability, GitHubCapability, ToolAdapter, WorkspaceFilesystem
from .triage import TriageAgent


def get_version() -> str:
    try:
        return version("devpipe")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AdapterFailure",
    "AdapterUnavailable",
    "AgenticLoop",
    "ApprovalGate",
    "ApprovalGates",
    "ApprovalRejected",
    "Cancelled",
    "CancellationToken",
    "CapabilityRegistry",
    "CodeReviewAgent",
    "Conflict",
    "CriticalStepFailed",
    "EventBroadcaster",
    "EventKind",
    "ExecutionLogEntry",
    "FileStateStore",
    "GateHandle",
    "GateStatus",
    "GateType",
    "GitCapability",
    "GitHubCapability",
    "InvalidTransition",
    "IterationExhausted",
    "LangChainReasoningAdapter",
    "LoopFailure",
    "LoopIteration",
    "LoopPhase",
    "LoopResult",
    "LoopState",
    "MalformedResponse",
    "NotFound",
    "OpaquePayload",
    "PipelineCoordinator",
    "PipelineError",
    "Plan",
    "PlanStep",
    "PromptContext",
    "ReasoningAdapter",
    "ReviewIssue",
    "ReviewSeverity",
    "ReviewStatus",
    "ReviewSummary",
    "RuntimeSettings",
    "Stage",
    "StageEntry",
    "StageLedger",
    "StageProgress",
    "StageStatus",
    "Subscription",
    "Task",
    "TaskPlan",
    "ToolAdapter",
    "ToolFailure",
    "TriageAgent",
    "TriageAnalysis",
    "TriageQuestion",
    "UnrecoverableValidation",
    "ValidationVerdict",
    "WorkflowEvent",
    "get_version",
    "judge",
]
