"""Error taxonomy for the devpipe engine."""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for devpipe.

    ``reason`` is the stable string recorded on a Failed stage; ``detail``
    carries the free-form context that only appears in logs and messages.
    """

    default_reason = "pipeline error"

    def __init__(self, reason: str | None = None, detail: str | None = None) -> None:
        self.reason = reason or self.default_reason
        self.detail = detail
        message = self.reason if not detail else f"{self.reason}: {detail}"
        super().__init__(message)


class InvalidTransition(PipelineError):
    """Stage sequencing violated by the caller."""

    default_reason = "invalid transition"


class Conflict(PipelineError):
    """Duplicate approval gate, concurrent stage start or second loop invocation."""

    default_reason = "conflict"


class NotFound(PipelineError):
    """Unknown task, stage entry or gate."""

    default_reason = "not found"


class AdapterFailure(PipelineError):
    """Reasoning adapter errors."""

    default_reason = "adapter failure"


class AdapterUnavailable(AdapterFailure):
    """The reasoning service could not be reached or timed out."""

    default_reason = "adapter unavailable"


class MalformedResponse(AdapterFailure):
    """The reasoning service answered with something that does not fit the schema."""

    default_reason = "malformed response"


class ToolFailure(PipelineError):
    """Tool adapter errors."""

    NOT_CONNECTED = "capability not connected"
    ACTION_FAILED = "action failed"

    default_reason = ACTION_FAILED

    def __init__(self, capability: str, action: str, reason: str | None = None, detail: str | None = None) -> None:
        self.capability = capability
        self.action = action
        super().__init__(reason, detail or f"{capability}.{action}")


class LoopFailure(PipelineError):
    """Terminal failure of one agentic loop invocation."""

    default_reason = "agentic loop failed"


class IterationExhausted(LoopFailure):
    default_reason = "max iterations exhausted"


class ApprovalRejected(LoopFailure):
    default_reason = "plan rejected"


class UnrecoverableValidation(LoopFailure):
    default_reason = "unrecoverable validation failure"


class CriticalStepFailed(LoopFailure):
    default_reason = "critical step failed"

    def __init__(self, step_id: str, detail: str | None = None) -> None:
        self.step_id = step_id
        super().__init__(None, detail or f"step {step_id}")


class Cancelled(LoopFailure):
    default_reason = "cancelled"
