from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, TypedDict

from langgraph.checkpoint.memory import InMemorySaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command, interrupt

from .broadcast import EventBroadcaster
from .errors import (
    AdapterFailure,
    ApprovalRejected,
    Cancelled,
    CriticalStepFailed,
    InvalidTransition,
    IterationExhausted,
    LoopFailure,
    PipelineError,
    ToolFailure,
    UnrecoverableValidation,
)
from .gates import ApprovalGates
from .ledger import StageLedger
from .models import (
    ExecutionLogEntry,
    GateStatus,
    GateType,
    LogLevel,
    LoopPhase,
    LoopState,
    Plan,
    PlanDraft,
    PlanStep,
    Stage,
    StageStatus,
    StepImplementation,
    StepResult,
    TaskPlan,
    ValidationVerdict,
)
from .reasoning import (
    PromptContext,
    ReasoningAdapter,
    default_plan,
    judge,
    minimal_refinement,
    needs_iteration_verdict,
)
from .settings import RuntimeSettings
from .tools import ToolAdapter

logger = logging.getLogger(__name__)

PLAN_INSTRUCTIONS = (
    "You are a senior software engineer planning an implementation. Break the requirements into "
    "ordered steps. Each step needs an id, an action kind (for example SETUP, IMPLEMENT, TEST, "
    "ARCHITECTURE_CHANGE), a description, the ids of steps it depends on, the tool capabilities it "
    "needs (filesystem, git, github) and the criteria that prove it worked. Mark a step CRITICAL in "
    "its action kind only when nothing after it can succeed without it."
)
IMPLEMENT_INSTRUCTIONS = (
    "Implement one plan step by returning the tool calls to perform. Use only the capabilities "
    "listed for the step. Filesystem paths are relative to the workspace root."
)
VALIDATE_INSTRUCTIONS = (
    "Validate the implementation against the requirements using the execution log. Report each "
    "check with status passed, failed or skipped. Set passed only if every required check passed. "
    "Set needs_iteration when another refinement pass could fix the failures."
)
REFINE_INSTRUCTIONS = (
    "Refine the plan. Given the remaining steps and the validation verdict, return the revised "
    "list of steps that must run next to address the failures."
)


class CancellationToken:
    """Cooperative cancellation checked between steps and before each phase."""

    def __init__(self) -> None:
        self._cancelled = False
        self._event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._event is not None and self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._event.set)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled()

    async def wait(self) -> None:
        if self._event is None:
            self._loop = asyncio.get_running_loop()
            self._event = asyncio.Event()
        if self._cancelled:
            return
        await self._event.wait()


class LoopGraphState(TypedDict, total=False):
    iteration: int
    plan: dict[str, Any]
    execution_log: list[dict[str, Any]]
    verdict: dict[str, Any] | None
    gate_id: str | None


@dataclass
class LoopResult:
    task_id: str
    state: LoopState
    iterations: int
    plan: Plan
    verdict: ValidationVerdict
    execution_log: list[ExecutionLogEntry] = field(default_factory=list)


class AgenticLoop:
    """Plan -> execute -> validate -> refine cycle for one task, as a LangGraph StateGraph.

    Build one instance per invocation. The graph suspends with
    ``interrupt()`` while an architecture approval gate is Pending and
    :meth:`run` resumes it with the gate decision. Every phase appends one
    :class:`LoopIteration` record and publishes one progress event.
    """

    stage = Stage.AGENTIC_LOOP

    def __init__(
        self,
        *,
        task_id: str,
        requirements: str,
        ledger: StageLedger,
        broadcaster: EventBroadcaster,
        gates: ApprovalGates,
        reasoning: ReasoningAdapter,
        tools: ToolAdapter,
        settings: RuntimeSettings,
        initial_plan: TaskPlan | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self.task_id = task_id
        self.requirements = requirements
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.gates = gates
        self.reasoning = reasoning
        self.tools = tools
        self.settings = settings
        self.initial_plan = initial_plan
        self.token = token if token is not None else CancellationToken()
        self.max_iterations = settings.max_iterations
        self.attempt = 1
        self.state = LoopState.PLANNING
        self._checkpointer = InMemorySaver()
        self.graph = self._build_graph().compile(checkpointer=self._checkpointer)

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(LoopGraphState)
        graph.add_node("plan", self._plan_node)
        graph.add_node("request_approval", self._request_approval_node)
        graph.add_node("await_approval", self._await_approval_node)
        graph.add_node("execute", self._execute_node)
        graph.add_node("validate", self._validate_node)
        graph.add_node("refine", self._refine_node)

        graph.add_edge(START, "plan")
        graph.add_conditional_edges(
            "plan",
            self._approval_route,
            {
                "request_approval": "request_approval",
                "execute": "execute",
            },
        )
        graph.add_edge("request_approval", "await_approval")
        graph.add_edge("await_approval", "execute")
        graph.add_edge("execute", "validate")
        graph.add_edge("refine", "execute")
        return graph

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _prompt(self, purpose: str, instructions: str, **payload: Any) -> PromptContext:
        return PromptContext(task_id=self.task_id, purpose=purpose, instructions=instructions, payload=payload)

    def _record(self, iteration: int, phase: LoopPhase, payload: dict[str, Any], message: str) -> None:
        self.ledger.append_iteration(
            self.task_id, iteration=iteration, phase=phase, payload=payload, attempt=self.attempt
        )
        # Once cancelled, the stage error is the last event subscribers see.
        if self.token.cancelled:
            return
        self.broadcaster.emit_progress(
            self.task_id,
            self.stage,
            iteration / self.max_iterations * 100,
            message=message,
            data={"phase": phase.value, "iteration": iteration, "max_iterations": self.max_iterations},
        )

    def _is_critical(self, step: PlanStep) -> bool:
        return self.settings.critical_action_marker in step.action.upper()

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def _plan_node(self, state: LoopGraphState) -> dict[str, Any]:
        self.token.raise_if_cancelled()
        self.state = LoopState.PLANNING
        prompt = self._prompt(
            "plan",
            PLAN_INSTRUCTIONS,
            requirements=self.requirements,
            task_plan=self.initial_plan.model_dump(mode="json") if self.initial_plan else None,
        )
        judgment = await judge(self.reasoning, prompt, PlanDraft, default_plan)
        plan = Plan.from_draft(judgment.value)
        self._record(
            1,
            LoopPhase.PLANNING,
            {
                "plan": plan,
                "fallback": judgment.is_fallback,
                "fingerprint": plan.fingerprint,
            },
            f"Plan created with {len(plan.steps)} step(s)",
        )
        return {"iteration": 1, "plan": plan.model_dump(mode="json"), "execution_log": [], "verdict": None}

    def _approval_route(self, state: LoopGraphState) -> str:
        plan = Plan.model_validate(state["plan"])
        if plan.steps_requiring_approval(self.settings.approval_action_kinds):
            return "request_approval"
        return "execute"

    async def _request_approval_node(self, state: LoopGraphState) -> dict[str, Any]:
        self.state = LoopState.BLOCKED
        plan = Plan.model_validate(state["plan"])
        flagged = plan.steps_requiring_approval(self.settings.approval_action_kinds)
        handle = self.gates.request(
            self.task_id,
            GateType.ARCHITECTURE_DECISION,
            stage=self.stage,
            context={
                "plan_fingerprint": plan.fingerprint,
                "steps": [step.model_dump(mode="json") for step in flagged],
            },
        )
        return {"gate_id": handle.id}

    async def _await_approval_node(self, state: LoopGraphState) -> dict[str, Any]:
        decision = interrupt({"gate_id": state["gate_id"], "task_id": self.task_id})
        if decision.get("status") != GateStatus.APPROVED.value:
            raise ApprovalRejected(detail=decision.get("notes"))
        self.ledger.transition(self.task_id, self.stage, StageStatus.IN_PROGRESS)
        self.broadcaster.emit_stage_update(
            self.task_id,
            self.stage,
            StageStatus.IN_PROGRESS,
            message="Plan approved, resuming execution",
        )
        return {}

    async def _execute_node(self, state: LoopGraphState) -> dict[str, Any]:
        self.state = LoopState.EXECUTING
        iteration = state["iteration"]
        plan = Plan.model_validate(state["plan"])
        entries: list[ExecutionLogEntry] = []
        try:
            for step in plan.execution_order():
                self.token.raise_if_cancelled()
                entry = await self._run_step(step, iteration)
                entries.append(entry)
                if entry.result == StepResult.FAILED and self._is_critical(step):
                    raise CriticalStepFailed(step.id, detail="; ".join(entry.errors))
        finally:
            # The execution record is written even when a critical failure or cancellation aborts the pass.
            self._record(
                iteration,
                LoopPhase.EXECUTION,
                {"plan_revision": plan.revision, "entries": entries},
                f"Executed {len(entries)} of {len(plan.steps)} step(s)",
            )
        log = list(state.get("execution_log") or [])
        log.extend(entry.model_dump(mode="json") for entry in entries)
        return {"execution_log": log}

    async def _run_step(self, step: PlanStep, iteration: int) -> ExecutionLogEntry:
        prompt = self._prompt(
            "implement_step",
            IMPLEMENT_INSTRUCTIONS,
            requirements=self.requirements,
            step=step.model_dump(mode="json"),
            iteration=iteration,
        )
        files_modified: list[str] = []
        try:
            implementation = await self.reasoning.complete(prompt, StepImplementation)
            for call in implementation.tool_calls:
                result = await self.tools.invoke(call.capability, call.action, call.args)
                files_modified.extend(result.files_modified)
        except (AdapterFailure, ToolFailure) as exc:
            logger.warning("Step %s of %s failed: %s", step.id, self.task_id, exc)
            self.broadcaster.emit_log(
                self.task_id,
                f"Step {step.id} ({step.action}) failed: {exc}",
                level=LogLevel.WARNING,
                stage=self.stage,
            )
            return ExecutionLogEntry(
                iteration=iteration,
                step_id=step.id,
                action=step.action,
                result=StepResult.FAILED,
                message="Failed",
                files_modified=files_modified,
                errors=[str(exc)],
            )

        message = implementation.summary or f"{len(implementation.tool_calls)} tool call(s) completed"
        self.broadcaster.emit_log(
            self.task_id,
            f"Step {step.id} ({step.action}): {message}",
            stage=self.stage,
            data={"files_modified": files_modified},
        )
        return ExecutionLogEntry(
            iteration=iteration,
            step_id=step.id,
            action=step.action,
            result=StepResult.SUCCESS,
            message=message,
            files_modified=files_modified,
        )

    async def _validate_node(self, state: LoopGraphState) -> Command[str]:
        self.token.raise_if_cancelled()
        self.state = LoopState.VALIDATING
        iteration = state["iteration"]
        prompt = self._prompt(
            "validate",
            VALIDATE_INSTRUCTIONS,
            requirements=self.requirements,
            execution_log=state.get("execution_log") or [],
            iteration=iteration,
        )
        judgment = await judge(self.reasoning, prompt, ValidationVerdict, needs_iteration_verdict)
        verdict = judgment.value
        self._record(
            iteration,
            LoopPhase.VALIDATION,
            {"verdict": verdict, "fallback": judgment.is_fallback},
            "Validation passed" if verdict.passed else "Validation failed",
        )
        update = {"verdict": verdict.model_dump(mode="json")}
        if verdict.passed:
            self.state = LoopState.SUCCEEDED
            return Command(goto=END, update=update)
        if not verdict.needs_iteration:
            raise UnrecoverableValidation(detail=", ".join(check.name for check in verdict.failed_checks) or None)
        if iteration >= self.max_iterations:
            raise IterationExhausted(detail=f"{iteration} of {self.max_iterations}")
        return Command(goto="refine", update=update)

    async def _refine_node(self, state: LoopGraphState) -> dict[str, Any]:
        self.token.raise_if_cancelled()
        self.state = LoopState.REFINING
        plan = Plan.model_validate(state["plan"])
        verdict = ValidationVerdict.model_validate(state["verdict"])
        remaining = self._remaining_steps(plan, state.get("execution_log") or [], state["iteration"])
        prompt = self._prompt(
            "refine",
            REFINE_INSTRUCTIONS,
            requirements=self.requirements,
            remaining_steps=[step.model_dump(mode="json") for step in remaining],
            verdict=verdict.model_dump(mode="json"),
        )
        judgment = await judge(self.reasoning, prompt, PlanDraft, lambda: minimal_refinement(remaining, verdict))
        revised = plan.revise(judgment.value.steps, rationale=judgment.value.rationale)
        iteration = state["iteration"] + 1
        self._record(
            iteration,
            LoopPhase.ITERATION,
            {
                "from_revision": plan.revision,
                "plan": revised,
                "suggestions": verdict.suggestions,
                "fallback": judgment.is_fallback,
            },
            f"Refined plan to revision {revised.revision}",
        )
        return {"iteration": iteration, "plan": revised.model_dump(mode="json"), "verdict": None}

    @staticmethod
    def _remaining_steps(plan: Plan, log: list[dict[str, Any]], iteration: int) -> list[PlanStep]:
        """Steps that did not succeed in this iteration; every step if all of them did."""
        succeeded = {
            entry["step_id"]
            for entry in log
            if entry.get("iteration") == iteration and entry.get("result") == StepResult.SUCCESS.value
        }
        remaining = [step for step in plan.steps if step.id not in succeeded]
        return remaining or list(plan.steps)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def _await_gate(self, gate_id: str) -> dict[str, Any]:
        wait_task = asyncio.ensure_future(
            self.gates.wait(gate_id, timeout=self.settings.approval_timeout_seconds)
        )
        cancel_task = asyncio.ensure_future(self.token.wait())
        _, pending = await asyncio.wait({wait_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self.token.raise_if_cancelled()
        gate = wait_task.result()
        return {"status": gate.status.value, "notes": gate.approver_notes}

    async def run(self) -> LoopResult:
        """Drive the graph to Succeeded or a terminal failure.

        Raises:
            InvalidTransition: If the AgenticLoop stage is not InProgress.
            LoopFailure: On any terminal loop failure (the stage is Failed first).
            AdapterFailure: If the reasoning adapter is unavailable outside a step.
        """
        entry = self.ledger.entry(self.task_id, self.stage)
        if entry.status != StageStatus.IN_PROGRESS:
            raise InvalidTransition(
                detail=f"{self.stage.value} of {self.task_id} is {entry.status.value}, expected in_progress"
            )
        self.attempt = max(entry.attempt, 1)
        config = {
            "recursion_limit": self.settings.recursion_limit,
            "configurable": {"thread_id": f"agentic-loop-{self.task_id}-{uuid.uuid4().hex[:8]}"},
        }
        logger.info("Agentic loop started for %s (max %d iterations)", self.task_id, self.max_iterations)
        graph_input: Any = {"iteration": 1, "execution_log": [], "verdict": None, "gate_id": None}
        try:
            while True:
                self.token.raise_if_cancelled()
                await self.graph.ainvoke(graph_input, config=config)
                snapshot = await self.graph.aget_state(config)
                if not snapshot.next:
                    break
                decision = await self._await_gate(snapshot.values["gate_id"])
                graph_input = Command(resume=decision)
        except PipelineError as exc:
            self._fail(exc)
            raise
        except asyncio.CancelledError:
            self._fail(Cancelled())
            raise

        values = snapshot.values
        self.state = LoopState.SUCCEEDED
        logger.info("Agentic loop succeeded for %s after %d iteration(s)", self.task_id, values["iteration"])
        return LoopResult(
            task_id=self.task_id,
            state=self.state,
            iterations=values["iteration"],
            plan=Plan.model_validate(values["plan"]),
            verdict=ValidationVerdict.model_validate(values["verdict"]),
            execution_log=[ExecutionLogEntry.model_validate(item) for item in values.get("execution_log") or []],
        )

    def _fail(self, exc: PipelineError) -> None:
        self.state = LoopState.FAILED
        reason = exc.reason
        self.ledger.mark_latest_iteration_failed(self.task_id, reason)
        entry = self.ledger.entry(self.task_id, self.stage)
        if entry.status == StageStatus.FAILED:
            logger.info("Agentic loop for %s stopped: stage already failed (%s)", self.task_id, entry.reason)
            return
        self.ledger.transition(self.task_id, self.stage, StageStatus.FAILED, reason=reason)
        log = logger.warning if isinstance(exc, LoopFailure) else logger.error
        log("Agentic loop for %s failed: %s", self.task_id, exc)
        self.broadcaster.emit_error(self.task_id, str(exc), stage=self.stage, data={"reason": reason})
