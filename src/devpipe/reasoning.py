"""Reasoning capability boundary.

The engine never interprets free text from the language model. Every call
names a pydantic schema, and :func:`judge` turns the outcome into a tagged
``Judgment``: ``Parsed`` when the adapter answered in shape, ``Fallback``
carrying an explicitly constructed conservative default when it did not.
An unreachable adapter is not papered over; ``AdapterUnavailable``
propagates to the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Generic, Protocol, TypeVar, Union

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from .errors import AdapterUnavailable, MalformedResponse
from .llm import StructuredOutputAdapter, get_structured_chat_model
from .models import (
    CheckStatus,
    PlanDraft,
    PlanStep,
    ValidationCheck,
    ValidationVerdict,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
T = TypeVar("T")


class PromptContext(BaseModel):
    """Everything the reasoning adapter sees for one judgment."""

    task_id: str
    purpose: str
    instructions: str
    payload: dict[str, Any] = Field(default_factory=dict)

    def render(self) -> str:
        body = json.dumps(self.payload, indent=2, sort_keys=True, default=str)
        return f"Task: {self.task_id}\nPurpose: {self.purpose}\n\n{body}"


class ReasoningAdapter(Protocol):
    async def complete(self, prompt: PromptContext, schema: type[ModelT]) -> ModelT:
        """Return a ``schema`` instance.

        Raises:
            AdapterUnavailable: The service could not be reached.
            MalformedResponse: The answer did not fit ``schema``.
        """
        ...


@dataclass(frozen=True, slots=True)
class Parsed(Generic[T]):
    value: T

    @property
    def is_fallback(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class Fallback(Generic[T]):
    default: T
    reason: str

    @property
    def value(self) -> T:
        return self.default

    @property
    def is_fallback(self) -> bool:
        return True


Judgment = Union[Parsed[T], Fallback[T]]


async def judge(
    adapter: ReasoningAdapter,
    prompt: PromptContext,
    schema: type[ModelT],
    fallback: Callable[[], ModelT],
) -> Judgment[ModelT]:
    """Ask ``adapter`` for a ``schema`` judgment, falling back on malformed answers.

    Raises:
        AdapterUnavailable: Propagated unchanged.
    """
    try:
        value = await adapter.complete(prompt, schema)
    except MalformedResponse as exc:
        logger.warning(
            "Malformed %s response for %s (%s); using fallback",
            prompt.purpose,
            prompt.task_id,
            exc.detail or exc.reason,
        )
        return Fallback(default=fallback(), reason=str(exc))
    return Parsed(value=value)


# ---------------------------------------------------------------------------
# Fallback constructors
# ---------------------------------------------------------------------------


def default_plan() -> PlanDraft:
    """Two-step setup/implement plan used when planning output is unusable."""
    return PlanDraft(
        steps=[
            PlanStep(
                id="1",
                action="SETUP",
                description="Set up project structure",
                tools=("filesystem",),
                validation=("Files created",),
            ),
            PlanStep(
                id="2",
                action="IMPLEMENT",
                description="Implement core functionality",
                dependencies=("1",),
                tools=("filesystem", "git"),
                validation=("Code compiles", "Tests pass"),
            ),
        ],
        rationale="default plan",
    )


def needs_iteration_verdict() -> ValidationVerdict:
    return ValidationVerdict(
        passed=False,
        checks=[ValidationCheck(name="Parse Error", status=CheckStatus.FAILED)],
        needs_iteration=True,
        suggestions=["Review implementation manually"],
    )


def minimal_refinement(steps: list[PlanStep], verdict: ValidationVerdict) -> PlanDraft:
    """Keep the steps whose action is named by a failed check, or every step if none is."""
    failed_names = [check.name.upper() for check in verdict.failed_checks]
    kept = [step for step in steps if any(step.action.upper() in name for name in failed_names)]
    return PlanDraft(steps=kept or list(steps), rationale="fallback refinement")


# ---------------------------------------------------------------------------
# LangChain adapter
# ---------------------------------------------------------------------------


class LangChainReasoningAdapter:
    """ReasoningAdapter backed by ``ChatOpenAI.with_structured_output``.

    One structured runnable is built lazily per schema. ``timeout_seconds``
    bounds each call; ``None`` leaves calls unbounded apart from the HTTP
    client's own timeout.
    """

    def __init__(
        self,
        *,
        model_name: str,
        timeout_seconds: float | None = None,
        temperature: float = 0.0,
        repo_root: Path | None = None,
    ) -> None:
        self.model_name = model_name
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.repo_root = repo_root
        self._adapters: dict[type[BaseModel], StructuredOutputAdapter[Any]] = {}

    def _adapter_for(self, schema: type[ModelT]) -> StructuredOutputAdapter[ModelT]:
        adapter = self._adapters.get(schema)
        if adapter is None:
            adapter = get_structured_chat_model(
                model_name=self.model_name,
                schema=schema,
                temperature=self.temperature,
                repo_root=self.repo_root,
            )
            self._adapters[schema] = adapter
        return adapter

    async def complete(self, prompt: PromptContext, schema: type[ModelT]) -> ModelT:
        messages = [SystemMessage(content=prompt.instructions), HumanMessage(content=prompt.render())]
        try:
            adapter = self._adapter_for(schema)
            call = adapter.ainvoke(messages)
            if self.timeout_seconds is not None:
                return await asyncio.wait_for(call, self.timeout_seconds)
            return await call
        except MalformedResponse:
            raise
        except asyncio.TimeoutError as exc:
            raise AdapterUnavailable(detail=f"{prompt.purpose} timed out after {self.timeout_seconds}s") from exc
        except Exception as exc:  # noqa: BLE001 - provider SDK and transport errors.
            logger.error("Reasoning call %s for %s failed: %s", prompt.purpose, prompt.task_id, exc)
            raise AdapterUnavailable(detail=str(exc)) from exc
