from __future__ import annotations

import asyncio

import pytest
from pydantic import BaseModel

from devpipe.errors import AdapterUnavailable, MalformedResponse
from devpipe.llm import ChatModelOptions, StructuredOutputAdapter, ensure_openai_api_key, normalize_structured_output
from devpipe.models import CheckStatus, PlanStep, ValidationCheck, ValidationVerdict
from devpipe.reasoning import (
    Fallback,
    LangChainReasoningAdapter,
    Parsed,
    PromptContext,
    default_plan,
    judge,
    minimal_refinement,
    needs_iteration_verdict,
)

from conftest import ScriptedReasoning


class Answer(BaseModel):
    value: int


PROMPT = PromptContext(task_id="TASK-1", purpose="unit", instructions="answer", payload={"q": 1})


class FakeRunnable:
    def __init__(self, result=None, error: Exception | None = None, delay: float = 0.0) -> None:
        self.result = result
        self.error = error
        self.delay = delay
        self.messages = None

    async def ainvoke(self, input):  # noqa: ANN001,ANN201
        self.messages = input
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def adapter_with(runnable: FakeRunnable, *, timeout_seconds: float | None = None) -> LangChainReasoningAdapter:
    adapter = LangChainReasoningAdapter(model_name="gpt-4o-mini", timeout_seconds=timeout_seconds)
    adapter._adapters[Answer] = StructuredOutputAdapter(schema=Answer, runnable=runnable)
    return adapter


@pytest.mark.asyncio
async def test_judge_returns_parsed_value():
    reasoning = ScriptedReasoning({Answer: Answer(value=3)})

    judgment = await judge(reasoning, PROMPT, Answer, lambda: Answer(value=0))

    assert isinstance(judgment, Parsed)
    assert judgment.value == Answer(value=3)
    assert not judgment.is_fallback


@pytest.mark.asyncio
async def test_judge_falls_back_on_malformed_response():
    reasoning = ScriptedReasoning()

    judgment = await judge(reasoning, PROMPT, Answer, lambda: Answer(value=0))

    assert isinstance(judgment, Fallback)
    assert judgment.is_fallback
    assert judgment.value == Answer(value=0)
    assert "malformed response" in judgment.reason


@pytest.mark.asyncio
async def test_judge_propagates_unavailable_adapter():
    reasoning = ScriptedReasoning({Answer: AdapterUnavailable(detail="down")})

    with pytest.raises(AdapterUnavailable):
        await judge(reasoning, PROMPT, Answer, lambda: Answer(value=0))


def test_fallback_constructors():
    plan = default_plan()
    assert [(s.id, s.action) for s in plan.steps] == [("1", "SETUP"), ("2", "IMPLEMENT")]
    assert plan.steps[1].validation == ("Code compiles", "Tests pass")

    verdict = needs_iteration_verdict()
    assert not verdict.passed and verdict.needs_iteration
    assert verdict.suggestions == ["Review implementation manually"]


def test_minimal_refinement_keeps_steps_named_by_failed_checks():
    steps = [
        PlanStep(id="1", action="SETUP", description="scaffold"),
        PlanStep(id="2", action="TEST", description="write tests"),
    ]
    verdict = ValidationVerdict(
        passed=False,
        checks=[
            ValidationCheck(name="Test suite", status=CheckStatus.FAILED),
            ValidationCheck(name="Setup", status=CheckStatus.PASSED),
        ],
        needs_iteration=True,
    )

    assert [s.id for s in minimal_refinement(steps, verdict).steps] == ["2"]
    assert [s.id for s in minimal_refinement(steps, ValidationVerdict(passed=False)).steps] == ["1", "2"]


def test_normalize_structured_output_shapes():
    assert normalize_structured_output(raw_output={"value": 1}, schema=Answer) == Answer(value=1)
    envelope = {"parsed": Answer(value=2), "parsing_error": None, "raw": None}
    assert normalize_structured_output(raw_output=envelope, schema=Answer) == Answer(value=2)

    with pytest.raises(MalformedResponse):
        normalize_structured_output(raw_output={"parsed": None, "parsing_error": "bad json", "raw": None}, schema=Answer)
    with pytest.raises(MalformedResponse):
        normalize_structured_output(raw_output={"value": "many"}, schema=Answer)
    with pytest.raises(MalformedResponse):
        normalize_structured_output(raw_output="just text", schema=Answer)


@pytest.mark.asyncio
async def test_langchain_adapter_sends_system_and_human_messages():
    runnable = FakeRunnable(result={"parsed": {"value": 7}, "parsing_error": None, "raw": None})

    result = await adapter_with(runnable).complete(PROMPT, Answer)

    assert result == Answer(value=7)
    system, human = runnable.messages
    assert system.content == "answer"
    assert "Purpose: unit" in human.content
    assert '"q": 1' in human.content


@pytest.mark.asyncio
async def test_langchain_adapter_maps_transport_errors_to_unavailable():
    with pytest.raises(AdapterUnavailable, match="connection refused"):
        await adapter_with(FakeRunnable(error=ConnectionError("connection refused"))).complete(PROMPT, Answer)


@pytest.mark.asyncio
async def test_langchain_adapter_keeps_malformed_responses_distinct():
    runnable = FakeRunnable(result={"parsed": None, "parsing_error": "bad json", "raw": None})

    with pytest.raises(MalformedResponse):
        await adapter_with(runnable).complete(PROMPT, Answer)


@pytest.mark.asyncio
async def test_langchain_adapter_timeout_is_unavailable():
    runnable = FakeRunnable(result={"value": 1}, delay=1.0)

    with pytest.raises(AdapterUnavailable, match="timed out"):
        await adapter_with(runnable, timeout_seconds=0.01).complete(PROMPT, Answer)


def test_openai_key_is_required(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        ensure_openai_api_key(repo_root=tmp_path)


def test_openai_key_loads_from_dotenv(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    (tmp_path / ".env").write_text("OPENAI_API_KEY=sk-test\n", encoding="utf-8")

    assert ensure_openai_api_key(repo_root=tmp_path) == "sk-test"
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


def test_chat_model_options_disable_retries():
    kwargs = ChatModelOptions(model_name=" gpt-4o-mini ", max_completion_tokens=256).client_kwargs()

    assert kwargs == {
        "model": "gpt-4o-mini",
        "temperature": 0.0,
        "timeout": 120,
        "max_retries": 0,
        "max_completion_tokens": 256,
    }
    with pytest.raises(ValueError):
        ChatModelOptions(model_name="  ").client_kwargs()
