from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from pathlib import Path
from typing import Any, Callable

import pytest
from pydantic import BaseModel

from devpipe.broadcast import EventBroadcaster
from devpipe.errors import MalformedResponse, ToolFailure
from devpipe.gates import ApprovalGates
from devpipe.ledger import StageLedger
from devpipe.models import StepImplementation, Task, ToolResult
from devpipe.reasoning import PromptContext
from devpipe.settings import RuntimeSettings
from devpipe.state_store import FileStateStore


class ScriptedReasoning:
    """ReasoningAdapter double answering from per-schema queues.

    A queued item may be a model instance, an exception to raise, or a
    callable taking the prompt. When a schema's queue is empty the default
    for that schema is used; with no default the call is malformed.
    """

    def __init__(self, defaults: dict[type[BaseModel], Any] | None = None) -> None:
        self.queues: dict[type[BaseModel], deque[Any]] = defaultdict(deque)
        self.defaults: dict[type[BaseModel], Any] = {StepImplementation: StepImplementation(summary="done")}
        self.defaults.update(defaults or {})
        self.calls: list[tuple[str, type[BaseModel]]] = []

    def queue(self, schema: type[BaseModel], *items: Any) -> None:
        self.queues[schema].extend(items)

    async def complete(self, prompt: PromptContext, schema: type[BaseModel]) -> Any:
        self.calls.append((prompt.purpose, schema))
        if self.queues[schema]:
            item = self.queues[schema].popleft()
        elif schema in self.defaults:
            item = self.defaults[schema]
        else:
            raise MalformedResponse(detail=f"no scripted {schema.__name__}")
        if isinstance(item, BaseException):
            raise item
        if callable(item) and not isinstance(item, BaseModel):
            item = item(prompt)
        return item

    def purposes(self) -> list[str]:
        return [purpose for purpose, _ in self.calls]


class RecordingTools:
    """ToolAdapter double that records calls and reports written paths as modified."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.failures: dict[tuple[str, str], ToolFailure] = {}
        self.outputs: dict[tuple[str, str], Any] = {}
        self.on_invoke: Callable[[str, str, dict[str, Any]], None] | None = None

    def fail(self, capability: str, action: str, reason: str = ToolFailure.ACTION_FAILED) -> None:
        self.failures[(capability, action)] = ToolFailure(capability, action, reason)

    async def invoke(self, capability: str, action: str, args: dict[str, Any]) -> ToolResult:
        self.calls.append((capability, action, dict(args)))
        if self.on_invoke is not None:
            self.on_invoke(capability, action, args)
        failure = self.failures.get((capability, action))
        if failure is not None:
            raise failure
        files_modified = [args["path"]] if action == "write_file" and "path" in args else []
        return ToolResult(
            capability=capability,
            action=action,
            output=self.outputs.get((capability, action), "ok"),
            files_modified=files_modified,
        )


async def wait_until(predicate: Callable[[], bool], attempts: int = 500) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition was not reached")


@pytest.fixture
def store(tmp_path: Path) -> FileStateStore:
    return FileStateStore(tmp_path / "state_store")


@pytest.fixture
def ledger(store: FileStateStore) -> StageLedger:
    return StageLedger(store)


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster(queue_size=512)


@pytest.fixture
def gates(ledger: StageLedger, broadcaster: EventBroadcaster) -> ApprovalGates:
    return ApprovalGates(ledger, broadcaster)


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings()


@pytest.fixture
def reasoning() -> ScriptedReasoning:
    return ScriptedReasoning()


@pytest.fixture
def tools() -> RecordingTools:
    return RecordingTools()


@pytest.fixture
def task(ledger: StageLedger) -> Task:
    created = Task(title="Todo API", requirements="Build a small todo REST API with persistence.", owner="alice")
    ledger.create_task(created)
    return created
