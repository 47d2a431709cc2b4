from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict, deque
from typing import Any

from .models import EventKind, LogLevel, Stage, StageStatus, WorkflowEvent

logger = logging.getLogger(__name__)

_DEFAULT_QUEUE_SIZE = 256


class Subscription:
    """Stream handle for one subscriber, consumed with ``async for``.

    Events land in a bounded FIFO buffer synchronously inside
    :meth:`EventBroadcaster.publish`, whichever thread publishes, so the
    buffer order is always the publish order. The consumer's event loop is
    only woken up, never handed events. A subscription whose buffer
    overflows is treated as disconnected: it is closed and further events
    for it are dropped, never queued for later.
    """

    def __init__(self, broadcaster: EventBroadcaster, *, topic: str, key: str, maxsize: int) -> None:
        self._broadcaster = broadcaster
        self.topic = topic
        self.key = key
        self.maxsize = maxsize
        self._buffer: deque[WorkflowEvent] = deque()
        self._buffer_lock = threading.Lock()
        self._wakeup = asyncio.Event()
        try:
            self._loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self.closed = False
        self.dropped = 0

    def _offer(self, event: WorkflowEvent) -> bool:
        """Buffer one event. Returns False once the subscriber is gone."""
        with self._buffer_lock:
            if self.closed:
                self.dropped += 1
                return False
            overflow = len(self._buffer) >= self.maxsize
            if overflow:
                self.dropped += 1
            else:
                self._buffer.append(event)
        if overflow:
            logger.warning(
                "Subscriber %s:%s fell behind at sequence %d; disconnecting",
                self.topic,
                self.key,
                event.sequence,
            )
            self.close()
            return False
        self._notify()
        return True

    def _notify(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._wakeup.set()
        else:
            loop.call_soon_threadsafe(self._wakeup.set)

    def _pop(self) -> WorkflowEvent | None:
        with self._buffer_lock:
            return self._buffer.popleft() if self._buffer else None

    def close(self) -> None:
        with self._buffer_lock:
            if self.closed:
                return
            self.closed = True
        self._broadcaster.unsubscribe(self)
        # Wake a consumer blocked on an empty buffer; buffered events still drain first.
        self._notify()

    def drain(self) -> list[WorkflowEvent]:
        """Return every event buffered right now without waiting."""
        with self._buffer_lock:
            events = list(self._buffer)
            self._buffer.clear()
        return events

    async def _next(self) -> WorkflowEvent:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        while True:
            self._wakeup.clear()
            event = self._pop()
            if event is not None:
                return event
            if self.closed:
                raise StopAsyncIteration
            await self._wakeup.wait()

    async def get(self, timeout: float | None = None) -> WorkflowEvent:
        """Await the next event.

        Raises:
            StopAsyncIteration: If the subscription is closed and drained.
            TimeoutError: If ``timeout`` elapses first.
        """
        return await asyncio.wait_for(self._next(), timeout)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> WorkflowEvent:
        return await self.get()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventBroadcaster:
    """Ordered per-task fan-out of workflow events.

    ``publish`` stamps each event with the next per-task sequence number and
    hands it to every subscriber of the task and of the task's owning
    principal while holding one lock, so every subscriber sees a task's
    events in publish order even when phases publish from different threads.
    """

    def __init__(self, *, queue_size: int = _DEFAULT_QUEUE_SIZE) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        self.queue_size = queue_size
        self._lock = threading.RLock()
        self._task_subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._principal_subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._owners: dict[str, str] = {}
        self._sequences: dict[str, int] = defaultdict(int)

    def register_owner(self, task_id: str, principal_id: str) -> None:
        with self._lock:
            self._owners[task_id] = principal_id

    def subscribe(self, task_id: str) -> Subscription:
        subscription = Subscription(self, topic="task", key=task_id, maxsize=self.queue_size)
        with self._lock:
            self._task_subscribers[task_id].append(subscription)
        return subscription

    def subscribe_principal(self, principal_id: str) -> Subscription:
        subscription = Subscription(self, topic="principal", key=principal_id, maxsize=self.queue_size)
        with self._lock:
            self._principal_subscribers[principal_id].append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        registry = self._task_subscribers if subscription.topic == "task" else self._principal_subscribers
        with self._lock:
            subscribers = registry.get(subscription.key, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                registry.pop(subscription.key, None)

    def subscriber_count(self, task_id: str) -> int:
        with self._lock:
            count = len(self._task_subscribers.get(task_id, []))
            owner = self._owners.get(task_id)
            if owner is not None:
                count += len(self._principal_subscribers.get(owner, []))
            return count

    def publish(self, event: WorkflowEvent) -> WorkflowEvent:
        """Sequence ``event`` and deliver it. Returns the sequenced copy."""
        with self._lock:
            self._sequences[event.task_id] += 1
            sequenced = event.model_copy(update={"sequence": self._sequences[event.task_id]})
            targets = list(self._task_subscribers.get(event.task_id, []))
            owner = self._owners.get(event.task_id)
            if owner is not None:
                targets.extend(self._principal_subscribers.get(owner, []))
            for subscription in targets:
                subscription._offer(sequenced)
        logger.debug(
            "Event %s #%d for %s delivered to %d subscriber(s)",
            sequenced.kind.value,
            sequenced.sequence,
            sequenced.task_id,
            len(targets),
        )
        return sequenced

    # ------------------------------------------------------------------
    # Emit helpers
    # ------------------------------------------------------------------

    def emit_stage_update(
        self,
        task_id: str,
        stage: Stage,
        status: StageStatus,
        *,
        message: str = "",
        data: dict[str, Any] | None = None,
    ) -> WorkflowEvent:
        return self.publish(
            WorkflowEvent(
                task_id=task_id,
                kind=EventKind.STAGE_UPDATE,
                stage=stage,
                status=status,
                message=message or f"{stage.value} is {status.value}",
                data=data or {},
            )
        )

    def emit_progress(
        self,
        task_id: str,
        stage: Stage,
        progress: float,
        *,
        message: str = "",
        data: dict[str, Any] | None = None,
    ) -> WorkflowEvent:
        return self.publish(
            WorkflowEvent(
                task_id=task_id,
                kind=EventKind.PROGRESS,
                stage=stage,
                progress=round(min(max(progress, 0.0), 100.0), 2),
                message=message,
                data=data or {},
            )
        )

    def emit_log(
        self,
        task_id: str,
        message: str,
        *,
        level: LogLevel = LogLevel.INFO,
        stage: Stage | None = None,
        data: dict[str, Any] | None = None,
    ) -> WorkflowEvent:
        return self.publish(
            WorkflowEvent(
                task_id=task_id,
                kind=EventKind.LOG,
                stage=stage,
                level=level,
                message=message,
                data=data or {},
            )
        )

    def emit_error(
        self,
        task_id: str,
        message: str,
        *,
        stage: Stage | None = None,
        data: dict[str, Any] | None = None,
    ) -> WorkflowEvent:
        return self.publish(
            WorkflowEvent(
                task_id=task_id,
                kind=EventKind.ERROR,
                stage=stage,
                status=StageStatus.FAILED if stage is not None else None,
                level=LogLevel.ERROR,
                message=message,
                data=data or {},
            )
        )

    def emit_complete(
        self,
        task_id: str,
        stage: Stage,
        *,
        message: str = "",
        data: dict[str, Any] | None = None,
    ) -> WorkflowEvent:
        return self.publish(
            WorkflowEvent(
                task_id=task_id,
                kind=EventKind.COMPLETE,
                stage=stage,
                status=StageStatus.COMPLETED,
                message=message or f"{stage.value} completed",
                data=data or {},
            )
        )
