"""
Apply progress events - in-memory pub/sub.

The executor publishes one event per step transition; the CLI subscribes
to stream progress while an apply is running.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of step events."""

    STEP_STARTED = "STEP_STARTED"
    STEP_RETRYING = "STEP_RETRYING"
    STEP_SUCCEEDED = "STEP_SUCCEEDED"
    STEP_FAILED = "STEP_FAILED"
    STEP_SKIPPED = "STEP_SKIPPED"


@dataclass
class StepEvent:
    """Event emitted when a plan step changes state."""

    event_type: EventType
    stack: str
    resource_id: str
    action: str
    message: str
    attempt: int
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "stack": self.stack,
            "resource_id": self.resource_id,
            "action": self.action,
            "message": self.message,
            "attempt": self.attempt,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def describe(self) -> str:
        """One human-readable line for terminal output."""
        label = {
            EventType.STEP_STARTED: "started",
            EventType.STEP_RETRYING: f"retrying (attempt {self.attempt})",
            EventType.STEP_SUCCEEDED: "done",
            EventType.STEP_FAILED: "FAILED",
            EventType.STEP_SKIPPED: "skipped",
        }[self.event_type]
        line = f"{self.action}({self.resource_id}): {label}"
        if self.message and self.event_type != EventType.STEP_SUCCEEDED:
            line += f" - {self.message}"
        return line

    @classmethod
    def for_step(
        cls,
        event_type: EventType,
        stack: str,
        step: Any,
        message: str = "",
        attempt: int = 0,
    ) -> "StepEvent":
        """
        Create an event for a plan step.

        Args:
            event_type: The type of event.
            stack: Stack name.
            step: The plan step (resource_id and action).
            message: Optional detail (failure reason, retry cause).
            attempt: Attempt number for retry events.
        """
        return cls(
            event_type=event_type,
            stack=stack,
            resource_id=step.resource_id,
            action=step.action.value,
            message=message,
            attempt=attempt,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )


class EventSubscription:
    """
    Async iterator over a subscriber's queue.

    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[StepEvent], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[StepEvent]:
        return self

    async def __anext__(self) -> StepEvent:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub bus for step events.

    One bounded ``asyncio.Queue`` per subscriber. Publishing never blocks
    the executor: events for a full queue are dropped with a warning.
    """

    def __init__(self, queue_size: int = 1024):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: StepEvent) -> None:
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event for subscriber {subscriber_id}: queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[StepEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.debug(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """Remove a subscriber; its iterator ends after draining queued events."""
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is None:
            return
        if queue.full():
            # The end-of-stream sentinel must always get through.
            queue.get_nowait()
            logger.warning(f"Dropped oldest event for subscriber {subscriber_id}")
        queue.put_nowait(None)
        logger.debug(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        return len(self._subscribers)
