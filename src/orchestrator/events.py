"""Pipeline lifecycle events and the channel that fans them out.

Each subscriber owns a bounded queue. When a queue is full the oldest event
is dropped so a slow consumer never blocks a pipeline thread. Publishing is
serialized, so every subscriber sees events in publish order.
"""

from __future__ import annotations

import enum
import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Optional

logger = logging.getLogger("conductor.orchestrator.events")


class PipelineEventType(str, enum.Enum):
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"
    APPROVAL_REQUIRED = "approval_required"
    CONFIRMATION_REQUIRED = "confirmation_required"
    PIPELINE_RESUMED = "pipeline_resumed"
    STATE_CHANGED = "state_changed"


@dataclass
class PipelineEvent:
    type: PipelineEventType
    run_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "data": dict(self.data),
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
        }


EventHandler = Callable[[PipelineEvent], None]


class Subscription:
    """Bounded per-subscriber queue, optionally filtered to one run."""

    def __init__(self, channel: "EventChannel", maxsize: int, run_id: Optional[str] = None):
        self._channel = channel
        self._queue: queue.Queue[PipelineEvent] = queue.Queue(maxsize=maxsize)
        self.run_id = run_id
        self.dropped = 0

    def _offer(self, event: PipelineEvent) -> None:
        if self.run_id is not None and event.run_id != self.run_id:
            return
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[PipelineEvent]:
        """Next event, or None when nothing arrives within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def wait_for(
        self,
        event_type: PipelineEventType,
        timeout: float = 5.0,
    ) -> Optional[PipelineEvent]:
        """Consume events until one of ``event_type`` arrives."""
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            event = self.get(timeout=remaining)
            if event is not None and event.type == event_type:
                return event

    def drain(self) -> list[PipelineEvent]:
        events: list[PipelineEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        self._channel.unsubscribe(self)


class EventChannel:
    """Fan-out of pipeline events to queue subscribers and callback handlers."""

    def __init__(self, maxsize: int = 256):
        self.maxsize = maxsize
        self._subscriptions: list[Subscription] = []
        self._handlers: list[EventHandler] = []
        self._sequence = itertools.count(1)
        self._lock = threading.RLock()

    def subscribe(self, run_id: Optional[str] = None) -> Subscription:
        sub = Subscription(self, self.maxsize, run_id=run_id)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def add_handler(self, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def publish(
        self,
        event_type: PipelineEventType,
        run_id: str,
        data: Optional[dict[str, Any]] = None,
    ) -> PipelineEvent:
        with self._lock:
            event = PipelineEvent(
                type=event_type,
                run_id=run_id,
                data=dict(data or {}),
                sequence=next(self._sequence),
            )
            for sub in self._subscriptions:
                sub._offer(event)
            handlers = list(self._handlers)
            # Handlers run under the lock to keep delivery order per run.
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    logger.exception("Event handler failed for %s", event_type.value)
        logger.debug("Event %s run=%s seq=%d", event_type.value, run_id, event.sequence)
        return event
