"""
Publish/subscribe bus for sync lifecycle and progress.

The sync service and the periodic jobs report what they do through events
instead of callbacks, so any number of consumers (CLI progress output,
the dashboard, tests) can listen without the producers knowing them.

Usage:
    from possync.events import events, SyncEvent

    @events.on(SyncEvent.SYNC_PROGRESS)
    async def show_progress(data: dict):
        print(f"{data['cursor']}/{data['total']} months")

    await events.emit(SyncEvent.SYNC_PROGRESS, {"cursor": 3, "total": 12})
"""
import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from possync.observability import get_correlation_id, get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]

WILDCARD = "*"


class SyncEvent(Enum):
    """Events emitted by the sync service and periodic jobs."""

    # Run lifecycle
    SYNC_STARTED = "sync.started"
    SYNC_PROGRESS = "sync.progress"
    SYNC_PAUSED = "sync.paused"
    SYNC_RESUMED = "sync.resumed"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"

    # Per-unit outcomes
    UNIT_SYNCED = "unit.synced"
    UNIT_SKIPPED = "unit.skipped"
    UNIT_FAILED = "unit.failed"

    STOCK_SYNCED = "stock.synced"
    CACHE_CLEARED = "cache.cleared"

    # Periodic jobs
    JOB_COMPLETED = "scheduler.job_completed"
    JOB_FAILED = "scheduler.job_failed"


@dataclass(frozen=True)
class EventMetadata:
    """Where and when an event was raised; the correlation ID ties it to a run."""
    source: str = "sync_service"
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    emitted_at_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)


@dataclass(frozen=True)
class Event:
    type: SyncEvent
    data: Dict[str, Any]
    metadata: EventMetadata = field(default_factory=EventMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.type.value,
            "data": self.data,
            "metadata": {
                "event_id": self.metadata.event_id,
                "emitted_at_ms": self.metadata.emitted_at_ms,
                "correlation_id": self.metadata.correlation_id,
                "source": self.metadata.source,
            },
        }


class EventBus:
    """
    Async event bus with a bounded history.

    Handlers subscribed with ``event_type=None`` receive every event.
    Handlers of one event run concurrently; a failing handler is logged
    and affects neither the other handlers nor the emitter.
    """

    def __init__(self, max_history: int = 200):
        self._subscribers: Dict[Optional[SyncEvent], List[EventHandler]] = {None: []}
        self._history: Deque[Event] = deque(maxlen=max_history)

    def on(self, event_type: Optional[SyncEvent] = None) -> Callable[[EventHandler], EventHandler]:
        """Decorator form of ``subscribe``."""

        def register(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return register

    def subscribe(self, event_type: Optional[SyncEvent], handler: EventHandler) -> None:
        self._subscribers.setdefault(event_type, []).append(handler)
        logger.debug(f"Subscribed {_name(handler)} to {_label(event_type)}")

    def unsubscribe(self, event_type: Optional[SyncEvent], handler: EventHandler) -> bool:
        """Returns True if the handler was subscribed."""
        handlers = self._subscribers.get(event_type, [])
        if handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    async def emit(
        self,
        event_type: SyncEvent,
        data: Optional[Dict[str, Any]] = None,
        source: str = "sync_service",
    ) -> Event:
        """Record the event and deliver it to its subscribers and to wildcard handlers."""
        event = Event(event_type, data or {}, EventMetadata(source=source))
        self._history.append(event)

        handlers = self._subscribers.get(event_type, []) + self._subscribers[None]
        if handlers:
            await self._deliver(event, handlers)
        return event

    async def _deliver(self, event: Event, handlers: List[EventHandler]) -> None:
        outcomes = await asyncio.gather(*(h(event.data) for h in handlers), return_exceptions=True)
        for handler, outcome in zip(handlers, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    f"{_name(handler)} failed on {event.type.value}: {outcome}",
                    extra={"event_id": event.metadata.event_id},
                )

    def get_history(self, event_type: Optional[SyncEvent] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent events, oldest first."""
        matching = [e for e in self._history if event_type is None or e.type == event_type]
        return [e.to_dict() for e in matching[-limit:]]

    def get_handlers(self) -> Dict[str, int]:
        """Handler count per event value, wildcard handlers under ``"*"``."""
        return {
            _label(event_type): len(handlers)
            for event_type, handlers in self._subscribers.items()
            if handlers or event_type is None
        }

    def clear_handlers(self) -> None:
        self._subscribers = {None: []}

    def clear_history(self) -> None:
        self._history.clear()


def _label(event_type: Optional[SyncEvent]) -> str:
    return event_type.value if event_type else WILDCARD


def _name(handler: EventHandler) -> str:
    return getattr(handler, "__qualname__", repr(handler))


events = EventBus()
