"""
Notification sinks for orchestration events.

Every sink is fire-and-forget: `Notifier` swallows and logs sink failures so
that a broken notification channel never blocks task orchestration.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from errors import async_handle_errors
from models import EventKind, OrchestrationEvent

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """Append-only destination for orchestration events."""

    @abstractmethod
    async def emit(self, event: OrchestrationEvent) -> None:
        """Deliver a single event."""
        pass


class InMemoryNotificationSink(NotificationSink):
    """Keeps events in a list. Used by tests and local development."""

    def __init__(self):
        self.events: List[OrchestrationEvent] = []

    async def emit(self, event: OrchestrationEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> List[OrchestrationEvent]:
        return [e for e in self.events if e.kind == kind]

    def for_task(self, task_id: str) -> List[OrchestrationEvent]:
        return [e for e in self.events if e.taskId == task_id]

    def clear(self) -> None:
        self.events.clear()


class LoggingNotificationSink(NotificationSink):
    """Mirrors events into the application log."""

    def __init__(self, logger_name: str = "orchestration.events"):
        self._logger = logging.getLogger(logger_name)

    async def emit(self, event: OrchestrationEvent) -> None:
        task_part = f" task={event.taskId}" if event.taskId else ""
        self._logger.info(
            f"[{event.kind.value}] agent={event.agentId}{task_part} {event.message}"
        )


class CompositeNotificationSink(NotificationSink):
    """Fans an event out to several sinks; one failing sink does not stop the rest."""

    def __init__(self, sinks: List[NotificationSink]):
        self.sinks = list(sinks)

    async def emit(self, event: OrchestrationEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.emit(event)
            except Exception as e:
                logger.warning(f"Sink {type(sink).__name__} failed for {event.kind.value}: {e}")


class Notifier:
    """
    Best-effort facade over a NotificationSink.

    Callers emit only after the store write the event describes has returned.
    """

    def __init__(self, sink: Optional[NotificationSink] = None):
        self.sink = sink or LoggingNotificationSink()

    @async_handle_errors(default_return=False)
    async def notify(self, event: OrchestrationEvent) -> bool:
        await self.sink.emit(event)
        return True

    async def emit(
        self,
        agent_id: str,
        kind: EventKind,
        message: str,
        task_id: Optional[str] = None,
        **metadata: Any,
    ) -> bool:
        """Build and deliver an event. Returns False when delivery failed."""
        return await self.notify(
            OrchestrationEvent(
                agentId=agent_id,
                taskId=task_id,
                kind=kind,
                message=message,
                metadata=metadata,
            )
        )
