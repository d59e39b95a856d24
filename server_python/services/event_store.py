"""
Event Store - Redis-backed orchestration event timeline
Every orchestration event lands on the global timeline and, when it concerns
a task, on that task's stream. Supports replay and per-agent audit views.
"""
from typing import Dict, Any, List, Optional

from models import OrchestrationEvent
from services.notification_sink import NotificationSink
from services.redis_service import RedisService


class EventStore(NotificationSink):
    """
    Event store with Redis backend
    Append-only log of orchestration events
    """

    def __init__(self, redis_service: RedisService):
        """
        Args:
            redis_service: Connected redis service instance
        """
        self.redis_service = redis_service

    async def emit(self, event: OrchestrationEvent) -> None:
        await self.store_event(event)

    async def store_event(self, event: OrchestrationEvent) -> float:
        """
        Store event to global timeline and task-specific stream if applicable

        Returns:
            timestamp (milliseconds) for client cursor tracking
        """
        record = {
            "type": event.kind.value,
            "payload": event.model_dump(mode="json"),
            "timestamp": event.timestamp.isoformat(),
        }

        timestamp = await self.redis_service.add_event(record)

        if event.taskId:
            await self.redis_service.add_task_event(event.taskId, record)

        return timestamp

    async def get_events_since(self, timestamp_ms: float, limit: int = 1000) -> List[Dict[str, Any]]:
        """Get events since timestamp (for reconnection replay)"""
        return await self.redis_service.get_events_since(timestamp_ms, limit)

    async def get_recent_events(self, count: int = 100) -> List[Dict[str, Any]]:
        """Get recent events, newest first"""
        return await self.redis_service.get_recent_events(count)

    async def get_task_events(self, task_id: str, since_id: str = "-") -> List[Dict[str, Any]]:
        """Get all events for specific task"""
        return await self.redis_service.get_task_events(task_id, since_id)

    async def get_agent_events(self, agent_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Get events related to specific agent
        Filters global timeline by agentId
        """
        all_events = await self.get_recent_events(limit * 2)  # Get more to account for filtering

        agent_events = []
        for event in all_events:
            payload = event.get("payload", {})
            if payload.get("agentId") == agent_id:
                agent_events.append(event)
                if len(agent_events) >= limit:
                    break

        return agent_events

    async def cleanup_old_events(self, days: int = 7) -> int:
        """Remove events older than specified days"""
        return await self.redis_service.cleanup_old_events(days)

    async def get_event_stats(self) -> Dict[str, Any]:
        stats = await self.redis_service.get_stats()
        return {
            "total_events": stats.get("total_events", 0),
            "task_streams": stats.get("task_streams", 0),
        }


def event_store_from_url(url: Optional[str] = None) -> EventStore:
    """Build an EventStore around a fresh (not yet connected) RedisService."""
    return EventStore(RedisService(url=url))
