"""
Redis Service - Redis connection and event timeline operations
Backs the orchestration event timeline and per-task event streams
"""
import redis.asyncio as redis
import json
import logging
import time
from typing import Optional, Dict, Any, List
import os

logger = logging.getLogger(__name__)

TIMELINE_KEY = "events:timeline"
TASK_STREAM_TTL_SECONDS = 86400 * 7


class RedisService:
    """
    Async Redis client with connection pooling
    """

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None):
        self.url = url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.client: Optional[redis.Redis] = client
        self._max_connections = int(os.getenv("REDIS_MAX_CONNECTIONS", "50"))

    async def connect(self):
        """Initialize Redis connection pool"""
        try:
            self.client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=self._max_connections
            )
            # Test connection
            await self.client.ping()
            logger.info(f"[Redis] Connected to {self.url}")
        except Exception as e:
            logger.error(f"[Redis] Connection failed: {e}")
            raise

    async def disconnect(self):
        """Close Redis connection"""
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.info("[Redis] Disconnected")

    async def health_check(self) -> bool:
        """Check if Redis is healthy"""
        try:
            if not self.client:
                return False
            await self.client.ping()
            return True
        except Exception:
            return False

    def _require_client(self) -> redis.Redis:
        if self.client is None:
            raise RuntimeError("Redis not connected. Call connect() first.")
        return self.client

    # ===== Event Timeline Operations =====

    async def add_event(self, event: Dict[str, Any]) -> float:
        """
        Add event to global timeline (sorted set)
        Returns: timestamp in milliseconds
        """
        client = self._require_client()
        timestamp = time.time() * 1000  # milliseconds
        event_json = json.dumps(event, default=str)
        await client.zadd(TIMELINE_KEY, {event_json: timestamp})
        return timestamp

    async def get_events_since(self, timestamp_ms: float, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Get events since timestamp (for reconnection replay)
        Returns: List of events ordered by timestamp
        """
        client = self._require_client()
        events = await client.zrangebyscore(
            TIMELINE_KEY,
            timestamp_ms,
            "+inf",
            start=0,
            num=limit
        )
        return [json.loads(e) for e in events]

    async def get_recent_events(self, count: int = 100) -> List[Dict[str, Any]]:
        """
        Get most recent events
        Returns events in reverse chronological order (newest first)
        """
        client = self._require_client()
        events = await client.zrevrange(TIMELINE_KEY, 0, count - 1)
        return [json.loads(e) for e in events]

    async def cleanup_old_events(self, days: int = 7) -> int:
        """
        Remove events older than specified days
        Keeps timeline from growing indefinitely
        """
        client = self._require_client()
        cutoff_timestamp = (time.time() - (days * 24 * 3600)) * 1000
        removed = await client.zremrangebyscore(TIMELINE_KEY, "-inf", cutoff_timestamp)
        logger.info(f"[Redis] Cleaned up {removed} old events")
        return removed

    # ===== Task Event Stream Operations =====

    async def add_task_event(self, task_id: str, event: Dict[str, Any]) -> str:
        """
        Add event to task-specific stream
        Returns: Event ID from Redis stream
        """
        client = self._require_client()
        stream_key = f"task:{task_id}:events"
        # Flatten event dict to string fields for XADD
        event_fields = {}
        for key, value in event.items():
            if isinstance(value, (dict, list)):
                event_fields[key] = json.dumps(value, default=str)
            elif value is None:
                event_fields[key] = ""
            else:
                event_fields[key] = str(value)

        event_id = await client.xadd(stream_key, event_fields)
        await client.expire(stream_key, TASK_STREAM_TTL_SECONDS)
        return event_id

    async def get_task_events(self, task_id: str, since_id: str = "-") -> List[Dict[str, Any]]:
        """
        Get task events since specific ID
        Returns: List of events with parsed JSON fields
        """
        client = self._require_client()
        stream_key = f"task:{task_id}:events"
        events = await client.xrange(stream_key, since_id, "+")

        result = []
        for event_id, fields in events:
            # Parse JSON fields back to objects
            parsed = {"id": event_id}
            for key, value in fields.items():
                try:
                    parsed[key] = json.loads(value)
                except (json.JSONDecodeError, TypeError):
                    parsed[key] = value
            result.append(parsed)

        return result

    async def get_stats(self) -> Dict[str, Any]:
        """Timeline statistics for monitoring"""
        client = self._require_client()
        return {
            "total_events": await client.zcard(TIMELINE_KEY),
            "task_streams": len(await client.keys("task:*:events")),
        }
