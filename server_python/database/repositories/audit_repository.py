"""
Audit log repository for orchestration events.

One row per emitted event. entity_type is "task" when the event concerns a
task, otherwise "agent"; performed_by is always the agent ID.
"""

from typing import Optional, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .base import BaseRepository
from ..models import AuditLogModel


class AuditRepository(BaseRepository[AuditLogModel]):
    """Repository for Audit Log operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, AuditLogModel)

    async def log_event(
        self,
        agent_id: str,
        action: str,
        payload: dict,
        task_id: Optional[str] = None,
    ) -> AuditLogModel:
        """Record one orchestration event."""
        return await self.create(
            entity_type="task" if task_id else "agent",
            entity_id=task_id or agent_id,
            action=action,
            new_value=payload,
            performed_by=agent_id,
        )

    async def get_by_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: int = 50,
    ) -> List[AuditLogModel]:
        """Get audit logs for a specific entity, newest first."""
        result = await self.session.execute(
            select(AuditLogModel)
            .where(AuditLogModel.entity_type == entity_type)
            .where(AuditLogModel.entity_id == entity_id)
            .order_by(AuditLogModel.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_by_agent(self, agent_id: str, limit: int = 100) -> List[AuditLogModel]:
        """Every event of an agent, task events included, oldest first."""
        result = await self.session.execute(
            select(AuditLogModel)
            .where(AuditLogModel.performed_by == agent_id)
            .order_by(AuditLogModel.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())
