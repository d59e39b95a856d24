"""
Agent repository for database operations.
"""

from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .base import BaseRepository
from ..models import AgentModel


class AgentRepository(BaseRepository[AgentModel]):
    """Repository for Agent operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, AgentModel)

    async def get_by_workspace(self, workspace_id: str) -> List[AgentModel]:
        """Get all agents of a workspace in creation order."""
        result = await self.session.execute(
            select(AgentModel)
            .where(AgentModel.workspace_id == workspace_id)
            .order_by(AgentModel.created_at.asc())
        )
        return list(result.scalars().all())
