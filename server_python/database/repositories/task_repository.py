"""
Task repository for database operations.
"""

from typing import List

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from .base import BaseRepository
from ..models import AgentModel, TaskDependencyModel, TaskModel


class TaskRepository(BaseRepository[TaskModel]):
    """Repository for Task operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, TaskModel)

    async def get_by_agent(self, agent_id: str) -> List[TaskModel]:
        """Get an agent's tasks in creation order."""
        result = await self.session.execute(
            select(TaskModel)
            .where(TaskModel.agent_id == agent_id)
            .order_by(TaskModel.created_at.asc(), TaskModel.id.asc())
        )
        return list(result.scalars().all())

    async def get_by_workspace(self, workspace_id: str) -> List[TaskModel]:
        """Get every task of the workspace's agents in creation order."""
        result = await self.session.execute(
            select(TaskModel)
            .join(AgentModel, AgentModel.id == TaskModel.agent_id)
            .where(AgentModel.workspace_id == workspace_id)
            .order_by(TaskModel.created_at.asc(), TaskModel.id.asc())
        )
        return list(result.scalars().all())

    async def get_dependents(self, task_id: str) -> List[TaskModel]:
        """Tasks that depend on this task via depends_on_task_id or an explicit edge."""
        edge_targets = (
            select(TaskDependencyModel.target_task_id)
            .where(TaskDependencyModel.source_task_id == task_id)
        )
        result = await self.session.execute(
            select(TaskModel)
            .where(
                or_(
                    TaskModel.depends_on_task_id == task_id,
                    TaskModel.id.in_(edge_targets),
                )
            )
            .order_by(TaskModel.created_at.asc())
        )
        return list(result.scalars().all())
