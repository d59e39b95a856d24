"""
Dependency edge repository.
"""

from typing import List

from sqlalchemy import select, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from .base import BaseRepository
from ..models import AgentModel, TaskDependencyModel, TaskModel


class DependencyRepository(BaseRepository[TaskDependencyModel]):
    """Repository for explicit task dependency edges."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, TaskDependencyModel)

    async def get_by_workspace(self, workspace_id: str) -> List[TaskDependencyModel]:
        """Edges touching any task of the workspace."""
        scoped_tasks = (
            select(TaskModel.id)
            .join(AgentModel, AgentModel.id == TaskModel.agent_id)
            .where(AgentModel.workspace_id == workspace_id)
        )
        result = await self.session.execute(
            select(TaskDependencyModel)
            .where(
                or_(
                    TaskDependencyModel.source_task_id.in_(scoped_tasks),
                    TaskDependencyModel.target_task_id.in_(scoped_tasks),
                )
            )
            .order_by(TaskDependencyModel.created_at.asc())
        )
        return list(result.scalars().all())

    async def delete_by_target(self, task_id: str) -> int:
        """Remove the incoming edges of a deleted task."""
        result = await self.session.execute(
            delete(TaskDependencyModel).where(TaskDependencyModel.target_task_id == task_id)
        )
        await self.session.flush()
        return result.rowcount
