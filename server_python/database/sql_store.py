"""
SQL-backed TaskStore and audit notification sink.

Every SQLAlchemy or connection failure is reported as StoreUnavailableError so
callers can tell "retry later" apart from "invalid request".
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncGenerator, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import (
    AgentNotFoundError,
    StoreUnavailableError,
    StructuralViolationError,
    TaskNotFoundError,
    ValidationError,
)
from models import (
    Agent,
    AgentStatus,
    DependencyKind,
    OrchestrationEvent,
    Task,
    TaskDependency,
    TaskPriority,
    TaskStatus,
)
from services.notification_sink import NotificationSink
from services.task_store import TaskStore

from .connection import Database
from .models import AgentModel, TaskDependencyModel, TaskModel
from .repositories import (
    AgentRepository,
    AuditRepository,
    DependencyRepository,
    TaskRepository,
)

logger = logging.getLogger(__name__)


TASK_COLUMNS = {
    "id": "id",
    "agentId": "agent_id",
    "title": "title",
    "description": "description",
    "status": "status",
    "priority": "priority",
    "dueDate": "due_date",
    "isDependency": "is_dependency",
    "blockedReason": "blocked_reason",
    "dependsOnTaskId": "depends_on_task_id",
    "metadata": "metadata_json",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "completedAt": "completed_at",
}

AGENT_COLUMNS = {
    "id": "id",
    "workspaceId": "workspace_id",
    "name": "name",
    "goal": "goal",
    "status": "status",
    "metadata": "metadata_json",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}


def _to_columns(fields: Dict[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
    columns = {}
    for key, value in fields.items():
        column = mapping.get(key)
        if column is None:
            raise ValidationError(f"Unknown field: {key}", field=key)
        columns[column] = value.value if isinstance(value, Enum) else value
    return columns


def task_from_model(model: TaskModel) -> Task:
    return Task(
        id=model.id,
        agentId=model.agent_id,
        title=model.title,
        description=model.description or "",
        status=TaskStatus(model.status),
        priority=TaskPriority(model.priority),
        dueDate=model.due_date,
        isDependency=model.is_dependency,
        blockedReason=model.blocked_reason,
        dependsOnTaskId=model.depends_on_task_id,
        metadata=dict(model.metadata_json or {}),
        createdAt=model.created_at,
        updatedAt=model.updated_at,
        completedAt=model.completed_at,
    )


def agent_from_model(model: AgentModel) -> Agent:
    return Agent(
        id=model.id,
        workspaceId=model.workspace_id,
        name=model.name,
        goal=model.goal,
        status=AgentStatus(model.status),
        metadata=dict(model.metadata_json or {}),
        createdAt=model.created_at,
        updatedAt=model.updated_at,
    )


def dependency_from_model(model: TaskDependencyModel) -> TaskDependency:
    return TaskDependency(
        id=model.id,
        sourceTaskId=model.source_task_id,
        targetTaskId=model.target_task_id,
        kind=DependencyKind(model.kind),
        createdAt=model.created_at,
    )


class SqlTaskStore(TaskStore):
    """
    TaskStore over async SQLAlchemy (PostgreSQL via asyncpg, SQLite via aiosqlite)

    Example:
        database = Database("sqlite+aiosqlite:///./tasks.db")
        await database.connect()
        await database.create_tables()
        store = SqlTaskStore(database)
    """

    def __init__(self, database: Database):
        self.database = database

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self.database.session() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Task store failure during {operation}: {e}")
            raise StoreUnavailableError(
                f"Task store unavailable during {operation}",
                operation=operation
            ) from e

    # Tasks

    async def create_task(self, task: Task) -> Task:
        async with self._session("create_task") as session:
            model = await TaskRepository(session).create(
                **_to_columns(task.model_dump(), TASK_COLUMNS)
            )
            return task_from_model(model)

    async def get_task(self, task_id: str) -> Optional[Task]:
        async with self._session("get_task") as session:
            model = await TaskRepository(session).get_by_id(task_id)
            return task_from_model(model) if model else None

    async def update_task(self, task_id: str, **fields: Any) -> Task:
        fields.setdefault("updatedAt", datetime.now())
        async with self._session("update_task") as session:
            model = await TaskRepository(session).update(task_id, **_to_columns(fields, TASK_COLUMNS))
            if model is None:
                raise TaskNotFoundError(task_id)
            return task_from_model(model)

    async def delete_task(self, task_id: str) -> bool:
        async with self._session("delete_task") as session:
            repository = TaskRepository(session)
            if not await repository.exists(task_id):
                return False

            dependents = await repository.get_dependents(task_id)
            if dependents:
                titles = ", ".join(f'"{t.title}"' for t in dependents)
                raise StructuralViolationError(
                    f"Cannot delete task: other tasks depend on it ({titles})",
                    task_id=task_id,
                    dependents=[t.id for t in dependents],
                )

            await DependencyRepository(session).delete_by_target(task_id)
            return await repository.delete(task_id)

    async def list_tasks_by_scope(self, scope: str) -> List[Task]:
        async with self._session("list_tasks_by_scope") as session:
            models = await TaskRepository(session).get_by_workspace(scope)
            return [task_from_model(m) for m in models]

    async def list_tasks_by_agent(self, agent_id: str) -> List[Task]:
        async with self._session("list_tasks_by_agent") as session:
            models = await TaskRepository(session).get_by_agent(agent_id)
            return [task_from_model(m) for m in models]

    async def list_dependents(self, task_id: str) -> List[Task]:
        async with self._session("list_dependents") as session:
            models = await TaskRepository(session).get_dependents(task_id)
            return [task_from_model(m) for m in models]

    # Edges

    async def create_edge(self, dependency: TaskDependency) -> TaskDependency:
        async with self._session("create_edge") as session:
            model = await DependencyRepository(session).create(
                id=dependency.id,
                source_task_id=dependency.sourceTaskId,
                target_task_id=dependency.targetTaskId,
                kind=dependency.kind.value,
                created_at=dependency.createdAt,
            )
            return dependency_from_model(model)

    async def list_edges_by_scope(self, scope: str) -> List[TaskDependency]:
        async with self._session("list_edges_by_scope") as session:
            models = await DependencyRepository(session).get_by_workspace(scope)
            return [dependency_from_model(m) for m in models]

    # Agents

    async def create_agent(self, agent: Agent) -> Agent:
        async with self._session("create_agent") as session:
            model = await AgentRepository(session).create(
                **_to_columns(agent.model_dump(), AGENT_COLUMNS)
            )
            return agent_from_model(model)

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        async with self._session("get_agent") as session:
            model = await AgentRepository(session).get_by_id(agent_id)
            return agent_from_model(model) if model else None

    async def update_agent(self, agent_id: str, **fields: Any) -> Agent:
        fields.setdefault("updatedAt", datetime.now())
        async with self._session("update_agent") as session:
            model = await AgentRepository(session).update(agent_id, **_to_columns(fields, AGENT_COLUMNS))
            if model is None:
                raise AgentNotFoundError(agent_id)
            return agent_from_model(model)

    async def list_agents(self, scope: str) -> List[Agent]:
        async with self._session("list_agents") as session:
            models = await AgentRepository(session).get_by_workspace(scope)
            return [agent_from_model(m) for m in models]


class AuditNotificationSink(NotificationSink):
    """Writes every orchestration event to the audit_logs table."""

    def __init__(self, database: Database):
        self.database = database

    async def emit(self, event: OrchestrationEvent) -> None:
        async with self.database.session() as session:
            await AuditRepository(session).log_event(
                agent_id=event.agentId,
                action=event.kind.value,
                payload=event.model_dump(mode="json"),
                task_id=event.taskId,
            )

    async def history(self, entity_type: str, entity_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Recorded events of one task or agent, newest first."""
        async with self.database.session() as session:
            logs = await AuditRepository(session).get_by_entity(entity_type, entity_id, limit)
            return [log.new_value or {} for log in logs]

    async def agent_timeline(self, agent_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """All events of an agent including its tasks, oldest first."""
        async with self.database.session() as session:
            logs = await AuditRepository(session).get_by_agent(agent_id, limit)
            return [log.new_value or {} for log in logs]
