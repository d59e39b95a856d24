#!/usr/bin/env python3
"""
Task Store - 영속성 경계

Task/Agent/의존성 레코드를 저장하는 Repository 인터페이스입니다.
메모리, SQL 등 다양한 백엔드를 지원합니다.

백엔드 장애는 항상 StoreUnavailableError로 보고되어
"잘못된 요청"(구조 위반)과 "재시도 가능"(저장소 장애)을 구분할 수 있습니다.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Set, Any

from errors import (
    StoreUnavailableError,
    StructuralViolationError,
    TaskNotFoundError,
    AgentNotFoundError,
)
from models import Agent, Task, TaskDependency, TaskStatus


class TaskStore(ABC):
    """
    Task 저장소 추상 클래스

    scope는 workspace ID이며, Agent는 정확히 하나의 workspace에 속합니다.
    """

    # =========================================================================
    # Tasks
    # =========================================================================

    @abstractmethod
    async def create_task(self, task: Task) -> Task:
        """Task 저장"""
        pass

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        """Task 조회"""
        pass

    @abstractmethod
    async def update_task(self, task_id: str, **fields: Any) -> Task:
        """Task 필드 갱신 (없으면 TaskNotFoundError)"""
        pass

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        **fields: Any
    ) -> Task:
        """Task 상태 갱신"""
        return await self.update_task(task_id, status=status, **fields)

    @abstractmethod
    async def delete_task(self, task_id: str) -> bool:
        """
        Task 삭제

        다른 Task가 이 Task에 의존하면 StructuralViolationError (cascade 삭제 없음)
        """
        pass

    @abstractmethod
    async def list_tasks_by_scope(self, scope: str) -> List[Task]:
        """workspace에 속한 모든 Task (생성 순)"""
        pass

    @abstractmethod
    async def list_tasks_by_agent(self, agent_id: str) -> List[Task]:
        """Agent의 Task 목록 (생성 순)"""
        pass

    @abstractmethod
    async def list_dependents(self, task_id: str) -> List[Task]:
        """이 Task에 의존하는 Task 목록"""
        pass

    # =========================================================================
    # Dependency edges
    # =========================================================================

    @abstractmethod
    async def create_edge(self, dependency: TaskDependency) -> TaskDependency:
        """명시적 의존성 저장"""
        pass

    @abstractmethod
    async def list_edges_by_scope(self, scope: str) -> List[TaskDependency]:
        """workspace의 명시적 의존성 목록"""
        pass

    # =========================================================================
    # Agents
    # =========================================================================

    @abstractmethod
    async def create_agent(self, agent: Agent) -> Agent:
        """Agent 저장"""
        pass

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        """Agent 조회"""
        pass

    @abstractmethod
    async def update_agent(self, agent_id: str, **fields: Any) -> Agent:
        """Agent 필드 갱신 (없으면 AgentNotFoundError)"""
        pass

    @abstractmethod
    async def list_agents(self, scope: str) -> List[Agent]:
        """workspace의 Agent 목록"""
        pass


class InMemoryTaskStore(TaskStore):
    """
    메모리 기반 저장소

    테스트 및 개발 환경에서 사용합니다.
    `fail_operations`에 연산 이름을 넣으면 해당 연산이 StoreUnavailableError를 냅니다.
    """

    def __init__(self):
        self._tasks: Dict[str, Task] = {}
        self._edges: Dict[str, TaskDependency] = {}
        self._agents: Dict[str, Agent] = {}
        self.fail_operations: Set[str] = set()
        self.write_count = 0

    def _check(self, operation: str) -> None:
        if operation in self.fail_operations or "*" in self.fail_operations:
            raise StoreUnavailableError(
                f"Task store unavailable during {operation}",
                operation=operation
            )

    def _scope_agent_ids(self, scope: str) -> Set[str]:
        return {a.id for a in self._agents.values() if a.workspaceId == scope}

    # Tasks

    async def create_task(self, task: Task) -> Task:
        self._check("create_task")
        self._tasks[task.id] = task.model_copy(deep=True)
        self.write_count += 1
        return task.model_copy(deep=True)

    async def get_task(self, task_id: str) -> Optional[Task]:
        self._check("get_task")
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def update_task(self, task_id: str, **fields: Any) -> Task:
        self._check("update_task")
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        fields.setdefault("updatedAt", datetime.now())
        updated = task.model_copy(update=fields, deep=True)
        self._tasks[task_id] = updated
        self.write_count += 1
        return updated.model_copy(deep=True)

    async def delete_task(self, task_id: str) -> bool:
        self._check("delete_task")
        if task_id not in self._tasks:
            return False

        dependents = await self.list_dependents(task_id)
        if dependents:
            titles = ", ".join(f'"{t.title}"' for t in dependents)
            raise StructuralViolationError(
                f"Cannot delete task: other tasks depend on it ({titles})",
                task_id=task_id,
                dependents=[t.id for t in dependents],
            )

        del self._tasks[task_id]
        for edge_id in [e.id for e in self._edges.values() if e.targetTaskId == task_id]:
            del self._edges[edge_id]
        self.write_count += 1
        return True

    async def list_tasks_by_scope(self, scope: str) -> List[Task]:
        self._check("list_tasks_by_scope")
        agent_ids = self._scope_agent_ids(scope)
        return [
            t.model_copy(deep=True)
            for t in self._tasks.values()
            if t.agentId in agent_ids
        ]

    async def list_tasks_by_agent(self, agent_id: str) -> List[Task]:
        self._check("list_tasks_by_agent")
        return [
            t.model_copy(deep=True)
            for t in self._tasks.values()
            if t.agentId == agent_id
        ]

    async def list_dependents(self, task_id: str) -> List[Task]:
        self._check("list_dependents")
        dependent_ids = {t.id for t in self._tasks.values() if t.dependsOnTaskId == task_id}
        dependent_ids |= {e.targetTaskId for e in self._edges.values() if e.sourceTaskId == task_id}
        return [
            t.model_copy(deep=True)
            for t in self._tasks.values()
            if t.id in dependent_ids
        ]

    # Edges

    async def create_edge(self, dependency: TaskDependency) -> TaskDependency:
        self._check("create_edge")
        self._edges[dependency.id] = dependency.model_copy(deep=True)
        self.write_count += 1
        return dependency.model_copy(deep=True)

    async def list_edges_by_scope(self, scope: str) -> List[TaskDependency]:
        self._check("list_edges_by_scope")
        agent_ids = self._scope_agent_ids(scope)
        scoped = {t.id for t in self._tasks.values() if t.agentId in agent_ids}
        return [
            e.model_copy(deep=True)
            for e in self._edges.values()
            if e.sourceTaskId in scoped or e.targetTaskId in scoped
        ]

    # Agents

    async def create_agent(self, agent: Agent) -> Agent:
        self._check("create_agent")
        self._agents[agent.id] = agent.model_copy(deep=True)
        self.write_count += 1
        return agent.model_copy(deep=True)

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        self._check("get_agent")
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def update_agent(self, agent_id: str, **fields: Any) -> Agent:
        self._check("update_agent")
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)

        fields.setdefault("updatedAt", datetime.now())
        updated = agent.model_copy(update=fields, deep=True)
        self._agents[agent_id] = updated
        self.write_count += 1
        return updated.model_copy(deep=True)

    async def list_agents(self, scope: str) -> List[Agent]:
        self._check("list_agents")
        return [
            a.model_copy(deep=True)
            for a in self._agents.values()
            if a.workspaceId == scope
        ]
