"""
Task Store Unit Tests

메모리 저장소의 CRUD, scope 분리, 삭제 규칙, 장애 주입 테스트입니다.
"""

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from errors import (
    AgentNotFoundError,
    StoreUnavailableError,
    StructuralViolationError,
    TaskNotFoundError,
)
from models import Agent, Task, TaskDependency, TaskStatus


class TestInMemoryTaskStore:
    """InMemoryTaskStore 테스트"""

    @pytest.mark.asyncio
    async def test_create_and_get_task(self, store, make_task):
        task = make_task("Write summary", task_id="t1")

        await store.create_task(task)
        loaded = await store.get_task("t1")

        assert loaded.title == "Write summary"
        assert loaded.status == TaskStatus.TODO

    @pytest.mark.asyncio
    async def test_returned_copies_are_detached(self, store, make_task):
        """반환된 레코드를 수정해도 저장된 값은 바뀌지 않음"""
        await store.create_task(make_task("A", task_id="a"))

        loaded = await store.get_task("a")
        loaded.metadata["hacked"] = True

        assert "hacked" not in (await store.get_task("a")).metadata

    @pytest.mark.asyncio
    async def test_update_task(self, store, make_task):
        created = await store.create_task(make_task("A", task_id="a"))

        updated = await store.update_task_status("a", TaskStatus.IN_PROGRESS, metadata={"x": 1})

        assert updated.status == TaskStatus.IN_PROGRESS
        assert updated.metadata == {"x": 1}
        assert updated.updatedAt >= created.updatedAt

    @pytest.mark.asyncio
    async def test_update_missing_task(self, store):
        with pytest.raises(TaskNotFoundError):
            await store.update_task("missing", title="x")

    @pytest.mark.asyncio
    async def test_delete_with_dependent_is_rejected(self, store, make_task):
        """다른 Task가 의존하면 삭제 거부 (cascade 없음)"""
        await store.create_task(make_task("A", task_id="a"))
        await store.create_task(make_task("B", task_id="b", dependsOnTaskId="a"))

        with pytest.raises(StructuralViolationError) as exc_info:
            await store.delete_task("a")

        assert exc_info.value.details["dependents"] == ["b"]
        assert await store.get_task("a") is not None

    @pytest.mark.asyncio
    async def test_delete_with_edge_dependent_is_rejected(self, store, make_task):
        await store.create_task(make_task("A", task_id="a"))
        await store.create_task(make_task("B", task_id="b"))
        await store.create_edge(TaskDependency(sourceTaskId="a", targetTaskId="b"))

        with pytest.raises(StructuralViolationError):
            await store.delete_task("a")

    @pytest.mark.asyncio
    async def test_delete_removes_incoming_edges(self, store, make_task, agent):
        await store.create_task(make_task("A", task_id="a"))
        await store.create_task(make_task("B", task_id="b"))
        await store.create_edge(TaskDependency(sourceTaskId="a", targetTaskId="b"))

        assert await store.delete_task("b") is True
        assert await store.list_edges_by_scope(agent.workspaceId) == []
        assert await store.delete_task("b") is False

    @pytest.mark.asyncio
    async def test_scope_listing(self, store, make_task, agent):
        """workspace별로 Task와 Agent가 분리"""
        await store.create_agent(Agent(id="other", workspaceId="elsewhere", name="O", goal="G"))
        await store.create_task(make_task("Mine", task_id="m"))
        await store.create_task(make_task("Theirs", task_id="t", agent_id="other"))

        mine = await store.list_tasks_by_scope(agent.workspaceId)
        agents = await store.list_agents(agent.workspaceId)

        assert [t.id for t in mine] == ["m"]
        assert [a.id for a in agents] == [agent.id]
        assert [t.id for t in await store.list_tasks_by_agent("other")] == ["t"]

    @pytest.mark.asyncio
    async def test_update_agent(self, store, agent):
        updated = await store.update_agent(agent.id, name="Renamed")
        assert updated.name == "Renamed"

        with pytest.raises(AgentNotFoundError):
            await store.update_agent("missing", name="x")

    @pytest.mark.asyncio
    async def test_fail_operations(self, store, make_task):
        """fail_operations에 넣은 연산은 StoreUnavailableError"""
        store.fail_operations.add("create_task")

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.create_task(make_task("A"))

        assert exc_info.value.details["operation"] == "create_task"
        assert await store.get_task("anything") is None

    @pytest.mark.asyncio
    async def test_fail_everything(self, store):
        store.fail_operations.add("*")

        with pytest.raises(StoreUnavailableError):
            await store.get_agent("agent-1")

    @pytest.mark.asyncio
    async def test_write_count(self, store, make_task):
        await store.create_task(make_task("A", task_id="a"))
        await store.update_task("a", title="B")
        await store.get_task("a")

        assert store.write_count == 2
