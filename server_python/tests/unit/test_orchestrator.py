"""
Agent Orchestrator Unit Tests

목표 분해부터 자율 실행, 사람 게이트 해결, Agent 상태 관리까지의 시나리오 테스트입니다.
"""

import json
import pytest
from unittest.mock import AsyncMock, MagicMock

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from errors import (
    AgentNotFoundError,
    InvalidTransitionError,
    StructuralViolationError,
    TaskNotFoundError,
    ValidationError,
)
from models import Agent, AgentStatus, CreateTaskInput, EventKind, TaskPriority, TaskStatus
from task_graph.decomposer import (
    REVIEW_TASK_TITLE,
    DecompositionProvider,
    LLMDecompositionProvider,
    TaskDecomposer,
)
from task_graph.executor import CallableWorkExecutor, ExecutionResult


class DownProvider(DecompositionProvider):
    name = "down"

    async def decompose(self, goal):
        raise TimeoutError("planning timed out")


def by_title(tasks, title):
    return next(t for t in tasks if t.title == title)


async def paused_agent(orchestrator, store, agent_id="agent-1"):
    agent = await store.get_agent(agent_id)
    if agent is None:
        agent = await store.create_agent(Agent(
            id=agent_id, workspaceId=orchestrator.scope, name=agent_id, goal="Test goal",
        ))
    await orchestrator.pause_agent(agent.id)
    return agent


class TestStartAgent:
    """start_agent 테스트"""

    @pytest.mark.asyncio
    async def test_sales_goal_runs_autonomous_work(self, orchestrator, sink):
        """자율 Task는 끝까지 진행하고 사람 게이트에서 Agent가 blocked"""
        result = await orchestrator.start_agent("Generate more sales leads")
        await orchestrator.wait_idle()

        state = await orchestrator.get_agent_state(result.agent.id)
        tasks = state.tasks

        assert result.agent.name == "Generate more sales leads"
        assert len(result.tasks) == 4
        assert by_title(tasks, "Research and analyze requirements").status == TaskStatus.DONE
        assert by_title(tasks, "Research lead generation channels").status == TaskStatus.DONE
        assert by_title(tasks, "Define target customer profile").status == TaskStatus.BLOCKED
        assert by_title(tasks, REVIEW_TASK_TITLE).status == TaskStatus.BLOCKED
        assert state.agent.status == AgentStatus.BLOCKED
        assert len(sink.of_kind(EventKind.HUMAN_INPUT_REQUIRED)) == 2
        assert sink.of_kind(EventKind.AGENT_STARTED)[0].agentId == result.agent.id

    @pytest.mark.asyncio
    async def test_human_gates_have_reasons(self, orchestrator):
        """사람 게이트 Task는 항상 blocked 상태와 사유를 가짐"""
        result = await orchestrator.start_agent("Write a blog series")

        gates = [t for t in result.tasks if t.isDependency]
        assert gates
        for task in gates:
            assert task.status == TaskStatus.BLOCKED
            assert task.blockedReason

    @pytest.mark.asyncio
    async def test_long_goal_name_is_truncated(self, orchestrator):
        result = await orchestrator.start_agent("Build a research report on the regional market trends")
        assert result.agent.name == "Build a research report on..."

    @pytest.mark.asyncio
    async def test_empty_goal_is_rejected(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.start_agent("  ")

    @pytest.mark.asyncio
    async def test_decomposition_failure_uses_minimal_set(self, graph, notifier, sink):
        """분해 실패 시 최소 Task 집합으로 끝까지 진행 가능"""
        from orchestration.engine import AgentOrchestrator
        from task_graph.executor import SimulatedWorkExecutor

        orchestrator = AgentOrchestrator(
            graph,
            decomposer=TaskDecomposer(DownProvider()),
            executor=SimulatedWorkExecutor(step_delay_seconds=0),
            notifier=notifier,
        )
        result = await orchestrator.start_agent("Grow revenue")
        await orchestrator.wait_idle()

        assert result.decomposition.used_fallback
        assert len(sink.of_kind(EventKind.DECOMPOSITION_FALLBACK)) == 1

        tasks = (await orchestrator.get_agent_state(result.agent.id)).tasks
        implementation = by_title(tasks, "Begin implementation")
        review = by_title(tasks, REVIEW_TASK_TITLE)
        assert by_title(tasks, "Create action plan").status == TaskStatus.DONE
        assert implementation.status == TaskStatus.BLOCKED

        await orchestrator.resolve(review.id, notes="Go ahead")
        await orchestrator.wait_idle()

        tasks = (await orchestrator.get_agent_state(result.agent.id)).tasks
        assert all(t.status == TaskStatus.DONE for t in tasks)
        agent = await orchestrator.complete_agent(result.agent.id)
        assert agent.status == AgentStatus.COMPLETED
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_loose_llm_output_still_creates_tasks(self, graph, notifier):
        """LLM이 숫자 blockedReason, 문자열 needsHuman을 줘도 Agent는 Task를 가짐"""
        from orchestration.engine import AgentOrchestrator
        from task_graph.executor import SimulatedWorkExecutor

        client = MagicMock()
        client.call = AsyncMock(return_value=json.dumps({"tasks": [
            {"title": "Collect quotes", "needsHuman": "false"},
            {"title": "Approve vendor", "needsHuman": True, "blockedReason": 42},
        ]}))
        orchestrator = AgentOrchestrator(
            graph,
            decomposer=TaskDecomposer(LLMDecompositionProvider(client)),
            executor=SimulatedWorkExecutor(step_delay_seconds=0),
            notifier=notifier,
        )
        result = await orchestrator.start_agent("Pick a vendor")
        await orchestrator.wait_idle()

        assert not result.decomposition.used_fallback
        gate = by_title(result.tasks, "Approve vendor")
        assert gate.status == TaskStatus.BLOCKED
        assert gate.blockedReason == "42"
        tasks = (await orchestrator.get_agent_state(result.agent.id)).tasks
        assert by_title(tasks, "Collect quotes").status == TaskStatus.DONE
        await orchestrator.shutdown()


class TestHumanGateScenario:
    """A(todo) → B(A에 의존), C(사람 게이트) 시나리오"""

    @pytest.mark.asyncio
    async def test_resolve_returns_agent_to_active(self, orchestrator, store, graph):
        agent = await paused_agent(orchestrator, store)
        a = await orchestrator.create_task(agent.id, CreateTaskInput(title="A"))
        b = await orchestrator.create_task(agent.id, CreateTaskInput(title="B", dependsOnTaskId=a.id))
        c = await orchestrator.create_task(agent.id, CreateTaskInput(
            title="C", isDependency=True, blockedReason="Need the budget",
        ))
        assert b.status == TaskStatus.BLOCKED
        assert c.status == TaskStatus.BLOCKED

        result = await orchestrator.execute_autonomous_task(a.id)

        assert result.success
        assert graph.get_node(b.id).status == TaskStatus.TODO
        assert graph.is_ready(b.id)
        assert graph.get_node(c.id).status == TaskStatus.BLOCKED

        await orchestrator.resume_agent(agent.id)
        await orchestrator.wait_idle()

        assert (await store.get_task(b.id)).status == TaskStatus.DONE
        assert (await store.get_task(c.id)).status == TaskStatus.BLOCKED
        assert (await store.get_agent(agent.id)).status == AgentStatus.BLOCKED

        transition = await orchestrator.resolve(c.id, notes="Budget is 10k")
        await orchestrator.wait_idle()

        assert transition.changed
        assert (await store.get_task(c.id)).metadata["completionNotes"] == "Budget is 10k"
        assert (await store.get_agent(agent.id)).status == AgentStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_second_resolve_is_silent(self, orchestrator, store, sink):
        agent = await paused_agent(orchestrator, store)
        gate = await orchestrator.create_task(agent.id, CreateTaskInput(
            title="Approve", isDependency=True, blockedReason="Need approval",
        ))
        await orchestrator.resolve(gate.id)
        await orchestrator.wait_idle()
        events = len(sink.events)

        second = await orchestrator.resolve(gate.id)
        await orchestrator.wait_idle()

        assert not second.changed
        assert len(sink.events) == events

    @pytest.mark.asyncio
    async def test_human_task_requires_reason(self, orchestrator, agent):
        with pytest.raises(ValidationError):
            await orchestrator.create_task(agent.id, CreateTaskInput(title="Approve", isDependency=True))


class TestCrossAgentDependencies:
    """다른 Agent의 Task에 대한 의존성 테스트"""

    @pytest.mark.asyncio
    async def test_finishing_upstream_drives_other_agent(self, orchestrator, store, sink):
        first = await paused_agent(orchestrator, store, "agent-1")
        second = await paused_agent(orchestrator, store, "agent-2")
        upstream = await orchestrator.create_task(first.id, CreateTaskInput(title="Collect data"))
        downstream = await orchestrator.create_task(second.id, CreateTaskInput(title="Build model"))

        edge = await orchestrator.add_dependency(upstream.id, downstream.id)
        assert edge.source_id == upstream.id
        assert (await store.get_task(downstream.id)).status == TaskStatus.BLOCKED

        await orchestrator.resume_agent(second.id)
        await orchestrator.wait_idle()
        assert (await store.get_task(downstream.id)).status == TaskStatus.BLOCKED
        assert (await store.get_agent(second.id)).status == AgentStatus.BLOCKED
        assert sink.of_kind(EventKind.AGENT_STATUS_CHANGED)[-1].message == "Waiting on other tasks to finish"

        await orchestrator.resume_agent(first.id)
        await orchestrator.wait_idle()

        assert (await store.get_task(upstream.id)).status == TaskStatus.DONE
        assert (await store.get_task(downstream.id)).status == TaskStatus.DONE
        assert downstream.id in [e.taskId for e in sink.of_kind(EventKind.TASK_READY)]
        assert (await store.get_agent(second.id)).status == AgentStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_cycle_is_rejected(self, orchestrator, store):
        agent = await paused_agent(orchestrator, store)
        a = await orchestrator.create_task(agent.id, CreateTaskInput(title="A"))
        b = await orchestrator.create_task(agent.id, CreateTaskInput(title="B"))
        await orchestrator.add_dependency(a.id, b.id)

        with pytest.raises(StructuralViolationError) as exc_info:
            await orchestrator.add_dependency(b.id, a.id)
        assert exc_info.value.message == "Would create a circular dependency"


class TestFailures:
    """자율 작업 실패/재시도 테스트"""

    @pytest.mark.asyncio
    async def test_repeated_failure_parks_task(self, graph, notifier, sink, store, agent):
        from orchestration.engine import AgentOrchestrator, OrchestratorConfig

        attempts = {"count": 0}

        async def flaky(task, report_progress):
            attempts["count"] += 1
            await report_progress("Trying...")
            if attempts["count"] <= 2:
                raise RuntimeError("upstream API down")
            return "ok"

        orchestrator = AgentOrchestrator(
            graph,
            executor=CallableWorkExecutor(flaky),
            notifier=notifier,
            config=OrchestratorConfig(max_task_attempts=2),
        )
        task = await orchestrator.create_task(agent.id, CreateTaskInput(title="Fetch"))
        await orchestrator.wait_idle()

        parked = await store.get_task(task.id)
        assert parked.status == TaskStatus.TODO
        assert parked.metadata["attempts"] == 2
        assert parked.metadata["lastError"] == "upstream API down"
        assert parked.metadata["needsAttention"] is True
        failures = sink.of_kind(EventKind.TASK_FAILED)
        assert [e.metadata["needsAttention"] for e in failures] == [False, True]

        await orchestrator.retry_task(task.id)
        await orchestrator.wait_idle()

        done = await store.get_task(task.id)
        assert done.status == TaskStatus.DONE
        assert "needsAttention" not in done.metadata
        assert done.metadata["workSummary"] == "ok"
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_failed_result_is_reported(self, graph, notifier, store, agent):
        from orchestration.engine import AgentOrchestrator

        async def refuse(task, report_progress):
            return ExecutionResult(success=False, error="not allowed")

        orchestrator = AgentOrchestrator(graph, executor=CallableWorkExecutor(refuse), notifier=notifier)
        await orchestrator.pause_agent(agent.id)
        task = await orchestrator.create_task(agent.id, CreateTaskInput(title="Fetch"))

        result = await orchestrator.execute_autonomous_task(task.id)

        assert not result.success
        assert (await store.get_task(task.id)).metadata["attempts"] == 1
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_store_failure_on_finish_does_not_strand_task(self, graph, notifier, sink, store, agent):
        """완료 기록 중 저장소 장애가 나도 저장소가 돌아오면 Task가 다시 진행됨"""
        from orchestration.engine import INTERRUPTED_ERROR, AgentOrchestrator

        calls = {"count": 0}

        async def outage_on_first_run(task, report_progress):
            calls["count"] += 1
            if calls["count"] == 1:
                store.fail_operations.add("update_task")
            return "ok"

        orchestrator = AgentOrchestrator(graph, executor=CallableWorkExecutor(outage_on_first_run), notifier=notifier)
        await orchestrator.pause_agent(agent.id)
        first = await orchestrator.create_task(agent.id, CreateTaskInput(title="First", priority=TaskPriority.URGENT))
        second = await orchestrator.create_task(agent.id, CreateTaskInput(title="Second"))

        await orchestrator.resume_agent(agent.id)
        await orchestrator.wait_idle()
        assert (await store.get_task(first.id)).status == TaskStatus.IN_PROGRESS

        store.fail_operations.clear()
        await orchestrator.resume_agent(agent.id)
        await orchestrator.wait_idle()

        assert (await store.get_task(first.id)).status == TaskStatus.DONE
        assert (await store.get_task(second.id)).status == TaskStatus.DONE
        failures = sink.of_kind(EventKind.TASK_FAILED)
        assert [e.taskId for e in failures] == [first.id]
        assert INTERRUPTED_ERROR in failures[0].message
        assert failures[0].metadata["attempts"] == 1
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_resume_recovers_interrupted_task(self, orchestrator, store):
        """실행 중이 아닌 in_progress Task는 drive loop가 todo로 되돌린 뒤 다시 실행"""
        agent = await paused_agent(orchestrator, store)
        task = await orchestrator.create_task(agent.id, CreateTaskInput(title="Work"))
        await orchestrator.state_machine.start(task.id)

        await orchestrator.resume_agent(agent.id)
        await orchestrator.wait_idle()

        done = await store.get_task(task.id)
        assert done.status == TaskStatus.DONE
        assert done.metadata["attempts"] == 1


class TestCancelTask:
    """멈춘 in_progress Task 취소 테스트"""

    @pytest.mark.asyncio
    async def test_cancel_returns_task_to_todo(self, orchestrator, store):
        agent = await paused_agent(orchestrator, store)
        task = await orchestrator.create_task(agent.id, CreateTaskInput(title="Work"))
        await orchestrator.state_machine.start(task.id)

        cancelled = await orchestrator.cancel_task(task.id, reason="Stuck after outage")

        assert cancelled.status == TaskStatus.TODO
        assert cancelled.metadata["lastError"] == "Stuck after outage"
        assert (await store.get_task(task.id)).status == TaskStatus.TODO

    @pytest.mark.asyncio
    async def test_cancel_todo_task_raises(self, orchestrator, store):
        agent = await paused_agent(orchestrator, store)
        task = await orchestrator.create_task(agent.id, CreateTaskInput(title="Work"))

        with pytest.raises(InvalidTransitionError):
            await orchestrator.cancel_task(task.id)

    @pytest.mark.asyncio
    async def test_cancel_unknown_task(self, orchestrator):
        with pytest.raises(TaskNotFoundError):
            await orchestrator.cancel_task("missing")


class TestAgentLifecycle:
    """Agent 상태 관리 테스트"""

    @pytest.mark.asyncio
    async def test_paused_agent_does_not_advance(self, orchestrator, store):
        agent = await paused_agent(orchestrator, store)
        task = await orchestrator.create_task(agent.id, CreateTaskInput(title="Work"))
        await orchestrator.wait_idle()

        assert (await store.get_task(task.id)).status == TaskStatus.TODO

        resumed = await orchestrator.resume_agent(agent.id)
        await orchestrator.wait_idle()

        assert resumed.status == AgentStatus.ACTIVE
        assert (await store.get_task(task.id)).status == TaskStatus.DONE

    @pytest.mark.asyncio
    async def test_complete_requires_all_done(self, orchestrator, store):
        agent = await paused_agent(orchestrator, store)
        await orchestrator.create_task(agent.id, CreateTaskInput(title="Work"))

        with pytest.raises(InvalidTransitionError):
            await orchestrator.complete_agent(agent.id)

    @pytest.mark.asyncio
    async def test_completed_agent_cannot_resume(self, orchestrator, agent):
        completed = await orchestrator.complete_agent(agent.id)
        assert completed.status == AgentStatus.COMPLETED

        with pytest.raises(InvalidTransitionError):
            await orchestrator.resume_agent(agent.id)

    @pytest.mark.asyncio
    async def test_unknown_agent(self, orchestrator):
        with pytest.raises(AgentNotFoundError):
            await orchestrator.get_agent_state("missing")

    @pytest.mark.asyncio
    async def test_agent_of_other_scope_is_hidden(self, orchestrator, store):
        await store.create_agent(Agent(id="foreign", workspaceId="other", name="F", goal="G"))
        with pytest.raises(AgentNotFoundError):
            await orchestrator.get_agent_state("foreign")

    @pytest.mark.asyncio
    async def test_list_agents(self, orchestrator):
        await orchestrator.start_agent("Plan the offsite")
        await orchestrator.wait_idle()

        agents = await orchestrator.list_agents()
        assert [a.name for a in agents] == ["Plan the offsite"]


class TestDeleteTask:
    """Task 삭제 테스트"""

    @pytest.mark.asyncio
    async def test_delete_with_dependent_raises(self, orchestrator, store):
        agent = await paused_agent(orchestrator, store)
        a = await orchestrator.create_task(agent.id, CreateTaskInput(title="A"))
        await orchestrator.create_task(agent.id, CreateTaskInput(title="B", dependsOnTaskId=a.id))

        with pytest.raises(StructuralViolationError):
            await orchestrator.delete_task(a.id)
        assert await store.get_task(a.id) is not None

    @pytest.mark.asyncio
    async def test_delete_in_progress_raises(self, orchestrator, store):
        agent = await paused_agent(orchestrator, store)
        a = await orchestrator.create_task(agent.id, CreateTaskInput(title="A"))
        await orchestrator.state_machine.start(a.id)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.delete_task(a.id)

    @pytest.mark.asyncio
    async def test_delete_leaf(self, orchestrator, store, sink):
        agent = await paused_agent(orchestrator, store)
        a = await orchestrator.create_task(agent.id, CreateTaskInput(title="A"))

        await orchestrator.delete_task(a.id)

        assert await store.get_task(a.id) is None
        assert [e.taskId for e in sink.of_kind(EventKind.TASK_DELETED)] == [a.id]
