"""
Pytest Configuration and Fixtures

테스트 전역 설정 및 공유 fixtures입니다.
"""

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from models import Agent, Task
from orchestration.engine import AgentOrchestrator, OrchestratorConfig
from services.notification_sink import InMemoryNotificationSink, Notifier
from services.task_store import InMemoryTaskStore
from task_graph.dag import DependencyGraph
from task_graph.executor import SimulatedWorkExecutor
from task_graph.lifecycle import TaskStateMachine


SCOPE = "workspace-test"


@pytest.fixture
def store() -> InMemoryTaskStore:
    """메모리 Task Store"""
    return InMemoryTaskStore()


@pytest.fixture
def sink() -> InMemoryNotificationSink:
    """이벤트를 기록하는 알림 Sink"""
    return InMemoryNotificationSink()


@pytest.fixture
def notifier(sink) -> Notifier:
    return Notifier(sink)


@pytest.fixture
def graph(store, notifier) -> DependencyGraph:
    """테스트 scope의 의존성 그래프"""
    return DependencyGraph(SCOPE, store, notifier)


@pytest.fixture
def state_machine(graph, notifier) -> TaskStateMachine:
    return TaskStateMachine(graph, notifier)


@pytest_asyncio.fixture
async def agent(store) -> Agent:
    """테스트 scope에 저장된 Agent"""
    return await store.create_agent(Agent(
        id="agent-1",
        workspaceId=SCOPE,
        name="Test Agent",
        goal="Test goal",
    ))


@pytest.fixture
def make_task():
    """Task 생성 헬퍼 (기본 Agent: agent-1)"""
    def factory(title: str, task_id: str = None, agent_id: str = "agent-1", **fields) -> Task:
        if task_id:
            fields["id"] = task_id
        return Task(agentId=agent_id, title=title, **fields)
    return factory


@pytest_asyncio.fixture
async def orchestrator(graph, notifier):
    """지연 없는 시뮬레이션 실행기를 쓰는 오케스트레이터"""
    orchestrator = AgentOrchestrator(
        graph,
        executor=SimulatedWorkExecutor(step_delay_seconds=0),
        notifier=notifier,
        config=OrchestratorConfig(max_task_attempts=2),
    )
    yield orchestrator
    await orchestrator.shutdown()


@pytest.fixture
def mock_redis_client() -> MagicMock:
    """redis.asyncio 클라이언트 모킹"""
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.zadd = AsyncMock(return_value=1)
    client.zrangebyscore = AsyncMock(return_value=[])
    client.zrevrange = AsyncMock(return_value=[])
    client.zremrangebyscore = AsyncMock(return_value=0)
    client.xadd = AsyncMock(return_value="1-0")
    client.xrange = AsyncMock(return_value=[])
    client.expire = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def mock_llm_response() -> str:
    """샘플 LLM 분해 응답"""
    import json
    return json.dumps({
        "tasks": [
            {
                "title": "Collect competitor pricing",
                "description": "Gather public pricing pages",
                "needsHuman": False,
                "priority": "high",
                "reasoning": "Pricing context comes first",
                "dependsOn": [],
            },
            {
                "title": "Approve pricing strategy",
                "description": "Decide final price points",
                "needsHuman": True,
                "blockedReason": "I need your decision on the price points.",
                "priority": "medium",
                "reasoning": "Only a human can approve pricing",
                "dependsOn": [0],
            },
        ]
    })
