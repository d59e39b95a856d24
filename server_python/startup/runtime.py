"""
OrchestrationRuntime - 서버 구성 요소 초기화

Settings로부터 Task Store, 알림 Sink, 분해기, 실행기를 만들고
scope(workspace)마다 DependencyGraph / AgentOrchestrator를 하나씩 유지합니다.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from database import AuditNotificationSink, Database, SqlTaskStore
from errors import AgentNotFoundError, TaskNotFoundError
from models import Agent, Task
from orchestration import CircuitBreaker, CircuitConfig
from orchestration.engine import AgentOrchestrator, OrchestratorConfig, raise_for_result
from services.event_store import EventStore
from services.llm_client import LLMClient
from services.notification_sink import (
    InMemoryNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
    Notifier,
)
from services.redis_service import RedisService
from services.task_store import InMemoryTaskStore, TaskStore
from task_graph.dag import DependencyGraph
from task_graph.decomposer import (
    DecompositionProvider,
    KeywordDecompositionPolicy,
    LLMDecompositionProvider,
    TaskDecomposer,
)
from task_graph.executor import SimulatedWorkExecutor, WorkExecutor

from .config import Settings

logger = logging.getLogger(__name__)


class OrchestrationRuntime:
    """
    런타임 구성 요소 컨테이너

    Example:
        runtime = OrchestrationRuntime(Settings.from_env())
        await runtime.startup()
        orchestrator = await runtime.get_orchestrator("workspace-1")
        ...
        await runtime.shutdown()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[TaskStore] = None,
        sink: Optional[NotificationSink] = None,
        executor: Optional[WorkExecutor] = None,
    ):
        """
        Args:
            settings: 서버 설정 (기본: 기본값)
            store: 주입할 Task Store (테스트용, 설정보다 우선)
            sink: 주입할 알림 Sink (테스트용, 설정보다 우선)
            executor: 주입할 작업 실행기
        """
        self.settings = settings or Settings()
        self.store = store
        self.sink = sink
        self.executor = executor

        self.database: Optional[Database] = None
        self.redis_service: Optional[RedisService] = None
        self.llm_client: Optional[LLMClient] = None
        self.notifier: Optional[Notifier] = None
        self.decomposer: Optional[TaskDecomposer] = None

        self._graphs: Dict[str, DependencyGraph] = {}
        self._orchestrators: Dict[str, AgentOrchestrator] = {}
        self._scope_lock = asyncio.Lock()
        self.started = False

    async def startup(self) -> None:
        """구성 요소 초기화 (idempotent)"""
        if self.started:
            return

        logger.info(
            f"Starting runtime (store={self.settings.task_store}, "
            f"sink={self.settings.notification_sink})"
        )

        if self.store is None:
            self.store = await self._build_store()
        if self.sink is None:
            self.sink = await self._build_sink()
        self.notifier = Notifier(self.sink)

        self.decomposer = TaskDecomposer(
            provider=self._build_provider(),
            circuit_breaker=CircuitBreaker(
                CircuitConfig(failure_threshold=self.settings.decomposer_failure_threshold)
            ),
        )
        if self.executor is None:
            self.executor = SimulatedWorkExecutor(self.settings.work_step_delay_seconds)

        self.started = True
        logger.info("Runtime ready")

    async def _build_store(self) -> TaskStore:
        if self.settings.task_store == "sql":
            self.database = Database(self.settings.database_url)
            await self.database.connect()
            await self.database.create_tables()
            return SqlTaskStore(self.database)
        return InMemoryTaskStore()

    async def _build_sink(self) -> NotificationSink:
        kind = self.settings.notification_sink
        if kind == "memory":
            return InMemoryNotificationSink()
        if kind == "redis":
            self.redis_service = RedisService(self.settings.redis_url)
            await self.redis_service.connect()
            return EventStore(self.redis_service)
        if kind == "audit":
            if self.database is None:
                raise RuntimeError("Audit sink requires the SQL task store")
            return AuditNotificationSink(self.database)
        return LoggingNotificationSink()

    def _build_provider(self) -> DecompositionProvider:
        if self.settings.llm_enabled:
            self.llm_client = LLMClient(
                api_url=self.settings.llm_api_url,
                api_key=self.settings.llm_api_key,
                model=self.settings.llm_model,
            )
            logger.info(f"Using LLM decomposition ({self.llm_client.model})")
            return LLMDecompositionProvider(self.llm_client)
        return KeywordDecompositionPolicy()

    async def shutdown(self) -> None:
        for orchestrator in self._orchestrators.values():
            await orchestrator.shutdown()
        if self.llm_client:
            await self.llm_client.close()
        if self.redis_service:
            await self.redis_service.disconnect()
        if self.database:
            await self.database.disconnect()
        self.started = False
        logger.info("Runtime stopped")

    # =========================================================================
    # Scopes
    # =========================================================================

    async def get_orchestrator(self, scope: str) -> AgentOrchestrator:
        """scope의 오케스트레이터 (첫 요청 시 그래프 로드)"""
        if not self.started:
            await self.startup()

        async with self._scope_lock:
            orchestrator = self._orchestrators.get(scope)
            if orchestrator is None:
                graph = DependencyGraph(scope, self.store, self.notifier)
                raise_for_result(await graph.load())
                orchestrator = AgentOrchestrator(
                    graph,
                    decomposer=self.decomposer,
                    executor=self.executor,
                    notifier=self.notifier,
                    config=OrchestratorConfig(max_task_attempts=self.settings.max_task_attempts),
                )
                self._graphs[scope] = graph
                self._orchestrators[scope] = orchestrator
                logger.info(f"Loaded scope {scope} ({len(graph.get_all_nodes())} task(s))")
            return orchestrator

    def get_graph(self, scope: str) -> Optional[DependencyGraph]:
        return self._graphs.get(scope)

    @property
    def scopes(self) -> List[str]:
        return list(self._orchestrators.keys())

    async def find_agent(self, agent_id: str) -> Agent:
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    async def orchestrator_for_agent(self, agent_id: str) -> AgentOrchestrator:
        if not self.started:
            await self.startup()
        agent = await self.find_agent(agent_id)
        return await self.get_orchestrator(agent.workspaceId)

    async def orchestrator_for_task(self, task_id: str) -> AgentOrchestrator:
        if not self.started:
            await self.startup()
        task: Optional[Task] = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return await self.orchestrator_for_agent(task.agentId)

    async def wait_idle(self) -> None:
        """모든 scope의 drive loop가 끝날 때까지 대기"""
        for orchestrator in list(self._orchestrators.values()):
            await orchestrator.wait_idle()
