#!/usr/bin/env python3
"""
Orchestration Engine - Agent 오케스트레이터

목표를 Task 집합으로 분해하고, 사람의 개입을 최소화하면서 완료까지 진행합니다.

스케줄링 규칙:
- Agent당 동시에 하나의 Task만 in_progress (Agent별 asyncio.Lock 기반 drive loop)
- 다른 Agent끼리는 독립적으로 동시에 진행
- 다음 Task = 시작 가능한 자율 todo Task 중 priority rank가 가장 낮은 것, 동률이면 생성 순
- paused Agent는 다음 Task를 시작하지 않음 (진행 중인 작업은 중단하지 않음)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from errors import (
    AgentNotFoundError,
    InvalidTransitionError,
    OrchestratorError,
    StoreUnavailableError,
    StructuralViolationError,
    TaskNotFoundError,
    ValidationError,
)
from models import (
    Agent,
    AgentState,
    AgentStatus,
    CreateTaskInput,
    DependencyKind,
    EventKind,
    Task,
    TaskStatus,
)
from services.notification_sink import Notifier
from task_graph.dag import DependencyEdge, DependencyGraph, GraphErrorKind, GraphResult
from task_graph.decomposer import CandidateTask, DecompositionResult, TaskDecomposer
from task_graph.executor import ExecutionResult, SimulatedWorkExecutor, WorkExecutor
from task_graph.lifecycle import TaskStateMachine, TransitionResult

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Interrupted by a store failure"


@dataclass
class OrchestratorConfig:
    """오케스트레이터 설정"""
    max_task_attempts: int = 2          # 자율 Task 재시도 한도 (초과 시 needsAttention)


@dataclass
class StartAgentResult:
    """start_agent 결과"""
    agent: Agent
    tasks: List[Task]
    decomposition: DecompositionResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent.model_dump(mode="json"),
            "tasks": [t.model_dump(mode="json") for t in self.tasks],
            "decomposition": self.decomposition.to_dict(),
        }


def raise_for_result(result: GraphResult) -> GraphResult:
    """실패한 GraphResult를 해당 예외로 변환"""
    if result.success:
        return result
    if result.error_kind == GraphErrorKind.STORE:
        raise StoreUnavailableError(result.error or "Task store unavailable")
    raise StructuralViolationError(result.error or "Structural violation", **result.data)


def default_agent_name(goal: str) -> str:
    words = goal.strip().split()
    name = " ".join(words[:5])
    return name if len(words) <= 5 else f"{name}..."


class AgentOrchestrator:
    """
    Agent 오케스트레이터

    하나의 scope(workspace)에 묶이며, 그 scope의 DependencyGraph와
    TaskStateMachine을 공유합니다.

    Example:
        graph = DependencyGraph("workspace-1", store, notifier)
        await graph.load()
        orchestrator = AgentOrchestrator(graph, executor=SimulatedWorkExecutor(0))

        result = await orchestrator.start_agent("Generate more sales leads")
        await orchestrator.wait_idle()
        await orchestrator.resolve(task_id, notes="Approved")
    """

    def __init__(
        self,
        graph: DependencyGraph,
        decomposer: Optional[TaskDecomposer] = None,
        executor: Optional[WorkExecutor] = None,
        notifier: Optional[Notifier] = None,
        state_machine: Optional[TaskStateMachine] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        """
        Args:
            graph: scope의 의존성 그래프 (store 포함)
            decomposer: 목표 분해기 (기본: 키워드 정책)
            executor: 자율 작업 실행기 (기본: 단계별 시뮬레이션)
            notifier: 알림 발송기 (기본: 그래프의 notifier)
            state_machine: 상태 머신 (기본: 그래프에 묶인 새 인스턴스)
            config: 오케스트레이터 설정
        """
        self.graph = graph
        self.store = graph.store
        self.scope = graph.scope
        self.notifier = notifier or graph.notifier or Notifier()
        self.state_machine = state_machine or TaskStateMachine(graph, self.notifier)
        self.decomposer = decomposer or TaskDecomposer()
        self.executor = executor or SimulatedWorkExecutor()
        self.config = config or OrchestratorConfig()

        self._agent_locks: Dict[str, asyncio.Lock] = {}
        self._background: Set[asyncio.Task] = set()

    # =========================================================================
    # Agent lifecycle
    # =========================================================================

    async def start_agent(
        self,
        goal: str,
        name: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> StartAgentResult:
        """
        Agent 생성 → 목표 분해 → Task 생성 → drive loop 예약

        분해 Provider가 실패하면 최소 Task 집합으로 대체되므로, 생성된 Agent는
        항상 하나 이상의 자율 Task와 하나 이상의 사람 게이트 Task를 가집니다.
        """
        if not goal or not goal.strip():
            raise ValidationError("Goal must not be empty", field="goal")

        await self._ensure_loaded()

        agent = await self.store.create_agent(Agent(
            id=agent_id or str(uuid4()),
            workspaceId=self.scope,
            name=name or default_agent_name(goal),
            goal=goal.strip(),
            status=AgentStatus.ACTIVE,
        ))
        logger.info(f"Agent {agent.id} started in scope {self.scope}: {agent.goal[:80]}")
        await self.notifier.emit(agent.id, EventKind.AGENT_STARTED, f'Agent "{agent.name}" started', goal=agent.goal)
        await self.notifier.emit(agent.id, EventKind.THINKING, "Analyzing your goal and planning tasks...")

        decomposition = await self.decomposer.decompose(agent.goal)
        if decomposition.used_fallback:
            await self.notifier.emit(
                agent.id,
                EventKind.DECOMPOSITION_FALLBACK,
                "Planning service unavailable, using a basic task set",
                provider=decomposition.provider,
                error=decomposition.error,
            )

        tasks = await self._create_candidates(agent, decomposition)
        await self.notifier.emit(
            agent.id,
            EventKind.THINKING,
            f"Created {len(tasks)} tasks "
            f"({len(decomposition.autonomous)} I can do, {len(decomposition.human_gated)} need you)",
        )

        await self._refresh_agent_status(agent.id)
        self.schedule(agent.id)

        agent = await self._require_agent(agent.id)
        return StartAgentResult(agent=agent, tasks=tasks, decomposition=decomposition)

    async def _create_candidates(
        self,
        agent: Agent,
        decomposition: DecompositionResult,
    ) -> List[Task]:
        created: List[Task] = []
        for candidate in decomposition.candidates:
            task = await self._create_candidate(agent, candidate, created, decomposition.provider)
            created.append(task)
        return created

    async def _create_candidate(
        self,
        agent: Agent,
        candidate: CandidateTask,
        created: List[Task],
        provider: str,
    ) -> Task:
        upstream = created[candidate.depends_on[0]].id if candidate.depends_on else None
        task = Task(
            agentId=agent.id,
            title=candidate.title,
            description=candidate.description,
            priority=candidate.priority,
            status=TaskStatus.BLOCKED if candidate.needs_human else TaskStatus.TODO,
            isDependency=candidate.needs_human,
            blockedReason=candidate.blocked_reason if candidate.needs_human else None,
            dependsOnTaskId=upstream,
            metadata={"reasoning": candidate.reasoning, "plannedBy": provider},
        )

        result = raise_for_result(await self.graph.register_task(task))
        stored: Task = result.data["task"]

        for index in candidate.depends_on[1:]:
            edge_result = await self.graph.add_edge(created[index].id, stored.id)
            if not edge_result.success:
                logger.warning(f"Could not add planned dependency for {stored.id}: {edge_result.error}")
        if len(candidate.depends_on) > 1:
            stored = await self.store.get_task(stored.id) or stored

        await self.notifier.emit(
            agent.id,
            EventKind.TASK_CREATED,
            f'Created task "{stored.title}"',
            task_id=stored.id,
            needsHuman=candidate.needs_human,
            status=stored.status.value,
        )
        if stored.awaiting_human:
            await self.state_machine.gate_on_human(stored)
        return stored

    async def pause_agent(self, agent_id: str) -> Agent:
        """Agent 일시정지 (다음 Task를 시작하지 않음, 진행 중인 작업은 계속)"""
        agent = await self._require_agent(agent_id)
        if agent.status == AgentStatus.COMPLETED:
            raise InvalidTransitionError(None, agent.status.value, "pause", reason="agent is completed")
        if agent.status == AgentStatus.PAUSED:
            return agent

        return await self._set_agent_status(agent, AgentStatus.PAUSED, "Agent paused")

    async def resume_agent(self, agent_id: str) -> Agent:
        """일시정지 해제 후 drive loop 예약"""
        agent = await self._require_agent(agent_id)
        if agent.status == AgentStatus.COMPLETED:
            raise InvalidTransitionError(None, agent.status.value, "resume", reason="agent is completed")

        if agent.status == AgentStatus.PAUSED:
            agent = await self._set_agent_status(agent, AgentStatus.ACTIVE, "Agent resumed")
            await self._refresh_agent_status(agent_id)

        self.schedule(agent_id)
        return await self._require_agent(agent_id)

    async def complete_agent(self, agent_id: str) -> Agent:
        """모든 Task가 done일 때만 Agent를 completed로 표시"""
        agent = await self._require_agent(agent_id)
        if agent.status == AgentStatus.COMPLETED:
            return agent

        tasks = await self.store.list_tasks_by_agent(agent_id)
        open_tasks = [t for t in tasks if t.status != TaskStatus.DONE]
        if open_tasks:
            raise InvalidTransitionError(
                None, agent.status.value, "complete",
                reason=f"{len(open_tasks)} task(s) are not done",
            )

        return await self._set_agent_status(agent, AgentStatus.COMPLETED, "All tasks completed")

    async def get_agent_state(self, agent_id: str) -> AgentState:
        agent = await self._require_agent(agent_id)
        tasks = await self.store.list_tasks_by_agent(agent_id)
        return AgentState(agent=agent, tasks=tasks)

    async def list_agents(self) -> List[Agent]:
        return await self.store.list_agents(self.scope)

    # =========================================================================
    # Task operations
    # =========================================================================

    async def execute_autonomous_task(self, task_id: str) -> ExecutionResult:
        """
        자율 Task 하나를 todo → in_progress → done으로 진행

        Agent의 drive loop와 같은 락을 사용하므로 loop 실행 중에는 대기합니다.
        """
        node = self.graph.get_node(task_id)
        if node is None:
            raise TaskNotFoundError(task_id)

        async with self._agent_lock(node.agent_id):
            result = await self._execute(task_id)

        await self._refresh_agent_status(node.agent_id)
        return result

    async def _execute(self, task_id: str) -> ExecutionResult:
        """caller must hold the agent lock"""
        transition = await self.state_machine.start(task_id)
        task = transition.task
        agent_id = task.agentId
        self._schedule_other_agents(agent_id, transition.unblocked)

        await self.notifier.emit(agent_id, EventKind.THINKING, f'Starting work on: "{task.title}"', task_id=task_id)

        async def report_progress(message: str) -> None:
            await self.notifier.emit(agent_id, EventKind.TASK_PROGRESS, message, task_id=task_id)

        result = await self.executor.run(task, report_progress)

        try:
            if result.success:
                try:
                    finished = await self.state_machine.finish(
                        task_id,
                        summary=str(result.output) if result.output is not None else None,
                    )
                except InvalidTransitionError as e:
                    result = ExecutionResult(success=False, error=e.message)
                else:
                    logger.info(f"Task {task_id} completed in {result.execution_time_ms:.0f}ms")
                    self._schedule_other_agents(agent_id, finished.unblocked)
                    return result

            await self._handle_failure(task_id, result)
        except StoreUnavailableError:
            await self._release_interrupted(task_id)
            raise
        return result

    async def _release_interrupted(self, task_id: str) -> None:
        """저장소 장애로 마무리하지 못한 in_progress Task를 todo로 되돌리기 (best-effort)"""
        node = self.graph.get_node(task_id)
        if node is None or node.status != TaskStatus.IN_PROGRESS:
            return
        try:
            await self._handle_failure(task_id, ExecutionResult(success=False, error=INTERRUPTED_ERROR))
        except OrchestratorError as e:
            logger.error(f"Task {task_id} left in progress after store failure: {e.message}")

    async def _recover_interrupted(self, agent_id: str) -> None:
        """
        caller must hold the agent lock

        락을 잡은 상태에서 in_progress인 Task는 실행 중일 수 없으므로, 이전 저장소 장애나
        재시작으로 중단된 것으로 보고 실패 처리(attempts 증가)합니다.
        """
        for node in self.graph.nodes_for_agent(agent_id):
            if node.status == TaskStatus.IN_PROGRESS:
                logger.warning(f"Recovering interrupted task {node.id} of agent {agent_id}")
                await self._handle_failure(node.id, ExecutionResult(success=False, error=INTERRUPTED_ERROR))

    async def _handle_failure(self, task_id: str, result: ExecutionResult) -> None:
        cancelled = await self.state_machine.cancel(task_id, error=result.error)
        attempts = int(cancelled.task.metadata.get("attempts", 1))
        parked = attempts >= self.config.max_task_attempts

        logger.warning(f"Task {task_id} failed (attempt {attempts}): {result.error}")
        await self.notifier.emit(
            cancelled.task.agentId,
            EventKind.TASK_FAILED,
            f'Work on "{cancelled.task.title}" failed: {result.error}',
            task_id=task_id,
            attempts=attempts,
            needsAttention=parked,
        )
        if parked:
            await self.state_machine.set_metadata(task_id, needsAttention=True)
            logger.warning(f"Task {task_id} parked after {attempts} attempt(s)")

    async def retry_task(self, task_id: str) -> Task:
        """needsAttention 해제 후 재시도 예약"""
        node = self.graph.get_node(task_id)
        if node is None:
            raise TaskNotFoundError(task_id)

        task = await self.state_machine.set_metadata(task_id, needsAttention=None, attempts=None, lastError=None)
        self.schedule(task.agentId)
        return task

    async def cancel_task(self, task_id: str, reason: Optional[str] = None) -> Task:
        """
        멈춰 있는 in_progress Task를 todo로 되돌림

        Agent가 지금 그 Task를 실행 중이면 InvalidTransitionError. 실행 중이 아닌데
        in_progress로 남은 Task(저장소 장애 등)를 사람이 풀어줄 때 사용합니다.
        """
        node = self.graph.get_node(task_id)
        if node is None:
            raise TaskNotFoundError(task_id)

        lock = self._agent_lock(node.agent_id)
        if lock.locked():
            raise InvalidTransitionError(
                task_id, node.status.value, "cancel", reason="task is being worked on"
            )

        async with lock:
            transition = await self.state_machine.cancel(task_id, error=reason or "Cancelled by user")
        logger.info(f"Task {task_id} cancelled back to {transition.task.status.value}")

        await self._refresh_agent_status(node.agent_id)
        self.schedule(node.agent_id)
        return transition.task

    async def resolve(self, task_id: str, notes: Optional[str] = None) -> TransitionResult:
        """
        사람의 해결 신호 (idempotent)

        이미 done이면 상태 변화와 알림 없이 반환합니다.
        """
        transition = await self.state_machine.resolve(task_id, notes)
        if transition.changed:
            logger.info(f"Task {task_id} resolved by human")
            await self.resume_after_dependency_resolved(task_id, unblocked=transition.unblocked)
        return transition

    async def resume_after_dependency_resolved(
        self,
        task_id: str,
        unblocked: Optional[List[str]] = None,
    ) -> Agent:
        """
        사람 게이트 해결 후 Agent 재개

        다른 미해결 사람 게이트가 없거나 바로 진행할 Task가 있으면 Agent는 active가
        되고, 새로 시작 가능한 Task에 대해 drive loop가 예약됩니다.
        """
        node = self.graph.get_node(task_id)
        if node is None:
            raise TaskNotFoundError(task_id)

        await self._refresh_agent_status(node.agent_id)
        self.schedule(node.agent_id)
        self._schedule_other_agents(node.agent_id, unblocked or [])
        return await self._require_agent(node.agent_id)

    async def create_task(self, agent_id: str, data: CreateTaskInput) -> Task:
        """사람이 직접 Task 생성 (사람 게이트 Task, dependsOnTaskId 포함)"""
        agent = await self._require_agent(agent_id)
        await self._ensure_loaded()

        if not data.title.strip():
            raise ValidationError("Task title must not be empty", field="title")
        if data.isDependency and not (data.blockedReason and data.blockedReason.strip()):
            raise ValidationError("Human-gated tasks need a blockedReason", field="blockedReason")

        task = Task(
            agentId=agent.id,
            title=data.title.strip(),
            description=data.description,
            priority=data.priority,
            dueDate=data.dueDate,
            status=TaskStatus.BLOCKED if data.isDependency else TaskStatus.TODO,
            isDependency=data.isDependency,
            blockedReason=data.blockedReason if data.isDependency else None,
            dependsOnTaskId=data.dependsOnTaskId,
            metadata={**data.metadata, "createdBy": "human"},
        )
        result = raise_for_result(await self.graph.register_task(task))
        stored: Task = result.data["task"]

        await self.notifier.emit(
            agent.id, EventKind.TASK_CREATED, f'Created task "{stored.title}"',
            task_id=stored.id, needsHuman=stored.isDependency, status=stored.status.value,
        )
        if stored.awaiting_human:
            await self.state_machine.gate_on_human(stored)
        else:
            await self._refresh_agent_status(agent.id)
            self.schedule(agent.id)
        return stored

    async def add_dependency(
        self,
        source_task_id: str,
        target_task_id: str,
        kind: DependencyKind = DependencyKind.FINISH_TO_START,
    ) -> DependencyEdge:
        """두 Task 사이에 의존성 추가 (Agent가 달라도 같은 workspace면 허용)"""
        await self._ensure_loaded()
        result = raise_for_result(await self.graph.add_edge(source_task_id, target_task_id, kind))
        edge: DependencyEdge = result.data["edge"]

        target = self.graph.get_node(target_task_id)
        await self.notifier.emit(
            target.agent_id,
            EventKind.DEPENDENCY_ADDED,
            f'"{target.title}" now depends on another task',
            task_id=target_task_id,
            sourceTaskId=source_task_id,
            kind=kind.value,
        )
        await self._refresh_agent_status(target.agent_id)
        return edge

    async def delete_task(self, task_id: str) -> None:
        """Task 삭제. 다른 Task가 의존하면 StructuralViolationError"""
        node = self.graph.get_node(task_id)
        if node is None:
            raise TaskNotFoundError(task_id)
        if node.status == TaskStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                task_id, node.status.value, "delete", reason="task is being worked on"
            )

        raise_for_result(await self.graph.remove_task(task_id))
        logger.info(f"Task {task_id} deleted")
        await self.notifier.emit(node.agent_id, EventKind.TASK_DELETED, f'Deleted task "{node.title}"', task_id=task_id)

        await self._refresh_agent_status(node.agent_id)
        self.schedule(node.agent_id)

    # =========================================================================
    # Scheduling
    # =========================================================================

    def schedule(self, agent_id: str) -> asyncio.Task:
        """Agent의 drive loop를 백그라운드로 예약"""
        task = asyncio.create_task(self._drive(agent_id), name=f"drive-{agent_id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _schedule_other_agents(self, agent_id: str, task_ids: List[str]) -> None:
        others = []
        for task_id in task_ids:
            node = self.graph.get_node(task_id)
            if node and node.agent_id != agent_id and node.agent_id not in others:
                others.append(node.agent_id)
        for other in others:
            logger.debug(f"Scheduling agent {other} after cross-agent dependency completed")
            self.schedule(other)

    async def _drive(self, agent_id: str) -> None:
        """
        Agent의 시작 가능한 Task를 하나씩 순서대로 실행

        paused/completed Agent는 진행하지 않습니다. 저장소 장애 등은 로그를 남기고
        loop를 멈추며, 중단된 in_progress Task는 다음 loop가 먼저 되돌립니다.
        """
        async with self._agent_lock(agent_id):
            try:
                while True:
                    agent = await self.store.get_agent(agent_id)
                    if agent is None or agent.status in (AgentStatus.PAUSED, AgentStatus.COMPLETED):
                        break

                    await self._recover_interrupted(agent_id)
                    ready = self.graph.ready_tasks(agent_id)
                    if not ready:
                        break

                    await self._execute(ready[0].id)
            except OrchestratorError as e:
                logger.error(f"Drive loop for agent {agent_id} stopped: {e.code} - {e.message}")

        try:
            await self._refresh_agent_status(agent_id)
        except OrchestratorError as e:
            logger.error(f"Could not refresh status of agent {agent_id}: {e.message}")

    async def wait_idle(self) -> None:
        """예약된 drive loop가 모두 끝날 때까지 대기 (loop가 새 loop를 예약해도 포함)"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        """남은 drive loop 취소"""
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        self._background.clear()

    def _agent_lock(self, agent_id: str) -> asyncio.Lock:
        if agent_id not in self._agent_locks:
            self._agent_locks[agent_id] = asyncio.Lock()
        return self._agent_locks[agent_id]

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _ensure_loaded(self) -> None:
        if not self.graph.loaded:
            raise_for_result(await self.graph.load())

    async def _require_agent(self, agent_id: str) -> Agent:
        agent = await self.store.get_agent(agent_id)
        if agent is None or agent.workspaceId != self.scope:
            raise AgentNotFoundError(agent_id)
        return agent

    async def _set_agent_status(self, agent: Agent, status: AgentStatus, message: str) -> Agent:
        updated = await self.store.update_agent(agent.id, status=status)
        logger.info(f"Agent {agent.id}: {agent.status.value} → {status.value}")
        await self.notifier.emit(
            agent.id, EventKind.AGENT_STATUS_CHANGED, message,
            previous=agent.status.value, status=status.value,
        )
        return updated

    async def _refresh_agent_status(self, agent_id: str) -> None:
        """
        Task 상태로부터 Agent 상태 재계산

        paused/completed는 유지. 진행 중이거나 바로 시작할 Task가 있으면 active.
        그렇지 않고 blocked Task(사람 게이트 또는 선행 Task 대기)가 하나라도 남아
        있으면 blocked, 그 외에는 active.
        """
        async with self.graph.lock:
            agent = await self.store.get_agent(agent_id)
            if agent is None or agent.status in (AgentStatus.PAUSED, AgentStatus.COMPLETED):
                return

            nodes = self.graph.nodes_for_agent(agent_id)
            working = any(n.status == TaskStatus.IN_PROGRESS for n in nodes) or bool(
                self.graph.ready_tasks(agent_id)
            )
            waiting = [n for n in nodes if n.status == TaskStatus.BLOCKED]
            status = AgentStatus.BLOCKED if (waiting and not working) else AgentStatus.ACTIVE
            if status == agent.status:
                return
            await self.store.update_agent(agent_id, status=status)

        logger.info(f"Agent {agent_id}: {agent.status.value} → {status.value}")
        if status == AgentStatus.ACTIVE:
            message = "Back to work"
        elif any(n.awaiting_human for n in waiting):
            message = "Waiting for your input"
        else:
            message = "Waiting on other tasks to finish"
        await self.notifier.emit(
            agent_id, EventKind.AGENT_STATUS_CHANGED, message,
            previous=agent.status.value, status=status.value,
        )
