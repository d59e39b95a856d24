#!/usr/bin/env python3
"""
Task Lifecycle - Task 상태 머신

허용된 상태 전이는 TRANSITIONS 테이블 하나로 정의됩니다.

    todo        --start-->   in_progress   (시작 게이트 충족)
    todo        --block-->   blocked       (미충족 선행 Task 존재 또는 사람 입력 필요)
    blocked     --unblock--> todo          (모든 선행 Task 충족, 사람 게이트 아님)
    blocked     --resolve--> done          (사람이 해결)
    in_progress --finish-->  done          (완료 게이트 충족)
    in_progress --cancel-->  todo          (작업 실패/중단)

done은 종료 상태이며, 이후에는 append-only metadata만 추가할 수 있습니다.
모든 전이는 DependencyGraph.lock 안에서 저장소에 먼저 쓰고 그래프에 반영한 뒤
알림을 보냅니다.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from errors import InvalidTransitionError, TaskNotFoundError, ValidationError
from models import AgentStatus, EventKind, Task, TaskStatus
from services.notification_sink import Notifier

if TYPE_CHECKING:
    from .dag import DependencyGraph, TaskNode

logger = logging.getLogger(__name__)


class TransitionEvent(str, Enum):
    START = "start"
    BLOCK = "block"
    UNBLOCK = "unblock"
    FINISH = "finish"
    CANCEL = "cancel"
    RESOLVE = "resolve"


TRANSITIONS: Dict[Tuple[TaskStatus, TransitionEvent], TaskStatus] = {
    (TaskStatus.TODO, TransitionEvent.START): TaskStatus.IN_PROGRESS,
    (TaskStatus.TODO, TransitionEvent.BLOCK): TaskStatus.BLOCKED,
    (TaskStatus.BLOCKED, TransitionEvent.UNBLOCK): TaskStatus.TODO,
    (TaskStatus.BLOCKED, TransitionEvent.RESOLVE): TaskStatus.DONE,
    (TaskStatus.IN_PROGRESS, TransitionEvent.FINISH): TaskStatus.DONE,
    (TaskStatus.IN_PROGRESS, TransitionEvent.CANCEL): TaskStatus.TODO,
}


def next_status(
    current: TaskStatus,
    event: TransitionEvent,
    task_id: Optional[str] = None,
) -> TaskStatus:
    """
    전이 테이블 조회

    Raises:
        InvalidTransitionError: 테이블에 없는 (상태, 이벤트) 조합
    """
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidTransitionError(task_id, current.value, event.value)
    return target


def allowed_events(current: TaskStatus) -> List[TransitionEvent]:
    """현재 상태에서 가능한 이벤트 목록"""
    return [event for (status, event) in TRANSITIONS if status == current]


@dataclass
class TransitionResult:
    """상태 전이 결과"""
    task: Task
    previous: TaskStatus
    event: TransitionEvent
    changed: bool = True
    unblocked: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": self.task.model_dump(mode="json"),
            "previous": self.previous.value,
            "event": self.event.value,
            "changed": self.changed,
            "unblocked": self.unblocked,
        }


class TaskStateMachine:
    """
    Task 상태 전이 실행기

    하나의 DependencyGraph(=workspace)에 묶여 있으며, 그래프의 락을 공유합니다.

    Example:
        machine = TaskStateMachine(graph)
        await machine.start(task_id)
        result = await machine.finish(task_id, notes="done")
        print(result.unblocked)
    """

    def __init__(self, graph: "DependencyGraph", notifier: Optional[Notifier] = None):
        self.graph = graph
        self.store = graph.store
        self.notifier = notifier or graph.notifier or Notifier()

    def _require_node(self, task_id: str) -> "TaskNode":
        node = self.graph.get_node(task_id)
        if node is None:
            raise TaskNotFoundError(task_id)
        return node

    async def _require_record(self, task_id: str) -> Task:
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    # =========================================================================
    # Transitions
    # =========================================================================

    async def start(self, task_id: str) -> TransitionResult:
        """todo → in_progress. Agent당 동시에 하나의 in_progress Task만 허용"""
        async with self.graph.lock:
            node = self._require_node(task_id)
            previous = node.status
            target = next_status(previous, TransitionEvent.START, task_id)

            unmet = self.graph.unmet_blockers(task_id)
            if unmet:
                raise InvalidTransitionError(
                    task_id, previous.value, TransitionEvent.START.value,
                    reason=f"{len(unmet)} prerequisite task(s) not satisfied",
                )
            if node.is_dependency:
                raise InvalidTransitionError(
                    task_id, previous.value, TransitionEvent.START.value,
                    reason="task requires human input",
                )
            busy = [
                n for n in self.graph.nodes_for_agent(node.agent_id)
                if n.status == TaskStatus.IN_PROGRESS
            ]
            if busy:
                raise InvalidTransitionError(
                    task_id, previous.value, TransitionEvent.START.value,
                    reason=f"agent already working on task {busy[0].id}",
                )

            record = await self._require_record(task_id)
            metadata = dict(record.metadata)
            metadata["startedAt"] = datetime.now().isoformat()
            task = await self.graph.write_task(task_id, status=target, metadata=metadata)
            # start-to-start dependents open as soon as this task starts
            changes = await self.graph.refresh_dependents(task_id)

        await self._announce(task, previous, f'Started working on "{task.title}"')
        return TransitionResult(
            task=task,
            previous=previous,
            event=TransitionEvent.START,
            unblocked=[c.task_id for c in changes if c.became_ready],
        )

    async def block(
        self,
        task_id: str,
        reason: str,
        requires_human: bool = False,
    ) -> TransitionResult:
        """
        todo → blocked

        requires_human=False면 실제로 미충족 선행 Task가 있어야 합니다.
        requires_human=True면 Task가 사람 게이트가 되고, Agent가 진행 중인 작업이
        없을 경우 Agent도 blocked가 됩니다.
        """
        if not reason or not reason.strip():
            raise ValidationError("blockedReason is required when blocking a task", field="blockedReason")

        async with self.graph.lock:
            node = self._require_node(task_id)
            previous = node.status
            target = next_status(previous, TransitionEvent.BLOCK, task_id)

            if not requires_human and not self.graph.unmet_blockers(task_id):
                raise InvalidTransitionError(
                    task_id, previous.value, TransitionEvent.BLOCK.value,
                    reason="no unmet prerequisite",
                )

            task = await self.graph.write_task(
                task_id,
                status=target,
                blockedReason=reason,
                isDependency=requires_human or node.is_dependency,
            )

        await self._announce(task, previous, f'"{task.title}" is blocked: {reason}')
        if requires_human:
            await self.gate_on_human(task)
        return TransitionResult(task=task, previous=previous, event=TransitionEvent.BLOCK)

    async def gate_on_human(self, task: Task) -> None:
        """
        사람 게이트 Task의 부수 효과

        HUMAN_INPUT_REQUIRED 알림을 보내고, Agent에 진행 중이거나 바로 시작할 수 있는
        Task가 없으면 Agent 상태를 blocked로 바꿉니다 (paused/completed는 유지).
        """
        await self.notifier.emit(
            task.agentId,
            EventKind.HUMAN_INPUT_REQUIRED,
            task.blockedReason or f'"{task.title}" needs your input',
            task_id=task.id,
            title=task.title,
        )

        async with self.graph.lock:
            working = any(
                n.status == TaskStatus.IN_PROGRESS
                for n in self.graph.nodes_for_agent(task.agentId)
            ) or bool(self.graph.ready_tasks(task.agentId))
            if working:
                return
            agent = await self.store.get_agent(task.agentId)
            if agent is None or agent.status != AgentStatus.ACTIVE:
                return
            await self.store.update_agent(agent.id, status=AgentStatus.BLOCKED)

        logger.info(f"Agent {agent.id} blocked waiting on human input for {task.id}")
        await self.notifier.emit(
            agent.id,
            EventKind.AGENT_STATUS_CHANGED,
            "Waiting for your input",
            previous=AgentStatus.ACTIVE.value,
            status=AgentStatus.BLOCKED.value,
        )

    async def finish(
        self,
        task_id: str,
        notes: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> TransitionResult:
        """in_progress → done, 그리고 후속 Task 준비 상태 재계산"""
        async with self.graph.lock:
            node = self._require_node(task_id)
            previous = node.status
            target = next_status(previous, TransitionEvent.FINISH, task_id)

            unmet = self.graph.unmet_blockers(task_id, for_finish=True)
            if unmet:
                raise InvalidTransitionError(
                    task_id, previous.value, TransitionEvent.FINISH.value,
                    reason=f"{len(unmet)} prerequisite task(s) must finish first",
                )

            record = await self._require_record(task_id)
            now = datetime.now()
            metadata = dict(record.metadata)
            metadata["completedBy"] = "agent"
            if notes:
                metadata["completionNotes"] = notes
            if summary:
                metadata["workSummary"] = summary

            task = await self.graph.write_task(
                task_id,
                status=target,
                blockedReason=None,
                completedAt=now,
                metadata=metadata,
            )
            changes = await self.graph.refresh_dependents(task_id)

        await self._announce(task, previous, f'Completed "{task.title}"')
        return TransitionResult(
            task=task,
            previous=previous,
            event=TransitionEvent.FINISH,
            unblocked=[c.task_id for c in changes if c.became_ready],
        )

    async def cancel(self, task_id: str, error: Optional[str] = None) -> TransitionResult:
        """
        in_progress → todo

        시도 횟수(attempts)와 마지막 에러(lastError)를 metadata에 기록합니다.
        진행 중에 새 선행 Task가 생겼다면 곧바로 blocked로 재계산됩니다.
        """
        async with self.graph.lock:
            node = self._require_node(task_id)
            previous = node.status
            target = next_status(previous, TransitionEvent.CANCEL, task_id)

            record = await self._require_record(task_id)
            metadata = dict(record.metadata)
            metadata["attempts"] = int(metadata.get("attempts", 0)) + 1
            if error:
                metadata["lastError"] = error

            task = await self.graph.write_task(task_id, status=target, metadata=metadata)
            change = await self.graph.refresh_readiness(task_id)
            if change:
                task = await self._require_record(task_id)

        await self._announce(task, previous, f'Stopped working on "{task.title}"')
        return TransitionResult(task=task, previous=previous, event=TransitionEvent.CANCEL)

    async def resolve(self, task_id: str, notes: Optional[str] = None) -> TransitionResult:
        """
        사람 게이트 해결: blocked → done

        이미 done이면 아무것도 하지 않습니다 (changed=False, 알림 없음).
        """
        async with self.graph.lock:
            node = self._require_node(task_id)
            previous = node.status

            if previous == TaskStatus.DONE:
                task = await self._require_record(task_id)
                return TransitionResult(
                    task=task, previous=previous, event=TransitionEvent.RESOLVE, changed=False
                )

            if not node.is_dependency:
                raise InvalidTransitionError(
                    task_id, previous.value, TransitionEvent.RESOLVE.value,
                    reason="task is not waiting on human input",
                )
            target = next_status(previous, TransitionEvent.RESOLVE, task_id)

            unmet = self.graph.unmet_blockers(task_id, for_finish=True)
            if unmet:
                raise InvalidTransitionError(
                    task_id, previous.value, TransitionEvent.RESOLVE.value,
                    reason=f"{len(unmet)} prerequisite task(s) must finish first",
                )

            record = await self._require_record(task_id)
            now = datetime.now()
            metadata = dict(record.metadata)
            metadata["completedBy"] = "human"
            metadata["resolvedAt"] = now.isoformat()
            if notes:
                metadata["completionNotes"] = notes

            task = await self.graph.write_task(
                task_id,
                status=target,
                blockedReason=None,
                completedAt=now,
                metadata=metadata,
            )
            changes = await self.graph.refresh_dependents(task_id)

        await self._announce(task, previous, f'"{task.title}" was resolved')
        await self.notifier.emit(
            task.agentId,
            EventKind.DEPENDENCY_RESOLVED,
            notes or f'"{task.title}" was resolved',
            task_id=task_id,
        )
        return TransitionResult(
            task=task,
            previous=previous,
            event=TransitionEvent.RESOLVE,
            unblocked=[c.task_id for c in changes if c.became_ready],
        )

    async def set_metadata(self, task_id: str, **metadata: Any) -> Task:
        """
        metadata 키 설정/덮어쓰기 (done이 아닌 Task만)

        값이 None인 키는 제거합니다.
        """
        async with self.graph.lock:
            node = self._require_node(task_id)
            if node.status == TaskStatus.DONE:
                raise InvalidTransitionError(
                    task_id, node.status.value, "set_metadata",
                    reason="done tasks only accept new metadata keys",
                )
            record = await self._require_record(task_id)
            merged = dict(record.metadata)
            for key, value in metadata.items():
                if value is None:
                    merged.pop(key, None)
                else:
                    merged[key] = value
            return await self.graph.write_task(task_id, metadata=merged)

    async def annotate(self, task_id: str, **metadata: Any) -> Task:
        """
        metadata 추가 (append-only)

        이미 있는 키는 덮어쓰지 않습니다. done Task에도 사용할 수 있습니다.
        """
        async with self.graph.lock:
            self._require_node(task_id)
            record = await self._require_record(task_id)
            additions = {k: v for k, v in metadata.items() if k not in record.metadata}
            if not additions:
                return record
            merged = {**record.metadata, **additions}
            return await self.graph.write_task(task_id, metadata=merged)

    async def _announce(self, task: Task, previous: TaskStatus, message: str) -> None:
        await self.notifier.emit(
            task.agentId,
            EventKind.TASK_STATUS_CHANGED,
            message,
            task_id=task.id,
            previous=previous.value,
            status=task.status.value,
        )
