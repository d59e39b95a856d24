from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any
from uuid import uuid4
from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """정렬용 순위 (낮을수록 긴급)"""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.URGENT: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.MEDIUM: 3,
    TaskPriority.LOW: 4,
}


class DependencyKind(str, Enum):
    FINISH_TO_START = "finish_to_start"
    START_TO_START = "start_to_start"
    FINISH_TO_FINISH = "finish_to_finish"
    START_TO_FINISH = "start_to_finish"


class Task(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    agentId: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    dueDate: Optional[datetime] = None

    # 사람의 입력/승인이 필요한 Task
    isDependency: bool = False
    blockedReason: Optional[str] = None

    # 단일 상위 Task (다른 Agent의 Task일 수도 있음)
    dependsOnTaskId: Optional[str] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)
    createdAt: datetime = Field(default_factory=datetime.now)
    updatedAt: datetime = Field(default_factory=datetime.now)
    completedAt: Optional[datetime] = None

    @property
    def awaiting_human(self) -> bool:
        return self.isDependency and self.status == TaskStatus.BLOCKED


class TaskDependency(BaseModel):
    """명시적 의존성 레코드 (source가 끝나야 target 진행)"""
    id: str = Field(default_factory=lambda: str(uuid4()))
    sourceTaskId: str
    targetTaskId: str
    kind: DependencyKind = DependencyKind.FINISH_TO_START
    createdAt: datetime = Field(default_factory=datetime.now)


class CreateTaskInput(BaseModel):
    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    dueDate: Optional[datetime] = None
    isDependency: bool = False
    blockedReason: Optional[str] = None
    dependsOnTaskId: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AddDependencyInput(BaseModel):
    sourceTaskId: str
    targetTaskId: str
    kind: DependencyKind = DependencyKind.FINISH_TO_START


class ResolveTaskInput(BaseModel):
    completionNotes: Optional[str] = None


class CancelTaskInput(BaseModel):
    reason: Optional[str] = None
