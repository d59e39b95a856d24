from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any, List
from uuid import uuid4
from pydantic import BaseModel, Field

from .task import Task


class AgentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    BLOCKED = "blocked"
    COMPLETED = "completed"


class Agent(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    workspaceId: str
    name: str
    goal: str

    # 상태 정보
    status: AgentStatus = AgentStatus.ACTIVE

    # 메타데이터
    metadata: Dict[str, Any] = Field(default_factory=dict)
    createdAt: datetime = Field(default_factory=datetime.now)
    updatedAt: datetime = Field(default_factory=datetime.now)


class CreateAgentInput(BaseModel):
    goal: str
    name: Optional[str] = None


class AgentState(BaseModel):
    """Agent와 Task 목록의 스냅샷"""
    agent: Agent
    tasks: List[Task] = Field(default_factory=list)
