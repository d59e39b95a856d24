from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


class EventKind(str, Enum):
    AGENT_STARTED = "agent_started"
    AGENT_STATUS_CHANGED = "agent_status_changed"
    THINKING = "thinking"
    TASK_CREATED = "task_created"
    TASK_STATUS_CHANGED = "task_status_changed"
    TASK_PROGRESS = "task_progress"
    TASK_READY = "task_ready"
    TASK_FAILED = "task_failed"
    TASK_DELETED = "task_deleted"
    HUMAN_INPUT_REQUIRED = "human_input_required"
    DEPENDENCY_RESOLVED = "dependency_resolved"
    DEPENDENCY_ADDED = "dependency_added"
    DECOMPOSITION_FALLBACK = "decomposition_fallback"


class OrchestrationEvent(BaseModel):
    agentId: str
    kind: EventKind
    message: str
    taskId: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)
