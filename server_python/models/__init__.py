from .task import (
    TaskStatus,
    TaskPriority,
    DependencyKind,
    Task,
    TaskDependency,
    CreateTaskInput,
    AddDependencyInput,
    ResolveTaskInput,
    CancelTaskInput,
)
from .agent import (
    AgentStatus,
    Agent,
    CreateAgentInput,
    AgentState,
)
from .event import EventKind, OrchestrationEvent

__all__ = [
    # Task
    "TaskStatus",
    "TaskPriority",
    "DependencyKind",
    "Task",
    "TaskDependency",
    "CreateTaskInput",
    "AddDependencyInput",
    "ResolveTaskInput",
    "CancelTaskInput",
    # Agent
    "AgentStatus",
    "Agent",
    "CreateAgentInput",
    "AgentState",
    # Event
    "EventKind",
    "OrchestrationEvent",
]
