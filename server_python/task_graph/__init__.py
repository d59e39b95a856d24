"""
Task graph: dependency engine, lifecycle state machine, goal decomposition and
work execution.
"""

from .lifecycle import (
    TransitionEvent,
    TRANSITIONS,
    next_status,
    allowed_events,
    TransitionResult,
    TaskStateMachine,
)
from .dag import (
    TaskNode,
    DependencyEdge,
    DependencyGraph,
    EdgeCheck,
    GraphErrorKind,
    GraphMetrics,
    GraphResult,
    ReadinessChange,
)
from .executor import (
    ExecutionResult,
    WorkExecutor,
    SimulatedWorkExecutor,
    CallableWorkExecutor,
    DEFAULT_WORK_STEPS,
)
from .decomposer import (
    CandidateTask,
    DecompositionResult,
    DecompositionProvider,
    KeywordRule,
    KeywordDecompositionPolicy,
    LLMDecompositionProvider,
    TaskDecomposer,
    minimal_task_set,
)

__all__ = [
    "TransitionEvent",
    "TRANSITIONS",
    "next_status",
    "allowed_events",
    "TransitionResult",
    "TaskStateMachine",
    "TaskNode",
    "DependencyEdge",
    "DependencyGraph",
    "EdgeCheck",
    "GraphErrorKind",
    "GraphMetrics",
    "GraphResult",
    "ReadinessChange",
    "ExecutionResult",
    "WorkExecutor",
    "SimulatedWorkExecutor",
    "CallableWorkExecutor",
    "DEFAULT_WORK_STEPS",
    "CandidateTask",
    "DecompositionResult",
    "DecompositionProvider",
    "KeywordRule",
    "KeywordDecompositionPolicy",
    "LLMDecompositionProvider",
    "TaskDecomposer",
    "minimal_task_set",
]
