"""
Dependency graph engine for agent tasks.

Tasks are nodes; a dependency is a directed edge ``source -> target`` meaning
the target waits on the source. One ``DependencyGraph`` owns the in-memory
model of a single scope (workspace) and serializes every structural mutation
through ``self.lock`` so two cycle checks can never both pass against a stale
edge set. Reads (critical path, metrics, export) never await and therefore
always observe a consistent snapshot.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from errors import StoreUnavailableError, StructuralViolationError
from models import (
    DependencyKind,
    EventKind,
    Task,
    TaskDependency,
    TaskPriority,
    TaskStatus,
)
from services.notification_sink import Notifier
from services.task_store import TaskStore

from .lifecycle import TransitionEvent, next_status

logger = logging.getLogger(__name__)


# Edge kinds that gate the target's start / finish, and what the source must
# have reached for the gate to open.
_STARTED = (TaskStatus.IN_PROGRESS, TaskStatus.DONE)
_DONE = (TaskStatus.DONE,)

START_GATES = {
    DependencyKind.FINISH_TO_START: _DONE,
    DependencyKind.START_TO_START: _STARTED,
}

FINISH_GATES = {
    DependencyKind.FINISH_TO_START: _DONE,
    DependencyKind.FINISH_TO_FINISH: _DONE,
    DependencyKind.START_TO_START: _STARTED,
    DependencyKind.START_TO_FINISH: _STARTED,
}


@dataclass
class TaskNode:
    """
    A node in the dependency graph.

    Mirrors the scheduling-relevant fields of a stored Task.
    """
    id: str
    agent_id: str
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None
    is_dependency: bool = False
    blocked_reason: Optional[str] = None
    title: str = ""
    needs_attention: bool = False  # parked after repeated work failures

    @classmethod
    def from_task(cls, task: Task) -> "TaskNode":
        return cls(
            id=task.id,
            agent_id=task.agentId,
            status=task.status,
            priority=task.priority,
            due_date=task.dueDate,
            is_dependency=task.isDependency,
            blocked_reason=task.blockedReason,
            title=task.title,
            needs_attention=bool(task.metadata.get("needsAttention", False)),
        )

    @property
    def awaiting_human(self) -> bool:
        return self.is_dependency and self.status == TaskStatus.BLOCKED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "agentId": self.agent_id,
            "title": self.title,
            "status": self.status.value,
            "priority": self.priority.value,
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "isDependency": self.is_dependency,
            "blockedReason": self.blocked_reason,
            "needsAttention": self.needs_attention,
        }


@dataclass(frozen=True)
class DependencyEdge:
    """Directed dependency: target waits on source."""
    source_id: str
    target_id: str
    kind: DependencyKind = DependencyKind.FINISH_TO_START

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "targetId": self.target_id,
            "kind": self.kind.value,
        }


class GraphErrorKind(str, Enum):
    """Why a graph operation was rejected."""
    STRUCTURAL = "structural"  # invalid request, do not retry unchanged
    STORE = "store"  # store unavailable, retry with backoff


@dataclass
class GraphResult:
    """Outcome of a graph operation. Graph operations never raise for rejections."""
    success: bool
    error: Optional[str] = None
    error_kind: Optional[GraphErrorKind] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> "GraphResult":
        return cls(success=True, data=data)

    @classmethod
    def structural(cls, reason: str, **data: Any) -> "GraphResult":
        return cls(success=False, error=reason, error_kind=GraphErrorKind.STRUCTURAL, data=data)

    @classmethod
    def store_failure(cls, reason: str, **data: Any) -> "GraphResult":
        return cls(success=False, error=reason, error_kind=GraphErrorKind.STORE, data=data)

    @property
    def retryable(self) -> bool:
        return self.error_kind == GraphErrorKind.STORE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "errorKind": self.error_kind.value if self.error_kind else None,
        }


@dataclass
class EdgeCheck:
    """Result of an edge admission check."""
    allowed: bool
    reason: Optional[str] = None


@dataclass
class ReadinessChange:
    """A derived status change produced by readiness recomputation."""
    task_id: str
    previous: TaskStatus
    current: TaskStatus

    @property
    def became_ready(self) -> bool:
        return self.current == TaskStatus.TODO


@dataclass
class GraphMetrics:
    total_nodes: int
    total_edges: int
    critical_path_length: int
    blocked_count: int
    ready_count: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalNodes": self.total_nodes,
            "totalEdges": self.total_edges,
            "criticalPathLength": self.critical_path_length,
            "blockedCount": self.blocked_count,
            "readyCount": self.ready_count,
        }


class DependencyGraph:
    """
    In-memory dependency graph for one scope.

    Example:
        graph = DependencyGraph("workspace-1", store)
        await graph.load()

        check = graph.can_add_edge(research_id, review_id)
        if check.allowed:
            result = await graph.add_edge(research_id, review_id)

        path = graph.critical_path()
    """

    def __init__(
        self,
        scope: str,
        store: TaskStore,
        notifier: Optional[Notifier] = None,
    ):
        self.scope = scope
        self.store = store
        self.notifier = notifier
        self.lock = asyncio.Lock()
        self.loaded = False

        self._nodes: Dict[str, TaskNode] = {}
        # source -> {target: kind}
        self._outgoing: Dict[str, Dict[str, DependencyKind]] = {}
        # target -> {source: kind}
        self._incoming: Dict[str, Dict[str, DependencyKind]] = {}

    # =========================================================================
    # Loading
    # =========================================================================

    async def load(self) -> GraphResult:
        """
        Rebuild nodes and edges for this scope from the store.

        Edges are derived from each task's ``dependsOnTaskId`` (finish-to-start)
        and the explicit dependency records. On store failure the previous
        in-memory state is kept.
        """
        async with self.lock:
            try:
                tasks, dependencies = await asyncio.gather(
                    self.store.list_tasks_by_scope(self.scope),
                    self.store.list_edges_by_scope(self.scope),
                )
            except StoreUnavailableError as e:
                logger.error(f"Failed to load graph for scope {self.scope}: {e.message}")
                return GraphResult.store_failure("Failed to load graph data from store")

            nodes = {task.id: TaskNode.from_task(task) for task in tasks}
            outgoing: Dict[str, Dict[str, DependencyKind]] = {}
            incoming: Dict[str, Dict[str, DependencyKind]] = {}

            def link(source: str, target: str, kind: DependencyKind) -> None:
                if source not in nodes or target not in nodes:
                    logger.warning(
                        f"Skipping edge {source} -> {target}: endpoint outside scope {self.scope}"
                    )
                    return
                if target in outgoing.get(source, {}):
                    return
                outgoing.setdefault(source, {})[target] = kind
                incoming.setdefault(target, {})[source] = kind

            for task in tasks:
                if task.dependsOnTaskId:
                    link(task.dependsOnTaskId, task.id, DependencyKind.FINISH_TO_START)
            for dependency in dependencies:
                link(dependency.sourceTaskId, dependency.targetTaskId, dependency.kind)

            self._nodes = nodes
            self._outgoing = outgoing
            self._incoming = incoming
            self.loaded = True

            if not self.is_acyclic():
                logger.error(f"Stored dependencies for scope {self.scope} contain a cycle")

            logger.info(
                f"Loaded graph '{self.scope}': {len(self._nodes)} nodes, {self.edge_count} edges"
            )
            return GraphResult.ok(nodes=len(self._nodes), edges=self.edge_count)

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def edge_count(self) -> int:
        return sum(len(targets) for targets in self._outgoing.values())

    @property
    def edges(self) -> List[DependencyEdge]:
        return [
            DependencyEdge(source, target, kind)
            for source, targets in self._outgoing.items()
            for target, kind in targets.items()
        ]

    def get_node(self, task_id: str) -> Optional[TaskNode]:
        return self._nodes.get(task_id)

    def get_all_nodes(self) -> List[TaskNode]:
        return list(self._nodes.values())

    def nodes_for_agent(self, agent_id: str) -> List[TaskNode]:
        return [node for node in self._nodes.values() if node.agent_id == agent_id]

    def get_blockers(self, task_id: str) -> List[str]:
        """IDs of tasks with an edge into this task."""
        return list(self._incoming.get(task_id, {}))

    def get_dependents(self, task_id: str) -> List[str]:
        """IDs of tasks with an edge from this task."""
        return list(self._outgoing.get(task_id, {}))

    def has_edge(self, source_id: str, target_id: str) -> bool:
        return target_id in self._outgoing.get(source_id, {})

    def unmet_blockers(self, task_id: str, for_finish: bool = False) -> List[str]:
        """
        Blockers whose edge condition is not yet satisfied.

        Start gates: finish-to-start needs the source done, start-to-start
        needs it started. Finish gates additionally cover finish-to-finish
        (source done) and start-to-finish (source started).
        """
        gates = FINISH_GATES if for_finish else START_GATES
        unmet = []
        for source_id, kind in self._incoming.get(task_id, {}).items():
            required = gates.get(kind)
            if required is None:
                continue
            source = self._nodes.get(source_id)
            if source is None or source.status not in required:
                unmet.append(source_id)
        return unmet

    def is_ready(self, task_id: str) -> bool:
        """True for a todo task with every start gate open."""
        node = self._nodes.get(task_id)
        if node is None or node.status != TaskStatus.TODO:
            return False
        return not self.unmet_blockers(task_id)

    def ready_tasks(self, agent_id: Optional[str] = None) -> List[TaskNode]:
        """Ready autonomous tasks, most urgent first (stable on creation order)."""
        candidates = [
            node for node in self._nodes.values()
            if (agent_id is None or node.agent_id == agent_id)
            and not node.is_dependency
            and not node.needs_attention
            and self.is_ready(node.id)
        ]
        return sorted(candidates, key=lambda node: node.priority.rank)

    def can_add_edge(self, source_id: str, target_id: str) -> EdgeCheck:
        """
        Check whether ``source -> target`` may be admitted.

        Rejects unknown nodes, self-dependencies, duplicates and any edge that
        would close a cycle (source reachable from target).
        """
        if source_id not in self._nodes or target_id not in self._nodes:
            return EdgeCheck(False, "One or both tasks do not exist in the graph")

        if source_id == target_id:
            return EdgeCheck(False, "A task cannot depend on itself")

        if self.has_edge(source_id, target_id):
            return EdgeCheck(False, "Dependency already exists")

        if self._reachable(target_id, source_id):
            return EdgeCheck(False, "Would create a circular dependency")

        return EdgeCheck(True)

    def _reachable(self, start: str, goal: str) -> bool:
        """Iterative DFS along outgoing edges."""
        stack = [start]
        visited: Set[str] = set()
        while stack:
            current = stack.pop()
            if current == goal:
                return True
            if current in visited:
                continue
            visited.add(current)
            stack.extend(self._outgoing.get(current, {}))
        return False

    def topological_order(self) -> List[str]:
        """
        Task IDs in dependency order (Kahn's algorithm).

        Raises:
            StructuralViolationError: If the graph contains a cycle
        """
        in_degree = {task_id: len(self._incoming.get(task_id, {})) for task_id in self._nodes}
        queue = [task_id for task_id, degree in in_degree.items() if degree == 0]
        result = []

        while queue:
            task_id = queue.pop(0)
            result.append(task_id)
            for target in self._outgoing.get(task_id, {}):
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    queue.append(target)

        if len(result) != len(self._nodes):
            raise StructuralViolationError("Graph contains a cycle")

        return result

    def is_acyclic(self) -> bool:
        try:
            self.topological_order()
        except StructuralViolationError:
            return False
        return True

    def critical_path(self) -> List[str]:
        """
        Longest dependency chain, starting from a node with no incoming edges.

        The traversal never revisits a node already on the current path, so
        it terminates even on corrupted (cyclic) input. Ties go to the first
        start node in iteration order.
        """
        start_nodes = [task_id for task_id in self._nodes if not self._incoming.get(task_id)]
        memo: Dict[str, List[str]] = {}

        longest: List[str] = []
        for start in start_nodes:
            path = self._longest_path_from(start, set(), memo)
            if len(path) > len(longest):
                longest = path
        return longest

    def _longest_path_from(
        self,
        task_id: str,
        on_path: Set[str],
        memo: Dict[str, List[str]],
    ) -> List[str]:
        if task_id in on_path:
            return []
        if task_id in memo:
            return memo[task_id]

        on_path.add(task_id)
        longest_sub: List[str] = []
        for target in self._outgoing.get(task_id, {}):
            sub = self._longest_path_from(target, on_path, memo)
            if len(sub) > len(longest_sub):
                longest_sub = sub
        on_path.discard(task_id)

        path = [task_id] + longest_sub
        memo[task_id] = path
        return path

    def metrics(self) -> GraphMetrics:
        blocked = sum(1 for node in self._nodes.values() if node.status == TaskStatus.BLOCKED)
        ready = sum(1 for node in self._nodes.values() if self.is_ready(node.id))
        return GraphMetrics(
            total_nodes=len(self._nodes),
            total_edges=self.edge_count,
            critical_path_length=len(self.critical_path()),
            blocked_count=blocked,
            ready_count=ready,
        )

    def export_graph(self) -> Dict[str, Any]:
        return {
            "scope": self.scope,
            "nodes": [node.to_dict() for node in self._nodes.values()],
            "edges": [edge.to_dict() for edge in self.edges],
        }

    def to_dot(self) -> str:
        """
        Generate DOT format for visualization with Graphviz.
        """
        lines = [f'digraph "{self.scope}" {{']
        lines.append("  rankdir=TB;")
        lines.append("  node [shape=box];")

        for node in self._nodes.values():
            color = {
                TaskStatus.TODO: "lightgray",
                TaskStatus.IN_PROGRESS: "lightblue",
                TaskStatus.BLOCKED: "orange" if node.is_dependency else "yellow",
                TaskStatus.DONE: "lightgreen",
            }[node.status]
            label = f"{node.title or node.id}\\n({node.status.value})"
            lines.append(f'  "{node.id}" [label="{label}", fillcolor="{color}", style=filled];')

        for edge in self.edges:
            style = "" if edge.kind == DependencyKind.FINISH_TO_START else f' [label="{edge.kind.value}"]'
            lines.append(f'  "{edge.source_id}" -> "{edge.target_id}"{style};')

        lines.append("}")
        return "\n".join(lines)

    # =========================================================================
    # Locked mutations (public)
    # =========================================================================

    async def register_task(self, task: Task) -> GraphResult:
        """
        Persist a new task and register it as a node.

        A ``dependsOnTaskId`` must name a task already in this graph. The new
        node's readiness is computed right away, so a task whose prerequisite
        is unfinished is stored as todo and immediately moved to blocked.
        """
        async with self.lock:
            if task.id in self._nodes:
                return GraphResult.structural("Task already exists in the graph")
            upstream = task.dependsOnTaskId
            if upstream and upstream not in self._nodes:
                return GraphResult.structural("Upstream task does not exist in the graph")

            try:
                stored = await self.store.create_task(task)
            except StoreUnavailableError as e:
                return GraphResult.store_failure(e.message)

            self._nodes[stored.id] = TaskNode.from_task(stored)
            if upstream:
                self._link(upstream, stored.id, DependencyKind.FINISH_TO_START)

            try:
                await self.refresh_readiness(stored.id)
                stored = await self.store.get_task(stored.id) or stored
            except StoreUnavailableError as e:
                logger.warning(f"Readiness write failed for new task {stored.id}: {e.message}")
                return GraphResult.ok(task=stored, readiness_error=e.message)

            return GraphResult.ok(task=stored)

    async def add_edge(
        self,
        source_id: str,
        target_id: str,
        kind: DependencyKind = DependencyKind.FINISH_TO_START,
    ) -> GraphResult:
        """Validate, persist, reflect, then recompute the target's readiness."""
        async with self.lock:
            check = self.can_add_edge(source_id, target_id)
            if not check.allowed:
                logger.info(f"Rejected edge {source_id} -> {target_id}: {check.reason}")
                return GraphResult.structural(check.reason)

            try:
                await self.store.create_edge(
                    TaskDependency(sourceTaskId=source_id, targetTaskId=target_id, kind=kind)
                )
            except StoreUnavailableError as e:
                return GraphResult.store_failure(e.message)

            self._link(source_id, target_id, kind)
            edge = DependencyEdge(source_id, target_id, kind)

            try:
                change = await self.refresh_readiness(target_id)
            except StoreUnavailableError as e:
                logger.warning(f"Readiness write failed after edge {source_id} -> {target_id}: {e.message}")
                return GraphResult.ok(edge=edge, change=None, readiness_error=e.message)

            return GraphResult.ok(edge=edge, change=change)

    async def remove_task(self, task_id: str) -> GraphResult:
        """Delete a task that nothing depends on. Never cascades."""
        async with self.lock:
            if task_id not in self._nodes:
                return GraphResult.structural("Task does not exist in the graph")

            dependents = self.get_dependents(task_id)
            if dependents:
                return GraphResult.structural(
                    f"Cannot delete task: {len(dependents)} task(s) depend on it",
                    dependents=dependents,
                )

            try:
                await self.store.delete_task(task_id)
            except StructuralViolationError as e:
                return GraphResult.structural(e.reason)
            except StoreUnavailableError as e:
                return GraphResult.store_failure(e.message)

            for source_id in list(self._incoming.get(task_id, {})):
                self._outgoing.get(source_id, {}).pop(task_id, None)
            self._incoming.pop(task_id, None)
            self._outgoing.pop(task_id, None)
            node = self._nodes.pop(task_id)

            # no dependents, so no downstream readiness changes
            return GraphResult.ok(task_id=task_id, agent_id=node.agent_id)

    async def recompute_readiness(self, task_id: str) -> GraphResult:
        async with self.lock:
            try:
                change = await self.refresh_readiness(task_id)
            except StoreUnavailableError as e:
                return GraphResult.store_failure(e.message)
            return GraphResult.ok(change=change)

    async def recompute_dependents(self, task_id: str) -> GraphResult:
        async with self.lock:
            try:
                changes = await self.refresh_dependents(task_id)
            except StoreUnavailableError as e:
                return GraphResult.store_failure(e.message)
            return GraphResult.ok(
                changes=changes,
                ready=[c.task_id for c in changes if c.became_ready],
            )

    # =========================================================================
    # Unlocked primitives (caller must hold ``self.lock``)
    # =========================================================================

    async def write_task(self, task_id: str, **fields: Any) -> Task:
        """Write through the store, then reflect the stored record in the node."""
        task = await self.store.update_task(task_id, **fields)
        self._nodes[task_id] = TaskNode.from_task(task)
        return task

    async def refresh_readiness(self, task_id: str) -> Optional[ReadinessChange]:
        """
        Derive blocked/todo for one node from its blockers.

        Only todo and blocked nodes are considered, and human-gated blocked
        nodes are left alone. Returns None (and writes nothing) when the
        derived status equals the current one.
        """
        node = self._nodes.get(task_id)
        if node is None or node.status not in (TaskStatus.TODO, TaskStatus.BLOCKED):
            return None
        if node.is_dependency:
            return None

        unmet = self.unmet_blockers(task_id)
        if not unmet and node.status == TaskStatus.BLOCKED:
            event, reason = TransitionEvent.UNBLOCK, None
        elif unmet and node.status == TaskStatus.TODO:
            event, reason = TransitionEvent.BLOCK, f"Waiting on {len(unmet)} prerequisite task(s)"
        else:
            return None

        previous = node.status
        current = next_status(previous, event, task_id)
        await self.write_task(task_id, status=current, blockedReason=reason)
        change = ReadinessChange(task_id, previous, current)

        logger.info(f"Task {task_id} is now {current.value}")
        if self.notifier:
            if change.became_ready:
                await self.notifier.emit(
                    node.agent_id, EventKind.TASK_READY,
                    f'"{node.title}" is ready', task_id=task_id,
                )
            else:
                await self.notifier.emit(
                    node.agent_id, EventKind.TASK_STATUS_CHANGED,
                    f'"{node.title}" is blocked: {reason}', task_id=task_id,
                    previous=previous.value, status=current.value,
                )
        return change

    async def refresh_dependents(self, task_id: str) -> List[ReadinessChange]:
        changes = []
        for target_id in self.get_dependents(task_id):
            change = await self.refresh_readiness(target_id)
            if change:
                changes.append(change)
        return changes

    def _link(self, source_id: str, target_id: str, kind: DependencyKind) -> None:
        self._outgoing.setdefault(source_id, {})[target_id] = kind
        self._incoming.setdefault(target_id, {})[source_id] = kind
