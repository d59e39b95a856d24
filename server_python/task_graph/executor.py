"""
Work executors: the pluggable unit of "autonomous work" the orchestrator awaits.

The orchestrator owns the task lifecycle; an executor only does the work and
reports an ExecutionResult. Progress is reported through a callback.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from models import Task

logger = logging.getLogger(__name__)


ProgressCallback = Callable[[str], Awaitable[None]]


@dataclass
class ExecutionResult:
    """Result of task execution."""
    success: bool
    output: Any = None
    error: Optional[str] = None
    execution_time_ms: float = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "execution_time_ms": self.execution_time_ms,
            "metadata": self.metadata,
        }


class WorkExecutor(ABC):
    """Performs the work of one autonomous task."""

    @abstractmethod
    async def execute(self, task: Task, report_progress: ProgressCallback) -> ExecutionResult:
        pass

    async def run(self, task: Task, report_progress: ProgressCallback) -> ExecutionResult:
        """
        Execute and time the work. Exceptions become failed results.
        """
        start_time = time.time()
        try:
            result = await self.execute(task, report_progress)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Work on task {task.id} raised: {e}")
            result = ExecutionResult(success=False, error=str(e) or type(e).__name__)

        result.execution_time_ms = (time.time() - start_time) * 1000
        return result


DEFAULT_WORK_STEPS = [
    "Gathering relevant information...",
    "Analyzing data and patterns...",
    "Developing approach...",
    "Implementing solution...",
    "Reviewing results...",
]


class SimulatedWorkExecutor(WorkExecutor):
    """
    Staged simulated work: one progress message per step, with a delay before
    each step.
    """

    def __init__(self, step_delay_seconds: float = 1.0, steps: Optional[List[str]] = None):
        self.step_delay_seconds = step_delay_seconds
        self.steps = list(steps) if steps is not None else list(DEFAULT_WORK_STEPS)

    async def execute(self, task: Task, report_progress: ProgressCallback) -> ExecutionResult:
        for step in self.steps:
            if self.step_delay_seconds > 0:
                await asyncio.sleep(self.step_delay_seconds)
            await report_progress(step)

        return ExecutionResult(
            success=True,
            output=f'Completed "{task.title}" in {len(self.steps)} steps',
            metadata={"steps": len(self.steps)},
        )


WorkFunc = Callable[[Task, ProgressCallback], Awaitable[Any]]


class CallableWorkExecutor(WorkExecutor):
    """
    Wraps a coroutine function.

    The function may return an ExecutionResult, or any other value which is
    treated as successful output.
    """

    def __init__(self, func: WorkFunc):
        self.func = func

    async def execute(self, task: Task, report_progress: ProgressCallback) -> ExecutionResult:
        output = await self.func(task, report_progress)
        if isinstance(output, ExecutionResult):
            return output
        return ExecutionResult(success=True, output=output)
