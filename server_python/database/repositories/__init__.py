"""
Repository pattern implementations for database access.
"""

from .base import BaseRepository
from .task_repository import TaskRepository
from .agent_repository import AgentRepository
from .dependency_repository import DependencyRepository
from .audit_repository import AuditRepository

__all__ = [
    "BaseRepository",
    "TaskRepository",
    "AgentRepository",
    "DependencyRepository",
    "AuditRepository",
]
