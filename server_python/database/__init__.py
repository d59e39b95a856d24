"""
Database module for the task orchestration service.
Provides async SQLAlchemy connection, ORM models, repositories and the SQL task store.
"""

from .connection import Database, DEFAULT_DATABASE_URL
from .models import Base, TaskModel, AgentModel, TaskDependencyModel, AuditLogModel
from .sql_store import SqlTaskStore, AuditNotificationSink

__all__ = [
    "Database",
    "DEFAULT_DATABASE_URL",
    "Base",
    "TaskModel",
    "AgentModel",
    "TaskDependencyModel",
    "AuditLogModel",
    "SqlTaskStore",
    "AuditNotificationSink",
]
