"""
Errors - 에러 처리 모듈

표준화된 에러 처리 및 응답 형식을 제공합니다.
"""

from .exceptions import (
    OrchestratorError,
    TaskNotFoundError,
    AgentNotFoundError,
    StructuralViolationError,
    StoreUnavailableError,
    InvalidTransitionError,
    DecompositionError,
    ValidationError,
    LLMError,
)

from .error_response import ErrorResponse, ErrorType, ErrorSeverity

from .decorators import async_handle_errors

__all__ = [
    # Exceptions
    "OrchestratorError",
    "TaskNotFoundError",
    "AgentNotFoundError",
    "StructuralViolationError",
    "StoreUnavailableError",
    "InvalidTransitionError",
    "DecompositionError",
    "ValidationError",
    "LLMError",

    # Response
    "ErrorResponse",
    "ErrorType",
    "ErrorSeverity",

    # Decorators
    "async_handle_errors",
]
