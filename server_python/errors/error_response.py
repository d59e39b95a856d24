"""
ErrorResponse - 표준 에러 응답 형식

HTTP API 응답에서 사용하는 표준화된 에러 응답 클래스입니다.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from uuid import uuid4

from .exceptions import (
    OrchestratorError,
    TaskNotFoundError,
    AgentNotFoundError,
    StructuralViolationError,
    StoreUnavailableError,
    InvalidTransitionError,
    ValidationError,
)


class ErrorType(str, Enum):
    """에러 유형"""
    STRUCTURAL = "structural"
    STORE = "store"
    TRANSITION = "transition"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    """에러 심각도"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_HTTP_STATUS = {
    ErrorType.STRUCTURAL: 409,
    ErrorType.STORE: 503,
    ErrorType.TRANSITION: 409,
    ErrorType.VALIDATION: 422,
    ErrorType.NOT_FOUND: 404,
    ErrorType.SYSTEM: 500,
}


def _classify(exception: Exception) -> ErrorType:
    if isinstance(exception, (TaskNotFoundError, AgentNotFoundError)):
        return ErrorType.NOT_FOUND
    if isinstance(exception, StructuralViolationError):
        return ErrorType.STRUCTURAL
    if isinstance(exception, StoreUnavailableError):
        return ErrorType.STORE
    if isinstance(exception, InvalidTransitionError):
        return ErrorType.TRANSITION
    if isinstance(exception, ValidationError):
        return ErrorType.VALIDATION
    return ErrorType.SYSTEM


@dataclass
class ErrorResponse:
    """표준 에러 응답"""
    error_code: str
    message: str
    error_type: ErrorType = ErrorType.SYSTEM
    severity: ErrorSeverity = ErrorSeverity.ERROR
    details: Optional[Dict[str, Any]] = None
    trace_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.error_type]

    @property
    def retryable(self) -> bool:
        """재시도로 해결될 수 있는 에러인지 여부"""
        return self.error_type == ErrorType.STORE

    def to_dict(self) -> dict:
        """딕셔너리로 변환"""
        return {
            "success": False,
            "error": {
                "code": self.error_code,
                "type": self.error_type.value,
                "severity": self.severity.value,
                "message": self.message,
                "details": self.details,
                "retryable": self.retryable,
                "traceId": self.trace_id,
                "timestamp": self.timestamp.isoformat()
            }
        }

    @classmethod
    def from_exception(cls, exception: Exception, trace_id: Optional[str] = None):
        """예외로부터 ErrorResponse 생성"""
        error_type = _classify(exception)

        if isinstance(exception, OrchestratorError):
            severity = (
                ErrorSeverity.ERROR
                if error_type in (ErrorType.STORE, ErrorType.SYSTEM)
                else ErrorSeverity.WARNING
            )
            return cls(
                error_code=exception.code,
                message=exception.message,
                error_type=error_type,
                severity=severity,
                details=exception.details,
                trace_id=trace_id or str(uuid4())
            )

        # 일반 예외
        return cls(
            error_code="INTERNAL_ERROR",
            message=str(exception),
            error_type=ErrorType.SYSTEM,
            severity=ErrorSeverity.ERROR,
            trace_id=trace_id or str(uuid4())
        )

    @classmethod
    def internal_error(cls, message: str = "Internal server error"):
        """내부 서버 에러 생성"""
        return cls(
            error_code="INTERNAL_ERROR",
            message=message,
            error_type=ErrorType.SYSTEM,
            severity=ErrorSeverity.ERROR
        )
