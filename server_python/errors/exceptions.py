"""
Exceptions - 커스텀 예외 클래스

오케스트레이션 코어 전체에서 사용하는 표준화된 예외 클래스입니다.
"""

from typing import Optional, Dict, Any


class OrchestratorError(Exception):
    """오케스트레이터 기본 에러 클래스"""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Args:
            message: 에러 메시지
            code: 에러 코드
            details: 추가 상세 정보
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        """에러를 딕셔너리로 변환"""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


class TaskNotFoundError(OrchestratorError):
    """Task를 찾을 수 없을 때 발생"""

    def __init__(self, task_id: str):
        super().__init__(
            message=f"Task '{task_id}' not found",
            code="TASK_NOT_FOUND",
            details={"task_id": task_id}
        )


class AgentNotFoundError(OrchestratorError):
    """Agent를 찾을 수 없을 때 발생"""

    def __init__(self, agent_id: str):
        super().__init__(
            message=f"Agent '{agent_id}' not found",
            code="AGENT_NOT_FOUND",
            details={"agent_id": agent_id}
        )


class StructuralViolationError(OrchestratorError):
    """
    그래프 구조 위반 (순환, 알 수 없는 노드, 중복 엣지, 의존 Task 삭제)

    같은 요청을 그대로 재시도하면 안 됩니다.
    """

    def __init__(self, reason: str, task_id: Optional[str] = None, **details):
        if task_id:
            details["task_id"] = task_id
        super().__init__(
            message=reason,
            code="STRUCTURAL_VIOLATION",
            details=details
        )
        self.reason = reason


class StoreUnavailableError(OrchestratorError):
    """Task Store 접근 실패 (재시도 가능)"""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(
            message=message,
            code="STORE_UNAVAILABLE",
            details={"operation": operation} if operation else {}
        )


class InvalidTransitionError(OrchestratorError):
    """상태 전이 가드 위반"""

    def __init__(
        self,
        task_id: Optional[str],
        current: str,
        event: str,
        reason: Optional[str] = None
    ):
        message = f"Cannot apply '{event}' to task in status '{current}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            code="INVALID_TRANSITION",
            details={
                "task_id": task_id,
                "current": current,
                "event": event,
            }
        )


class DecompositionError(OrchestratorError):
    """목표 분해 실패"""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(
            message=message,
            code="DECOMPOSITION_FAILED",
            details={"provider": provider} if provider else {}
        )


class ValidationError(OrchestratorError):
    """입력 검증 실패 시 발생"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"field": field} if field else {}
        )


class LLMError(OrchestratorError):
    """LLM API 호출 실패 (재시도 소진, 인증 누락 등)"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(
            message=message,
            code="LLM_ERROR",
            details={"status": status} if status is not None else {}
        )
