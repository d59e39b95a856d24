"""
Decorators - 에러 핸들링 데코레이터

best-effort 호출(알림 발송 등)에 적용하여 실패가 호출자를 막지 않도록 합니다.
"""

import functools
import logging
from typing import Callable, TypeVar, Any

from .exceptions import OrchestratorError


T = TypeVar('T')

logger = logging.getLogger(__name__)


def async_handle_errors(
    default_return: Any = None,
    log_errors: bool = True,
    reraise: bool = False
):
    """
    비동기 함수용 에러 핸들링 데코레이터

    Args:
        default_return: 에러 발생 시 반환할 기본값
        log_errors: 에러 로깅 여부
        reraise: 에러 재발생 여부

    Example:
        @async_handle_errors(default_return=False)
        async def emit(event):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            try:
                return await func(*args, **kwargs)
            except OrchestratorError as e:
                if log_errors:
                    logger.warning(f"[{func.__name__}] Error: {e.code} - {e.message}")
                if reraise:
                    raise
                return default_return
            except Exception as e:
                if log_errors:
                    logger.exception(f"[{func.__name__}] Unexpected error: {e}")
                if reraise:
                    raise
                return default_return
        return wrapper
    return decorator
