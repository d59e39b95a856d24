"""
Startup - 서버 초기화 모듈

설정 로드, 런타임 구성, FastAPI 앱 생성을 분리한 모듈입니다.
"""

from .config import Settings, configure_logging
from .runtime import OrchestrationRuntime
from .server_config import create_fastapi_app, setup_cors, setup_error_handlers

__all__ = [
    "Settings",
    "configure_logging",
    "OrchestrationRuntime",
    "create_fastapi_app",
    "setup_cors",
    "setup_error_handlers",
]
