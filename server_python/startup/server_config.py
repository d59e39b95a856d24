"""
ServerConfig - FastAPI 및 서버 설정

FastAPI 앱 생성, CORS 설정, 오케스트레이터 에러 핸들러 등록을 담당합니다.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from errors import ErrorResponse, OrchestratorError

from .runtime import OrchestrationRuntime

logger = logging.getLogger(__name__)


def create_fastapi_app(
    runtime: OrchestrationRuntime,
    title: str = "Agent Taskflow API",
) -> FastAPI:
    """
    FastAPI 앱 생성

    Args:
        runtime: 라우트가 사용할 런타임
        title: API 제목

    Returns:
        FastAPI 앱 인스턴스
    """
    from api import health_router, router

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.startup()
        yield
        await runtime.shutdown()

    app = FastAPI(title=title, lifespan=lifespan)
    app.state.runtime = runtime
    setup_cors(app)
    setup_error_handlers(app)
    app.include_router(router)
    app.include_router(health_router)
    return app


def setup_cors(
    app: FastAPI,
    allow_origins: list = None,
    allow_credentials: bool = True,
    allow_methods: list = None,
    allow_headers: list = None
):
    """
    CORS 미들웨어 설정

    Args:
        app: FastAPI 앱
        allow_origins: 허용할 origin 목록 (기본: ["*"])
        allow_credentials: 자격 증명 허용 여부
        allow_methods: 허용할 HTTP 메서드 (기본: ["*"])
        allow_headers: 허용할 헤더 (기본: ["*"])
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins or ["*"],
        allow_credentials=allow_credentials,
        allow_methods=allow_methods or ["*"],
        allow_headers=allow_headers or ["*"],
    )


def setup_error_handlers(app: FastAPI):
    """OrchestratorError를 표준 ErrorResponse로 변환"""

    @app.exception_handler(OrchestratorError)
    async def handle_orchestrator_error(request: Request, exc: OrchestratorError):
        response = ErrorResponse.from_exception(exc)
        if response.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} - {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.code} - {exc.message}")
        return JSONResponse(response.to_dict(), status_code=response.http_status)
