#!/usr/bin/env python3
"""
Agent Taskflow 서버 메인 엔트리포인트
"""
import sys

# 출력 버퍼링 비활성화 (nohup에서 로그 즉시 출력)
sys.stdout.reconfigure(line_buffering=True)
sys.stderr.reconfigure(line_buffering=True)

# 환경 변수는 반드시 다른 import 전에 로드해야 함
from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging

import uvicorn

from startup import OrchestrationRuntime, Settings, configure_logging, create_fastapi_app

logger = logging.getLogger("main")


async def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    logger.info("=" * 50)
    logger.info("Agent Taskflow Server Starting...")
    logger.info("=" * 50)

    runtime = OrchestrationRuntime(settings)
    app = create_fastapi_app(runtime)

    config = uvicorn.Config(app, host="0.0.0.0", port=settings.http_port, log_level=settings.log_level.lower())
    server = uvicorn.Server(config)

    logger.info(f"HTTP API: http://localhost:{settings.http_port}")
    logger.info(f"Task store: {settings.task_store}, notifications: {settings.notification_sink}")

    # uvicorn이 SIGINT/SIGTERM을 처리하고 lifespan에서 runtime.shutdown() 호출
    await server.serve()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nServer stopped")
    except Exception as error:
        print(f"Failed to start server: {error}")
        sys.exit(1)
