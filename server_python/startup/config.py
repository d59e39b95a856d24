"""
Config - 환경 변수 기반 설정 및 로깅 초기화

main.py에서 load_dotenv() 이후에 Settings.from_env()를 호출합니다.
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional

from database.connection import DEFAULT_DATABASE_URL

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

STORE_BACKENDS = ("memory", "sql")
SINK_BACKENDS = ("log", "memory", "redis", "audit")


@dataclass
class Settings:
    """서버 설정"""
    database_url: str = DEFAULT_DATABASE_URL
    task_store: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    notification_sink: str = "log"
    llm_api_url: Optional[str] = None
    llm_api_key: Optional[str] = None
    llm_model: Optional[str] = None
    work_step_delay_seconds: float = 1.0
    max_task_attempts: int = 2
    decomposer_failure_threshold: int = 3
    http_port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            task_store=os.getenv("TASK_STORE", "memory").lower(),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            notification_sink=os.getenv("NOTIFICATION_SINK", "log").lower(),
            llm_api_url=os.getenv("LLM_API_URL") or None,
            llm_api_key=os.getenv("LLM_API_KEY") or None,
            llm_model=os.getenv("LLM_MODEL") or None,
            work_step_delay_seconds=float(os.getenv("WORK_STEP_DELAY_SECONDS", "1.0")),
            max_task_attempts=int(os.getenv("MAX_TASK_ATTEMPTS", "2")),
            decomposer_failure_threshold=int(os.getenv("DECOMPOSER_FAILURE_THRESHOLD", "3")),
            http_port=int(os.getenv("HTTP_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.task_store not in STORE_BACKENDS:
            raise ValueError(f"TASK_STORE must be one of {STORE_BACKENDS}, got '{self.task_store}'")
        if self.notification_sink not in SINK_BACKENDS:
            raise ValueError(
                f"NOTIFICATION_SINK must be one of {SINK_BACKENDS}, got '{self.notification_sink}'"
            )
        if self.notification_sink == "audit" and self.task_store != "sql":
            raise ValueError("NOTIFICATION_SINK=audit requires TASK_STORE=sql")
        if self.max_task_attempts < 1:
            raise ValueError("MAX_TASK_ATTEMPTS must be at least 1")

    @property
    def llm_enabled(self) -> bool:
        return bool(self.llm_api_key)


def configure_logging(level: str = "INFO") -> None:
    """루트 로거에 단일 stream handler 설치"""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

    # 라이브러리 로그는 한 단계 낮춤
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
