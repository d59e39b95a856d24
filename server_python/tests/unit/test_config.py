"""
Settings Unit Tests
"""

import logging

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from startup.config import Settings, configure_logging


class TestSettings:
    """환경 변수 기반 설정 테스트"""

    def test_defaults(self, monkeypatch):
        for name in ("TASK_STORE", "NOTIFICATION_SINK", "LLM_API_KEY", "MAX_TASK_ATTEMPTS"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.task_store == "memory"
        assert settings.notification_sink == "log"
        assert settings.max_task_attempts == 2
        assert not settings.llm_enabled

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("TASK_STORE", "SQL")
        monkeypatch.setenv("NOTIFICATION_SINK", "audit")
        monkeypatch.setenv("LLM_API_KEY", "secret")
        monkeypatch.setenv("WORK_STEP_DELAY_SECONDS", "0.5")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = Settings.from_env()

        assert settings.task_store == "sql"
        assert settings.notification_sink == "audit"
        assert settings.llm_enabled
        assert settings.work_step_delay_seconds == 0.5
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize("fields", [
        {"task_store": "mongo"},
        {"notification_sink": "email"},
        {"notification_sink": "audit", "task_store": "memory"},
        {"max_task_attempts": 0},
    ])
    def test_invalid_settings(self, fields):
        with pytest.raises(ValueError):
            Settings(**fields).validate()

    def test_configure_logging(self):
        root = logging.getLogger()
        saved_level, saved_handlers = root.level, list(root.handlers)
        try:
            configure_logging("warning")

            assert root.level == logging.WARNING
            assert len(root.handlers) == 1
            assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
