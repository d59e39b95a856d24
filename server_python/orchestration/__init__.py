#!/usr/bin/env python3
"""
Orchestration Module

모듈 구성:
- circuit_breaker: 외부 호출(목표 분해 Provider) 보호
- engine: Agent 오케스트레이터 (`from orchestration.engine import AgentOrchestrator`)

engine은 task_graph에 의존하고 task_graph.decomposer는 circuit_breaker에
의존하므로, 여기서는 circuit_breaker만 export합니다.
"""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitConfig,
    CircuitOpenError,
    CircuitState,
    CircuitStats,
)

__all__ = [
    "CircuitBreaker",
    "CircuitConfig",
    "CircuitOpenError",
    "CircuitState",
    "CircuitStats",
]
