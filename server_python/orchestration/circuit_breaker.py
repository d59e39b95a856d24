#!/usr/bin/env python3
"""
Circuit Breaker - 목표 분해 Provider 호출 보호

Provider(LLM 등)별로 연속 실패를 추적해 일정 시간 호출을 차단합니다.
차단 중에는 CircuitOpenError가 발생하고, 분해기는 이를 다른 실패와 똑같이
최소 Task 집합으로 대체합니다.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit 상태"""
    CLOSED = "closed"      # 정상 호출
    OPEN = "open"          # 차단 (연속 실패 임계치 도달)
    HALF_OPEN = "half_open"  # 복구 시험 중


@dataclass
class CircuitStats:
    """Provider 호출 통계"""
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    total_calls: int = 0


@dataclass
class CircuitConfig:
    """Circuit Breaker 설정"""
    failure_threshold: int = 3          # 연속 실패 임계치
    success_threshold: int = 2          # HALF_OPEN → CLOSED 복구에 필요한 연속 성공
    timeout_seconds: float = 30         # OPEN 유지 시간
    half_open_max_calls: int = 3        # HALF_OPEN에서 허용할 시험 호출 수


@dataclass
class ProviderCircuit:
    """Provider 하나의 Circuit"""
    state: CircuitState = CircuitState.CLOSED
    stats: CircuitStats = field(default_factory=CircuitStats)
    trial_calls: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "stats": {
                "failure_count": self.stats.failure_count,
                "success_count": self.stats.success_count,
                "total_calls": self.stats.total_calls,
            },
        }


class CircuitOpenError(Exception):
    """Provider의 Circuit이 호출을 차단했을 때 발생"""
    pass


class CircuitBreaker:
    """
    Provider 이름별 Circuit Breaker

    Example:
        breaker = CircuitBreaker(CircuitConfig(failure_threshold=3))
        candidates = await breaker.call("llm", provider.decompose, goal)
    """

    def __init__(self, config: Optional[CircuitConfig] = None):
        self._config = config or CircuitConfig()
        self._circuits: Dict[str, ProviderCircuit] = {}

    def _circuit(self, provider: str) -> ProviderCircuit:
        if provider not in self._circuits:
            self._circuits[provider] = ProviderCircuit()
        return self._circuits[provider]

    def get_state(self, provider: str) -> CircuitState:
        return self._circuit(provider).state

    def get_stats(self, provider: str) -> CircuitStats:
        return self._circuit(provider).stats

    async def call(
        self,
        provider: str,
        func: Callable[..., Awaitable[Any]],
        *args,
        **kwargs
    ) -> Any:
        """
        Circuit을 거쳐 Provider 호출

        Raises:
            CircuitOpenError: 차단 중이거나 HALF_OPEN 시험 호출 한도를 넘었을 때
            Exception: Provider가 낸 예외는 실패로 기록한 뒤 그대로 전파
        """
        circuit = self._circuit(provider)

        if circuit.state == CircuitState.OPEN:
            if not self._timeout_elapsed(circuit):
                raise CircuitOpenError(f"Circuit is OPEN for provider: {provider}")
            circuit.state = CircuitState.HALF_OPEN
            circuit.trial_calls = 0
            logger.info(f"[CircuitBreaker] {provider}: OPEN → HALF_OPEN")

        if circuit.state == CircuitState.HALF_OPEN:
            if circuit.trial_calls >= self._config.half_open_max_calls:
                raise CircuitOpenError(f"Circuit is HALF_OPEN and trial calls are used up for: {provider}")
            circuit.trial_calls += 1

        circuit.stats.total_calls += 1
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self._record_failure(provider, circuit)
            raise

        self._record_success(provider, circuit)
        return result

    def _timeout_elapsed(self, circuit: ProviderCircuit) -> bool:
        last_failure = circuit.stats.last_failure_time
        if last_failure is None:
            return True
        return datetime.now() - last_failure > timedelta(seconds=self._config.timeout_seconds)

    def _record_success(self, provider: str, circuit: ProviderCircuit) -> None:
        stats = circuit.stats
        stats.success_count += 1
        stats.last_success_time = datetime.now()

        if circuit.state == CircuitState.CLOSED:
            stats.failure_count = 0
        elif stats.success_count >= self._config.success_threshold:
            circuit.state = CircuitState.CLOSED
            circuit.trial_calls = 0
            stats.failure_count = 0
            logger.info(f"[CircuitBreaker] {provider}: HALF_OPEN → CLOSED (recovered)")

    def _record_failure(self, provider: str, circuit: ProviderCircuit) -> None:
        stats = circuit.stats
        stats.failure_count += 1
        stats.success_count = 0
        stats.last_failure_time = datetime.now()

        if circuit.state == CircuitState.HALF_OPEN:
            circuit.state = CircuitState.OPEN
            logger.warning(f"[CircuitBreaker] {provider}: HALF_OPEN → OPEN (trial call failed)")
        elif stats.failure_count >= self._config.failure_threshold:
            circuit.state = CircuitState.OPEN
            logger.warning(
                f"[CircuitBreaker] {provider}: CLOSED → OPEN (failures: {stats.failure_count})"
            )

    def get_summary(self) -> Dict[str, Any]:
        """Provider별 Circuit 상태 요약 (health 응답용)"""
        return {provider: circuit.to_dict() for provider, circuit in self._circuits.items()}
