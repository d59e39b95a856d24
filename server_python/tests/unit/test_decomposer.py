"""
Goal Decomposer Unit Tests

목표 분해(키워드 정책, LLM Provider, fallback, 불변식 보정) 단위 테스트입니다.
"""

import json
import pytest
from unittest.mock import AsyncMock, MagicMock

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from errors import DecompositionError, LLMError, ValidationError
from models import TaskPriority
from orchestration.circuit_breaker import CircuitBreaker, CircuitConfig, CircuitState
from task_graph.decomposer import (
    REVIEW_TASK_TITLE,
    CandidateTask,
    DecompositionProvider,
    KeywordDecompositionPolicy,
    LLMDecompositionProvider,
    TaskDecomposer,
    minimal_task_set,
)


class FailingProvider(DecompositionProvider):
    name = "failing"

    def __init__(self):
        self.calls = 0

    async def decompose(self, goal):
        self.calls += 1
        raise RuntimeError("provider down")


class StaticProvider(DecompositionProvider):
    name = "static"

    def __init__(self, candidates):
        self.candidates = candidates

    async def decompose(self, goal):
        return list(self.candidates)


def assert_invariants(candidates):
    assert any(not c.needs_human for c in candidates)
    assert any(c.needs_human for c in candidates)
    for index, candidate in enumerate(candidates):
        if candidate.needs_human:
            assert candidate.blocked_reason
            assert candidate.depends_on == []
        assert all(0 <= i < index for i in candidate.depends_on)


class TestKeywordPolicy:
    """키워드 정책 테스트"""

    @pytest.mark.asyncio
    async def test_sales_goal(self):
        candidates = await KeywordDecompositionPolicy().decompose("Generate more sales leads")
        titles = [c.title for c in candidates]

        assert titles == [
            "Research and analyze requirements",
            "Define target customer profile",
            "Research lead generation channels",
            REVIEW_TASK_TITLE,
        ]
        assert candidates[2].depends_on == [0]
        assert candidates[1].needs_human
        assert_invariants(candidates)

    @pytest.mark.asyncio
    async def test_unmatched_goal_gets_research_and_review(self):
        candidates = await KeywordDecompositionPolicy().decompose("Plan the team offsite")

        assert [c.title for c in candidates] == [
            "Research and analyze requirements",
            REVIEW_TASK_TITLE,
        ]
        assert_invariants(candidates)

    @pytest.mark.asyncio
    async def test_multiple_categories(self):
        candidates = await KeywordDecompositionPolicy().decompose(
            "Launch a blog campaign backed by market research"
        )
        titles = [c.title for c in candidates]

        assert "Content strategy development" in titles
        assert "Compile findings report" in titles
        assert "Draft launch checklist" in titles
        assert titles[-1] == REVIEW_TASK_TITLE
        assert_invariants(candidates)


class TestLLMProvider:
    """LLM Provider 테스트"""

    @pytest.mark.asyncio
    async def test_parses_task_list(self, mock_llm_response):
        client = MagicMock()
        client.call = AsyncMock(return_value=mock_llm_response)

        candidates = await LLMDecompositionProvider(client).decompose("Set new pricing")

        assert [c.title for c in candidates] == ["Collect competitor pricing", "Approve pricing strategy"]
        assert candidates[0].priority == TaskPriority.HIGH
        assert candidates[1].needs_human
        assert candidates[1].blocked_reason == "I need your decision on the price points."
        assert candidates[1].depends_on == [0]

    @pytest.mark.asyncio
    async def test_json_inside_prose(self):
        client = MagicMock()
        client.call = AsyncMock(
            return_value='Here you go:\n{"tasks": [{"title": "Draft", "priority": "bogus"}]}\nDone.'
        )

        candidates = await LLMDecompositionProvider(client).decompose("Write")

        assert candidates[0].title == "Draft"
        assert candidates[0].priority == TaskPriority.MEDIUM

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self):
        client = MagicMock()
        client.call = AsyncMock(return_value="not json at all")

        with pytest.raises(DecompositionError):
            await LLMDecompositionProvider(client).decompose("Write")

    @pytest.mark.asyncio
    async def test_non_string_fields_are_coerced(self):
        """blockedReason 숫자, needsHuman 문자열 같은 느슨한 JSON 값 해석"""
        client = MagicMock()
        client.call = AsyncMock(return_value=json.dumps({"tasks": [
            {"title": "Gather numbers", "needsHuman": "false", "dependsOn": "0"},
            {"title": "Pick a budget", "needsHuman": "true", "blockedReason": 42},
            {"title": "Sign off", "needsHuman": 1, "blockedReason": "   "},
        ]}))

        candidates = await LLMDecompositionProvider(client).decompose("Plan budget")

        assert candidates[0].needs_human is False
        assert candidates[0].depends_on == []
        assert candidates[1].needs_human is True
        assert candidates[1].blocked_reason == "42"
        assert candidates[2].needs_human is True
        assert candidates[2].blocked_reason is None


class TestTaskDecomposer:
    """TaskDecomposer 테스트"""

    @pytest.mark.asyncio
    async def test_empty_goal_is_rejected(self):
        with pytest.raises(ValidationError):
            await TaskDecomposer().decompose("   ")

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back(self):
        """Provider 실패 시 최소 Task 집합으로 대체"""
        result = await TaskDecomposer(FailingProvider()).decompose("Grow revenue")

        assert result.used_fallback
        assert result.error == "provider down"
        assert [c.title for c in result.candidates] == [c.title for c in minimal_task_set("Grow revenue")]
        assert_invariants(result.candidates)

    @pytest.mark.asyncio
    async def test_llm_error_falls_back(self):
        client = MagicMock()
        client.call = AsyncMock(side_effect=LLMError("rate limited", status=429))

        result = await TaskDecomposer(LLMDecompositionProvider(client)).decompose("Grow revenue")

        assert result.used_fallback
        assert result.provider == "llm"

    @pytest.mark.asyncio
    async def test_empty_result_falls_back(self):
        result = await TaskDecomposer(StaticProvider([])).decompose("Grow revenue")

        assert result.used_fallback
        assert result.error == "Provider returned no tasks"

    @pytest.mark.asyncio
    async def test_open_circuit_skips_provider(self):
        """연속 실패 후 Circuit이 열리면 Provider를 호출하지 않음"""
        provider = FailingProvider()
        breaker = CircuitBreaker(CircuitConfig(failure_threshold=2, timeout_seconds=60))
        decomposer = TaskDecomposer(provider, circuit_breaker=breaker)

        for _ in range(3):
            result = await decomposer.decompose("Grow revenue")
            assert result.used_fallback

        assert provider.calls == 2
        assert breaker.get_state("failing") == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_normalize_adds_missing_human_gate(self):
        result = await TaskDecomposer(StaticProvider([
            CandidateTask(title="Do it"),
        ])).decompose("Anything")

        assert [c.title for c in result.candidates] == ["Do it", REVIEW_TASK_TITLE]
        assert not result.used_fallback

    @pytest.mark.asyncio
    async def test_normalize_adds_missing_autonomous_task(self):
        """사람 게이트만 있으면 자율 조사 Task를 앞에 추가하고 인덱스를 보정"""
        result = await TaskDecomposer(StaticProvider([
            CandidateTask(title="Decide", needs_human=True),
            CandidateTask(title="Confirm", needs_human=True, depends_on=[0]),
        ])).decompose("Anything")
        candidates = result.candidates

        assert candidates[0].title == "Research and analyze requirements"
        assert not candidates[0].needs_human
        assert candidates[1].blocked_reason == 'I need your input on "Decide" before continuing.'
        assert_invariants(candidates)

    def test_normalize_drops_forward_references(self):
        candidates = TaskDecomposer.normalize([
            CandidateTask(title="A", depends_on=[1, 0, -1]),
            CandidateTask(title="B", depends_on=[0, 0, 5]),
            CandidateTask(title="Gate", needs_human=True, blocked_reason="Why", depends_on=[1]),
        ])

        assert candidates[0].depends_on == []
        assert candidates[1].depends_on == [0]
        assert candidates[2].depends_on == []

    @pytest.mark.asyncio
    async def test_non_string_reason_is_stringified(self):
        """Provider가 준 문자열이 아닌 사유도 정규화에서 문자열로 변환"""
        result = await TaskDecomposer(StaticProvider([
            CandidateTask(title="Research"),
            CandidateTask(title="Approve", needs_human=True, blocked_reason=42),
        ])).decompose("Anything")

        assert not result.used_fallback
        assert result.candidates[1].blocked_reason == "42"
        assert_invariants(result.candidates)

    @pytest.mark.asyncio
    async def test_unusable_candidates_fall_back(self):
        """정규화할 수 없는 후보는 최소 Task 집합으로 대체"""
        result = await TaskDecomposer(StaticProvider([
            CandidateTask(title="Broken", depends_on=None),
        ])).decompose("Grow revenue")

        assert result.used_fallback
        assert result.error.startswith("Could not normalize provider output")
        assert [c.title for c in result.candidates] == [c.title for c in minimal_task_set("Grow revenue")]
        assert_invariants(result.candidates)


    def test_max_tasks(self):
        decomposer = TaskDecomposer(max_tasks=3)
        assert decomposer.max_tasks == 3
