"""
Goal Decomposer - Agent 목표를 순서가 있는 후보 Task 목록으로 분해

분류 정책(Provider)은 교체 가능합니다. Provider가 무엇을 반환하든 결과에는
자율 Task와 사람 게이트 Task가 각각 하나 이상 있고, 사람 게이트 Task에는
항상 사유(blockedReason)가 붙습니다.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import DecompositionError, ValidationError
from models import TaskPriority
from orchestration.circuit_breaker import CircuitBreaker, CircuitConfig
from services.llm_client import LLMClient

logger = logging.getLogger(__name__)

REVIEW_TASK_TITLE = "Review and approve action plan"
REVIEW_BLOCKED_REASON = "I need your approval on the overall strategy before proceeding with execution."


@dataclass
class CandidateTask:
    """분해로 제안된 Task (아직 저장 전)"""
    title: str
    description: str = ""
    needs_human: bool = False
    blocked_reason: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    reasoning: str = ""
    depends_on: List[int] = field(default_factory=list)  # 앞선 후보의 index

    def to_dict(self) -> Dict[str, Any]:
        """딕셔너리로 변환"""
        return {
            "title": self.title,
            "description": self.description,
            "needsHuman": self.needs_human,
            "blockedReason": self.blocked_reason,
            "priority": self.priority.value,
            "reasoning": self.reasoning,
            "dependsOn": self.depends_on,
        }


@dataclass
class DecompositionResult:
    """목표 분해 결과"""
    goal: str
    candidates: List[CandidateTask]
    provider: str
    used_fallback: bool = False
    error: Optional[str] = None

    @property
    def autonomous(self) -> List[CandidateTask]:
        return [c for c in self.candidates if not c.needs_human]

    @property
    def human_gated(self) -> List[CandidateTask]:
        return [c for c in self.candidates if c.needs_human]

    def to_dict(self) -> Dict[str, Any]:
        """딕셔너리로 변환"""
        return {
            "goal": self.goal,
            "candidates": [c.to_dict() for c in self.candidates],
            "provider": self.provider,
            "usedFallback": self.used_fallback,
            "error": self.error,
        }


class DecompositionProvider(ABC):
    """목표에 대한 후보 Task 공급원 (실패하거나 시간 초과될 수 있음)"""

    name: str = "provider"

    @abstractmethod
    async def decompose(self, goal: str) -> List[CandidateTask]:
        pass


def review_task(depends_on: Optional[List[int]] = None) -> CandidateTask:
    return CandidateTask(
        title=REVIEW_TASK_TITLE,
        description="Review the proposed approach and provide feedback on priorities and methods.",
        needs_human=True,
        blocked_reason=REVIEW_BLOCKED_REASON,
        priority=TaskPriority.HIGH,
        reasoning="Your approval ensures I'm working on the right priorities in the right way.",
        depends_on=depends_on or [],
    )


@dataclass
class KeywordRule:
    """목표 키워드와 그에 따라 추가되는 Task"""
    name: str
    keywords: List[str]
    tasks: List[CandidateTask]

    def matches(self, goal: str) -> bool:
        goal_lower = goal.lower()
        return any(keyword in goal_lower for keyword in self.keywords)


DEFAULT_RULES: List[KeywordRule] = [
    KeywordRule(
        name="sales",
        keywords=["lead", "sales", "prospect"],
        tasks=[
            CandidateTask(
                title="Define target customer profile",
                description="Create a detailed profile of ideal customers based on the goal requirements.",
                needs_human=True,
                blocked_reason="I need you to provide information about your ideal customers, industry, and target market.",
                priority=TaskPriority.HIGH,
                reasoning="Customer targeting requires your business knowledge and preferences.",
            ),
            CandidateTask(
                title="Research lead generation channels",
                description="Identify and evaluate the best channels for reaching potential customers.",
                reasoning="I can research various lead generation methods and channels independently.",
            ),
        ],
    ),
    KeywordRule(
        name="content",
        keywords=["content", "blog", "social"],
        tasks=[
            CandidateTask(
                title="Content strategy development",
                description="Create a comprehensive content strategy aligned with your goals.",
                needs_human=True,
                blocked_reason="I need your input on brand voice, target audience, and content preferences.",
                priority=TaskPriority.HIGH,
                reasoning="Content strategy requires your brand guidelines and audience insights.",
            ),
            CandidateTask(
                title="Content calendar creation",
                description="Develop a detailed content calendar with topics and publishing schedule.",
                reasoning="I can create content calendars based on best practices and trends.",
            ),
        ],
    ),
    KeywordRule(
        name="research",
        keywords=["research", "data", "analy", "report"],
        tasks=[
            CandidateTask(
                title="Confirm data sources and access",
                description="Agree on which data sources and systems may be used for the analysis.",
                needs_human=True,
                blocked_reason="I need you to confirm which data sources and systems I am allowed to use.",
                priority=TaskPriority.HIGH,
                reasoning="Access to internal data is your decision.",
            ),
            CandidateTask(
                title="Compile findings report",
                description="Summarize the collected information into a structured findings report.",
                reasoning="I can structure and summarize findings on my own.",
            ),
        ],
    ),
    KeywordRule(
        name="launch",
        keywords=["launch", "event", "campaign"],
        tasks=[
            CandidateTask(
                title="Confirm budget and timeline",
                description="Set the budget limits and key dates for the launch.",
                needs_human=True,
                blocked_reason="I need your budget limits and key dates before planning the launch.",
                priority=TaskPriority.HIGH,
                reasoning="Budget and dates are business commitments only you can make.",
            ),
            CandidateTask(
                title="Draft launch checklist",
                description="Prepare a step-by-step checklist covering preparation, launch day and follow-up.",
                reasoning="I can assemble a checklist from common launch practices.",
            ),
        ],
    ),
]


class KeywordDecompositionPolicy(DecompositionProvider):
    """
    키워드 기반 결정적 분해 정책

    순서: 조사 Task(자율) → 일치하는 규칙의 Task들 → 계획 검토(사람 게이트).
    규칙의 자율 Task는 조사 Task에 의존하고, 사람 게이트 Task는 선행 조건이
    없어 사람이 바로 답할 수 있습니다.
    """

    name = "keyword"

    def __init__(self, rules: Optional[List[KeywordRule]] = None):
        self.rules = rules if rules is not None else DEFAULT_RULES

    async def decompose(self, goal: str) -> List[CandidateTask]:
        return self.build(goal)

    def build(self, goal: str) -> List[CandidateTask]:
        tasks = [
            CandidateTask(
                title="Research and analyze requirements",
                description=f'Analyze the goal: "{goal}" and research best practices and approaches.',
                priority=TaskPriority.HIGH,
                reasoning="I need to understand the context and requirements before taking action.",
            )
        ]

        for rule in self.rules:
            if not rule.matches(goal):
                continue
            for template in rule.tasks:
                tasks.append(CandidateTask(
                    title=template.title,
                    description=template.description,
                    needs_human=template.needs_human,
                    blocked_reason=template.blocked_reason,
                    priority=template.priority,
                    reasoning=template.reasoning,
                    depends_on=[] if template.needs_human else [0],
                ))

        tasks.append(review_task())
        return tasks


class LLMDecompositionProvider(DecompositionProvider):
    """
    LLM 기반 분해 Provider (OpenAI 호환 chat endpoint에 JSON Task 목록 요청)

    응답을 쓸 수 없으면 DecompositionError, 전송 실패는 클라이언트의 LLMError로 전파됩니다.
    """

    name = "llm"

    def __init__(self, client: LLMClient, max_tasks: int = 8):
        self.client = client
        self.max_tasks = max_tasks

    async def decompose(self, goal: str) -> List[CandidateTask]:
        response = await self.client.call(
            [
                {"role": "system", "content": "You plan work for an autonomous assistant. Reply with JSON only."},
                {"role": "user", "content": self._build_prompt(goal)},
            ],
            max_tokens=1500,
            json_mode=True,
        )
        return self._parse_response(response)

    def _build_prompt(self, goal: str) -> str:
        return f"""Decompose the following goal into between 3 and {self.max_tasks} concrete tasks.

Goal: {goal}

Requirements:
1. The first task researches the goal and can be done without a human
2. Mark tasks that need the user's knowledge, data or approval with "needsHuman": true
   and explain what you need in "blockedReason"
3. The last task asks the user to review and approve the plan
4. "dependsOn" lists indexes of earlier tasks that must finish first

Format your response as JSON:
{{
  "tasks": [
    {{
      "title": "Task title",
      "description": "What to do",
      "needsHuman": false,
      "blockedReason": null,
      "priority": "low|medium|high|urgent",
      "reasoning": "Why this task matters",
      "dependsOn": [0]
    }}
  ]
}}
"""

    def _parse_response(self, response: str) -> List[CandidateTask]:
        try:
            json_match = re.search(r'\{[\s\S]*\}', response)
            data = json.loads(json_match.group(0) if json_match else response)
        except json.JSONDecodeError as e:
            raise DecompositionError(f"Invalid JSON from LLM: {e}", provider=self.name)

        items = data.get("tasks") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise DecompositionError("LLM response has no task list", provider=self.name)

        candidates = []
        for item in items[:self.max_tasks]:
            if not isinstance(item, dict) or not str(item.get("title", "")).strip():
                continue
            try:
                priority = TaskPriority(str(item.get("priority", "medium")).lower())
            except ValueError:
                priority = TaskPriority.MEDIUM
            raw_depends_on = item.get("dependsOn")
            if not isinstance(raw_depends_on, list):
                raw_depends_on = []
            depends_on = [i for i in raw_depends_on if isinstance(i, int) and not isinstance(i, bool)]
            candidates.append(CandidateTask(
                title=str(item["title"]).strip(),
                description=str(item.get("description") or ""),
                needs_human=as_flag(item.get("needsHuman", False)),
                blocked_reason=as_text(item.get("blockedReason")),
                priority=priority,
                reasoning=str(item.get("reasoning") or ""),
                depends_on=depends_on,
            ))

        return candidates


def as_flag(value: Any) -> bool:
    """LLM이 준 needsHuman 값 해석 ("false" 같은 문자열은 False)"""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    if isinstance(value, (int, float)):
        return bool(value)
    return False


def as_text(value: Any) -> Optional[str]:
    """문자열이 아닌 값도 문자열로, 비어 있으면 None"""
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    return text.strip() or None


def minimal_task_set(goal: str) -> List[CandidateTask]:
    """Provider가 실패하거나 아무것도 반환하지 않을 때 쓰는 고정 Task 집합"""
    return [
        CandidateTask(
            title="Analyze current objectives",
            description=f"Review and understand the goal: {goal}",
            priority=TaskPriority.HIGH,
            reasoning="Understanding the goal comes first.",
        ),
        CandidateTask(
            title="Create action plan",
            description="Develop a step-by-step plan to achieve the objectives",
            priority=TaskPriority.MEDIUM,
            reasoning="A plan keeps the work ordered.",
            depends_on=[0],
        ),
        review_task(),
        CandidateTask(
            title="Begin implementation",
            description="Start executing the approved action plan",
            priority=TaskPriority.LOW,
            reasoning="Execution starts once the plan is approved.",
            depends_on=[1, 2],
        ),
    ]


class TaskDecomposer:
    """
    목표 분해기

    Circuit Breaker를 거쳐 Provider를 호출하고 결과를 정규화합니다.
    Provider 실패, 빈 결과, 정규화 실패는 모두 최소 Task 집합으로 대체됩니다.

    Example:
        decomposer = TaskDecomposer(KeywordDecompositionPolicy())
        result = await decomposer.decompose("Generate more sales leads")
        for candidate in result.candidates:
            print(candidate.title, candidate.needs_human)
    """

    def __init__(
        self,
        provider: Optional[DecompositionProvider] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        max_tasks: int = 10,
    ):
        self.provider = provider or KeywordDecompositionPolicy()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(CircuitConfig(failure_threshold=3))
        self.max_tasks = max_tasks

    async def decompose(self, goal: str) -> DecompositionResult:
        if not goal or not goal.strip():
            raise ValidationError("Goal must not be empty", field="goal")

        candidates: List[CandidateTask] = []
        error = None
        try:
            candidates = await self.circuit_breaker.call(
                self.provider.name, self.provider.decompose, goal
            )
        except Exception as e:
            # Provider 실패는 모두 고정 Task 집합으로 대체
            error = str(e) or type(e).__name__
            logger.warning(f"Decomposition via '{self.provider.name}' failed: {error}")

        used_fallback = False
        if not candidates:
            if error is None:
                error = "Provider returned no tasks"
            logger.info(f"Falling back to minimal task set for goal: {goal[:80]}")
            candidates = minimal_task_set(goal)
            used_fallback = True

        try:
            candidates = self.normalize(candidates[:self.max_tasks])
        except Exception as e:
            error = f"Could not normalize provider output: {e}"
            logger.warning(f"Decomposition via '{self.provider.name}' unusable: {error}")
            candidates = self.normalize(minimal_task_set(goal))
            used_fallback = True

        logger.info(
            f"Decomposed goal into {len(candidates)} task(s) "
            f"(provider={self.provider.name}, fallback={used_fallback})"
        )
        return DecompositionResult(
            goal=goal,
            candidates=candidates,
            provider=self.provider.name,
            used_fallback=used_fallback,
            error=error if used_fallback else None,
        )

    @staticmethod
    def normalize(candidates: List[CandidateTask]) -> List[CandidateTask]:
        """
        Task 집합 불변식 적용

        - 의존성은 앞선 후보만 가리킴
        - 사람 게이트 후보는 의존성 없음
        - 사람 게이트 후보는 항상 사유를 가짐 (문자열이 아니면 문자열로 변환)
        - 자율 후보가 없으면 조사 Task를 맨 앞에 추가
        - 사람 게이트 후보가 없으면 계획 검토를 맨 뒤에 추가
        """
        result = []
        for index, candidate in enumerate(candidates):
            depends_on = sorted({i for i in candidate.depends_on if 0 <= i < index})
            if candidate.needs_human:
                depends_on = []
            title = as_text(candidate.title) or f"Task {index + 1}"
            reason = as_text(candidate.blocked_reason)
            if candidate.needs_human and reason is None:
                reason = f'I need your input on "{title}" before continuing.'
            result.append(CandidateTask(
                title=title,
                description=candidate.description,
                needs_human=candidate.needs_human,
                blocked_reason=reason if candidate.needs_human else None,
                priority=candidate.priority,
                reasoning=candidate.reasoning,
                depends_on=depends_on,
            ))

        if not any(not c.needs_human for c in result):
            for candidate in result:
                candidate.depends_on = [i + 1 for i in candidate.depends_on]
            result.insert(0, CandidateTask(
                title="Research and analyze requirements",
                description="Research the goal and gather what is needed to act on it.",
                priority=TaskPriority.HIGH,
                reasoning="There must always be something I can start on my own.",
            ))

        if not any(c.needs_human for c in result):
            result.append(review_task())

        return result
