"""
Agent / Task / Dependency API 엔드포인트
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from models import (
    AddDependencyInput,
    CancelTaskInput,
    CreateAgentInput,
    CreateTaskInput,
    ResolveTaskInput,
)
from startup.runtime import OrchestrationRuntime

router = APIRouter(prefix="/api", tags=["orchestration"])
health_router = APIRouter(tags=["health"])


def get_runtime(request: Request) -> OrchestrationRuntime:
    """app.state에 등록된 런타임"""
    return request.app.state.runtime


# ===== Agents =====

@router.post("/workspaces/{scope}/agents", status_code=201)
async def start_agent(
    scope: str,
    data: CreateAgentInput,
    runtime: OrchestrationRuntime = Depends(get_runtime),
):
    """목표로 Agent 시작 (Task 분해 후 자율 작업 예약)"""
    orchestrator = await runtime.get_orchestrator(scope)
    result = await orchestrator.start_agent(data.goal, name=data.name)
    return result.to_dict()


@router.get("/workspaces/{scope}/agents")
async def list_agents(scope: str, runtime: OrchestrationRuntime = Depends(get_runtime)):
    orchestrator = await runtime.get_orchestrator(scope)
    agents = await orchestrator.list_agents()
    return {"agents": [a.model_dump(mode="json") for a in agents]}


@router.get("/agents/{agent_id}")
async def get_agent_state(agent_id: str, runtime: OrchestrationRuntime = Depends(get_runtime)):
    """Agent와 Task 목록 스냅샷"""
    orchestrator = await runtime.orchestrator_for_agent(agent_id)
    state = await orchestrator.get_agent_state(agent_id)
    return state.model_dump(mode="json")


@router.post("/agents/{agent_id}/pause")
async def pause_agent(agent_id: str, runtime: OrchestrationRuntime = Depends(get_runtime)):
    orchestrator = await runtime.orchestrator_for_agent(agent_id)
    agent = await orchestrator.pause_agent(agent_id)
    return agent.model_dump(mode="json")


@router.post("/agents/{agent_id}/resume")
async def resume_agent(agent_id: str, runtime: OrchestrationRuntime = Depends(get_runtime)):
    orchestrator = await runtime.orchestrator_for_agent(agent_id)
    agent = await orchestrator.resume_agent(agent_id)
    return agent.model_dump(mode="json")


@router.post("/agents/{agent_id}/complete")
async def complete_agent(agent_id: str, runtime: OrchestrationRuntime = Depends(get_runtime)):
    orchestrator = await runtime.orchestrator_for_agent(agent_id)
    agent = await orchestrator.complete_agent(agent_id)
    return agent.model_dump(mode="json")


# ===== Tasks =====

@router.post("/agents/{agent_id}/tasks", status_code=201)
async def create_task(
    agent_id: str,
    data: CreateTaskInput,
    runtime: OrchestrationRuntime = Depends(get_runtime),
):
    """사람이 직접 Task 추가 (사람 게이트 Task는 blockedReason 필수)"""
    orchestrator = await runtime.orchestrator_for_agent(agent_id)
    task = await orchestrator.create_task(agent_id, data)
    return task.model_dump(mode="json")


@router.post("/tasks/{task_id}/resolve")
async def resolve_task(
    task_id: str,
    data: Optional[ResolveTaskInput] = None,
    runtime: OrchestrationRuntime = Depends(get_runtime),
):
    """사람 게이트 Task 해결 (이미 done이면 변경 없음)"""
    orchestrator = await runtime.orchestrator_for_task(task_id)
    notes = data.completionNotes if data else None
    transition = await orchestrator.resolve(task_id, notes=notes)
    agent = await orchestrator.get_agent_state(transition.task.agentId)
    return {**transition.to_dict(), "agent": agent.agent.model_dump(mode="json")}


@router.post("/tasks/{task_id}/retry")
async def retry_task(task_id: str, runtime: OrchestrationRuntime = Depends(get_runtime)):
    """needsAttention 상태의 자율 Task 재시도"""
    orchestrator = await runtime.orchestrator_for_task(task_id)
    task = await orchestrator.retry_task(task_id)
    return task.model_dump(mode="json")


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(
    task_id: str,
    data: Optional[CancelTaskInput] = None,
    runtime: OrchestrationRuntime = Depends(get_runtime),
):
    """실행 중이 아닌데 in_progress로 남은 Task를 todo로 되돌림"""
    orchestrator = await runtime.orchestrator_for_task(task_id)
    task = await orchestrator.cancel_task(task_id, reason=data.reason if data else None)
    return task.model_dump(mode="json")


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: str, runtime: OrchestrationRuntime = Depends(get_runtime)):
    orchestrator = await runtime.orchestrator_for_task(task_id)
    await orchestrator.delete_task(task_id)
    return {"success": True, "taskId": task_id}


# ===== Graph =====

@router.post("/workspaces/{scope}/dependencies", status_code=201)
async def add_dependency(
    scope: str,
    data: AddDependencyInput,
    runtime: OrchestrationRuntime = Depends(get_runtime),
):
    """의존성 추가 (순환/중복/자기 참조는 409)"""
    orchestrator = await runtime.get_orchestrator(scope)
    edge = await orchestrator.add_dependency(data.sourceTaskId, data.targetTaskId, data.kind)
    return edge.to_dict()


@router.get("/workspaces/{scope}/graph")
async def export_graph(
    scope: str,
    format: str = "json",
    runtime: OrchestrationRuntime = Depends(get_runtime),
):
    orchestrator = await runtime.get_orchestrator(scope)
    if format == "dot":
        return PlainTextResponse(orchestrator.graph.to_dot())
    return orchestrator.graph.export_graph()


@router.get("/workspaces/{scope}/metrics")
async def graph_metrics(scope: str, runtime: OrchestrationRuntime = Depends(get_runtime)):
    orchestrator = await runtime.get_orchestrator(scope)
    return orchestrator.graph.metrics().to_dict()


@router.get("/workspaces/{scope}/critical-path")
async def critical_path(scope: str, runtime: OrchestrationRuntime = Depends(get_runtime)):
    orchestrator = await runtime.get_orchestrator(scope)
    path = orchestrator.graph.critical_path()
    return {"path": path, "length": len(path)}


# ===== Health =====

@health_router.get("/health")
async def health(runtime: OrchestrationRuntime = Depends(get_runtime)):
    status = {
        "status": "ok",
        "store": runtime.settings.task_store,
        "sink": runtime.settings.notification_sink,
        "scopes": runtime.scopes,
        "decomposition": runtime.decomposer.circuit_breaker.get_summary(),
    }
    if runtime.redis_service:
        status["redis"] = await runtime.redis_service.health_check()
    return status
