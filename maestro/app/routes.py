"""HTTP routes for orchestration, supervision, agents and webhooks."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from maestro.app.models import (
    Agent,
    AgentStatus,
    AgentWebhookConfig,
    Alert,
    AlertSeverity,
    AlertSummary,
    Task,
    WebhookDelivery,
)
from maestro.app.services import Services
from maestro.orchestrator.assignment import AssignmentResult
from maestro.orchestrator.bottlenecks import (
    Bottleneck,
    SpawnRecommendation,
    TypeUtilization,
    rank_spawn_recommendations,
)
from maestro.orchestrator.dependency_graph import DependencyAnalysis
from maestro.orchestrator.health_monitor import AgentHealthReport, HealthCheck
from maestro.orchestrator.supervisor import CycleSummary
from maestro.webhooks import DeliveryStats, InvalidTransitionError

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


class PollRequest(BaseModel):
    status: AgentStatus = AgentStatus.ACTIVE


class TaskResultRequest(BaseModel):
    success: bool
    duration_ms: Optional[int] = None
    blocked_reason: Optional[str] = None


class TaskResultResponse(BaseModel):
    task_id: str
    unblocked: list[Task]


class BottleneckReport(BaseModel):
    bottlenecks: list[Bottleneck]
    recommendations: list[SpawnRecommendation]
    utilization: dict[str, TypeUtilization]


@router.get("/health")
async def health():
    """Liveness check for the API process."""
    return {"status": "healthy"}


@router.post("/orchestration/cycle", response_model=CycleSummary)
async def run_cycle(services: Services = Depends(get_services)):
    """Run one orchestration cycle now."""
    return await services.supervisor.run_cycle()


@router.post("/tasks", response_model=Task, status_code=status.HTTP_201_CREATED)
async def save_task(task: Task, services: Services = Depends(get_services)):
    return await services.store.save_task(task)


@router.post("/tasks/reassign-stuck", response_model=list[AssignmentResult])
async def reassign_stuck(services: Services = Depends(get_services)):
    return await services.supervisor.reassign_stuck_tasks()


@router.post("/tasks/{task_id}/assign", response_model=AssignmentResult)
async def assign_task(task_id: str, services: Services = Depends(get_services)):
    result = await services.supervisor.assign_task(task_id)
    if result.error == "Task not found":
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return result


@router.post("/tasks/{task_id}/start", response_model=Task)
async def start_task(task_id: str, services: Services = Depends(get_services)):
    task = await services.supervisor.start_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return task


@router.post("/tasks/{task_id}/result", response_model=TaskResultResponse)
async def report_task_result(
    task_id: str,
    body: TaskResultRequest,
    services: Services = Depends(get_services)
):
    unblocked = await services.supervisor.report_task_result(
        task_id,
        success=body.success,
        duration_ms=body.duration_ms,
        blocked_reason=body.blocked_reason,
    )
    if unblocked is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return TaskResultResponse(task_id=task_id, unblocked=unblocked)


@router.get("/projects/{project_id}/dependencies", response_model=DependencyAnalysis)
async def project_dependencies(project_id: str, services: Services = Depends(get_services)):
    tasks = await services.store.list_tasks(project_id)
    agents = await services.store.list_agents(project_id)
    return services.analyzer.analyze(tasks, agents)


@router.get("/supervisor/health", response_model=HealthCheck)
async def supervisor_health(services: Services = Depends(get_services)):
    return await services.health_monitor.run_health_check()


@router.get("/supervisor/agents/{agent_id}/health", response_model=AgentHealthReport)
async def agent_health(agent_id: str, services: Services = Depends(get_services)):
    report = await services.health_monitor.get_agent_health_report(agent_id)
    if report.agent is None:
        raise HTTPException(status_code=404, detail=f"Agent {agent_id} not found")
    return report


@router.get("/supervisor/bottlenecks", response_model=BottleneckReport)
async def bottlenecks(services: Services = Depends(get_services)):
    signal = await services.bottleneck_detector.signal()
    found = signal.bottlenecks()
    return BottleneckReport(
        bottlenecks=found,
        recommendations=rank_spawn_recommendations(found),
        utilization={t.value: u for t, u in signal.utilization().items()},
    )


@router.get("/supervisor/alerts", response_model=list[Alert])
async def alerts(
    severity: Optional[AlertSeverity] = None,
    limit: int = 100,
    services: Services = Depends(get_services)
):
    generator = services.alert_generator
    if severity:
        found = await generator.alerts_by_severity(severity)
    else:
        found = await generator.get_alerts()
    return list(reversed(found))[:limit]


@router.get("/supervisor/alerts/summary", response_model=AlertSummary)
async def alert_summary(services: Services = Depends(get_services)):
    return await services.supervisor.get_alert_summary()


@router.delete("/supervisor/alerts/{alert_id}", status_code=status.HTTP_204_NO_CONTENT)
async def dismiss_alert(alert_id: str, services: Services = Depends(get_services)):
    if not await services.alert_generator.dismiss_alert(alert_id):
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")


@router.post("/agents", response_model=Agent, status_code=status.HTTP_201_CREATED)
async def register_agent(agent: Agent, services: Services = Depends(get_services)):
    try:
        return await services.agents.register(agent)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/agents/{agent_id}/poll", response_model=Agent)
async def record_poll(
    agent_id: str,
    body: Optional[PollRequest] = None,
    services: Services = Depends(get_services)
):
    agent = await services.agents.record_poll(
        agent_id,
        status=body.status if body else AgentStatus.ACTIVE,
    )
    if agent is None:
        raise HTTPException(status_code=404, detail=f"Agent {agent_id} not found")
    return agent


@router.put("/agents/{agent_id}/webhook", response_model=AgentWebhookConfig)
async def register_webhook(
    agent_id: str,
    config: AgentWebhookConfig,
    services: Services = Depends(get_services)
):
    if config.agent_id != agent_id:
        raise HTTPException(status_code=400, detail="agent_id does not match path")
    return services.webhook_configs.register(config)


@router.get("/webhooks/deliveries", response_model=list[WebhookDelivery])
async def deliveries(
    agent_id: Optional[str] = None,
    limit: int = 50,
    services: Services = Depends(get_services)
):
    if agent_id:
        return services.deliveries.for_agent(agent_id, limit=limit)
    return services.deliveries.recent(limit)


@router.get("/webhooks/stats", response_model=DeliveryStats)
async def delivery_stats(services: Services = Depends(get_services)):
    return services.deliveries.stats()


@router.post("/webhooks/deliveries/{delivery_id}/retry", response_model=WebhookDelivery)
async def retry_delivery(delivery_id: str, services: Services = Depends(get_services)):
    try:
        delivery = await services.dispatcher.retry(delivery_id)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if delivery is None:
        raise HTTPException(
            status_code=404,
            detail=f"Delivery {delivery_id} or its webhook config not found"
        )
    return delivery
