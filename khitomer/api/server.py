"""Administrative HTTP API: trigger, inspect, and cancel pipeline runs."""

import structlog
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from khitomer.engine.naming import make_run_id
from khitomer.engine.runtime import ExecutionRuntime
from khitomer.exceptions import KhitomerError, PlanningError, RunNotFoundError
from khitomer.models.domain import ImplementationPlan, PipelineInput, RepositoryInfo, Task
from khitomer.planning.base import PlanSource, StaticPlanSource
from khitomer.providers.base import TrackerProvider

log = structlog.get_logger(__name__)

MANUAL_TRIGGER_PLAN = ImplementationPlan(summary="Manual workflow trigger")


class StartWorkflowRequest(BaseModel):
    ticket_id: str = Field(..., min_length=1)
    repository_owner: str = Field(..., min_length=1)
    repository_name: str = Field(..., min_length=1)
    base_branch: str = Field(default="main", min_length=1)


class StartWorkflowResponse(BaseModel):
    workflow_id: str
    status: str


def create_app(
    runtime: ExecutionRuntime,
    plan_source: PlanSource | None = None,
    tracker: TrackerProvider | None = None,
) -> FastAPI:
    """Build the API bound to ``runtime``.

    Args:
        runtime: Runtime that starts, reports, and cancels runs
        plan_source: Planner for triggered tasks; manual triggers use a
            placeholder plan without one
        tracker: When given, the ticket's title and description are read
            from the tracker before the run starts
    """
    app = FastAPI(title="Khitomer Admin API")
    planner = plan_source or StaticPlanSource(MANUAL_TRIGGER_PLAN)

    @app.post("/api/v1/workflows", response_model=StartWorkflowResponse)
    async def start_workflow(request: StartWorkflowRequest) -> StartWorkflowResponse:
        task = Task(
            ticket_id=request.ticket_id,
            title=request.ticket_id,
            repository_owner=request.repository_owner,
            repository_name=request.repository_name,
            base_branch=request.base_branch,
        )

        try:
            if tracker is not None:
                tracked = await tracker.get_task(
                    request.ticket_id, repository=(request.repository_owner, request.repository_name)
                )
                task = Task(
                    ticket_id=task.ticket_id,
                    title=tracked.title,
                    description=tracked.description,
                    repository_owner=task.repository_owner,
                    repository_name=task.repository_name,
                    base_branch=task.base_branch,
                    assignee=tracked.assignee,
                    url=tracked.url,
                    status=tracked.status,
                )
            plan = await planner.generate_plan(task)
            repository = RepositoryInfo.for_task(task)
            run_id = make_run_id(task.ticket_id, repository.name)
            handle = await runtime.start(run_id, PipelineInput(task=task, plan=plan, repository=repository))
        except PlanningError as e:
            log.error("manual_trigger_planning_failed", ticket_id=request.ticket_id, error=e.message)
            raise HTTPException(status_code=502, detail=e.message) from e
        except KhitomerError as e:
            log.error("manual_trigger_failed", ticket_id=request.ticket_id, error=e.message, exc_info=True)
            raise HTTPException(status_code=502, detail=e.message) from e

        log.info("manual_trigger_started", run_id=handle.run_id, attached=handle.attached)
        return StartWorkflowResponse(
            workflow_id=handle.run_id,
            status="attached" if handle.attached else "started",
        )

    @app.get("/api/v1/workflows/{workflow_id}")
    async def get_workflow(workflow_id: str) -> dict:
        try:
            snapshot = await runtime.query(workflow_id)
        except RunNotFoundError as e:
            raise HTTPException(status_code=404, detail=e.message) from e
        return {"workflow_id": workflow_id, **snapshot.to_dict()}

    @app.delete("/api/v1/workflows/{workflow_id}")
    async def cancel_workflow(workflow_id: str) -> dict:
        try:
            await runtime.cancel(workflow_id)
        except RunNotFoundError as e:
            raise HTTPException(status_code=404, detail=e.message) from e
        log.info("manual_cancel_requested", run_id=workflow_id)
        return {"success": True}

    @app.get("/health")
    async def health_check() -> dict:
        return {"status": "healthy", "service": "khitomer"}

    return app
