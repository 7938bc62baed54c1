from datetime import datetime

from fastapi import APIRouter, Depends, Header, Query
from sse_starlette.sse import EventSourceResponse
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.database import get_db
from shipyard.dependencies import get_current_user, get_deployment_service, get_publisher
from shipyard.models import DeploymentStatus, User
from shipyard.schemas import (
    ApprovalDecision,
    ApprovalRead,
    DeploymentCreate,
    DeploymentCreated,
    DeploymentDetail,
    DeploymentPage,
    DeploymentRead,
)
from shipyard.services.deployment_service import DeploymentService
from shipyard.services.log_stream import LogStreamPublisher

router = APIRouter(prefix="/api/deployments", tags=["deployments"])


async def _detail(db: AsyncSession, service: DeploymentService, deployment) -> DeploymentDetail:
    detail = DeploymentDetail.model_validate(deployment)
    detail.holds_lock = await service.holds_lock(db, deployment)
    return detail


@router.post("", response_model=DeploymentCreated, status_code=201)
async def create_deployment(
    body: DeploymentCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
):
    deployment = await service.create_deployment(
        db, user, body.project_id, body.workflow_id, branch=body.branch
    )
    return DeploymentCreated(
        deployment=DeploymentRead.model_validate(deployment),
        approval=ApprovalRead.model_validate(deployment.approval) if deployment.approval else None,
    )


@router.get("", response_model=DeploymentPage)
async def list_deployments(
    project_id: str | None = None,
    workflow_id: str | None = None,
    status: DeploymentStatus | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
):
    items, total = await service.list_deployments(
        db,
        user,
        project_id=project_id,
        workflow_id=workflow_id,
        status=status,
        start_date=start_date,
        end_date=end_date,
        page=page,
        page_size=page_size,
    )
    return DeploymentPage(
        items=[DeploymentRead.model_validate(d) for d in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{deployment_id}", response_model=DeploymentDetail)
async def get_deployment(
    deployment_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
):
    deployment = await service.get_deployment(db, user, deployment_id)
    return await _detail(db, service, deployment)


@router.post("/{deployment_id}/execute", response_model=DeploymentDetail)
async def execute_deployment(
    deployment_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
):
    deployment = await service.execute(db, user, deployment_id)
    return await _detail(db, service, deployment)


@router.post("/{deployment_id}/approve", response_model=DeploymentDetail)
async def approve_deployment(
    deployment_id: str,
    body: ApprovalDecision | None = None,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
):
    comment = body.comment if body else None
    deployment = await service.approve(db, user, deployment_id, comment=comment)
    return await _detail(db, service, deployment)


@router.post("/{deployment_id}/reject", response_model=DeploymentDetail)
async def reject_deployment(
    deployment_id: str,
    body: ApprovalDecision | None = None,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
):
    comment = body.comment if body else None
    deployment = await service.reject(db, user, deployment_id, comment=comment)
    return await _detail(db, service, deployment)


@router.post("/{deployment_id}/cancel", response_model=DeploymentDetail)
async def cancel_deployment(
    deployment_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
):
    deployment = await service.cancel(db, user, deployment_id)
    return await _detail(db, service, deployment)


@router.get("/{deployment_id}/logs")
async def stream_logs(
    deployment_id: str,
    offset: int | None = Query(default=None, ge=0),
    last_event_id: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
    publisher: LogStreamPublisher = Depends(get_publisher),
):
    """
    Stream a deployment's log via Server-Sent Events.

    Event types:
    - connected: Stream opened, carries the starting offset
    - logs: New log text, id is the cursor to resume from
    - heartbeat: Keep-alive while the deployment is active
    - complete: Deployment reached a terminal status
    - error: Deployment missing or log read failed
    """
    await service.get_deployment(db, user, deployment_id)

    start = offset
    if start is None and last_event_id and last_event_id.isdigit():
        start = int(last_event_id)

    async def event_generator():
        async for event in publisher.stream(deployment_id, offset=start or 0):
            yield event.to_sse()

    return EventSourceResponse(event_generator())
