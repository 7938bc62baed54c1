from datetime import datetime
from pydantic import BaseModel, Field

from shipyard.models.approval import ApprovalStatus
from shipyard.models.deployment import DeploymentStatus


class DeploymentCreate(BaseModel):
    project_id: str
    workflow_id: str
    branch: str | None = None


class ApprovalDecision(BaseModel):
    comment: str | None = Field(default=None, max_length=2000)


class ApprovalRead(BaseModel):
    id: str
    deployment_id: str
    requester_id: str
    approver_id: str | None = None
    status: ApprovalStatus
    comment: str | None = None
    expires_at: datetime
    decided_at: datetime | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class DeploymentRead(BaseModel):
    id: str
    project_id: str
    workflow_id: str
    user_id: str
    branch: str | None = None
    status: DeploymentStatus
    error_message: str | None = None
    duration: int | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class DeploymentDetail(DeploymentRead):
    logs: str = ""
    approval: ApprovalRead | None = None
    holds_lock: bool = False


class DeploymentCreated(BaseModel):
    deployment: DeploymentRead
    approval: ApprovalRead | None = None


class DeploymentPage(BaseModel):
    items: list[DeploymentRead]
    total: int
    page: int
    page_size: int
