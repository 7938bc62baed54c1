from shipyard.schemas.deployment import (
    ApprovalDecision,
    ApprovalRead,
    DeploymentCreate,
    DeploymentCreated,
    DeploymentDetail,
    DeploymentPage,
    DeploymentRead,
)

__all__ = [
    "ApprovalDecision",
    "ApprovalRead",
    "DeploymentCreate",
    "DeploymentCreated",
    "DeploymentDetail",
    "DeploymentPage",
    "DeploymentRead",
]
