"""
API payload factories.

Functions returning request bodies for the deployments API.
"""
from typing import Any


def deployment_create_payload(project_id: str, workflow_id: str, branch: str | None = None) -> dict[str, Any]:
    """Generate a deployment create request payload."""
    payload = {"project_id": project_id, "workflow_id": workflow_id}
    if branch is not None:
        payload["branch"] = branch
    return payload


def approval_decision_payload(comment: str | None = None) -> dict[str, Any]:
    """Generate an approve/reject request payload."""
    return {"comment": comment}


def user_headers(user) -> dict[str, str]:
    """Identity header the auth proxy would set for this user."""
    return {"X-User-Id": user.id}
