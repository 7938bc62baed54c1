"""FastAPI dependencies shared by the routers."""
from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.database import get_db
from shipyard.models import User
from shipyard.services.deployment_service import DeploymentService
from shipyard.services.log_stream import LogStreamPublisher, get_log_stream_publisher


async def get_current_user(
    x_user_id: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the caller from the X-User-Id header set by the auth proxy."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user = await db.get(User, x_user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


_deployment_service: DeploymentService | None = None


def get_deployment_service() -> DeploymentService:
    global _deployment_service
    if _deployment_service is None:
        _deployment_service = DeploymentService()
    return _deployment_service


def get_publisher() -> LogStreamPublisher:
    return get_log_stream_publisher()
