"""
Durable per-project workspace lock.

One row per project at most: the unique constraint on project_id is what
keeps two deployments out of the same workspace, across API workers and
process restarts.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import String, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from shipyard.database import Base


class WorkspaceLock(Base):
    __tablename__ = "workspace_locks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    project_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("projects.id"),
        nullable=False,
        unique=True,
        index=True,
    )
    deployment_id: Mapped[str] = mapped_column(String(36), ForeignKey("deployments.id"), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<WorkspaceLock project={self.project_id} deployment={self.deployment_id}>"
