from datetime import datetime
from uuid import uuid4

from sqlalchemy import String, DateTime, Text, ForeignKey, Integer, Boolean, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shipyard.database import Base


class Workflow(Base):
    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    require_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    project: Mapped["Project"] = relationship("Project", back_populates="workflows")
    commands: Mapped[list["WorkflowCommand"]] = relationship(
        "WorkflowCommand",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowCommand.sequence",
    )


class WorkflowCommand(Base):
    __tablename__ = "workflow_commands"
    __table_args__ = (UniqueConstraint("workflow_id", "sequence", name="uq_workflow_command_sequence"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    workflow_id: Mapped[str] = mapped_column(String(36), ForeignKey("workflows.id"), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    command: Mapped[str] = mapped_column(Text, nullable=False)

    workflow: Mapped["Workflow"] = relationship("Workflow", back_populates="commands")
