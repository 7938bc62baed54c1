"""
Custom assertion helpers for model and database state.
"""
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select

from shipyard.models import Deployment, WorkspaceLock


def assert_model_fields(model: Any, expected: dict[str, Any]) -> None:
    """Assert model instance has expected field values."""
    for field, value in expected.items():
        actual = getattr(model, field, None)
        assert actual == value, (
            f"Expected {field}={value!r}, got {field}={actual!r}"
        )


def assert_schema_valid(schema_class: type[BaseModel], data: dict[str, Any]) -> BaseModel:
    """Assert data validates against Pydantic schema.

    Returns the validated schema instance.
    """
    try:
        return schema_class(**data)
    except PydanticValidationError as e:
        raise AssertionError(f"Schema validation failed: {e}")


def assert_schema_invalid(schema_class: type[BaseModel], data: dict[str, Any]) -> None:
    """Assert data fails validation against Pydantic schema."""
    try:
        schema_class(**data)
    except PydanticValidationError:
        return
    raise AssertionError(
        f"Expected validation to fail for {schema_class.__name__} with data: {data}"
    )


def assert_enum_value(model: Any, field: str, expected_enum: Any) -> None:
    """Assert model field has expected enum value."""
    actual = getattr(model, field)
    if hasattr(expected_enum, "value"):
        # Handle str Enums that store value in DB
        assert actual == expected_enum.value or actual == expected_enum, (
            f"Expected {field}={expected_enum}, got {actual}"
        )
    else:
        assert actual == expected_enum, (
            f"Expected {field}={expected_enum}, got {actual}"
        )


async def fetch_deployment(session_factory, deployment_id: str) -> Deployment:
    """Read a deployment through a fresh session."""
    async with session_factory() as session:
        result = await session.execute(select(Deployment).where(Deployment.id == deployment_id))
        return result.scalar_one()


async def fetch_lock(session_factory, project_id: str) -> WorkspaceLock | None:
    async with session_factory() as session:
        result = await session.execute(
            select(WorkspaceLock).where(WorkspaceLock.project_id == project_id)
        )
        return result.scalar_one_or_none()


async def assert_lock_absent(session_factory, project_id: str) -> None:
    """Assert nobody holds the project's workspace lock."""
    lock = await fetch_lock(session_factory, project_id)
    assert lock is None, f"Expected no lock on project {project_id}, held by {lock.deployment_id}"


async def assert_lock_held_by(session_factory, project_id: str, deployment_id: str) -> None:
    lock = await fetch_lock(session_factory, project_id)
    assert lock is not None, f"Expected deployment {deployment_id} to hold the lock, none held"
    assert lock.deployment_id == deployment_id, (
        f"Expected lock holder {deployment_id}, got {lock.deployment_id}"
    )
