"""
Base factory and helpers shared by the model factories.

Factories only build instances; tests persist them through persist() on the
session they are arranging with.
"""
from uuid import uuid4

import factory


class BaseFactory(factory.Factory):
    """Builds plain SQLAlchemy model instances."""

    class Meta:
        abstract = True

    @classmethod
    def _create(cls, model_class, *args, **kwargs):
        return model_class(*args, **kwargs)


def generate_uuid() -> str:
    return str(uuid4())


def generate_branch_name(name: str) -> str:
    """Release branch for a name, e.g. "Hot Fix" -> "release/hot-fix"."""
    slug = "".join(c for c in name.lower().replace(" ", "-") if c.isalnum() or c == "-")
    return f"release/{slug[:40]}"


async def persist(session, *objects):
    """Add objects to the session and commit; returns the object(s) back."""
    session.add_all(objects)
    await session.commit()
    return objects[0] if len(objects) == 1 else objects
