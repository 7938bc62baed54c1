# Custom assertion helpers

from .api import (
    assert_conflict,
    assert_error_response,
    assert_json_contains,
    assert_not_found,
    assert_status_code,
)
from .models import (
    assert_enum_value,
    assert_lock_absent,
    assert_lock_held_by,
    assert_model_fields,
    assert_schema_invalid,
    assert_schema_valid,
    fetch_deployment,
    fetch_lock,
)

__all__ = [
    # API assertions
    "assert_conflict",
    "assert_error_response",
    "assert_json_contains",
    "assert_not_found",
    "assert_status_code",
    # Model assertions
    "assert_enum_value",
    "assert_lock_absent",
    "assert_lock_held_by",
    "assert_model_fields",
    "assert_schema_invalid",
    "assert_schema_valid",
    "fetch_deployment",
    "fetch_lock",
]
