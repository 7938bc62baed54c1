"""
Custom assertion helpers for API testing.

These helpers provide cleaner, more expressive assertions for common
patterns in API tests.
"""
from typing import Any

from httpx import Response


def assert_status_code(response: Response, expected: int) -> None:
    """Assert response has expected status code with helpful error message."""
    assert response.status_code == expected, (
        f"Expected status {expected}, got {response.status_code}. "
        f"Response body: {response.text}"
    )


def assert_json_contains(response: Response, expected: dict[str, Any] = None, **kwargs) -> None:
    """Assert response JSON contains all expected key-value pairs.

    Can be called as:
        assert_json_contains(response, {"status": "PENDING"})
        assert_json_contains(response, status="PENDING")
    """
    if expected is None:
        expected = kwargs
    else:
        expected = {**expected, **kwargs}

    actual = response.json()
    for key, value in expected.items():
        assert key in actual, f"Expected key '{key}' not found in response: {actual}"
        assert actual[key] == value, (
            f"Expected {key}={value!r}, got {key}={actual[key]!r}"
        )


def assert_error_response(response: Response, status_code: int, detail: str) -> None:
    """Assert response is an error with expected status and detail message."""
    assert_status_code(response, status_code)
    actual = response.json()
    assert "detail" in actual, f"Expected 'detail' in error response: {actual}"
    assert actual["detail"] == detail, (
        f"Expected detail '{detail}', got '{actual['detail']}'"
    )


def assert_not_found(response: Response, resource_type: str = None) -> None:
    """Assert response is a 404 Not Found error.

    If resource_type is provided, checks for "{resource_type} not found".
    """
    assert_status_code(response, 404)
    actual = response.json()
    assert "detail" in actual, f"Expected 'detail' in error response: {actual}"
    if resource_type:
        assert actual["detail"] == f"{resource_type} not found", (
            f"Expected '{resource_type} not found', got '{actual['detail']}'"
        )
    else:
        assert "not found" in actual["detail"].lower()


def assert_conflict(response: Response, holder_deployment_id: str | None = None) -> None:
    """Assert response is a 409 naming the deployment that holds the lock."""
    assert_status_code(response, 409)
    actual = response.json()
    if holder_deployment_id is not None:
        assert actual.get("holder_deployment_id") == holder_deployment_id, (
            f"Expected lock holder {holder_deployment_id}, got {actual.get('holder_deployment_id')}"
        )
