"""MCP tool implementations over the context pipeline."""

from datetime import datetime, timezone
from typing import Any

__all__ = ["create_error_response", "utc_timestamp", "validation_error"]


def utc_timestamp() -> str:
    """Current time as an ISO 8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


def create_error_response(
    message: str,
    error_type: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the error payload every tool returns instead of raising.

    Args:
        message: Human readable description
        error_type: Category, "ValidationError" for bad input and
            "RuntimeError" for pipeline failures
        details: Extra machine readable fields

    Returns:
        Dictionary with `error` set to True
    """
    response: dict[str, Any] = {
        "error": True,
        "error_type": error_type,
        "message": message,
        "timestamp": utc_timestamp(),
    }
    if details:
        response["details"] = details
    return response


def validation_error(message: str, **details: Any) -> dict[str, Any]:
    """Error payload for rejected tool input."""
    return create_error_response(message, "ValidationError", details or None)
