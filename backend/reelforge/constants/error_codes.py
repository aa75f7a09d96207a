"""Error codes dictionary for the render API.

This is the single source of truth for all error codes, their retryability,
and suggested recovery actions. Used by exception handlers to generate
machine-readable error responses.
"""

from typing import Any, TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_fix: str
    suggested_action: str
    parameters: dict[str, Any]


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Template errors (not retryable, fix input)
    # ==========================================================================
    "INVALID_TEMPLATE": {
        "retryable": False,
        "suggested_fix": "Check scene times (outputEnd > outputStart) and a positive template duration",
    },
    # ==========================================================================
    # Source errors
    # ==========================================================================
    "SOURCE_UNAVAILABLE": {
        "retryable": False,
        "suggested_fix": "Verify the source URL is reachable and points to a decodable video",
    },
    "SEEK_TIMEOUT": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 1000, "max_retries": 1},
    },
    # ==========================================================================
    # Encoder errors
    # ==========================================================================
    "EMPTY_OUTPUT": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 2000, "max_retries": 2},
        "suggested_fix": "The encoder captured no data; retry the render",
    },
    "ENCODER_ERROR": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 2000, "max_retries": 2},
    },
    "ENCODER_BUSY": {
        "retryable": True,
        "suggested_action": "wait_for_completion",
        "suggested_fix": "Only one encoder session may run per render; wait for it to finish",
    },
    # ==========================================================================
    # Render lifecycle
    # ==========================================================================
    "RENDER_TIMEOUT": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 5000, "max_retries": 1},
        "suggested_fix": "Shorten the template or raise REELFORGE_RENDER_TIMEOUT_S",
    },
    "RENDER_CANCELLED": {
        "retryable": True,
    },
    # ==========================================================================
    # Request errors
    # ==========================================================================
    "BAD_REQUEST": {
        "retryable": False,
    },
    "VALIDATION_ERROR": {
        "retryable": False,
    },
    "NOT_FOUND": {
        "retryable": False,
    },
    "INTERNAL_ERROR": {
        "retryable": False,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with retryable flag and suggested actions
    """
    return ERROR_CODES.get(code, {"retryable": False})


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_spec(code).get("retryable", False)
