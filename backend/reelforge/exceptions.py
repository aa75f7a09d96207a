"""Custom exceptions for the render pipeline.

Structural failures (bad template, unavailable source, empty output) abort a
render and carry enough location detail (scene index, stage) to diagnose.
Per-tick conditions such as seek timeouts are logged by the scheduler and
never escape a render.
"""

from reelforge.constants.error_codes import get_error_spec
from reelforge.schemas.envelope import ErrorInfo, ErrorLocation, SuggestedAction


class ReelforgeError(Exception):
    """Base exception for all reelforge errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        location: ErrorLocation | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.location = location
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API response."""
        spec = get_error_spec(self.code)

        suggested_actions: list[SuggestedAction] = []
        if "suggested_action" in spec:
            suggested_actions.append(
                SuggestedAction(
                    action=spec["suggested_action"],
                    parameters=spec.get("parameters", {}),
                )
            )

        return ErrorInfo(
            code=self.code,
            message=self.message,
            location=self.location,
            retryable=spec.get("retryable", False),
            suggested_fix=self.suggested_fix or spec.get("suggested_fix"),
            suggested_actions=suggested_actions,
        )


# =============================================================================
# Template Errors (400)
# =============================================================================


class InvalidTemplateError(ReelforgeError):
    """Malformed scenes or duration, rejected before scheduling."""

    code = "INVALID_TEMPLATE"
    status_code = 400
    message = "Invalid template"

    def __init__(
        self,
        message: str | None = None,
        *,
        scene_index: int | None = None,
        field: str | None = None,
    ):
        location = None
        if scene_index is not None or field is not None:
            location = ErrorLocation(scene_index=scene_index, field=field, stage="validate")
        super().__init__(message, location=location)


# =============================================================================
# Source Errors
# =============================================================================


class SourceUnavailableError(ReelforgeError):
    """Source video could not be fetched, opened or decoded."""

    code = "SOURCE_UNAVAILABLE"
    status_code = 502
    message = "Source video unavailable"

    def __init__(self, message: str | None = None, *, stage: str = "fetch"):
        super().__init__(message, location=ErrorLocation(stage=stage))


class SeekTimeoutError(ReelforgeError):
    """Source never reached the requested position in time."""

    code = "SEEK_TIMEOUT"
    status_code = 504
    message = "Source seek timed out"

    def __init__(self, target: float, scene_index: int | None = None):
        self.target = target
        super().__init__(
            f"Seek to {target:.3f}s timed out",
            location=ErrorLocation(scene_index=scene_index, stage="schedule"),
        )


# =============================================================================
# Encoder Errors
# =============================================================================


class EmptyOutputError(ReelforgeError):
    """Encoder finished without capturing any data."""

    code = "EMPTY_OUTPUT"
    status_code = 500
    message = "Empty video output"

    def __init__(self, message: str | None = None):
        super().__init__(message, location=ErrorLocation(stage="encode"))


class EncoderError(ReelforgeError):
    """Encoder process failed."""

    code = "ENCODER_ERROR"
    status_code = 500
    message = "Encoder failed"

    def __init__(self, message: str | None = None):
        super().__init__(message, location=ErrorLocation(stage="encode"))


class EncoderBusyError(ReelforgeError):
    """A second encoder session was started while one is active."""

    code = "ENCODER_BUSY"
    status_code = 409
    message = "An encoder session is already active"


# =============================================================================
# Render Lifecycle Errors
# =============================================================================


class RenderTimeoutError(ReelforgeError):
    """Final generation exceeded its wall-clock budget."""

    code = "RENDER_TIMEOUT"
    status_code = 504
    message = "Render timed out"

    def __init__(self, timeout_s: float):
        super().__init__(
            f"Render exceeded {timeout_s:.0f}s",
            location=ErrorLocation(stage="schedule"),
        )


class RenderCancelledError(ReelforgeError):
    """Render was cancelled before completion."""

    code = "RENDER_CANCELLED"
    status_code = 499
    message = "Render cancelled"
