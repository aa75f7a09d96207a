from reelforge.schemas.envelope import (
    EnvelopeResponse,
    ErrorInfo,
    ErrorLocation,
    ResponseMeta,
    SuggestedAction,
)

__all__ = [
    "EnvelopeResponse",
    "ErrorInfo",
    "ErrorLocation",
    "ResponseMeta",
    "SuggestedAction",
]
