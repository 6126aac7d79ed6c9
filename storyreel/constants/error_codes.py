"""Error codes dictionary for export failures.

This is the single source of truth for all error codes, their retryability,
and the message shown to end users when the internal message must not leak.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    # Surface the exception message to the user as-is
    expose_message: bool
    user_message: str


GENERIC_EXPORT_FAILURE = "Failed to generate video"

# Error codes dictionary - single source of truth
ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Validation errors (not retryable, fix input)
    # ==========================================================================
    "EMPTY_TIMELINE": {
        "retryable": False,
        "expose_message": True,
        "user_message": "The timeline has no layers to export",
    },
    "OVERLAPPING_CLIPS": {
        "retryable": False,
        "expose_message": True,
        "user_message": "Clips on the same layer overlap",
    },
    "NEGATIVE_TIME": {
        "retryable": False,
        "expose_message": True,
        "user_message": "Clip start times must be >= 0 and durations > 0",
    },
    "INVALID_CLIP": {
        "retryable": False,
        "expose_message": True,
        "user_message": "The timeline contains an invalid clip",
    },
    # ==========================================================================
    # Storage errors
    # ==========================================================================
    "ASSET_NOT_FOUND": {
        "retryable": False,
        "expose_message": True,
        "user_message": "A media file referenced by the timeline no longer exists",
    },
    "ASSET_FETCH_FAILED": {
        "retryable": True,
        "expose_message": True,
        "user_message": "Could not download a media file, please try again",
    },
    "UPLOAD_FAILED": {
        "retryable": True,
        "expose_message": False,
        "user_message": "Could not store the rendered video, please try again",
    },
    # ==========================================================================
    # Internal / backend errors
    # ==========================================================================
    "UNRESOLVED_ASSET": {
        "retryable": False,
        "expose_message": False,
        "user_message": GENERIC_EXPORT_FAILURE,
    },
    "ENCODE_FAILED": {
        "retryable": True,
        "expose_message": True,
        "user_message": GENERIC_EXPORT_FAILURE,
    },
    "EXPORT_CANCELLED": {
        "retryable": True,
        "expose_message": True,
        "user_message": "Export cancelled",
    },
    "INTERNAL_ERROR": {
        "retryable": False,
        "expose_message": False,
        "user_message": GENERIC_EXPORT_FAILURE,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get the error specification for a code, falling back to INTERNAL_ERROR."""
    return ERROR_CODES.get(code, ERROR_CODES["INTERNAL_ERROR"])
