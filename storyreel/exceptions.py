"""Custom exceptions for the export pipeline.

Every failure raised by a pipeline component carries a machine-readable code
from ``constants.error_codes``. The pipeline boundary converts them into a
failed ``ExportResult``; none of these types escape past it.
"""

from dataclasses import dataclass

from storyreel.constants.error_codes import get_error_spec


@dataclass(frozen=True)
class ErrorLocation:
    """Where in the timeline an error was detected."""

    layer_index: int | None = None
    clip_index: int | None = None
    uri: str | None = None

    def describe(self) -> str:
        parts = []
        if self.layer_index is not None:
            parts.append(f"layer {self.layer_index}")
        if self.clip_index is not None:
            parts.append(f"clip {self.clip_index}")
        if self.uri:
            parts.append(self.uri)
        return ", ".join(parts)


class StoryreelError(Exception):
    """Base exception for all export pipeline errors."""

    code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        location: ErrorLocation | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        self.location = location
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return get_error_spec(self.code).get("retryable", False)

    def user_message(self) -> str:
        """Message safe to show to the end user."""
        spec = get_error_spec(self.code)
        if spec.get("expose_message", False):
            return self.message
        return spec.get("user_message", self.__class__.message)


# =============================================================================
# Timeline validation (caller input defects)
# =============================================================================


class ValidationError(StoryreelError):
    """The timeline is malformed. Never retried."""

    code = "INVALID_CLIP"
    message = "Invalid timeline"

    def __init__(self, code: str, message: str, *, location: ErrorLocation | None = None):
        super().__init__(message, code=code, location=location)


# =============================================================================
# Asset resolution (upstream storage defects)
# =============================================================================


class AssetNotFoundError(StoryreelError):
    """The store reports the referenced object missing. Never retried."""

    code = "ASSET_NOT_FOUND"
    message = "Asset not found"

    def __init__(self, uri: str | None = None):
        message = f"Asset not found: {uri}" if uri else self.message
        super().__init__(message, location=ErrorLocation(uri=uri) if uri else None)
        self.uri = uri


class AssetFetchError(StoryreelError):
    """Fetching an asset kept failing after the retry policy was exhausted."""

    code = "ASSET_FETCH_FAILED"
    message = "Failed to fetch asset"

    def __init__(self, uri: str, attempts: int, reason: str | None = None):
        message = f"Failed to fetch {uri} after {attempts} attempts"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, location=ErrorLocation(uri=uri))
        self.uri = uri
        self.attempts = attempts


class StorageUnavailableError(StoryreelError):
    """Transient storage or network failure; retried by the caller's policy."""

    code = "ASSET_FETCH_FAILED"
    message = "Storage temporarily unavailable"


class UploadError(StoryreelError):
    """The rendered output could not be stored."""

    code = "UPLOAD_FAILED"
    message = "Failed to upload rendered output"


# =============================================================================
# Planning / rendering
# =============================================================================


class PlanningError(StoryreelError):
    """Internal invariant break between resolver and plan builder."""

    code = "UNRESOLVED_ASSET"
    message = "Render planning failed"

    def __init__(self, message: str, *, code: str = "UNRESOLVED_ASSET", location: ErrorLocation | None = None):
        super().__init__(message, code=code, location=location)


class RenderError(StoryreelError):
    """The media backend failed. Not retried automatically."""

    code = "ENCODE_FAILED"
    message = "Failed to generate video"

    def __init__(self, backend_message: str | None = None, *, exposable: bool = True):
        message = backend_message.strip() if backend_message else self.message
        super().__init__(message or self.message)
        self.backend_message = backend_message
        self.exposable = exposable

    def user_message(self) -> str:
        if self.exposable and self.backend_message:
            return f"{self.__class__.message}: {self.message}"
        return get_error_spec(self.code).get("user_message", self.__class__.message)


class ExportCancelledError(StoryreelError):
    """The caller abandoned the export."""

    code = "EXPORT_CANCELLED"
    message = "Export cancelled"
