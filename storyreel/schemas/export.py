from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ProgressEvent(BaseModel):
    """One progress notification on the export channel."""

    percent: int


class ExportResult(BaseModel):
    """Terminal outcome of one export call."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    video_uri: str | None = None
    vtt_url: str | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def succeeded(cls, video_uri: str, vtt_url: str | None = None) -> "ExportResult":
        return cls(success=True, video_uri=video_uri, vtt_url=vtt_url)

    @classmethod
    def failed(cls, error: str, error_code: str) -> "ExportResult":
        return cls(success=False, error=error, error_code=error_code)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the caller's camelCase shape, omitting unset fields."""
        return self.model_dump(by_alias=True, exclude_none=True)
