from storyreel.schemas.export import ExportResult, ProgressEvent
from storyreel.schemas.timeline import (
    ClipTransform,
    DuckingConfig,
    LayerKind,
    TimelineClip,
    TimelineLayer,
)

__all__ = [
    "ClipTransform",
    "DuckingConfig",
    "ExportResult",
    "LayerKind",
    "ProgressEvent",
    "TimelineClip",
    "TimelineLayer",
]
