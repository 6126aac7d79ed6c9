from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class LayerKind(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    OVERLAY_IMAGE = "overlay-image"
    SUBTITLE = "subtitle"

    @property
    def is_visual(self) -> bool:
        return self in (LayerKind.VIDEO, LayerKind.OVERLAY_IMAGE)


# Layer types used by the storyboard editor before layers had a kind
EDITOR_LAYER_TYPES: dict[str, LayerKind] = {
    "video": LayerKind.VIDEO,
    "voiceover": LayerKind.AUDIO,
    "music": LayerKind.AUDIO,
}

FitMode = Literal["auto", "contain", "cover"]


class _TimelineModel(BaseModel):
    """Accepts both the editor's camelCase keys and snake_case."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class ClipTransform(_TimelineModel):
    """Fit box in normalized output-frame coordinates (0..1)."""

    x: float = 0.0
    y: float = 0.0
    width: float = 1.0
    height: float = 1.0
    fit: FitMode = "auto"


class DuckingConfig(_TimelineModel):
    """Lower this audio layer while the other audio layers are audible."""

    enabled: bool = True
    duck_to: float = 0.4
    attack_ms: int = 200
    release_ms: int = 500


class TimelineClip(_TimelineModel):
    # Times are in seconds; range checks happen in the validator so that
    # they map to timeline error codes instead of schema errors.
    source_uri: str | None = None
    start_time: float
    duration: float
    source_trim_start: float | None = None
    source_trim_end: float | None = None
    text: str | None = None
    transform: ClipTransform | None = None

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    @property
    def trim_start(self) -> float:
        return self.source_trim_start or 0.0

    @model_validator(mode="before")
    @classmethod
    def _from_editor_item(cls, data: Any) -> Any:
        """Map the editor's TimelineItem shape (content + metadata.trimStart)."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "content" in data and "sourceUri" not in data and "source_uri" not in data:
            data["sourceUri"] = data.pop("content") or None
        metadata = data.pop("metadata", None)
        if isinstance(metadata, dict):
            trim_start = metadata.get("trimStart")
            if isinstance(trim_start, (int, float)) and "sourceTrimStart" not in data:
                data["sourceTrimStart"] = trim_start
        for key in ("id", "type"):
            data.pop(key, None)
        return data


class TimelineLayer(_TimelineModel):
    kind: LayerKind
    clips: list[TimelineClip] = Field(default_factory=list)
    track_index: int = 0
    volume: float | None = None
    id: str | None = None
    name: str | None = None
    ducking: DuckingConfig | None = None
    use_source_audio: bool = False

    @property
    def label(self) -> str:
        return self.name or self.id or self.kind.value

    @property
    def gain(self) -> float:
        return 1.0 if self.volume is None else self.volume

    @model_validator(mode="before")
    @classmethod
    def _from_editor_layer(cls, data: Any) -> Any:
        """Map the editor's layer shape (type + items) onto kind + clips."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "kind" not in data and "type" in data:
            layer_type = data.pop("type")
            data["kind"] = EDITOR_LAYER_TYPES.get(layer_type, layer_type)
            # Editor exports keep the generated clips' soundtrack and duck the music under voiceovers
            if layer_type == "video" and "useSourceAudio" not in data and "use_source_audio" not in data:
                data["useSourceAudio"] = True
            if layer_type == "music" and "ducking" not in data:
                data["ducking"] = DuckingConfig()
        if "clips" not in data and "items" in data:
            data["clips"] = data.pop("items")
        return data
