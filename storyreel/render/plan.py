"""Render plan: the ordered, resolved operations derived from a timeline.

A plan is immutable and backend-neutral. ``ffmpeg_graph`` translates it into
one FFmpeg invocation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional, Union

from storyreel.config import Settings, get_settings
from storyreel.schemas.timeline import DuckingConfig


class StreamKind(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"


@dataclass(frozen=True)
class RenderConfig:
    """Output format for one export."""

    width: int = 1920
    height: int = 1080
    fps: int = 30
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    crf: int = 23
    preset: str = "veryfast"
    audio_bitrate: str = "192k"
    sample_rate: int = 48000
    fade_out_s: float = 3.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RenderConfig":
        settings = settings or get_settings()
        return cls(
            width=settings.render_output_width,
            height=settings.render_output_height,
            fps=settings.render_fps,
            video_codec=settings.render_video_codec,
            crf=settings.render_crf,
            preset=settings.render_preset,
            audio_bitrate=settings.render_audio_bitrate,
            sample_rate=settings.render_audio_sample_rate,
            fade_out_s=settings.export_audio_fade_out_s,
        )


@dataclass(frozen=True)
class FitBox:
    """Placement in normalized output coordinates with a resolved fit mode."""

    x: float = 0.0
    y: float = 0.0
    width: float = 1.0
    height: float = 1.0
    fit: Literal["contain", "cover"] = "contain"


@dataclass(frozen=True)
class DecodeOp:
    """Decode one clip's source and trim it to the clip's segment."""

    op_id: str
    stream: StreamKind
    source_uri: str
    local_path: str
    layer_index: int
    clip_index: int
    timeline_start: float
    duration: float
    trim_start: float = 0.0
    trim_end: float = 0.0
    # Seconds the source is short of the clip duration (hold last frame / silence)
    pad_s: float = 0.0
    is_image: bool = False
    fit_box: FitBox | None = None
    gain: float = 1.0

    @property
    def timeline_end(self) -> float:
        return self.timeline_start + self.duration


@dataclass(frozen=True)
class CompositeOp:
    """Stack visual decode outputs, bottom to top, over the black canvas."""

    op_id: str
    inputs: tuple[str, ...]


@dataclass(frozen=True)
class AudioMixOp:
    """Sum audio decode outputs; ducked inputs are compressed under the rest."""

    op_id: str
    inputs: tuple[str, ...]
    ducked_inputs: tuple[str, ...] = ()
    ducking: DuckingConfig | None = None
    fade_out_s: float = 0.0


@dataclass(frozen=True)
class CaptionCue:
    start: float
    end: float
    text: str


@dataclass(frozen=True)
class CaptionTrackOp:
    """Sidecar caption track (WebVTT), never burned into pixels."""

    op_id: str
    cues: tuple[CaptionCue, ...]


@dataclass(frozen=True)
class EncodeOp:
    """Final container encode. Always the last step of a plan."""

    op_id: str
    # Either a single composite op id or the base layer's decode op ids
    video_inputs: tuple[str, ...]
    audio_input: str | None = None
    captions_input: str | None = None


RenderStep = Union[DecodeOp, CompositeOp, AudioMixOp, CaptionTrackOp, EncodeOp]


@dataclass(frozen=True)
class RenderPlan:
    steps: tuple[RenderStep, ...]
    duration_s: float
    config: RenderConfig = field(default_factory=RenderConfig)

    def get(self, op_id: str) -> RenderStep:
        for step in self.steps:
            if step.op_id == op_id:
                return step
        raise KeyError(op_id)

    @property
    def decode_ops(self) -> list[DecodeOp]:
        return [s for s in self.steps if isinstance(s, DecodeOp)]

    @property
    def composite(self) -> CompositeOp | None:
        return next((s for s in self.steps if isinstance(s, CompositeOp)), None)

    @property
    def audio_mix(self) -> AudioMixOp | None:
        return next((s for s in self.steps if isinstance(s, AudioMixOp)), None)

    @property
    def captions(self) -> CaptionTrackOp | None:
        return next((s for s in self.steps if isinstance(s, CaptionTrackOp)), None)

    @property
    def encode(self) -> EncodeOp:
        last = self.steps[-1]
        assert isinstance(last, EncodeOp), "encode must be the last step"
        return last

    def visual_chain(self) -> list[DecodeOp]:
        """Visual decode ops in stacking order, bottom first."""
        encode = self.encode
        ids = encode.video_inputs
        if len(ids) == 1 and isinstance(self.get(ids[0]), CompositeOp):
            ids = self.get(ids[0]).inputs  # type: ignore[union-attr]
        return [self.get(op_id) for op_id in ids]  # type: ignore[misc]

    def describe(self) -> list[str]:
        """One line per step, for logs."""
        lines = []
        for step in self.steps:
            if isinstance(step, DecodeOp):
                lines.append(
                    f"{step.op_id}: decode {step.stream.value} {step.source_uri} "
                    f"[{step.trim_start:.3f}-{step.trim_end:.3f}] @ {step.timeline_start:.3f}s"
                )
            elif isinstance(step, CompositeOp):
                lines.append(f"{step.op_id}: composite {', '.join(step.inputs)}")
            elif isinstance(step, AudioMixOp):
                lines.append(f"{step.op_id}: mix {', '.join(step.inputs)}")
            elif isinstance(step, CaptionTrackOp):
                lines.append(f"{step.op_id}: captions ({len(step.cues)} cues)")
            else:
                lines.append(f"{step.op_id}: encode video={step.video_inputs} audio={step.audio_input}")
        return lines
