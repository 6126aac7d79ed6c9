"""Render graph builder.

Turns a validated timeline plus its resolved assets into a ``RenderPlan``:

1. Visual layers (video, overlay-image) are stacked by ``trackIndex``; the
   lowest is the base. Ties keep their original order.
2. Each clip becomes one decode+trim step.
3. Two or more visual layers produce one composite step; a single layer is
   placed on the canvas by the encode step directly.
4. Audio layers are summed with per-layer gain in one mix step.
5. Subtitle layers become one sidecar caption track.
6. The encode step is always last.
"""

import logging
from typing import Mapping, Optional

from storyreel.exceptions import ErrorLocation, PlanningError
from storyreel.render.asset_resolver import ResolvedAsset
from storyreel.render.plan import (
    AudioMixOp,
    CaptionCue,
    CaptionTrackOp,
    CompositeOp,
    DecodeOp,
    EncodeOp,
    FitBox,
    RenderConfig,
    RenderPlan,
    RenderStep,
    StreamKind,
)
from storyreel.render.timeline_validator import ValidatedTimeline
from storyreel.schemas.timeline import ClipTransform, LayerKind, TimelineClip, TimelineLayer

logger = logging.getLogger(__name__)

# Below this, a computed pad is float noise rather than a short source
PAD_EPSILON_S = 0.001


def _orientation(width: int, height: int) -> str:
    if width > height:
        return "landscape"
    if height > width:
        return "portrait"
    return "square"


def resolve_fit_box(
    transform: ClipTransform | None,
    asset: ResolvedAsset,
    config: RenderConfig,
) -> FitBox:
    """Placement box for a visual clip.

    Without a transform the clip fills the frame. ``auto`` fit crops when the
    source and output share an orientation and letterboxes otherwise.
    """
    transform = transform or ClipTransform()
    fit = transform.fit
    if fit == "auto":
        if asset.width and asset.height:
            same = _orientation(asset.width, asset.height) == _orientation(config.width, config.height)
            fit = "cover" if same else "contain"
        else:
            fit = "contain"
    return FitBox(
        x=transform.x,
        y=transform.y,
        width=transform.width,
        height=transform.height,
        fit=fit,
    )


def _segment(clip: TimelineClip, asset: ResolvedAsset) -> tuple[float, float, float]:
    """Source (trim_start, trim_end, pad_s) for a clip."""
    if asset.is_image:
        return 0.0, clip.duration, 0.0

    trim_start = clip.trim_start
    trim_end = trim_start + clip.duration
    if clip.source_trim_end is not None:
        trim_end = min(trim_end, clip.source_trim_end)
    if asset.duration_s is not None and trim_end > asset.duration_s:
        logger.warning(
            f"[PLAN] {asset.uri} is {asset.duration_s:.3f}s, clip needs up to {trim_end:.3f}s; padding"
        )
        trim_end = max(trim_start, asset.duration_s)

    pad_s = clip.duration - (trim_end - trim_start)
    return trim_start, trim_end, pad_s if pad_s > PAD_EPSILON_S else 0.0


class PlanBuilder:
    """Builds one RenderPlan; a new builder is used per plan."""

    def __init__(
        self,
        timeline: ValidatedTimeline,
        assets: Mapping[str, ResolvedAsset],
        config: RenderConfig,
    ):
        self.timeline = timeline
        self.assets = assets
        self.config = config
        self._counters: dict[str, int] = {}

    def _next_id(self, prefix: str) -> str:
        n = self._counters.get(prefix, 0)
        self._counters[prefix] = n + 1
        return f"{prefix}{n}"

    def _asset_for(self, layer_index: int, clip_index: int, clip: TimelineClip) -> ResolvedAsset:
        asset = self.assets.get(clip.source_uri or "")
        if asset is None:
            raise PlanningError(
                f"No resolved asset for {clip.source_uri} (layer {layer_index}, clip {clip_index})",
                location=ErrorLocation(layer_index=layer_index, clip_index=clip_index, uri=clip.source_uri),
            )
        return asset

    def _decode(
        self,
        prefix: str,
        stream: StreamKind,
        layer_index: int,
        clip_index: int,
        layer: TimelineLayer,
        clip: TimelineClip,
        asset: ResolvedAsset,
    ) -> DecodeOp:
        trim_start, trim_end, pad_s = _segment(clip, asset)
        return DecodeOp(
            op_id=self._next_id(prefix),
            stream=stream,
            source_uri=asset.uri,
            local_path=asset.local_path,
            layer_index=layer_index,
            clip_index=clip_index,
            timeline_start=clip.start_time,
            duration=clip.duration,
            trim_start=trim_start,
            trim_end=trim_end,
            pad_s=pad_s,
            is_image=asset.is_image,
            fit_box=resolve_fit_box(clip.transform, asset, self.config) if stream == StreamKind.VIDEO else None,
            gain=layer.gain if stream == StreamKind.AUDIO else 1.0,
        )

    def _visual_steps(self, steps: list[RenderStep]) -> tuple[str, ...]:
        visual = [(i, layer) for i, layer in enumerate(self.timeline.layers) if layer.kind.is_visual]
        # sorted() is stable, so equal trackIndex keeps array order
        stacked = sorted(visual, key=lambda item: item[1].track_index)

        layer_ops: list[list[str]] = []
        for layer_index, layer in stacked:
            ops = []
            for clip_index, clip in enumerate(layer.clips):
                asset = self._asset_for(layer_index, clip_index, clip)
                op = self._decode("v", StreamKind.VIDEO, layer_index, clip_index, layer, clip, asset)
                steps.append(op)
                ops.append(op.op_id)
            if ops:
                layer_ops.append(ops)

        if not layer_ops:
            return ()
        if len(layer_ops) == 1:
            return tuple(layer_ops[0])

        composite = CompositeOp(
            op_id=self._next_id("composite"),
            inputs=tuple(op_id for ops in layer_ops for op_id in ops),
        )
        steps.append(composite)
        return (composite.op_id,)

    def _audio_steps(self, steps: list[RenderStep]) -> str | None:
        inputs: list[str] = []
        ducked: list[str] = []
        ducking = None

        for layer_index, layer in self.timeline.layers_of(LayerKind.VIDEO, LayerKind.AUDIO):
            if layer.kind == LayerKind.VIDEO and not layer.use_source_audio:
                continue
            for clip_index, clip in enumerate(layer.clips):
                asset = self._asset_for(layer_index, clip_index, clip)
                if layer.kind == LayerKind.VIDEO and not asset.has_audio:
                    continue
                op = self._decode("a", StreamKind.AUDIO, layer_index, clip_index, layer, clip, asset)
                steps.append(op)
                inputs.append(op.op_id)
                if layer.ducking is not None and layer.ducking.enabled:
                    ducked.append(op.op_id)
                    ducking = ducking or layer.ducking

        if not inputs:
            return None

        # Ducking needs something to duck under
        if len(ducked) == len(inputs):
            ducked, ducking = [], None

        mix = AudioMixOp(
            op_id=self._next_id("mix"),
            inputs=tuple(inputs),
            ducked_inputs=tuple(ducked),
            ducking=ducking,
            fade_out_s=self.config.fade_out_s if self.timeline.duration_s > self.config.fade_out_s else 0.0,
        )
        steps.append(mix)
        return mix.op_id

    def _caption_steps(self, steps: list[RenderStep]) -> str | None:
        cues = [
            CaptionCue(start=clip.start_time, end=clip.end_time, text=clip.text or "")
            for _, layer in self.timeline.layers_of(LayerKind.SUBTITLE)
            for clip in layer.clips
        ]
        if not cues:
            return None
        cues.sort(key=lambda cue: (cue.start, cue.end))
        track = CaptionTrackOp(op_id=self._next_id("captions"), cues=tuple(cues))
        steps.append(track)
        return track.op_id

    def build(self) -> RenderPlan:
        steps: list[RenderStep] = []
        video_inputs = self._visual_steps(steps)
        audio_input = self._audio_steps(steps)
        captions_input = self._caption_steps(steps)
        steps.append(
            EncodeOp(
                op_id=self._next_id("encode"),
                video_inputs=video_inputs,
                audio_input=audio_input,
                captions_input=captions_input,
            )
        )

        plan = RenderPlan(steps=tuple(steps), duration_s=self.timeline.duration_s, config=self.config)
        logger.info(f"[PLAN] {len(steps)} steps, duration={plan.duration_s:.3f}s")
        for line in plan.describe():
            logger.debug(f"[PLAN] {line}")
        return plan


def build_plan(
    timeline: ValidatedTimeline,
    assets: Mapping[str, ResolvedAsset],
    config: Optional[RenderConfig] = None,
) -> RenderPlan:
    """Compute the operation plan for a validated timeline.

    Raises:
        PlanningError: UNRESOLVED_ASSET when a clip's source is missing from assets
    """
    return PlanBuilder(timeline, assets, config or RenderConfig.from_settings()).build()
