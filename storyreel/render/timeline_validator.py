"""Timeline validation.

Checks a list of layers before anything is fetched or rendered and computes
the output duration. Pure: no I/O, no logging side effects beyond debug.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import pydantic

from storyreel.exceptions import ErrorLocation, ValidationError
from storyreel.schemas.timeline import LayerKind, TimelineLayer


@dataclass(frozen=True)
class ValidatedTimeline:
    """Layers whose clips are sorted and non-overlapping, plus total duration."""

    layers: tuple[TimelineLayer, ...]
    duration_s: float

    def layers_of(self, *kinds: LayerKind) -> list[tuple[int, TimelineLayer]]:
        """Layers of the given kinds with their original positions."""
        return [(i, layer) for i, layer in enumerate(self.layers) if layer.kind in kinds]

    def source_uris(self) -> list[str]:
        """Distinct source URIs in first-seen order."""
        seen: dict[str, None] = {}
        for layer in self.layers:
            if layer.kind == LayerKind.SUBTITLE:
                continue
            for clip in layer.clips:
                if clip.source_uri:
                    seen.setdefault(clip.source_uri, None)
        return list(seen)


def parse_layers(raw_layers: Iterable[TimelineLayer | dict[str, Any]]) -> list[TimelineLayer]:
    """Coerce editor JSON into TimelineLayer models."""
    layers: list[TimelineLayer] = []
    for index, raw in enumerate(raw_layers):
        if isinstance(raw, TimelineLayer):
            layers.append(raw)
            continue
        try:
            layers.append(TimelineLayer.model_validate(raw))
        except pydantic.ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ()))
            raise ValidationError(
                "INVALID_CLIP",
                f"Invalid layer {index}: {field}: {first.get('msg')}",
                location=ErrorLocation(layer_index=index),
            ) from e
    return layers


def _check_clip_fields(layer_index: int, layer: TimelineLayer) -> None:
    if layer.volume is not None and not 0.0 <= layer.volume <= 1.0:
        raise ValidationError(
            "INVALID_CLIP",
            f"Layer '{layer.label}' volume must be between 0.0 and 1.0, got {layer.volume}",
            location=ErrorLocation(layer_index=layer_index),
        )

    for clip_index, clip in enumerate(layer.clips):
        location = ErrorLocation(layer_index=layer_index, clip_index=clip_index, uri=clip.source_uri)

        if clip.start_time < 0 or clip.duration <= 0:
            raise ValidationError(
                "NEGATIVE_TIME",
                f"Clip {clip_index} on layer '{layer.label}' has startTime={clip.start_time}, "
                f"duration={clip.duration}; startTime must be >= 0 and duration > 0",
                location=location,
            )

        if layer.kind == LayerKind.SUBTITLE:
            if not clip.text:
                raise ValidationError(
                    "INVALID_CLIP",
                    f"Subtitle clip {clip_index} on layer '{layer.label}' has no text",
                    location=location,
                )
        elif not clip.source_uri:
            raise ValidationError(
                "INVALID_CLIP",
                f"Clip {clip_index} on layer '{layer.label}' has no sourceUri",
                location=location,
            )

        if clip.source_trim_start is not None and clip.source_trim_start < 0:
            raise ValidationError(
                "NEGATIVE_TIME",
                f"Clip {clip_index} on layer '{layer.label}' has a negative sourceTrimStart",
                location=location,
            )
        if clip.source_trim_end is not None and clip.source_trim_end <= clip.trim_start:
            raise ValidationError(
                "INVALID_CLIP",
                f"Clip {clip_index} on layer '{layer.label}' has sourceTrimEnd <= sourceTrimStart",
                location=location,
            )


def _check_overlaps(layer_index: int, layer: TimelineLayer) -> TimelineLayer:
    ordered = sorted(layer.clips, key=lambda c: c.start_time)
    for prev, curr in zip(ordered, ordered[1:]):
        # Half-open intervals: touching clips are sequential, not overlapping
        if curr.start_time < prev.end_time and prev.start_time < curr.end_time:
            raise ValidationError(
                "OVERLAPPING_CLIPS",
                f"Clips on layer '{layer.label}' overlap: "
                f"[{prev.start_time}, {prev.end_time}) and [{curr.start_time}, {curr.end_time})",
                location=ErrorLocation(
                    layer_index=layer_index,
                    clip_index=layer.clips.index(curr),
                    uri=curr.source_uri,
                ),
            )
    if ordered == layer.clips:
        return layer
    return layer.model_copy(update={"clips": ordered})


def validate(layers: Sequence[TimelineLayer | dict[str, Any]]) -> ValidatedTimeline:
    """Validate a timeline and compute its output duration.

    Raises:
        ValidationError: EMPTY_TIMELINE, NEGATIVE_TIME, OVERLAPPING_CLIPS
            or INVALID_CLIP.
    """
    if not layers:
        raise ValidationError("EMPTY_TIMELINE", "Timeline has no layers")

    parsed = parse_layers(layers)

    validated: list[TimelineLayer] = []
    for layer_index, layer in enumerate(parsed):
        _check_clip_fields(layer_index, layer)
        validated.append(_check_overlaps(layer_index, layer))

    duration_s = max(
        (clip.end_time for layer in validated for clip in layer.clips),
        default=0.0,
    )
    if duration_s <= 0:
        raise ValidationError("EMPTY_TIMELINE", "Timeline has no clips")

    return ValidatedTimeline(layers=tuple(validated), duration_s=duration_s)
