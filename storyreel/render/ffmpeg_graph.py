"""Translate a RenderPlan into one FFmpeg invocation.

Input 0 is a black canvas of the output size and duration. Every visual
decode op becomes one input whose trimmed, fitted stream is overlaid on the
canvas in stacking order. Audio decode ops are trimmed, delayed to their
timeline position and summed, with ducked layers side-chain compressed under
the rest. Without audio a silent track is generated so the container always
carries one.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from storyreel.config import Settings, get_settings
from storyreel.render.plan import AudioMixOp, DecodeOp, FitBox, RenderPlan

logger = logging.getLogger(__name__)

# FFmpeg's between(t,start,end) can leave a 1-frame gap at clip boundaries
# due to floating-point timing. Later overlays cover the overlap.
FRAME_OVERLAP_MARGIN = 0.034  # Slightly more than 1 frame at 30fps

LOUDNORM_FILTER = "loudnorm=I=-16:TP=-1.5:LRA=11"
DUCKING_THRESHOLD = 0.02


@dataclass
class FFmpegCommand:
    argv: list[str]
    filter_complex: str
    output_path: str
    duration_s: float


def _fmt(seconds: float) -> str:
    return f"{seconds:.6f}"


def _even(value: float) -> int:
    """Round a pixel size to an even number (yuv420p needs even dimensions)."""
    return max(2, int(round(value / 2)) * 2)


def build_enable_expr(start_s: float, end_s: float) -> str:
    return f"between(t,{_fmt(start_s)},{_fmt(end_s + FRAME_OVERLAP_MARGIN)})"


def build_fit_filters(box: FitBox, out_width: int, out_height: int) -> list[str]:
    """Scale filters placing a stream inside its fit box.

    ``contain`` letterboxes with transparent padding so lower layers show
    through; ``cover`` scales up and crops the overflow.
    """
    w = _even(box.width * out_width)
    h = _even(box.height * out_height)
    if box.fit == "cover":
        return [
            f"scale={w}:{h}:force_original_aspect_ratio=increase",
            f"crop={w}:{h}",
        ]
    return [
        f"scale={w}:{h}:force_original_aspect_ratio=decrease",
        "format=rgba",
        f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:color=black@0",
    ]


def build_ducking_filter(
    bgm_stream: str,
    sidechain_stream: str,
    output: str,
    duck_to: float,
    attack_ms: int,
    release_ms: int,
) -> str:
    """Build FFmpeg sidechain compression filter for ducking."""
    ratio = min(20, max(1, int(1 / duck_to))) if duck_to > 0 else 20
    return (
        f"[{bgm_stream}][{sidechain_stream}]sidechaincompress="
        f"threshold={DUCKING_THRESHOLD}:"
        f"ratio={ratio}:"
        f"attack={attack_ms}:"
        f"release={release_ms}:"
        f"makeup=1"
        f"[{output}]"
    )


class FFmpegGraphBuilder:
    """Collects inputs and filter chains for one plan."""

    def __init__(self, plan: RenderPlan, settings: Optional[Settings] = None):
        self.plan = plan
        self.config = plan.config
        self.settings = settings or get_settings()
        self.inputs: list[str] = []
        self.filter_parts: list[str] = []
        self._input_count = 0

    def _add_input(self, *args: str) -> int:
        self.inputs.extend(args)
        index = self._input_count
        self._input_count += 1
        return index

    def _add_canvas(self) -> int:
        cfg = self.config
        return self._add_input(
            "-f", "lavfi",
            "-i", f"color=c=black:s={cfg.width}x{cfg.height}:r={cfg.fps}:d={_fmt(self.plan.duration_s)}",
        )

    def _add_decode_input(self, op: DecodeOp) -> int:
        if op.is_image:
            return self._add_input(
                "-loop", "1",
                "-framerate", str(self.config.fps),
                "-t", _fmt(op.duration),
                "-i", op.local_path,
            )
        return self._add_input("-i", op.local_path)

    def _video_clip_filter(self, index: int, op: DecodeOp, label: str) -> str:
        filters: list[str] = []
        if op.is_image:
            filters.append("setpts=PTS-STARTPTS")
        else:
            filters.append(f"trim=start={_fmt(op.trim_start)}:end={_fmt(op.trim_end)}")
            filters.append("setpts=PTS-STARTPTS")
        filters.append(f"fps={self.config.fps}")
        if op.pad_s > 0:
            # Source shorter than the clip: hold the last frame
            filters.append(f"tpad=stop_mode=clone:stop_duration={_fmt(op.pad_s)}")
        filters.extend(build_fit_filters(op.fit_box or FitBox(), self.config.width, self.config.height))
        filters.append("setsar=1")
        filters.append(f"setpts=PTS+{_fmt(op.timeline_start)}/TB")
        return f"[{index}:v]" + ",".join(filters) + f"[{label}]"

    def _overlay_position(self, box: FitBox) -> tuple[int, int]:
        return int(round(box.x * self.config.width)), int(round(box.y * self.config.height))

    def build_video(self) -> str:
        """Add the visual chain and return its output label."""
        canvas = self._add_canvas()
        current = f"{canvas}:v"
        for n, op in enumerate(self.plan.visual_chain()):
            index = self._add_decode_input(op)
            clip_label = f"clip{n}"
            self.filter_parts.append(self._video_clip_filter(index, op, clip_label))

            x, y = self._overlay_position(op.fit_box or FitBox())
            enable_expr = build_enable_expr(op.timeline_start, op.timeline_end)
            output = f"layer{n}"
            self.filter_parts.append(
                f"[{current}][{clip_label}]overlay=x={x}:y={y}:eof_action=pass:enable='{enable_expr}'[{output}]"
            )
            current = output

        self.filter_parts.append(f"[{current}]format=yuv420p[vout]")
        return "[vout]"

    def _audio_clip_filter(self, index: int, op: DecodeOp, label: str) -> str:
        sample_rate = self.config.sample_rate
        filters = [
            f"aresample={sample_rate}",
            "aformat=channel_layouts=stereo",
            f"atrim=start={_fmt(op.trim_start)}:end={_fmt(op.trim_end)}",
            "asetpts=PTS-STARTPTS",  # Reset timestamps after trim
        ]
        if op.pad_s > 0:
            filters.append(f"apad=pad_dur={_fmt(op.pad_s)}")
        if op.gain != 1.0:
            filters.append(f"volume={op.gain}")
        delay_samples = int(round(op.timeline_start * sample_rate))
        if delay_samples > 0:
            filters.append(f"adelay={delay_samples}S:all=1")
        return f"[{index}:a]" + ",".join(filters) + f"[{label}]"

    def _sum(self, labels: list[str], output: str) -> None:
        if len(labels) == 1:
            self.filter_parts.append(f"[{labels[0]}]anull[{output}]")
            return
        joined = "".join(f"[{label}]" for label in labels)
        self.filter_parts.append(f"{joined}amix=inputs={len(labels)}:duration=longest:normalize=0[{output}]")

    def build_audio(self, mix: AudioMixOp | None) -> str:
        """Add the audio chain and return the stream to map."""
        if mix is None:
            index = self._add_input(
                "-f", "lavfi",
                "-i", f"anullsrc=channel_layout=stereo:sample_rate={self.config.sample_rate}",
            )
            return f"{index}:a"

        labels: dict[str, str] = {}
        for n, op_id in enumerate(mix.inputs):
            op = self.plan.get(op_id)
            assert isinstance(op, DecodeOp)
            index = self._add_decode_input(op)
            labels[op_id] = f"a{n}"
            self.filter_parts.append(self._audio_clip_filter(index, op, labels[op_id]))

        main = [labels[op_id] for op_id in mix.inputs if op_id not in mix.ducked_inputs]
        ducked = [labels[op_id] for op_id in mix.ducked_inputs]

        if ducked and mix.ducking is not None:
            self._sum(main, "voice")
            self._sum(ducked, "bgm")
            self.filter_parts.append("[voice]asplit=2[voice_mix][voice_sc]")
            self.filter_parts.append(
                build_ducking_filter(
                    "bgm",
                    "voice_sc",
                    "bgm_ducked",
                    mix.ducking.duck_to,
                    mix.ducking.attack_ms,
                    mix.ducking.release_ms,
                )
            )
            self.filter_parts.append("[voice_mix][bgm_ducked]amix=inputs=2:duration=longest:normalize=0[mixed]")
        else:
            self._sum(main + ducked, "mixed")

        master: list[str] = []
        if mix.fade_out_s > 0:
            fade_start = max(0.0, self.plan.duration_s - mix.fade_out_s)
            master.append(f"afade=t=out:st={_fmt(fade_start)}:d={_fmt(mix.fade_out_s)}")
        master.append(LOUDNORM_FILTER)
        # loudnorm upsamples internally; bring it back and fill to the end
        master.append(f"aresample={self.config.sample_rate}")
        master.append("apad")
        self.filter_parts.append("[mixed]" + ",".join(master) + "[aout]")
        return "[aout]"

    def build(self, output_path: str) -> FFmpegCommand:
        cfg = self.config
        video_map = self.build_video()
        audio_map = self.build_audio(self.plan.audio_mix)
        filter_complex = ";\n".join(self.filter_parts)

        argv = [
            self.settings.ffmpeg_path,
            "-y",
            "-nostats",
            "-threads", str(self.settings.render_ffmpeg_threads),
            *self.inputs,
            "-filter_complex", filter_complex,
            "-map", video_map,
            "-map", audio_map,
            "-c:v", cfg.video_codec,
            "-preset", cfg.preset,
            "-crf", str(cfg.crf),
            "-r", str(cfg.fps),
            "-pix_fmt", "yuv420p",
            "-c:a", cfg.audio_codec,
            "-b:a", cfg.audio_bitrate,
            "-ar", str(cfg.sample_rate),
            "-t", _fmt(self.plan.duration_s),
            "-movflags", "+faststart",
            "-max_muxing_queue_size", str(self.settings.render_ffmpeg_max_muxing_queue),
            "-progress", "pipe:1",
            output_path,
        ]
        logger.info(f"[RENDER] FFmpeg graph: {self._input_count} inputs, {len(self.filter_parts)} filters")
        logger.debug(f"[RENDER] filter_complex:\n{filter_complex}")
        return FFmpegCommand(
            argv=argv,
            filter_complex=filter_complex,
            output_path=output_path,
            duration_s=self.plan.duration_s,
        )


def build_ffmpeg_command(
    plan: RenderPlan,
    output_path: str,
    settings: Optional[Settings] = None,
) -> FFmpegCommand:
    return FFmpegGraphBuilder(plan, settings).build(output_path)
