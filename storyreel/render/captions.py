"""WebVTT sidecar captions from a plan's caption track."""

from typing import Iterable

from storyreel.render.plan import CaptionCue


def format_timestamp(seconds: float) -> str:
    """Format seconds as a WebVTT timestamp (HH:MM:SS.mmm)."""
    total_ms = int(round(max(0.0, seconds) * 1000))
    hours, rest = divmod(total_ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    secs, ms = divmod(rest, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{ms:03d}"


def escape_cue_text(text: str) -> str:
    # Escaping ">" keeps "-->" out of cue text
    text = text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    lines = [line.strip() for line in text.strip().splitlines()]
    return "\n".join(line for line in lines if line)


def build_webvtt(cues: Iterable[CaptionCue]) -> str:
    blocks = ["WEBVTT"]
    for n, cue in enumerate(cues, start=1):
        text = escape_cue_text(cue.text)
        if not text:
            continue
        blocks.append(f"{n}\n{format_timestamp(cue.start)} --> {format_timestamp(cue.end)}\n{text}")
    return "\n\n".join(blocks) + "\n"
