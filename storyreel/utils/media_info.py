"""Media file information utilities using FFprobe and Pillow."""

import json
import logging
import mimetypes
import subprocess
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

from storyreel.config import get_settings

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".gif", ".bmp"}


def _get_settings():
    """Get settings lazily to avoid import issues in tests."""
    return get_settings()


@dataclass
class MediaInfo:
    """Media file information."""

    mime_type: str = "application/octet-stream"
    duration_s: float | None = None
    width: int | None = None
    height: int | None = None
    fps: float | None = None
    has_video: bool = False
    has_audio: bool = False
    is_image: bool = False


def guess_mime_type(file_path: str) -> str:
    mime_type, _ = mimetypes.guess_type(file_path)
    return mime_type or "application/octet-stream"


def _run_ffprobe(file_path: str, *args) -> dict:
    """Run ffprobe and return parsed JSON."""
    settings = _get_settings()
    cmd = [
        settings.ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        file_path,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except FileNotFoundError as e:
        raise RuntimeError(f"ffprobe not available: {e}") from e
    if result.returncode != 0:
        raise RuntimeError(f"ffprobe failed: {result.stderr}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Failed to parse ffprobe output: {e}")


def _parse_frame_rate(rate: str) -> Optional[float]:
    if "/" not in rate:
        return None
    num, den = rate.split("/", 1)
    try:
        if int(den) > 0:
            return int(num) / int(den)
    except ValueError:
        return None
    return None


def parse_ffprobe_output(data: dict, mime_type: str) -> MediaInfo:
    """Build MediaInfo from ``ffprobe -show_format -show_streams`` JSON."""
    info = MediaInfo(mime_type=mime_type)

    format_info = data.get("format", {})
    if "duration" in format_info:
        try:
            info.duration_s = float(format_info["duration"])
        except (TypeError, ValueError):
            info.duration_s = None

    for stream in data.get("streams", []):
        codec_type = stream.get("codec_type")

        if codec_type == "video" and not info.has_video:
            info.has_video = True
            info.width = stream.get("width")
            info.height = stream.get("height")
            info.fps = _parse_frame_rate(stream.get("r_frame_rate", "0/1"))
            if info.duration_s is None and "duration" in stream:
                info.duration_s = float(stream["duration"])

        elif codec_type == "audio":
            info.has_audio = True
            if info.duration_s is None and "duration" in stream:
                info.duration_s = float(stream["duration"])

    return info


def probe_image(file_path: str) -> MediaInfo:
    """Image dimensions via Pillow. Still images have no intrinsic duration."""
    with Image.open(file_path) as img:
        width, height = img.size
        mime_type = Image.MIME.get(img.format or "", guess_mime_type(file_path))
    return MediaInfo(
        mime_type=mime_type,
        width=width,
        height=height,
        has_video=True,
        is_image=True,
    )


def probe_media(file_path: str) -> MediaInfo:
    """
    Get media information for a local file.

    Images are read with Pillow; audio and video with ffprobe.

    Raises:
        RuntimeError: If the file cannot be probed
    """
    mime_type = guess_mime_type(file_path)
    suffix = "." + file_path.rsplit(".", 1)[-1].lower() if "." in file_path else ""

    if mime_type.startswith("image/") or suffix in IMAGE_EXTENSIONS:
        try:
            return probe_image(file_path)
        except (UnidentifiedImageError, OSError) as e:
            raise RuntimeError(f"Failed to read image {file_path}: {e}") from e

    data = _run_ffprobe(file_path, "-show_format", "-show_streams")
    return parse_ffprobe_output(data, mime_type)
