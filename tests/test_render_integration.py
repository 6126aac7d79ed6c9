"""
Full exports rendered by the real ffmpeg binary.

Sources are generated with lavfi and Pillow, stored under the local storage
root and referenced through file:// URIs.
"""

import subprocess
from pathlib import Path

import pytest
from PIL import Image

from conftest import requires_ffmpeg
from storyreel.render.pipeline import ExportPipeline
from storyreel.services.storage_service import LocalStorageService
from storyreel.utils.media_info import probe_media

pytestmark = [pytest.mark.requires_ffmpeg, requires_ffmpeg]


def generate_clip(path: Path, duration: float, size: str = "640x360") -> Path:
    subprocess.run(
        [
            "ffmpeg", "-y",
            "-f", "lavfi", "-i", f"testsrc=size={size}:rate=30:duration={duration}",
            "-f", "lavfi", "-i", f"sine=frequency=440:duration={duration}",
            "-c:v", "libx264", "-pix_fmt", "yuv420p", "-c:a", "aac", "-shortest",
            str(path),
        ],
        capture_output=True,
        check=True,
    )
    return path


def generate_tone(path: Path, duration: float) -> Path:
    subprocess.run(
        ["ffmpeg", "-y", "-f", "lavfi", "-i", f"sine=frequency=220:duration={duration}", str(path)],
        capture_output=True,
        check=True,
    )
    return path


class TestRealRender:
    @pytest.mark.asyncio
    async def test_layers_render_to_timeline_duration(self, settings, storage_root: Path):
        a = generate_clip(storage_root / "a.mp4", 2)
        b = generate_clip(storage_root / "b.mp4", 1, size="360x640")  # shorter than its clip: padded
        music = generate_tone(storage_root / "music.wav", 4)
        logo = storage_root / "logo.png"
        Image.new("RGBA", (200, 100), (255, 255, 255, 200)).save(logo)

        store = LocalStorageService(settings)
        pipeline = ExportPipeline(settings=settings, store=store)
        seen = []
        result = await pipeline.export(
            [
                {
                    "kind": "video",
                    "useSourceAudio": True,
                    "clips": [
                        {"sourceUri": a.as_uri(), "startTime": 0, "duration": 2},
                        {"sourceUri": b.as_uri(), "startTime": 2, "duration": 2},
                    ],
                },
                {
                    "kind": "overlay-image",
                    "trackIndex": 1,
                    "clips": [
                        {
                            "sourceUri": logo.as_uri(),
                            "startTime": 1,
                            "duration": 2,
                            "transform": {"x": 0.7, "y": 0.05, "width": 0.25, "height": 0.15, "fit": "contain"},
                        }
                    ],
                },
                {
                    "kind": "audio",
                    "volume": 0.5,
                    "ducking": {"duckTo": 0.4},
                    "clips": [{"sourceUri": music.as_uri(), "startTime": 0, "duration": 4}],
                },
                {"kind": "subtitle", "clips": [{"startTime": 0.5, "duration": 1, "text": "Hello"}]},
            ],
            seen.append,
        )

        assert result.success, result.error
        assert seen[-1] == 100
        assert result.vtt_url.startswith("file://")

        output = store.get_file_path(result.video_uri)
        info = probe_media(str(output))
        assert info.has_video and info.has_audio
        assert (info.width, info.height) == (settings.render_output_width, settings.render_output_height)
        assert 3.8 <= info.duration_s <= 4.3
