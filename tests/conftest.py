"""
Pytest fixtures for storyreel tests.

Most tests run without network or media binaries: storage is replaced by
FakeStore and media probing by fake_probe. Tests that need real ffmpeg /
ffprobe binaries are marked with @pytest.mark.requires_ffmpeg and skipped
when they are not installed.
"""

import shutil
import tempfile
from pathlib import Path

import pytest

from storyreel.config import Settings
from storyreel.exceptions import AssetNotFoundError
from storyreel.utils.media_info import MediaInfo
from storyreel.utils.retry import RetryPolicy


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring ffmpeg and ffprobe binaries",
    )


requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg/ffprobe not installed",
)


class FakeStore:
    """In-memory object store recording every call.

    ``objects`` maps gs:// URIs to bytes. ``failures`` maps a URI to a list of
    exceptions raised by successive downloads before the real content is
    returned.
    """

    def __init__(self, objects: dict[str, bytes] | None = None):
        self.objects: dict[str, bytes] = dict(objects or {})
        self.failures: dict[str, list[BaseException]] = {}
        self.upload_failures: list[BaseException] = []
        self.download_calls: list[str] = []
        self.upload_calls: list[str] = []
        self.deleted: list[str] = []

    def download_count(self, uri: str) -> int:
        return self.download_calls.count(uri)

    async def download_file(self, uri: str, local_path: str) -> str:
        self.download_calls.append(uri)
        pending = self.failures.get(uri)
        if pending:
            raise pending.pop(0)
        if uri not in self.objects:
            raise AssetNotFoundError(uri)
        Path(local_path).write_bytes(self.objects[uri])
        return local_path

    async def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        self.upload_calls.append(storage_key)
        if self.upload_failures:
            raise self.upload_failures.pop(0)
        uri = f"gs://test-bucket/{storage_key}"
        self.objects[uri] = Path(local_path).read_bytes()
        return uri

    async def get_signed_url(self, uri: str, expiration_minutes: int | None = None) -> str:
        return uri.replace("gs://", "https://signed.example/") + "?sig=test"

    async def delete_file(self, uri: str) -> bool:
        self.deleted.append(uri)
        return self.objects.pop(uri, None) is not None


def media_bytes(kind: str, duration: float = 10.0) -> bytes:
    """Content understood by fake_probe: ``video``, ``silent-video``, ``audio`` or ``image``."""
    return f"{kind}:{duration}".encode()


def fake_probe(path: str) -> MediaInfo:
    """Media info read from a ``<kind>:<duration>`` file written by media_bytes."""
    kind, _, duration_text = Path(path).read_text().partition(":")
    duration = float(duration_text) if duration_text else None
    if kind == "image":
        return MediaInfo(mime_type="image/png", width=1920, height=1080, has_video=True, is_image=True)
    if kind == "audio":
        return MediaInfo(mime_type="audio/mpeg", duration_s=duration, has_audio=True)
    if kind in ("video", "silent-video"):
        return MediaInfo(
            mime_type="video/mp4",
            duration_s=duration,
            width=1920,
            height=1080,
            fps=30.0,
            has_video=True,
            has_audio=kind == "video",
        )
    raise RuntimeError(f"Unrecognized test media: {path}")


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="storyreel_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated to a temporary local storage root."""
    return Settings(
        use_local_storage=True,
        local_storage_path=str(tmp_path / "storage"),
        gcs_bucket_name="test-bucket",
        temp_dir_prefix="storyreel_test_",
        progress_min_interval_s=0.0,
        render_output_width=640,
        render_output_height=360,
        render_fps=30,
    )


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Five attempts with no real delay between them."""
    return RetryPolicy(max_attempts=5, base_delay_s=0.0, max_delay_s=0.0, jitter_s=0.0)


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


FAKE_FFMPEG_OK = """#!/bin/sh
for last; do :; done
echo "out_time_us=N/A"
echo "out_time_us=1000000"
echo "out_time_us=2000000"
echo "frame=60" >&2
echo "progress=end"
printf 'fake movie' > "$last"
exit 0
"""


@pytest.fixture
def fake_ffmpeg(tmp_path: Path, settings: Settings):
    """Point settings.ffmpeg_path at a shell script standing in for ffmpeg.

    Call with a script body; returns the script path.
    """

    def _install(script: str = FAKE_FFMPEG_OK) -> Path:
        path = tmp_path / "fake-ffmpeg"
        path.write_text(script)
        path.chmod(0o755)
        settings.ffmpeg_path = str(path)
        return path

    return _install


@pytest.fixture
def isolated_tempdir(tmp_path: Path, monkeypatch) -> Path:
    """Route tempfile.mkdtemp into a directory the test can inspect."""
    directory = tmp_path / "tmp"
    directory.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(directory))
    return directory


@pytest.fixture
def storage_root(settings: Settings) -> Path:
    """The local storage root, the only place local references may point into."""
    root = Path(settings.local_storage_path)
    root.mkdir(parents=True, exist_ok=True)
    return root
