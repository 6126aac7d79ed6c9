"""
End-to-end tests for the export pipeline boundary.

Storage is a FakeStore, media probing is fake_probe and ffmpeg is a shell
script, so these run without network or media binaries.

Test cases:
1. Successful export returns {success, videoUri} with progress ending at 100
2. Overlapping clips fail before anything is fetched
3. A missing asset fails after one fetch, before rendering
4. A backend failure surfaces its message and progress never reaches 100
5. Planning and unexpected errors are reported generically
6. stream() yields progress events then one result
"""

from pathlib import Path

import pytest

from conftest import FakeStore, fake_probe, media_bytes, no_sleep
from storyreel.render.asset_resolver import AssetResolver
from storyreel.render.executor import RenderExecutor
from storyreel.render.pipeline import ExportPipeline, export_movie
from storyreel.schemas.export import ExportResult, ProgressEvent

FAKE_FFMPEG_FAIL = """#!/bin/sh
echo "Invalid data found when processing input" >&2
exit 1
"""


def make_pipeline(store, settings, fast_retry, resolver_cls=AssetResolver) -> ExportPipeline:
    executor = RenderExecutor(store, settings=settings, retry_policy=fast_retry, sleep=no_sleep)
    return ExportPipeline(
        settings=settings,
        store=store,
        executor=executor,
        resolver_factory=lambda: resolver_cls(
            store, settings=settings, retry_policy=fast_retry, probe=fake_probe, sleep=no_sleep
        ),
    )


def scenario_layers():
    return [
        {
            "kind": "video",
            "clips": [
                {"sourceUri": "gs://b/a.mp4", "startTime": 0, "duration": 2},
                {"sourceUri": "gs://b/b.mp4", "startTime": 2, "duration": 2},
            ],
        },
        {"kind": "audio", "clips": [{"sourceUri": "gs://b/m.mp3", "startTime": 0, "duration": 4}]},
    ]


@pytest.fixture
def store() -> FakeStore:
    return FakeStore(
        {
            "gs://b/a.mp4": media_bytes("video", 5),
            "gs://b/b.mp4": media_bytes("video", 5),
            "gs://b/m.mp3": media_bytes("audio", 30),
        }
    )


class TestExport:
    @pytest.mark.asyncio
    async def test_success(self, store, settings, fake_ffmpeg, fast_retry, isolated_tempdir: Path):
        fake_ffmpeg()
        seen = []

        result = await make_pipeline(store, settings, fast_retry).export(scenario_layers(), seen.append)

        assert result.success
        assert result.video_uri.startswith("gs://test-bucket/exports/")
        assert result.to_dict() == {"success": True, "videoUri": result.video_uri}
        assert seen == sorted(seen)
        assert seen[-1] == 100
        assert list(isolated_tempdir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_subtitles_give_vtt_url(self, store, settings, fake_ffmpeg, fast_retry):
        fake_ffmpeg()
        layers = scenario_layers() + [
            {"kind": "subtitle", "clips": [{"startTime": 0, "duration": 2, "text": "Hi"}]}
        ]

        result = await make_pipeline(store, settings, fast_retry).export(layers)

        assert result.success
        assert result.to_dict()["vttUrl"].startswith("https://signed.example/")

    @pytest.mark.asyncio
    async def test_overlap_fails_before_fetching(self, store, settings, fake_ffmpeg, fast_retry):
        """Scenario C: overlapping clips are rejected with no fetch."""
        fake_ffmpeg()
        layers = [
            {
                "kind": "video",
                "clips": [
                    {"sourceUri": "gs://b/a.mp4", "startTime": 0, "duration": 5},
                    {"sourceUri": "gs://b/b.mp4", "startTime": 4, "duration": 5},
                ],
            }
        ]

        result = await make_pipeline(store, settings, fast_retry).export(layers)

        assert not result.success
        assert result.error_code == "OVERLAPPING_CLIPS"
        assert "overlap" in result.error
        assert store.download_calls == []

    @pytest.mark.asyncio
    async def test_missing_asset(self, store, settings, fake_ffmpeg, fast_retry, isolated_tempdir: Path):
        """Scenario D: a missing object fails after exactly one fetch attempt."""
        fake_ffmpeg()
        del store.objects["gs://b/b.mp4"]

        result = await make_pipeline(store, settings, fast_retry).export(scenario_layers())

        assert result.to_dict() == {
            "success": False,
            "error": "Asset not found: gs://b/b.mp4",
            "errorCode": "ASSET_NOT_FOUND",
        }
        assert store.download_count("gs://b/b.mp4") == 1
        assert store.upload_calls == []
        assert list(isolated_tempdir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_backend_failure(self, store, settings, fake_ffmpeg, fast_retry, isolated_tempdir: Path):
        """Scenario E: the backend error is surfaced and progress stops short of 100."""
        fake_ffmpeg(FAKE_FFMPEG_FAIL)
        seen = []

        result = await make_pipeline(store, settings, fast_retry).export(scenario_layers(), seen.append)

        assert not result.success
        assert result.error == "Failed to generate video: Invalid data found when processing input"
        assert result.error_code == "ENCODE_FAILED"
        assert 100 not in seen
        assert list(isolated_tempdir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_negative_start_fails_before_fetching(self, store, settings, fast_retry):
        """Scenario C: startTime=-1 is rejected and nothing is fetched."""
        layers = [{"kind": "video", "clips": [{"sourceUri": "gs://b/a.mp4", "startTime": -1, "duration": 5}]}]

        result = await make_pipeline(store, settings, fast_retry).export(layers)

        assert result.error_code == "NEGATIVE_TIME"
        assert store.download_calls == []

    @pytest.mark.asyncio
    async def test_empty_timeline(self, store, settings, fast_retry):
        result = await make_pipeline(store, settings, fast_retry).export([])
        assert result.error_code == "EMPTY_TIMELINE"
        assert store.download_calls == []

    @pytest.mark.asyncio
    async def test_malformed_storage_reference_is_missing_asset(self, store, settings, fast_retry):
        layers = [{"kind": "video", "clips": [{"sourceUri": "gs://bucket-only", "startTime": 0, "duration": 2}]}]

        result = await make_pipeline(store, settings, fast_retry).export(layers)

        assert result.to_dict() == {
            "success": False,
            "error": "Asset not found: gs://bucket-only",
            "errorCode": "ASSET_NOT_FOUND",
        }
        assert store.download_calls == []

    @pytest.mark.asyncio
    async def test_planning_error_is_generic(self, store, settings, fake_ffmpeg, fast_retry):
        fake_ffmpeg()

        class ForgetfulResolver(AssetResolver):
            async def resolve_all(self, uris):
                return {}

        result = await make_pipeline(store, settings, fast_retry, ForgetfulResolver).export(scenario_layers())

        assert result.error == "Failed to generate video"
        assert result.error_code == "UNRESOLVED_ASSET"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self, store, settings, fast_retry):
        class BrokenResolver(AssetResolver):
            async def resolve_all(self, uris):
                raise KeyError("boom")

        result = await make_pipeline(store, settings, fast_retry, BrokenResolver).export(scenario_layers())

        assert result.to_dict() == {
            "success": False,
            "error": "Failed to generate video",
            "errorCode": "INTERNAL_ERROR",
        }

    @pytest.mark.asyncio
    async def test_progress_callback_failure_does_not_abort(self, store, settings, fake_ffmpeg, fast_retry):
        fake_ffmpeg()

        def listener(percent):
            raise RuntimeError("socket closed")

        result = await make_pipeline(store, settings, fast_retry).export(scenario_layers(), listener)
        assert result.success


class TestStream:
    @pytest.mark.asyncio
    async def test_events_then_result(self, store, settings, fake_ffmpeg, fast_retry):
        fake_ffmpeg()

        items = [item async for item in make_pipeline(store, settings, fast_retry).stream(scenario_layers())]

        *events, result = items
        assert all(isinstance(event, ProgressEvent) for event in events)
        assert isinstance(result, ExportResult)
        assert result.success
        percents = [event.percent for event in events]
        assert percents == sorted(percents)
        assert percents[-1] == 100

    @pytest.mark.asyncio
    async def test_failure_result_is_last(self, store, settings, fast_retry):
        items = [item async for item in make_pipeline(store, settings, fast_retry).stream([])]
        assert len(items) == 1
        assert items[0].error_code == "EMPTY_TIMELINE"


class TestExportMovie:
    @pytest.mark.asyncio
    async def test_returns_caller_dict(self, settings, fake_ffmpeg, storage_root: Path):
        """The module-level entry point works against local storage."""
        fake_ffmpeg()
        source = storage_root / "scene.mp4"
        source.write_bytes(b"not really a movie")

        result = await export_movie(
            [{"kind": "video", "clips": [{"sourceUri": source.as_uri(), "startTime": 0, "duration": 3}]}],
            settings=settings,
        )

        assert result["success"] is True
        assert result["videoUri"].startswith("gs://test-bucket/exports/")
        stored = Path(settings.local_storage_path) / "test-bucket" / result["videoUri"].split("test-bucket/", 1)[1]
        assert stored.read_bytes() == b"fake movie"
