"""Render executor: runs a RenderPlan with FFmpeg and stores the result.

One FFmpeg process per export. Progress is read from ``-progress pipe:1``
(``out_time_us``) while stderr is drained concurrently. Progress ranges:
encode 0-90, upload 90-99, 100 on completion.
"""

import asyncio
import logging
import os
import re
import shutil
import tempfile
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from storyreel.config import Settings, get_settings
from storyreel.exceptions import ExportCancelledError, RenderError, StorageUnavailableError, UploadError
from storyreel.render.captions import build_webvtt
from storyreel.render.ffmpeg_graph import FFmpegCommand, build_ffmpeg_command
from storyreel.render.plan import RenderPlan
from storyreel.render.progress import ProgressCallback, ProgressReporter
from storyreel.services.storage_service import StorageService, create_storage_service
from storyreel.utils.retry import RetryExhaustedError, RetryPolicy, with_retry

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20
# Lines of the stderr tail surfaced in the error message
ERROR_TAIL_LINES = 3
ENCODE_PROGRESS_END = 90
UPLOAD_PROGRESS_END = 99

_LOCAL_PATH_PATTERN = re.compile(r"(?:^|[\s'\"=:(\[])(/[^\s'\"]+)")


@dataclass(frozen=True)
class RenderOutput:
    video_uri: str
    captions_uri: str | None = None
    video_size: int = 0


def parse_progress_line(line: str, duration_s: float) -> float | None:
    """Percent of the encode done for an ``out_time_us=`` progress line."""
    if not line.startswith("out_time_us=") or duration_s <= 0:
        return None
    try:
        time_us = int(line.split("=", 1)[1])
    except ValueError:
        # FFmpeg writes N/A before the first frame
        return None
    return max(0.0, min(100.0, time_us / 1_000_000 / duration_s * 100))


def summarize_stderr(lines: list[str]) -> tuple[str, bool]:
    """Backend message tail and whether it is safe to show (no local paths)."""
    tail = [line for line in lines if line.strip()][-ERROR_TAIL_LINES:]
    message = " | ".join(line.strip() for line in tail)
    return message, not _LOCAL_PATH_PATTERN.search(message)


class RenderExecutor:
    def __init__(
        self,
        store: Optional[StorageService] = None,
        *,
        settings: Optional[Settings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self._store = store
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self._sleep = sleep

    @property
    def store(self) -> StorageService:
        if self._store is None:
            self._store = create_storage_service(self.settings)
        return self._store

    async def execute(
        self,
        plan: RenderPlan,
        on_progress: Union[ProgressReporter, ProgressCallback, None] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RenderOutput:
        """Render the plan, upload the outputs and return their references.

        Raises:
            RenderError: FFmpeg exited non-zero (not retried)
            UploadError: the output could not be stored
            ExportCancelledError: ``cancel_event`` was set
        """
        if isinstance(on_progress, ProgressReporter):
            reporter = on_progress
        else:
            reporter = ProgressReporter(on_progress, self.settings.progress_min_interval_s)
        export_id = uuid.uuid4().hex
        work_dir = tempfile.mkdtemp(prefix=f"{self.settings.temp_dir_prefix}render_")
        logger.info(f"[RENDER] Export {export_id}: {len(plan.steps)} steps, {plan.duration_s:.3f}s")

        try:
            video_path = os.path.join(work_dir, f"{export_id}.mp4")
            command = build_ffmpeg_command(plan, video_path, self.settings)
            reporter.report(0)
            await self._run_ffmpeg(command, reporter.scaled(0, ENCODE_PROGRESS_END), cancel_event)

            captions_path = None
            if plan.captions is not None:
                captions_path = os.path.join(work_dir, f"{export_id}.vtt")
                with open(captions_path, "w", encoding="utf-8") as f:
                    f.write(build_webvtt(plan.captions.cues))

            self._check_cancelled(cancel_event)
            reporter.report(ENCODE_PROGRESS_END)
            output = await self._upload_outputs(export_id, video_path, captions_path, reporter, cancel_event)
            reporter.complete()
            logger.info(f"[RENDER] Export {export_id} stored at {output.video_uri} ({output.video_size} bytes)")
            return output
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    def _check_cancelled(self, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ExportCancelledError()

    async def _run_ffmpeg(
        self,
        command: FFmpegCommand,
        report: ProgressCallback,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        self._check_cancelled(cancel_event)
        try:
            proc = await asyncio.create_subprocess_exec(
                *command.argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            logger.error(f"[RENDER] FFmpeg binary not found: {self.settings.ffmpeg_path}")
            raise RenderError(f"FFmpeg not available: {e}", exposable=False) from e

        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        readers = [
            asyncio.create_task(self._read_progress(proc.stdout, command.duration_s, report)),
            asyncio.create_task(self._drain_stderr(proc.stderr, stderr_tail)),
        ]
        wait_task = asyncio.create_task(proc.wait())
        cancel_task = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None

        try:
            waiting = {wait_task} if cancel_task is None else {wait_task, cancel_task}
            await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
            if not wait_task.done():
                logger.warning("[RENDER] Export cancelled, stopping FFmpeg")
                raise ExportCancelledError()
            await asyncio.gather(*readers)
        except asyncio.CancelledError:
            logger.warning("[RENDER] Render task cancelled, stopping FFmpeg")
            raise
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
            for task in (*readers, wait_task, cancel_task):
                if task is not None and not task.done():
                    task.cancel()

        if proc.returncode != 0:
            message, exposable = summarize_stderr(list(stderr_tail))
            logger.error(f"[RENDER] FFmpeg exited with {proc.returncode}:\n" + "\n".join(stderr_tail))
            raise RenderError(message or f"FFmpeg exited with code {proc.returncode}", exposable=exposable)

    async def _read_progress(
        self,
        stream: Optional[asyncio.StreamReader],
        duration_s: float,
        report: ProgressCallback,
    ) -> None:
        if stream is None:
            return
        async for raw_line in stream:
            line = raw_line.decode("utf-8", errors="replace").strip()
            percent = parse_progress_line(line, duration_s)
            if percent is not None:
                report(percent)

    async def _drain_stderr(self, stream: Optional[asyncio.StreamReader], tail: deque) -> None:
        if stream is None:
            return
        async for raw_line in stream:
            tail.append(raw_line.decode("utf-8", errors="replace").rstrip())

    async def _upload(self, local_path: str, storage_key: str, content_type: str) -> str:
        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning(f"[UPLOAD] Attempt {attempt} for {storage_key} failed: {error}. Retrying in {delay:.2f}s")

        try:
            return await with_retry(
                lambda: self.store.upload_file(local_path, storage_key, content_type),
                policy=self.retry_policy,
                retry_on=(StorageUnavailableError,),
                on_retry=on_retry,
                sleep=self._sleep,
            )
        except RetryExhaustedError as e:
            raise UploadError(f"Upload of {storage_key} failed after {e.attempts} attempts: {e.last_error}") from e

    async def _upload_outputs(
        self,
        export_id: str,
        video_path: str,
        captions_path: str | None,
        reporter: ProgressReporter,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RenderOutput:
        prefix = self.settings.export_storage_prefix.strip("/")
        video_size = os.path.getsize(video_path) if os.path.exists(video_path) else 0
        video_uri = await self._upload(video_path, f"{prefix}/{export_id}.mp4", "video/mp4")
        uploaded = [video_uri]

        try:
            self._check_cancelled(cancel_event)
            reporter.report(95)
            captions_uri = None
            if captions_path is not None:
                captions_gs_uri = await self._upload(captions_path, f"{prefix}/{export_id}.vtt", "text/vtt")
                uploaded.append(captions_gs_uri)
                captions_uri = await self.store.get_signed_url(captions_gs_uri)
                self._check_cancelled(cancel_event)
        except BaseException:
            for uri in uploaded:
                await self._discard(uri)
            raise
        reporter.report(UPLOAD_PROGRESS_END)
        return RenderOutput(video_uri=video_uri, captions_uri=captions_uri, video_size=video_size)

    async def _discard(self, uri: str) -> None:
        """Remove an uploaded object whose export did not complete."""
        try:
            await self.store.delete_file(uri)
            logger.info(f"[UPLOAD] Removed incomplete export output {uri}")
        except Exception as e:
            logger.warning(f"[UPLOAD] Could not remove {uri}: {e}")
