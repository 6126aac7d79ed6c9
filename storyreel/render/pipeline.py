"""Export pipeline: the single entry point callers use.

validate -> resolve -> plan -> execute, with every failure normalized into
an ``ExportResult``. Nothing raised by the components escapes ``export()``
except task cancellation, and every temporary resource is released on every
exit path.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Optional, Sequence, Union

from storyreel.config import Settings, get_settings
from storyreel.constants.error_codes import GENERIC_EXPORT_FAILURE
from storyreel.exceptions import PlanningError, StoryreelError
from storyreel.render.asset_resolver import AssetResolver
from storyreel.render.executor import RenderExecutor
from storyreel.render.plan import RenderConfig
from storyreel.render.plan_builder import build_plan
from storyreel.render.progress import ProgressCallback, ProgressReporter
from storyreel.render.timeline_validator import validate
from storyreel.schemas.export import ExportResult, ProgressEvent
from storyreel.schemas.timeline import TimelineLayer
from storyreel.services.storage_service import StorageService, create_storage_service

logger = logging.getLogger(__name__)

LayersInput = Sequence[Union[TimelineLayer, dict[str, Any]]]

# Share of the progress range used by asset fetching before the render starts
RESOLVE_PROGRESS_END = 5


class ExportPipeline:
    """Export one timeline per ``export()`` call; calls share no mutable state."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[StorageService] = None,
        executor: Optional[RenderExecutor] = None,
        resolver_factory: Optional[Callable[[], AssetResolver]] = None,
        config: Optional[RenderConfig] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or create_storage_service(self.settings)
        self.executor = executor or RenderExecutor(self.store, settings=self.settings)
        self.resolver_factory = resolver_factory or (
            lambda: AssetResolver(self.store, settings=self.settings)
        )
        self.config = config or RenderConfig.from_settings(self.settings)

    async def export(
        self,
        layers: LayersInput,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExportResult:
        """Assemble and store a movie from the timeline.

        Returns ``ExportResult(success=True, video_uri, vtt_url?)`` or a failure
        result with a user-facing message and error code.
        """
        reporter = ProgressReporter(on_progress, self.settings.progress_min_interval_s)
        try:
            timeline = validate(layers)
            logger.info(
                f"[EXPORT] Timeline valid: {len(timeline.layers)} layers, duration={timeline.duration_s:.3f}s"
            )

            async with self.resolver_factory() as resolver:
                uris = timeline.source_uris()
                assets = await resolver.resolve_all(uris)
                reporter.report(RESOLVE_PROGRESS_END)

                plan = build_plan(timeline, assets, self.config)
                output = await self.executor.execute(plan, reporter, cancel_event)

            logger.info(f"[EXPORT] Completed: {output.video_uri}")
            return ExportResult.succeeded(output.video_uri, output.captions_uri)

        except PlanningError as e:
            # Resolver and plan builder disagree: a bug, not a caller error
            logger.error(f"[EXPORT] Planning failed: {e.message}", exc_info=True)
            return ExportResult.failed(e.user_message(), e.code)
        except StoryreelError as e:
            logger.warning(f"[EXPORT] Failed ({e.code}, retryable={e.retryable}): {e.message}")
            return ExportResult.failed(e.user_message(), e.code)
        except Exception as e:
            logger.exception(f"[EXPORT] Unexpected error: {e}")
            return ExportResult.failed(GENERIC_EXPORT_FAILURE, "INTERNAL_ERROR")
        finally:
            reporter.close()

    async def stream(
        self,
        layers: LayersInput,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[Union[ProgressEvent, ExportResult]]:
        """Yield ProgressEvent items, then exactly one ExportResult."""
        queue: asyncio.Queue[int] = asyncio.Queue()
        task = asyncio.create_task(self.export(layers, queue.put_nowait, cancel_event))
        try:
            while True:
                getter = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield ProgressEvent(percent=getter.result())
                    continue
                getter.cancel()
                break
            while not queue.empty():
                yield ProgressEvent(percent=queue.get_nowait())
            yield task.result()
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)


async def export_movie(
    layers: LayersInput,
    on_progress: Optional[ProgressCallback] = None,
    *,
    settings: Optional[Settings] = None,
    store: Optional[StorageService] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> dict[str, Any]:
    """Export a timeline and return the caller-facing result dict."""
    pipeline = ExportPipeline(settings=settings, store=store)
    result = await pipeline.export(layers, on_progress, cancel_event)
    return result.to_dict()
