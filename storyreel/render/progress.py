"""Progress reporting for one export.

Percentages are integers in 0..100, never decrease, and are coalesced so a
fast stream of backend updates does not flood the caller. 100 is emitted
exactly once, by ``complete()``; after ``close()`` nothing is emitted.
"""

import logging
import time
from typing import Callable, Optional

from storyreel.config import get_settings

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


class ProgressReporter:
    def __init__(
        self,
        callback: Optional[ProgressCallback] = None,
        min_interval_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.callback = callback
        self.min_interval_s = (
            get_settings().progress_min_interval_s if min_interval_s is None else min_interval_s
        )
        self._clock = clock
        self._last_percent = -1
        self._last_emit_at: float | None = None
        self._closed = False

    @property
    def last_percent(self) -> int:
        """Last emitted percent, or -1 before the first emission."""
        return self._last_percent

    @property
    def closed(self) -> bool:
        return self._closed

    def report(self, percent: float) -> None:
        """Offer a new percentage; emitted only if it advances and is not throttled.

        100 is reserved for ``complete()``, so reports are capped at 99.
        """
        if self._closed:
            return
        value = max(0, min(99, int(percent)))
        if value <= self._last_percent:
            return
        now = self._clock()
        if (
            self._last_emit_at is not None
            and self.min_interval_s > 0
            and now - self._last_emit_at < self.min_interval_s
        ):
            return
        self._emit(value, now)

    def complete(self) -> None:
        """Emit 100 once and stop."""
        if self._closed:
            return
        self._emit(100, self._clock())
        self._closed = True

    def close(self) -> None:
        self._closed = True

    def scaled(self, start: int, end: int) -> ProgressCallback:
        """Callback mapping a sub-stage's 0..100 onto [start, end] of this reporter."""
        span = end - start

        def report_stage(percent: float) -> None:
            self.report(start + span * max(0.0, min(100.0, percent)) / 100)

        return report_stage

    def _emit(self, value: int, now: float) -> None:
        self._last_percent = value
        self._last_emit_at = now
        if self.callback is None:
            return
        try:
            self.callback(value)
        except Exception as e:
            logger.warning(f"[PROGRESS] Progress callback failed at {value}%: {e}")
