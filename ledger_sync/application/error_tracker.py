"""Rolling error-rate counter feeding the checkpoint health flag."""

from __future__ import annotations
import time
from typing import Callable, Optional

from ..domain.events import HighErrorRateNotice, SignalType
from ..utils.logging_setup import get_logger
from ..utils.structured_logger import LogCategory, StructuredLogger
from ..utils.timezone import now_utc
from .checkpoints import CheckpointTracker
from .dispatcher import SignalDispatcher


logger = get_logger(__name__)
alerts = StructuredLogger(logger)


class ErrorRateTracker:
    """
    Counts errors in fixed windows.

    When the count in the current window reaches the threshold the
    checkpoint is flagged unhealthy and `high-error-rate` is emitted on
    every further error in that window. Ingestion is never stopped.
    """

    def __init__(
        self,
        checkpoints: CheckpointTracker,
        dispatcher: SignalDispatcher,
        window_seconds: float = 60.0,
        threshold: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._checkpoints = checkpoints
        self._dispatcher = dispatcher
        self._window_seconds = window_seconds
        self._threshold = threshold
        self._clock = clock

        self._count = 0
        self._window_start = clock()
        self._last_error: Optional[str] = None
        self._total = 0

    @property
    def count(self) -> int:
        """Errors in the current window."""
        self._roll()
        return self._count

    @property
    def total(self) -> int:
        return self._total

    @property
    def healthy(self) -> bool:
        return self.count < self._threshold

    def _roll(self) -> None:
        now = self._clock()
        if now - self._window_start > self._window_seconds:
            self._count = 0
            self._window_start = now

    async def record(self, error: BaseException | str) -> None:
        """Count one error and update the checkpoint health."""
        self._roll()
        self._count += 1
        self._total += 1
        message = str(error) or error.__class__.__name__
        self._last_error = message

        healthy = self._count < self._threshold
        try:
            await self._checkpoints.record_error(message, healthy)
        except Exception as e:
            logger.error(f"Failed to record error on checkpoint: {e}")

        if not healthy:
            alerts.error(
                LogCategory.ALERT,
                f"High error rate: {self._count} errors in the last {self._window_seconds:.0f}s",
                {"last_error": message},
            )
            await self._dispatcher.emit(
                SignalType.HIGH_ERROR_RATE,
                HighErrorRateNotice(
                    error_count=self._count,
                    window_seconds=self._window_seconds,
                    last_error=message,
                    detected_at=now_utc(),
                ),
            )
