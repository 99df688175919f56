"""
Shared batch path for live ingestion and backfill.

Both producers hand a LogBatch to EventPipeline.process(); the pipeline
skips failed and already-seen transactions, decodes program events,
and dispatches them to consumers.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from ..domain.errors import DecodeError
from ..domain.events import ParseErrorNotice, SignalType, observed
from ..domain.interfaces import Commitment, DecodedEvent, EventDecoder, LogBatch
from ..utils.logging_setup import get_logger
from ..utils.timezone import now_utc
from .dedup_window import DedupWindow
from .dispatcher import SignalDispatcher
from .error_tracker import ErrorRateTracker

if TYPE_CHECKING:
    from .finality_tracker import FinalityTracker


logger = get_logger(__name__)


class BatchStatus(Enum):
    SKIPPED_FAILED = "skipped_failed"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    PARSE_ERROR = "parse_error"
    DISPATCHED = "dispatched"


@dataclass(frozen=True)
class BatchOutcome:
    status: BatchStatus
    event_count: int = 0

    @property
    def parsed(self) -> bool:
        """True when the batch's logs were decoded (possibly to zero events)."""
        return self.status is BatchStatus.DISPATCHED


class EventPipeline:
    """Skip → dedup → decode → dispatch for one transaction's logs."""

    def __init__(
        self,
        decoder: EventDecoder,
        dispatcher: SignalDispatcher,
        dedup: DedupWindow,
        errors: ErrorRateTracker,
        finality: Optional["FinalityTracker"] = None,
    ):
        self._decoder = decoder
        self._dispatcher = dispatcher
        self._dedup = dedup
        self._errors = errors
        self._finality = finality

    @property
    def dedup(self) -> DedupWindow:
        return self._dedup

    async def process(self, batch: LogBatch) -> BatchOutcome:
        if batch.failed:
            logger.debug(f"Skipping failed transaction {batch.tx_id}: {batch.error}")
            return BatchOutcome(BatchStatus.SKIPPED_FAILED)

        if batch.tx_id in self._dedup:
            logger.debug(f"Duplicate transaction {batch.tx_id} at {batch.position}")
            return BatchOutcome(BatchStatus.SKIPPED_DUPLICATE)

        try:
            events = self._decoder.parse_events(batch.logs)
        except Exception as e:
            # Decoders are pluggable; any failure is a parse error for this batch.
            await self._report_parse_error(batch, e)
            return BatchOutcome(BatchStatus.PARSE_ERROR)

        if not events:
            return BatchOutcome(BatchStatus.DISPATCHED, 0)

        # Check-and-add in one step; a concurrent producer may have won the race.
        if not self._dedup.add(batch.tx_id):
            return BatchOutcome(BatchStatus.SKIPPED_DUPLICATE)

        for event in events:
            await self._dispatch(batch, event)

        logger.info(
            f"Dispatched {len(events)} event(s) from {batch.tx_id} at position {batch.position}"
        )
        return BatchOutcome(BatchStatus.DISPATCHED, len(events))

    async def _dispatch(self, batch: LogBatch, event: DecodedEvent) -> None:
        payload = observed(
            event.kind,
            event.data,
            batch.tx_id,
            batch.position,
            batch.commitment,
        )
        await self._dispatcher.emit(SignalType.LEDGER_EVENT, payload)
        await self._dispatcher.emit(SignalType.EVENT, payload, event.kind)

        if self._finality is not None and not batch.commitment.at_least(Commitment.FINALIZED):
            self._finality.schedule_check(batch.tx_id, batch.position, event.kind, event.data)

    async def _report_parse_error(self, batch: LogBatch, error: Exception) -> None:
        if isinstance(error, DecodeError):
            logger.error(f"Failed to parse events from {batch.tx_id}: {error}")
        else:
            logger.error(f"Decoder raised on {batch.tx_id}: {error!r}", exc_info=error)
        await self._dispatcher.emit(
            SignalType.PARSE_ERROR,
            ParseErrorNotice(
                tx_id=batch.tx_id,
                position=batch.position,
                logs=tuple(batch.logs),
                error=str(error) or error.__class__.__name__,
                observed_at=now_utc(),
            ),
        )
        await self._errors.record(error)
