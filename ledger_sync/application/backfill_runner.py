"""Historical range replay through the live dispatch path."""

from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from ..domain.errors import AlreadyRunningError
from ..domain.interfaces import Commitment, LedgerClient, LogBatch, TransactionRef
from ..utils.logging_setup import get_logger
from ..utils.timezone import now_utc
from ..utils.trace_context import new_cycle
from .checkpoints import CheckpointTracker
from .error_tracker import ErrorRateTracker
from .event_pipeline import BatchStatus, EventPipeline


logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class BackfillReport:
    """Summary of one backfill run."""
    from_position: int
    to_position: int
    windows: int = 0
    transactions: int = 0
    events: int = 0
    duplicates: int = 0
    skipped: int = 0
    errors: int = 0
    halted_at: Optional[int] = None  # First position that could not be replayed
    last_error: Optional[str] = None
    started_at: datetime = field(default_factory=now_utc)
    finished_at: Optional[datetime] = None

    @property
    def complete(self) -> bool:
        return self.halted_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_position": self.from_position,
            "to_position": self.to_position,
            "windows": self.windows,
            "transactions": self.transactions,
            "events": self.events,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "errors": self.errors,
            "halted_at": self.halted_at,
            "last_error": self.last_error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class BackfillRunner:
    """
    Replays a historical position range in fixed-size windows.

    The range's transaction list is fetched once per run and replayed
    window by window. Every transaction goes through the same
    EventPipeline as live batches, so the shared dedup window keeps
    overlapping ranges from dispatching twice.

    After a clean window the checkpoint moves to the window's upper
    bound. If fetching or processing a transaction raises, the run
    halts: the checkpoint moves only to the position before the failed
    one and `report.halted_at` names it, so a later run resumes there.
    """

    def __init__(
        self,
        client: LedgerClient,
        pipeline: EventPipeline,
        checkpoints: CheckpointTracker,
        errors: ErrorRateTracker,
        program_address: str,
        window_size: int = 100,
        pause: float = 0.1,
        sleep: Sleep = asyncio.sleep,
    ):
        if window_size <= 0:
            raise ValueError(f"window_size must be positive, got {window_size}")
        self._client = client
        self._pipeline = pipeline
        self._checkpoints = checkpoints
        self._errors = errors
        self._program = program_address
        self._window_size = window_size
        self._pause = pause
        self._sleep = sleep
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run(self, from_position: int, to_position: Optional[int] = None) -> BackfillReport:
        """
        Replay [from_position, to_position].

        Args:
            from_position: First position to replay.
            to_position: Last position; defaults to the current finalized position.

        Raises:
            AlreadyRunningError: If a backfill is already in progress.
        """
        if self._running:
            raise AlreadyRunningError("Backfill already running")
        self._running = True
        try:
            if to_position is None:
                to_position = await self._client.get_current_position(Commitment.FINALIZED)

            report = BackfillReport(from_position=from_position, to_position=to_position)
            if from_position > to_position:
                logger.info(f"Nothing to backfill ({from_position} > {to_position})")
                report.finished_at = now_utc()
                return report

            logger.info(
                f"Backfilling positions {from_position}..{to_position} "
                f"in windows of {self._window_size}"
            )
            refs = await self._client.get_transactions_for_address(
                self._program, from_position, to_position
            )
            refs = sorted(refs, key=lambda r: r.position)

            current = from_position
            index = 0
            while current <= to_position:
                upper = min(current + self._window_size - 1, to_position)
                end = index
                while end < len(refs) and refs[end].position <= upper:
                    end += 1
                with new_cycle(subject=f"{current}..{upper}"):
                    ok = await self._run_window(current, upper, refs[index:end], report)
                if not ok:
                    break
                index = end
                current = upper + 1
                if current <= to_position and self._pause > 0:
                    await self._sleep(self._pause)

            report.finished_at = now_utc()
            if report.complete:
                logger.info(
                    f"Backfill complete: {report.transactions} tx, {report.events} events, "
                    f"{report.duplicates} duplicates, {report.errors} errors"
                )
            else:
                logger.error(
                    f"Backfill halted at position {report.halted_at}: {report.last_error}"
                )
            return report
        finally:
            self._running = False

    async def _run_window(
        self,
        lower: int,
        upper: int,
        refs: Sequence[TransactionRef],
        report: BackfillReport,
    ) -> bool:
        logger.debug(f"Window {lower}..{upper}: {len(refs)} transaction(s)")

        for ref in refs:
            report.transactions += 1
            if ref.failed:
                report.skipped += 1
                continue
            try:
                tx = await self._client.get_transaction_logs(ref.tx_id)
                if tx is None:
                    logger.warning(f"Transaction {ref.tx_id} not found during backfill")
                    report.skipped += 1
                    continue
                outcome = await self._pipeline.process(
                    LogBatch(
                        tx_id=tx.tx_id,
                        position=tx.position,
                        logs=tuple(tx.logs),
                        failed=tx.failed,
                        error=tx.error,
                        commitment=Commitment.FINALIZED,
                    )
                )
            except Exception as e:
                report.errors += 1
                report.halted_at = ref.position
                report.last_error = str(e) or e.__class__.__name__
                logger.error(f"Backfill failed for {ref.tx_id} at {ref.position}: {e}", exc_info=True)
                await self._errors.record(e)
                # Everything below the failed position has been dispatched.
                await self._checkpoints.advance(ref.position - 1, healthy=self._errors.healthy)
                return False

            if outcome.status is BatchStatus.SKIPPED_DUPLICATE:
                report.duplicates += 1
            elif outcome.status is BatchStatus.SKIPPED_FAILED:
                report.skipped += 1
            elif outcome.status is BatchStatus.PARSE_ERROR:
                report.errors += 1
            report.events += outcome.event_count

        await self._checkpoints.advance(upper, healthy=self._errors.healthy)
        report.windows += 1
        return True
