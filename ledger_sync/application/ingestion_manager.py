"""
Live log subscription: one subscription per program address, with
liveness probing and linear-backoff reconnects.
"""

from __future__ import annotations
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..domain.events import ReconnectExhaustedNotice, SignalType
from ..domain.interfaces import Commitment, LedgerClient, LogBatch, SubscriptionHandle
from ..utils.logging_setup import get_logger
from ..utils.structured_logger import LogCategory, StructuredLogger
from ..utils.timezone import now_utc
from ..utils.trace_context import new_cycle
from .checkpoints import CheckpointTracker
from .dispatcher import SignalDispatcher
from .error_tracker import ErrorRateTracker
from .event_pipeline import BatchOutcome, BatchStatus, EventPipeline


logger = get_logger(__name__)
alerts = StructuredLogger(logger)

Sleep = Callable[[float], Awaitable[None]]
StateListener = Callable[[bool, Optional[str]], None]


class IngestionManager:
    """
    Owns the live log subscription for one program.

    Batches are handled one at a time in arrival order. After a batch
    is decoded and dispatched the checkpoint is advanced to its position
    (never backwards). Subscription failures and failed liveness checks
    schedule a reconnect after `reconnect_base_delay * attempt` seconds;
    once `max_reconnect_attempts` is exhausted the terminal
    `max-reconnect-attempts-reached` signal is emitted and retrying stops.

    `sleep` is used for reconnect delays only.
    """

    def __init__(
        self,
        client: LedgerClient,
        pipeline: EventPipeline,
        checkpoints: CheckpointTracker,
        errors: ErrorRateTracker,
        dispatcher: SignalDispatcher,
        program_address: str,
        commitment: Commitment = Commitment.CONFIRMED,
        liveness_threshold: float = 300.0,
        liveness_check_interval: float = 60.0,
        reconnect_base_delay: float = 5.0,
        max_reconnect_attempts: int = 10,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[StateListener] = None,
    ):
        self._client = client
        self._pipeline = pipeline
        self._checkpoints = checkpoints
        self._errors = errors
        self._dispatcher = dispatcher
        self._program = program_address
        self._commitment = commitment
        self._liveness_threshold = liveness_threshold
        self._liveness_interval = liveness_check_interval
        self._base_delay = reconnect_base_delay
        self._max_attempts = max_reconnect_attempts
        self._sleep = sleep
        self._clock = clock
        self._on_state_change = on_state_change

        self._handle: Optional[SubscriptionHandle] = None
        self._batch_lock = asyncio.Lock()
        self._liveness_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._last_batch_at = clock()
        self._last_error: Optional[str] = None
        self._closed = False
        self._exhausted = False
        self._checkpoint_held = False
        self._held: Optional[Tuple[int, str]] = None

        self._stats = {
            "batches": 0,
            "events": 0,
            "duplicates": 0,
            "failed_skipped": 0,
            "parse_errors": 0,
            "reconnects": 0,
        }

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def is_subscribed(self) -> bool:
        return self._handle is not None

    @property
    def commitment(self) -> Commitment:
        return self._commitment

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def exhausted(self) -> bool:
        """True once reconnect attempts have run out."""
        return self._exhausted

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Open the subscription; a second call while subscribed is a no-op."""
        if self._handle is not None:
            logger.warning("Subscription already open; start() ignored")
            return
        self._closed = False
        await self._open()

    async def _open(self) -> None:
        try:
            if not self._checkpoints.loaded:
                await self._checkpoints.load()
            handle = await self._client.subscribe_logs(
                self._program,
                self._commitment,
                self._on_log_batch,
            )
        except Exception as e:
            self._last_error = str(e) or e.__class__.__name__
            logger.error(f"Failed to open subscription for {self._program}: {e}", exc_info=True)
            await self._errors.record(e)
            self._notify(False)
            await self._schedule_reconnect()
            return

        if self._closed:
            logger.info(f"Stopped while subscribing; closing subscription {handle.subscription_id}")
            try:
                await self._client.unsubscribe_logs(handle)
            except Exception as e:
                logger.warning(f"Error closing subscription {handle.subscription_id}: {e}")
            return

        self._handle = handle
        self._reconnect_attempts = 0
        self._last_batch_at = self._clock()
        self._liveness_task = asyncio.create_task(self._liveness_loop(), name="ingestion-liveness")
        logger.info(
            f"Subscribed to {self._program} at {self._commitment.value} "
            f"(subscription {handle.subscription_id})"
        )
        self._notify(True)

    async def stop(self) -> None:
        """
        Close the subscription and release timers.

        A reconnect in progress is cancelled, including one that is
        still waiting on subscribe_logs. In-flight batch handling is
        allowed to complete; finality checks already scheduled are not
        touched.
        """
        self._closed = True
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._teardown()
        self._notify(False)
        logger.info("Ingestion stopped")

    async def _teardown(self) -> None:
        current = asyncio.current_task()
        task = self._liveness_task
        self._liveness_task = None
        if task is not None and task is not current and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        handle = self._handle
        self._handle = None
        if handle is not None:
            try:
                await self._client.unsubscribe_logs(handle)
            except Exception as e:
                logger.warning(f"Error closing subscription {handle.subscription_id}: {e}")

    # -------------------------------------------------------------------------
    # Batch handling
    # -------------------------------------------------------------------------

    async def _on_log_batch(self, batch: LogBatch) -> None:
        async with self._batch_lock:
            with new_cycle(subject=batch.tx_id):
                self._last_batch_at = self._clock()
                self._stats["batches"] += 1
                try:
                    outcome = await self._pipeline.process(batch)
                    self._count(outcome)
                    if outcome.parsed:
                        await self._advance(batch)
                except Exception as e:
                    logger.error(f"Error handling batch {batch.tx_id}: {e}", exc_info=True)
                    await self._errors.record(e)

    def _count(self, outcome: BatchOutcome) -> None:
        if outcome.status is BatchStatus.SKIPPED_DUPLICATE:
            self._stats["duplicates"] += 1
        elif outcome.status is BatchStatus.SKIPPED_FAILED:
            self._stats["failed_skipped"] += 1
        elif outcome.status is BatchStatus.PARSE_ERROR:
            self._stats["parse_errors"] += 1
        self._stats["events"] += outcome.event_count

    # -------------------------------------------------------------------------
    # Checkpoint hold
    # -------------------------------------------------------------------------

    @property
    def checkpoint_held(self) -> bool:
        return self._checkpoint_held

    def hold_checkpoint(self) -> None:
        """
        Stop live batches from moving the checkpoint.

        Used while a gap below the live stream is still being replayed:
        the highest live position is remembered and only persisted by
        release_checkpoint().
        """
        self._checkpoint_held = True

    async def release_checkpoint(self) -> bool:
        """Lift the hold and persist the highest live position seen meanwhile."""
        self._checkpoint_held = False
        held, self._held = self._held, None
        if held is None:
            return False
        position, tx_id = held
        logger.info(f"Checkpoint hold released at position {position}")
        return await self._checkpoints.advance(position, tx_id, healthy=self._errors.healthy)

    async def _advance(self, batch: LogBatch) -> None:
        if self._checkpoint_held:
            if self._held is None or batch.position > self._held[0]:
                self._held = (batch.position, batch.tx_id)
            return
        await self._checkpoints.advance(batch.position, batch.tx_id, healthy=self._errors.healthy)

    # -------------------------------------------------------------------------
    # Liveness and reconnect
    # -------------------------------------------------------------------------

    async def _liveness_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._liveness_interval)
            idle = self._clock() - self._last_batch_at
            if idle < self._liveness_threshold:
                continue

            logger.warning(f"No batches for {idle:.0f}s, checking ledger")
            try:
                position = await self._client.get_current_position(self._commitment)
            except Exception as e:
                self._last_error = str(e) or e.__class__.__name__
                logger.error(f"Liveness check failed: {e}")
                await self._errors.record(e)
                await self._restart()
                return
            # Success only proves connectivity.
            logger.info(f"Liveness check ok (position {position})")

    async def _restart(self) -> None:
        logger.warning("Restarting subscription")
        await self._teardown()
        self._notify(False)
        await self._schedule_reconnect()

    async def _schedule_reconnect(self) -> None:
        if self._closed:
            return
        pending = self._reconnect_task
        if pending is not None and not pending.done() and pending is not asyncio.current_task():
            return

        if self._reconnect_attempts >= self._max_attempts:
            self._exhausted = True
            alerts.critical(
                LogCategory.ALERT,
                f"Max reconnect attempts ({self._max_attempts}) reached; manual intervention required",
                {"program": self._program, "last_error": self._last_error},
            )
            await self._dispatcher.emit(
                SignalType.MAX_RECONNECT_ATTEMPTS_REACHED,
                ReconnectExhaustedNotice(
                    attempts=self._reconnect_attempts,
                    last_error=self._last_error,
                    detected_at=now_utc(),
                ),
            )
            return

        self._reconnect_attempts += 1
        delay = self._base_delay * self._reconnect_attempts
        logger.info(
            f"Reconnecting in {delay:.1f}s "
            f"(attempt {self._reconnect_attempts}/{self._max_attempts})"
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay),
            name=f"ingestion-reconnect-{self._reconnect_attempts}",
        )

    async def _reconnect_after(self, delay: float) -> None:
        # Stays the registered reconnect task until the subscription is open,
        # so stop() can cancel it while subscribe_logs is pending.
        try:
            await self._sleep(delay)
            if self._closed:
                return
            self._stats["reconnects"] += 1
            await self._open()
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    def _notify(self, subscribed: bool) -> None:
        if self._on_state_change is None:
            return
        try:
            self._on_state_change(subscribed, self._last_error)
        except Exception as e:
            logger.error(f"State listener failed: {e}")

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self._stats)
        stats["subscribed"] = self.is_subscribed
        stats["reconnect_attempts"] = self._reconnect_attempts
        stats["checkpoint_position"] = self._checkpoints.position
        stats["checkpoint_held"] = self._checkpoint_held
        stats["dedup_size"] = len(self._pipeline.dedup)
        return stats
