"""
Sync Worker - composition root and process lifecycle.

Wires the ledger client, persistence, dispatcher and pipeline services,
then runs them until a shutdown signal:
1. Connect the database and apply migrations
2. Load the checkpoint and register consumer handlers
3. Start live ingestion, holding its checkpoint writes
4. Backfill the gap since the last checkpoint (bounded) alongside it,
   then release the hold
5. Run the reconciliation loop and the health heartbeat
6. On SIGINT/SIGTERM or reconnect exhaustion, shut down in order

Usage:
    worker = SyncWorker.from_config(config)
    exit_code = await worker.run()
"""

from __future__ import annotations
import asyncio
import math
import signal
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from config.models import AppConfig

from ..domain.events import (
    EventKind,
    FinalityNotice,
    HighErrorRateNotice,
    ParseErrorNotice,
    ReconnectExhaustedNotice,
    ReorgNotice,
    SignalType,
)
from ..domain.interfaces import CheckpointStore, Commitment, EventDecoder, LedgerClient
from ..infrastructure.monitoring.health_monitor import (
    CHECKPOINT,
    RECONCILIATION,
    SUBSCRIPTION,
    HealthMonitor,
    HealthStatus,
)
from ..infrastructure.observability import HealthMetrics, MetricsManager
from ..infrastructure.persistence.database import Database
from ..utils.logging_setup import get_logger
from ..utils.structured_logger import LogCategory, StructuredLogger
from .backfill_runner import BackfillReport, BackfillRunner
from .checkpoints import CheckpointTracker
from .dedup_window import DedupWindow
from .dispatcher import SignalDispatcher
from .error_tracker import ErrorRateTracker
from .event_pipeline import EventPipeline
from .finality_tracker import FinalityTracker
from .ingestion_manager import IngestionManager
from .projection_consumer import COUPON_COLUMNS, PROMOTION_COLUMNS, ProjectionConsumer
from .reconciliation_engine import (
    ReconciliationEngine,
    ReconciliationReport,
    ReconciliationTarget,
)


logger = get_logger(__name__)
structured = StructuredLogger(logger)

Sleep = Callable[[float], Awaitable[None]]
EventHandler = Callable[[Any], Awaitable[None]]

# Seconds between finalized-position reads while waiting for it to catch up.
FINALIZED_POLL_SEC = 1.0

PROMOTION_TRACKED = ("current_supply", "is_active")
COUPON_TRACKED = ("owner", "is_redeemed")


def with_retry(
    handler: EventHandler,
    max_retries: int,
    retry_delay: float,
    sleep: Sleep = asyncio.sleep,
) -> EventHandler:
    """
    Wrap a consumer handler with linear-backoff retries.

    The handler is attempted up to `max_retries` times, sleeping
    `retry_delay * attempt` between attempts. The last failure is
    logged and re-raised so the dispatcher counts it.
    """
    attempts_allowed = max(1, max_retries)
    name = getattr(handler, "__name__", repr(handler))

    async def wrapped(payload: Any) -> None:
        attempt = 0
        while True:
            try:
                await handler(payload)
                return
            except Exception as e:
                attempt += 1
                logger.error(f"Handler {name} failed (attempt {attempt}/{attempts_allowed}): {e}")
                if attempt >= attempts_allowed:
                    logger.error(f"Max retry attempts reached for handler {name}")
                    raise
                await sleep(retry_delay * attempt)

    wrapped.__name__ = name
    return wrapped


class SyncWorker:
    """
    Long-running sync process for one program.

    All services are constructed here once and shared by reference.
    The checkpoint tracker and dedup window are shared by live
    ingestion and backfill.
    """

    def __init__(
        self,
        config: AppConfig,
        client: LedgerClient,
        decoder: EventDecoder,
        checkpoint_store: CheckpointStore,
        targets: Iterable[ReconciliationTarget] = (),
        consumer: Optional[ProjectionConsumer] = None,
        db: Optional[Database] = None,
        metrics: Optional[MetricsManager] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config
        self.client = client
        self.db = db
        self._sleep = sleep

        self.health = HealthMonitor()
        self._metrics_manager = metrics
        self.health_metrics: Optional[HealthMetrics] = None
        self.dispatcher = SignalDispatcher(await_handlers=config.ingestion.await_handlers)
        self.dedup = DedupWindow(config.ingestion.dedup_capacity)
        self.checkpoints = CheckpointTracker(checkpoint_store, config.ingestion.process_name)
        self.errors = ErrorRateTracker(
            self.checkpoints,
            self.dispatcher,
            window_seconds=config.ingestion.error_window_sec,
            threshold=config.ingestion.error_threshold,
        )
        self.finality = FinalityTracker(
            client,
            self.dispatcher,
            grace_period=config.finality.grace_period_sec,
        )
        self.pipeline = EventPipeline(
            decoder, self.dispatcher, self.dedup, self.errors, self.finality
        )
        self.ingestion = IngestionManager(
            client,
            self.pipeline,
            self.checkpoints,
            self.errors,
            self.dispatcher,
            program_address=config.ledger.program_id,
            commitment=Commitment(config.ledger.commitment),
            liveness_threshold=config.ingestion.liveness_threshold_sec,
            liveness_check_interval=config.ingestion.liveness_check_interval_sec,
            reconnect_base_delay=config.ingestion.reconnect_base_delay_sec,
            max_reconnect_attempts=config.ingestion.max_reconnect_attempts,
            on_state_change=self._on_subscription_state,
        )
        self.backfill = BackfillRunner(
            client,
            self.pipeline,
            self.checkpoints,
            self.errors,
            program_address=config.ledger.program_id,
            window_size=config.backfill.window_size,
            pause=config.backfill.pause_sec,
        )
        self.engine = ReconciliationEngine(
            client,
            targets,
            recent_window=timedelta(seconds=config.reconciliation.recent_window_sec),
        )
        self.consumer = consumer

        self._stop_event = asyncio.Event()
        self._stop_reason = "shutdown"
        self._exit_code = 0
        self._recon_task: Optional[asyncio.Task] = None
        self._backfill_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._recon_cycle = 0
        self._opened = False
        self._live = False
        self._closed = False

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(cls, config: AppConfig) -> "SyncWorker":
        """Build a worker over PostgreSQL and a Solana RPC node."""
        from ..infrastructure.adapters.solana import (
            AnchorAccountDecoder,
            AnchorEventDecoder,
            AnchorIdl,
            SolanaLedgerClient,
        )
        from ..infrastructure.persistence.repositories import (
            CheckpointRepository,
            ProjectionRepository,
        )

        db = Database(config.database)
        idl = AnchorIdl.from_file(config.ledger.idl_path)
        accounts = AnchorAccountDecoder(idl)
        client = SolanaLedgerClient(
            config.ledger.rpc_url,
            config.ledger.ws_url,
            request_timeout=config.ledger.request_timeout_sec,
        )

        promotions = ProjectionRepository(db, "promotions", PROMOTION_TRACKED, PROMOTION_COLUMNS)
        coupons = ProjectionRepository(db, "coupons", COUPON_TRACKED, COUPON_COLUMNS)
        targets = [
            ReconciliationTarget(
                entity_type="promotion",
                store=promotions,
                tracked_fields=PROMOTION_TRACKED,
                account_name="Promotion",
                decode=accounts.fields_of("Promotion", PROMOTION_TRACKED),
                reorg_keys={EventKind.PROMOTION_CREATED: "promotion"},
            ),
            ReconciliationTarget(
                entity_type="coupon",
                store=coupons,
                tracked_fields=COUPON_TRACKED,
                account_name="Coupon",
                decode=accounts.fields_of("Coupon", COUPON_TRACKED),
                reorg_keys={
                    EventKind.COUPON_MINTED: "coupon",
                    EventKind.COUPON_TRANSFERRED: "coupon",
                    EventKind.COUPON_REDEEMED: "coupon",
                },
            ),
        ]

        return cls(
            config,
            client=client,
            decoder=AnchorEventDecoder(idl, config.ledger.program_id),
            checkpoint_store=CheckpointRepository(db),
            targets=targets,
            consumer=ProjectionConsumer(promotions, coupons, db.transaction),
            db=db,
            metrics=MetricsManager(config.monitoring.metrics_port)
            if config.monitoring.metrics_enabled
            else None,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def exit_code(self) -> int:
        return self._exit_code

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def open(self) -> None:
        """Connect storage, load the checkpoint and register handlers."""
        if self._opened:
            return
        if self.db is not None:
            from migrations.runner import run_migrations

            await self.db.connect()
            applied = await run_migrations(self.db)
            if applied:
                structured.info(
                    LogCategory.SYSTEM,
                    "Migrations applied",
                    {"versions": [m.version for m in applied]},
                )

        checkpoint = await self.checkpoints.load()
        self.health.update_component_health(
            CHECKPOINT,
            HealthStatus.HEALTHY if checkpoint.healthy else HealthStatus.DEGRADED,
            f"position {checkpoint.last_processed_position}",
        )
        self._register_handlers()
        self._opened = True

    def _register_handlers(self) -> None:
        handlers = self.config.handlers
        if self.consumer is not None:
            for kind, handler in self.consumer.handlers().items():
                self.dispatcher.on_event(
                    kind,
                    with_retry(handler, handlers.max_retries, handlers.retry_delay_sec, self._sleep),
                )

        self.dispatcher.subscribe(SignalType.TRANSACTION_FINALIZED, self._on_finalized)
        self.dispatcher.subscribe(SignalType.POTENTIAL_REORG, self._on_potential_reorg)
        self.dispatcher.subscribe(SignalType.HIGH_ERROR_RATE, self._on_high_error_rate)
        self.dispatcher.subscribe(
            SignalType.MAX_RECONNECT_ATTEMPTS_REACHED, self._on_reconnect_exhausted
        )
        self.dispatcher.subscribe(SignalType.PARSE_ERROR, self._on_parse_error)
        logger.info(f"Registered handlers ({self.dispatcher.get_stats()['handler_count']} total)")

    async def run(self) -> int:
        """
        Run until a shutdown signal or a fatal condition.

        Returns:
            Process exit code (0 on clean shutdown).
        """
        self._live = True
        self._install_signal_handlers()
        try:
            await self.open()
            if self._metrics_manager is not None:
                self._metrics_manager.start()
                self.health_metrics = HealthMetrics(self._metrics_manager.get_meter("ledger_sync.health"))
            if not self.stopping:
                if self.config.backfill.on_startup and self.checkpoints.position > 0:
                    self.ingestion.hold_checkpoint()
                await self.ingestion.start()
            if not self.stopping:
                self._backfill_task = asyncio.create_task(
                    self._startup_backfill_task(), name="startup-backfill"
                )
            if self.config.reconciliation.enabled and not self.stopping:
                self._recon_task = asyncio.create_task(
                    self._reconciliation_loop(), name="reconciliation-loop"
                )
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="health-heartbeat")
            structured.info(
                LogCategory.SYSTEM,
                "Sync worker started",
                {
                    "program": self.config.ledger.program_id,
                    "checkpoint": self.checkpoints.position,
                },
            )
            await self._stop_event.wait()
        except Exception as e:
            structured.critical(LogCategory.SYSTEM, "Fatal error", {"error": str(e)})
            logger.exception("Fatal error:")
            self._exit_code = 1
            self._stop_reason = f"error: {e}"
        finally:
            self._remove_signal_handlers()
            await self.close(self._stop_reason)
        return self._exit_code

    def request_shutdown(self, reason: str = "shutdown", exit_code: int = 0) -> None:
        """Ask run() to return; the first reason wins."""
        if self._stop_event.is_set():
            return
        self._stop_reason = reason
        self._exit_code = exit_code
        logger.info(f"Shutdown requested: {reason}")
        self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, f"Shutdown via {sig.name}")
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot install handler for {sig.name}")

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    async def close(self, reason: str = "shutdown") -> None:
        """
        Shut down in order.

        Ingestion first so no new batches arrive, then any startup gap
        replay and the in-flight reconciliation pass (bounded by the
        shutdown timeout). Pending finality checks and background handler
        tasks follow, and the checkpoint is marked stopped before
        transports are closed.
        """
        if self._closed:
            return
        self._closed = True
        self._stop_event.set()
        timeout = self.config.shutdown.timeout_sec
        structured.info(LogCategory.SYSTEM, "Shutting down", {"reason": reason})

        if self._live:
            self.publish_health()
        await _cancel(self._heartbeat_task)
        self._heartbeat_task = None

        try:
            await self.ingestion.stop()
        except Exception as e:
            logger.error(f"Error stopping ingestion: {e}", exc_info=True)

        # An unfinished gap replay keeps the checkpoint where it is; the next start resumes it.
        await _cancel(self._backfill_task)
        self._backfill_task = None

        task = self._recon_task
        self._recon_task = None
        if task is not None:
            if self.engine.in_progress:
                await asyncio.wait({task}, timeout=timeout)
            await _cancel(task)
        try:
            await asyncio.wait_for(self.engine.wait_idle(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Reconciliation pass still running after {timeout:.0f}s")

        await self.finality.close()
        await self.dispatcher.drain(timeout=timeout)

        # One-off commands leave the live process's health flag alone.
        if self._opened and self._live:
            try:
                await self.checkpoints.mark_stopped(reason)
            except Exception as e:
                logger.error(f"Failed to mark checkpoint stopped: {e}")

        try:
            await self.client.close()
        except Exception as e:
            logger.error(f"Error closing ledger client: {e}")
        if self.db is not None:
            await self.db.close()
        if self._metrics_manager is not None:
            self._metrics_manager.shutdown()

        structured.info(LogCategory.SYSTEM, "System shutdown complete", {"exit_code": self._exit_code})

    # -------------------------------------------------------------------------
    # Backfill and reconciliation
    # -------------------------------------------------------------------------

    async def startup_backfill(self) -> Optional[BackfillReport]:
        """
        Replay positions missed while the worker was down, up to max_startup_gap.

        Called once the live subscription is open. The range runs from the
        checkpoint to the finalized position, after waiting for finality to
        reach where the live stream started. A halted replay is resumed
        from its failed position up to `backfill.max_retries` times.

        The live checkpoint hold is released only when the whole gap has
        been replayed; otherwise the checkpoint stays inside the gap so the
        next start replays it again.
        """
        cfg = self.config.backfill
        if not cfg.on_startup:
            await self.ingestion.release_checkpoint()
            return None
        if self.checkpoints.position <= 0:
            logger.info("No previous checkpoint; skipping startup backfill")
            await self.ingestion.release_checkpoint()
            return None

        start = self.checkpoints.position + 1
        upper: Optional[int] = None
        report: Optional[BackfillReport] = None
        for attempt in range(cfg.max_retries + 1):
            if attempt:
                if self.stopping:
                    break
                await self._sleep(cfg.retry_delay_sec * attempt)
            try:
                if upper is None:
                    upper = await self._startup_upper_bound()
                    if upper < start:
                        await self.ingestion.release_checkpoint()
                        return None
                    if upper - start + 1 > cfg.max_startup_gap:
                        clipped = upper - cfg.max_startup_gap + 1
                        structured.warning(
                            LogCategory.INGEST,
                            "Startup gap exceeds limit; older positions skipped",
                            {"from": start, "clipped_from": clipped, "to": upper},
                        )
                        start = clipped
                report = await self.run_backfill(start, upper)
            except Exception as e:
                logger.error(f"Startup backfill attempt {attempt + 1} failed: {e}", exc_info=True)
                await self.errors.record(e)
                continue

            if report.complete:
                await self.ingestion.release_checkpoint()
                return report
            start = report.halted_at

        structured.critical(
            LogCategory.ALERT,
            "Startup backfill incomplete; live checkpoint held",
            {"resume_from": start, "to": upper, "checkpoint": self.checkpoints.position},
        )
        return report

    async def _startup_upper_bound(self) -> int:
        """Finalized position, once it covers where the live stream started."""
        live_start = await self.client.get_current_position(self.ingestion.commitment)
        finalized = await self.client.get_current_position(Commitment.FINALIZED)
        polls = max(1, math.ceil(2 * self.config.finality.grace_period_sec / FINALIZED_POLL_SEC))
        while finalized < live_start and polls > 0 and not self.stopping:
            await self._sleep(FINALIZED_POLL_SEC)
            polls -= 1
            finalized = await self.client.get_current_position(Commitment.FINALIZED)
        if finalized < live_start:
            structured.warning(
                LogCategory.INGEST,
                "Finalized position still behind live stream start",
                {"finalized": finalized, "live_start": live_start},
            )
        return finalized

    async def _startup_backfill_task(self) -> None:
        try:
            await self.startup_backfill()
        except Exception as e:
            logger.error(f"Startup backfill failed: {e}", exc_info=True)

    async def run_backfill(self, from_position: int, to_position: Optional[int] = None) -> BackfillReport:
        report = await self.backfill.run(from_position, to_position)
        structured.info(LogCategory.INGEST, "Backfill finished", report.to_dict())
        return report

    async def run_reconciliation(self, scope: str) -> ReconciliationReport:
        """
        Run one reconciliation pass.

        Args:
            scope: "recent", "all" or "cleanup".
        """
        passes = {
            "recent": self.engine.reconcile_recent,
            "all": self.engine.reconcile_all,
            "cleanup": self.engine.cleanup_orphaned,
        }
        if scope not in passes:
            raise ValueError(f"Unknown reconciliation scope: {scope}")
        report = await passes[scope]()
        self._record_reconciliation(report)
        return report

    async def reconciliation_cycle(self) -> List[ReconciliationReport]:
        """One loop iteration: recent pass, plus full sweep and cleanup every Nth cycle."""
        self._recon_cycle += 1
        reports = [await self.run_reconciliation("recent")]
        if self._recon_cycle % self.config.reconciliation.full_sweep_every == 0:
            reports.append(await self.run_reconciliation("all"))
            reports.append(await self.run_reconciliation("cleanup"))
        return reports

    async def _reconciliation_loop(self) -> None:
        interval = self.config.reconciliation.interval_sec
        logger.info(f"Periodic reconciliation started (every {interval:.0f}s)")
        while not self.stopping:
            await asyncio.sleep(interval)
            if self.stopping:
                break
            try:
                await self.reconciliation_cycle()
            except Exception as e:
                logger.error(f"Reconciliation failed: {e}", exc_info=True)
                self.health.update_component_health(
                    RECONCILIATION, HealthStatus.UNHEALTHY, str(e)
                )

    def _record_reconciliation(self, report: ReconciliationReport) -> None:
        status = HealthStatus.HEALTHY if report.errors == 0 else HealthStatus.DEGRADED
        self.health.update_component_health(
            RECONCILIATION,
            status,
            report.summary(),
            {"corrected": report.corrected, "orphaned": report.orphaned},
        )

    # -------------------------------------------------------------------------
    # Signal handlers
    # -------------------------------------------------------------------------

    def _on_subscription_state(self, subscribed: bool, last_error: Optional[str]) -> None:
        if subscribed:
            self.health.update_component_health(SUBSCRIPTION, HealthStatus.HEALTHY, "subscribed")
        elif self.stopping:
            self.health.update_component_health(SUBSCRIPTION, HealthStatus.UNKNOWN, "stopped")
        else:
            self.health.update_component_health(
                SUBSCRIPTION, HealthStatus.UNHEALTHY, last_error or "disconnected"
            )

    def _on_finalized(self, notice: FinalityNotice) -> None:
        logger.info(f"Transaction finalized: {notice.tx_id} ({notice.kind.value})")

    async def _on_potential_reorg(self, notice: ReorgNotice) -> None:
        logger.warning(f"Potential reorg detected for {notice.tx_id} ({notice.kind.value})")
        report = await self.engine.handle_potential_reorg(notice)
        if report is not None:
            logger.info(f"Reorg re-check {report.summary()}")

    def _on_high_error_rate(self, notice: HighErrorRateNotice) -> None:
        self.health.update_component_health(
            CHECKPOINT,
            HealthStatus.DEGRADED,
            f"{notice.error_count} errors in {notice.window_seconds:.0f}s",
            {"last_error": notice.last_error},
        )

    def _on_reconnect_exhausted(self, notice: ReconnectExhaustedNotice) -> None:
        self.health.update_component_health(
            SUBSCRIPTION, HealthStatus.UNHEALTHY, "reconnect attempts exhausted"
        )
        self.request_shutdown(
            f"Max reconnect attempts ({notice.attempts}) reached", exit_code=1
        )

    def _on_parse_error(self, notice: ParseErrorNotice) -> None:
        # The ALERT line is the inspection record: it carries the raw logs.
        structured.error(
            LogCategory.ALERT,
            "Unparsed transaction",
            {
                "tx_id": notice.tx_id,
                "position": notice.position,
                "error": notice.error,
                "logs": list(notice.logs),
            },
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "ingestion": self.ingestion.get_stats(),
            "dispatcher": self.dispatcher.get_stats(),
            "finality": self.finality.get_stats(),
            "health": self.health.summary(),
            "errors_in_window": self.errors.count,
        }

    # -------------------------------------------------------------------------
    # Health publishing
    # -------------------------------------------------------------------------

    def publish_health(self) -> Dict[str, Any]:
        """Log a heartbeat with the stats snapshot and update the health gauges."""
        stats = self.get_stats()
        if self.health_metrics is not None:
            self.health_metrics.record_health(self.health)
            self.health_metrics.record_stats(stats)
        if self.health.is_system_healthy():
            structured.info(LogCategory.SYSTEM, "Heartbeat", stats)
        else:
            structured.warning(LogCategory.SYSTEM, "Heartbeat", stats)
        return stats

    async def _heartbeat_loop(self) -> None:
        interval = self.config.monitoring.heartbeat_interval_sec
        while not self.stopping:
            await asyncio.sleep(interval)
            if self.stopping:
                break
            try:
                self.publish_health()
            except Exception as e:
                logger.error(f"Health publish failed: {e}", exc_info=True)


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
