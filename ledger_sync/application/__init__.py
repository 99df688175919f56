"""Application layer - ingestion, finality, backfill and reconciliation services."""

from .dispatcher import SignalDispatcher
from .dedup_window import DedupWindow
from .checkpoints import CheckpointTracker
from .error_tracker import ErrorRateTracker
from .event_pipeline import BatchOutcome, BatchStatus, EventPipeline
from .finality_tracker import FinalityTracker
from .ingestion_manager import IngestionManager
from .backfill_runner import BackfillReport, BackfillRunner
from .reconciliation_engine import (
    Discrepancy,
    DiscrepancyType,
    ReconciliationEngine,
    ReconciliationReport,
    ReconciliationTarget,
)
from .projection_consumer import ProjectionConsumer
from .worker import SyncWorker, with_retry

__all__ = [
    "SignalDispatcher",
    "DedupWindow",
    "CheckpointTracker",
    "ErrorRateTracker",
    "BatchOutcome",
    "BatchStatus",
    "EventPipeline",
    "FinalityTracker",
    "IngestionManager",
    "BackfillReport",
    "BackfillRunner",
    "Discrepancy",
    "DiscrepancyType",
    "ReconciliationEngine",
    "ReconciliationReport",
    "ReconciliationTarget",
    "ProjectionConsumer",
    "SyncWorker",
    "with_retry",
]
