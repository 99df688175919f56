"""Capabilities the sync core depends on."""

from .ledger_client import (
    AccountState,
    Commitment,
    LedgerClient,
    LogBatch,
    LogCallback,
    SignatureStatus,
    SubscriptionHandle,
    TransactionLogs,
    TransactionRef,
)
from .event_decoder import DecodedEvent, EventDecoder
from .checkpoint_store import Checkpoint, CheckpointStore
from .projection_store import OrphanReason, ProjectedEntity, ProjectionStore, ProjectionWriter

__all__ = [
    "AccountState",
    "Commitment",
    "LedgerClient",
    "LogBatch",
    "LogCallback",
    "SignatureStatus",
    "SubscriptionHandle",
    "TransactionLogs",
    "TransactionRef",
    "DecodedEvent",
    "EventDecoder",
    "Checkpoint",
    "CheckpointStore",
    "OrphanReason",
    "ProjectedEntity",
    "ProjectionStore",
    "ProjectionWriter",
]
