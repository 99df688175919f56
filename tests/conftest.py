"""
Pytest configuration and shared fakes.

The fakes stand in for the ledger node and the PostgreSQL stores so the
pipeline services can be driven deterministically:
- FakeLedgerClient: scripted subscription, statuses, history and accounts
- FakeDecoder: decodes "EVENT {json}" log lines, "CORRUPT" raises
- InMemoryCheckpointStore / InMemoryProjectionStore
"""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from config.models import (
    AppConfig,
    BackfillConfig,
    DatabaseConfig,
    DatabasePoolConfig,
    FinalityConfig,
    HandlersConfig,
    IngestionConfig,
    LedgerConfig,
    LoggingConfig,
    ReconciliationConfig,
    ShutdownConfig,
)
from ledger_sync.application import (
    CheckpointTracker,
    DedupWindow,
    ErrorRateTracker,
    EventPipeline,
    SignalDispatcher,
)
from ledger_sync.domain.errors import DecodeError, SubscriptionError
from ledger_sync.domain.events import EventKind, SignalType
from ledger_sync.domain.interfaces import (
    AccountState,
    Checkpoint,
    CheckpointStore,
    Commitment,
    DecodedEvent,
    EventDecoder,
    LedgerClient,
    LogBatch,
    LogCallback,
    OrphanReason,
    ProjectedEntity,
    ProjectionStore,
    ProjectionWriter,
    SignatureStatus,
    SubscriptionHandle,
    TransactionLogs,
    TransactionRef,
)
from ledger_sync.utils.timezone import now_utc

PROGRAM_ID = "9P3wW4XQH7DntMqfEiLqS6SNztihxfenNUSqECh3WTf3"


# =============================================================================
# Ledger
# =============================================================================


class FakeLedgerClient(LedgerClient):
    """Scripted ledger: tests push batches and set statuses/accounts directly."""

    def __init__(self) -> None:
        self.subscribe_calls = 0
        self.subscribe_failures = 0
        self.unsubscribe_calls = 0
        self.callback: Optional[LogCallback] = None
        self.positions: Dict[Commitment, int] = {c: 0 for c in Commitment}
        self.position_error: Optional[Exception] = None
        self.statuses: Dict[str, Optional[SignatureStatus]] = {}
        self.status_errors: Dict[str, Exception] = {}
        self.history: List[Tuple[TransactionRef, Tuple[str, ...]]] = []
        self.accounts: Dict[str, AccountState] = {}
        self.account_errors: Dict[str, Exception] = {}
        self.closed = False
        self._next_id = 1

    async def subscribe_logs(
        self,
        program_address: str,
        commitment: Commitment,
        callback: LogCallback,
    ) -> SubscriptionHandle:
        self.subscribe_calls += 1
        if self.subscribe_failures > 0:
            self.subscribe_failures -= 1
            raise SubscriptionError("connection refused", method="logsSubscribe")
        self.callback = callback
        handle = SubscriptionHandle(self._next_id, program_address, commitment)
        self._next_id += 1
        return handle

    async def unsubscribe_logs(self, handle: SubscriptionHandle) -> None:
        self.unsubscribe_calls += 1
        self.callback = None

    async def deliver(self, batch: LogBatch) -> None:
        assert self.callback is not None, "no open subscription"
        await self.callback(batch)

    async def get_current_position(self, commitment: Commitment) -> int:
        if self.position_error is not None:
            raise self.position_error
        return self.positions[commitment]

    async def get_signature_status(self, tx_id: str) -> Optional[SignatureStatus]:
        if tx_id in self.status_errors:
            raise self.status_errors[tx_id]
        return self.statuses.get(tx_id)

    def finalize(self, tx_id: str, position: int = 0) -> None:
        self.statuses[tx_id] = SignatureStatus(tx_id, Commitment.FINALIZED, position)

    def add_history(self, tx_id: str, position: int, logs: Sequence[str], failed: bool = False) -> None:
        self.history.append((TransactionRef(tx_id, position, failed), tuple(logs)))

    async def get_transactions_for_address(
        self,
        program_address: str,
        from_position: int,
        to_position: int,
    ) -> List[TransactionRef]:
        refs = [ref for ref, _ in self.history if from_position <= ref.position <= to_position]
        return sorted(refs, key=lambda r: r.position)

    async def get_transaction_logs(self, tx_id: str) -> Optional[TransactionLogs]:
        for ref, logs in self.history:
            if ref.tx_id == tx_id:
                return TransactionLogs(
                    tx_id, ref.position, logs, error={"err": 1} if ref.failed else None
                )
        return None

    async def get_account_state(self, address: str) -> Optional[AccountState]:
        if address in self.account_errors:
            raise self.account_errors[address]
        return self.accounts.get(address)

    def set_account(self, address: str, **fields: Any) -> None:
        self.accounts[address] = AccountState(
            address=address,
            owner=PROGRAM_ID,
            data=json.dumps(fields).encode(),
        )

    async def close(self) -> None:
        self.closed = True


def decode_json_account(account: AccountState) -> Dict[str, Any]:
    """Account decoder matching FakeLedgerClient.set_account."""
    return json.loads(account.data.decode())


# =============================================================================
# Decoder
# =============================================================================


class FakeDecoder(EventDecoder):
    """Decodes `EVENT {"kind": ..., "data": ...}` lines; a `CORRUPT` line raises."""

    def parse_events(self, logs: Sequence[str]) -> List[DecodedEvent]:
        events = []
        for line in logs:
            if line == "CORRUPT":
                raise DecodeError("malformed event payload")
            if line.startswith("EVENT "):
                body = json.loads(line[len("EVENT "):])
                events.append(DecodedEvent(EventKind(body["kind"]), body.get("data", {})))
        return events


def _event_line(kind: EventKind, **data: Any) -> str:
    return "EVENT " + json.dumps({"kind": kind.value, "data": data})


# =============================================================================
# Stores
# =============================================================================


class InMemoryCheckpointStore(CheckpointStore):
    """Checkpoint rows in a dict; position never moves backwards."""

    def __init__(self) -> None:
        self.rows: Dict[str, Checkpoint] = {}
        self.upserts: List[Dict[str, Any]] = []

    async def get(self, process_name: str) -> Optional[Checkpoint]:
        row = self.rows.get(process_name)
        return replace(row) if row else None

    async def upsert(self, process_name: str, **fields: Any) -> Checkpoint:
        self.upserts.append(dict(fields))
        row = self.rows.get(process_name) or Checkpoint(process_name)
        for key, value in fields.items():
            if key == "last_processed_position":
                value = max(row.last_processed_position, value)
            setattr(row, key, value)
        self.rows[process_name] = row
        return replace(row)

    async def increment_errors(self, process_name: str, message: str, healthy: bool) -> Checkpoint:
        row = self.rows.get(process_name) or Checkpoint(process_name)
        row.consecutive_error_count += 1
        row.last_error_message = message
        row.healthy = healthy
        self.rows[process_name] = row
        return replace(row)


class InMemoryProjectionStore(ProjectionStore, ProjectionWriter):
    """One projection table held in memory."""

    def __init__(self) -> None:
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.corrections: List[Tuple[str, Dict[str, Any]]] = []
        self.fail_updates = False

    def put(
        self,
        address: str,
        projected_at: Optional[datetime] = None,
        is_orphaned: bool = False,
        **fields: Any,
    ) -> None:
        self.rows[address] = {
            "fields": dict(fields),
            "projected_at": projected_at or now_utc(),
            "is_orphaned": is_orphaned,
            "orphan_reason": None,
            "reconciled_at": None,
        }

    def _entity(self, address: str) -> ProjectedEntity:
        row = self.rows[address]
        return ProjectedEntity(
            address=address,
            fields=dict(row["fields"]),
            projected_at=row["projected_at"],
            is_orphaned=row["is_orphaned"],
        )

    async def list_recent(self, window: timedelta) -> List[ProjectedEntity]:
        cutoff = now_utc() - window
        return [
            self._entity(a) for a, row in self.rows.items()
            if row["projected_at"] >= cutoff and not row["is_orphaned"]
        ]

    async def list_all(self, exclude_orphaned: bool = True) -> List[ProjectedEntity]:
        return [
            self._entity(a) for a, row in self.rows.items()
            if not (exclude_orphaned and row["is_orphaned"])
        ]

    async def get(self, address: str) -> Optional[ProjectedEntity]:
        return self._entity(address) if address in self.rows else None

    async def apply_correction(self, address: str, fields: Dict[str, Any]) -> None:
        if self.fail_updates:
            raise RuntimeError("write failed")
        self.corrections.append((address, dict(fields)))
        self.rows[address]["fields"].update(fields)
        self.rows[address]["reconciled_at"] = now_utc()

    async def mark_orphaned(self, address: str, reason: OrphanReason) -> None:
        self.rows[address]["is_orphaned"] = True
        self.rows[address]["orphan_reason"] = reason

    async def insert(self, address: str, fields: Dict[str, Any]) -> bool:
        if address in self.rows:
            return False
        self.put(address, **fields)
        return True

    async def update(self, address: str, fields: Dict[str, Any]) -> bool:
        if address not in self.rows:
            return False
        self.rows[address]["fields"].update(fields)
        return True

    async def increment(self, address: str, column: str, amount: int = 1) -> bool:
        if address not in self.rows:
            return False
        fields = self.rows[address]["fields"]
        fields[column] = (fields.get(column) or 0) + amount
        return True


# =============================================================================
# Signal recorder
# =============================================================================


class SignalRecorder:
    """Collects payloads per wire name, in emission order."""

    def __init__(self) -> None:
        self.received: List[Tuple[str, Any]] = []

    def attach(
        self,
        dispatcher: SignalDispatcher,
        signal: SignalType,
        kind: Optional[EventKind] = None,
    ) -> None:
        name = signal.wire_name(kind)

        def handler(payload: Any) -> None:
            self.received.append((name, payload))

        dispatcher.subscribe(signal, handler, kind)

    def names(self) -> List[str]:
        return [name for name, _ in self.received]

    def payloads(self, name: str) -> List[Any]:
        return [payload for n, payload in self.received if n == name]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def ledger() -> FakeLedgerClient:
    return FakeLedgerClient()


@pytest.fixture
def decoder() -> FakeDecoder:
    return FakeDecoder()


@pytest.fixture
def checkpoint_store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def dispatcher() -> SignalDispatcher:
    return SignalDispatcher()


@pytest.fixture
def recorder() -> SignalRecorder:
    return SignalRecorder()


@pytest.fixture
def checkpoints(checkpoint_store: InMemoryCheckpointStore) -> CheckpointTracker:
    return CheckpointTracker(checkpoint_store, "event-listener")


@pytest.fixture
def error_tracker(checkpoints: CheckpointTracker, dispatcher: SignalDispatcher) -> ErrorRateTracker:
    return ErrorRateTracker(checkpoints, dispatcher, window_seconds=60.0, threshold=10)


@pytest.fixture
def pipeline(
    decoder: FakeDecoder,
    dispatcher: SignalDispatcher,
    error_tracker: ErrorRateTracker,
) -> EventPipeline:
    return EventPipeline(decoder, dispatcher, DedupWindow(100), error_tracker)


@pytest.fixture
def make_batch() -> Callable[..., LogBatch]:
    """Factory for LogBatch with one CouponMinted event by default."""

    def _make(
        tx_id: str,
        position: int,
        logs: Optional[Sequence[str]] = None,
        failed: bool = False,
        commitment: Commitment = Commitment.CONFIRMED,
    ) -> LogBatch:
        if logs is None:
            logs = [_event_line(EventKind.COUPON_MINTED, coupon=f"coupon-{tx_id}")]
        return LogBatch(
            tx_id=tx_id,
            position=position,
            logs=tuple(logs),
            failed=failed,
            error={"InstructionError": [0, "Custom"]} if failed else None,
            commitment=commitment,
        )

    return _make


@pytest.fixture
def app_config() -> AppConfig:
    """Configuration with sub-second timings for tests."""
    return AppConfig(
        ledger=LedgerConfig(
            rpc_url="http://localhost:8899",
            ws_url="ws://localhost:8900",
            program_id=PROGRAM_ID,
            commitment="confirmed",
            request_timeout_sec=1.0,
            idl_path="config/idl/discount_platform.json",
        ),
        ingestion=IngestionConfig(
            process_name="event-listener",
            liveness_threshold_sec=300.0,
            liveness_check_interval_sec=60.0,
            reconnect_base_delay_sec=0.01,
            max_reconnect_attempts=3,
            dedup_capacity=1000,
            await_handlers=True,
            error_window_sec=60.0,
            error_threshold=10,
        ),
        finality=FinalityConfig(grace_period_sec=0.01),
        backfill=BackfillConfig(window_size=10, pause_sec=0.0, on_startup=True, max_startup_gap=50),
        reconciliation=ReconciliationConfig(
            enabled=False, interval_sec=60.0, recent_window_sec=3600.0, full_sweep_every=2
        ),
        handlers=HandlersConfig(max_retries=3, retry_delay_sec=0.0),
        database=DatabaseConfig(
            host="localhost",
            port=5432,
            database="ledger_sync",
            user="ledger_sync",
            password="",
            pool=DatabasePoolConfig(min_connections=1, max_connections=2),
        ),
        logging=LoggingConfig(level="INFO", dir="./logs", console=False),
        shutdown=ShutdownConfig(timeout_sec=1.0),
        raw={},
    )


@pytest.fixture
def event_line() -> Callable[..., str]:
    """Factory for a log line FakeDecoder turns into one event."""
    return _event_line


@pytest.fixture
def account_decoder() -> Callable[[AccountState], Dict[str, Any]]:
    """Account decoder matching FakeLedgerClient.set_account."""
    return decode_json_account


@pytest.fixture
def projection_store() -> InMemoryProjectionStore:
    return InMemoryProjectionStore()


@pytest.fixture
def make_projection_store() -> Callable[[], InMemoryProjectionStore]:
    """Factory for additional projection tables in one test."""
    return InMemoryProjectionStore
