"""
Reconciliation Engine - detect and correct projection drift.

Compares the off-chain projection against canonical ledger accounts and
repairs it (the ledger always wins):
- DRIFT: a tracked field differs from the canonical value -> corrected
- ORPHANED: the canonical account no longer exists -> flagged, kept
- READ_ERROR: the canonical account could not be read -> left untouched
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..domain.events import EventKind, ReorgNotice
from ..domain.interfaces import (
    AccountState,
    LedgerClient,
    OrphanReason,
    ProjectedEntity,
    ProjectionStore,
)
from ..utils.logging_setup import get_logger
from ..utils.structured_logger import LogCategory, StructuredLogger
from ..utils.timezone import now_utc
from ..utils.trace_context import new_cycle


logger = get_logger(__name__)
alerts = StructuredLogger(logger)

AccountDecodeFn = Callable[[AccountState], Dict[str, Any]]


class DiscrepancyType(Enum):
    """Type of reconciliation finding."""

    DRIFT = "DRIFT"  # Tracked field differs from canonical value
    ORPHANED = "ORPHANED"  # Canonical account absent
    READ_ERROR = "READ_ERROR"  # Canonical account could not be read or decoded


@dataclass
class Discrepancy:
    """One finding from a reconciliation pass."""

    discrepancy_type: DiscrepancyType
    entity_type: str
    address: str

    field_name: Optional[str] = None
    projected: Any = None
    canonical: Any = None
    reason: Optional[str] = None

    detected_at: datetime = None

    def __post_init__(self):
        if self.detected_at is None:
            self.detected_at = now_utc()

    def description(self) -> str:
        """Human-readable description of the finding."""
        if self.discrepancy_type == DiscrepancyType.DRIFT:
            return (
                f"{self.entity_type} {self.address} {self.field_name}: "
                f"{self.projected!r} -> {self.canonical!r}"
            )
        elif self.discrepancy_type == DiscrepancyType.ORPHANED:
            return f"{self.entity_type} {self.address} orphaned ({self.reason})"
        elif self.discrepancy_type == DiscrepancyType.READ_ERROR:
            return f"{self.entity_type} {self.address} unreadable: {self.reason}"
        return f"Unknown finding for {self.entity_type} {self.address}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.discrepancy_type.value,
            "entity_type": self.entity_type,
            "address": self.address,
            "field": self.field_name,
            "projected": _jsonable(self.projected),
            "canonical": _jsonable(self.canonical),
            "reason": self.reason,
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass
class ReconciliationReport:
    """Counters and findings of one pass."""

    scope: str
    checked: int = 0
    in_sync: int = 0
    corrected: int = 0
    orphaned: int = 0
    errors: int = 0
    discrepancies: List[Discrepancy] = field(default_factory=list)
    started_at: datetime = field(default_factory=now_utc)
    finished_at: Optional[datetime] = None

    def merge(self, other: "ReconciliationReport") -> None:
        self.checked += other.checked
        self.in_sync += other.in_sync
        self.corrected += other.corrected
        self.orphaned += other.orphaned
        self.errors += other.errors
        self.discrepancies.extend(other.discrepancies)

    def summary(self) -> str:
        return (
            f"{self.scope}: checked={self.checked} in_sync={self.in_sync} "
            f"corrected={self.corrected} orphaned={self.orphaned} errors={self.errors}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope,
            "checked": self.checked,
            "in_sync": self.in_sync,
            "corrected": self.corrected,
            "orphaned": self.orphaned,
            "errors": self.errors,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class ReconciliationTarget:
    """
    One reconcilable entity type.

    Attributes:
        entity_type: Short name used in logs and reports ("promotion").
        store: Projection access for this entity type.
        tracked_fields: Allow-list of fields compared against the ledger.
        account_name: Program account type holding the canonical record.
        decode: Turns canonical account bytes into a field dict.
        reorg_keys: Event kind -> payload field holding the entity address.
    """

    entity_type: str
    store: ProjectionStore
    tracked_fields: Tuple[str, ...]
    account_name: str
    decode: AccountDecodeFn
    reorg_keys: Dict[EventKind, str] = field(default_factory=dict)


class ReconciliationEngine:
    """
    Periodic drift correction across all registered targets.

    Passes are serialized; a pass requested while another runs waits
    for it. Orphaned entities are never corrected again.
    """

    def __init__(
        self,
        client: LedgerClient,
        targets: Iterable[ReconciliationTarget],
        recent_window: timedelta = timedelta(hours=1),
    ):
        self._client = client
        self._targets: Dict[str, ReconciliationTarget] = {t.entity_type: t for t in targets}
        self._recent_window = recent_window
        self._lock = asyncio.Lock()
        self._last_report: Optional[ReconciliationReport] = None

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    @property
    def last_report(self) -> Optional[ReconciliationReport]:
        return self._last_report

    @property
    def targets(self) -> List[ReconciliationTarget]:
        return list(self._targets.values())

    async def wait_idle(self) -> None:
        """Wait for an in-flight pass to finish."""
        async with self._lock:
            pass

    # -------------------------------------------------------------------------
    # Passes
    # -------------------------------------------------------------------------

    async def reconcile_recent(self, window: Optional[timedelta] = None) -> ReconciliationReport:
        """Correct entities projected within the trailing window."""
        window = window or self._recent_window

        async def select(target: ReconciliationTarget) -> List[ProjectedEntity]:
            return await target.store.list_recent(window)

        return await self._run_pass("recent", select, OrphanReason.BLOCK_REORG, correct=True)

    async def reconcile_all(self) -> ReconciliationReport:
        """Correct every non-orphaned entity. Expensive; run as a periodic sweep."""

        async def select(target: ReconciliationTarget) -> List[ProjectedEntity]:
            return await target.store.list_all(exclude_orphaned=True)

        return await self._run_pass("all", select, OrphanReason.ACCOUNT_CLOSED, correct=True)

    async def cleanup_orphaned(self) -> ReconciliationReport:
        """Existence check only: flag entities whose account is gone."""

        async def select(target: ReconciliationTarget) -> List[ProjectedEntity]:
            return await target.store.list_all(exclude_orphaned=True)

        return await self._run_pass("cleanup", select, OrphanReason.ACCOUNT_CLOSED, correct=False)

    async def reconcile_entity(
        self,
        entity_type: str,
        address: str,
        absent_reason: OrphanReason = OrphanReason.ACCOUNT_CLOSED,
    ) -> ReconciliationReport:
        """
        Re-sync a single entity.

        Raises:
            KeyError: If entity_type has no registered target.
        """
        target = self._targets[entity_type]
        report = ReconciliationReport(scope=f"{entity_type}:{address}")
        async with self._lock:
            with new_cycle(subject=address):
                entity = await target.store.get(address)
                if entity is None:
                    logger.info(f"{entity_type} {address} not projected; nothing to reconcile")
                elif entity.is_orphaned:
                    logger.debug(f"{entity_type} {address} already orphaned; skipped")
                else:
                    await self._reconcile_one(target, entity, report, absent_reason, correct=True)
        report.finished_at = now_utc()
        return report

    async def handle_potential_reorg(self, notice: ReorgNotice) -> Optional[ReconciliationReport]:
        """Re-sync the entity named by a potential-reorg payload, if any target tracks it."""
        for target in self._targets.values():
            key = target.reorg_keys.get(notice.kind)
            if key is None:
                continue
            address = notice.data.get(key)
            if not address:
                logger.warning(f"{notice.kind.value} payload has no '{key}' field")
                return None
            logger.info(f"Re-checking {target.entity_type} {address} after potential reorg")
            return await self.reconcile_entity(
                target.entity_type,
                str(address),
                absent_reason=OrphanReason.BLOCK_REORG,
            )
        logger.debug(f"No reconciliation target for {notice.kind.value}")
        return None

    async def _run_pass(
        self,
        scope: str,
        select: Callable[[ReconciliationTarget], Any],
        absent_reason: OrphanReason,
        correct: bool,
    ) -> ReconciliationReport:
        report = ReconciliationReport(scope=scope)
        async with self._lock:
            with new_cycle():
                for target in self._targets.values():
                    try:
                        entities = await select(target)
                    except Exception as e:
                        report.errors += 1
                        logger.error(
                            f"Failed to list {target.entity_type} entities: {e}", exc_info=True
                        )
                        continue
                    logger.debug(f"{scope}: {len(entities)} {target.entity_type} entities")
                    for entity in entities:
                        if entity.is_orphaned:
                            continue
                        await self._reconcile_one(target, entity, report, absent_reason, correct)

                report.finished_at = now_utc()
                self._last_report = report
                logger.info(f"Reconciliation {report.summary()}")
        return report

    # -------------------------------------------------------------------------
    # Per-entity
    # -------------------------------------------------------------------------

    async def _reconcile_one(
        self,
        target: ReconciliationTarget,
        entity: ProjectedEntity,
        report: ReconciliationReport,
        absent_reason: OrphanReason,
        correct: bool,
    ) -> None:
        report.checked += 1
        try:
            account = await self._client.get_account_state(entity.address)
            canonical = target.decode(account) if account is not None else None
        except Exception as e:
            report.errors += 1
            report.discrepancies.append(
                Discrepancy(
                    DiscrepancyType.READ_ERROR,
                    target.entity_type,
                    entity.address,
                    reason=str(e),
                )
            )
            logger.error(f"Canonical read failed for {target.entity_type} {entity.address}: {e}")
            return

        try:
            if canonical is None:
                await target.store.mark_orphaned(entity.address, absent_reason)
                report.orphaned += 1
                report.discrepancies.append(
                    Discrepancy(
                        DiscrepancyType.ORPHANED,
                        target.entity_type,
                        entity.address,
                        reason=absent_reason.value,
                    )
                )
                alerts.warning(
                    LogCategory.RECON,
                    f"Orphaned {target.entity_type} {entity.address}",
                    {"reason": absent_reason.value},
                )
                return

            if not correct:
                report.in_sync += 1
                return

            diffs = self._compare(target, entity, canonical)
            if not diffs:
                report.in_sync += 1
                return

            await target.store.apply_correction(
                entity.address, {name: value for name, _, value in diffs}
            )
        except Exception as e:
            report.errors += 1
            logger.error(
                f"Failed to update {target.entity_type} {entity.address}: {e}", exc_info=True
            )
            return

        report.corrected += 1
        for name, projected, value in diffs:
            finding = Discrepancy(
                DiscrepancyType.DRIFT,
                target.entity_type,
                entity.address,
                field_name=name,
                projected=projected,
                canonical=value,
            )
            report.discrepancies.append(finding)
            logger.info(f"Corrected {finding.description()}")

    @staticmethod
    def _compare(
        target: ReconciliationTarget,
        entity: ProjectedEntity,
        canonical: Dict[str, Any],
    ) -> List[Tuple[str, Any, Any]]:
        diffs = []
        for name in target.tracked_fields:
            if name not in canonical:
                continue
            projected = entity.fields.get(name)
            if not _same(projected, canonical[name]):
                diffs.append((name, projected, canonical[name]))
        return diffs


def _same(projected: Any, canonical: Any) -> bool:
    numeric = (int, float, Decimal)
    if (
        isinstance(projected, numeric)
        and isinstance(canonical, numeric)
        and not isinstance(projected, bool)
        and not isinstance(canonical, bool)
    ):
        return Decimal(str(projected)) == Decimal(str(canonical))
    if projected is None or canonical is None:
        return projected is canonical
    if isinstance(canonical, bool) or isinstance(projected, bool):
        return projected is canonical or projected == canonical
    return str(projected) == str(canonical)


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)
