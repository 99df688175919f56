"""Tests for ReconciliationEngine."""

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from ledger_sync.application import (
    DiscrepancyType,
    ReconciliationEngine,
    ReconciliationReport,
    ReconciliationTarget,
)
from ledger_sync.domain.errors import LedgerRpcError
from ledger_sync.domain.events import EventKind, ReorgNotice
from ledger_sync.domain.interfaces import OrphanReason
from ledger_sync.utils.timezone import now_utc

TRACKED = ("current_supply", "is_active")


@pytest.fixture
def target(projection_store: Any, account_decoder: Any) -> ReconciliationTarget:
    return ReconciliationTarget(
        entity_type="promotion",
        store=projection_store,
        tracked_fields=TRACKED,
        account_name="Promotion",
        decode=account_decoder,
        reorg_keys={EventKind.PROMOTION_CREATED: "promotion"},
    )


@pytest.fixture
def engine(ledger: Any, target: ReconciliationTarget) -> ReconciliationEngine:
    return ReconciliationEngine(ledger, [target], recent_window=timedelta(hours=1))


class TestDriftCorrection:
    """The ledger wins for tracked fields."""

    @pytest.mark.asyncio
    async def test_corrects_drift(
        self, engine: ReconciliationEngine, ledger: Any, projection_store: Any
    ) -> None:
        """current_supply 5 projected, 7 canonical -> corrected to 7."""
        projection_store.put("promo-1", current_supply=5, is_active=True, merchant="m1")
        ledger.set_account("promo-1", current_supply=7, is_active=True, merchant="other")

        report = await engine.reconcile_recent()

        assert report.checked == 1
        assert report.corrected == 1
        assert projection_store.rows["promo-1"]["fields"]["current_supply"] == 7
        assert projection_store.corrections == [("promo-1", {"current_supply": 7})]
        drift = report.discrepancies[0]
        assert drift.discrepancy_type is DiscrepancyType.DRIFT
        assert (drift.field_name, drift.projected, drift.canonical) == ("current_supply", 5, 7)

    @pytest.mark.asyncio
    async def test_untracked_fields_are_left_alone(
        self, engine: ReconciliationEngine, ledger: Any, projection_store: Any
    ) -> None:
        projection_store.put("promo-1", current_supply=5, is_active=True, merchant="m1")
        ledger.set_account("promo-1", current_supply=5, is_active=True, merchant="other")

        report = await engine.reconcile_all()

        assert report.in_sync == 1
        assert report.corrected == 0
        assert projection_store.rows["promo-1"]["fields"]["merchant"] == "m1"

    @pytest.mark.asyncio
    async def test_second_pass_is_clean(
        self, engine: ReconciliationEngine, ledger: Any, projection_store: Any
    ) -> None:
        """After correction a further pass finds nothing."""
        projection_store.put("promo-1", current_supply=5, is_active=True)
        ledger.set_account("promo-1", current_supply=7, is_active=False)

        await engine.reconcile_all()
        report = await engine.reconcile_all()

        assert report.corrected == 0
        assert report.in_sync == 1

    @pytest.mark.asyncio
    async def test_numeric_types_compare_by_value(
        self, engine: ReconciliationEngine, ledger: Any, projection_store: Any
    ) -> None:
        projection_store.put("promo-1", current_supply=7.0, is_active=True)
        ledger.set_account("promo-1", current_supply=7, is_active=True)

        report = await engine.reconcile_all()

        assert report.in_sync == 1

    @pytest.mark.asyncio
    async def test_recent_pass_ignores_old_entities(
        self, engine: ReconciliationEngine, ledger: Any, projection_store: Any
    ) -> None:
        projection_store.put("old", projected_at=now_utc() - timedelta(hours=3), current_supply=1, is_active=True)
        projection_store.put("new", current_supply=1, is_active=True)
        ledger.set_account("old", current_supply=9, is_active=True)
        ledger.set_account("new", current_supply=1, is_active=True)

        report = await engine.reconcile_recent()

        assert report.checked == 1
        assert projection_store.rows["old"]["fields"]["current_supply"] == 1


class TestOrphans:
    """Missing canonical accounts and read failures."""

    @pytest.mark.asyncio
    async def test_recent_pass_orphans_as_reorg(
        self, engine: ReconciliationEngine, projection_store: Any
    ) -> None:
        projection_store.put("promo-1", current_supply=5, is_active=True)

        report = await engine.reconcile_recent()

        assert report.orphaned == 1
        row = projection_store.rows["promo-1"]
        assert row["is_orphaned"] is True
        assert row["orphan_reason"] is OrphanReason.BLOCK_REORG

    @pytest.mark.asyncio
    async def test_cleanup_orphans_as_closed(
        self, engine: ReconciliationEngine, ledger: Any, projection_store: Any
    ) -> None:
        """Cleanup only checks existence; drift is not corrected."""
        projection_store.put("gone", current_supply=1, is_active=True)
        projection_store.put("alive", current_supply=1, is_active=True)
        ledger.set_account("alive", current_supply=4, is_active=True)

        report = await engine.cleanup_orphaned()

        assert report.orphaned == 1
        assert report.in_sync == 1
        assert projection_store.rows["gone"]["orphan_reason"] is OrphanReason.ACCOUNT_CLOSED
        assert projection_store.rows["alive"]["fields"]["current_supply"] == 1

    @pytest.mark.asyncio
    async def test_orphaned_entities_are_not_rechecked(
        self, engine: ReconciliationEngine, ledger: Any, projection_store: Any
    ) -> None:
        projection_store.put("promo-1", is_orphaned=True, current_supply=1, is_active=True)
        ledger.set_account("promo-1", current_supply=9, is_active=True)

        report = await engine.reconcile_all()

        assert report.checked == 0
        assert projection_store.corrections == []

    @pytest.mark.asyncio
    async def test_read_error_leaves_entity_untouched(
        self, engine: ReconciliationEngine, ledger: Any, projection_store: Any
    ) -> None:
        projection_store.put("promo-1", current_supply=5, is_active=True)
        ledger.account_errors["promo-1"] = LedgerRpcError("429 Too Many Requests")

        report = await engine.reconcile_recent()

        assert report.errors == 1
        assert report.orphaned == 0
        assert report.discrepancies[0].discrepancy_type is DiscrepancyType.READ_ERROR
        assert projection_store.rows["promo-1"]["is_orphaned"] is False

    @pytest.mark.asyncio
    async def test_undecodable_account_is_a_read_error(
        self, ledger: Any, projection_store: Any, target: ReconciliationTarget
    ) -> None:
        def broken(account: Any) -> Any:
            raise ValueError("bad discriminator")

        target.decode = broken
        engine = ReconciliationEngine(ledger, [target])
        projection_store.put("promo-1", current_supply=5, is_active=True)
        ledger.set_account("promo-1", current_supply=5, is_active=True)

        report = await engine.reconcile_all()

        assert report.errors == 1
        assert projection_store.rows["promo-1"]["is_orphaned"] is False

    @pytest.mark.asyncio
    async def test_write_failure_is_counted(
        self, engine: ReconciliationEngine, ledger: Any, projection_store: Any
    ) -> None:
        projection_store.put("promo-1", current_supply=5, is_active=True)
        ledger.set_account("promo-1", current_supply=6, is_active=True)
        projection_store.fail_updates = True

        report = await engine.reconcile_all()

        assert report.errors == 1
        assert report.corrected == 0


class TestEntityAndReorg:
    """Single-entity re-sync triggered by potential reorgs."""

    @pytest.mark.asyncio
    async def test_reorg_resyncs_named_entity(
        self, engine: ReconciliationEngine, projection_store: Any
    ) -> None:
        projection_store.put("promo-1", current_supply=0, is_active=True)
        notice = ReorgNotice(
            tx_id="tx-1",
            position=10,
            kind=EventKind.PROMOTION_CREATED,
            data={"promotion": "promo-1"},
            status=None,
            checked_at=now_utc(),
        )

        report = await engine.handle_potential_reorg(notice)

        assert report is not None
        assert report.orphaned == 1
        assert projection_store.rows["promo-1"]["orphan_reason"] is OrphanReason.BLOCK_REORG

    @pytest.mark.asyncio
    async def test_reorg_for_untracked_kind_is_ignored(self, engine: ReconciliationEngine) -> None:
        notice = ReorgNotice(
            tx_id="tx-1",
            position=10,
            kind=EventKind.MERCHANT_RATED,
            data={},
            status="confirmed",
            checked_at=now_utc(),
        )

        assert await engine.handle_potential_reorg(notice) is None

    @pytest.mark.asyncio
    async def test_reconcile_unknown_entity_is_noop(self, engine: ReconciliationEngine) -> None:
        report = await engine.reconcile_entity("promotion", "missing")

        assert report.checked == 0

    @pytest.mark.asyncio
    async def test_reconcile_unknown_type_raises(self, engine: ReconciliationEngine) -> None:
        with pytest.raises(KeyError):
            await engine.reconcile_entity("listing", "x")


class TestPasses:
    """Serialization and reporting."""

    @pytest.mark.asyncio
    async def test_passes_are_serialized(
        self, ledger: Any, projection_store: Any, target: ReconciliationTarget
    ) -> None:
        gate = asyncio.Event()
        original = projection_store.list_all

        async def slow_list(exclude_orphaned: bool = True) -> Any:
            await gate.wait()
            return await original(exclude_orphaned)

        projection_store.list_all = slow_list
        engine = ReconciliationEngine(ledger, [target])

        first = asyncio.create_task(engine.reconcile_all())
        await asyncio.sleep(0)
        assert engine.in_progress

        second = asyncio.create_task(engine.cleanup_orphaned())
        await asyncio.sleep(0)
        assert not second.done()

        gate.set()
        await asyncio.gather(first, second)
        assert not engine.in_progress
        assert engine.last_report.scope == "cleanup"

    def test_report_merge_and_dict(self) -> None:
        a = ReconciliationReport(scope="recent", checked=2, corrected=1)
        b = ReconciliationReport(scope="all", checked=3, orphaned=1, errors=1)

        a.merge(b)

        assert (a.checked, a.corrected, a.orphaned, a.errors) == (5, 1, 1, 1)
        data = a.to_dict()
        assert data["scope"] == "recent"
        assert data["discrepancies"] == []
