"""Tests for category routing, JSON formatting and cycle ids."""

import json
import logging

from ledger_sync.utils.logging_setup import JSONFormatter, get_category_for_module, get_logger
from ledger_sync.utils.structured_logger import LogCategory, StructuredLogger
from ledger_sync.utils.trace_context import NO_CYCLE, get_cycle_id, get_subject, new_cycle


class TestCategoryRouting:
    def test_modules_route_to_categories(self) -> None:
        assert get_category_for_module("ledger_sync.application.ingestion_manager") == "ingest"
        assert get_category_for_module("ledger_sync.application.finality_tracker") == "ledger"
        assert get_category_for_module("ledger_sync.application.reconciliation_engine") == "recon"
        assert get_category_for_module("ledger_sync.infrastructure.adapters.solana.rpc_client") == "ledger"
        assert get_category_for_module("ledger_sync.application.worker") == "system"
        assert get_category_for_module("somewhere.else") == "system"

    def test_get_logger_uses_category_name(self) -> None:
        assert get_logger("ledger_sync.application.backfill_runner").name == "ledger_sync.ingest"


class TestJSONFormatter:
    def _record(self, name: str, msg: str) -> logging.LogRecord:
        return logging.LogRecord(name, logging.WARNING, __file__, 1, msg, None, None)

    def test_plain_message(self) -> None:
        entry = json.loads(JSONFormatter().format(self._record("ledger_sync.recon", "Orphaned coupon")))

        assert entry["cat"] == "recon"
        assert entry["level"] == "WARNING"
        assert entry["msg"] == "Orphaned coupon"
        assert "cycle" in entry

    def test_structured_message_is_normalised(self) -> None:
        captured = []

        class Capture(logging.Handler):
            def emit(self, record: logging.LogRecord) -> None:
                captured.append(record)

        logger = logging.getLogger("ledger_sync.test_structured")
        logger.addHandler(Capture())
        logger.setLevel(logging.INFO)
        logger.propagate = False

        StructuredLogger(logger).warning(LogCategory.ALERT, "Potential reorg", {"tx_id": "abc"})

        entry = json.loads(JSONFormatter().format(captured[0]))
        assert entry["cat"] == "alert"
        assert entry["msg"] == "Potential reorg"
        assert entry["data"] == {"tx_id": "abc"}


class TestCycleIds:
    def test_new_cycle_sets_and_restores(self) -> None:
        assert get_cycle_id() == NO_CYCLE

        with new_cycle(subject="tx-1") as cycle:
            assert get_cycle_id() == cycle
            assert get_subject() == "tx-1"
            with new_cycle() as inner:
                assert get_cycle_id() == inner
                assert get_subject() is None
            assert get_cycle_id() == cycle

        assert get_cycle_id() == NO_CYCLE
        assert get_subject() is None

    def test_plain_line_carries_subject(self) -> None:
        record = logging.LogRecord("ledger_sync.ingest", logging.INFO, __file__, 1, "Dispatched", None, None)

        with new_cycle(subject="tx-9") as cycle:
            entry = json.loads(JSONFormatter().format(record))

        assert entry["cycle"] == cycle
        assert entry["ref"] == "tx-9"
