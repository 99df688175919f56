"""
Health and progress gauges for the sync worker.

Component status is exported as its severity (0 healthy, 1 unknown,
2 degraded, 3 unhealthy) so alerts can use a single threshold.
"""

from __future__ import annotations

from typing import Any, Dict

from opentelemetry import metrics

from ..monitoring.health_monitor import HealthMonitor


class HealthMetrics:
    """Instruments fed from HealthMonitor and the worker's stats snapshot."""

    def __init__(self, meter: metrics.Meter):
        self._component_status = meter.create_gauge(
            name="ledger_sync_component_status",
            description="Component status severity: 0=healthy, 1=unknown, 2=degraded, 3=unhealthy",
        )
        self._overall_status = meter.create_gauge(
            name="ledger_sync_overall_status",
            description="Worst component status severity",
        )
        self._subscribed = meter.create_gauge(
            name="ledger_sync_subscribed",
            description="Live subscription open: 1=yes, 0=no",
        )
        self._checkpoint_position = meter.create_gauge(
            name="ledger_sync_checkpoint_position",
            description="Last persisted ledger position",
        )
        self._dedup_size = meter.create_gauge(
            name="ledger_sync_dedup_window_size",
            description="Transaction ids held in the dedup window",
        )
        self._finality_pending = meter.create_gauge(
            name="ledger_sync_finality_checks_pending",
            description="Scheduled finality checks not yet resolved",
        )
        self._errors_in_window = meter.create_gauge(
            name="ledger_sync_errors_in_window",
            description="Errors counted in the current error-rate window",
        )

    def record_health(self, monitor: HealthMonitor) -> None:
        for health in monitor.get_all_health():
            self._component_status.set(
                health.status.severity, {"component": health.component_name}
            )
        self._overall_status.set(monitor.overall().severity)

    def record_stats(self, stats: Dict[str, Any]) -> None:
        """
        Record a SyncWorker.get_stats() snapshot.

        Args:
            stats: Snapshot with "ingestion", "finality" and "errors_in_window" entries.
        """
        ingestion = stats["ingestion"]
        self._subscribed.set(1 if ingestion["subscribed"] else 0)
        self._checkpoint_position.set(ingestion["checkpoint_position"])
        self._dedup_size.set(ingestion["dedup_size"])
        self._finality_pending.set(stats["finality"]["pending"])
        self._errors_in_window.set(stats["errors_in_window"])
