"""
Observability for the sync worker.

OpenTelemetry instruments exported to Prometheus:
- Component health (subscription, reconciliation, checkpoint)
- Ingestion progress (checkpoint position, dedup size, pending finality checks)
"""

from .metrics import MetricsManager
from .health_metrics import HealthMetrics

__all__ = ["MetricsManager", "HealthMetrics"]
