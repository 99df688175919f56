"""
OpenTelemetry meter provider with a Prometheus /metrics endpoint.

Usage:
    manager = MetricsManager(port=9464)
    manager.start()
    health = HealthMetrics(manager.get_meter("ledger_sync.health"))
    ...
    manager.shutdown()
"""

from __future__ import annotations

from typing import Optional

from opentelemetry import metrics
from opentelemetry.exporter.prometheus import PrometheusMetricReader
from opentelemetry.sdk.metrics import MeterProvider
from prometheus_client import start_http_server

from ...utils.logging_setup import get_logger

logger = get_logger(__name__)


class MetricsManager:
    """
    Owns the meter provider and the scrape endpoint.

    Meters come from this manager's own provider rather than the global
    one, so tests and one-off commands can build several workers.
    """

    def __init__(self, port: int = 9464, serve: bool = True):
        self._port = port
        self._serve = serve
        self._provider: Optional[MeterProvider] = None

    @property
    def started(self) -> bool:
        return self._provider is not None

    def start(self) -> None:
        """Create the provider and start the HTTP endpoint; idempotent."""
        if self._provider is not None:
            return
        self._provider = MeterProvider(metric_readers=[PrometheusMetricReader()])
        if self._serve:
            try:
                start_http_server(self._port)
            except OSError as e:
                self._provider.shutdown()
                self._provider = None
                logger.error(f"Failed to start metrics server on port {self._port}: {e}")
                raise
            logger.info(f"Metrics server started on port {self._port}")

    def get_meter(self, name: str) -> metrics.Meter:
        if self._provider is None:
            self.start()
        return self._provider.get_meter(name)

    def shutdown(self) -> None:
        provider, self._provider = self._provider, None
        if provider is not None:
            provider.shutdown()
