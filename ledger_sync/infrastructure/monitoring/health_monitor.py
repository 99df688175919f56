"""
Health of the sync worker's moving parts.

Three components are tracked: the live subscription, the reconciliation
loop and the checkpoint (error-rate flag). The worker reports into the
monitor from its signal handlers; the overall status is the worst
component status, and each component remembers since when it has been
in its current state.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ...utils.logging_setup import get_logger
from ...utils.timezone import now_utc


logger = get_logger(__name__)

SUBSCRIPTION = "subscription"
RECONCILIATION = "reconciliation"
CHECKPOINT = "checkpoint"


class HealthStatus(Enum):
    HEALTHY = "HEALTHY"
    UNKNOWN = "UNKNOWN"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.UNKNOWN: 1,
    HealthStatus.DEGRADED: 2,
    HealthStatus.UNHEALTHY: 3,
}


@dataclass(frozen=True)
class ComponentHealth:
    component_name: str
    status: HealthStatus
    message: str = ""
    since: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "component": self.component_name,
            "status": self.status.value,
            "message": self.message,
            "since": self.since.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": self.metadata,
        }


class HealthMonitor:
    """Latest status per component; components start UNKNOWN."""

    def __init__(self, components: Iterable[str] = (SUBSCRIPTION, RECONCILIATION, CHECKPOINT)):
        self._components: Dict[str, ComponentHealth] = {
            name: ComponentHealth(name, HealthStatus.UNKNOWN) for name in components
        }

    def update_component_health(
        self,
        component_name: str,
        status: HealthStatus,
        message: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ComponentHealth:
        """Record a status report; a change of status starts a new `since`."""
        now = now_utc()
        previous = self._components.get(component_name)
        if previous is not None and previous.status is status:
            current = replace(previous, message=message, updated_at=now, metadata=metadata or {})
        else:
            current = ComponentHealth(component_name, status, message, now, now, metadata or {})
            old = previous.status if previous else None
            if old is not None and status.severity > old.severity:
                logger.warning(f"{component_name}: {old.value} -> {status.value} {message}".rstrip())
            else:
                logger.info(f"{component_name}: {status.value} {message}".rstrip())
        self._components[component_name] = current
        return current

    def get_component_health(self, component_name: str) -> Optional[ComponentHealth]:
        return self._components.get(component_name)

    def get_all_health(self) -> List[ComponentHealth]:
        return list(self._components.values())

    def overall(self) -> HealthStatus:
        """Worst component status (UNKNOWN when nothing is tracked)."""
        if not self._components:
            return HealthStatus.UNKNOWN
        return max((h.status for h in self._components.values()), key=lambda s: s.severity)

    def is_system_healthy(self) -> bool:
        return self.overall() is HealthStatus.HEALTHY

    def get_unhealthy_components(self) -> List[ComponentHealth]:
        """Components that are DEGRADED or UNHEALTHY."""
        return [
            h for h in self._components.values()
            if h.status.severity >= HealthStatus.DEGRADED.severity
        ]

    def summary(self) -> Dict[str, Any]:
        return {
            "overall": self.overall().value,
            "components": {name: h.to_dict() for name, h in self._components.items()},
        }
