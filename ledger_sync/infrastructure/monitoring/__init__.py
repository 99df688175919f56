"""Monitoring and health tracking."""

from .health_monitor import HealthMonitor, HealthStatus, ComponentHealth

__all__ = ["HealthMonitor", "HealthStatus", "ComponentHealth"]
