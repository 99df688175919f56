"""Configuration data models."""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict
from urllib.parse import quote


@dataclass
class LedgerConfig:
    """Ledger RPC endpoint and program configuration."""
    rpc_url: str
    ws_url: str
    program_id: str
    commitment: str  # Subscription tier: "processed", "confirmed" or "finalized"
    request_timeout_sec: float
    idl_path: str


@dataclass
class IngestionConfig:
    """Live subscription configuration."""
    process_name: str
    liveness_threshold_sec: float
    liveness_check_interval_sec: float
    reconnect_base_delay_sec: float
    max_reconnect_attempts: int
    dedup_capacity: int
    await_handlers: bool
    error_window_sec: float
    error_threshold: int


@dataclass
class FinalityConfig:
    """Finality re-check configuration."""
    grace_period_sec: float


@dataclass
class BackfillConfig:
    """Historical backfill configuration."""
    window_size: int
    pause_sec: float
    on_startup: bool
    max_startup_gap: int  # Positions; larger gaps are clipped to the most recent ones
    max_retries: int = 3  # Resume attempts after a halted startup backfill
    retry_delay_sec: float = 5.0


@dataclass
class ReconciliationConfig:
    """Reconciliation loop configuration."""
    enabled: bool
    interval_sec: float
    recent_window_sec: float
    full_sweep_every: int  # Every Nth cycle also runs the full sweep and orphan cleanup


@dataclass
class HandlersConfig:
    """Consumer handler retry configuration."""
    max_retries: int
    retry_delay_sec: float


@dataclass
class DatabasePoolConfig:
    """Database connection pool configuration."""
    min_connections: int
    max_connections: int


@dataclass
class DatabaseConfig:
    """PostgreSQL connection configuration."""
    host: str
    port: int
    database: str
    user: str
    password: str
    pool: DatabasePoolConfig
    command_timeout_sec: float = 60

    @property
    def dsn(self) -> str:
        """asyncpg connection string."""
        auth = quote(self.user, safe="")
        if self.password:
            auth += ":" + quote(self.password, safe="")
        return f"postgresql://{auth}@{self.host}:{self.port}/{self.database}"


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str
    dir: str
    console: bool


@dataclass
class ShutdownConfig:
    """Graceful shutdown configuration."""
    timeout_sec: float


@dataclass
class MonitoringConfig:
    """Health heartbeat and Prometheus metrics."""
    metrics_enabled: bool = False
    metrics_port: int = 9464
    heartbeat_interval_sec: float = 60.0


@dataclass
class AppConfig:
    """Complete application configuration."""
    ledger: LedgerConfig
    ingestion: IngestionConfig
    finality: FinalityConfig
    backfill: BackfillConfig
    reconciliation: ReconciliationConfig
    handlers: HandlersConfig
    database: DatabaseConfig
    logging: LoggingConfig
    shutdown: ShutdownConfig
    raw: Dict[str, Any]  # Merged config dict
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
