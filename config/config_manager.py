"""
Configuration manager with environment-based loading.

Supports:
- Base configuration (base.yaml)
- Environment-specific overrides (dev.yaml, prod.yaml)
- Secrets loading (secrets.yaml - gitignored)
- Environment variable overrides for endpoints and the database password
"""

from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse, urlunparse

import yaml

from ledger_sync.utils.logging_setup import get_logger

from .models import (
    AppConfig,
    BackfillConfig,
    DatabaseConfig,
    DatabasePoolConfig,
    FinalityConfig,
    HandlersConfig,
    IngestionConfig,
    LedgerConfig,
    LoggingConfig,
    MonitoringConfig,
    ReconciliationConfig,
    ShutdownConfig,
)


logger = get_logger(__name__)

ENV_RPC_URL = "LEDGER_SYNC_RPC_URL"
ENV_WS_URL = "LEDGER_SYNC_WS_URL"
ENV_DB_PASSWORD = "LEDGER_SYNC_DB_PASSWORD"

VALID_COMMITMENTS = ("processed", "confirmed", "finalized")


def derive_ws_url(rpc_url: str) -> str:
    """
    Websocket endpoint matching an HTTP RPC endpoint.

    http -> ws, https -> wss; a local validator's 8899 maps to 8900.
    """
    parsed = urlparse(rpc_url)
    scheme = "wss" if parsed.scheme == "https" else "ws"
    netloc = parsed.netloc
    if parsed.port == 8899:
        netloc = netloc.replace(":8899", ":8900")
    return urlunparse(parsed._replace(scheme=scheme, netloc=netloc))


class ConfigManager:
    """
    Configuration manager with environment support.

    Loads configuration in this order:
    1. base.yaml (default config)
    2. {env}.yaml (environment-specific, e.g., dev.yaml)
    3. secrets.yaml (if exists, gitignored)
    4. LEDGER_SYNC_* environment variables

    Later sources override earlier ones.
    """

    def __init__(
        self,
        config_dir: str | Path = "config",
        env: str = "dev",
        environ: Optional[Mapping[str, str]] = None,
    ):
        """
        Initialize config manager.

        Args:
            config_dir: Directory containing config files.
            env: Environment name (dev, prod, etc).
            environ: Environment variables (defaults to os.environ).
        """
        self.config_dir = Path(config_dir)
        self.env = env
        self.environ = os.environ if environ is None else environ
        self.config: Dict[str, Any] = {}

    def load(self) -> AppConfig:
        """
        Load configuration from YAML files.

        Returns:
            AppConfig object.

        Raises:
            FileNotFoundError: If base config not found.
            ValueError: If config is invalid.
        """
        base_path = self.config_dir / "base.yaml"
        if not base_path.exists():
            raise FileNotFoundError(f"Base config not found: {base_path}")

        self.config = self._load_yaml(base_path)
        logger.info(f"Loaded base config from {base_path}")

        env_path = self.config_dir / f"{self.env}.yaml"
        if env_path.exists():
            env_config = self._load_yaml(env_path)
            self.config = self._merge_dicts(self.config, env_config)
            logger.info(f"Loaded {self.env} config from {env_path}")

        secrets_path = self.config_dir / "secrets.yaml"
        if secrets_path.exists():
            secrets = self._load_yaml(secrets_path)
            self.config = self._merge_dicts(self.config, secrets)
            logger.info("Loaded secrets")

        self._apply_env_overrides()
        return self._parse_config()

    def _load_yaml(self, path: Path) -> Dict[str, Any]:
        """Load YAML file."""
        with open(path, "r") as f:
            return yaml.safe_load(f) or {}

    def _merge_dicts(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dicts (override wins)."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_dicts(result[key], value)
            else:
                result[key] = value
        return result

    def _apply_env_overrides(self) -> None:
        overrides = {
            ENV_RPC_URL: ("ledger", "rpc_url"),
            ENV_WS_URL: ("ledger", "ws_url"),
            ENV_DB_PASSWORD: ("database", "password"),
        }
        for var, (section, key) in overrides.items():
            value = self.environ.get(var)
            if value:
                self.config.setdefault(section, {})[key] = value
                logger.info(f"{section}.{key} overridden from {var}")

    def _parse_config(self) -> AppConfig:
        """Parse raw dict into AppConfig."""
        try:
            ledger_raw = self.config.get("ledger", {})
            program_id = ledger_raw.get("program_id")
            if not program_id:
                raise ValueError("ledger.program_id is required")
            commitment = ledger_raw.get("commitment", "confirmed")
            if commitment not in VALID_COMMITMENTS:
                raise ValueError(f"ledger.commitment must be one of {VALID_COMMITMENTS}")
            rpc_url = ledger_raw.get("rpc_url", "http://localhost:8899")
            ledger = LedgerConfig(
                rpc_url=rpc_url,
                ws_url=ledger_raw.get("ws_url") or derive_ws_url(rpc_url),
                program_id=program_id,
                commitment=commitment,
                request_timeout_sec=float(ledger_raw.get("request_timeout_sec", 30)),
                idl_path=ledger_raw.get("idl_path", "config/idl/discount_platform.json"),
            )

            ingestion_raw = self.config.get("ingestion", {})
            ingestion = IngestionConfig(
                process_name=ingestion_raw.get("process_name", "event-listener"),
                liveness_threshold_sec=float(ingestion_raw.get("liveness_threshold_sec", 300)),
                liveness_check_interval_sec=float(ingestion_raw.get("liveness_check_interval_sec", 60)),
                reconnect_base_delay_sec=float(ingestion_raw.get("reconnect_base_delay_sec", 5)),
                max_reconnect_attempts=int(ingestion_raw.get("max_reconnect_attempts", 10)),
                dedup_capacity=int(ingestion_raw.get("dedup_capacity", 10_000)),
                await_handlers=bool(ingestion_raw.get("await_handlers", True)),
                error_window_sec=float(ingestion_raw.get("error_window_sec", 60)),
                error_threshold=int(ingestion_raw.get("error_threshold", 10)),
            )
            if ingestion.dedup_capacity <= 0:
                raise ValueError("ingestion.dedup_capacity must be positive")

            finality_raw = self.config.get("finality", {})
            finality = FinalityConfig(
                grace_period_sec=float(finality_raw.get("grace_period_sec", 35)),
            )

            backfill_raw = self.config.get("backfill", {})
            backfill = BackfillConfig(
                window_size=int(backfill_raw.get("window_size", 100)),
                pause_sec=float(backfill_raw.get("pause_sec", 0.1)),
                on_startup=bool(backfill_raw.get("on_startup", True)),
                max_startup_gap=int(backfill_raw.get("max_startup_gap", 50_000)),
                max_retries=max(0, int(backfill_raw.get("max_retries", 3))),
                retry_delay_sec=float(backfill_raw.get("retry_delay_sec", 5.0)),
            )
            if backfill.window_size <= 0:
                raise ValueError("backfill.window_size must be positive")

            recon_raw = self.config.get("reconciliation", {})
            reconciliation = ReconciliationConfig(
                enabled=bool(recon_raw.get("enabled", True)),
                interval_sec=float(recon_raw.get("interval_sec", 300)),
                recent_window_sec=float(recon_raw.get("recent_window_sec", 3600)),
                full_sweep_every=max(1, int(recon_raw.get("full_sweep_every", 12))),
            )

            handlers_raw = self.config.get("handlers", {})
            handlers = HandlersConfig(
                max_retries=int(handlers_raw.get("max_retries", 3)),
                retry_delay_sec=float(handlers_raw.get("retry_delay_sec", 1.0)),
            )

            db_raw = self.config.get("database", {})
            pool_raw = db_raw.get("pool", {})
            database = DatabaseConfig(
                host=db_raw.get("host", "localhost"),
                port=int(db_raw.get("port", 5432)),
                database=db_raw.get("database", "ledger_sync"),
                user=db_raw.get("user", "ledger_sync"),
                password=str(db_raw.get("password", "") or ""),
                pool=DatabasePoolConfig(
                    min_connections=int(pool_raw.get("min_connections", 2)),
                    max_connections=int(pool_raw.get("max_connections", 10)),
                ),
                command_timeout_sec=float(db_raw.get("command_timeout_sec", 60)),
            )

            logging_raw = self.config.get("logging", {})
            logging_config = LoggingConfig(
                level=str(logging_raw.get("level", "INFO")).upper(),
                dir=logging_raw.get("dir", "./logs"),
                console=bool(logging_raw.get("console", False)),
            )

            shutdown_raw = self.config.get("shutdown", {})
            shutdown = ShutdownConfig(
                timeout_sec=float(shutdown_raw.get("timeout_sec", 10)),
            )

            monitoring_raw = self.config.get("monitoring", {})
            monitoring = MonitoringConfig(
                metrics_enabled=bool(monitoring_raw.get("metrics_enabled", False)),
                metrics_port=int(monitoring_raw.get("metrics_port", 9464)),
                heartbeat_interval_sec=float(monitoring_raw.get("heartbeat_interval_sec", 60)),
            )
            if monitoring.heartbeat_interval_sec <= 0:
                raise ValueError("monitoring.heartbeat_interval_sec must be positive")

            return AppConfig(
                ledger=ledger,
                ingestion=ingestion,
                finality=finality,
                backfill=backfill,
                reconciliation=reconciliation,
                handlers=handlers,
                database=database,
                logging=logging_config,
                shutdown=shutdown,
                raw=self.config,
                monitoring=monitoring,
            )

        except Exception as e:
            raise ValueError(f"Failed to parse config: {e}") from e
