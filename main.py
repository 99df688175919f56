"""
Ledger Sync - Main Entry Point

Usage:
    python main.py --env dev                      # Run the sync worker
    python main.py --env prod run                 # Same, explicit
    python main.py backfill --from 1000 --to 2000 # Replay a position range
    python main.py reconcile all                  # One reconciliation pass
    python main.py status                         # Print schema version and checkpoints
"""

from __future__ import annotations
import asyncio
import argparse
import json
import sys
from dataclasses import asdict

from config.config_manager import ConfigManager
from ledger_sync.application import SyncWorker
from ledger_sync.infrastructure.persistence import CheckpointRepository, Database
from ledger_sync.utils import StructuredLogger, flush_all_loggers, shutdown_logging
from ledger_sync.utils.structured_logger import LogCategory
from ledger_sync.utils.logging_setup import setup_category_logging
from migrations.runner import MigrationRunner


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Ledger projection sync worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --env dev                       # Live sync (default command)
  python main.py backfill --from 250000000       # Replay up to the finalized position
  python main.py reconcile recent                # Reconcile the trailing window once
  python main.py status                          # Show checkpoint rows
        """
    )

    parser.add_argument(
        "--env",
        type=str,
        default="dev",
        help="Environment to run in (default: dev); selects config/{env}.yaml"
    )

    parser.add_argument(
        "--config-dir",
        type=str,
        default="config",
        help="Directory holding base.yaml, {env}.yaml and secrets.yaml (default: config)"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging (DEBUG level for all categories)"
    )

    parser.add_argument(
        "--console",
        action="store_true",
        help="Mirror log output to stderr"
    )

    commands = parser.add_subparsers(dest="command", metavar="command")
    commands.add_parser("run", help="Run live ingestion and reconciliation (default)")

    backfill = commands.add_parser("backfill", help="Replay a historical position range")
    backfill.add_argument(
        "--from",
        dest="from_position",
        type=int,
        required=True,
        help="First position to replay"
    )
    backfill.add_argument(
        "--to",
        dest="to_position",
        type=int,
        default=None,
        help="Last position to replay (default: current finalized position)"
    )

    reconcile = commands.add_parser("reconcile", help="Run one reconciliation pass")
    reconcile.add_argument(
        "scope",
        choices=["recent", "all", "cleanup"],
        help="recent window, full sweep, or orphan cleanup only"
    )

    commands.add_parser("status", help="Print checkpoint rows as JSON")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
    return args


async def run_worker(worker: SyncWorker, system: StructuredLogger) -> int:
    """Run the long-lived sync worker until shutdown."""
    system.info(LogCategory.SYSTEM, "Starting sync worker")
    return await worker.run()


async def run_backfill(worker: SyncWorker, args: argparse.Namespace) -> int:
    """Replay a range once and exit."""
    try:
        await worker.open()
        report = await worker.run_backfill(args.from_position, args.to_position)
        print(json.dumps(report.to_dict(), indent=2))
        return 0 if report.errors == 0 else 1
    finally:
        await worker.close("backfill finished")


async def run_reconcile(worker: SyncWorker, args: argparse.Namespace) -> int:
    """Run one reconciliation pass and exit."""
    try:
        await worker.open()
        report = await worker.run_reconciliation(args.scope)
        print(json.dumps(report.to_dict(), indent=2))
        return 0 if report.errors == 0 else 1
    finally:
        await worker.close(f"reconcile {args.scope} finished")


async def run_status(config) -> int:
    """Print the schema version and every checkpoint row."""
    db = Database(config.database)
    await db.connect()
    try:
        version = await MigrationRunner(db).current_version()
        checkpoints = await CheckpointRepository(db).list_all()
    finally:
        await db.close()
    status = {
        "schema_version": version,
        "checkpoints": {name: asdict(cp) for name, cp in checkpoints.items()},
    }
    print(json.dumps(status, indent=2, default=str))
    return 0


async def main_async(args: argparse.Namespace) -> int:
    """Main async entry point."""
    config = ConfigManager(config_dir=args.config_dir, env=args.env).load()

    category_loggers = setup_category_logging(
        env=args.env,
        log_dir=config.logging.dir,
        level=config.logging.level,
        console=args.console or config.logging.console,
        verbose=args.verbose,
    )
    system_logger = category_loggers["system"]
    system_structured = StructuredLogger(system_logger)

    system_structured.info(
        LogCategory.SYSTEM,
        "Ledger sync starting",
        {
            "env": args.env,
            "command": args.command,
            "program": config.ledger.program_id,
            "rpc_url": config.ledger.rpc_url,
            "commitment": config.ledger.commitment,
        },
    )

    try:
        if args.command == "status":
            return await run_status(config)

        worker = SyncWorker.from_config(config)
        if args.command == "backfill":
            return await run_backfill(worker, args)
        if args.command == "reconcile":
            return await run_reconcile(worker, args)
        return await run_worker(worker, system_structured)

    except Exception as e:
        system_structured.error(
            LogCategory.SYSTEM,
            "Fatal error",
            {"error": str(e)}
        )
        system_logger.exception("Fatal error:")
        return 1
    finally:
        # Ensure all logs are flushed to disk
        flush_all_loggers()


def main() -> None:
    """Main entry point."""
    args = parse_args()

    try:
        exit_code = asyncio.run(main_async(args))
    except KeyboardInterrupt:
        print("Shutdown requested")
        exit_code = 0
    except Exception as e:
        print(f"Fatal error: {e}")
        exit_code = 1
    finally:
        shutdown_logging()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
