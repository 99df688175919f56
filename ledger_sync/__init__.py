"""Off-chain projection sync for a Solana program: live log ingestion, finality tracking, backfill and reconciliation."""

__version__ = "0.1.0"
