"""Ledger adapters."""
