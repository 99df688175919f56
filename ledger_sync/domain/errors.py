"""Exception hierarchy for the ledger sync service."""

from __future__ import annotations


class LedgerSyncError(Exception):
    """Base exception for ledger sync failures."""


class LedgerRpcError(LedgerSyncError):
    """A ledger RPC call or transport failed (transient, retryable by policy)."""

    def __init__(self, message: str, code: int | None = None, method: str | None = None):
        super().__init__(message)
        self.code = code
        self.method = method


class SubscriptionError(LedgerRpcError):
    """Opening or maintaining a log subscription failed."""


class DecodeError(LedgerSyncError):
    """Program log or account data could not be decoded."""


class AlreadyRunningError(LedgerSyncError):
    """A single-flight operation was started while already in progress."""
