"""Read-only ledger capability used by ingestion, finality checks, backfill and reconciliation."""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple


class Commitment(Enum):
    """Ledger confidence tiers, weakest first."""
    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"

    @property
    def rank(self) -> int:
        return _COMMITMENT_RANK[self]

    def at_least(self, other: "Commitment") -> bool:
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Commitment"]:
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


_COMMITMENT_RANK = {
    Commitment.PROCESSED: 0,
    Commitment.CONFIRMED: 1,
    Commitment.FINALIZED: 2,
}


@dataclass(frozen=True)
class LogBatch:
    """Log lines for one transaction, as delivered by a subscription or fetched historically."""
    tx_id: str
    position: int
    logs: Tuple[str, ...]
    failed: bool = False
    error: Any = None
    commitment: Commitment = Commitment.CONFIRMED


@dataclass(frozen=True)
class SubscriptionHandle:
    """Opaque handle returned by subscribe_logs."""
    subscription_id: int
    program_address: str
    commitment: Commitment


@dataclass(frozen=True)
class SignatureStatus:
    """Current confirmation status of a transaction."""
    tx_id: str
    confirmation: Optional[Commitment]
    position: Optional[int] = None
    error: Any = None

    @property
    def is_finalized(self) -> bool:
        return self.confirmation is Commitment.FINALIZED and self.error is None


@dataclass(frozen=True)
class TransactionRef:
    """A transaction touching the program, located at a ledger position."""
    tx_id: str
    position: int
    failed: bool = False


@dataclass(frozen=True)
class TransactionLogs:
    """Historical transaction logs."""
    tx_id: str
    position: int
    logs: Tuple[str, ...]
    error: Any = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class AccountState:
    """Raw canonical account as stored on the ledger."""
    address: str
    owner: str
    data: bytes
    lamports: int = 0
    position: Optional[int] = None
    extra: dict = field(default_factory=dict)


LogCallback = Callable[[LogBatch], Awaitable[None]]


class LedgerClient(ABC):
    """
    Read-only ledger access.

    Implementations must deliver subscription batches one at a time:
    the callback for batch N+1 is not invoked until the callback for
    batch N has returned.
    """

    @abstractmethod
    async def subscribe_logs(
        self,
        program_address: str,
        commitment: Commitment,
        callback: LogCallback,
    ) -> SubscriptionHandle:
        """Open a log subscription for a program address."""

    @abstractmethod
    async def unsubscribe_logs(self, handle: SubscriptionHandle) -> None:
        """Close a subscription opened by subscribe_logs."""

    @abstractmethod
    async def get_current_position(self, commitment: Commitment) -> int:
        """Current ledger position at the given commitment tier."""

    @abstractmethod
    async def get_signature_status(self, tx_id: str) -> Optional[SignatureStatus]:
        """Confirmation status of a transaction, or None if the ledger does not know it."""

    @abstractmethod
    async def get_transactions_for_address(
        self,
        program_address: str,
        from_position: int,
        to_position: int,
    ) -> List[TransactionRef]:
        """Transactions touching the program within [from_position, to_position], ascending."""

    @abstractmethod
    async def get_transaction_logs(self, tx_id: str) -> Optional[TransactionLogs]:
        """Log lines of a historical transaction, or None if not found."""

    @abstractmethod
    async def get_account_state(self, address: str) -> Optional[AccountState]:
        """Canonical account, or None when the account does not exist."""

    async def close(self) -> None:
        """Release transport resources."""
