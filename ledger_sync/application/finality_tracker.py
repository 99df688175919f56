"""Delayed finality re-checks for dispatched events."""

from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ..domain.events import EventKind, FinalityNotice, ReorgNotice, SignalType
from ..domain.interfaces import LedgerClient, SignatureStatus
from ..utils.logging_setup import get_logger
from ..utils.structured_logger import LogCategory, StructuredLogger
from ..utils.timezone import now_utc
from .dispatcher import SignalDispatcher


logger = get_logger(__name__)
alerts = StructuredLogger(logger)

Sleep = Callable[[float], Awaitable[None]]


class FinalityTracker:
    """
    Re-verifies observed transactions after a grace period.

    Each check is a one-shot task. When the transaction has reached the
    finalized tier the tracker emits `transaction-finalized` and
    `<EventName>-finalized`; anything else (still confirmed, missing,
    or failed) emits `potential-reorg`. Status query failures are logged
    and not retried.
    """

    def __init__(
        self,
        client: LedgerClient,
        dispatcher: SignalDispatcher,
        grace_period: float = 35.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self._client = client
        self._dispatcher = dispatcher
        self._grace_period = grace_period
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()
        self._stats = {
            "scheduled": 0,
            "finalized": 0,
            "potential_reorgs": 0,
            "query_errors": 0,
        }

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule_check(
        self,
        tx_id: str,
        position: int,
        kind: EventKind,
        data: Dict[str, Any],
    ) -> asyncio.Task:
        """Schedule a one-shot status check after the grace period."""
        task = asyncio.create_task(
            self._check_later(tx_id, position, kind, data),
            name=f"finality-{tx_id[:12]}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._stats["scheduled"] += 1
        return task

    async def _check_later(
        self,
        tx_id: str,
        position: int,
        kind: EventKind,
        data: Dict[str, Any],
    ) -> None:
        await self._sleep(self._grace_period)
        await self.check(tx_id, position, kind, data)

    async def check(
        self,
        tx_id: str,
        position: int,
        kind: EventKind,
        data: Dict[str, Any],
    ) -> Optional[bool]:
        """
        Query status once and emit the matching signals.

        Returns:
            True if finalized, False if a potential reorg was signalled,
            None if the status query failed.
        """
        try:
            status = await self._client.get_signature_status(tx_id)
        except Exception as e:
            self._stats["query_errors"] += 1
            logger.error(f"Finality check for {tx_id} failed: {e}", exc_info=True)
            return None

        if status is not None and status.is_finalized:
            self._stats["finalized"] += 1
            logger.debug(f"Transaction {tx_id} finalized ({kind.value})")
            notice = FinalityNotice(
                tx_id=tx_id,
                position=position,
                kind=kind,
                data=data,
                checked_at=now_utc(),
            )
            await self._dispatcher.emit(SignalType.TRANSACTION_FINALIZED, notice)
            await self._dispatcher.emit(SignalType.EVENT_FINALIZED, notice, kind)
            return True

        self._stats["potential_reorgs"] += 1
        status_value = _describe(status)
        alerts.warning(
            LogCategory.ALERT,
            f"Potential reorg: {tx_id} not finalized after {self._grace_period:.0f}s",
            {"tx_id": tx_id, "position": position, "event": kind.value, "status": status_value},
        )
        await self._dispatcher.emit(
            SignalType.POTENTIAL_REORG,
            ReorgNotice(
                tx_id=tx_id,
                position=position,
                kind=kind,
                data=data,
                status=status_value,
                checked_at=now_utc(),
            ),
        )
        return False

    async def close(self, timeout: float = 1.0) -> int:
        """
        Cancel all pending checks.

        Returns:
            Number of checks that were cancelled.
        """
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
            logger.info(f"Cancelled {len(tasks)} pending finality check(s)")
        return len(tasks)

    def get_stats(self) -> Dict[str, int]:
        stats = dict(self._stats)
        stats["pending"] = self.pending
        return stats


def _describe(status: Optional[SignatureStatus]) -> Optional[str]:
    if status is None:
        return None
    if status.error is not None:
        return "failed"
    return status.confirmation.value if status.confirmation else None
