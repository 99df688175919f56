"""
Typed payloads carried by dispatcher signals.

Usage:
    from ledger_sync.domain.events import ObservedEvent, SignalType

    dispatcher.on_event(EventKind.COUPON_MINTED, handle_coupon_minted)

    async def handle_coupon_minted(event: ObservedEvent) -> None:
        coupon = event.data["coupon"]
        ...
"""

from __future__ import annotations
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..interfaces.ledger_client import Commitment
from ...utils.timezone import now_utc
from .event_types import EventKind


class SignalPayload:
    """Base for signal payloads."""

    __slots__ = ()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logging; datetimes and enums flattened."""
        result = {}
        for key, value in asdict(self).items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Enum):
                result[key] = value.value
            else:
                result[key] = value
        return result


@dataclass(frozen=True, slots=True)
class ObservedEvent(SignalPayload):
    """A decoded program event observed in a transaction."""
    kind: EventKind
    data: Dict[str, Any]
    tx_id: str
    position: int
    observed_at: datetime
    commitment: Commitment = Commitment.CONFIRMED

    @property
    def name(self) -> str:
        return self.kind.value


@dataclass(frozen=True, slots=True)
class ParseErrorNotice(SignalPayload):
    """A transaction whose logs could not be decoded; raw logs kept for inspection."""
    tx_id: str
    position: int
    logs: Tuple[str, ...]
    error: str
    observed_at: datetime


@dataclass(frozen=True, slots=True)
class FinalityNotice(SignalPayload):
    """An observed event's transaction reached the finalized tier."""
    tx_id: str
    position: int
    kind: EventKind
    data: Dict[str, Any]
    checked_at: datetime


@dataclass(frozen=True, slots=True)
class ReorgNotice(SignalPayload):
    """An observed event's transaction was not finalized after the grace period."""
    tx_id: str
    position: int
    kind: EventKind
    data: Dict[str, Any]
    status: Optional[str]
    checked_at: datetime


@dataclass(frozen=True, slots=True)
class HighErrorRateNotice(SignalPayload):
    """Error count within the rolling window crossed the threshold."""
    error_count: int
    window_seconds: float
    last_error: str
    detected_at: datetime


@dataclass(frozen=True, slots=True)
class ReconnectExhaustedNotice(SignalPayload):
    """Reconnect attempts exhausted; operator intervention required."""
    attempts: int
    last_error: Optional[str]
    detected_at: datetime


def observed(kind: EventKind, data: Dict[str, Any], tx_id: str, position: int,
             commitment: Commitment = Commitment.CONFIRMED) -> ObservedEvent:
    """Build an ObservedEvent stamped with the current time."""
    return ObservedEvent(
        kind=kind,
        data=data,
        tx_id=tx_id,
        position=position,
        observed_at=now_utc(),
        commitment=commitment,
    )
