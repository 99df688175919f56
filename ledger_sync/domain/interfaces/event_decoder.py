"""Event decoder capability: raw program log lines to typed events."""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from ..events.event_types import EventKind


@dataclass(frozen=True)
class DecodedEvent:
    """One program event decoded from a transaction's logs."""
    kind: EventKind
    data: Dict[str, Any]


class EventDecoder(ABC):
    """Decodes program events from log lines."""

    @abstractmethod
    def parse_events(self, logs: Sequence[str]) -> List[DecodedEvent]:
        """
        Decode all program events in a transaction's log lines.

        Raises:
            DecodeError: If a program event is present but malformed.
        """
