"""Signal types, event kinds and signal payloads."""

from .event_types import EventKind, SignalType
from .signals import (
    SignalPayload,
    ObservedEvent,
    ParseErrorNotice,
    FinalityNotice,
    ReorgNotice,
    HighErrorRateNotice,
    ReconnectExhaustedNotice,
    observed,
)

__all__ = [
    "EventKind",
    "SignalType",
    "SignalPayload",
    "ObservedEvent",
    "ParseErrorNotice",
    "FinalityNotice",
    "ReorgNotice",
    "HighErrorRateNotice",
    "ReconnectExhaustedNotice",
    "observed",
]
