"""Anchor event and account decoders."""

from __future__ import annotations
import base64
import binascii
import re
from typing import Any, Callable, Dict, List, Optional, Sequence

from ....domain.errors import DecodeError
from ....domain.events import EventKind
from ....domain.interfaces import AccountState, DecodedEvent, EventDecoder
from ....utils.logging_setup import get_logger
from .idl import AnchorIdl


logger = get_logger(__name__)

PROGRAM_DATA = "Program data: "
_INVOKE = re.compile(r"^Program (\S+) invoke \[(\d+)\]$")
_EXIT = re.compile(r"^Program (\S+) (success|failed)")


class AnchorEventDecoder(EventDecoder):
    """
    Decodes `Program data:` lines emitted by one program.

    Walks the log keeping the program invocation stack so that data
    lines emitted by other programs (including CPIs from ours) are
    ignored. Unknown discriminators and events outside EventKind are
    skipped; malformed payloads raise DecodeError.
    """

    def __init__(self, idl: AnchorIdl, program_address: Optional[str] = None):
        self._idl = idl
        self._program = program_address or idl.address
        if not self._program:
            raise ValueError("program_address required when the IDL declares none")
        self._unknown_kinds: set = set()

    @property
    def program_address(self) -> str:
        return self._program

    def parse_events(self, logs: Sequence[str]) -> List[DecodedEvent]:
        stack: List[str] = []
        events: List[DecodedEvent] = []

        for line in logs:
            invoke = _INVOKE.match(line)
            if invoke:
                stack.append(invoke.group(1))
                continue

            if line.startswith(PROGRAM_DATA):
                if stack and stack[-1] == self._program:
                    event = self._decode_line(line[len(PROGRAM_DATA):])
                    if event is not None:
                        events.append(event)
                continue

            exit_ = _EXIT.match(line)
            if exit_ and stack and stack[-1] == exit_.group(1):
                stack.pop()

        return events

    def _decode_line(self, payload: str) -> Optional[DecodedEvent]:
        try:
            data = base64.b64decode(payload.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"Invalid base64 event payload: {e}") from e

        decoded = self._idl.decode_event(data)
        if decoded is None:
            return None
        name, fields = decoded

        kind = EventKind.from_name(name)
        if kind is None:
            if name not in self._unknown_kinds:
                self._unknown_kinds.add(name)
                logger.warning(f"Ignoring unrecognised program event {name}")
            return None
        return DecodedEvent(kind=kind, data=fields)


class AnchorAccountDecoder:
    """Decodes canonical account bytes into field dicts."""

    def __init__(self, idl: AnchorIdl):
        self._idl = idl

    def decode(self, account_name: str, data: bytes) -> Dict[str, Any]:
        return self._idl.decode_account(account_name, data)

    def fields_of(
        self,
        account_name: str,
        fields: Sequence[str],
    ) -> Callable[[AccountState], Dict[str, Any]]:
        """
        Build a decode function returning only the given fields.

        Raises:
            ValueError: If the IDL has no such account.
        """
        if account_name not in self._idl.account_names:
            raise ValueError(f"IDL defines no {account_name} account")
        wanted = tuple(fields)

        def decode(account: AccountState) -> Dict[str, Any]:
            values = self._idl.decode_account(account_name, account.data)
            return {name: values[name] for name in wanted if name in values}

        return decode
