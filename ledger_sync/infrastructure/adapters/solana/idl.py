"""
Anchor IDL loading and Borsh decoding.

Handles both IDL layouts in circulation:
- 0.29: events carry inline `fields`, `defined` is a bare type name,
  discriminators are implied (sha256("event:<Name>")[:8])
- 0.30: events and accounts carry explicit `discriminator` arrays and
  their layouts live in `types`, `defined` is {"name": ...}

Decoded field names are snake_case; event and account names PascalCase.
"""

from __future__ import annotations
import hashlib
import json
import re
import struct
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from solders.pubkey import Pubkey

from ....domain.errors import DecodeError


DISCRIMINATOR_SIZE = 8

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")

_FIXED = {
    "bool": ("<?", 1),
    "u8": ("<B", 1),
    "i8": ("<b", 1),
    "u16": ("<H", 2),
    "i16": ("<h", 2),
    "u32": ("<I", 4),
    "i32": ("<i", 4),
    "u64": ("<Q", 8),
    "i64": ("<q", 8),
    "f32": ("<f", 4),
    "f64": ("<d", 8),
}


def snake_case(name: str) -> str:
    """geoCellId -> geo_cell_id; already snake_case names pass through."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def pascal_case(name: str) -> str:
    """couponMinted / coupon_minted -> CouponMinted."""
    if "_" in name:
        return "".join(part[:1].upper() + part[1:] for part in name.split("_") if part)
    return name[:1].upper() + name[1:]


def discriminator(namespace: str, name: str) -> bytes:
    """Anchor discriminator: first 8 bytes of sha256("<namespace>:<Name>")."""
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


def _key(name: str) -> str:
    return name.replace("_", "").lower()


class BorshReader:
    """Sequential little-endian reader over a byte buffer."""

    def __init__(self, data: bytes, offset: int = 0):
        self._data = data
        self._offset = offset

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def read(self, size: int) -> bytes:
        if size < 0 or self._offset + size > len(self._data):
            raise DecodeError(
                f"Unexpected end of data: need {size} byte(s) at offset {self._offset}, "
                f"have {self.remaining}"
            )
        chunk = self._data[self._offset:self._offset + size]
        self._offset += size
        return chunk

    def fixed(self, type_name: str) -> Any:
        fmt, size = _FIXED[type_name]
        return struct.unpack(fmt, self.read(size))[0]

    def u32(self) -> int:
        return self.fixed("u32")

    def int128(self, signed: bool) -> int:
        return int.from_bytes(self.read(16), "little", signed=signed)

    def string(self) -> str:
        raw = self.read(self.u32())
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Invalid UTF-8 string: {e}") from e

    def pubkey(self) -> str:
        return str(Pubkey.from_bytes(self.read(32)))


class AnchorIdl:
    """Event and account layouts of one Anchor program."""

    def __init__(self, raw: Dict[str, Any]):
        self._raw = raw
        self._types: Dict[str, Dict[str, Any]] = {
            _key(t["name"]): t["type"] for t in raw.get("types", [])
        }
        self._events: Dict[bytes, Tuple[str, List[Dict[str, Any]]]] = {}
        self._accounts: Dict[str, Tuple[str, bytes, List[Dict[str, Any]]]] = {}

        for event in raw.get("events", []):
            name = pascal_case(event["name"])
            disc = bytes(event["discriminator"]) if "discriminator" in event else discriminator("event", name)
            self._events[disc] = (name, self._fields_of(event, name))

        for account in raw.get("accounts", []):
            name = pascal_case(account["name"])
            disc = bytes(account["discriminator"]) if "discriminator" in account else discriminator("account", name)
            self._accounts[_key(name)] = (name, disc, self._fields_of(account, name))

    @classmethod
    def from_file(cls, path: str | Path) -> "AnchorIdl":
        with open(path, "r") as f:
            return cls(json.load(f))

    @property
    def address(self) -> Optional[str]:
        """Program address declared by the IDL, if any."""
        return self._raw.get("address") or self._raw.get("metadata", {}).get("address")

    @property
    def event_names(self) -> List[str]:
        return [name for name, _ in self._events.values()]

    @property
    def account_names(self) -> List[str]:
        return [name for name, _, _ in self._accounts.values()]

    def _fields_of(self, item: Dict[str, Any], name: str) -> List[Dict[str, Any]]:
        if "fields" in item:
            return item["fields"]
        if "type" in item:
            return item["type"].get("fields", [])
        typedef = self._types.get(_key(name))
        if typedef is None:
            raise ValueError(f"IDL has no type layout for {name}")
        return typedef.get("fields", [])

    # -------------------------------------------------------------------------
    # Decoding
    # -------------------------------------------------------------------------

    def decode_event(self, data: bytes) -> Optional[Tuple[str, Dict[str, Any]]]:
        """
        Decode an event payload (discriminator + Borsh body).

        Returns:
            (EventName, fields), or None for an unknown discriminator.

        Raises:
            DecodeError: If the body does not match the layout.
        """
        if len(data) < DISCRIMINATOR_SIZE:
            raise DecodeError(f"Event payload too short ({len(data)} bytes)")
        entry = self._events.get(bytes(data[:DISCRIMINATOR_SIZE]))
        if entry is None:
            return None
        name, fields = entry
        reader = BorshReader(data, DISCRIMINATOR_SIZE)
        return name, self._decode_fields(reader, fields)

    def decode_account(self, account_name: str, data: bytes) -> Dict[str, Any]:
        """
        Decode account data for a named account type.

        Trailing bytes (account padding) are ignored.

        Raises:
            KeyError: If the IDL does not define the account.
            DecodeError: On discriminator mismatch or truncated data.
        """
        _, disc, fields = self._accounts[_key(account_name)]
        if bytes(data[:DISCRIMINATOR_SIZE]) != disc:
            raise DecodeError(f"Account data is not a {account_name}")
        reader = BorshReader(data, DISCRIMINATOR_SIZE)
        return self._decode_fields(reader, fields)

    def _decode_fields(self, reader: BorshReader, fields: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {snake_case(f["name"]): self._decode(reader, f["type"]) for f in fields}

    def _decode(self, reader: BorshReader, ty: Any) -> Any:
        if isinstance(ty, str):
            if ty in _FIXED:
                return reader.fixed(ty)
            if ty in ("pubkey", "publicKey"):
                return reader.pubkey()
            if ty == "string":
                return reader.string()
            if ty == "bytes":
                return reader.read(reader.u32())
            if ty in ("u128", "i128"):
                return reader.int128(signed=ty == "i128")
            raise DecodeError(f"Unsupported IDL type: {ty}")

        if "option" in ty:
            flag = reader.fixed("u8")
            if flag == 0:
                return None
            if flag != 1:
                raise DecodeError(f"Invalid option tag {flag}")
            return self._decode(reader, ty["option"])

        if "vec" in ty:
            return [self._decode(reader, ty["vec"]) for _ in range(reader.u32())]

        if "array" in ty:
            inner, length = ty["array"]
            if inner == "u8":
                return reader.read(length)
            return [self._decode(reader, inner) for _ in range(length)]

        if "defined" in ty:
            defined = ty["defined"]
            name = defined["name"] if isinstance(defined, dict) else defined
            typedef = self._types.get(_key(name))
            if typedef is None:
                raise DecodeError(f"Undefined IDL type: {name}")
            return self._decode_typedef(reader, typedef)

        raise DecodeError(f"Unsupported IDL type: {ty}")

    def _decode_typedef(self, reader: BorshReader, typedef: Dict[str, Any]) -> Any:
        if typedef["kind"] == "struct":
            return self._decode_fields(reader, typedef.get("fields", []))

        if typedef["kind"] == "enum":
            index = reader.fixed("u8")
            variants = typedef["variants"]
            if index >= len(variants):
                raise DecodeError(f"Enum variant {index} out of range")
            variant = variants[index]
            name = snake_case(variant["name"])
            fields = variant.get("fields")
            if not fields:
                return name
            if isinstance(fields[0], dict) and "name" in fields[0]:
                return {"variant": name, **self._decode_fields(reader, fields)}
            return {"variant": name, "values": [self._decode(reader, f) for f in fields]}

        raise DecodeError(f"Unsupported type kind: {typedef['kind']}")
