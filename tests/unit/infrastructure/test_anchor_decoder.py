"""Tests for Anchor IDL decoding against the discount platform IDL."""

import base64
import struct
from pathlib import Path

import pytest
from solders.pubkey import Pubkey

from ledger_sync.domain.errors import DecodeError
from ledger_sync.domain.events import EventKind
from ledger_sync.domain.interfaces import AccountState
from ledger_sync.infrastructure.adapters.solana import (
    AnchorAccountDecoder,
    AnchorEventDecoder,
    AnchorIdl,
    discriminator,
)

IDL_PATH = Path(__file__).resolve().parents[3] / "config" / "idl" / "discount_platform.json"
PROGRAM = "9P3wW4XQH7DntMqfEiLqS6SNztihxfenNUSqECh3WTf3"
OTHER_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"

COUPON_MINTED_DISC = bytes([54, 185, 253, 75, 64, 7, 149, 3])
COUPON_ACCOUNT_DISC = bytes([24, 230, 224, 210, 200, 206, 79, 57])


@pytest.fixture(scope="module")
def idl() -> AnchorIdl:
    return AnchorIdl.from_file(IDL_PATH)


@pytest.fixture
def keys() -> dict:
    return {name: Pubkey.new_unique() for name in ("coupon", "mint", "promotion", "recipient", "merchant")}


def _coupon_minted(keys: dict, discount: int = 20) -> bytes:
    body = b"".join(
        bytes(keys[name]) for name in ("coupon", "mint", "promotion", "recipient", "merchant")
    )
    return COUPON_MINTED_DISC + body + struct.pack("<B", discount)


def _program_logs(*data_lines: str, program: str = PROGRAM) -> list:
    return [
        f"Program {program} invoke [1]",
        "Program log: Instruction: MintCoupon",
        *[f"Program data: {line}" for line in data_lines],
        f"Program {program} consumed 41234 of 200000 compute units",
        f"Program {program} success",
    ]


class TestAnchorIdl:
    """IDL loading and raw decoding."""

    def test_loads_events_and_accounts(self, idl: AnchorIdl) -> None:
        assert idl.address == PROGRAM
        assert "CouponMinted" in idl.event_names
        assert "PromotionCreated" in idl.event_names
        assert {"Coupon", "Promotion"} <= set(idl.account_names)

    def test_every_idl_event_is_a_known_kind(self, idl: AnchorIdl) -> None:
        assert all(EventKind.from_name(name) is not None for name in idl.event_names)

    def test_decode_event_snake_cases_fields(self, idl: AnchorIdl, keys: dict) -> None:
        name, fields = idl.decode_event(_coupon_minted(keys))

        assert name == "CouponMinted"
        assert fields["nft_mint"] == str(keys["mint"])
        assert fields["recipient"] == str(keys["recipient"])
        assert fields["discount_percentage"] == 20

    def test_unknown_discriminator_returns_none(self, idl: AnchorIdl) -> None:
        assert idl.decode_event(b"\x00" * 16) is None

    def test_truncated_event_raises(self, idl: AnchorIdl, keys: dict) -> None:
        with pytest.raises(DecodeError):
            idl.decode_event(_coupon_minted(keys)[:40])

    def test_implied_discriminator(self) -> None:
        """Older IDLs without explicit discriminators use sha256("event:<Name>")."""
        idl = AnchorIdl({
            "events": [{"name": "Ping", "fields": [{"name": "count", "type": "u16"}]}],
        })

        assert idl.decode_event(discriminator("event", "Ping") + struct.pack("<H", 7)) == ("Ping", {"count": 7})

    def test_decode_account_with_option_and_padding(self, idl: AnchorIdl, keys: dict) -> None:
        uri = b"ipfs://coupon"
        data = (
            COUPON_ACCOUNT_DISC
            + struct.pack("<Q", 1)
            + bytes(keys["promotion"]) + bytes(keys["recipient"]) + bytes(keys["merchant"])
            + struct.pack("<B", 15)
            + struct.pack("<q", 1_900_000_000)
            + struct.pack("<?", True)
            + struct.pack("<q", 1_800_000_000)
            + struct.pack("<q", 1_700_000_000)
            + struct.pack("<I", len(uri)) + uri
            + b"\x01" + bytes(keys["mint"])
            + b"\x00" * 64
        )

        fields = idl.decode_account("Coupon", data)

        assert fields["owner"] == str(keys["recipient"])
        assert fields["is_redeemed"] is True
        assert fields["metadata_uri"] == "ipfs://coupon"
        assert fields["mint"] == str(keys["mint"])

    def test_wrong_account_discriminator_raises(self, idl: AnchorIdl) -> None:
        with pytest.raises(DecodeError):
            idl.decode_account("Coupon", b"\x01" * 200)


class TestAnchorEventDecoder:
    """Program data lines within our invocation frames."""

    def test_parses_program_data(self, idl: AnchorIdl, keys: dict) -> None:
        decoder = AnchorEventDecoder(idl, PROGRAM)
        payload = base64.b64encode(_coupon_minted(keys)).decode()

        events = decoder.parse_events(_program_logs(payload))

        assert len(events) == 1
        assert events[0].kind is EventKind.COUPON_MINTED
        assert events[0].data["coupon"] == str(keys["coupon"])

    def test_ignores_other_programs(self, idl: AnchorIdl, keys: dict) -> None:
        decoder = AnchorEventDecoder(idl, PROGRAM)
        payload = base64.b64encode(_coupon_minted(keys)).decode()

        assert decoder.parse_events(_program_logs(payload, program=OTHER_PROGRAM)) == []

    def test_ignores_data_from_nested_cpi(self, idl: AnchorIdl, keys: dict) -> None:
        decoder = AnchorEventDecoder(idl, PROGRAM)
        payload = base64.b64encode(_coupon_minted(keys)).decode()
        logs = [
            f"Program {PROGRAM} invoke [1]",
            f"Program {OTHER_PROGRAM} invoke [2]",
            f"Program data: {payload}",
            f"Program {OTHER_PROGRAM} success",
            f"Program data: {payload}",
            f"Program {PROGRAM} success",
        ]

        assert len(decoder.parse_events(logs)) == 1

    def test_invalid_base64_raises(self, idl: AnchorIdl) -> None:
        decoder = AnchorEventDecoder(idl, PROGRAM)

        with pytest.raises(DecodeError):
            decoder.parse_events(_program_logs("not base64!!"))

    def test_program_address_defaults_to_idl(self, idl: AnchorIdl) -> None:
        assert AnchorEventDecoder(idl).program_address == PROGRAM


class TestAnchorAccountDecoder:
    def test_fields_of_selects_tracked_fields(self, idl: AnchorIdl, keys: dict) -> None:
        location = struct.pack("<iiHHQ", 0, 0, 0, 0, 0)
        data = (
            bytes([32, 59, 115, 212, 100, 17, 137, 59])
            + bytes(keys["merchant"])
            + struct.pack("<BII", 10, 100, 42)
            + struct.pack("<q", 1_900_000_000)
            + struct.pack("<I", 4) + b"food"
            + struct.pack("<I", 0)
            + struct.pack("<Q", 5_000)
            + struct.pack("<?", False)
            + struct.pack("<q", 1_700_000_000)
            + location
            + struct.pack("<QI?", 0, 0, False)
        )
        decode = AnchorAccountDecoder(idl).fields_of("Promotion", ("current_supply", "is_active"))

        fields = decode(AccountState(address="promo", owner=PROGRAM, data=data))

        assert fields == {"current_supply": 42, "is_active": False}

    def test_unknown_account_rejected(self, idl: AnchorIdl) -> None:
        with pytest.raises(ValueError):
            AnchorAccountDecoder(idl).fields_of("Escrow", ("amount",))
