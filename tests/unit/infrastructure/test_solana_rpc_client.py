"""Tests for SolanaLedgerClient response mapping (_rpc mocked)."""

import base64
from typing import Any, List
from unittest.mock import AsyncMock

import pytest

from ledger_sync.domain.interfaces import Commitment
from ledger_sync.infrastructure.adapters.solana import rpc_client
from ledger_sync.infrastructure.adapters.solana.rpc_client import SolanaLedgerClient

PROGRAM = "9P3wW4XQH7DntMqfEiLqS6SNztihxfenNUSqECh3WTf3"


@pytest.fixture
def client() -> SolanaLedgerClient:
    client = SolanaLedgerClient("http://localhost:8899", "ws://localhost:8900")
    client._rpc = AsyncMock()
    return client


def _signature(sig: str, slot: int, err: Any = None) -> dict:
    return {"signature": sig, "slot": slot, "err": err}


class TestReads:
    """JSON-RPC results mapped onto ledger types."""

    @pytest.mark.asyncio
    async def test_current_position(self, client: SolanaLedgerClient) -> None:
        client._rpc.return_value = 250_000_000

        assert await client.get_current_position(Commitment.FINALIZED) == 250_000_000
        client._rpc.assert_awaited_once_with("getSlot", [{"commitment": "finalized"}])

    @pytest.mark.asyncio
    async def test_signature_status_finalized(self, client: SolanaLedgerClient) -> None:
        client._rpc.return_value = {
            "value": [{"slot": 10, "confirmationStatus": "finalized", "err": None}]
        }

        status = await client.get_signature_status("sig-1")

        assert status.is_finalized
        assert status.position == 10

    @pytest.mark.asyncio
    async def test_signature_status_unknown(self, client: SolanaLedgerClient) -> None:
        client._rpc.return_value = {"value": [None]}

        assert await client.get_signature_status("sig-1") is None

    @pytest.mark.asyncio
    async def test_transaction_logs(self, client: SolanaLedgerClient) -> None:
        client._rpc.return_value = {
            "slot": 42,
            "meta": {"err": None, "logMessages": ["Program log: hi"]},
        }

        tx = await client.get_transaction_logs("sig-1")

        assert tx.position == 42
        assert tx.logs == ("Program log: hi",)
        assert not tx.failed

    @pytest.mark.asyncio
    async def test_missing_account_is_none(self, client: SolanaLedgerClient) -> None:
        client._rpc.return_value = {"context": {"slot": 5}, "value": None}

        assert await client.get_account_state("addr") is None

    @pytest.mark.asyncio
    async def test_account_data_is_decoded(self, client: SolanaLedgerClient) -> None:
        client._rpc.return_value = {
            "context": {"slot": 5},
            "value": {
                "data": [base64.b64encode(b"\x01\x02").decode(), "base64"],
                "owner": PROGRAM,
                "lamports": 1_000,
            },
        }

        account = await client.get_account_state("addr")

        assert account.data == b"\x01\x02"
        assert account.owner == PROGRAM
        assert account.position == 5


class TestSignaturePaging:
    """Range filtering over newest-first signature pages."""

    @pytest.mark.asyncio
    async def test_filters_range_and_returns_ascending(self, client: SolanaLedgerClient) -> None:
        client._rpc.return_value = [
            _signature("s-30", 30),
            _signature("s-20", 20, err={"InstructionError": [0, "Custom"]}),
            _signature("s-15", 15),
            _signature("s-5", 5),
        ]

        refs = await client.get_transactions_for_address(PROGRAM, 10, 25)

        assert [(r.tx_id, r.position, r.failed) for r in refs] == [("s-15", 15, False), ("s-20", 20, True)]

    @pytest.mark.asyncio
    async def test_follows_before_cursor(self, client: SolanaLedgerClient, monkeypatch: Any) -> None:
        monkeypatch.setattr(rpc_client, "SIGNATURE_PAGE_LIMIT", 2)
        pages: List[list] = [
            [_signature("s-9", 9), _signature("s-8", 8)],
            [_signature("s-7", 7), _signature("s-2", 2)],
        ]
        client._rpc.side_effect = pages

        refs = await client.get_transactions_for_address(PROGRAM, 5, 9)

        assert [r.tx_id for r in refs] == ["s-7", "s-8", "s-9"]
        second_options = client._rpc.call_args_list[1].args[1][1]
        assert second_options["before"] == "s-8"
