"""
Solana JSON-RPC ledger client.

HTTP requests go through a shared aiohttp session; log subscriptions
use one websocket connection each (logsSubscribe / logsNotification).
"""

from __future__ import annotations
import asyncio
import base64
import itertools
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ....domain.errors import LedgerRpcError, SubscriptionError
from ....domain.interfaces import (
    AccountState,
    Commitment,
    LedgerClient,
    LogBatch,
    LogCallback,
    SignatureStatus,
    SubscriptionHandle,
    TransactionLogs,
    TransactionRef,
)
from ....utils.logging_setup import get_logger


logger = get_logger(__name__)

SIGNATURE_PAGE_LIMIT = 1000


@dataclass
class _Subscription:
    handle: SubscriptionHandle
    ws: Any
    reader: asyncio.Task


class SolanaLedgerClient(LedgerClient):
    """
    LedgerClient over a Solana RPC node.

    Usage:
        client = SolanaLedgerClient("http://localhost:8899", "ws://localhost:8900")
        slot = await client.get_current_position(Commitment.FINALIZED)
        await client.close()
    """

    def __init__(
        self,
        rpc_url: str,
        ws_url: str,
        request_timeout: float = 30.0,
    ):
        self._rpc_url = rpc_url
        self._ws_url = ws_url
        self._timeout = request_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)
        self._subscriptions: Dict[int, _Subscription] = {}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
        return self._session

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        """
        Call a JSON-RPC method and return its result.

        Raises:
            LedgerRpcError: On transport failure, non-200 status or an RPC error member.
        """
        session = await self._get_session()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            async with session.post(self._rpc_url, json=payload) as response:
                if response.status != 200:
                    text = await response.text()
                    raise LedgerRpcError(
                        f"{method} returned HTTP {response.status}: {text[:200]}",
                        code=response.status,
                        method=method,
                    )
                body = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise LedgerRpcError(f"{method} failed: {e}", method=method) from e
        except asyncio.TimeoutError as e:
            raise LedgerRpcError(f"{method} timed out after {self._timeout}s", method=method) from e

        error = body.get("error")
        if error:
            raise LedgerRpcError(
                f"{method}: {error.get('message', error)}",
                code=error.get("code"),
                method=method,
            )
        return body.get("result")

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def subscribe_logs(
        self,
        program_address: str,
        commitment: Commitment,
        callback: LogCallback,
    ) -> SubscriptionHandle:
        try:
            ws = await websockets.connect(self._ws_url, ping_interval=20, max_size=None)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise SubscriptionError(f"Cannot connect to {self._ws_url}: {e}", method="logsSubscribe") from e

        request_id = next(self._ids)
        request = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "logsSubscribe",
            "params": [{"mentions": [program_address]}, {"commitment": commitment.value}],
        }
        try:
            await ws.send(json.dumps(request))
            subscription_id = await asyncio.wait_for(
                self._await_confirmation(ws, request_id), timeout=self._timeout
            )
        except Exception as e:
            await ws.close()
            if isinstance(e, SubscriptionError):
                raise
            raise SubscriptionError(f"logsSubscribe failed: {e}", method="logsSubscribe") from e

        handle = SubscriptionHandle(subscription_id, program_address, commitment)
        reader = asyncio.create_task(
            self._read_notifications(ws, handle, callback),
            name=f"logs-subscription-{subscription_id}",
        )
        self._subscriptions[subscription_id] = _Subscription(handle, ws, reader)
        return handle

    async def _await_confirmation(self, ws: Any, request_id: int) -> int:
        while True:
            message = json.loads(await ws.recv())
            if message.get("id") != request_id:
                continue
            if "error" in message:
                error = message["error"]
                raise SubscriptionError(
                    f"logsSubscribe rejected: {error.get('message', error)}",
                    code=error.get("code"),
                    method="logsSubscribe",
                )
            return int(message["result"])

    async def _read_notifications(
        self,
        ws: Any,
        handle: SubscriptionHandle,
        callback: LogCallback,
    ) -> None:
        try:
            async for raw in ws:
                message = json.loads(raw)
                if message.get("method") != "logsNotification":
                    continue
                params = message.get("params", {})
                if params.get("subscription") != handle.subscription_id:
                    continue
                result = params["result"]
                value = result["value"]
                err = value.get("err")
                # One batch at a time; the next frame is read after the callback returns.
                await callback(
                    LogBatch(
                        tx_id=value["signature"],
                        position=int(result["context"]["slot"]),
                        logs=tuple(value.get("logs") or ()),
                        failed=err is not None,
                        error=err,
                        commitment=handle.commitment,
                    )
                )
        except ConnectionClosed as e:
            logger.warning(f"Subscription {handle.subscription_id} connection closed: {e}")
        except (ValueError, KeyError) as e:
            logger.error(f"Malformed notification on subscription {handle.subscription_id}: {e}")
        finally:
            logger.info(f"Subscription {handle.subscription_id} reader exited")

    async def unsubscribe_logs(self, handle: SubscriptionHandle) -> None:
        sub = self._subscriptions.pop(handle.subscription_id, None)
        if sub is None:
            return
        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "logsUnsubscribe",
            "params": [handle.subscription_id],
        }
        try:
            await sub.ws.send(json.dumps(request))
        except ConnectionClosed:
            pass
        await sub.ws.close()

        # Let an in-flight callback finish before giving up on the reader.
        done, _ = await asyncio.wait({sub.reader}, timeout=self._timeout)
        if not done:
            sub.reader.cancel()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_current_position(self, commitment: Commitment) -> int:
        return int(await self._rpc("getSlot", [{"commitment": commitment.value}]))

    async def get_signature_status(self, tx_id: str) -> Optional[SignatureStatus]:
        result = await self._rpc(
            "getSignatureStatuses",
            [[tx_id], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value") or [None]
        status = values[0]
        if status is None:
            return None
        return SignatureStatus(
            tx_id=tx_id,
            confirmation=Commitment.parse(status.get("confirmationStatus")),
            position=status.get("slot"),
            error=status.get("err"),
        )

    async def get_transactions_for_address(
        self,
        program_address: str,
        from_position: int,
        to_position: int,
    ) -> List[TransactionRef]:
        """Walk signatures newest-first with a `before` cursor, keeping those in range."""
        collected: List[TransactionRef] = []
        before: Optional[str] = None
        while True:
            options: Dict[str, Any] = {"limit": SIGNATURE_PAGE_LIMIT, "commitment": "finalized"}
            if before:
                options["before"] = before
            page = await self._rpc("getSignaturesForAddress", [program_address, options]) or []

            for entry in page:
                slot = int(entry["slot"])
                if slot > to_position:
                    continue
                if slot < from_position:
                    return list(reversed(collected))
                collected.append(
                    TransactionRef(
                        tx_id=entry["signature"],
                        position=slot,
                        failed=entry.get("err") is not None,
                    )
                )

            if len(page) < SIGNATURE_PAGE_LIMIT:
                return list(reversed(collected))
            before = page[-1]["signature"]

    async def get_transaction_logs(self, tx_id: str) -> Optional[TransactionLogs]:
        result = await self._rpc(
            "getTransaction",
            [
                tx_id,
                {
                    "encoding": "json",
                    "commitment": "finalized",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if result is None:
            return None
        meta = result.get("meta") or {}
        return TransactionLogs(
            tx_id=tx_id,
            position=int(result["slot"]),
            logs=tuple(meta.get("logMessages") or ()),
            error=meta.get("err"),
        )

    async def get_account_state(self, address: str) -> Optional[AccountState]:
        result = await self._rpc(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": "confirmed"}],
        )
        value = (result or {}).get("value")
        if value is None:
            return None
        data_field = value.get("data") or ["", "base64"]
        return AccountState(
            address=address,
            owner=value.get("owner", ""),
            data=base64.b64decode(data_field[0]),
            lamports=int(value.get("lamports", 0)),
            position=(result.get("context") or {}).get("slot"),
        )

    async def close(self) -> None:
        for sub in list(self._subscriptions.values()):
            await self.unsubscribe_logs(sub.handle)
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
