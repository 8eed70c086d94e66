# services/bridge/ledger.py
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, Optional

import httpx

from services.bridge.interfaces import Instruction, LedgerClient, serialize_instruction
from services.bridge.retry import retry_async
from services.errors import ErrorCode, LedgerError

LOG = logging.getLogger("ledger")
LOG.addHandler(logging.NullHandler())

CONFIRMED_STATUSES = ("confirmed", "finalized")


class RpcError(LedgerError):
    """JSON-RPC call returned an error object."""

    def __init__(self, method: str, rpc_message: str, rpc_code: Optional[int] = None) -> None:
        # 429 / node busy are transient, program errors are not
        transient = rpc_code in (429, -32005) or "rate limit" in rpc_message.lower()
        super().__init__(
            f"{method} failed: {rpc_message}",
            code=ErrorCode.RATE_LIMITED if rpc_code == 429 else ErrorCode.BROADCAST_FAILED,
            recoverable=transient,
            details={"rpc_code": rpc_code},
        )
        self.rpc_message = rpc_message
        self.rpc_code = rpc_code


def rpc_error_mentions(error: BaseException, markers: Iterable[str]) -> bool:
    """True when error or any exception in its __cause__ chain is an RpcError naming one of markers."""
    markers = tuple(m.lower() for m in markers)
    seen: Optional[BaseException] = error
    while seen is not None:
        if isinstance(seen, RpcError) and any(m in seen.rpc_message.lower() for m in markers):
            return True
        seen = seen.__cause__
    return False


class JsonRpcLedgerClient:
    """Submits opaque instructions to a JSON-RPC endpoint and polls for confirmation."""

    def __init__(
        self,
        rpc_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        confirm_timeout: float = 60.0,
        poll_interval: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.rpc_url = rpc_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self.sleep = sleep
        self._ids = itertools.count(1)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _rpc(self, method: str, params: Any = None) -> Any:
        try:
            response = await self._client.post(
                self.rpc_url,
                json={"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise LedgerError(
                f"{method}: HTTP {status}",
                code=ErrorCode.RATE_LIMITED if status == 429 else ErrorCode.BROADCAST_FAILED,
                recoverable=status == 429 or status >= 500,
            ) from e
        except httpx.TransportError as e:
            raise LedgerError(f"{method}: connection error ({type(e).__name__})", recoverable=True) from e

        body = response.json()
        if body.get("error"):
            err = body["error"]
            raise RpcError(method, str(err.get("message", err)), err.get("code"))
        return body.get("result")

    async def submit(self, instruction: Instruction) -> str:
        tx_id = await self._rpc("sendTransaction", [serialize_instruction(instruction), {"encoding": "base64"}])
        if not isinstance(tx_id, str) or not tx_id:
            raise LedgerError("sendTransaction returned no signature", recoverable=False)
        LOG.info(f"submitted {instruction.kind} instruction: {tx_id}")
        return tx_id

    async def confirm(self, tx_id: str) -> bool:
        deadline = time.monotonic() + self.confirm_timeout
        while True:
            result = await self._rpc("getSignatureStatuses", [[tx_id], {"searchTransactionHistory": True}])
            status = ((result or {}).get("value") or [None])[0]
            if status:
                if status.get("err"):
                    LOG.warning(f"transaction {tx_id} failed on-chain")
                    return False
                if status.get("confirmationStatus") in CONFIRMED_STATUSES:
                    return True
            if time.monotonic() >= deadline:
                raise LedgerError(
                    f"transaction {tx_id} not confirmed in {self.confirm_timeout:.0f}s",
                    code=ErrorCode.CONFIRMATION_FAILED,
                    recoverable=True,
                )
            await self.sleep(self.poll_interval)

    async def health(self) -> bool:
        return await self._rpc("getHealth") == "ok"


async def submit_and_confirm(
    ledger: LedgerClient,
    instruction: Instruction,
    max_retries: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str:
    """Submit with bounded retries, then require confirmation."""
    tx_id = await retry_async(
        lambda: ledger.submit(instruction),
        max_retries=max_retries,
        base_delay=base_delay,
        description=f"{instruction.kind} submission",
        sleep=sleep,
    )
    confirmed = await retry_async(
        lambda: ledger.confirm(tx_id),
        max_retries=max_retries,
        base_delay=base_delay,
        description=f"{instruction.kind} confirmation",
        code=ErrorCode.CONFIRMATION_FAILED,
        sleep=sleep,
    )
    if not confirmed:
        raise LedgerError(f"{instruction.kind} transaction failed", code=ErrorCode.CONFIRMATION_FAILED, recoverable=False)
    return tx_id


__all__ = ["RpcError", "rpc_error_mentions", "JsonRpcLedgerClient", "submit_and_confirm"]
