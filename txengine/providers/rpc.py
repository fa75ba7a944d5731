"""
JSON-RPC chain provider.

Minimal EVM JSON-RPC client covering what the transaction engine consumes:
pending nonce lookups, receipt polling and raw transaction broadcast.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from txengine.config import settings
from txengine.core.execution.models import Receipt
from txengine.core.recovery.errors import (
    ErrorCategory,
    NetworkError,
    RateLimitError,
    RecoverableError,
    TransactionTimeoutError,
)
from txengine.core.recovery.strategies import RetryConfig, RetryStrategy


logger = logging.getLogger(__name__)


class RpcError(Exception):
    """JSON-RPC error object returned by the node."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data


class JsonRpcProvider:
    """Async JSON-RPC provider backed by httpx."""

    name = "jsonrpc"

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: Optional[float] = None,
        poll_interval_s: Optional[float] = None,
        retry: Optional[RetryStrategy] = None,
    ):
        self.rpc_url = settings.resolve_rpc_url(rpc_url)
        self.poll_interval_s = poll_interval_s or settings.receipt_poll_interval_seconds
        self._client = client or httpx.AsyncClient(timeout=timeout_s or settings.rpc_timeout_seconds)
        self._retry = retry or RetryStrategy(
            RetryConfig(max_attempts=settings.rpc_max_retries, initial_delay_seconds=0.5),
            logger=logger,
        )
        self._request_id = 0

    async def _rpc_call(self, method: str, params: List[Any]) -> Any:
        """Make an RPC call to the node."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._request_id,
        }

        try:
            response = await self._client.post(self.rpc_url, json=payload)
        except httpx.TransportError as e:
            raise NetworkError(f"RPC connection failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitError(f"RPC rate limited ({method})")
        if response.status_code >= 500:
            raise RecoverableError(
                f"RPC server error {response.status_code} ({method})",
                category=ErrorCategory.SYSTEM,
                code=response.status_code,
            )
        response.raise_for_status()
        result = response.json()

        if "error" in result and result["error"]:
            error = result["error"]
            raise RpcError(
                error.get("message", "RPC error"),
                code=error.get("code"),
                data=error.get("data"),
            )

        return result.get("result")

    async def get_transaction_count(self, address: str, block_identifier: str = "pending") -> int:
        """eth_getTransactionCount; retried on transient failures since it is a read."""
        result = await self._retry.execute(
            lambda: self._rpc_call("eth_getTransactionCount", [address, block_identifier]),
            operation_name="eth_getTransactionCount",
        )
        return int(result, 16)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        raw = await self._rpc_call("eth_getTransactionReceipt", [tx_hash])
        if not raw:
            return None
        return Receipt.from_raw(raw)

    async def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._rpc_call("eth_getTransactionByHash", [tx_hash])

    async def send_raw_transaction(self, signed_tx: str, nonce: Optional[int] = None) -> "RpcTransactionHandle":
        """Broadcast a signed transaction and return a handle the manager can track."""
        tx_hash = await self._rpc_call("eth_sendRawTransaction", [signed_tx])
        logger.info(f"Transaction submitted: {tx_hash}")
        return RpcTransactionHandle(hash=tx_hash, nonce=nonce, provider=self)

    async def wait_for_receipt(self, tx_hash: str, max_wait_s: Optional[float] = None) -> Receipt:
        """
        Poll until a receipt exists.

        The processing queue races this against its own timeout and does not
        cancel it, so ``max_wait_s`` bounds how long an abandoned poll lives.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait_s if max_wait_s is not None else None
        while True:
            try:
                receipt = await self.get_transaction_receipt(tx_hash)
            except RecoverableError as e:
                logger.warning(f"Error checking transaction status for {tx_hash}: {e}")
                receipt = None

            if receipt is not None:
                return receipt

            if deadline is not None and loop.time() >= deadline:
                raise TransactionTimeoutError(
                    f"No receipt for {tx_hash} after {max_wait_s}s", timeout_seconds=max_wait_s
                )
            await asyncio.sleep(self.poll_interval_s)

    async def close(self) -> None:
        """Close HTTP client."""
        await self._client.aclose()


@dataclass
class RpcTransactionHandle:
    """Transaction handle backed by receipt polling."""
    hash: str
    provider: JsonRpcProvider
    nonce: Optional[int] = None
    max_wait_s: Optional[float] = field(
        default_factory=lambda: settings.transaction_timeout_ms / 1000
    )

    async def wait(self) -> Receipt:
        return await self.provider.wait_for_receipt(self.hash, max_wait_s=self.max_wait_s)
