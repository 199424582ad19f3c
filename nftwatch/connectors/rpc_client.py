"""Read-only Ethereum JSON-RPC client over aiohttp.

Interface contract:
  - block_number() → int
  - get_logs(address, topics, from_block, to_block) → list[dict]
  - get_transaction_receipt(tx_hash) → dict | None
  - get_block_timestamp(block_number) → int (seconds)
  - eth_call(to, data) → str (hex)

Transport errors are retried a bounded number of times with a short backoff;
JSON-RPC error objects raise RpcError immediately.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any

import aiohttp

from nftwatch.core.errors import NftWatchError
from nftwatch.utils.logger import get_logger

logger = get_logger("rpc_client")

MAX_RETRIES = 3
BASE_DELAY_S = 0.5


class RpcError(NftWatchError):
    """JSON-RPC call failed (error response or exhausted transport retries)."""


class RpcClient:
    """Async JSON-RPC client.

    Args:
        url: HTTP(S) RPC endpoint.
        session: Optional shared aiohttp session.
        max_retries: Attempts per call on transport errors.
    """

    def __init__(
        self,
        url: str,
        session: aiohttp.ClientSession | None = None,
        max_retries: int = MAX_RETRIES,
    ) -> None:
        self._url = url
        self._session = session
        self._owns_session = session is None
        self._max_retries = max_retries
        self._ids = itertools.count(1)
        self.calls = 0

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=30),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if we own it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        logger.info("rpc_client_closed", calls=self.calls)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def call(self, method: str, params: list[Any]) -> Any:
        """Issue one JSON-RPC request and return its `result`.

        Raises:
            RpcError: On a JSON-RPC error object or after transport retries.
        """
        session = await self._get_session()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                self.calls += 1
                async with session.post(self._url, json=payload) as resp:
                    if resp.status == 429 or resp.status >= 500:
                        last_error = RpcError(f"{method}: HTTP {resp.status}")
                        logger.warning(
                            "rpc_http_error", method=method, status=resp.status, attempt=attempt + 1
                        )
                        await asyncio.sleep(BASE_DELAY_S * (2**attempt))
                        continue
                    data = await resp.json(content_type=None)
            except (aiohttp.ClientError, TimeoutError) as e:
                last_error = RpcError(f"{method}: network error: {e}")
                logger.warning(
                    "rpc_network_error", method=method, error=str(e), attempt=attempt + 1
                )
                await asyncio.sleep(BASE_DELAY_S * (2**attempt))
                continue

            if "error" in data and data["error"]:
                raise RpcError(f"{method}: {data['error']}")
            return data.get("result")

        raise last_error or RpcError(f"{method}: request failed after retries")

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    async def block_number(self) -> int:
        return int(await self.call("eth_blockNumber", []), 16)

    async def get_logs(
        self,
        address: str | list[str] | None,
        topics: list[Any],
        from_block: int | str,
        to_block: int | str,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "topics": topics,
            "fromBlock": hex(from_block) if isinstance(from_block, int) else from_block,
            "toBlock": hex(to_block) if isinstance(to_block, int) else to_block,
        }
        if address is not None:
            params["address"] = address
        return await self.call("eth_getLogs", [params]) or []

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_block_timestamp(self, block_number: int) -> int:
        block = await self.call("eth_getBlockByNumber", [hex(block_number), False])
        if not block:
            raise RpcError(f"block {block_number} not found")
        return int(block["timestamp"], 16)

    async def eth_call(self, to: str, data: str) -> str:
        return await self.call("eth_call", [{"to": to, "data": data}, "latest"]) or "0x"
