"""
Minimal Ethereum JSON-RPC client.

Covers what the engine needs from a chain node and nothing more:
- eth_call against a liquidity pool's slot0() for price quotes
- block number / receipt polling for deposit confirmations
- eth_getLogs for the deposit contract's two event kinds

Every transport or node error surfaces as ChainRPCError, a
TransientExternalError: the caller's event is left unapplied.
"""

import asyncio
import itertools
import logging
from typing import Any, Dict, List, Optional

import httpx

from entitlement_engine.errors import ConfirmationError, TransientExternalError

logger = logging.getLogger(__name__)

# slot0() function selector on concentrated-liquidity pools
SLOT0_SELECTOR = "0x3850c7bd"

# sqrtPriceX96 is uint160; the first 32-byte return word holds it
_WORD_HEX_LEN = 64
_UINT160_MASK = (1 << 160) - 1


class ChainRPCError(TransientExternalError):
    """Error communicating with the chain node."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message, service="chain")
        self.code = code


def decode_sqrt_price_x96(result_hex: str) -> int:
    """
    Extract sqrtPriceX96 from a raw slot0() return value.

    Raises:
        ChainRPCError: If the return data is shorter than one word
    """
    data = result_hex[2:] if result_hex.startswith("0x") else result_hex
    if len(data) < _WORD_HEX_LEN:
        raise ChainRPCError(f"slot0 returned {len(data) // 2} bytes, expected at least 32")
    return int(data[:_WORD_HEX_LEN], 16) & _UINT160_MASK


def hex_to_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    return int(value, 16)


class ChainRPCClient:
    """
    Async JSON-RPC client over httpx.

    Usage:
        async with ChainRPCClient(url) as chain:
            sqrt_price = await chain.read_slot0(pool_address)
    """

    def __init__(
        self,
        rpc_url: str,
        timeout_seconds: float = 20.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the client.

        Args:
            rpc_url: Node HTTP endpoint
            timeout_seconds: Per-request timeout
            client: Pre-built AsyncClient (tests inject a MockTransport)
        """
        if not rpc_url:
            raise ValueError("rpc_url is required")

        self.rpc_url = rpc_url
        self._ids = itertools.count(1)
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Content-Type": "application/json"},
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def call(self, method: str, params: List[Any]) -> Any:
        """
        Execute one JSON-RPC request.

        Returns:
            The "result" member of the response

        Raises:
            ChainRPCError: On transport failure, HTTP error or RPC error
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }

        try:
            response = await self._client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            logger.error("Chain RPC timeout", extra={"method": method, "error": str(e)})
            raise ChainRPCError(f"Request timeout: {e}")
        except httpx.RequestError as e:
            logger.error("Chain RPC request error", extra={"method": method, "error": str(e)})
            raise ChainRPCError(f"Request error: {e}")

        if response.status_code >= 400:
            logger.error("Chain RPC HTTP error", extra={
                "method": method,
                "status_code": response.status_code,
                "response_text": response.text[:500],
            })
            raise ChainRPCError(f"Chain RPC HTTP error: {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            raise ChainRPCError("Chain RPC returned a non-JSON body")

        if body.get("error"):
            error = body["error"]
            logger.error("Chain RPC error response", extra={"method": method, "error": error})
            raise ChainRPCError(
                f"RPC error: {error.get('message', error)}",
                code=error.get("code"),
            )

        return body.get("result")

    async def block_number(self) -> int:
        return hex_to_int(await self.call("eth_blockNumber", []))

    async def eth_call(self, to: str, data: str, block: str = "latest") -> str:
        return await self.call("eth_call", [{"to": to, "data": data}, block])

    async def read_slot0(self, pool_address: str) -> int:
        """Read sqrtPriceX96 from a pool's slot0()."""
        result = await self.eth_call(pool_address, SLOT0_SELECTOR)
        if not result:
            raise ChainRPCError(f"Empty slot0 result from pool {pool_address}")
        return decode_sqrt_price_x96(result)

    async def get_transaction_receipt(self, transaction_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [transaction_hash])

    async def get_logs(
        self,
        address: str,
        topics: List[Any],
        from_block: int,
        to_block: int,
    ) -> List[Dict[str, Any]]:
        return await self.call("eth_getLogs", [{
            "address": address,
            "topics": topics,
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }]) or []

    async def wait_for_confirmations(
        self,
        transaction_hash: str,
        confirmations: int,
        poll_interval_seconds: float = 15.0,
        timeout_seconds: float = 1800.0,
    ) -> Dict[str, Any]:
        """
        Poll until a transaction is buried under enough blocks.

        Args:
            transaction_hash: Deposit transaction
            confirmations: Required depth, counting the inclusion block
            poll_interval_seconds: Delay between polls
            timeout_seconds: Give up after this long

        Returns:
            The transaction receipt

        Raises:
            ConfirmationError: If the transaction reverted or did not reach
                the depth before the timeout
            ChainRPCError: On node errors
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds

        while True:
            receipt = await self.get_transaction_receipt(transaction_hash)
            if receipt is not None:
                if hex_to_int(receipt.get("status", "0x1")) == 0:
                    raise ConfirmationError("Transaction reverted", transaction_hash)

                mined_in = hex_to_int(receipt.get("blockNumber"))
                depth = await self.block_number() - mined_in + 1
                if depth >= confirmations:
                    logger.info("Transaction confirmed", extra={
                        "transaction_hash": transaction_hash,
                        "confirmations": depth,
                    })
                    return receipt

            if loop.time() >= deadline:
                raise ConfirmationError(
                    f"Transaction not confirmed to depth {confirmations} within {timeout_seconds}s",
                    transaction_hash,
                )
            await asyncio.sleep(poll_interval_seconds)
