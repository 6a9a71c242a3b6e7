"""Async HTTP clients for the chain: JSON-RPC reads and custody-signer transfers.

Both clients own an ``aiohttp.ClientSession`` created in ``start()`` and
closed in ``stop()``. Tests mock the session; nothing here talks to a real
node or signer during the test run.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import aiohttp

from .errors import ChainRpcError, TransferError
from .models import Asset

if TYPE_CHECKING:
    from .config import ChainConfig, SignerConfig

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def address_topic(address: str) -> str:
    """Left-pad a 20-byte address into a 32-byte log topic."""
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


def topic_address(topic: str) -> str:
    """Extract the 20-byte address from a 32-byte log topic."""
    return "0x" + topic.lower()[-40:]


def hex_to_int(value: str | int | None) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16) if value not in ("0x", "") else 0


def chain_amount(raw: int, chain_decimals: int) -> Decimal:
    """Convert an on-chain integer amount to a Decimal in whole-asset units."""
    return Decimal(raw).scaleb(-chain_decimals)


# ═══════════════════════════════════════════════════════════════
#  JSON-RPC reader
# ═══════════════════════════════════════════════════════════════


class RpcChainClient:
    """Minimal Ethereum JSON-RPC client for deposit discovery."""

    def __init__(self, config: ChainConfig, logger: logging.Logger) -> None:
        self._config = config
        self._logger = logger
        self._session: aiohttp.ClientSession | None = None
        self._ids = itertools.count(1)

    async def start(self) -> None:
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=30.0),
        )

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _call(self, method: str, params: list[Any]) -> Any:
        if not self._session:
            raise ChainRpcError("RPC client not started")
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            async with self._session.post(self._config.rpc_url, json=payload) as resp:
                resp.raise_for_status()
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChainRpcError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise ChainRpcError(f"{method} returned malformed JSON: {e}") from e
        if not isinstance(data, dict):
            raise ChainRpcError(f"{method} returned unexpected payload")
        if "error" in data:
            raise ChainRpcError(f"{method} returned error: {data['error']}")
        return data.get("result")

    async def block_number(self) -> int:
        return hex_to_int(await self._call("eth_blockNumber", []))

    async def get_block(self, number: int) -> dict:
        """Fetch a block with full transaction objects."""
        block = await self._call("eth_getBlockByNumber", [hex(number), True])
        if block is None:
            raise ChainRpcError(f"Block {number} not available")
        return block

    async def get_logs(
        self, from_block: int, to_block: int, address: str, topics: list[str | None],
    ) -> list[dict]:
        return await self._call("eth_getLogs", [{
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "address": address,
            "topics": topics,
        }]) or []


# ═══════════════════════════════════════════════════════════════
#  Custody signer
# ═══════════════════════════════════════════════════════════════


class TransferClient:
    """Requests outbound transfers from the custody signer service.

    ``send`` returns the signer's transfer reference. Any transport error,
    non-2xx reply or reply without a reference raises TransferError; sends
    are never retried here.
    """

    def __init__(self, config: SignerConfig, logger: logging.Logger) -> None:
        self._config = config
        self._logger = logger
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        headers: dict[str, str] = {}
        if self._config.api_token:
            headers["Authorization"] = f"Bearer {self._config.api_token}"
        self._session = aiohttp.ClientSession(
            base_url=self._config.base_url,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self._config.timeout_seconds),
        )

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def send(self, to_address: str, asset: Asset, amount: Decimal) -> str:
        if not self._session:
            raise TransferError("Transfer client not started")
        payload = {"to": to_address, "asset": asset.value, "amount": str(amount)}
        try:
            async with self._session.post("/transfers", json=payload) as resp:
                if resp.status >= 300:
                    body = await resp.text()
                    raise TransferError(f"Signer returned HTTP {resp.status}: {body[:200]}")
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransferError(f"Transfer request failed: {e}") from e
        except ValueError as e:
            raise TransferError(f"Signer reply was not valid JSON: {e}") from e
        reference = data.get("reference") if isinstance(data, dict) else None
        if not reference:
            raise TransferError("Signer reply carried no transfer reference")
        self._logger.info("Transfer %s: %s %s to %s", reference, amount, asset.value, to_address)
        return str(reference)
