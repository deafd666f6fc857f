"""Thin accessor over an Ethereum JSON-RPC endpoint."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, TypeVar

import structlog
from hexbytes import HexBytes
from web3 import AsyncWeb3, Web3

from .errors import ChainReadError
from .models import BlockRecord, TransactionRef

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def build_web3(rpc_url: str) -> AsyncWeb3:
    """Construct an explicit RPC client; callers inject it where it is needed."""
    return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))


def _field(obj: Any, name: str, default: Any = None) -> Any:
    # web3 returns AttributeDicts; tests and some providers hand back plain dicts.
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _to_hex(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(bytes(value))


def _to_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return bytes(HexBytes(value))


def to_transaction_ref(tx: Any) -> TransactionRef:
    to = _field(tx, "to")
    data = _field(tx, "input")
    if data is None:
        data = _field(tx, "data")
    return TransactionRef(
        to=str(to) if to else None,
        data=_to_bytes(data),
        hash=_to_hex(_field(tx, "hash")),
    )


def to_block_record(block: Any) -> BlockRecord:
    txs = []
    for tx in _field(block, "transactions") or []:
        # Without full_transactions the node only returns hashes; nothing to match on.
        if isinstance(tx, (bytes, str)):
            continue
        txs.append(to_transaction_ref(tx))
    return BlockRecord(
        number=int(_field(block, "number")),
        hash=_to_hex(_field(block, "hash")),
        timestamp=int(_field(block, "timestamp") or 0),
        transactions=tuple(txs),
    )


class ChainReader:
    """Current height, blocks with transactions and bytecode lookups."""

    def __init__(self, w3: AsyncWeb3, *, timeout_seconds: float | None = None):
        self.w3 = w3
        self.timeout_seconds = timeout_seconds

    async def _call(self, awaitable: Awaitable[T]) -> T:
        if self.timeout_seconds is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)

    async def get_block_number(self) -> int:
        try:
            return int(await self._call(self.w3.eth.block_number))
        except Exception as exc:
            raise ChainReadError(f"Failed to read current block number: {type(exc).__name__}: {exc}") from exc

    async def get_block_with_transactions(self, block_number: int) -> BlockRecord:
        try:
            block = await self._call(self.w3.eth.get_block(block_number, full_transactions=True))
        except Exception as exc:
            raise ChainReadError(
                f"Failed to fetch block {block_number}: {type(exc).__name__}: {exc}",
                block_number=block_number,
            ) from exc
        if block is None:
            raise ChainReadError(f"Block {block_number} not found", block_number=block_number)
        return to_block_record(block)

    async def get_code(self, address: str) -> bytes:
        try:
            checksum = Web3.to_checksum_address(address)
            code = await self._call(self.w3.eth.get_code(checksum))
        except Exception as exc:
            raise ChainReadError(
                f"Failed to read code at {address}: {type(exc).__name__}: {exc}",
                address=address,
            ) from exc
        return _to_bytes(code)

    async def is_contract(self, address: str) -> bool:
        code = await self.get_code(address)
        has_code = len(code) > 0
        if not has_code:
            logger.warning("No contract code at address", address=address)
        return has_code
