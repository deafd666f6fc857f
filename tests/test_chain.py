from __future__ import annotations

import asyncio

import pytest
from hexbytes import HexBytes

from keeper_monitor.chain import ChainReader, to_block_record
from keeper_monitor.errors import ChainReadError
from keeper_monitor.scanner import WORK_SELECTOR

JOB = "0x" + "ab" * 20


class FakeEth:
    def __init__(self) -> None:
        self.height = 1234
        self.blocks: dict[int, dict] = {}
        self.code: dict[str, bytes] = {}
        self.fail = False
        self.hang = False

    @property
    def block_number(self):
        return self._block_number()

    async def _block_number(self) -> int:
        if self.hang:
            await asyncio.sleep(10)
        if self.fail:
            raise ConnectionError("connection reset")
        return self.height

    async def get_block(self, number: int, full_transactions: bool = False):
        assert full_transactions is True
        if self.fail:
            raise ConnectionError("connection reset")
        return self.blocks[number]

    async def get_code(self, address: str) -> HexBytes:
        return HexBytes(self.code.get(address.lower(), b""))


class FakeWeb3:
    def __init__(self) -> None:
        self.eth = FakeEth()


def raw_block(number: int) -> dict:
    return {
        "number": number,
        "hash": HexBytes("0x" + "11" * 32),
        "timestamp": 1_700_000_000,
        "transactions": [
            {"to": JOB, "input": HexBytes(WORK_SELECTOR + b"\x01" * 32), "hash": HexBytes("0x" + "22" * 32)},
            {"to": None, "input": "0x6080", "hash": "0x" + "33" * 32},
        ],
    }


def test_to_block_record_normalises_web3_shapes() -> None:
    record = to_block_record(raw_block(7))
    assert record.number == 7
    assert record.hash == "0x" + "11" * 32
    assert len(record.transactions) == 2

    work, deploy = record.transactions
    assert work.to == JOB
    assert work.data.startswith(WORK_SELECTOR)
    assert work.hash == "0x" + "22" * 32
    assert deploy.to is None
    assert deploy.data == b"\x60\x80"


def test_to_block_record_skips_hash_only_transactions() -> None:
    raw = raw_block(8)
    raw["transactions"] = [HexBytes("0x" + "44" * 32)]
    assert to_block_record(raw).transactions == ()


@pytest.mark.asyncio
async def test_reads_height_and_blocks() -> None:
    w3 = FakeWeb3()
    w3.eth.blocks[5] = raw_block(5)
    reader = ChainReader(w3)

    assert await reader.get_block_number() == 1234
    record = await reader.get_block_with_transactions(5)
    assert record.number == 5


@pytest.mark.asyncio
async def test_failures_wrapped_as_chain_read_error() -> None:
    w3 = FakeWeb3()
    w3.eth.fail = True
    reader = ChainReader(w3)

    with pytest.raises(ChainReadError):
        await reader.get_block_number()
    with pytest.raises(ChainReadError) as excinfo:
        await reader.get_block_with_transactions(9)
    assert excinfo.value.block_number == 9


@pytest.mark.asyncio
async def test_timeout_wrapped_as_chain_read_error() -> None:
    w3 = FakeWeb3()
    w3.eth.hang = True
    reader = ChainReader(w3, timeout_seconds=0.01)
    with pytest.raises(ChainReadError):
        await reader.get_block_number()


@pytest.mark.asyncio
async def test_is_contract() -> None:
    w3 = FakeWeb3()
    w3.eth.code[JOB] = b"\x60\x80\x60\x40"
    reader = ChainReader(w3)

    assert await reader.is_contract(JOB) is True
    assert await reader.is_contract("0x" + "cd" * 20) is False
