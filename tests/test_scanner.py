from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from keeper_monitor.errors import ChainReadError, ScanRangeError
from keeper_monitor.models import BlockRecord, TransactionRef
from keeper_monitor.scanner import (
    FALLBACK_STRATEGY,
    WORK_SELECTOR,
    ScanStrategy,
    StalenessScanner,
)

JOB_A = "0x" + "a1" * 20
JOB_B = "0x" + "b2" * 20
JOB_C = "0x" + "c3" * 20
OTHER = "0x" + "99" * 20


def work_tx(to: str, tx_hash: str = "0xfeed") -> TransactionRef:
    return TransactionRef(to=to, data=WORK_SELECTOR + b"\x00" * 64, hash=tx_hash)


def block(number: int, *txs: TransactionRef) -> BlockRecord:
    return BlockRecord(number=number, hash=f"0x{number:064x}", timestamp=1_700_000_000 + number, transactions=tuple(txs))


class FakeChain:
    def __init__(self, blocks: dict[int, BlockRecord] | None = None) -> None:
        self.blocks = blocks or {}
        self.calls: list[int] = []
        self.errors: dict[int, BaseException] = {}
        self.delays: dict[int, float] = {}

    async def get_block_with_transactions(self, block_number: int) -> BlockRecord:
        self.calls.append(block_number)
        if block_number in self.delays:
            await asyncio.sleep(self.delays[block_number])
        if block_number in self.errors:
            raise self.errors[block_number]
        return self.blocks.get(block_number) or block(block_number)


def test_work_selector_matches_signature_hash() -> None:
    assert WORK_SELECTOR.hex() == "1d2ab000"


@pytest.mark.asyncio
async def test_finds_highest_matching_block() -> None:
    chain = FakeChain(
        {
            12: block(12, TransactionRef(to=OTHER, data=WORK_SELECTOR, hash="0x01")),
            11: block(11, work_tx(JOB_A)),
            10: block(10, work_tx(JOB_A)),
        }
    )
    scanner = StalenessScanner(chain)

    assert await scanner.evaluate(JOB_A, 10, 12) == 11
    # Descending scan stops at the first match.
    assert chain.calls == [12, 11]

    status = scanner.cached_status(JOB_A)
    assert status is not None
    assert status.is_stalled is False
    assert status.last_worked_block == 11


@pytest.mark.asyncio
async def test_address_match_is_case_insensitive_and_requires_selector() -> None:
    chain = FakeChain(
        {
            5: block(5, TransactionRef(to=JOB_A.upper().replace("0X", "0x"), data=b"\xde\xad\xbe\xef", hash="0x02")),
            4: block(4, TransactionRef(to=JOB_A.upper().replace("0X", "0x"), data=WORK_SELECTOR, hash="0x03")),
        }
    )
    scanner = StalenessScanner(chain)
    assert await scanner.evaluate(JOB_A, 3, 5) == 4


@pytest.mark.asyncio
async def test_no_match_caches_stalled_verdict() -> None:
    chain = FakeChain()
    scanner = StalenessScanner(chain)

    assert await scanner.evaluate(JOB_A, 10, 14) is None
    assert chain.calls == [14, 13, 12, 11, 10]

    status = scanner.cached_status(JOB_A)
    assert status is not None
    assert status.is_stalled is True
    assert status.last_worked_block is None


@pytest.mark.asyncio
async def test_repeat_evaluation_within_ttl_makes_no_chain_reads() -> None:
    for blocks, expected in (({8: block(8, work_tx(JOB_A))}, 8), ({}, None)):
        chain = FakeChain(blocks)
        scanner = StalenessScanner(chain)
        first = await scanner.evaluate(JOB_A, 5, 9)
        calls_after_first = len(chain.calls)

        second = await scanner.evaluate(JOB_A, 5, 9)
        assert first == second == expected
        assert len(chain.calls) == calls_after_first


@pytest.mark.asyncio
async def test_failed_and_slow_blocks_are_skipped() -> None:
    chain = FakeChain({7: block(7, work_tx(JOB_A))})
    chain.errors[9] = ChainReadError("boom", block_number=9)
    chain.delays[8] = 1.0
    scanner = StalenessScanner(chain, primary=ScanStrategy("test", None, block_timeout_seconds=0.05))

    assert await scanner.evaluate(JOB_A, 6, 9) == 7
    assert chain.calls == [9, 8, 7]


@pytest.mark.asyncio
async def test_strategy_failure_falls_back_to_narrow_window() -> None:
    chain = FakeChain({17: block(17, work_tx(JOB_A))})
    scanner = StalenessScanner(chain)

    first_call = True

    async def flaky_get_block(block_number: int) -> BlockRecord:
        nonlocal first_call
        if first_call:
            first_call = False
            raise RuntimeError("provider exploded")
        chain.calls.append(block_number)
        return chain.blocks.get(block_number) or block(block_number)

    chain.get_block_with_transactions = flaky_get_block  # type: ignore[method-assign]

    assert await scanner.evaluate(JOB_A, 0, 20) == 17
    assert chain.calls == [20, 19, 18, 17]


@pytest.mark.asyncio
async def test_fallback_exhausted_means_stalled_not_error() -> None:
    chain = FakeChain()
    scanner = StalenessScanner(chain)
    attempts = 0

    async def get_block(block_number: int) -> BlockRecord:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError("first strategy dies")
        chain.calls.append(block_number)
        return block(block_number)

    chain.get_block_with_transactions = get_block  # type: ignore[method-assign]

    assert await scanner.evaluate(JOB_A, 0, 100) is None
    assert len(chain.calls) == FALLBACK_STRATEGY.max_blocks
    assert chain.calls == [100, 99, 98, 97, 96]


@pytest.mark.asyncio
async def test_inverted_range_is_rejected() -> None:
    scanner = StalenessScanner(FakeChain())
    with pytest.raises(ScanRangeError):
        await scanner.evaluate(JOB_A, 12, 10)
    with pytest.raises(ScanRangeError):
        await scanner.evaluate_many([JOB_A], 12, 10)
    assert scanner.cached_status(JOB_A) is None


@pytest.mark.asyncio
async def test_evaluate_many_preserves_input_order() -> None:
    chain = FakeChain({30: block(30, work_tx(JOB_B)), 28: block(28, work_tx(JOB_A))})
    # Make the first job the slowest so completion order differs from input order.
    chain.delays[29] = 0.02
    scanner = StalenessScanner(chain, max_concurrency=2)

    addresses = [JOB_A, JOB_B, JOB_C, JOB_A.upper().replace("0X", "0x")]
    statuses = await scanner.evaluate_many(addresses, 26, 30)

    assert [s.address for s in statuses] == addresses
    assert statuses[0].last_worked_block == 28
    assert statuses[1].last_worked_block == 30
    assert statuses[2].is_stalled is True
    assert statuses[3].last_worked_block == 28


@pytest.mark.asyncio
async def test_evaluate_many_empty_batch() -> None:
    assert await StalenessScanner(FakeChain()).evaluate_many([], 1, 2) == []


@pytest.mark.asyncio
async def test_all_jobs_stalled_scenario() -> None:
    scanner = StalenessScanner(FakeChain())
    before = datetime.now(timezone.utc)
    statuses = await scanner.evaluate_many([JOB_A, JOB_B, JOB_C], 40, 49)

    assert len(statuses) == 3
    for status in statuses:
        assert status.is_stalled is True
        assert status.last_worked_block is None
        assert before - timedelta(seconds=1) <= status.last_checked <= datetime.now(timezone.utc)


@pytest.mark.asyncio
async def test_evaluate_failure_becomes_stalled_with_error(monkeypatch: pytest.MonkeyPatch) -> None:
    scanner = StalenessScanner(FakeChain({3: block(3, work_tx(JOB_B))}))
    real_evaluate = scanner.evaluate

    async def evaluate(address: str, from_block: int, to_block: int):
        if address == JOB_A:
            raise RuntimeError("cache corrupted")
        return await real_evaluate(address, from_block, to_block)

    monkeypatch.setattr(scanner, "evaluate", evaluate)
    statuses = await scanner.evaluate_many([JOB_A, JOB_B], 1, 3)

    assert statuses[0].is_stalled is True
    assert statuses[0].last_worked_block is None
    assert statuses[0].error == "RuntimeError: cache corrupted"
    assert statuses[1].last_worked_block == 3
    assert statuses[1].error is None


@pytest.mark.asyncio
async def test_clear_caches_empties_both() -> None:
    scanner = StalenessScanner(FakeChain({2: block(2, work_tx(JOB_A))}))
    await scanner.evaluate_many([JOB_A, JOB_B], 1, 3)
    stats = scanner.cache_stats()
    assert stats["block_cache"]["size"] == 3
    assert stats["job_status_cache"]["size"] == 2

    scanner.clear_caches()
    stats = scanner.cache_stats()
    assert stats["block_cache"]["size"] == 0
    assert stats["job_status_cache"]["size"] == 0


@pytest.mark.asyncio
async def test_window_larger_than_block_cache_is_read_once() -> None:
    chain = FakeChain()
    scanner = StalenessScanner(chain)
    assert scanner.cache_stats()["block_cache"]["max"] == 50

    assert await scanner.evaluate(JOB_A, 0, 59) is None
    assert len(chain.calls) == 60

    assert await scanner.evaluate(JOB_A, 0, 59) is None
    assert len(chain.calls) == 60
    assert scanner.cache_stats()["block_cache"]["max"] == 60


@pytest.mark.asyncio
async def test_concurrent_jobs_share_block_fetches() -> None:
    chain = FakeChain({40: block(40, work_tx(JOB_C))})
    chain.delays = {n: 0.01 for n in range(38, 41)}
    scanner = StalenessScanner(chain, max_concurrency=10)

    statuses = await scanner.evaluate_many([JOB_A, JOB_B, JOB_C], 38, 40)

    assert [s.is_stalled for s in statuses] == [True, True, False]
    assert sorted(chain.calls) == [38, 39, 40]


@pytest.mark.asyncio
async def test_shared_fetch_failure_reaches_every_waiter() -> None:
    chain = FakeChain({5: block(5, work_tx(JOB_A)), 4: block(4, work_tx(JOB_B))})
    chain.delays[6] = 0.01
    chain.errors[6] = ChainReadError("boom", block_number=6)
    scanner = StalenessScanner(chain)

    statuses = await scanner.evaluate_many([JOB_A, JOB_B], 4, 6)

    assert [s.last_worked_block for s in statuses] == [5, 4]
    assert chain.calls.count(6) == 1
