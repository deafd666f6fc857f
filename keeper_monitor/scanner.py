"""Staleness detection: find the most recent work() call to a job within a block window."""

from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass
from typing import Protocol, Sequence

import structlog
from web3 import Web3

from .cache import TTLCache
from .errors import ChainReadError, ScanRangeError
from .models import BlockRecord, JobStatus

logger = structlog.get_logger(__name__)

WORK_SIGNATURE = "work(bytes32,bytes)"
WORK_SELECTOR: bytes = bytes(Web3.keccak(text=WORK_SIGNATURE)[:4])

DEFAULT_BLOCK_CACHE_SIZE = 50
DEFAULT_BLOCK_CACHE_TTL_SECONDS = 5 * 60
DEFAULT_JOB_CACHE_SIZE = 1000
DEFAULT_JOB_CACHE_TTL_SECONDS = 2 * 60


class BlockSource(Protocol):
    async def get_block_with_transactions(self, block_number: int) -> BlockRecord: ...


@dataclass(frozen=True)
class ScanStrategy:
    name: str
    # None scans the whole requested range.
    max_blocks: int | None
    block_timeout_seconds: float

    def block_numbers(self, from_block: int, to_block: int) -> range:
        lowest = from_block
        if self.max_blocks is not None:
            lowest = max(from_block, to_block - self.max_blocks + 1)
        return range(to_block, lowest - 1, -1)


PRIMARY_STRATEGY = ScanStrategy(name="recent-window", max_blocks=None, block_timeout_seconds=8.0)
FALLBACK_STRATEGY = ScanStrategy(name="narrow-window", max_blocks=5, block_timeout_seconds=10.0)


def validate_range(from_block: int, to_block: int) -> None:
    if from_block < 0 or to_block < 0 or from_block > to_block:
        raise ScanRangeError(from_block, to_block)


def is_work_call(block: BlockRecord, address: str, selector: bytes = WORK_SELECTOR) -> str | None:
    """Return the hash of the first transaction in ``block`` calling ``selector`` on ``address``."""
    target = address.lower()
    for tx in block.transactions:
        if tx.to is not None and tx.to.lower() == target and tx.data.startswith(selector):
            return tx.hash
    return None


def stalled_on_error(address: str, exc: BaseException) -> JobStatus:
    """
    Fail-safe policy: a job whose evaluation failed is reported as stalled.

    A false positive alert is preferred over a missed stall.
    """
    return JobStatus.stalled(address, error=f"{type(exc).__name__}: {exc}")


class StalenessScanner:
    def __init__(
        self,
        chain: BlockSource,
        *,
        block_cache: TTLCache[int, BlockRecord] | None = None,
        status_cache: TTLCache[str, JobStatus] | None = None,
        selector: bytes = WORK_SELECTOR,
        primary: ScanStrategy = PRIMARY_STRATEGY,
        fallback: ScanStrategy = FALLBACK_STRATEGY,
        max_concurrency: int = 10,
    ):
        self.chain = chain
        if block_cache is None:
            block_cache = TTLCache(DEFAULT_BLOCK_CACHE_SIZE, DEFAULT_BLOCK_CACHE_TTL_SECONDS)
        if status_cache is None:
            status_cache = TTLCache(DEFAULT_JOB_CACHE_SIZE, DEFAULT_JOB_CACHE_TTL_SECONDS)
        self._block_cache = block_cache
        self._status_cache = status_cache
        self.selector = bytes(selector)
        self.primary = primary
        self.fallback = fallback
        self.max_concurrency = max(1, int(max_concurrency))
        # Fetches shared by every job that misses the cache on the same block.
        self._in_flight: dict[int, asyncio.Task[BlockRecord]] = {}
        self._waiters: dict[int, int] = {}

    def _fit_window(self, window_size: int) -> None:
        # A window larger than the cache would evict blocks the same scan still needs.
        if window_size > self._block_cache.max_size:
            logger.info(
                "Growing block cache to fit scan window",
                old_size=self._block_cache.max_size,
                new_size=window_size,
            )
            self._block_cache.resize(window_size)

    async def _fetch_block(self, block_number: int) -> BlockRecord:
        block = await self.chain.get_block_with_transactions(block_number)
        self._block_cache.set(block_number, block)
        return block

    def _fetch_done(self, block_number: int, task: asyncio.Task[BlockRecord]) -> None:
        if self._in_flight.get(block_number) is task:
            del self._in_flight[block_number]
        if not task.cancelled():
            # Waiters re-raise the error; this only marks it retrieved.
            task.exception()

    async def _get_block(self, block_number: int, timeout_seconds: float) -> BlockRecord:
        cached = self._block_cache.get(block_number)
        if cached is not None:
            return cached

        task = self._in_flight.get(block_number)
        if task is None:
            task = asyncio.ensure_future(self._fetch_block(block_number))
            self._in_flight[block_number] = task
            task.add_done_callback(functools.partial(self._fetch_done, block_number))

        self._waiters[block_number] = self._waiters.get(block_number, 0) + 1
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout_seconds)
        finally:
            self._waiters[block_number] -= 1
            if self._waiters[block_number] == 0:
                del self._waiters[block_number]
                if not task.done():
                    task.cancel()

    async def _scan(self, strategy: ScanStrategy, address: str, from_block: int, to_block: int) -> int | None:
        blocks = strategy.block_numbers(from_block, to_block)
        self._fit_window(len(blocks))
        for block_number in blocks:
            try:
                block = await self._get_block(block_number, strategy.block_timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    "Block fetch timed out; skipping",
                    block=block_number,
                    strategy=strategy.name,
                    timeout_seconds=strategy.block_timeout_seconds,
                )
                continue
            except ChainReadError as exc:
                logger.warning("Block fetch failed; skipping", block=block_number, strategy=strategy.name, error=str(exc))
                continue

            tx_hash = is_work_call(block, address, self.selector)
            if tx_hash is not None:
                logger.debug("Found work() call", address=address, block=block_number, tx=tx_hash)
                return block_number

        logger.debug(
            "No work() call in window",
            address=address,
            strategy=strategy.name,
            from_block=blocks[-1] if blocks else from_block,
            to_block=to_block,
        )
        return None

    async def evaluate(self, address: str, from_block: int, to_block: int) -> int | None:
        """
        Return the highest block in ``[from_block, to_block]`` with a work() call to ``address``.

        A fresh non-stalled cached verdict is returned without any chain reads. Otherwise the
        primary strategy scans descending; if it raises outright the narrower fallback runs.
        """
        validate_range(from_block, to_block)

        key = address.lower()
        cached = self._status_cache.get(key)
        if cached is not None and not cached.is_stalled:
            return cached.last_worked_block

        try:
            last_worked = await self._scan(self.primary, address, from_block, to_block)
        except Exception as exc:
            logger.warning(
                "Scan strategy failed; falling back",
                address=address,
                strategy=self.primary.name,
                fallback=self.fallback.name,
                error=f"{type(exc).__name__}: {exc}",
            )
            last_worked = await self._scan(self.fallback, address, from_block, to_block)

        if last_worked is None:
            status = JobStatus.stalled(address)
        else:
            status = JobStatus.worked(address, last_worked)
        self._status_cache.set(key, status)
        return last_worked

    async def evaluate_many(self, addresses: Sequence[str], from_block: int, to_block: int) -> list[JobStatus]:
        """Evaluate every address concurrently; ``result[i].address == addresses[i]``."""
        validate_range(from_block, to_block)
        if not addresses:
            return []

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _safe_evaluate(address: str) -> JobStatus:
            async with semaphore:
                try:
                    last_worked = await self.evaluate(address, from_block, to_block)
                except Exception as exc:
                    logger.error("Job evaluation failed; treating as stalled", address=address, error=str(exc))
                    return stalled_on_error(address, exc)
            if last_worked is None:
                return JobStatus.stalled(address)
            return JobStatus.worked(address, last_worked)

        statuses = await asyncio.gather(*(_safe_evaluate(a) for a in addresses))
        stalled = sum(1 for s in statuses if s.is_stalled)
        logger.info(
            "Evaluated jobs",
            total=len(statuses),
            stalled=stalled,
            from_block=from_block,
            to_block=to_block,
        )
        return list(statuses)

    def cached_status(self, address: str) -> JobStatus | None:
        return self._status_cache.get(address.lower())

    def clear_caches(self) -> None:
        self._block_cache.clear()
        self._status_cache.clear()
        logger.info("Caches cleared")

    def cache_stats(self) -> dict[str, dict[str, int]]:
        return {
            "block_cache": self._block_cache.stats(),
            "job_status_cache": self._status_cache.stats(),
        }
