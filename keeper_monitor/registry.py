"""Enumerate monitored job addresses from the on-chain registry (sequencer) contract."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Iterable, TypeVar

import structlog
from web3 import AsyncWeb3, Web3

from .cache import TTLCache
from .errors import RegistryReadError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

REGISTRY_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "numJobs",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "index", "type": "uint256"}],
        "name": "jobAt",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ALL_JOBS_KEY = "all-jobs"


class FetchStrategy(str, Enum):
    # Sequential batches; indices within a batch are fetched concurrently.
    BATCHED = "batched"
    # Every index at once.
    PARALLEL = "parallel"


class RegistryReader:
    def __init__(
        self,
        w3: AsyncWeb3,
        registry_address: str,
        *,
        batch_size: int = 20,
        cache_ttl_seconds: float = 10 * 60,
        call_timeout_seconds: float | None = 15.0,
        strategy: FetchStrategy = FetchStrategy.BATCHED,
    ):
        self.registry_address = Web3.to_checksum_address(registry_address)
        self.contract = w3.eth.contract(address=self.registry_address, abi=REGISTRY_ABI)
        self.batch_size = max(1, int(batch_size))
        self.call_timeout_seconds = call_timeout_seconds
        self.strategy = FetchStrategy(strategy)
        self._jobs_cache: TTLCache[str, list[str]] = TTLCache(10, cache_ttl_seconds)

    async def _call(self, awaitable: Awaitable[T]) -> T:
        if self.call_timeout_seconds is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self.call_timeout_seconds)

    async def count(self) -> int:
        try:
            return int(await self._call(self.contract.functions.numJobs().call()))
        except Exception as exc:
            raise RegistryReadError(f"Failed to read numJobs(): {type(exc).__name__}: {exc}") from exc

    async def job_at(self, index: int) -> str:
        try:
            return str(await self._call(self.contract.functions.jobAt(int(index)).call()))
        except Exception as exc:
            raise RegistryReadError(f"Failed to read jobAt({index}): {type(exc).__name__}: {exc}", index=index) from exc

    async def _fetch_indices(self, indices: Iterable[int]) -> list[tuple[int, str | None]]:
        indices = list(indices)
        results = await asyncio.gather(*(self.job_at(i) for i in indices), return_exceptions=True)
        out: list[tuple[int, str | None]] = []
        for index, result in zip(indices, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Dropping registry index after failed lookup", index=index, error=str(result))
                out.append((index, None))
            else:
                out.append((index, result))
        return out

    async def get_all_jobs(self, strategy: FetchStrategy | None = None) -> list[str]:
        """
        Return every job address in ascending index order.

        Failed index lookups are dropped (and logged); only a failed ``numJobs()`` fails the call.
        Complete lists are cached for the configured TTL.
        """
        cached = self._jobs_cache.get(ALL_JOBS_KEY)
        if cached is not None:
            logger.debug("Using cached jobs list", jobs=len(cached))
            return list(cached)

        strategy = FetchStrategy(strategy or self.strategy)
        total = await self.count()
        logger.info("Fetching registry jobs", total=total, strategy=strategy.value, batch_size=self.batch_size)

        fetched: list[tuple[int, str | None]] = []
        if strategy is FetchStrategy.PARALLEL:
            fetched = await self._fetch_indices(range(total))
        else:
            for start in range(0, total, self.batch_size):
                end = min(start + self.batch_size, total)
                fetched.extend(await self._fetch_indices(range(start, end)))

        jobs = [address for _index, address in sorted(fetched) if address is not None]
        if len(jobs) == total:
            self._jobs_cache.set(ALL_JOBS_KEY, jobs)
        else:
            logger.warning("Registry enumeration incomplete; not caching", fetched=len(jobs), total=total)
        logger.info("Fetched registry jobs", fetched=len(jobs), total=total)
        return list(jobs)

    def clear_cache(self) -> None:
        self._jobs_cache.clear()
