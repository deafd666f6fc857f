"""Stalled keeper job detection with webhook alerting."""

__version__ = "0.1.0"

from .cache import TTLCache
from .chain import ChainReader, build_web3
from .models import BlockRecord, JobStatus, RunResult, RunSummary, TransactionRef
from .registry import FetchStrategy, RegistryReader
from .scanner import WORK_SELECTOR, StalenessScanner

__all__ = [
    "BlockRecord",
    "ChainReader",
    "FetchStrategy",
    "JobStatus",
    "RegistryReader",
    "RunResult",
    "RunSummary",
    "StalenessScanner",
    "TTLCache",
    "TransactionRef",
    "WORK_SELECTOR",
    "build_web3",
]
