from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TransactionRef:
    to: str | None
    data: bytes
    hash: str


@dataclass(frozen=True)
class BlockRecord:
    number: int
    hash: str
    timestamp: int
    transactions: tuple[TransactionRef, ...] = ()


@dataclass(frozen=True)
class JobStatus:
    address: str
    last_worked_block: int | None
    is_stalled: bool
    last_checked: datetime = field(default_factory=utc_now)
    error: str | None = None

    def __post_init__(self) -> None:
        if self.is_stalled != (self.last_worked_block is None):
            raise ValueError(
                f"Inconsistent job status for {self.address}: "
                f"is_stalled={self.is_stalled} last_worked_block={self.last_worked_block}"
            )
        if self.last_worked_block is not None and self.last_worked_block < 0:
            raise ValueError(f"Negative block number for {self.address}: {self.last_worked_block}")

    @classmethod
    def worked(cls, address: str, block_number: int) -> JobStatus:
        return cls(address=address, last_worked_block=int(block_number), is_stalled=False)

    @classmethod
    def stalled(cls, address: str, *, error: str | None = None) -> JobStatus:
        return cls(address=address, last_worked_block=None, is_stalled=True, error=error)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "address": self.address,
            "lastWorkedBlock": self.last_worked_block,
            "isStalled": self.is_stalled,
            "lastChecked": self.last_checked.isoformat(),
        }
        if self.error:
            out["error"] = self.error
        return out


@dataclass(frozen=True)
class RunSummary:
    total_jobs: int
    stalled_jobs: int
    healthy_jobs: int
    current_block: int
    from_block: int
    to_block: int
    stalled_addresses: tuple[str, ...] = ()

    @property
    def checked_block_range(self) -> str:
        return f"{self.from_block}-{self.to_block}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalJobs": self.total_jobs,
            "stalledJobs": self.stalled_jobs,
            "healthyJobs": self.healthy_jobs,
            "currentBlock": self.current_block,
            "checkedBlockRange": self.checked_block_range,
        }


@dataclass(frozen=True)
class RunResult:
    success: bool
    request_id: str
    execution_time_ms: float
    summary: RunSummary | None = None
    error: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def status_code(self) -> int:
        if self.success:
            return 200
        return int((self.error or {}).get("status_code") or 500)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "success": self.success,
            "requestId": self.request_id,
            "executionTimeMs": round(float(self.execution_time_ms), 1),
            "timestamp": self.timestamp.isoformat(),
        }
        if self.summary is not None:
            out["summary"] = self.summary.to_dict()
        if self.error is not None:
            out["error"] = dict(self.error)
        return out
