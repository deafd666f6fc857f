"""One monitoring cycle: enumerate jobs, scan for work() calls, alert."""

from __future__ import annotations

import time
import traceback
import uuid

import httpx
import structlog
from web3 import AsyncWeb3

from .alerts import AlertDispatcher
from .cache import TTLCache
from .chain import ChainReader, build_web3
from .config import MonitorConfig, redact_url
from .errors import ChainReadError, ConfigurationError, DeliveryError, RegistryReadError
from .models import RunResult, RunSummary
from .registry import RegistryReader
from .scanner import StalenessScanner

logger = structlog.get_logger(__name__)

# Exception type -> (label, status code) for the run result.
ERROR_TYPES: list[tuple[type[BaseException], str, int]] = [
    (ConfigurationError, "Configuration", 400),
    (ChainReadError, "RPC", 502),
    (RegistryReadError, "Registry", 502),
    (DeliveryError, "Delivery", 503),
]


def classify_error(exc: BaseException) -> dict[str, object]:
    for cls, label, status_code in ERROR_TYPES:
        if isinstance(exc, cls):
            return {"type": label, "message": str(exc), "status_code": status_code}
    return {"type": "Unknown", "message": f"{type(exc).__name__}: {exc}", "status_code": 500}


class JobMonitor:
    """Wires the chain reader, scanner, registry reader and dispatcher; caches persist across runs."""

    def __init__(
        self,
        config: MonitorConfig,
        *,
        w3: AsyncWeb3 | None = None,
        http_client: httpx.AsyncClient | None = None,
        chain: ChainReader | None = None,
        scanner: StalenessScanner | None = None,
        registry: RegistryReader | None = None,
        dispatcher: AlertDispatcher | None = None,
    ):
        self.config = config
        self._owns_http_client = http_client is None and dispatcher is None
        if w3 is None and (chain is None or registry is None):
            w3 = build_web3(config.rpc_url)

        self.chain = chain or ChainReader(w3, timeout_seconds=config.rpc_timeout_seconds)
        self.scanner = scanner or StalenessScanner(
            self.chain,
            block_cache=TTLCache(config.block_cache_size, config.block_cache_ttl_seconds),
            status_cache=TTLCache(config.job_cache_size, config.job_cache_ttl_seconds),
            max_concurrency=config.max_concurrency,
        )
        self.registry = registry or RegistryReader(
            w3,
            config.registry_address,
            batch_size=config.batch_size,
            cache_ttl_seconds=config.cache_ttl_seconds,
            call_timeout_seconds=config.rpc_timeout_seconds,
        )
        if dispatcher is None:
            http_client = http_client or httpx.AsyncClient()
            dispatcher = AlertDispatcher(
                http_client,
                config.webhook_url,
                username=config.alert_username,
                max_attempts=config.alert_max_attempts,
                base_delay_seconds=config.alert_retry_delay_seconds,
            )
        self.http_client = http_client
        self.dispatcher = dispatcher
        self.last_summary: RunSummary | None = None

    async def aclose(self) -> None:
        if self._owns_http_client and self.http_client is not None:
            await self.http_client.aclose()

    async def verify_registry(self) -> None:
        if not await self.chain.is_contract(self.config.registry_address):
            raise ConfigurationError(f"No contract code at registry address {self.config.registry_address}")

    async def check_jobs(self) -> RunSummary:
        current_block = await self.chain.get_block_number()
        from_block = max(0, current_block - self.config.blocks_to_check)
        to_block = current_block
        logger.info("Checking jobs", current_block=current_block, from_block=from_block, to_block=to_block)

        jobs = await self.registry.get_all_jobs()
        statuses = await self.scanner.evaluate_many(jobs, from_block, to_block)
        stalled = [s.address for s in statuses if s.is_stalled]

        summary = RunSummary(
            total_jobs=len(statuses),
            stalled_jobs=len(stalled),
            healthy_jobs=len(statuses) - len(stalled),
            current_block=current_block,
            from_block=from_block,
            to_block=to_block,
            stalled_addresses=tuple(stalled),
        )
        logger.info("Check results", stalled=summary.stalled_jobs, healthy=summary.healthy_jobs)
        return summary

    async def _notify(self, summary: RunSummary) -> None:
        if summary.stalled_jobs > 0:
            await self.dispatcher.send_stalled_jobs_alert(
                summary.stalled_addresses,
                total_jobs=summary.total_jobs,
                current_block=summary.current_block,
                from_block=summary.from_block,
                to_block=summary.to_block,
            )
        elif self.config.alert_on_healthy:
            await self.dispatcher.send_healthy_report(
                total_jobs=summary.total_jobs,
                current_block=summary.current_block,
                from_block=summary.from_block,
                to_block=summary.to_block,
            )

    async def _send_error_alert(self, exc: BaseException, request_id: str) -> None:
        """Best effort: a failure here is logged and never replaces the original error."""
        try:
            if isinstance(exc, ConfigurationError) and exc.missing:
                await self.dispatcher.send_config_error_alert(exc.missing)
            elif isinstance(exc, ChainReadError):
                await self.dispatcher.send_rpc_error_alert(redact_url(self.config.rpc_url), str(exc))
            elif not isinstance(exc, DeliveryError):
                stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
                await self.dispatcher.send_system_error_alert(exc, request_id=request_id, stack=stack)
        except Exception as alert_exc:
            logger.error("Failed to send error alert", request_id=request_id, error=str(alert_exc))

    async def run_once(self, request_id: str | None = None) -> RunResult:
        request_id = request_id or uuid.uuid4().hex
        started = time.monotonic()
        logger.info("Monitor run starting", request_id=request_id)

        try:
            summary = await self.check_jobs()
            self.last_summary = summary
            await self._notify(summary)
        except Exception as exc:
            elapsed_ms = (time.monotonic() - started) * 1000
            logger.error("Monitor run failed", request_id=request_id, error=f"{type(exc).__name__}: {exc}")
            await self._send_error_alert(exc, request_id)
            return RunResult(
                success=False,
                request_id=request_id,
                execution_time_ms=elapsed_ms,
                summary=self.last_summary if isinstance(exc, DeliveryError) else None,
                error=classify_error(exc),
            )

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info("Monitor run completed", request_id=request_id, execution_time_ms=round(elapsed_ms, 1))
        return RunResult(success=True, request_id=request_id, execution_time_ms=elapsed_ms, summary=summary)


def build_job_monitor(config: MonitorConfig) -> JobMonitor:
    return JobMonitor(config, w3=build_web3(config.rpc_url))
