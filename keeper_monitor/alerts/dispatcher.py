"""Webhook delivery with retry, rate-limit handling and a plain-text fallback."""

from __future__ import annotations

import asyncio
import math
import re
from typing import Any, Awaitable, Callable, Sequence

import httpx
import structlog

from .. import __version__
from ..errors import (
    ConfigurationError,
    DeliveryError,
    DeliveryExhaustedError,
    FatalDeliveryError,
    RetryableDeliveryError,
)
from . import messages
from .messages import AlertMessage

logger = structlog.get_logger(__name__)

NON_RETRYABLE_STATUS = frozenset({401, 403, 404})
# Cap on a server-requested 429 wait.
MAX_RETRY_AFTER_SECONDS = 60.0

Sleep = Callable[[float], Awaitable[None]]

_WEBHOOK_TOKEN_RE = re.compile(r"/[^/]+/?$")


def redact_webhook_url(url: str) -> str:
    """Hide the trailing token segment of a webhook URL."""
    return _WEBHOOK_TOKEN_RE.sub("/***", (url or "").rstrip("/"))


def _clamp_delay(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(MAX_RETRY_AFTER_SECONDS, max(0.0, value))


def parse_retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if raw is not None:
        try:
            return _clamp_delay(float(str(raw).strip()))
        except ValueError:
            pass
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict) and data.get("retry_after") is not None:
        try:
            return _clamp_delay(float(data["retry_after"]))
        except (TypeError, ValueError):
            return None
    return None


class AlertDispatcher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        webhook_url: str,
        *,
        username: str = messages.DEFAULT_USERNAME,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        request_timeout_seconds: float = 15.0,
        sleep: Sleep = asyncio.sleep,
    ):
        if not webhook_url:
            raise ConfigurationError("Webhook URL is required", missing=["DISCORD_WEBHOOK_URL"])
        self.client = client
        self.webhook_url = webhook_url
        self.username = username
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay_seconds = float(base_delay_seconds)
        self.request_timeout_seconds = float(request_timeout_seconds)
        self._sleep = sleep

    @property
    def redacted_url(self) -> str:
        return redact_webhook_url(self.webhook_url)

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        return await self.client.post(
            self.webhook_url,
            json=payload,
            headers={"Content-Type": "application/json", "User-Agent": f"keeper-job-monitor/{__version__}"},
            timeout=self.request_timeout_seconds,
        )

    def _status_error(self, response: httpx.Response) -> DeliveryError:
        body = (response.text or "")[:300]
        msg = f"Webhook returned {response.status_code} {response.reason_phrase}: {body}".strip()
        cls = FatalDeliveryError if response.status_code in NON_RETRYABLE_STATUS else RetryableDeliveryError
        return cls(msg, status_code=response.status_code, webhook_url=self.redacted_url)

    async def send_with_retry(self, message: AlertMessage) -> None:
        """
        Deliver ``message`` with up to ``max_attempts`` POSTs.

        429 waits for the server's retry-after; 401/403/404 raise immediately; anything
        else backs off linearly. When every attempt fails, one plain-text fallback is sent.
        """
        last_error: DeliveryError | None = None

        for attempt in range(1, self.max_attempts + 1):
            is_last = attempt == self.max_attempts
            logger.info("Sending alert", kind=message.kind.value, attempt=attempt, max_attempts=self.max_attempts)
            try:
                response = await self._post(message.payload)
            except httpx.HTTPError as exc:
                last_error = RetryableDeliveryError(
                    f"Webhook transport error: {type(exc).__name__}: {exc}", webhook_url=self.redacted_url
                )
                logger.warning("Alert attempt failed", kind=message.kind.value, attempt=attempt, error=str(last_error))
                if not is_last:
                    await self._sleep(self.base_delay_seconds * attempt)
                continue

            if response.is_success:
                logger.info("Alert sent", kind=message.kind.value, status_code=response.status_code)
                return

            error = self._status_error(response)
            if isinstance(error, FatalDeliveryError):
                logger.error("Alert rejected by webhook", kind=message.kind.value, status_code=response.status_code)
                raise error

            last_error = error
            logger.warning(
                "Alert attempt failed",
                kind=message.kind.value,
                attempt=attempt,
                status_code=response.status_code,
            )
            if is_last:
                continue
            if response.status_code == 429:
                retry_after = parse_retry_after(response)
                delay = retry_after if retry_after is not None else self.base_delay_seconds
                logger.warning("Rate limited by webhook", retry_after_seconds=delay)
            else:
                delay = self.base_delay_seconds * attempt
            await self._sleep(delay)

        logger.error("All alert attempts failed; sending fallback", kind=message.kind.value, attempts=self.max_attempts)
        await self._send_fallback(message, last_error)

    async def _send_fallback(self, message: AlertMessage, primary_error: DeliveryError | None) -> None:
        text = messages.render_plain_text(message, failure=str(primary_error) if primary_error else None)
        payload = {"content": text, "username": self.username}
        fallback_error: DeliveryError
        try:
            response = await self._post(payload)
        except httpx.HTTPError as exc:
            fallback_error = RetryableDeliveryError(
                f"Fallback transport error: {type(exc).__name__}: {exc}", webhook_url=self.redacted_url
            )
        else:
            if response.is_success:
                logger.info("Fallback alert sent", kind=message.kind.value)
                return
            fallback_error = self._status_error(response)

        logger.error("Fallback alert failed", kind=message.kind.value, error=str(fallback_error))
        raise DeliveryExhaustedError(
            f"All webhook delivery methods failed for {message.label}. "
            f"Primary: {primary_error}. Fallback: {fallback_error}",
            primary=primary_error,
            fallback=fallback_error,
            webhook_url=self.redacted_url,
        )

    async def send_stalled_jobs_alert(
        self,
        stalled_addresses: Sequence[str],
        *,
        total_jobs: int,
        current_block: int,
        from_block: int,
        to_block: int,
    ) -> None:
        await self.send_with_retry(
            messages.build_stalled_alert(
                stalled_addresses,
                total_jobs=total_jobs,
                current_block=current_block,
                from_block=from_block,
                to_block=to_block,
                username=self.username,
            )
        )

    async def send_healthy_report(self, *, total_jobs: int, current_block: int, from_block: int, to_block: int) -> None:
        await self.send_with_retry(
            messages.build_healthy_report(
                total_jobs=total_jobs,
                current_block=current_block,
                from_block=from_block,
                to_block=to_block,
                username=self.username,
            )
        )

    async def send_system_error_alert(
        self, error: BaseException | str, *, request_id: str | None = None, stack: str | None = None
    ) -> None:
        await self.send_with_retry(
            messages.build_system_error_alert(error, request_id=request_id, stack=stack, username=self.username)
        )

    async def send_config_error_alert(self, missing_vars: Sequence[str]) -> None:
        await self.send_with_retry(messages.build_config_error_alert(missing_vars, username=self.username))

    async def send_rpc_error_alert(self, rpc_url: str, error: str) -> None:
        await self.send_with_retry(messages.build_rpc_error_alert(rpc_url, error, username=self.username))

    async def send_periodic_report(
        self,
        *,
        total_jobs: int,
        active_jobs: int,
        stalled_jobs: int,
        current_block: int,
        from_block: int,
        to_block: int,
        uptime: str,
    ) -> None:
        await self.send_with_retry(
            messages.build_periodic_report(
                total_jobs=total_jobs,
                active_jobs=active_jobs,
                stalled_jobs=stalled_jobs,
                current_block=current_block,
                from_block=from_block,
                to_block=to_block,
                uptime=uptime,
                username=self.username,
            )
        )

    async def send_simple_message(self, content: str) -> None:
        await self.send_with_retry(messages.build_simple_message(content, username=self.username))

    async def test_connection(self) -> bool:
        try:
            await self.send_with_retry(messages.build_connection_test(username=self.username))
        except DeliveryError as exc:
            logger.error("Webhook connection test failed", error=str(exc))
            return False
        return True

    def health_status(self) -> dict[str, Any]:
        return {
            "webhook_url": self.redacted_url,
            "username": self.username,
            "max_attempts": self.max_attempts,
            "base_delay_seconds": self.base_delay_seconds,
        }
