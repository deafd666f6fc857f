"""Error hierarchy for the keeper job monitor."""

from __future__ import annotations


class MonitorError(Exception):
    """Base class for every error raised by the monitor."""


class ChainReadError(MonitorError):
    """An RPC read failed or timed out."""

    def __init__(self, message: str, *, block_number: int | None = None, address: str | None = None):
        super().__init__(message)
        self.block_number = block_number
        self.address = address


class RegistryReadError(MonitorError):
    """The job registry could not be enumerated."""

    def __init__(self, message: str, *, index: int | None = None):
        super().__init__(message)
        self.index = index


class DeliveryError(MonitorError):
    def __init__(self, message: str, *, status_code: int | None = None, webhook_url: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.webhook_url = webhook_url


class FatalDeliveryError(DeliveryError):
    """The webhook rejected the request (401/403/404); retrying will not help."""


class RetryableDeliveryError(DeliveryError):
    """Rate limited, server error or transport failure."""


class DeliveryExhaustedError(DeliveryError):
    """Every attempt and the plain-text fallback failed."""

    def __init__(
        self,
        message: str,
        *,
        primary: BaseException | None = None,
        fallback: BaseException | None = None,
        webhook_url: str | None = None,
    ):
        status_code = getattr(fallback, "status_code", None) or getattr(primary, "status_code", None)
        super().__init__(message, status_code=status_code, webhook_url=webhook_url)
        self.primary = primary
        self.fallback = fallback


class ConfigurationError(MonitorError):
    def __init__(self, message: str, *, missing: list[str] | None = None):
        super().__init__(message)
        self.missing = list(missing or [])


class ScanRangeError(MonitorError, ValueError):
    """A block range that cannot be scanned (inverted or negative)."""

    def __init__(self, from_block: int, to_block: int):
        super().__init__(f"Invalid block range: from_block={from_block} to_block={to_block}")
        self.from_block = from_block
        self.to_block = to_block
