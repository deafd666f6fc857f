"""Alert formatting and webhook delivery."""

from .dispatcher import AlertDispatcher, redact_webhook_url
from .messages import AlertKind, AlertMessage

__all__ = ["AlertDispatcher", "AlertKind", "AlertMessage", "redact_webhook_url"]
