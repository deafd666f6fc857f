"""Configuration management for the keeper job monitor."""

import os
import re
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

DEFAULT_CONFIG_PATH = "config/monitor.yaml"

# Environment variable -> config field. Required settings come first.
REQUIRED_ENV = {
    "ETHEREUM_RPC_URL": "rpc_url",
    "SEQUENCER_ADDRESS": "registry_address",
    "DISCORD_WEBHOOK_URL": "webhook_url",
}
OPTIONAL_ENV = {
    "BLOCKS_TO_CHECK": "blocks_to_check",
    "BATCH_SIZE": "batch_size",
    "CACHE_TTL_MINUTES": "cache_ttl_minutes",
    "MAX_CONCURRENCY": "max_concurrency",
    "RPC_TIMEOUT_SECONDS": "rpc_timeout_seconds",
    "INTERVAL_SECONDS": "interval_seconds",
    "REPORT_INTERVAL_MINUTES": "report_interval_minutes",
    "ALERT_ON_HEALTHY": "alert_on_healthy",
    "ALERT_USERNAME": "alert_username",
    "LOG_LEVEL": "log_level",
}
# Accepted alongside SEQUENCER_ADDRESS.
ENV_ALIASES = {"REGISTRY_ADDRESS": "SEQUENCER_ADDRESS"}


def redact_url(url: str) -> str:
    """Strip userinfo and path tokens (API keys) from an URL for logging."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "<invalid url>"
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    path = "/***" if parts.path.strip("/") else ""
    return urlunsplit((parts.scheme, host, path, "", ""))


class MonitorConfig(BaseModel):
    """Main configuration for the keeper job monitor."""

    # Endpoints
    rpc_url: str = Field(description="Ethereum JSON-RPC endpoint")
    registry_address: str = Field(description="Job registry (sequencer) contract address")
    webhook_url: str = Field(description="Discord-compatible webhook URL for alerts")

    # Scanning
    blocks_to_check: int = Field(default=10, ge=1, description="Blocks scanned back from the chain head per run")
    batch_size: int = Field(default=10, ge=1, description="Registry lookups issued per batch")
    max_concurrency: int = Field(default=10, ge=1, description="Jobs evaluated concurrently")
    rpc_timeout_seconds: float = Field(default=20.0, gt=0, description="Timeout for root-level RPC reads")

    # Caches
    cache_ttl_minutes: int = Field(default=5, ge=1, description="TTL of the cached registry job list")
    block_cache_size: int = Field(default=50, ge=1, description="Blocks kept in memory")
    block_cache_ttl_seconds: int = Field(default=300, ge=1, description="Block cache TTL")
    job_cache_size: int = Field(default=1000, ge=1, description="Job verdicts kept in memory")
    job_cache_ttl_seconds: int = Field(default=120, ge=1, description="Job status cache TTL")

    # Scheduling
    interval_seconds: int = Field(default=300, ge=1, description="Seconds between check cycles")
    report_interval_minutes: int = Field(default=0, ge=0, description="Periodic report interval (0 disables)")

    # Alerting
    alert_on_healthy: bool = Field(default=True, description="Send a report when every job is healthy")
    alert_username: str = Field(default="Keeper Job Monitor", description="Webhook display name")
    alert_max_attempts: int = Field(default=3, ge=1, description="Delivery attempts before the fallback")
    alert_retry_delay_seconds: float = Field(default=1.0, ge=0, description="Linear backoff base delay")

    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("registry_address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        value = str(value).strip()
        if not ADDRESS_RE.match(value):
            raise ValueError("must be a valid Ethereum address (0x followed by 40 hex digits)")
        return value

    @field_validator("rpc_url", "webhook_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = str(value).strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        return str(value or "INFO").strip().upper()

    @property
    def cache_ttl_seconds(self) -> int:
        return self.cache_ttl_minutes * 60

    def redacted(self) -> Dict[str, Any]:
        data = self.model_dump()
        data["rpc_url"] = redact_url(self.rpc_url)
        data["webhook_url"] = redact_url(self.webhook_url)
        return data


def _read_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def missing_required(config_data: Mapping[str, Any]) -> List[str]:
    return [env for env, key in REQUIRED_ENV.items() if not str(config_data.get(key) or "").strip()]


def load_config(config_path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> MonitorConfig:
    """Load configuration from an optional YAML file, overridden by environment variables."""
    if env is None:
        env = os.environ
    if config_path is None:
        config_path = env.get("KEEPER_MONITOR_CONFIG", DEFAULT_CONFIG_PATH)

    config_data = _read_yaml(config_path)

    for alias, canonical in ENV_ALIASES.items():
        if env.get(alias) and not env.get(canonical):
            config_data[REQUIRED_ENV[canonical]] = env[alias]

    for name, key in {**REQUIRED_ENV, **OPTIONAL_ENV}.items():
        value = env.get(name)
        if value is None or not str(value).strip():
            continue
        config_data[key] = str(value).strip()

    missing = missing_required(config_data)
    if missing:
        raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}", missing=missing)

    try:
        return MonitorConfig(**config_data)
    except ValidationError as exc:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors())
        raise ConfigurationError(f"Invalid configuration: {problems}") from exc
