"""Webhook payload builders for every alert kind."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

from ..models import utc_now

DEFAULT_USERNAME = "Keeper Job Monitor"

MAX_VISIBLE_ADDRESSES = 10
MAX_ERROR_LEN = 1000
MAX_CONTENT_LEN = 2000
TRUNCATED_SUFFIX = "\n...truncated..."

COLOR_RED = 0xFF0000
COLOR_GREEN = 0x00FF00
COLOR_YELLOW = 0xFFFF00
COLOR_ORANGE_RED = 0xFF4500
COLOR_ORANGE = 0xFFA500
COLOR_RED_ORANGE = 0xFF6B35
COLOR_SKY_BLUE = 0x00BFFF


class AlertKind(str, Enum):
    STALLED = "stalled"
    HEALTHY = "healthy"
    SYSTEM_ERROR = "system-error"
    CONFIG_ERROR = "config-error"
    RPC_ERROR = "rpc-error"
    PERIODIC_REPORT = "periodic-report"
    SIMPLE = "simple"
    CONNECTION_TEST = "connection-test"


@dataclass(frozen=True)
class AlertMessage:
    kind: AlertKind
    payload: dict[str, Any]

    @property
    def label(self) -> str:
        return self.kind.value.replace("-", " ")


def _now_display() -> str:
    return utc_now().strftime("%Y-%m-%d %H:%M:%S UTC")


def _field(name: str, value: str, inline: bool = False) -> dict[str, Any]:
    return {"name": name, "value": value, "inline": inline}


def _embed(title: str, description: str, color: int, fields: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "title": title,
        "description": description,
        "color": int(color),
        "timestamp": utc_now().isoformat(),
        "fields": fields,
    }


def _message(kind: AlertKind, embed: dict[str, Any], username: str) -> AlertMessage:
    return AlertMessage(kind=kind, payload={"username": username, "embeds": [embed]})


def percentage(part: int, whole: int) -> str:
    if whole <= 0:
        return "0.0"
    return f"{(part / whole) * 100:.1f}"


def truncate(text: str, limit: int = MAX_ERROR_LEN) -> str:
    s = str(text or "")
    return s if len(s) <= limit else s[:limit]


def format_job_addresses(addresses: Sequence[str], *, max_visible: int = MAX_VISIBLE_ADDRESSES) -> str:
    if not addresses:
        return "None"
    visible = "\n".join(f"`{i + 1}. {address}`" for i, address in enumerate(addresses[:max_visible]))
    hidden = len(addresses) - max_visible
    if hidden > 0:
        return visible + f"\n`... and {hidden} more`"
    return visible


def periodic_color(stalled_jobs: int) -> int:
    if stalled_jobs == 0:
        return COLOR_GREEN
    if stalled_jobs <= 3:
        return COLOR_YELLOW
    return COLOR_RED


def build_stalled_alert(
    stalled_addresses: Sequence[str],
    *,
    total_jobs: int,
    current_block: int,
    from_block: int,
    to_block: int,
    username: str = DEFAULT_USERNAME,
) -> AlertMessage:
    stalled = len(stalled_addresses)
    pct = percentage(stalled, total_jobs)
    window = to_block - from_block + 1
    fields = [
        _field(
            "📊 Summary",
            f"• Stalled jobs: **{stalled}**\n• Total jobs: **{total_jobs}**\n"
            f"• Current block: **{current_block}**\n• Percentage affected: **{pct}%**",
        ),
        _field("🔍 Checked Range", f"Blocks: **{from_block}** - **{to_block}**", inline=True),
        _field("⏰ Time", _now_display(), inline=True),
        _field("❌ Stalled Job Addresses", format_job_addresses(stalled_addresses)),
        _field("🚨 Action Required", "These jobs need **immediate attention**! Check keepers and gas prices."),
    ]
    embed = _embed(
        "🚨 KEEPER ALERT - JOBS NOT WORKING",
        f"**{stalled} out of {total_jobs} jobs** haven't been worked in the last {window} blocks! ({pct}%)",
        COLOR_RED,
        fields,
    )
    return _message(AlertKind.STALLED, embed, username)


def build_healthy_report(
    *,
    total_jobs: int,
    current_block: int,
    from_block: int,
    to_block: int,
    username: str = DEFAULT_USERNAME,
) -> AlertMessage:
    fields = [
        _field(
            "📊 Summary",
            f"• Total jobs checked: **{total_jobs}**\n• Stalled jobs: **0**\n• Current block: **{current_block}**",
        ),
        _field("🔍 Checked Range", f"Blocks: **{from_block}** - **{to_block}**", inline=True),
        _field("⏰ Last Check", _now_display(), inline=True),
        _field("✅ Status", "All systems operational. No action required."),
    ]
    embed = _embed("✅ KEEPER JOBS - ALL HEALTHY", "All jobs are working correctly!", COLOR_GREEN, fields)
    return _message(AlertKind.HEALTHY, embed, username)


def build_system_error_alert(
    error: BaseException | str,
    *,
    request_id: str | None = None,
    stack: str | None = None,
    username: str = DEFAULT_USERNAME,
) -> AlertMessage:
    if isinstance(error, BaseException):
        error_message = f"{type(error).__name__}: {error}"
    else:
        error_message = str(error)
    fields = [
        _field("❌ Error Message", f"```{truncate(error_message)}```"),
        _field("🆔 Request ID", request_id or "Unknown", inline=True),
        _field("⏰ Time", _now_display(), inline=True),
    ]
    if stack:
        fields.append(_field("📋 Stack Trace", f"```{truncate(stack)}```"))
    fields.append(_field("🚨 Action Required", "Check the monitor logs and system health immediately!"))
    embed = _embed("🔥 KEEPER MONITOR ERROR", "❌ **System execution failed!**", COLOR_ORANGE_RED, fields)
    return _message(AlertKind.SYSTEM_ERROR, embed, username)


def build_config_error_alert(missing_vars: Sequence[str], *, username: str = DEFAULT_USERNAME) -> AlertMessage:
    missing = "\n".join(f"• `{name}`" for name in missing_vars) or "None"
    fields = [
        _field("❌ Missing Variables", missing),
        _field("⏰ Time", _now_display(), inline=True),
        _field("🚨 Action Required", "Update the monitor configuration and redeploy!"),
    ]
    embed = _embed("⚙️ KEEPER MONITOR CONFIG ERROR", "❌ **Configuration validation failed!**", COLOR_ORANGE, fields)
    return _message(AlertKind.CONFIG_ERROR, embed, username)


def build_rpc_error_alert(rpc_url: str, error: str, *, username: str = DEFAULT_USERNAME) -> AlertMessage:
    fields = [
        _field("🔗 RPC URL", f"`{rpc_url}`"),
        _field("❌ Error", f"```{truncate(error)}```"),
        _field("⏰ Time", _now_display(), inline=True),
        _field("🚨 Action Required", "Check RPC endpoint health and network connectivity!"),
    ]
    embed = _embed("🌐 RPC CONNECTION ERROR", "❌ **Unable to connect to Ethereum RPC!**", COLOR_RED_ORANGE, fields)
    return _message(AlertKind.RPC_ERROR, embed, username)


def build_periodic_report(
    *,
    total_jobs: int,
    active_jobs: int,
    stalled_jobs: int,
    current_block: int,
    from_block: int,
    to_block: int,
    uptime: str,
    username: str = DEFAULT_USERNAME,
) -> AlertMessage:
    health = percentage(active_jobs, total_jobs)
    healthy = stalled_jobs == 0
    fields = [
        _field(
            "📈 Job Statistics",
            f"• Total jobs: **{total_jobs}**\n• Active jobs: **{active_jobs}**\n"
            f"• Stalled jobs: **{stalled_jobs}**\n• Health: **{health}%**",
            inline=True,
        ),
        _field(
            "🏗️ Blockchain Info",
            f"• Current block: **{current_block}**\n• Checked range: **{from_block}** - **{to_block}**",
            inline=True,
        ),
        _field("⏱️ System Info", f"• Uptime: **{uptime}**\n• Last check: **{_now_display()}**"),
        _field(
            "✅ Status" if healthy else "⚠️ Status",
            "All systems operational" if healthy else f"**{stalled_jobs}** jobs require attention",
        ),
    ]
    embed = _embed(
        "📊 KEEPER PERIODIC STATUS REPORT",
        f"System health: **{health}%** | Uptime: **{uptime}**",
        periodic_color(stalled_jobs),
        fields,
    )
    return _message(AlertKind.PERIODIC_REPORT, embed, username)


def build_simple_message(content: str, *, username: str = DEFAULT_USERNAME) -> AlertMessage:
    return AlertMessage(kind=AlertKind.SIMPLE, payload={"content": truncate(content, MAX_CONTENT_LEN), "username": username})


def build_connection_test(*, username: str = DEFAULT_USERNAME) -> AlertMessage:
    fields = [
        _field("✅ Status", "Connection successful", inline=True),
        _field("⏰ Time", _now_display(), inline=True),
    ]
    embed = _embed("🧪 CONNECTION TEST", "Discord webhook is working correctly!", COLOR_SKY_BLUE, fields)
    return _message(AlertKind.CONNECTION_TEST, embed, username)


def render_plain_text(message: AlertMessage, *, failure: str | None = None, max_len: int = MAX_CONTENT_LEN) -> str:
    """Condense an embed payload into plain text for the fallback delivery path."""
    lines: list[str] = []
    content = message.payload.get("content")
    if content:
        lines.append(str(content))
    for embed in message.payload.get("embeds") or []:
        if embed.get("title"):
            lines.append(f"**{embed['title']}**")
        if embed.get("description"):
            lines.append(str(embed["description"]))
        for f in embed.get("fields") or []:
            lines.append(f"{f.get('name', '')}: {f.get('value', '')}")
    if failure:
        lines.append("")
        lines.append(f"(rich {message.label} delivery failed: {truncate(failure, 300)})")
    lines.append(f"Time: {utc_now().isoformat()}")
    text = "\n".join(lines).strip()
    if len(text) > max_len:
        text = text[: max_len - len(TRUNCATED_SUFFIX)].rstrip() + TRUNCATED_SUFFIX
    return text
