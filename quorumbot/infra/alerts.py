"""Operator alerts for failed scans.

Scan failures are retried at the next firing, so nobody would notice a
guild or channel misconfiguration without a nudge. Alerts go out as DMs to
the users listed in ``ALERT_USER_IDS``.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Literal

import discord
from discord.ext.commands import Bot

log = logging.getLogger(f"quorumbot.{__name__}")

# Comma-separated list of Discord user IDs to receive alerts
ALERT_USER_IDS: list[int] = [
    int(uid.strip())
    for uid in os.getenv("ALERT_USER_IDS", "").split(",")
    if uid.strip().isdigit()
]

Severity = Literal["error", "warning", "info"]

SEVERITY_EMOJI: dict[Severity, str] = {
    "error": "\U0001f6a8",  # 🚨
    "warning": "⚠️",  # ⚠️
    "info": "ℹ️",  # ℹ️
}


def format_alert(
    title: str,
    message: str,
    severity: Severity = "error",
    *,
    context: dict[str, str] | None = None,
) -> str:
    """Render the DM body for an alert."""
    emoji = SEVERITY_EMOJI.get(severity, SEVERITY_EMOJI["info"])
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    lines = [f"{emoji} **{title}**", "", message]
    if context:
        lines.append("")
        lines.append("**Context:**")
        for key, value in context.items():
            lines.append(f"• {key}: `{value}`")
    lines.append("")
    lines.append(f"*{timestamp}*")

    text = "\n".join(lines)
    if len(text) > 1900:
        text = text[:1900] + "\n... (truncated)"
    return text


async def send_alert(
    bot: Bot,
    title: str,
    message: str,
    severity: Severity = "error",
    *,
    context: dict[str, str] | None = None,
) -> int:
    """DM an alert to every configured operator.

    Returns:
        Number of operators successfully notified.
    """
    if not ALERT_USER_IDS:
        log.debug("No alert recipients configured; skipping alert: %s", title)
        return 0

    alert_text = format_alert(title, message, severity, context=context)

    sent_count = 0
    for user_id in ALERT_USER_IDS:
        try:
            user = await bot.fetch_user(user_id)
            await user.send(alert_text)
            sent_count += 1
        except discord.NotFound:
            log.warning("Alert recipient %s not found", user_id)
        except discord.Forbidden:
            log.warning("Cannot DM alert recipient %s (DMs disabled)", user_id)
        except discord.HTTPException as exc:
            log.warning("Failed to send alert to %s: %s", user_id, exc)

    if sent_count == 0:
        log.warning("Failed to send alert to any recipient: %s", title)
    return sent_count


async def alert_scan_failure(
    bot: Bot,
    scan: str,
    error: Exception | str,
    *,
    severity: Severity = "error",
) -> int:
    """Convenience wrapper for a scan run that failed or was aborted."""
    error_msg = str(error)
    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."
    return await send_alert(
        bot,
        f"Scan Failed: {scan}",
        f"```\n{error_msg}\n```",
        severity=severity,
        context={"scan": scan},
    )
