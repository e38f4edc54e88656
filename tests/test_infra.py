"""Tests for infrastructure modules."""
from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from quorumbot.infra import alerts, get_logger, structured_log
from quorumbot.infra.alerts import alert_scan_failure, format_alert, send_alert


# --- Logging Tests ---


def test_get_logger_with_name() -> None:
    assert get_logger("scans").name == "quorumbot.scans"


def test_get_logger_without_name() -> None:
    assert get_logger().name == "quorumbot"


def test_get_logger_avoids_double_prefix() -> None:
    assert get_logger("quorumbot.cogs.moderation").name == "quorumbot.cogs.moderation"


def test_structured_log(caplog: pytest.LogCaptureFixture) -> None:
    logger = get_logger("test_structured")
    with caplog.at_level(logging.INFO):
        structured_log(logger, logging.INFO, "Poll closed", user_id=123, verdict="pass")
    assert "Poll closed user_id=123 verdict=pass" in caplog.text


# --- Alert Tests ---


def test_format_alert_includes_context() -> None:
    text = format_alert("Scan Failed", "boom", "warning", context={"scan": "pruning"})
    assert text.startswith("⚠️ **Scan Failed**")
    assert "• scan: `pruning`" in text


def test_format_alert_truncates() -> None:
    text = format_alert("t", "x" * 3000)
    assert text.endswith("... (truncated)")
    assert len(text) < 2000


def test_send_alert_without_recipients(monkeypatch) -> None:
    monkeypatch.setattr(alerts, "ALERT_USER_IDS", [])
    bot = MagicMock()
    assert asyncio.run(send_alert(bot, "t", "m")) == 0
    bot.fetch_user.assert_not_called()


def test_send_alert_counts_successes(monkeypatch) -> None:
    monkeypatch.setattr(alerts, "ALERT_USER_IDS", [1, 2])
    good = MagicMock()
    good.send = AsyncMock()
    response = MagicMock(status=403, reason="Forbidden")

    async def fetch_user(uid):
        if uid == 2:
            raise discord.Forbidden(response, "no dms")
        return good

    bot = MagicMock()
    bot.fetch_user = fetch_user
    assert asyncio.run(send_alert(bot, "t", "m")) == 1
    good.send.assert_awaited_once()


def test_alert_scan_failure_trims_error(monkeypatch) -> None:
    monkeypatch.setattr(alerts, "ALERT_USER_IDS", [1])
    user = MagicMock()
    user.send = AsyncMock()
    bot = MagicMock()
    bot.fetch_user = AsyncMock(return_value=user)
    assert asyncio.run(alert_scan_failure(bot, "pruning", RuntimeError("e" * 800))) == 1
    sent = user.send.await_args.args[0]
    assert "Scan Failed: pruning" in sent
    assert "e" * 500 + "..." in sent
