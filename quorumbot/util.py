import os
import logging

import discord


def now_ms() -> int:
    """Return the current UTC time as integer epoch milliseconds."""
    return int(discord.utils.utcnow().timestamp() * 1000)


def format_time_ago(timestamp_ms: int | None, now: int | None = None) -> str:
    """Return a short human description of how long ago *timestamp_ms* was."""
    if not timestamp_ms:
        return "Never in monitored channel"
    if now is None:
        now = now_ms()
    seconds = round((now - timestamp_ms) / 1000)

    if seconds < 5:
        return "Just now"
    if seconds < 60:
        return f"{seconds} secs ago"

    minutes = round(seconds / 60)
    if minutes < 60:
        return f"{minutes} min(s) ago"

    hours = round(minutes / 60)
    if hours < 24:
        return f"{hours} hour(s) ago"

    days = round(hours / 24)
    return f"{days} day(s) ago"


def chunk_text(text: str, limit: int = 1950) -> list[str]:
    """Split *text* into pieces no longer than *limit* characters."""
    if len(text) <= limit:
        return [text]
    return [text[i : i + limit] for i in range(0, len(text), limit)]


def build_db_url() -> str | None:
    """Return a Postgres DSN built from env vars."""
    url = os.getenv("PG_DSN") or os.getenv("DATABASE_URL")
    if url:
        return url
    user = os.getenv("PG_USER")
    pwd = os.getenv("PG_PASSWORD")
    db = os.getenv("PG_DB")
    if user and pwd and db:
        return f"postgresql+asyncpg://{user}:{pwd}@db:5432/{db}"
    return None


def user_name(user: discord.abc.Snowflake | int | None) -> str:
    """Return a user's display name or fallback to their ID."""
    if user is None:
        return "unknown"
    if isinstance(user, int):
        return str(user)
    name = getattr(user, "display_name", None) or getattr(user, "name", None)
    if name:
        return name
    uid = getattr(user, "id", None)
    return str(uid) if uid is not None else "unknown"


def chan_name(channel: discord.abc.Connectable | None) -> str:
    """Return a readable channel name or fallback to ID."""
    if channel is None:
        return "unknown"
    name = getattr(channel, "name", None)
    if name:
        return f"#{name}"
    channel_id = getattr(channel, "id", None)
    return str(channel_id) if channel_id is not None else "unknown"


def int_env(var: str, default: int = 0) -> int:
    """Return int value from ENV or default if unset or invalid."""
    value = os.getenv(var)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logging.getLogger(__name__).warning(
            "Invalid integer for %s: %s; using %s", var, value, default
        )
        return default


def float_env(var: str, default: float = 0.0) -> float:
    """Return float value from ENV or default if unset or invalid."""
    value = os.getenv(var)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        logging.getLogger(__name__).warning(
            "Invalid number for %s: %s; using %s", var, value, default
        )
        return default

