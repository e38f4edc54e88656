"""
Source of truth for IDs & tokens
======================================================
Everything is read from the environment so one checkout can serve a sandbox
guild and the real one.

Usage
-----
$ export GUILD_ID=1234
$ python -m quorumbot

* .env (git‑ignored) keeps the token and IDs*
DISCORD_TOKEN=xxx
GUILD_ID=1234
ANNOUNCEMENT_CHANNEL_ID=5678

Thresholds, windows and poll settings live in ``infra.config.ModerationConfig``.
"""
from __future__ import annotations
import os
import logging
from .util import int_env
from dotenv import load_dotenv
load_dotenv()

# ─── Select env ────────────────────────────────────────────────────────────
env = os.getenv("env", "prod").upper()

# ─── Tokens ───────────────────────────────────────────────────────────────
TOKEN = os.getenv("DISCORD_TOKEN")

# ─── Guild ────────────────────────────────────────────────────────────────
GUILD_ID = int_env("GUILD_ID", 0)

# -------- CHANNELS --------
# 0 means activity in any text channel of the guild is counted
ACTIVITY_CHANNEL_ID = int_env("ACTIVITY_CHANNEL_ID", 0)
ANNOUNCEMENT_CHANNEL_ID = int_env("ANNOUNCEMENT_CHANNEL_ID", 0)

# -------- ROLES --------
ROLE_VERIFIED = int_env("ROLE_VERIFIED", 0)
ROLE_NEW_MEMBER = int_env("ROLE_NEW_MEMBER", 0)

# ─── State ────────────────────────────────────────────────────────────────
STATE_DB_PATH = os.getenv("STATE_DB_PATH", "data/state.db")
ENGINE_INSTANCE = os.getenv("ENGINE_INSTANCE", "default")

# Helper: convenience log line
logging.getLogger(__name__).info("Loaded %s env for Guild %s", env, GUILD_ID)
