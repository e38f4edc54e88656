"""Entry point to run the Quorumbot Discord bot."""
import argparse
import asyncio
import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import discord
from discord.ext import commands

from . import bot_config as cfg
from .infra import ConfigError, get_config
from .moderation import PersistenceStore
from .postgres_handler import PostgresHandler
from .util import build_db_url
from .version import get_version

# ─── Logging Setup ─────────────────────────────────────────────────────────
logger = logging.getLogger("quorumbot")
level_name = os.getenv("LOG_LEVEL", "INFO").upper()
level = getattr(logging, level_name, logging.INFO)
logger.setLevel(level)
log_format = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

console_handler = logging.StreamHandler()
console_handler.setFormatter(log_format)
# Console stays at INFO even when file logging is DEBUG
console_handler.setLevel(logging.INFO)

root_logger = logging.getLogger()
root_logger.setLevel(level)
root_logger.addHandler(console_handler)

intents = discord.Intents.default()
intents.message_content = True
intents.members = True  # join/leave events and member listing
intents.reactions = True


class QuorumBot(commands.Bot):
    async def setup_hook(self) -> None:
        cog_dir = Path(__file__).resolve().parent / "cogs"
        for file in cog_dir.glob("*_cog.py"):
            await self.load_extension(f"quorumbot.cogs.{file.stem}")


bot = QuorumBot(command_prefix="!", intents=intents)

_synced = False


@bot.event
async def on_ready() -> None:
    global _synced
    logger.info("%s is now online", bot.user)
    if not _synced:
        try:
            guild = discord.Object(id=cfg.GUILD_ID)
            bot.tree.copy_global_to(guild=guild)
            cmds = await bot.tree.sync(guild=guild)
            logger.info("Synced %d commands.", len(cmds))
            _synced = True
        except discord.HTTPException as e:
            logger.exception("Failed to sync commands: %s", e)


@bot.event
async def on_error(event: str, *args, **kwargs) -> None:
    logger.exception("Unhandled exception in event %s", event)


@bot.tree.error
async def on_app_command_error(
    interaction: discord.Interaction, exc: discord.app_commands.AppCommandError
) -> None:
    cmd_name = getattr(interaction.command, "name", "unknown")
    if isinstance(exc, discord.app_commands.MissingPermissions):
        message = "You do not have permission to use this command."
        logger.info("Denied /%s for %s", cmd_name, interaction.user)
    else:
        message = "An error occurred."
        logger.exception("Error in slash command '%s'", cmd_name, exc_info=exc)
    if interaction.response.is_done():
        await interaction.followup.send(message, ephemeral=True)
    else:
        await interaction.response.send_message(message, ephemeral=True)


def check_startup() -> list[str]:
    """Return the fatal configuration problems, if any."""
    problems = []
    if not cfg.TOKEN:
        problems.append("DISCORD_TOKEN is not set")
    if not cfg.GUILD_ID:
        problems.append("GUILD_ID is not set")
    try:
        get_config()
    except ConfigError as exc:
        problems.append(f"invalid moderation settings: {exc}")
    return problems


def import_legacy(path: str) -> int:
    store = PersistenceStore(cfg.STATE_DB_PATH, instance=cfg.ENGINE_INSTANCE)
    try:
        snapshot = store.import_legacy_json(path)
    except (OSError, ValueError) as exc:
        logger.error("Could not import %s: %s", path, exc)
        return 1
    logger.info("Imported %d user(s) into %s", len(snapshot.users), store.db_path)
    return 0


async def main() -> None:
    db_url = build_db_url()
    db_handler = None
    file_handler = None
    if db_url:
        db_handler = PostgresHandler(db_url)
        await db_handler.connect()
        root_logger.addHandler(db_handler)
        logger.info("Postgres logging enabled; file logging disabled")
    else:
        log_dir = Path("logs")
        log_dir.mkdir(exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            log_dir / "bot.log", when="midnight", backupCount=90
        )
        file_handler.setFormatter(log_format)
        root_logger.addHandler(file_handler)

    try:
        async with bot:
            await bot.start(cfg.TOKEN)
    finally:
        if db_handler:
            root_logger.removeHandler(db_handler)
            await db_handler.aclose()
        if file_handler:
            file_handler.close()


def run() -> None:
    parser = argparse.ArgumentParser(description="Run Quorumbot")
    parser.add_argument("--version", action="version", version=get_version())
    parser.add_argument(
        "--import-legacy",
        metavar="PATH",
        help="import a legacy data.json into the state database and exit",
    )
    args = parser.parse_args()

    if args.import_legacy:
        sys.exit(import_legacy(args.import_legacy))

    problems = check_startup()
    if problems:
        for problem in problems:
            logger.critical("Cannot start: %s", problem)
        sys.exit(1)

    logger.info(
        "Starting Quorumbot %s in %s environment with level %s",
        get_version(),
        cfg.env,
        level_name,
    )
    asyncio.run(main())


if __name__ == "__main__":
    run()
