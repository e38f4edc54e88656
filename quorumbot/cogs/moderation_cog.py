"""
moderation_cog.py – Activity tracking & moderation polls
========================================================
Counts member activity and lets the community vote on who stays and who
gets verified.

How it works:
  A. **Activity tracking** (on_message listener):
     Messages in the monitored channel (or anywhere in the guild when
     ACTIVITY_CHANNEL_ID is 0) bump the author's counters.

  B. **Pruning scan** (every PRUNE_INTERVAL_DAYS):
     Members below PRUNE_MESSAGE_THRESHOLD messages for the period get a
     kick poll; counters reset afterwards.

  C. **Verification scan** (every VERIFY_WINDOW_DAYS / 2):
     Unverified members past the window with enough messages get a
     verification poll.

  D. **Admin commands**: /verify, /deny, /scan, /scaninterval,
     /verifywindow, plus /activity for everyone.

State survives restarts in STATE_DB_PATH; open polls do not.
"""
from __future__ import annotations

import logging

import discord
from discord import app_commands
from discord.ext import commands

from .. import bot_config as cfg
from ..infra import ConfigError, ModerationConfig, alert_scan_failure, get_config
from ..infra.config import DAY_MS
from ..moderation import (
    ActivityLedger,
    DiscordGateway,
    LifecycleController,
    Outcome,
    PersistenceStore,
    PollEngine,
    ScanAborted,
    ScanScheduler,
)
from ..util import chan_name, format_time_ago, now_ms, user_name

log = logging.getLogger(f"quorumbot.{__name__}")

USERS_PER_EMBED = 15

OUTCOME_REPLIES = {
    Outcome.VERIFIED: "{name} is now verified.",
    Outcome.SUPERSEDED: "{name} was already verified.",
    Outcome.REMOVED: "{name} has been removed from the server.",
    Outcome.CLEANED_UP: "{name} is no longer in the server; their record was cleared.",
    Outcome.FAILED: "Could not update {name}. I might lack permissions or they have a higher role.",
    Outcome.NO_ACTION: "No action taken for {name}.",
}


class ModerationCog(commands.Cog):
    """Activity ledger, scan timers and moderation polls for one guild."""

    def __init__(
        self,
        bot: commands.Bot,
        *,
        config: ModerationConfig | None = None,
        store: PersistenceStore | None = None,
    ) -> None:
        self.bot = bot
        self.store = store or PersistenceStore(cfg.STATE_DB_PATH, instance=cfg.ENGINE_INSTANCE)
        snapshot = self.store.load()
        self.ledger = ActivityLedger(snapshot.users)
        self.marks = snapshot.marks
        self.gateway = DiscordGateway(bot, cfg.GUILD_ID)
        self.controller = LifecycleController(
            self.ledger,
            self.store,
            self.marks,
            self.gateway,
            config or get_config(),
            announce_channel_id=cfg.ANNOUNCEMENT_CHANNEL_ID,
            verified_role_id=cfg.ROLE_VERIFIED,
            new_member_role_id=cfg.ROLE_NEW_MEMBER,
        )
        self.polls = PollEngine(
            self.gateway, cfg.ANNOUNCEMENT_CHANNEL_ID, self.controller.on_poll_closed
        )
        self.scans = ScanScheduler(
            self.ledger,
            self.controller,
            self.polls,
            self.gateway,
            self.marks,
            on_failure=self._alert_failure,
        )
        self._started = False

    async def cog_unload(self) -> None:
        self.scans.shutdown()
        await self.polls.close()
        self.controller.persist()

    async def _alert_failure(self, scan: str, exc: Exception) -> None:
        severity = "warning" if isinstance(exc, ScanAborted) else "error"
        await alert_scan_failure(self.bot, scan, exc, severity=severity)

    def _in_guild(self, guild: discord.Guild | None) -> bool:
        return guild is not None and guild.id == cfg.GUILD_ID

    # ------------------------------------------------------------------
    # Gateway events
    # ------------------------------------------------------------------

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        if self._started:
            return
        self._started = True
        await self.scans.start()

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        """Count a message toward its author's activity."""
        if message.author.bot or not self._in_guild(message.guild):
            return
        if cfg.ACTIVITY_CHANNEL_ID and message.channel.id != cfg.ACTIVITY_CHANNEL_ID:
            return
        self.ledger.record(message.author.id, user_name(message.author), now_ms())
        self.controller.persist_soon()

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member) -> None:
        if member.bot or not self._in_guild(member.guild):
            return
        log.info("Member %s joined; tracking as new", user_name(member))
        await self.controller.handle_join(member.id, member.display_name, now_ms())

    @commands.Cog.listener()
    async def on_member_remove(self, member: discord.Member) -> None:
        if not self._in_guild(member.guild):
            return
        self.controller.handle_departure(member.id)

    @commands.Cog.listener()
    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        if payload.guild_id != cfg.GUILD_ID:
            return
        voter_is_bot = bool(payload.member and payload.member.bot)
        self.polls.record_vote(
            payload.message_id,
            str(payload.emoji),
            payload.user_id,
            added=True,
            voter_is_bot=voter_is_bot,
        )

    @commands.Cog.listener()
    async def on_raw_reaction_remove(self, payload: discord.RawReactionActionEvent) -> None:
        if payload.guild_id != cfg.GUILD_ID:
            return
        self.polls.record_vote(
            payload.message_id, str(payload.emoji), payload.user_id, added=False
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def build_activity_embeds(self, members: list[discord.Member]) -> list[discord.Embed]:
        """Render last-activity lines for *members*, 15 per embed."""
        now = now_ms()
        channel = self.bot.get_channel(cfg.ACTIVITY_CHANNEL_ID) if cfg.ACTIVITY_CHANNEL_ID else None
        where = chan_name(channel) if channel else "this server"
        members = sorted((m for m in members if not m.bot), key=lambda m: m.display_name.lower())
        embeds: list[discord.Embed] = []
        for start in range(0, len(members), USERS_PER_EMBED):
            embed = discord.Embed(
                title=f"User Activity Report (Page {start // USERS_PER_EMBED + 1})",
                description=f"Showing last recorded message activity in **{where}**.",
                color=0x00AAFF,
            )
            for member in members[start : start + USERS_PER_EMBED]:
                record = self.ledger.get(member.id)
                last = record.last_activity_at if record else None
                embed.add_field(
                    name=member.display_name,
                    value=f"Last message: {format_time_ago(last, now)}",
                    inline=False,
                )
            embeds.append(embed)
        return embeds

    @app_commands.command(name="activity", description="Show when each member was last active")
    async def activity(self, interaction: discord.Interaction) -> None:
        log.info(
            "/activity invoked by %s in %s",
            user_name(interaction.user),
            chan_name(interaction.channel),
        )
        if not self._in_guild(interaction.guild):
            await interaction.response.send_message(
                "This command only works in the moderated server.", ephemeral=True
            )
            return
        await interaction.response.defer(thinking=True)
        embeds = self.build_activity_embeds(list(interaction.guild.members))
        if not embeds:
            await interaction.followup.send("No non-bot members found in this server.")
            return
        for embed in embeds:
            await interaction.followup.send(embed=embed)

    @app_commands.command(name="verify", description="Verify a member without a poll")
    @app_commands.checks.has_permissions(administrator=True)
    @app_commands.default_permissions(administrator=True)
    async def verify(self, interaction: discord.Interaction, member: discord.Member) -> None:
        log.info("/verify %s invoked by %s", user_name(member), user_name(interaction.user))
        await interaction.response.defer(thinking=True, ephemeral=True)
        outcome = await self.controller.manual_verify(member.id)
        await interaction.followup.send(
            OUTCOME_REPLIES[outcome].format(name=member.display_name), ephemeral=True
        )

    @app_commands.command(name="deny", description="Remove a member without a poll")
    @app_commands.checks.has_permissions(administrator=True)
    @app_commands.default_permissions(administrator=True)
    async def deny(
        self,
        interaction: discord.Interaction,
        member: discord.Member,
        reason: str | None = None,
    ) -> None:
        log.info("/deny %s invoked by %s", user_name(member), user_name(interaction.user))
        await interaction.response.defer(thinking=True, ephemeral=True)
        outcome = await self.controller.manual_deny(member.id, reason)
        await interaction.followup.send(
            OUTCOME_REPLIES[outcome].format(name=member.display_name), ephemeral=True
        )

    @app_commands.command(name="scan", description="Run a pruning or verification scan now")
    @app_commands.choices(
        kind=[
            app_commands.Choice(name="pruning", value="prune"),
            app_commands.Choice(name="verification", value="verify"),
        ]
    )
    @app_commands.checks.has_permissions(administrator=True)
    @app_commands.default_permissions(administrator=True)
    async def scan(self, interaction: discord.Interaction, kind: app_commands.Choice[str]) -> None:
        log.info("/scan %s invoked by %s", kind.value, user_name(interaction.user))
        await interaction.response.defer(thinking=True, ephemeral=True)
        run = self.scans.run_prune_scan if kind.value == "prune" else self.scans.run_verification_scan
        try:
            report = await run()
        except ScanAborted as exc:
            log.warning("Manual %s scan aborted: %s", kind.value, exc)
            await interaction.followup.send(f"Scan aborted: {exc}", ephemeral=True)
            return
        if report is None:
            await interaction.followup.send("That scan is already running.", ephemeral=True)
            return
        await interaction.followup.send(
            f"{kind.name.capitalize()} scan complete: {len(report.candidates)} candidate(s), "
            f"{len(report.opened)} poll(s) opened, {len(report.skipped)} skipped.",
            ephemeral=True,
        )

    @app_commands.command(name="scaninterval", description="Set the days between pruning scans")
    @app_commands.checks.has_permissions(administrator=True)
    @app_commands.default_permissions(administrator=True)
    async def scan_interval(self, interaction: discord.Interaction, days: float) -> None:
        log.info("/scaninterval %s invoked by %s", days, user_name(interaction.user))
        try:
            self.scans.set_prune_interval(int(days * DAY_MS))
        except ConfigError as exc:
            await interaction.response.send_message(f"Invalid interval: {exc}", ephemeral=True)
            return
        await interaction.response.send_message(
            f"Pruning scans now run every {days:g} day(s).", ephemeral=True
        )

    @app_commands.command(name="verifywindow", description="Set the days before new members can be verified")
    @app_commands.checks.has_permissions(administrator=True)
    @app_commands.default_permissions(administrator=True)
    async def verify_window(self, interaction: discord.Interaction, days: float) -> None:
        log.info("/verifywindow %s invoked by %s", days, user_name(interaction.user))
        try:
            self.scans.set_verify_window(int(days * DAY_MS))
        except ConfigError as exc:
            await interaction.response.send_message(f"Invalid window: {exc}", ephemeral=True)
            return
        await interaction.response.send_message(
            f"Verification window is now {days:g} day(s).", ephemeral=True
        )


async def setup(bot: commands.Bot) -> None:
    """Load the ModerationCog."""
    await bot.add_cog(ModerationCog(bot))
