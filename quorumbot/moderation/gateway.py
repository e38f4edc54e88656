"""Platform operations used by the engine, and their discord.py adapter."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import discord

from .errors import GatewayError

log = logging.getLogger(f"quorumbot.{__name__}")


@dataclass(frozen=True)
class MemberInfo:
    """What the engine needs to know about a guild member."""

    user_id: int
    display_name: str
    bot: bool = False
    owner: bool = False
    moderator: bool = False
    top_role_position: int = 0
    role_ids: frozenset[int] = field(default_factory=frozenset)

    @property
    def mention(self) -> str:
        return f"<@{self.user_id}>"


class Gateway(Protocol):
    """Request/response operations against the chat platform.

    Implementations raise :class:`GatewayError` for failed calls.
    ``fetch_member`` returns None when the user is not a member.
    """

    agent_id: int

    async def agent_top_role_position(self) -> int: ...

    async def post_message(
        self, channel_id: int, content: str | None = None, *, embed: discord.Embed | None = None
    ) -> int: ...

    async def add_reaction(self, channel_id: int, message_id: int, emoji: str) -> None: ...

    async def fetch_member(self, user_id: int) -> MemberInfo | None: ...

    async def fetch_member_ids(self) -> set[int]: ...

    async def remove_member(self, user_id: int, reason: str) -> None: ...

    async def grant_role(self, user_id: int, role_id: int, reason: str) -> None: ...

    async def revoke_role(self, user_id: int, role_id: int, reason: str) -> None: ...


def _is_moderator(member: discord.Member) -> bool:
    perms = member.guild_permissions
    return (
        perms.administrator
        or perms.manage_guild
        or perms.kick_members
        or perms.manage_roles
    )


def member_info(member: discord.Member) -> MemberInfo:
    guild = member.guild
    return MemberInfo(
        user_id=member.id,
        display_name=member.display_name,
        bot=member.bot,
        owner=guild is not None and guild.owner_id == member.id,
        moderator=_is_moderator(member),
        top_role_position=member.top_role.position if member.top_role else 0,
        role_ids=frozenset(role.id for role in member.roles),
    )


class DiscordGateway:
    """:class:`Gateway` backed by a discord.py client and one guild."""

    def __init__(self, bot: discord.Client, guild_id: int) -> None:
        self.bot = bot
        self.guild_id = guild_id

    @property
    def agent_id(self) -> int:
        return self.bot.user.id if self.bot.user else 0

    def _guild(self) -> discord.Guild:
        guild = self.bot.get_guild(self.guild_id)
        if guild is None:
            raise GatewayError(f"guild {self.guild_id} not found")
        return guild

    def _channel(self, channel_id: int) -> discord.abc.Messageable:
        channel = self._guild().get_channel(channel_id)
        if not isinstance(channel, (discord.TextChannel, discord.Thread)):
            raise GatewayError(f"text channel {channel_id} not found")
        return channel

    async def _member(self, user_id: int) -> discord.Member:
        guild = self._guild()
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user_id)
        except discord.NotFound as exc:
            raise GatewayError(f"member {user_id} not found") from exc
        except discord.HTTPException as exc:
            raise GatewayError(f"failed to fetch member {user_id}: {exc}") from exc

    async def agent_top_role_position(self) -> int:
        me = self._guild().me
        return me.top_role.position if me is not None else 0

    async def post_message(
        self, channel_id: int, content: str | None = None, *, embed: discord.Embed | None = None
    ) -> int:
        channel = self._channel(channel_id)
        try:
            message = await channel.send(content=content, embed=embed)
        except discord.HTTPException as exc:
            raise GatewayError(f"failed to post in {channel_id}: {exc}") from exc
        return message.id

    async def add_reaction(self, channel_id: int, message_id: int, emoji: str) -> None:
        channel = self._channel(channel_id)
        try:
            await channel.get_partial_message(message_id).add_reaction(emoji)
        except discord.HTTPException as exc:
            raise GatewayError(f"failed to react to {message_id}: {exc}") from exc

    async def fetch_member(self, user_id: int) -> MemberInfo | None:
        guild = self._guild()
        member = guild.get_member(user_id)
        if member is None:
            try:
                member = await guild.fetch_member(user_id)
            except discord.NotFound:
                return None
            except discord.HTTPException as exc:
                raise GatewayError(f"failed to fetch member {user_id}: {exc}") from exc
        return member_info(member)

    async def fetch_member_ids(self) -> set[int]:
        guild = self._guild()
        try:
            return {member.id async for member in guild.fetch_members(limit=None)}
        except discord.HTTPException as exc:
            raise GatewayError(f"failed to list members: {exc}") from exc

    async def remove_member(self, user_id: int, reason: str) -> None:
        member = await self._member(user_id)
        try:
            await member.kick(reason=reason)
        except discord.HTTPException as exc:
            raise GatewayError(f"failed to remove {user_id}: {exc}") from exc

    async def grant_role(self, user_id: int, role_id: int, reason: str) -> None:
        await self._edit_role(user_id, role_id, reason, grant=True)

    async def revoke_role(self, user_id: int, role_id: int, reason: str) -> None:
        await self._edit_role(user_id, role_id, reason, grant=False)

    async def _edit_role(self, user_id: int, role_id: int, reason: str, *, grant: bool) -> None:
        role = self._guild().get_role(role_id)
        if role is None:
            raise GatewayError(f"role {role_id} not found")
        member = await self._member(user_id)
        try:
            if grant:
                await member.add_roles(role, reason=reason)
            else:
                await member.remove_roles(role, reason=reason)
        except discord.HTTPException as exc:
            action = "grant" if grant else "revoke"
            raise GatewayError(f"failed to {action} role {role_id} for {user_id}: {exc}") from exc
