"""Timed yes/no votes about a single member.

A poll moves through three states: open (collecting reactions), closing
(window elapsed, presence re-checked) and resolved (verdict delivered).
The verdict rule itself is :func:`compute_verdict`, kept pure so it can be
reasoned about apart from the timer.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

import discord

from ..infra.logging import structured_log
from .errors import GatewayError, PollStartError, PrivilegeConflict, SubjectGone
from .gateway import Gateway, MemberInfo

log = logging.getLogger(f"quorumbot.{__name__}")

YES_EMOJI = "✅"
NO_EMOJI = "❌"


class PollKind(Enum):
    PRUNE = "prune"
    VERIFY = "verify"


class Verdict(Enum):
    PASS = "pass"
    FAIL = "fail"
    NO_QUORUM = "no_quorum"
    SUBJECT_GONE = "subject_gone"


@dataclass(frozen=True)
class Poll:
    subject_id: int
    subject_name: str
    reason: str
    kind: PollKind
    opened_at: int
    duration_ms: int
    pass_fraction: float
    channel_id: int
    message_id: int

    @property
    def closes_at(self) -> int:
        return self.opened_at + self.duration_ms


@dataclass(frozen=True)
class Tally:
    yes: int = 0
    no: int = 0

    @property
    def total(self) -> int:
        return self.yes + self.no


def compute_verdict(tally: Tally, pass_fraction: float) -> Verdict:
    """Decide a poll from its tally.

    Passing needs both a strict majority and a yes share of at least
    ``pass_fraction``; either alone is not enough.
    """
    if tally.total == 0:
        return Verdict.NO_QUORUM
    if tally.yes > tally.no and tally.yes / tally.total >= pass_fraction:
        return Verdict.PASS
    return Verdict.FAIL


class PollHandle:
    """Live state of one open poll."""

    def __init__(self, poll: Poll) -> None:
        self.poll = poll
        self.yes_voters: set[int] = set()
        self.no_voters: set[int] = set()
        self.task: asyncio.Task | None = None
        self.verdict: Verdict | None = None

    def tally(self) -> Tally:
        return Tally(yes=len(self.yes_voters), no=len(self.no_voters))


VerdictCallback = Callable[[Poll, Verdict, Tally], Awaitable[None]]


def build_prompt(
    kind: PollKind, subject: MemberInfo, reason: str, duration_ms: int, closes_at: int
) -> discord.Embed:
    hours = duration_ms / 3_600_000
    if kind is PollKind.PRUNE:
        title = f"Kick Poll: {subject.display_name}"
        question = "Should they be kicked for inactivity?"
        legend = f"{YES_EMOJI} = Yes, Kick\n{NO_EMOJI} = No, Keep"
        color = discord.Color.red()
    else:
        title = f"Verification Poll: {subject.display_name}"
        question = "Should they be verified as a full member?"
        legend = f"{YES_EMOJI} = Yes, Verify\n{NO_EMOJI} = No, Not yet"
        color = discord.Color.green()
    embed = discord.Embed(
        title=title,
        description=f"{subject.mention} {reason}\n\n{question}",
        color=color,
    )
    embed.add_field(name="React to Vote", value=legend, inline=False)
    embed.add_field(name="Closes", value=f"<t:{closes_at // 1000}:R>", inline=False)
    embed.set_footer(text=f"Poll ends in {hours:g} hours.")
    return embed


class PollEngine:
    """Start polls, collect reaction ballots and deliver one verdict each.

    ``on_verdict`` is awaited once per poll that reaches a verdict. A poll
    whose subject presence cannot be confirmed at close is dropped without
    a verdict, the same as a poll lost to a restart.
    """

    def __init__(
        self,
        gateway: Gateway,
        channel_id: int,
        on_verdict: VerdictCallback,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.channel_id = channel_id
        self.on_verdict = on_verdict
        self._sleep = sleep
        self._open: dict[int, PollHandle] = {}

    @property
    def open_polls(self) -> list[PollHandle]:
        return list(self._open.values())

    def has_open_poll(self, subject_id: int, kind: PollKind) -> bool:
        return any(
            h.poll.subject_id == subject_id and h.poll.kind is kind
            for h in self._open.values()
        )

    async def check_subject(self, subject_id: int) -> MemberInfo:
        """Return the subject if a poll may be opened about them."""
        if subject_id == self.gateway.agent_id:
            raise PrivilegeConflict(subject_id, "is the automation agent")
        subject = await self.gateway.fetch_member(subject_id)
        if subject is None:
            raise SubjectGone(subject_id)
        if subject.bot:
            raise PrivilegeConflict(subject_id, "is a bot account")
        if subject.owner:
            raise PrivilegeConflict(subject_id, "owns the server")
        if subject.moderator:
            raise PrivilegeConflict(subject_id, "has moderator permissions")
        agent_position = await self.gateway.agent_top_role_position()
        if subject.top_role_position >= agent_position:
            raise PrivilegeConflict(
                subject_id, "has a role higher than or equal to mine", notify=True
            )
        return subject

    async def start(
        self,
        subject_id: int,
        reason: str,
        kind: PollKind,
        duration_ms: int,
        pass_fraction: float,
        now: int,
    ) -> PollHandle:
        """Open a poll and return immediately; the window runs as a task.

        Raises:
            SubjectGone: the subject already left.
            PrivilegeConflict: the subject cannot be acted on.
            PollStartError: the prompt could not be posted.
        """
        subject = await self.check_subject(subject_id)
        embed = build_prompt(kind, subject, reason, duration_ms, now + duration_ms)
        try:
            message_id = await self.gateway.post_message(self.channel_id, embed=embed)
            await self.gateway.add_reaction(self.channel_id, message_id, YES_EMOJI)
            await self.gateway.add_reaction(self.channel_id, message_id, NO_EMOJI)
        except GatewayError as exc:
            raise PollStartError(f"could not open {kind.value} poll for {subject_id}: {exc}") from exc

        poll = Poll(
            subject_id=subject_id,
            subject_name=subject.display_name,
            reason=reason,
            kind=kind,
            opened_at=now,
            duration_ms=duration_ms,
            pass_fraction=pass_fraction,
            channel_id=self.channel_id,
            message_id=message_id,
        )
        handle = PollHandle(poll)
        self._open[message_id] = handle
        handle.task = asyncio.create_task(self._run(handle))
        structured_log(
            log,
            logging.INFO,
            "Poll opened",
            kind=kind.value,
            user_id=subject_id,
            message_id=message_id,
            duration_ms=duration_ms,
            closes_at=poll.closes_at,
        )
        return handle

    def record_vote(
        self,
        message_id: int,
        emoji: str,
        user_id: int,
        *,
        added: bool = True,
        voter_is_bot: bool = False,
    ) -> bool:
        """Apply a reaction add/remove to an open poll.

        Returns True when the ballot changed a poll's voter sets.
        """
        handle = self._open.get(message_id)
        if handle is None:
            return False
        if voter_is_bot or user_id == self.gateway.agent_id:
            return False
        if emoji == YES_EMOJI:
            voters = handle.yes_voters
        elif emoji == NO_EMOJI:
            voters = handle.no_voters
        else:
            return False
        if added:
            if user_id in voters:
                return False
            voters.add(user_id)
        else:
            if user_id not in voters:
                return False
            voters.discard(user_id)
        return True

    async def resolve(self, handle: PollHandle) -> Verdict | None:
        """Close voting on *handle* and compute its verdict."""
        self._open.pop(handle.poll.message_id, None)
        tally = handle.tally()
        try:
            subject = await self.gateway.fetch_member(handle.poll.subject_id)
        except GatewayError as exc:
            log.warning(
                "Could not confirm presence of %s when closing poll %s; dropping it: %s",
                handle.poll.subject_id,
                handle.poll.message_id,
                exc,
            )
            return None
        if subject is None:
            handle.verdict = Verdict.SUBJECT_GONE
        else:
            handle.verdict = compute_verdict(tally, handle.poll.pass_fraction)
        structured_log(
            log,
            logging.INFO,
            "Poll closed",
            kind=handle.poll.kind.value,
            user_id=handle.poll.subject_id,
            yes=tally.yes,
            no=tally.no,
            verdict=handle.verdict.value,
        )
        return handle.verdict

    async def _run(self, handle: PollHandle) -> None:
        await self._sleep(handle.poll.duration_ms / 1000)
        verdict = await self.resolve(handle)
        if verdict is None:
            return
        try:
            await self.on_verdict(handle.poll, verdict, handle.tally())
        except Exception:
            log.exception(
                "Failed to apply %s verdict for %s", verdict.value, handle.poll.subject_id
            )

    async def close(self) -> None:
        """Cancel every open poll; they are treated as lost."""
        handles = list(self._open.values())
        self._open.clear()
        for handle in handles:
            if handle.task is not None:
                handle.task.cancel()
        for handle in handles:
            if handle.task is not None:
                try:
                    await handle.task
                except asyncio.CancelledError:
                    pass
        if handles:
            log.info("Discarded %d open poll(s) on shutdown", len(handles))
