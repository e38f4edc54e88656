"""Apply poll verdicts and manual overrides to members.

Member lifecycle::

    New ──verify poll / manual verify──▶ Verified
     │                                      │
     └──prune poll / manual deny / left──▶ Removed ◀──┘

``Removed`` is terminal; a member who re-joins gets a fresh ``New`` record.
Every path that mutates the ledger ends with a snapshot save.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from ..infra.config import ModerationConfig
from ..infra.logging import structured_log
from ..util import now_ms
from .errors import GatewayError
from .gateway import Gateway
from .ledger import ActivityLedger, LedgerSnapshot
from .polls import NO_EMOJI, YES_EMOJI, Poll, PollKind, Tally, Verdict
from .store import EngineSnapshot, PersistenceStore, ScanMarks

log = logging.getLogger(f"quorumbot.{__name__}")


class Outcome(Enum):
    REMOVED = "removed"
    VERIFIED = "verified"
    NO_ACTION = "no_action"
    CLEANED_UP = "cleaned_up"
    SUPERSEDED = "superseded"
    FAILED = "failed"


class LifecycleController:
    def __init__(
        self,
        ledger: ActivityLedger,
        store: PersistenceStore,
        marks: ScanMarks,
        gateway: Gateway,
        config: ModerationConfig,
        *,
        announce_channel_id: int,
        verified_role_id: int = 0,
        new_member_role_id: int = 0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.marks = marks
        self.gateway = gateway
        self.config = config
        self.announce_channel_id = announce_channel_id
        self.verified_role_id = verified_role_id
        self.new_member_role_id = new_member_role_id
        self.clock = clock

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def capture(self) -> EngineSnapshot:
        return EngineSnapshot(
            last_prune_scan_at=self.marks.last_prune_scan_at,
            last_verification_scan_at=self.marks.last_verification_scan_at,
            users=dict(self.ledger.snapshot()),
        )

    def persist(self) -> None:
        self.store.cancel_pending()
        self.store.save(self.capture())

    def persist_soon(self) -> None:
        """Batch saves for high-frequency activity recording."""
        self.store.schedule_save(self.capture, self.config.save_delay_seconds)

    # ------------------------------------------------------------------
    # Candidate selection
    # ------------------------------------------------------------------

    def evaluate_prune_candidates(self, snapshot: LedgerSnapshot) -> list[int]:
        """Users whose activity this period is below the pruning threshold."""
        threshold = self.config.prune_message_threshold
        return [
            user_id
            for user_id, record in snapshot.items()
            if record.message_count < threshold and user_id != self.gateway.agent_id
        ]

    def evaluate_verify_candidates(self, snapshot: LedgerSnapshot, now: int) -> list[int]:
        """Unverified users past the verification window with enough messages."""
        window = self.config.verify_window_ms
        threshold = self.config.verify_message_threshold
        return [
            user_id
            for user_id, record in snapshot.items()
            if not record.verified
            and now - record.joined_at >= window
            and record.verification_message_count >= threshold
            and user_id != self.gateway.agent_id
        ]

    # ------------------------------------------------------------------
    # Membership events
    # ------------------------------------------------------------------

    async def handle_join(self, user_id: int, display_name: str, now: int) -> None:
        self.ledger.member_joined(user_id, display_name, now)
        self.persist()
        if not self.new_member_role_id:
            return
        try:
            await self.gateway.grant_role(
                user_id, self.new_member_role_id, "New member awaiting verification"
            )
        except GatewayError as exc:
            log.warning("Could not grant new-member role to %s: %s", user_id, exc)

    def handle_departure(self, user_id: int) -> bool:
        """Forget a member who left; returns True if a record was removed."""
        if not self.ledger.remove(user_id):
            return False
        log.info("Removed activity record for departed member %s", user_id)
        self.persist()
        return True

    def forget_departed(self, user_ids: list[int]) -> list[int]:
        """Forget several departed members with a single save."""
        removed = self.ledger.remove_many(user_ids)
        if removed:
            log.info("Removed activity records for %d departed member(s)", len(removed))
            self.persist()
        return removed

    # ------------------------------------------------------------------
    # Verdicts
    # ------------------------------------------------------------------

    async def apply_verdict(self, user_id: int, kind: PollKind, verdict: Verdict) -> Outcome:
        if verdict is Verdict.SUBJECT_GONE:
            self.handle_departure(user_id)
            outcome = Outcome.CLEANED_UP
        elif verdict is not Verdict.PASS:
            outcome = Outcome.NO_ACTION
        elif kind is PollKind.PRUNE:
            outcome = await self._remove(user_id, "Removed by inactivity poll")
        else:
            outcome = await self._verify(user_id, "Approved by verification poll")
        structured_log(
            log,
            logging.INFO,
            "Verdict applied",
            kind=kind.value,
            user_id=user_id,
            verdict=verdict.value,
            outcome=outcome.value,
        )
        return outcome

    async def on_poll_closed(self, poll: Poll, verdict: Verdict, tally: Tally) -> Outcome:
        """Apply a finished poll and announce the result."""
        outcome = await self.apply_verdict(poll.subject_id, poll.kind, verdict)
        await self.announce(result_message(poll, verdict, tally, outcome))
        return outcome

    async def manual_verify(self, user_id: int) -> Outcome:
        if await self.gateway.fetch_member(user_id) is None:
            self.handle_departure(user_id)
            return Outcome.CLEANED_UP
        return await self._verify(user_id, "Verified manually by a moderator")

    async def manual_deny(self, user_id: int, reason: str | None = None) -> Outcome:
        if await self.gateway.fetch_member(user_id) is None:
            self.handle_departure(user_id)
            return Outcome.CLEANED_UP
        return await self._remove(user_id, reason or "Removed manually by a moderator")

    async def _remove(self, user_id: int, reason: str) -> Outcome:
        try:
            await self.gateway.remove_member(user_id, reason)
        except GatewayError as exc:
            log.warning("Failed to remove member %s: %s", user_id, exc)
            return Outcome.FAILED
        self.ledger.remove(user_id)
        self.persist()
        return Outcome.REMOVED

    async def _verify(self, user_id: int, reason: str) -> Outcome:
        record = self.ledger.get(user_id)
        if record is not None and record.verified:
            log.info("Verification of %s superseded; already verified", user_id)
            return Outcome.SUPERSEDED

        if self.verified_role_id:
            try:
                await self.gateway.grant_role(user_id, self.verified_role_id, reason)
            except GatewayError as exc:
                log.warning("Failed to grant verified role to %s: %s", user_id, exc)
                return Outcome.FAILED
        if self.new_member_role_id:
            try:
                await self.gateway.revoke_role(user_id, self.new_member_role_id, reason)
            except GatewayError as exc:
                log.warning("Failed to revoke new-member role from %s: %s", user_id, exc)

        if record is None:
            member = await self._lookup_name(user_id)
            self.ledger.member_joined(user_id, member, self.clock())
        self.ledger.mark_verified(user_id)
        self.persist()
        return Outcome.VERIFIED

    async def _lookup_name(self, user_id: int) -> str:
        try:
            member = await self.gateway.fetch_member(user_id)
        except GatewayError:
            member = None
        return member.display_name if member else str(user_id)

    async def announce(self, text: str) -> bool:
        """Post to the announcement channel; failures are logged, not raised."""
        try:
            await self.gateway.post_message(self.announce_channel_id, text)
        except GatewayError as exc:
            log.warning("Failed to post announcement: %s", exc)
            return False
        return True


def result_message(poll: Poll, verdict: Verdict, tally: Tally, outcome: Outcome) -> str:
    mention = f"<@{poll.subject_id}>"
    header = (
        f"Poll for {poll.subject_name} ended. Results:\n"
        f"{YES_EMOJI} Yes votes: {tally.yes}\n"
        f"{NO_EMOJI} No votes: {tally.no}\n\n"
    )
    if verdict is Verdict.SUBJECT_GONE:
        return header + f"{poll.subject_name} left the server before the poll concluded."
    if verdict is Verdict.NO_QUORUM:
        return header + "No votes were cast. No action will be taken."
    if verdict is Verdict.FAIL:
        if poll.kind is PollKind.PRUNE:
            return header + f"**Poll did not pass.** {mention} will not be kicked."
        return header + f"**Poll did not pass.** {mention} stays unverified for now."

    if poll.kind is PollKind.PRUNE:
        if outcome is Outcome.REMOVED:
            return header + f"**Poll passed!** {YES_EMOJI} {poll.subject_name} has been kicked."
        return header + (
            f"**Poll passed!**\n⚠️ **Failed to kick {poll.subject_name}.** "
            "I might lack permissions or they have a higher role."
        )
    if outcome is Outcome.VERIFIED:
        return header + f"**Poll passed!** {mention} is now verified. Welcome aboard!"
    if outcome is Outcome.SUPERSEDED:
        return header + f"**Poll passed!** {mention} was already verified."
    return header + f"**Poll passed!**\n⚠️ **Failed to verify {poll.subject_name}.** Check my role permissions."
