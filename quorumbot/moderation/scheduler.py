"""Recurring pruning and verification scans.

Each scan reads a ledger snapshot, picks candidates through the lifecycle
controller and opens one poll per candidate, one after another. Scans that
came due while the bot was down run once at startup before the timers are
armed.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..infra.config import DAY_MS, ModerationConfig
from ..infra.logging import structured_log
from ..util import chunk_text, now_ms
from .errors import GatewayError, PollStartError, PrivilegeConflict, ScanAborted, SubjectGone
from .gateway import Gateway
from .ledger import ActivityLedger
from .lifecycle import LifecycleController
from .polls import PollEngine, PollKind
from .store import ScanMarks

log = logging.getLogger(f"quorumbot.{__name__}")

PRUNE_JOB_ID = "prune_scan"
VERIFY_JOB_ID = "verification_scan"

FailureCallback = Callable[[str, Exception], Awaitable[None]]


@dataclass
class ScanReport:
    kind: PollKind
    candidates: list[int] = field(default_factory=list)
    opened: list[int] = field(default_factory=list)
    skipped: dict[int, str] = field(default_factory=dict)
    departed: list[int] = field(default_factory=list)


def _days_label(ms: int) -> str:
    return f"{ms / DAY_MS:g}"


class ScanScheduler:
    def __init__(
        self,
        ledger: ActivityLedger,
        controller: LifecycleController,
        polls: PollEngine,
        gateway: Gateway,
        marks: ScanMarks,
        *,
        scheduler: AsyncIOScheduler | None = None,
        clock: Callable[[], int] = now_ms,
        on_failure: FailureCallback | None = None,
    ) -> None:
        self.ledger = ledger
        self.controller = controller
        self.polls = polls
        self.gateway = gateway
        self.marks = marks
        self.scheduler = scheduler or AsyncIOScheduler(timezone=pytz.utc)
        self.clock = clock
        self.on_failure = on_failure
        self._locks = {PollKind.PRUNE: asyncio.Lock(), PollKind.VERIFY: asyncio.Lock()}
        self._armed = False

    @property
    def config(self) -> ModerationConfig:
        return self.controller.config

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _trigger(self, interval_ms: int, last_at: int) -> IntervalTrigger:
        next_at = last_at + interval_ms
        start_date = None
        if next_at > self.clock():
            start_date = datetime.fromtimestamp(next_at / 1000, tz=pytz.utc)
        return IntervalTrigger(
            seconds=interval_ms / 1000, start_date=start_date, timezone=pytz.utc
        )

    async def start(self) -> None:
        """Run overdue scans once, then arm both recurring timers."""
        now = self.clock()
        if now - self.marks.last_prune_scan_at >= self.config.prune_interval_ms:
            log.info("Pruning scan is overdue; running now")
            await self._prune_job()
        if now - self.marks.last_verification_scan_at >= self.config.verify_scan_interval_ms:
            log.info("Verification scan is overdue; running now")
            await self._verify_job()

        self.scheduler.add_job(
            self._prune_job,
            self._trigger(self.config.prune_interval_ms, self.marks.last_prune_scan_at),
            id=PRUNE_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self._verify_job,
            self._trigger(
                self.config.verify_scan_interval_ms, self.marks.last_verification_scan_at
            ),
            id=VERIFY_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        self._armed = True
        log.info(
            "Scan timers armed (pruning every %s days, verification every %s days)",
            _days_label(self.config.prune_interval_ms),
            _days_label(self.config.verify_scan_interval_ms),
        )

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self._armed = False

    def set_prune_interval(self, interval_ms: int) -> None:
        """Change the pruning period and re-arm its timer.

        Raises:
            ConfigError: the new period is not positive.
        """
        self.controller.config = self.config.with_prune_interval(interval_ms)
        if self._armed:
            self.scheduler.reschedule_job(
                PRUNE_JOB_ID,
                trigger=self._trigger(interval_ms, self.marks.last_prune_scan_at),
            )
        log.info("Pruning interval set to %s days", _days_label(interval_ms))

    def set_verify_window(self, window_ms: int) -> None:
        """Change the verification window; the scan period follows it."""
        self.controller.config = self.config.with_verify_window(window_ms)
        if self._armed:
            self.scheduler.reschedule_job(
                VERIFY_JOB_ID,
                trigger=self._trigger(
                    self.config.verify_scan_interval_ms,
                    self.marks.last_verification_scan_at,
                ),
            )
        log.info("Verification window set to %s days", _days_label(window_ms))

    async def _prune_job(self) -> None:
        await self._run_safe("pruning", self.run_prune_scan)

    async def _verify_job(self) -> None:
        await self._run_safe("verification", self.run_verification_scan)

    async def _run_safe(self, name: str, scan: Callable[[], Awaitable[ScanReport | None]]) -> None:
        try:
            await scan()
        except ScanAborted as exc:
            log.warning("%s scan aborted: %s", name.capitalize(), exc)
            await self._notify_failure(name, exc)
        except Exception as exc:
            log.exception("%s scan failed", name.capitalize())
            await self._notify_failure(name, exc)

    async def _notify_failure(self, name: str, exc: Exception) -> None:
        if self.on_failure is None:
            return
        try:
            await self.on_failure(name, exc)
        except Exception:
            log.exception("Failure callback for %s scan raised", name)

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    async def run_prune_scan(self) -> ScanReport | None:
        """Run one pruning scan; returns None if one is already running."""
        lock = self._locks[PollKind.PRUNE]
        if lock.locked():
            log.info("Pruning scan already in progress; skipping")
            return None
        async with lock:
            return await self._prune_scan()

    async def run_verification_scan(self) -> ScanReport | None:
        """Run one verification scan; returns None if one is already running."""
        lock = self._locks[PollKind.VERIFY]
        if lock.locked():
            log.info("Verification scan already in progress; skipping")
            return None
        async with lock:
            return await self._verification_scan()

    async def _prune_scan(self) -> ScanReport:
        cfg = self.config
        now = self.clock()
        report = ScanReport(PollKind.PRUNE)
        days = _days_label(cfg.prune_interval_ms)
        threshold = cfg.prune_message_threshold

        await self._post_or_abort(
            f"📢 **Activity Scan Started!** Checking message counts from the last {days} day(s)."
        )

        snapshot = self.ledger.snapshot()
        try:
            present = await self.gateway.fetch_member_ids()
        except GatewayError as exc:
            raise ScanAborted(f"could not list guild members: {exc}") from exc

        departed = [uid for uid in snapshot if uid not in present]
        report.departed = self.controller.forget_departed(departed)
        eligible = {uid: rec for uid, rec in snapshot.items() if uid in present}

        report.candidates = self.controller.evaluate_prune_candidates(eligible)
        if not report.candidates:
            await self.controller.announce("✅ All monitored users meet the activity criteria!")
        else:
            await self.controller.announce(
                f"🔍 Found {len(report.candidates)} candidate(s) with low activity "
                f"(< {threshold} messages). Initiating polls..."
            )
        for user_id in report.candidates:
            record = eligible[user_id]
            reason = (
                f"has had {record.message_count} message(s) in the last {days} day(s) "
                f"(threshold is {threshold})."
            )
            await self._open_poll(
                report,
                user_id,
                record.display_name,
                reason,
                PollKind.PRUNE,
                cfg.prune_poll_duration_ms,
                cfg.prune_pass_fraction,
                now,
            )

        candidate_ids = set(report.candidates)
        active = [uid for uid in eligible if uid not in candidate_ids]
        if active:
            mentions = ", ".join(f"<@{uid}>" for uid in active)
            text = (
                "🎉 The following users have met the activity criteria and continue "
                f"to enjoy full access: {mentions}"
            )
            for chunk in chunk_text(text):
                await self.controller.announce(chunk)

        self.ledger.reset_period_counters(snapshot)
        self.marks.last_prune_scan_at = self.clock()
        self.controller.persist()

        await self.controller.announce(
            "🏁 Activity scan and necessary actions completed. "
            "Message counts have been reset for the next period."
        )
        structured_log(
            log,
            logging.INFO,
            "Pruning scan completed",
            candidates=len(report.candidates),
            opened=len(report.opened),
            skipped=len(report.skipped),
            departed=len(report.departed),
        )
        return report

    async def _verification_scan(self) -> ScanReport:
        cfg = self.config
        now = self.clock()
        report = ScanReport(PollKind.VERIFY)

        snapshot = self.ledger.snapshot()
        report.candidates = self.controller.evaluate_verify_candidates(snapshot, now)
        if report.candidates:
            await self._post_or_abort(
                f"🔍 Found {len(report.candidates)} new member(s) ready for verification. "
                "Initiating polls..."
            )
        for user_id in report.candidates:
            record = snapshot[user_id]
            reason = (
                f"joined {_days_label(now - record.joined_at)} day(s) ago and has posted "
                f"{record.verification_message_count} message(s) "
                f"(threshold is {cfg.verify_message_threshold})."
            )
            await self._open_poll(
                report,
                user_id,
                record.display_name,
                reason,
                PollKind.VERIFY,
                cfg.verify_poll_duration_ms,
                cfg.verify_pass_fraction,
                now,
            )

        self.marks.last_verification_scan_at = self.clock()
        self.controller.persist()
        structured_log(
            log,
            logging.INFO,
            "Verification scan completed",
            candidates=len(report.candidates),
            opened=len(report.opened),
            skipped=len(report.skipped),
        )
        return report

    async def _post_or_abort(self, text: str) -> None:
        try:
            await self.gateway.post_message(self.controller.announce_channel_id, text)
        except GatewayError as exc:
            raise ScanAborted(f"announcement channel unavailable: {exc}") from exc

    async def _open_poll(
        self,
        report: ScanReport,
        user_id: int,
        name: str,
        reason: str,
        kind: PollKind,
        duration_ms: int,
        pass_fraction: float,
        now: int,
    ) -> None:
        """Start one poll; any failure only affects this candidate."""
        if self.polls.has_open_poll(user_id, kind):
            report.skipped[user_id] = "poll already open"
            return
        try:
            await self.polls.start(user_id, reason, kind, duration_ms, pass_fraction, now)
        except SubjectGone:
            report.skipped[user_id] = "left the server"
            self.controller.handle_departure(user_id)
        except PrivilegeConflict as exc:
            report.skipped[user_id] = exc.reason
            log.info("Skipping %s poll for %s: %s", kind.value, name, exc.reason)
            if exc.notify:
                await self.controller.announce(
                    f"⚠️ Cannot create a {kind.value} poll for {name} as they have "
                    "a role higher than or equal to mine."
                )
        except PollStartError as exc:
            report.skipped[user_id] = "poll could not be posted"
            log.warning("%s", exc)
            await self.controller.announce(f"⚠️ Could not create a poll for {name}.")
        except GatewayError as exc:
            report.skipped[user_id] = "member lookup failed"
            log.warning("Could not check %s before opening a poll: %s", user_id, exc)
        else:
            report.opened.append(user_id)
