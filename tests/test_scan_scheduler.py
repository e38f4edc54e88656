"""Tests for pruning/verification scans and their timers."""
import asyncio
from dataclasses import replace
from datetime import datetime, timedelta

import pytest
import pytz

from quorumbot.infra import ConfigError
from quorumbot.infra.config import DAY_MS
from quorumbot.moderation import PollEngine, PollKind, ScanAborted, ScanScheduler
from quorumbot.moderation.polls import NO_EMOJI, YES_EMOJI
from quorumbot.moderation.scheduler import PRUNE_JOB_ID, VERIFY_JOB_ID

from conftest import ANNOUNCE_CHANNEL, T0, Gate


class FakeScheduler:
    def __init__(self):
        self.jobs = {}
        self.rescheduled = []
        self.running = False

    def add_job(self, func, trigger, id, **kwargs):
        self.jobs[id] = (func, trigger, kwargs)

    def reschedule_job(self, job_id, trigger):
        self.rescheduled.append((job_id, trigger))

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False


def build(ledger, controller, gateway, marks, clock):
    gate = Gate()
    failures = []

    async def on_failure(name, exc):
        failures.append((name, exc))

    polls = PollEngine(gateway, ANNOUNCE_CHANNEL, controller.on_poll_closed, sleep=gate)
    scans = ScanScheduler(
        ledger,
        controller,
        polls,
        gateway,
        marks,
        scheduler=FakeScheduler(),
        clock=clock,
        on_failure=on_failure,
    )
    return scans, polls, gate, failures


def test_prune_scan_polls_low_activity_and_resets(ledger, controller, gateway, marks, store, clock):
    gateway.add_member(10, "A")
    gateway.add_member(11, "B")
    for _ in range(12):
        ledger.record(10, "A", T0)
    for _ in range(4):
        ledger.record(11, "B", T0)
    clock.advance(DAY_MS)

    async def run():
        scans, polls, _, _ = build(ledger, controller, gateway, marks, clock)
        report = await scans.run_prune_scan()
        open_subjects = [h.poll.subject_id for h in polls.open_polls]
        await polls.close()
        return report, open_subjects

    report, open_subjects = asyncio.run(run())
    assert report.candidates == [11]
    assert report.opened == [11]
    assert open_subjects == [11]
    assert ledger.get(10).message_count == 0
    assert ledger.get(11).message_count == 0
    assert marks.last_prune_scan_at == clock.now
    saved = store.load()
    assert saved.last_prune_scan_at == clock.now
    assert saved.users[10].message_count == 0
    texts = gateway.texts
    assert texts[0].startswith("📢 **Activity Scan Started!**")
    assert any("Found 1 candidate(s)" in t for t in texts)
    assert any("<@10>" in t for t in texts)
    assert "completed" in texts[-1]


def test_prune_scan_forgets_departed_users(ledger, controller, gateway, marks, clock):
    gateway.add_member(10, "A")
    for _ in range(12):
        ledger.record(10, "A", T0)
    ledger.record(12, "gone", T0)

    async def run():
        scans, polls, _, _ = build(ledger, controller, gateway, marks, clock)
        report = await scans.run_prune_scan()
        await polls.close()
        return report

    report = asyncio.run(run())
    assert report.departed == [12]
    assert report.candidates == []
    assert 12 not in ledger
    assert any("All monitored users meet" in t for t in gateway.texts)


def test_prune_scan_aborts_when_channel_unavailable(ledger, controller, gateway, marks, clock):
    gateway.add_member(10, "A")
    ledger.record(10, "A", T0)
    gateway.failing.add("post_message")

    async def run():
        scans, _, _, failures = build(ledger, controller, gateway, marks, clock)
        with pytest.raises(ScanAborted):
            await scans.run_prune_scan()
        await scans._prune_job()
        return failures

    failures = asyncio.run(run())
    assert [name for name, _ in failures] == ["pruning"]
    assert isinstance(failures[0][1], ScanAborted)
    assert ledger.get(10).message_count == 1
    assert marks.last_prune_scan_at == 0


def test_prune_scan_aborts_when_member_list_fails(ledger, controller, gateway, marks, clock):
    ledger.record(10, "A", T0)
    gateway.failing.add("fetch_member_ids")

    async def run():
        scans, _, _, _ = build(ledger, controller, gateway, marks, clock)
        with pytest.raises(ScanAborted):
            await scans.run_prune_scan()

    asyncio.run(run())
    assert ledger.get(10).message_count == 1


def test_privileged_candidates_are_skipped(ledger, controller, gateway, marks, clock):
    gateway.add_member(9, "Boss", top_role_position=50)
    gateway.add_member(8, "Owner", owner=True)
    ledger.record(9, "Boss", T0)
    ledger.record(8, "Owner", T0)

    async def run():
        scans, polls, _, _ = build(ledger, controller, gateway, marks, clock)
        report = await scans.run_prune_scan()
        await polls.close()
        return report

    report = asyncio.run(run())
    assert sorted(report.candidates) == [8, 9]
    assert report.opened == []
    assert set(report.skipped) == {8, 9}
    assert any("Found 2 candidate(s) with low activity" in t for t in gateway.texts)
    assert sum("Cannot create a prune poll for Boss" in t for t in gateway.texts) == 1
    assert not any("Owner" in t and "Cannot create" in t for t in gateway.texts)


def test_subject_with_open_poll_is_not_polled_again(ledger, controller, gateway, marks, clock):
    gateway.add_member(11, "B")
    ledger.record(11, "B", T0)

    async def run():
        scans, polls, _, _ = build(ledger, controller, gateway, marks, clock)
        first = await scans.run_prune_scan()
        second = await scans.run_prune_scan()
        count = len(polls.open_polls)
        await polls.close()
        return first, second, count

    first, second, count = asyncio.run(run())
    assert first.opened == [11]
    assert second.opened == []
    assert second.skipped == {11: "poll already open"}
    assert count == 1


def test_concurrent_scan_is_skipped(ledger, controller, gateway, marks, clock):
    async def run():
        scans, _, _, _ = build(ledger, controller, gateway, marks, clock)
        async with scans._locks[PollKind.PRUNE]:
            return await scans.run_prune_scan()

    assert asyncio.run(run()) is None


def test_verification_scan_through_poll_to_verified(ledger, controller, gateway, marks, clock):
    controller.config = replace(controller.config, verify_pass_fraction=0.75)
    gateway.add_member(10, "newbie")
    ledger.member_joined(10, "newbie", T0)
    for i in range(5):
        ledger.record(10, "newbie", T0 + i * DAY_MS)
    clock.now = T0 + 7 * DAY_MS

    async def run():
        scans, polls, gate, _ = build(ledger, controller, gateway, marks, clock)
        report = await scans.run_verification_scan()
        handle = polls.open_polls[0]
        assert handle.poll.pass_fraction == 0.75
        mid = handle.poll.message_id
        for voter in range(100, 108):
            polls.record_vote(mid, YES_EMOJI, voter)
        for voter in (200, 201):
            polls.record_vote(mid, NO_EMOJI, voter)
        gate.event.set()
        await handle.task
        return report

    report = asyncio.run(run())
    assert report.candidates == [10]
    assert marks.last_verification_scan_at == clock.now
    rec = ledger.get(10)
    assert rec.verified is True
    assert rec.verification_message_count == 5
    assert (10, 77) in gateway.granted
    assert any("now verified" in t for t in gateway.texts)


def test_verification_scan_without_candidates_is_quiet(ledger, controller, gateway, marks, clock):
    ledger.member_joined(10, "newbie", T0)

    async def run():
        scans, _, _, _ = build(ledger, controller, gateway, marks, clock)
        return await scans.run_verification_scan()

    report = asyncio.run(run())
    assert report.candidates == []
    assert gateway.posts == []
    assert marks.last_verification_scan_at == clock.now


def test_start_runs_overdue_scans_then_arms_timers(ledger, controller, gateway, marks, clock):
    async def run():
        scans, _, _, _ = build(ledger, controller, gateway, marks, clock)
        await scans.start()
        return scans

    scans = asyncio.run(run())
    assert marks.last_prune_scan_at == T0
    assert marks.last_verification_scan_at == T0
    assert scans.scheduler.running
    assert set(scans.scheduler.jobs) == {PRUNE_JOB_ID, VERIFY_JOB_ID}
    _, trigger, kwargs = scans.scheduler.jobs[PRUNE_JOB_ID]
    assert trigger.interval == timedelta(days=30)
    assert kwargs["coalesce"] is True
    _, verify_trigger, _ = scans.scheduler.jobs[VERIFY_JOB_ID]
    assert verify_trigger.interval == timedelta(days=3.5)


def test_start_aligns_timer_to_last_scan(ledger, controller, gateway, marks, clock):
    marks.last_prune_scan_at = T0 - DAY_MS
    marks.last_verification_scan_at = T0 - DAY_MS

    async def run():
        scans, _, _, _ = build(ledger, controller, gateway, marks, clock)
        await scans.start()
        return scans

    scans = asyncio.run(run())
    assert gateway.posts == []
    _, trigger, _ = scans.scheduler.jobs[PRUNE_JOB_ID]
    expected = datetime.fromtimestamp((T0 + 29 * DAY_MS) / 1000, tz=pytz.utc)
    assert trigger.start_date == expected


def test_set_prune_interval_reschedules(ledger, controller, gateway, marks, clock):
    marks.last_prune_scan_at = T0
    marks.last_verification_scan_at = T0

    async def run():
        scans, _, _, _ = build(ledger, controller, gateway, marks, clock)
        await scans.start()
        scans.set_prune_interval(10 * DAY_MS)
        scans.set_verify_window(2 * DAY_MS)
        return scans

    scans = asyncio.run(run())
    assert controller.config.prune_interval_ms == 10 * DAY_MS
    assert controller.config.verify_scan_interval_ms == DAY_MS
    ids = [job_id for job_id, _ in scans.scheduler.rescheduled]
    assert ids == [PRUNE_JOB_ID, VERIFY_JOB_ID]
    assert scans.scheduler.rescheduled[0][1].interval == timedelta(days=10)


def test_invalid_interval_rejected(ledger, controller, gateway, marks, clock):
    async def run():
        scans, _, _, _ = build(ledger, controller, gateway, marks, clock)
        with pytest.raises(ConfigError):
            scans.set_prune_interval(0)
        with pytest.raises(ConfigError):
            scans.set_verify_window(-DAY_MS)
        return scans

    scans = asyncio.run(run())
    assert controller.config.prune_interval_ms == 30 * DAY_MS
    assert scans.scheduler.rescheduled == []
