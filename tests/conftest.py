from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from quorumbot.infra.config import DAY_MS, HOUR_MS, ModerationConfig
from quorumbot.moderation import (
    ActivityLedger,
    GatewayError,
    LifecycleController,
    MemberInfo,
    PersistenceStore,
    ScanMarks,
)

AGENT_ID = 1
ANNOUNCE_CHANNEL = 500
T0 = 1_700_000_000_000


class FakeGateway:
    """In-memory guild used in place of Discord."""

    def __init__(self, agent_id: int = AGENT_ID, agent_position: int = 10) -> None:
        self.agent_id = agent_id
        self.agent_position = agent_position
        self.members: dict[int, MemberInfo] = {}
        self.posts: list[tuple[int, str | None, object]] = []
        self.reactions: list[tuple[int, str]] = []
        self.removed: list[tuple[int, str]] = []
        self.granted: list[tuple[int, int]] = []
        self.revoked: list[tuple[int, int]] = []
        self.failing: set[str] = set()
        self._next_message_id = 9000

    def add_member(self, user_id: int, name: str | None = None, **kwargs) -> MemberInfo:
        info = MemberInfo(user_id=user_id, display_name=name or f"user{user_id}", **kwargs)
        self.members[user_id] = info
        return info

    @property
    def texts(self) -> list[str]:
        return [content for _, content, _ in self.posts if content]

    @property
    def embeds(self) -> list[object]:
        return [embed for _, _, embed in self.posts if embed is not None]

    def _check(self, op: str) -> None:
        if op in self.failing:
            raise GatewayError(f"{op} failed")

    async def agent_top_role_position(self) -> int:
        return self.agent_position

    async def post_message(self, channel_id, content=None, *, embed=None) -> int:
        self._check("post_message")
        self._next_message_id += 1
        self.posts.append((channel_id, content, embed))
        return self._next_message_id

    async def add_reaction(self, channel_id, message_id, emoji) -> None:
        self._check("add_reaction")
        self.reactions.append((message_id, emoji))

    async def fetch_member(self, user_id):
        self._check("fetch_member")
        return self.members.get(user_id)

    async def fetch_member_ids(self):
        self._check("fetch_member_ids")
        return set(self.members)

    async def remove_member(self, user_id, reason) -> None:
        self._check("remove_member")
        self.members.pop(user_id, None)
        self.removed.append((user_id, reason))

    async def grant_role(self, user_id, role_id, reason) -> None:
        self._check("grant_role")
        self.granted.append((user_id, role_id))

    async def revoke_role(self, user_id, role_id, reason) -> None:
        self._check("revoke_role")
        self.revoked.append((user_id, role_id))


class Gate:
    """Stand-in for asyncio.sleep that waits until released."""

    def __init__(self) -> None:
        self.event = asyncio.Event()
        self.slept: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.slept.append(seconds)
        await self.event.wait()


class Clock:
    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def config() -> ModerationConfig:
    return ModerationConfig(
        prune_interval_ms=30 * DAY_MS,
        prune_message_threshold=10,
        prune_poll_duration_ms=24 * HOUR_MS,
        prune_pass_fraction=0.6,
        verify_window_ms=7 * DAY_MS,
        verify_message_threshold=3,
        verify_poll_duration_ms=24 * HOUR_MS,
        verify_pass_fraction=0.6,
        save_delay_seconds=0,
    )


@pytest.fixture()
def store(tmp_path) -> PersistenceStore:
    return PersistenceStore(tmp_path / "state.db", instance="test")


@pytest.fixture()
def ledger() -> ActivityLedger:
    return ActivityLedger()


@pytest.fixture()
def marks() -> ScanMarks:
    return ScanMarks()


@pytest.fixture()
def controller(ledger, store, marks, gateway, config, clock) -> LifecycleController:
    return LifecycleController(
        ledger,
        store,
        marks,
        gateway,
        config,
        announce_channel_id=ANNOUNCE_CHANNEL,
        verified_role_id=77,
        new_member_role_id=66,
        clock=clock,
    )
