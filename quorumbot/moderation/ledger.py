"""Per-user activity ledger fed by the message stream."""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping

log = logging.getLogger(f"quorumbot.{__name__}")


@dataclass(frozen=True)
class UserRecord:
    """Activity counters for one member.

    Times are integer epoch milliseconds.
    """

    display_name: str
    joined_at: int
    message_count: int = 0
    last_activity_at: int | None = None
    verified: bool = False
    verification_message_count: int = 0


LedgerSnapshot = Mapping[int, UserRecord]


class ActivityLedger:
    """In-memory table of :class:`UserRecord` keyed by user id.

    Records are immutable values; every mutation swaps in a new record so a
    snapshot taken by a scan can never change underneath it.
    """

    def __init__(self, users: Mapping[int, UserRecord] | None = None) -> None:
        self._users: dict[int, UserRecord] = dict(users or {})

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._users

    def __len__(self) -> int:
        return len(self._users)

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._users))

    def get(self, user_id: int) -> UserRecord | None:
        return self._users.get(user_id)

    def record(self, user_id: int, display_name: str, now: int) -> UserRecord:
        """Count one activity event for *user_id*."""
        current = self._users.get(user_id)
        if current is None:
            # Activity seen before any join notification; joined_at falls back to now.
            current = UserRecord(display_name=display_name, joined_at=now)
        updated = replace(
            current,
            display_name=display_name,
            message_count=current.message_count + 1,
            last_activity_at=now,
            verification_message_count=(
                current.verification_message_count
                if current.verified
                else current.verification_message_count + 1
            ),
        )
        self._users[user_id] = updated
        return updated

    def member_joined(self, user_id: int, display_name: str, now: int) -> UserRecord:
        """Start a fresh record for a member who just joined (or re-joined)."""
        record = UserRecord(display_name=display_name, joined_at=now)
        if user_id in self._users:
            log.info("Replacing stale record for re-joining member %s", user_id)
        self._users[user_id] = record
        return record

    def reset_period_counters(self, counted: LedgerSnapshot | None = None) -> None:
        """Start the next pruning period.

        Without *counted* every ``message_count`` drops to zero. With the
        snapshot a scan read, only the counts it saw are taken off, so
        events recorded after the snapshot carry into the next period.
        """
        for user_id, record in list(self._users.items()):
            if not record.message_count:
                continue
            if counted is None:
                remaining = 0
            else:
                seen = counted.get(user_id)
                remaining = record.message_count - (seen.message_count if seen else 0)
            self._users[user_id] = replace(record, message_count=max(remaining, 0))

    def mark_verified(self, user_id: int) -> bool:
        """Flip ``verified`` on; returns False when there was nothing to change."""
        record = self._users.get(user_id)
        if record is None or record.verified:
            return False
        self._users[user_id] = replace(record, verified=True)
        return True

    def remove(self, user_id: int) -> bool:
        return self._users.pop(user_id, None) is not None

    def remove_many(self, user_ids: Iterable[int]) -> list[int]:
        return [uid for uid in user_ids if self.remove(uid)]

    def snapshot(self) -> LedgerSnapshot:
        """Return a read-only copy of the table for scan evaluation."""
        return MappingProxyType(dict(self._users))
