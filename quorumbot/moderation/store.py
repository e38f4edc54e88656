"""SQLite-backed persistence for the engine snapshot.

One row per engine instance holds the whole snapshot as JSON. Every save
overwrites the row, so a reader never sees a half-applied update.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from .ledger import UserRecord

log = logging.getLogger(f"quorumbot.{__name__}")

DEFAULT_DB_PATH = Path("data/state.db")

# Key names used by the legacy data.json format
_LEGACY_KEYS = {
    "lastScanTimestamp": "lastPruneScanAt",
}
_LEGACY_USER_KEYS = {
    "username": "displayName",
    "lastMessageTimestamp": "lastActivityAt",
}


@dataclass
class ScanMarks:
    """When each scan last completed, in epoch milliseconds."""

    last_prune_scan_at: int = 0
    last_verification_scan_at: int = 0


@dataclass
class EngineSnapshot:
    last_prune_scan_at: int = 0
    last_verification_scan_at: int = 0
    users: dict[int, UserRecord] = field(default_factory=dict)

    @property
    def marks(self) -> ScanMarks:
        return ScanMarks(self.last_prune_scan_at, self.last_verification_scan_at)


def _int_or(value: Any, default: int | None) -> int | None:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def record_to_dict(record: UserRecord) -> dict[str, Any]:
    return {
        "displayName": record.display_name,
        "messageCount": record.message_count,
        "lastActivityAt": record.last_activity_at,
        "joinedAt": record.joined_at,
        "verified": record.verified,
        "verificationMessageCount": record.verification_message_count,
    }


def record_from_dict(data: Mapping[str, Any]) -> UserRecord:
    """Build a record from a stored dict, defaulting absent fields."""
    data = {_LEGACY_USER_KEYS.get(key, key): value for key, value in data.items()}
    return UserRecord(
        display_name=str(data.get("displayName") or ""),
        joined_at=_int_or(data.get("joinedAt"), 0),
        message_count=max(_int_or(data.get("messageCount"), 0), 0),
        last_activity_at=_int_or(data.get("lastActivityAt"), None),
        verified=bool(data.get("verified", False)),
        verification_message_count=max(
            _int_or(data.get("verificationMessageCount"), 0), 0
        ),
    )


def snapshot_to_dict(snapshot: EngineSnapshot) -> dict[str, Any]:
    return {
        "lastPruneScanAt": snapshot.last_prune_scan_at,
        "lastVerificationScanAt": snapshot.last_verification_scan_at,
        "users": {
            str(user_id): record_to_dict(record)
            for user_id, record in snapshot.users.items()
        },
    }


def snapshot_from_dict(data: Mapping[str, Any]) -> EngineSnapshot:
    """Normalize any known snapshot shape into an :class:`EngineSnapshot`.

    Older shapes are upgraded rather than rejected: missing timestamps are
    zero, missing user fields take their defaults, and the legacy
    key names are translated.
    """
    data = {_LEGACY_KEYS.get(key, key): value for key, value in data.items()}
    users: dict[int, UserRecord] = {}
    raw_users = data.get("users") or {}
    if not isinstance(raw_users, Mapping):
        log.warning("Ignoring malformed users section of type %s", type(raw_users).__name__)
        raw_users = {}
    for raw_id, raw_record in raw_users.items():
        user_id = _int_or(raw_id, None)
        if user_id is None or not isinstance(raw_record, Mapping):
            log.warning("Dropping malformed snapshot entry for %r", raw_id)
            continue
        users[user_id] = record_from_dict(raw_record)
    return EngineSnapshot(
        last_prune_scan_at=_int_or(data.get("lastPruneScanAt"), 0),
        last_verification_scan_at=_int_or(data.get("lastVerificationScanAt"), 0),
        users=users,
    )


class PersistenceStore:
    """Load and save the engine snapshot for one engine instance.

    Example::

        store = PersistenceStore("data/state.db", instance="main")
        snapshot = store.load()
        ...
        store.save(snapshot)
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        instance: str = "default",
    ) -> None:
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.instance = instance
        self._pending: asyncio.Task | None = None
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Create the database and table if they don't exist.

        A file SQLite cannot read is moved aside to ``<name>.corrupt`` and a
        fresh database takes its place.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._create_table()
        except sqlite3.OperationalError:
            # locked or unopenable, not a corrupt file
            raise
        except sqlite3.DatabaseError:
            log.exception("Unreadable state database %s; starting a new one", self.db_path)
            self._quarantine()
            self._create_table()

    def _create_table(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS engine_snapshot (
                    instance TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def _quarantine(self) -> None:
        if not self.db_path.exists():
            return
        target = self.db_path.with_name(self.db_path.name + ".corrupt")
        self.db_path.replace(target)
        log.warning("Moved unreadable state database to %s", target)

    def load(self) -> EngineSnapshot:
        """Return the stored snapshot, or an empty one if none is usable.

        A missing row starts the engine fresh and writes the empty snapshot.
        An unreadable row is logged and replaced by an empty snapshot on the
        next save; losing counts beats refusing to start. A database file that
        has gone bad is moved aside the same way as at construction.
        """
        try:
            with sqlite3.connect(self.db_path) as conn:
                row = conn.execute(
                    "SELECT payload FROM engine_snapshot WHERE instance = ?",
                    (self.instance,),
                ).fetchone()
        except sqlite3.OperationalError:
            log.exception("Failed to read snapshot for %s; starting empty", self.instance)
            return EngineSnapshot()
        except sqlite3.DatabaseError:
            log.exception("Corrupt state database for %s; starting empty", self.instance)
            self._quarantine()
            self._create_table()
            return EngineSnapshot()

        if row is None:
            log.info("No stored snapshot for %s; starting fresh", self.instance)
            snapshot = EngineSnapshot()
            try:
                self.save(snapshot)
            except sqlite3.Error:
                log.exception("Failed to write empty snapshot for %s", self.instance)
            return snapshot

        try:
            data = json.loads(row[0])
            if not isinstance(data, Mapping):
                raise ValueError(f"snapshot payload is a {type(data).__name__}")
            snapshot = snapshot_from_dict(data)
        except (ValueError, TypeError, OverflowError):
            log.exception("Corrupt snapshot for %s; starting empty", self.instance)
            return EngineSnapshot()

        log.info(
            "Loaded snapshot for %s with %d user(s)", self.instance, len(snapshot.users)
        )
        return snapshot

    def save(self, snapshot: EngineSnapshot) -> None:
        """Overwrite the stored snapshot."""
        payload = json.dumps(snapshot_to_dict(snapshot), sort_keys=True)
        now_iso = datetime.now(timezone.utc).isoformat()
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO engine_snapshot (instance, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(instance) DO UPDATE SET
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (self.instance, payload, now_iso),
            )
            conn.commit()

    def schedule_save(
        self, capture: Callable[[], EngineSnapshot], delay: float
    ) -> None:
        """Coalesce bursts of activity into one save after *delay* seconds.

        Must be called from a running event loop. ``capture`` is evaluated
        when the save runs, so the latest state is written.
        """
        if self._pending is not None and not self._pending.done():
            return

        async def _save_later() -> None:
            await asyncio.sleep(delay)
            try:
                self.save(capture())
            except sqlite3.Error:
                log.exception("Batched snapshot save failed for %s", self.instance)

        self._pending = asyncio.create_task(_save_later())

    def cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    def import_legacy_json(self, path: Path | str) -> EngineSnapshot:
        """Convert a ``data.json`` file in the legacy format and save it."""
        with Path(path).open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, Mapping):
            raise ValueError(f"{path} does not contain a JSON object")
        snapshot = snapshot_from_dict(data)
        self.save(snapshot)
        log.info("Imported %d user(s) from %s", len(snapshot.users), path)
        return snapshot
