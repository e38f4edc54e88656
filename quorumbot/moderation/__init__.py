"""Membership activity tracking and moderation polls."""
from .errors import (
    GatewayError,
    ModerationError,
    PollStartError,
    PrivilegeConflict,
    ScanAborted,
    SubjectGone,
)
from .gateway import DiscordGateway, Gateway, MemberInfo
from .ledger import ActivityLedger, UserRecord
from .lifecycle import LifecycleController, Outcome
from .polls import PollEngine, PollKind, Tally, Verdict, compute_verdict
from .scheduler import ScanReport, ScanScheduler
from .store import EngineSnapshot, PersistenceStore, ScanMarks

__all__ = [
    "ActivityLedger",
    "DiscordGateway",
    "EngineSnapshot",
    "Gateway",
    "GatewayError",
    "LifecycleController",
    "MemberInfo",
    "ModerationError",
    "Outcome",
    "PersistenceStore",
    "PollEngine",
    "PollKind",
    "PollStartError",
    "PrivilegeConflict",
    "ScanAborted",
    "ScanMarks",
    "ScanReport",
    "ScanScheduler",
    "SubjectGone",
    "Tally",
    "UserRecord",
    "Verdict",
    "compute_verdict",
]
