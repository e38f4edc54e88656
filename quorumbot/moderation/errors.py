"""Exceptions raised by the moderation engine."""
from __future__ import annotations


class ModerationError(Exception):
    """Base class for moderation engine failures."""


class GatewayError(ModerationError):
    """A platform call failed (network, rate limit, missing permission)."""


class ScanAborted(ModerationError):
    """A scan could not run at all; it is retried at the next firing."""


class PollStartError(ModerationError):
    """The vote prompt could not be posted."""


class SubjectGone(ModerationError):
    """The poll subject is no longer a member of the guild."""

    def __init__(self, user_id: int) -> None:
        super().__init__(f"member {user_id} is no longer in the guild")
        self.user_id = user_id


class PrivilegeConflict(ModerationError):
    """The poll subject cannot be acted on by the automation agent.

    ``notify`` is set when moderators should be told about the skip, which
    is the case for role hierarchy conflicts but not for the agent itself.
    """

    def __init__(self, user_id: int, reason: str, *, notify: bool = False) -> None:
        super().__init__(f"member {user_id} is privileged: {reason}")
        self.user_id = user_id
        self.reason = reason
        self.notify = notify
