"""Centralized configuration for the moderation engine."""
from __future__ import annotations

from dataclasses import dataclass, replace

from ..util import float_env, int_env

DAY_MS = 24 * 60 * 60 * 1000
HOUR_MS = 60 * 60 * 1000


class ConfigError(ValueError):
    """Raised when configuration values cannot drive the engine safely."""


def _days(value: float) -> int:
    return int(value * DAY_MS)


def _hours(value: float) -> int:
    return int(value * HOUR_MS)


@dataclass(frozen=True)
class ModerationConfig:
    """Thresholds, windows and poll settings for scans and votes.

    All durations are integer milliseconds.
    """

    prune_interval_ms: int = _days(30)
    prune_message_threshold: int = 10
    prune_poll_duration_ms: int = _hours(24)
    prune_pass_fraction: float = 0.6
    verify_window_ms: int = _days(7)
    verify_message_threshold: int = 3
    verify_poll_duration_ms: int = _hours(24)
    verify_pass_fraction: float = 0.6
    save_delay_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "ModerationConfig":
        """Create config from environment variables."""
        return cls(
            prune_interval_ms=_days(float_env("PRUNE_INTERVAL_DAYS", 30)),
            prune_message_threshold=int_env("PRUNE_MESSAGE_THRESHOLD", 10),
            prune_poll_duration_ms=_hours(float_env("PRUNE_POLL_HOURS", 24)),
            prune_pass_fraction=float_env("PRUNE_PASS_FRACTION", 0.6),
            verify_window_ms=_days(float_env("VERIFY_WINDOW_DAYS", 7)),
            verify_message_threshold=int_env("VERIFY_MESSAGE_THRESHOLD", 3),
            verify_poll_duration_ms=_hours(float_env("VERIFY_POLL_HOURS", 24)),
            verify_pass_fraction=float_env("VERIFY_PASS_FRACTION", 0.6),
            save_delay_seconds=float_env("STATE_SAVE_DELAY_SECONDS", 5.0),
        )

    @property
    def verify_scan_interval_ms(self) -> int:
        """Verification scans run twice per verification window."""
        return self.verify_window_ms // 2

    def validate(self) -> "ModerationConfig":
        """Raise :class:`ConfigError` for values that would break scheduling."""
        if self.prune_interval_ms <= 0:
            raise ConfigError("pruning interval must be positive")
        if self.verify_scan_interval_ms <= 0:
            raise ConfigError("verification window must be positive")
        if self.prune_poll_duration_ms <= 0 or self.verify_poll_duration_ms <= 0:
            raise ConfigError("poll durations must be positive")
        for name in ("prune_pass_fraction", "verify_pass_fraction"):
            fraction = getattr(self, name)
            if not 0 < fraction <= 1:
                raise ConfigError(f"{name} must be in (0, 1], got {fraction}")
        if self.prune_message_threshold < 0 or self.verify_message_threshold < 0:
            raise ConfigError("message thresholds cannot be negative")
        if self.save_delay_seconds < 0:
            raise ConfigError("save delay cannot be negative")
        return self

    def with_prune_interval(self, interval_ms: int) -> "ModerationConfig":
        return replace(self, prune_interval_ms=interval_ms).validate()

    def with_verify_window(self, window_ms: int) -> "ModerationConfig":
        return replace(self, verify_window_ms=window_ms).validate()


# Global default configuration instance
_default_config: ModerationConfig | None = None


def get_config() -> ModerationConfig:
    """Return the global configuration instance.

    Creates and validates the configuration on first access.
    """
    global _default_config
    if _default_config is None:
        _default_config = ModerationConfig.from_env().validate()
    return _default_config


def set_config(config: ModerationConfig) -> None:
    """Set the global configuration instance.

    Useful for testing or when you need to override defaults.
    """
    global _default_config
    _default_config = config


def reset_config() -> None:
    """Reset the global configuration to reload from environment."""
    global _default_config
    _default_config = None
