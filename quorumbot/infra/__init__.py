"""Infrastructure utilities for quorumbot."""
from .alerts import alert_scan_failure, send_alert
from .config import (
    ConfigError,
    ModerationConfig,
    get_config,
    reset_config,
    set_config,
)
from .logging import get_logger, structured_log

__all__ = [
    # Alerts
    "alert_scan_failure",
    "send_alert",
    # Configuration
    "ConfigError",
    "ModerationConfig",
    "get_config",
    "reset_config",
    "set_config",
    # Logging
    "get_logger",
    "structured_log",
]
