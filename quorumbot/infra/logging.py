"""Standardized logging utilities for quorumbot."""
from __future__ import annotations

import logging
from typing import Any

# Root logger name for all quorumbot components
ROOT_LOGGER_NAME = "quorumbot"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a hierarchical logger under the quorumbot namespace.

    Args:
        name: Module or component name. If None, returns the root logger.
              The name is prefixed with "quorumbot." unless it already
              carries that prefix.

    Example::

        from quorumbot.infra.logging import get_logger
        log = get_logger("scans")  # -> "quorumbot.scans"
    """
    if name is None:
        return logging.getLogger(ROOT_LOGGER_NAME)

    clean_name = name
    if clean_name.startswith(f"{ROOT_LOGGER_NAME}."):
        clean_name = clean_name[len(ROOT_LOGGER_NAME) + 1 :]

    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{clean_name}")


def structured_log(
    logger: logging.Logger,
    level: int,
    message: str,
    **fields: Any,
) -> None:
    """Log a message with structured key=value fields appended.

    Example::

        structured_log(log, logging.INFO, "Poll closed",
                      user_id=123, yes=4, no=1, verdict="pass")
        # Logs: "Poll closed user_id=123 yes=4 no=1 verdict=pass"
    """
    if fields:
        field_str = " ".join(f"{k}={v}" for k, v in fields.items())
        message = f"{message} {field_str}"
    logger.log(level, message)
