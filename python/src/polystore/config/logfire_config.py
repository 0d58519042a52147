"""
Logging and tracing configuration.

Modules obtain a standard library logger through get_logger() and wrap
backend calls in safe_span(). Spans and structured events go to logfire
only when it has been configured; otherwise they are no-ops so the data
layer never depends on a tracing backend being reachable.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import logfire

_logfire_configured = False


class NoopSpan:
    """Stand-in span used when logfire is not configured."""

    def __enter__(self) -> "NoopSpan":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        return False

    def set_attribute(self, key: str, value: Any) -> None:
        pass


def configure_logging(level: str | None = None) -> bool:
    """
    Configure stdlib logging and, when enabled, logfire.

    LOG_LEVEL selects the stdlib level (default INFO).
    LOGFIRE_ENABLED=true plus LOGFIRE_TOKEN turns on logfire export.

    Returns:
        True when logfire was configured.
    """
    global _logfire_configured

    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    )

    enabled = os.getenv("LOGFIRE_ENABLED", "false").lower() == "true"
    token = os.getenv("LOGFIRE_TOKEN")
    if not enabled or not token:
        _logfire_configured = False
        return False

    logfire.configure(token=token, service_name="polystore", send_to_logfire=True)
    logging.getLogger().addHandler(logfire.LogfireLoggingHandler())
    _logfire_configured = True
    return True


def is_logfire_enabled() -> bool:
    return _logfire_configured


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def safe_span(name: str, **attributes: Any):
    """Open a logfire span, or a no-op span when logfire is off."""
    if _logfire_configured:
        return logfire.span(name, **attributes)
    return NoopSpan()


def safe_logfire_info(message: str, **kwargs: Any) -> None:
    if _logfire_configured:
        logfire.info(message, **kwargs)


def safe_logfire_error(message: str, **kwargs: Any) -> None:
    if _logfire_configured:
        logfire.error(message, **kwargs)
