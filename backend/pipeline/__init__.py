# Staging Pipeline
# ================
# Submit → preview → checkout → fulfillment orchestration

import logging
import os
from typing import Optional

import structlog

# =============================================================================
# STRUCTURED LOGGING SETUP
# =============================================================================


def configure_logging(level: Optional[str] = None, log_format: Optional[str] = None):
    """
    Configure structlog for the orchestrators and payment gate.

    LOG_LEVEL (default INFO) filters events; LOG_FORMAT=console switches the
    JSON renderer for a human-readable one during local runs.
    """
    level_value = getattr(logging, (level or os.getenv("LOG_LEVEL", "INFO")).upper(), None)
    if not isinstance(level_value, int):
        level_value = logging.INFO

    renderer = (
        structlog.dev.ConsoleRenderer()
        if (log_format or os.getenv("LOG_FORMAT", "json")).lower() == "console"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()
