"""
Structured logging for the optimization service.

Provides JSON Lines logging with correlation IDs so that every event of one
optimization run (export, generate, poll, import) can be traced together.

Usage:
    from shared.logging import get_logger, correlation_context

    log = get_logger("optimization", "engine")

    with correlation_context(schedule_id="42") as cid:
        log.info("optimization.engine.run_started", mode="AI_ASSISTED")
"""

from .logger import get_logger, ServiceLogger
from .context import (
    correlation_context,
    get_correlation_id,
    set_correlation_id,
    get_schedule_id,
    set_schedule_id,
    get_job_id,
    set_job_id,
    get_stage,
    set_stage,
)

__all__ = [
    "get_logger",
    "ServiceLogger",
    "correlation_context",
    "get_correlation_id",
    "set_correlation_id",
    "get_schedule_id",
    "set_schedule_id",
    "get_job_id",
    "set_job_id",
    "get_stage",
    "set_stage",
]
