"""
Correlation context for tracing one optimization run across components.

Uses ContextVar so each asyncio task (one per run) keeps its own ids and
its current workflow stage.
"""

import uuid
from contextvars import ContextVar
from contextlib import contextmanager
from typing import Optional, Generator

_correlation_id: ContextVar[str] = ContextVar('correlation_id', default='')
_schedule_id: ContextVar[str] = ContextVar('schedule_id', default='')
_job_id: ContextVar[str] = ContextVar('job_id', default='')
_stage: ContextVar[str] = ContextVar('stage', default='')


def get_correlation_id() -> str:
    """Get current correlation ID, generating one if none exists."""
    cid = _correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())
        _correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    _correlation_id.set(cid)


def get_schedule_id() -> Optional[str]:
    """Get the schedule being optimized in this context, if any."""
    return _schedule_id.get() or None


def set_schedule_id(schedule_id: str) -> None:
    _schedule_id.set(str(schedule_id))


def get_job_id() -> Optional[str]:
    """Get the optimizer job bound to this context, if any."""
    return _job_id.get() or None


def set_job_id(job_id: str) -> None:
    _job_id.set(job_id)


def get_stage() -> Optional[str]:
    """Get the workflow stage (export, generate, poll, import) in progress, if any."""
    return _stage.get() or None


def set_stage(stage: str) -> None:
    _stage.set(stage)


@contextmanager
def correlation_context(
    correlation_id: Optional[str] = None,
    schedule_id: Optional[str] = None,
    job_id: Optional[str] = None,
) -> Generator[str, None, None]:
    """
    Context manager for setting correlation context.

    Args:
        correlation_id: Optional correlation ID (generated if not provided)
        schedule_id: Optional schedule being worked on
        job_id: Optional optimizer job ID

    Yields:
        The correlation ID being used

    Example:
        with correlation_context(schedule_id="7") as cid:
            log.info("optimization.engine.run_started", correlation_id=cid)
    """
    old_cid = _correlation_id.get()
    old_sid = _schedule_id.get()
    old_jid = _job_id.get()
    old_stage = _stage.get()

    try:
        if correlation_id:
            _correlation_id.set(correlation_id)
        elif not old_cid:
            _correlation_id.set(str(uuid.uuid4()))

        if schedule_id is not None:
            _schedule_id.set(str(schedule_id))

        if job_id:
            _job_id.set(job_id)

        yield get_correlation_id()
    finally:
        _correlation_id.set(old_cid)
        _schedule_id.set(old_sid)
        _job_id.set(old_jid)
        _stage.set(old_stage)
