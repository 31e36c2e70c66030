"""
ServiceLogger - structured events for the optimization workflow.

One JSON Lines file per module (logs/optimization.jsonl, ...) plus an INFO
console stream. Workflow stages are bound to the logging context between
stage_start() and stage_complete(), so client and adapter events emitted
during a stage carry it without passing it around.
"""

import logging
import os
import time
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from .context import set_stage
from .formatters import JsonLinesFormatter, ConsoleFormatter

LOG_DIR_ENV = "OPTIMIZATION_LOG_DIR"
MAX_LOG_BYTES = 50 * 1024 * 1024
LOG_BACKUPS = 10

_loggers: dict[str, "ServiceLogger"] = {}

_log_dir: Optional[Path] = None


def _get_log_dir() -> Path:
    """$OPTIMIZATION_LOG_DIR, else logs/ beside shared/."""
    global _log_dir
    if _log_dir is None:
        override = os.environ.get(LOG_DIR_ENV)
        if override:
            _log_dir = Path(override)
        else:
            root = next(
                (p for p in Path(__file__).resolve().parents if (p / "shared").is_dir()),
                None,
            )
            _log_dir = root / "logs" if root else Path("logs")
        _log_dir.mkdir(parents=True, exist_ok=True)
    return _log_dir


def get_logger(module: str, component: str, console: bool = True) -> "ServiceLogger":
    """
    Cached logger for a module/component pair.

    Args:
        module: Log file the events go to (optimization, api)
        component: Part of the module emitting them (engine, client, importer, ...)
        console: Also echo INFO and above to stderr
    """
    key = f"{module}.{component}"
    if key not in _loggers:
        _loggers[key] = ServiceLogger(module, component, console)
    return _loggers[key]


class ServiceLogger:
    """
    Emits named events with keyword fields.

    Every event also carries the correlation, schedule, job and stage ids
    bound in the current context (see shared.logging.context).
    """

    def __init__(self, module: str, component: str, console: bool = True):
        self.module = module
        self.component = component
        self._logger = logging.getLogger(f"timetable.{module}.{component}")
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False
        self._logger.handlers.clear()

        file_handler = RotatingFileHandler(
            _get_log_dir() / f"{module}.jsonl",
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JsonLinesFormatter())
        self._logger.addHandler(file_handler)

        if console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.INFO)
            console_handler.setFormatter(ConsoleFormatter())
            self._logger.addHandler(console_handler)

    def event(self, event_type: str, level: str = "INFO", **data: Any) -> None:
        """
        Log a structured event.

        Args:
            event_type: Dotted identifier, e.g. "optimization.engine.poll_attempt"
            level: DEBUG, INFO, WARNING or ERROR
            **data: Event fields; enums are written by value
        """
        self._logger.log(
            getattr(logging, level.upper(), logging.INFO),
            event_type,
            extra={
                "event_type": event_type,
                "service_module": self.module,
                "component": self.component,
                "event_data": data,
            },
        )

    def debug(self, event_type: str, **data: Any) -> None:
        self.event(event_type, level="DEBUG", **data)

    def info(self, event_type: str, **data: Any) -> None:
        self.event(event_type, level="INFO", **data)

    def warning(self, event_type: str, **data: Any) -> None:
        self.event(event_type, level="WARNING", **data)

    def error(self, event_type: str, **data: Any) -> None:
        self.event(event_type, level="ERROR", **data)

    def exception(
        self,
        error: Exception,
        event_type: str = "error",
        context: Optional[dict] = None,
    ) -> None:
        """
        Log an exception with its stack trace.

        Workflow errors also record their error kind and whether the caller
        may retry.
        """
        fields: dict[str, Any] = {
            "error_class": type(error).__name__,
            "error_message": str(error),
        }
        kind = getattr(error, "kind", None)
        if kind is not None:
            fields["error_kind"] = kind
            fields["retryable"] = bool(getattr(error, "retryable", False))
        self.event(
            event_type,
            level="ERROR",
            stack_trace=traceback.format_exc(),
            context=context or {},
            **fields,
        )

    # Workflow stages

    def stage_start(self, stage: str, **kwargs: Any) -> float:
        """Bind the stage to the context and log its start; returns the start time."""
        set_stage(stage)
        self.event(f"{self.module}.stage.start", action="started", **kwargs)
        return time.time()

    def stage_complete(
        self,
        stage: str,
        start_time: float,
        success: bool = True,
        **kwargs: Any,
    ) -> None:
        """Log the end of a stage with its duration, then unbind it. Failures log at WARNING."""
        set_stage(stage)
        self.event(
            f"{self.module}.stage.complete",
            level="INFO" if success else "WARNING",
            action="completed" if success else "failed",
            duration_ms=round((time.time() - start_time) * 1000, 2),
            success=success,
            **kwargs,
        )
        set_stage("")
