"""
JSON Lines and console formatters for workflow events.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .context import get_correlation_id, get_schedule_id, get_job_id, get_stage

# Context ids written when bound, in this order
_CONTEXT_FIELDS = (
    ("schedule_id", get_schedule_id),
    ("job_id", get_job_id),
    ("stage", get_stage),
)


def _context_fields() -> dict[str, str]:
    fields = {}
    for name, getter in _CONTEXT_FIELDS:
        value = getter()
        if value:
            fields[name] = value
    return fields


class JsonLinesFormatter(logging.Formatter):
    """
    One JSON object per line.

    Fixed keys: timestamp (UTC, ISO 8601), level, event_type, module,
    component, correlation_id. Then schedule_id, job_id and stage when
    bound, then the event's own fields. Event fields win on name clashes.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "event_type": getattr(record, "event_type", record.getMessage()),
            "module": getattr(record, "service_module", record.module),
            "component": getattr(record, "component", record.funcName),
            "correlation_id": get_correlation_id(),
            **_context_fields(),
        }
        entry.update(getattr(record, "event_data", {}))

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=_json_default)


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    return str(obj)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable line:

        2026-01-05 10:31:02 [INFO] [optimization.engine] sched-7/job-42 export optimization.stage.start action=started
    """

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            f"[{record.levelname}]",
        ]
        component = getattr(record, "component", "")
        if component:
            parts.append(f"[{getattr(record, 'service_module', record.module)}.{component}]")

        schedule_id, job_id, stage = get_schedule_id(), get_job_id(), get_stage()
        if schedule_id:
            parts.append(f"{schedule_id}/{job_id}" if job_id else schedule_id)
        if stage:
            parts.append(stage)

        parts.append(getattr(record, "event_type", "") or record.getMessage())

        fields = getattr(record, "event_data", {}) or {}
        parts.extend(
            f"{k}={v.value if isinstance(v, Enum) else v}"
            for k, v in fields.items() if k != "stack_trace"
        )
        return " ".join(parts)
