"""Structured JSON logging.

`configure_logging()` is called by the app factory. Extras passed through
`logger.info(event, extra={...})` become top-level JSON keys. The request
trace id and the run currently being driven (bound with `bind_run_context`)
are attached to every record emitted in that context.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict

trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)
run_context_var: ContextVar[Dict[str, str] | None] = ContextVar("run_context", default=None)

_STANDARD_FIELDS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}

# Resumption tokens are bearer credentials for a suspended run.
_REDACTED_FIELDS = frozenset({"resumption_token", "token"})


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        data: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        trace_id = trace_id_var.get()
        if trace_id:
            data["trace_id"] = trace_id
        data.update(run_context_var.get() or {})
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key in _STANDARD_FIELDS or key.startswith("_"):
                continue
            data[key] = "[redacted]" if key in _REDACTED_FIELDS else value
        return json.dumps(data, ensure_ascii=False, default=str)


def configure_logging(level: int = logging.INFO, force: bool = False) -> None:
    root = logging.getLogger()
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
    elif any(isinstance(h, logging.StreamHandler) for h in root.handlers):
        root.setLevel(level)
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.setLevel(level)
    root.addHandler(handler)


def set_trace_id(trace_id: str | None) -> None:
    trace_id_var.set(trace_id)


def bind_run_context(run_id: str, pipeline: str, *, trace_id: str | None = None) -> None:
    """Tag subsequent records in this task with the run being driven."""
    run_context_var.set({"run_id": run_id, "pipeline": pipeline})
    if trace_id:
        trace_id_var.set(trace_id)


__all__ = [
    "JsonFormatter",
    "bind_run_context",
    "configure_logging",
    "run_context_var",
    "set_trace_id",
    "trace_id_var",
]
