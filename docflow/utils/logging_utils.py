"""Structured log helpers shared by the pipeline components.

Only allow-listed fields reach the log record; anything else passed to
`structured_log` (document text, tokens, model output) is dropped.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict

STRUCTURED_LOG_ALLOWED_FIELDS: frozenset[str] = frozenset(
    {
        "chunk_count",
        "duration_ms",
        "error",
        "error_type",
        "external_job_id",
        "item_count",
        "outcome",
        "owner_id",
        "pipeline",
        "reason",
        "run_id",
        "stage",
        "status",
        "subject_id",
        "text_length",
        "trace_id",
    }
)


def _allowed(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in fields.items() if k in STRUCTURED_LOG_ALLOWED_FIELDS and v is not None}


def structured_log(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Log `event` as the message with allow-listed extras."""
    logger.log(level, event, extra={"event": event, **_allowed(fields)})


class StageMarker:
    """Async context that logs `run_stage` started/completed/failed records.

    When a metrics client is given, the stage duration is also observed as
    `stage_<name>` latency labelled with the run's pipeline.
    """

    def __init__(self, logger: logging.Logger, stage: str, metrics: Any | None = None, **fields: Any) -> None:
        self.logger = logger
        self.stage = stage
        self.metrics = metrics
        self.fields = _allowed({"stage": stage, **fields})
        self.extra_on_completion: Dict[str, Any] = {}
        self._started = 0.0

    def add_completion_fields(self, **fields: Any) -> None:
        self.extra_on_completion.update(_allowed(fields))

    async def __aenter__(self) -> "StageMarker":
        self._started = time.perf_counter()
        structured_log(self.logger, logging.INFO, "run_stage", status="started", **self.fields)
        return self

    async def __aexit__(self, exc_type, exc: BaseException | None, _tb) -> bool:
        elapsed = time.perf_counter() - self._started
        fields = {**self.fields, **self.extra_on_completion, "duration_ms": int(elapsed * 1000)}
        if exc is None:
            structured_log(self.logger, logging.INFO, "run_stage", status="completed", **fields)
        else:
            structured_log(
                self.logger, logging.ERROR, "run_stage", status="failed", error_type=type(exc).__name__, **fields
            )
        if self.metrics is not None:
            self.metrics.observe_latency(f"stage_{self.stage}", elapsed, pipeline=str(self.fields.get("pipeline", "")))
        return False


def stage_marker(logger: logging.Logger, *, stage: str, metrics: Any | None = None, **fields: Any) -> StageMarker:
    return StageMarker(logger, stage, metrics, **fields)


__all__ = ["StageMarker", "stage_marker", "structured_log", "STRUCTURED_LOG_ALLOWED_FIELDS"]
