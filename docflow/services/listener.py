"""Notification Listener: turns OCR completion notifications into resumes."""
from __future__ import annotations

import logging
from typing import Mapping

from docflow.errors import ResumeError, UnknownJobError
from docflow.models.events import JobOutcome, OcrCompletionEvent
from docflow.services.job_records import JobRecordStore
from docflow.services.orchestrator import Orchestrator
from docflow.services.run_store import PipelineRun
from docflow.utils.logging_utils import structured_log

LOG = logging.getLogger("pipeline.listener")


class NotificationListener:
    """Resolves a notification to its Job Record and resumes the owning pipeline.

    `consume` deletes the record in the same step it is read, so a duplicate
    delivery finds nothing and is dropped here without touching the run.
    """

    def __init__(self, *, job_records: JobRecordStore, orchestrators: Mapping[str, Orchestrator]) -> None:
        self.job_records = job_records
        self.orchestrators = dict(orchestrators)

    async def handle_event(self, event: OcrCompletionEvent) -> PipelineRun | None:
        return await self.on_notification(event.external_job_id, event.outcome)

    async def on_notification(self, external_job_id: str, outcome: JobOutcome) -> PipelineRun | None:
        try:
            record = self.job_records.consume(external_job_id)
        except UnknownJobError:
            structured_log(
                LOG,
                logging.INFO,
                "notification_unknown_job",
                external_job_id=external_job_id,
                outcome=outcome.value,
            )
            return None
        orchestrator = self.orchestrators.get(record.pipeline)
        if orchestrator is None:
            structured_log(
                LOG,
                logging.ERROR,
                "notification_unknown_pipeline",
                external_job_id=external_job_id,
                pipeline=record.pipeline,
                run_id=record.run_id,
            )
            return None
        try:
            return await orchestrator.resume(record.resumption_token, outcome)
        except ResumeError as exc:
            structured_log(
                LOG,
                logging.WARNING,
                "notification_resume_rejected",
                external_job_id=external_job_id,
                run_id=record.run_id,
                pipeline=record.pipeline,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None


__all__ = ["NotificationListener"]
