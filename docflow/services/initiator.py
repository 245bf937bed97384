"""Job Initiator: submit the OCR job, suspend the run, record the correlation.

Order matters: the external job id is only known after submission, the
resumption token only after suspension, and the Job Record needs both. If the
run cannot be suspended or the record cannot be written, the external job has
no way back to its run; it is cancelled (best effort) and reported as a
reconciliation candidate before the error is raised to the caller.
"""
from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from docflow.errors import ExternalServiceError, PersistenceError
from docflow.services.job_records import JobRecord, JobRecordStore
from docflow.services.object_locator import ObjectLocator
from docflow.services.ocr_provider import OcrProvider
from docflow.services.run_store import PipelineRun
from docflow.utils.logging_utils import structured_log

LOG = logging.getLogger("pipeline.initiator")

SuspendFn = Callable[[str, str], Awaitable[str]]


class JobInitiator:
    def __init__(
        self,
        *,
        locator: ObjectLocator,
        provider: OcrProvider,
        job_records: JobRecordStore,
        write_attempts: int = 3,
        retry_wait: float = 0.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.locator = locator
        self.provider = provider
        self.job_records = job_records
        self.write_attempts = max(1, write_attempts)
        self.retry_wait = retry_wait
        self._clock = clock

    async def start(self, run: PipelineRun, *, suspend: SuspendFn, source_uri: str | None = None) -> str:
        """Submit exactly one OCR job for the run and return its external job id."""
        source = await self.locator.locate(run.subject_id, run.owner_id, source_uri=source_uri)
        external_job_id = await self.provider.submit(source, job_tag=run.run_id)
        try:
            token = await suspend(run.run_id, external_job_id)
            record = JobRecord(
                external_job_id=external_job_id,
                resumption_token=token,
                run_id=run.run_id,
                pipeline=run.pipeline,
                subject_id=run.subject_id,
                owner_id=run.owner_id,
                created_at=self._clock(),
            )
            await self._write_record(record)
        except PersistenceError as exc:
            await self._compensate(run, external_job_id, exc)
            raise
        structured_log(
            LOG,
            logging.INFO,
            "job_record_written",
            run_id=run.run_id,
            pipeline=run.pipeline,
            external_job_id=external_job_id,
        )
        return external_job_id

    async def _write_record(self, record: JobRecord) -> None:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(PersistenceError),
            stop=stop_after_attempt(self.write_attempts),
            wait=wait_random_exponential(multiplier=self.retry_wait, max=self.retry_wait * 8),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    structured_log(
                        LOG,
                        logging.WARNING,
                        "job_record_write_retry",
                        run_id=record.run_id,
                        external_job_id=record.external_job_id,
                    )
                self.job_records.put(record)

    async def _compensate(self, run: PipelineRun, external_job_id: str, exc: Exception) -> None:
        cancelled = True
        try:
            await self.provider.cancel(external_job_id)
        except ExternalServiceError as cancel_exc:
            cancelled = False
            LOG.warning(
                "external_job_cancel_failed",
                extra={"run_id": run.run_id, "external_job_id": external_job_id, "error": str(cancel_exc)},
            )
        LOG.error(
            "orphaned_external_job",
            extra={
                "run_id": run.run_id,
                "pipeline": run.pipeline,
                "external_job_id": external_job_id,
                "cancelled": cancelled,
                "error": str(exc),
            },
        )


__all__ = ["JobInitiator"]
