"""Pipeline orchestrator.

Owns `PipelineRun.stage` and the single suspension point:

    STARTING -> AWAITING_CALLBACK -> PROCESSING -> SUCCEEDED | FAILED

`begin` runs until the OCR job is submitted and the run is suspended, then
returns; nothing is held while the external job runs. `resume` is driven by
the notification listener with the resumption token handed out by `suspend`.
Every stage change is a compare-and-set on the run store, so of two racing
resumes (or a resume racing the timeout sweep) exactly one wins and the other
gets `InvalidStateError`.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Any, Callable, Dict, List

from docflow.errors import (
    InvalidStateError,
    PersistenceError,
    PipelineError,
    PipelineTimeoutError,
    ProcessingError,
    ResumeError,
    ValidationError,
)
from docflow.logging_setup import bind_run_context
from docflow.models.events import JobOutcome
from docflow.services.initiator import JobInitiator
from docflow.services.job_records import JobRecordStore
from docflow.services.metrics import MetricsClient, NullMetrics
from docflow.services.processing import ResultProcessor
from docflow.services.run_store import PipelineRun, RunStage, RunStore
from docflow.services.status_publisher import RunStatusNotifier
from docflow.utils.logging_utils import stage_marker, structured_log

LOG = logging.getLogger("pipeline.orchestrator")

DEFAULT_CALLBACK_TIMEOUT_SECONDS = 30 * 60
DEFAULT_PROCESSING_TIMEOUT_SECONDS = 5 * 60
# A live worker fails its own run at the processing timeout; the sweeper only
# takes over once this extra margin has also passed.
DEFAULT_PROCESSING_GRACE_SECONDS = 60


def failure_details(exc: BaseException, stage: RunStage) -> Dict[str, Any]:
    return {"error_type": type(exc).__name__, "reason": str(exc) or type(exc).__name__, "stage": stage.value}


class Orchestrator:
    def __init__(
        self,
        *,
        pipeline: str,
        initiator: JobInitiator,
        processor: ResultProcessor,
        run_store: RunStore,
        job_records: JobRecordStore,
        notifier: RunStatusNotifier | None = None,
        metrics: MetricsClient | None = None,
        callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT_SECONDS,
        processing_timeout: float = DEFAULT_PROCESSING_TIMEOUT_SECONDS,
        processing_grace: float = DEFAULT_PROCESSING_GRACE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.pipeline = pipeline
        self.initiator = initiator
        self.processor = processor
        self.run_store = run_store
        self.job_records = job_records
        self.notifier = notifier or RunStatusNotifier(None, None)
        self.metrics = metrics or NullMetrics()
        self.callback_timeout = callback_timeout
        self.processing_timeout = processing_timeout
        self.processing_grace = processing_grace
        self._clock = clock

    # ------------------------------------------------------------------ begin
    async def begin(
        self,
        subject_id: str,
        owner_id: str,
        *,
        source_uri: str | None = None,
        trace_id: str | None = None,
    ) -> PipelineRun:
        """Start a run and return it once it is AWAITING_CALLBACK.

        Failures before suspension are raised to the caller; the run is left
        FAILED so no partial pipeline stays active.
        """
        if not subject_id or not owner_id:
            raise ValidationError("subject_id and owner_id are required")
        run = self.run_store.create_run(
            pipeline=self.pipeline, subject_id=subject_id, owner_id=owner_id, trace_id=trace_id
        )
        bind_run_context(run.run_id, run.pipeline, trace_id=run.trace_id)
        self.metrics.increment("run_started", pipeline=self.pipeline, stage=RunStage.STARTING.value)
        try:
            async with stage_marker(
                LOG, stage="initiate", metrics=self.metrics, run_id=run.run_id, pipeline=self.pipeline
            ):
                await self.initiator.start(run, suspend=self.suspend, source_uri=source_uri)
        except Exception as exc:
            await self._fail_current(run.run_id, exc)
            raise
        current = self.run_store.get_run(run.run_id)
        if current is None:
            raise PersistenceError(f"Run {run.run_id} disappeared from the run store")
        return current

    async def suspend(self, run_id: str, external_job_id: str) -> str:
        """Move the run to AWAITING_CALLBACK and return a fresh resumption token."""
        token = secrets.token_urlsafe(32)
        self.run_store.transition(
            run_id,
            expected=RunStage.STARTING,
            target=RunStage.AWAITING_CALLBACK,
            message="ocr_submitted",
            updates={"external_job_id": external_job_id, "resumption_token": token},
        )
        self.metrics.increment("run_transition", pipeline=self.pipeline, stage=RunStage.AWAITING_CALLBACK.value)
        return token

    # ----------------------------------------------------------------- resume
    async def resume(self, token: str, outcome: JobOutcome) -> PipelineRun:
        """Leave AWAITING_CALLBACK exactly once and drive the run to a terminal stage."""
        run = self.run_store.get_by_token(token)
        if run is None:
            raise ResumeError("Unknown or expired resumption token")
        if run.pipeline != self.pipeline:
            raise ResumeError(f"Run {run.run_id} belongs to pipeline {run.pipeline}")
        bind_run_context(run.run_id, run.pipeline, trace_id=run.trace_id)
        if run.stage is not RunStage.AWAITING_CALLBACK:
            raise InvalidStateError(run.run_id, RunStage.AWAITING_CALLBACK.value, run.stage.value)

        if outcome is not JobOutcome.COMPLETED:
            failed = self._transition_failed(
                run.run_id,
                RunStage.AWAITING_CALLBACK,
                ProcessingError("OCR provider reported the job as failed"),
            )
            await self._finish(failed)
            return failed

        if self._overdue(run, self._clock()):
            failed = self._transition_failed(
                run.run_id,
                RunStage.AWAITING_CALLBACK,
                PipelineTimeoutError(f"Notification arrived after the {self.callback_timeout:.0f}s ceiling"),
            )
            await self._finish(failed)
            return failed

        run = self.run_store.transition(
            run.run_id,
            expected=RunStage.AWAITING_CALLBACK,
            target=RunStage.PROCESSING,
            message="ocr_completed",
        )
        self.metrics.increment("run_transition", pipeline=self.pipeline, stage=RunStage.PROCESSING.value)
        final = await self._process(run)
        await self._finish(final)
        return final

    async def _process(self, run: PipelineRun) -> PipelineRun:
        if not run.external_job_id:
            return self._transition_failed(
                run.run_id, RunStage.PROCESSING, ProcessingError("Run has no external OCR job to read")
            )
        try:
            async with stage_marker(
                LOG,
                stage="process",
                metrics=self.metrics,
                run_id=run.run_id,
                pipeline=self.pipeline,
                external_job_id=run.external_job_id,
            ) as marker:
                result = await asyncio.wait_for(
                    self.processor.process(run.subject_id, run.owner_id, run.external_job_id),
                    timeout=self.processing_timeout,
                )
                marker.add_completion_fields(chunk_count=result.chunk_count, item_count=result.item_count)
        except asyncio.TimeoutError:
            return self._transition_failed(
                run.run_id,
                RunStage.PROCESSING,
                PipelineTimeoutError(f"Processing exceeded {self.processing_timeout:.0f}s"),
            )
        except PipelineError as exc:
            return self._transition_failed(run.run_id, RunStage.PROCESSING, exc)
        except Exception as exc:  # unexpected processor failure becomes a terminal run failure
            LOG.exception("processing_unexpected_error", extra={"run_id": run.run_id})
            return self._transition_failed(
                run.run_id, RunStage.PROCESSING, ProcessingError(f"{type(exc).__name__}: {exc}")
            )
        return self.run_store.transition(
            run.run_id,
            expected=RunStage.PROCESSING,
            target=RunStage.SUCCEEDED,
            message="processed",
            updates={"result": result.summary()},
        )

    # ---------------------------------------------------------------- timeout
    def _overdue(self, run: PipelineRun, now: float) -> bool:
        suspended_at = run.suspended_at if run.suspended_at is not None else run.started_at
        return now - suspended_at > self.callback_timeout

    def _processing_stalled(self, run: PipelineRun, now: float) -> bool:
        return now - run.updated_at > self.processing_timeout + self.processing_grace

    async def expire_overdue(self, now: float | None = None) -> List[PipelineRun]:
        """Fail every run of this pipeline stuck past its stage deadline.

        AWAITING_CALLBACK runs expire at the callback ceiling. PROCESSING runs
        expire once the processing timeout plus grace has passed since they
        entered the stage, which only happens when the worker driving them died.
        """
        now = self._clock() if now is None else now
        expired: List[PipelineRun] = []
        for run in self.run_store.list_awaiting():
            if run.pipeline != self.pipeline or not self._overdue(run, now):
                continue
            failed = await self._expire(
                run, RunStage.AWAITING_CALLBACK, f"No notification within {self.callback_timeout:.0f}s"
            )
            if failed is not None:
                expired.append(failed)
        for run in self.run_store.list_processing():
            if run.pipeline != self.pipeline or not self._processing_stalled(run, now):
                continue
            failed = await self._expire(
                run, RunStage.PROCESSING, f"Processing did not finish within {self.processing_timeout:.0f}s"
            )
            if failed is not None:
                expired.append(failed)
        return expired

    async def _expire(self, run: PipelineRun, stage: RunStage, reason: str) -> PipelineRun | None:
        try:
            failed = self._transition_failed(run.run_id, stage, PipelineTimeoutError(reason))
        except InvalidStateError:
            # moved on between listing and transition
            return None
        if run.external_job_id:
            self.job_records.delete(run.external_job_id)
        structured_log(
            LOG,
            logging.WARNING,
            "run_timed_out",
            run_id=run.run_id,
            pipeline=self.pipeline,
            stage=stage.value,
            external_job_id=run.external_job_id,
        )
        await self._finish(failed)
        return failed

    # ---------------------------------------------------------------- helpers
    def _transition_failed(self, run_id: str, expected: RunStage, exc: BaseException) -> PipelineRun:
        failed = self.run_store.transition(
            run_id,
            expected=expected,
            target=RunStage.FAILED,
            message=type(exc).__name__,
            updates={"failure": failure_details(exc, expected)},
        )
        self.metrics.increment("run_failed", pipeline=self.pipeline, stage=expected.value)
        return failed

    async def _fail_current(self, run_id: str, exc: BaseException) -> None:
        current = self.run_store.get_run(run_id)
        if current is None or current.stage.terminal:
            return
        try:
            failed = self._transition_failed(run_id, current.stage, exc)
        except InvalidStateError as race:
            LOG.warning("run_fail_conflict", extra={"run_id": run_id, "error": str(race)})
            return
        await self._finish(failed)

    async def _finish(self, run: PipelineRun) -> None:
        structured_log(
            LOG,
            logging.INFO if run.stage is RunStage.SUCCEEDED else logging.WARNING,
            "run_finished",
            run_id=run.run_id,
            pipeline=run.pipeline,
            stage=run.stage.value,
            external_job_id=run.external_job_id,
            reason=(run.failure or {}).get("reason"),
        )
        self.metrics.increment("run_finished", pipeline=self.pipeline, stage=run.stage.value)
        await self.notifier.notify(run)


__all__ = ["Orchestrator", "failure_details"]
