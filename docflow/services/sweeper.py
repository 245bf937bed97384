"""Timeout Sweeper: background enforcement of the callback ceiling."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Callable, Dict, Iterable

from docflow.services.job_records import JobRecordStore
from docflow.services.orchestrator import Orchestrator
from docflow.utils.logging_utils import structured_log

LOG = logging.getLogger("pipeline.sweeper")


class TimeoutSweeper:
    """Periodically fails overdue suspended runs and clears stale Job Records.

    A stale record (older than the ceiling) that survives the expiry pass
    belongs to no live suspended run; it is logged as a reconciliation
    candidate and removed.
    """

    def __init__(
        self,
        *,
        orchestrators: Iterable[Orchestrator],
        job_records: JobRecordStore,
        interval_seconds: float = 60.0,
        ceiling_seconds: float = 30 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.orchestrators = list(orchestrators)
        self.job_records = job_records
        self.interval_seconds = interval_seconds
        self.ceiling_seconds = ceiling_seconds
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    async def sweep(self, now: float | None = None) -> Dict[str, Any]:
        now = self._clock() if now is None else now
        expired: list[str] = []
        for orchestrator in self.orchestrators:
            expired.extend(run.run_id for run in await orchestrator.expire_overdue(now))
            awaiting = sum(1 for run in orchestrator.run_store.list_awaiting() if run.pipeline == orchestrator.pipeline)
            orchestrator.metrics.set_gauge("awaiting_runs", awaiting, pipeline=orchestrator.pipeline)
        removed: list[str] = []
        for record in self.job_records.scan_stale(now - self.ceiling_seconds):
            structured_log(
                LOG,
                logging.WARNING,
                "stale_job_record",
                external_job_id=record.external_job_id,
                run_id=record.run_id,
                pipeline=record.pipeline,
            )
            if self.job_records.delete(record.external_job_id):
                removed.append(record.external_job_id)
        if expired or removed:
            LOG.info("sweep_completed", extra={"expired_runs": len(expired), "stale_records": len(removed)})
        return {"expired_runs": expired, "stale_records": removed}

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep()
            except Exception:  # keep the loop alive; the next tick retries
                LOG.exception("sweep_failed")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="docflow-timeout-sweeper")
            LOG.info("sweeper_started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None


__all__ = ["TimeoutSweeper"]
