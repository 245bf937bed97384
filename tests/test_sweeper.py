from __future__ import annotations

import asyncio

import pytest

from docflow.services.job_records import JobRecord
from docflow.config import AppConfig
from docflow.main import build_services
from docflow.services.run_store import RunStage
from tests.stubs.pipeline_stubs import RecordingMetrics


@pytest.mark.asyncio
async def test_sweep_expires_overdue_runs_across_pipelines(services, clock):
    kb = await services.orchestrators["knowledge_base"].begin("kb-1", "owner-1")
    clock.advance(600)
    q = await services.orchestrators["question_file"].begin("q-1", "owner-1")
    clock.advance(1300)

    summary = await services.sweeper.sweep()

    assert summary["expired_runs"] == [kb.run_id]
    assert services.run_store.get_run(kb.run_id).stage is RunStage.FAILED
    assert services.run_store.get_run(q.run_id).stage is RunStage.AWAITING_CALLBACK
    assert services.job_records.get(kb.external_job_id) is None
    assert services.job_records.get(q.external_job_id) is not None


@pytest.mark.asyncio
async def test_sweep_removes_orphaned_stale_records(services, clock):
    services.job_records.put(
        JobRecord(
            external_job_id="op-orphan",
            resumption_token="tok",
            run_id="gone",
            pipeline="knowledge_base",
            subject_id="s",
            owner_id="o",
            created_at=clock() - 3600,
        )
    )

    summary = await services.sweeper.sweep()

    assert summary["stale_records"] == ["op-orphan"]
    assert services.job_records.get("op-orphan") is None


@pytest.mark.asyncio
async def test_background_loop_start_and_stop(services, clock):
    run = await services.orchestrators["knowledge_base"].begin("kb-1", "owner-1")
    clock.advance(4000)
    services.sweeper.interval_seconds = 0.01

    services.sweeper.start()
    for _ in range(100):
        if services.run_store.get_run(run.run_id).stage is RunStage.FAILED:
            break
        await asyncio.sleep(0.01)
    await services.sweeper.stop()

    assert services.run_store.get_run(run.run_id).stage is RunStage.FAILED


@pytest.mark.asyncio
async def test_sweep_reports_awaiting_runs_per_pipeline(env, clock, provider, locator):
    metrics = RecordingMetrics()
    services = build_services(AppConfig(), provider=provider, locator=locator, clock=clock, metrics=metrics)
    await services.orchestrators["knowledge_base"].begin("kb-1", "owner-1")
    await services.orchestrators["knowledge_base"].begin("kb-2", "owner-1")

    await services.sweeper.sweep()

    assert metrics.gauges[("awaiting_runs", "knowledge_base")] == 2
    assert metrics.gauges[("awaiting_runs", "question_file")] == 0
    assert ("run_started", {"pipeline": "knowledge_base", "stage": "STARTING"}) in metrics.counters


@pytest.mark.asyncio
async def test_sweep_fails_run_abandoned_in_processing(services, clock):
    run = await services.orchestrators["question_file"].begin("q-1", "owner-1")
    services.job_records.consume(run.external_job_id)
    # the worker that moved the run to PROCESSING died before finishing it
    services.run_store.transition(run.run_id, expected=RunStage.AWAITING_CALLBACK, target=RunStage.PROCESSING)

    clock.advance(300 + 60 - 1)
    assert (await services.sweeper.sweep())["expired_runs"] == []
    assert services.run_store.get_run(run.run_id).stage is RunStage.PROCESSING

    clock.advance(2)
    summary = await services.sweeper.sweep()

    assert summary["expired_runs"] == [run.run_id]
    failed = services.run_store.get_run(run.run_id)
    assert failed.stage is RunStage.FAILED
    assert failed.failure["error_type"] == "PipelineTimeoutError"
    assert failed.failure["stage"] == "PROCESSING"
    assert services.run_store.list_processing() == []
