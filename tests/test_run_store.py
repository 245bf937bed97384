from __future__ import annotations

import pytest

from docflow.errors import InvalidStateError
from docflow.services.run_store import (
    GCSRunStore,
    InMemoryRunStore,
    RunStage,
    run_from_dict,
    run_public_view,
    run_to_dict,
    subject_status_view,
)
from tests.stubs.gcs_stub import FakeStorageClient
from tests.stubs.pipeline_stubs import FakeClock


@pytest.fixture(params=["memory", "gcs"])
def store(request):
    clock = FakeClock()
    if request.param == "memory":
        return InMemoryRunStore(clock=clock)
    return GCSRunStore("state-bucket", client=FakeStorageClient(), clock=clock)


def _suspend(store, run, token="resume-token"):
    return store.transition(
        run.run_id,
        expected=RunStage.STARTING,
        target=RunStage.AWAITING_CALLBACK,
        updates={"external_job_id": "op-1", "resumption_token": token},
    )


def test_create_and_suspend(store):
    run = store.create_run(pipeline="knowledge_base", subject_id="s-1", owner_id="o-1", trace_id="trace-1")
    assert run.stage is RunStage.STARTING
    assert run.trace_id == "trace-1"

    suspended = _suspend(store, run)

    assert suspended.stage is RunStage.AWAITING_CALLBACK
    assert suspended.suspended_at is not None
    assert store.get_by_token("resume-token").run_id == run.run_id
    assert [r.run_id for r in store.list_awaiting()] == [run.run_id]


def test_transition_is_compare_and_set(store):
    run = store.create_run(pipeline="knowledge_base", subject_id="s-1", owner_id="o-1")
    _suspend(store, run)
    store.transition(run.run_id, expected=RunStage.AWAITING_CALLBACK, target=RunStage.PROCESSING)

    with pytest.raises(InvalidStateError) as excinfo:
        store.transition(run.run_id, expected=RunStage.AWAITING_CALLBACK, target=RunStage.FAILED)

    assert excinfo.value.actual == "PROCESSING"
    assert store.get_run(run.run_id).stage is RunStage.PROCESSING
    assert store.list_awaiting() == []


def test_terminal_stages_are_final(store):
    run = store.create_run(pipeline="question_file", subject_id="s-1", owner_id="o-1")
    store.transition(run.run_id, expected=RunStage.STARTING, target=RunStage.FAILED, updates={"failure": {"reason": "x"}})

    for target in (RunStage.AWAITING_CALLBACK, RunStage.PROCESSING, RunStage.SUCCEEDED):
        with pytest.raises(InvalidStateError):
            store.transition(run.run_id, expected=RunStage.FAILED, target=target)
    failed = store.get_run(run.run_id)
    assert failed.completed_at is not None
    assert failed.failure == {"reason": "x"}


def test_skipping_a_stage_is_rejected(store):
    run = store.create_run(pipeline="knowledge_base", subject_id="s-1", owner_id="o-1")

    with pytest.raises(InvalidStateError):
        store.transition(run.run_id, expected=RunStage.STARTING, target=RunStage.SUCCEEDED)


def test_unknown_token(store):
    assert store.get_by_token("nope") is None


def test_public_view_hides_token():
    store = InMemoryRunStore()
    run = _suspend(store, store.create_run(pipeline="knowledge_base", subject_id="s-1", owner_id="o-1"))

    view = run_public_view(run)

    assert "resumption_token" not in view
    assert view["status"] == "processing"
    assert view["stage"] == "AWAITING_CALLBACK"


def test_dict_round_trip_keeps_stage_enum():
    store = InMemoryRunStore()
    run = _suspend(store, store.create_run(pipeline="knowledge_base", subject_id="s-1", owner_id="o-1"))

    restored = run_from_dict(run_to_dict(run))

    assert restored.stage is RunStage.AWAITING_CALLBACK
    assert restored.history == run.history


def test_processing_runs_are_listed_until_terminal(store):
    run = _suspend(store, store.create_run(pipeline="knowledge_base", subject_id="s-1", owner_id="o-1"))
    store.transition(run.run_id, expected=RunStage.AWAITING_CALLBACK, target=RunStage.PROCESSING)

    assert store.list_awaiting() == []
    assert [r.run_id for r in store.list_processing()] == [run.run_id]

    store.transition(run.run_id, expected=RunStage.PROCESSING, target=RunStage.SUCCEEDED)

    assert store.list_processing() == []


def test_latest_run_for_subject(store):
    first = store.create_run(pipeline="question_file", subject_id="s-1", owner_id="o-1")
    store.transition(first.run_id, expected=RunStage.STARTING, target=RunStage.FAILED, updates={"failure": {"reason": "x"}})
    second = store.create_run(pipeline="question_file", subject_id="s-1", owner_id="o-1")

    assert store.latest_for_subject("question_file", "o-1", "s-1").run_id == second.run_id
    assert store.latest_for_subject("knowledge_base", "o-1", "s-1") is None
    assert store.latest_for_subject("question_file", "o-2", "s-1") is None


def test_subject_view_carries_failure_reason():
    store = InMemoryRunStore()
    run = store.create_run(pipeline="question_file", subject_id="s-1", owner_id="o-1")
    failed = store.transition(
        run.run_id,
        expected=RunStage.STARTING,
        target=RunStage.FAILED,
        updates={"failure": {"error_type": "ValidationError", "reason": "unsupported type", "stage": "STARTING"}},
    )

    view = subject_status_view(failed)

    assert view["status"] == "failed"
    assert view["reason"] == "unsupported type"
    assert view["error_type"] == "ValidationError"
    assert view["run_id"] == run.run_id
