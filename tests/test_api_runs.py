import base64
import json

import pytest
from fastapi.testclient import TestClient

from docflow.config import AppConfig
from docflow.errors import ExternalServiceError, PersistenceError
from docflow.main import build_services, create_app
from tests.stubs.pipeline_stubs import FakeLocator, FakeOcrProvider


def _push(job_id: str, status: str = "SUCCEEDED") -> dict:
    data = base64.b64encode(json.dumps({"JobId": job_id, "Status": status}).encode("utf-8")).decode("ascii")
    return {"message": {"data": data, "messageId": "m-1", "attributes": {}}}


@pytest.fixture
def client(services):
    app = create_app(services)
    return TestClient(app)


def test_begin_and_complete_run(client, services):
    started = client.post("/pipelines/knowledge_base/runs", json={"subjectId": "s-1", "ownerId": "o-1"})

    assert started.status_code == 202
    body = started.json()
    assert body["stage"] == "AWAITING_CALLBACK"
    assert body["status"] == "processing"
    assert "resumption_token" not in body

    notified = client.post("/notifications/ocr", json=_push(body["external_job_id"]))
    assert notified.status_code == 200
    assert notified.json()["status"] == "resumed"

    status = client.get(f"/runs/{body['run_id']}")
    assert status.status_code == 200
    assert status.json()["stage"] == "SUCCEEDED"
    assert status.json()["status"] == "succeeded"

    duplicate = client.post("/notifications/ocr", json=_push(body["external_job_id"]))
    assert duplicate.status_code == 200
    assert duplicate.json()["status"] == "dropped"


def test_failed_notification_marks_run_failed(client):
    body = client.post("/pipelines/question_file/runs", json={"subjectId": "s-1", "ownerId": "o-1"}).json()

    client.post("/notifications/ocr", json=_push(body["external_job_id"], status="FAILED"))

    status = client.get(f"/runs/{body['run_id']}").json()
    assert status["status"] == "failed"
    assert status["failure"]["stage"] == "AWAITING_CALLBACK"



def test_subject_status_follows_latest_run(client, clock):
    path = "/pipelines/question_file/subjects/o-1/s-1"
    assert client.get(path).status_code == 404

    first = client.post("/pipelines/question_file/runs", json={"subjectId": "s-1", "ownerId": "o-1"}).json()
    assert client.get(path).json()["status"] == "processing"

    client.post("/notifications/ocr", json=_push(first["external_job_id"], status="FAILED"))
    failed = client.get(path).json()
    assert failed["status"] == "failed"
    assert failed["run_id"] == first["run_id"]
    assert failed["reason"] == "OCR provider reported the job as failed"

    second = client.post("/pipelines/question_file/runs", json={"subjectId": "s-1", "ownerId": "o-1"}).json()
    clock.advance(3600)
    client.post("/internal/sweep", headers={"x-internal-event-token": "token"})
    timed_out = client.get(path).json()
    assert timed_out["run_id"] == second["run_id"]
    assert timed_out["status"] == "failed"
    assert timed_out["error_type"] == "PipelineTimeoutError"

    third = client.post("/pipelines/question_file/runs", json={"subjectId": "s-1", "ownerId": "o-1"}).json()
    client.post("/notifications/ocr", json=_push(third["external_job_id"]))
    succeeded = client.get(path).json()
    assert succeeded["status"] == "succeeded"
    assert succeeded["reason"] is None
    assert succeeded["document_key"] == "question_file/o-1/s-1.json"


def test_subject_status_unknown_pipeline(client):
    assert client.get("/pipelines/payroll/subjects/o-1/s-1").status_code == 404


@pytest.mark.parametrize(
    "payload",
    [
        {"message": {"data": base64.b64encode(b"not json").decode("ascii")}},
        {"message": {"data": base64.b64encode(b'{"Status": "SUCCEEDED"}').decode("ascii")}},
        ["not", "an", "object"],
    ],
)
def test_malformed_notifications_are_acknowledged(client, payload):
    response = client.post("/notifications/ocr", json=payload)

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


def test_unknown_job_notification_is_acknowledged(client):
    response = client.post("/notifications/ocr", json=_push("operations/unknown"))

    assert response.status_code == 200
    assert response.json()["status"] == "dropped"


def test_unknown_pipeline_and_run(client):
    assert client.post("/pipelines/payroll/runs", json={"subjectId": "s", "ownerId": "o"}).status_code == 404
    assert client.get("/runs/does-not-exist").status_code == 404


def test_invalid_request_is_400(client):
    response = client.post("/pipelines/knowledge_base/runs", json={"subjectId": ""})
    assert response.status_code == 400


def test_submission_failure_is_502(client, provider):
    provider.submit_error = ExternalServiceError("processor disabled")

    response = client.post("/pipelines/knowledge_base/runs", json={"subjectId": "s-1", "ownerId": "o-1"})

    assert response.status_code == 502
    assert "processor disabled" in response.json()["detail"]


def test_store_failure_is_503(env, clock):
    class _BrokenLocator(FakeLocator):
        async def locate(self, subject_id, owner_id, *, source_uri=None):
            raise PersistenceError("state bucket unavailable")

    services = build_services(AppConfig(), provider=FakeOcrProvider(), locator=_BrokenLocator(), clock=clock)
    client = TestClient(create_app(services))

    response = client.post("/pipelines/knowledge_base/runs", json={"subjectId": "s-1", "ownerId": "o-1"})

    assert response.status_code == 503


def test_internal_sweep_requires_token(client, services, clock):
    body = client.post("/pipelines/knowledge_base/runs", json={"subjectId": "s-1", "ownerId": "o-1"}).json()
    clock.advance(3600)

    assert client.post("/internal/sweep").status_code == 401
    assert client.post("/internal/sweep", headers={"x-internal-event-token": "wrong"}).status_code == 401

    response = client.post("/internal/sweep", headers={"x-internal-event-token": "token"})
    assert response.status_code == 200
    assert response.json()["expired_runs"] == [body["run_id"]]
    assert client.get(f"/runs/{body['run_id']}").json()["failure"]["error_type"] == "PipelineTimeoutError"


def test_health_and_metrics(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "docflow_run_events_total" in metrics.text or "python_info" in metrics.text


def test_missing_internal_token_fails_fast(env, services):
    env.setenv("INTERNAL_EVENT_TOKEN", "")

    with pytest.raises(RuntimeError):
        create_app(services)
