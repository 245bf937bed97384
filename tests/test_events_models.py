import base64
import json

import pytest

from docflow.models.events import (
    JobOutcome,
    MalformedNotificationError,
    OcrCompletionEvent,
    RunStatusEvent,
)


def _push(payload, attributes=None):
    return {
        "message": {
            "data": base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii"),
            "attributes": attributes or {},
            "messageId": "m-1",
        },
        "subscription": "projects/p/subscriptions/ocr-done",
    }


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("SUCCEEDED", JobOutcome.COMPLETED),
        ("succeeded", JobOutcome.COMPLETED),
        ("STATE_SUCCEEDED", JobOutcome.COMPLETED),
        ("DONE", JobOutcome.COMPLETED),
        ("FAILED", JobOutcome.FAILED),
        ("ERROR", JobOutcome.FAILED),
        ("", JobOutcome.FAILED),
    ],
)
def test_outcome_mapping(raw, expected):
    assert JobOutcome.parse(raw) is expected


def test_push_envelope_decoding():
    event = OcrCompletionEvent.from_push_envelope(
        _push({"JobId": "projects/p/locations/us/operations/9", "Status": "SUCCEEDED"})
    )

    assert event.external_job_id == "projects/p/locations/us/operations/9"
    assert event.outcome is JobOutcome.COMPLETED
    assert event.message_id == "m-1"


def test_attributes_supply_missing_fields():
    event = OcrCompletionEvent.from_push_envelope(
        _push({"state": "FAILED"}, attributes={"external_job_id": "op-3"})
    )

    assert event.external_job_id == "op-3"
    assert event.outcome is JobOutcome.FAILED


def test_operation_style_payload():
    done = OcrCompletionEvent.from_mapping({"name": "operations/1", "done": True})
    errored = OcrCompletionEvent.from_mapping({"name": "operations/2", "done": True, "error": {"code": 3}})

    assert done.outcome is JobOutcome.COMPLETED
    assert errored.outcome is JobOutcome.FAILED


def test_raw_body_without_envelope():
    event = OcrCompletionEvent.from_push_envelope({"externalJobId": "op-7", "outcome": "COMPLETED"})
    assert event.external_job_id == "op-7"


@pytest.mark.parametrize(
    "body",
    [
        {"message": {"data": "!!not-base64!!"}},
        {"message": {"data": base64.b64encode(b"[1, 2]").decode("ascii")}},
        _push({"Status": "SUCCEEDED"}),
        _push({"JobId": "op-1"}),
    ],
)
def test_malformed_notifications(body):
    with pytest.raises(MalformedNotificationError):
        OcrCompletionEvent.from_push_envelope(body)


def test_run_status_event_serialisation():
    event = RunStatusEvent(
        run_id="run-1",
        pipeline="question_file",
        subject_id="s-1",
        owner_id="o-1",
        stage="FAILED",
        failure={"reason": "timeout"},
    )

    data, attributes = event.to_pubsub()
    payload = json.loads(data)

    assert payload["event_type"] == "pipeline.run.failed"
    assert payload["failure"] == {"reason": "timeout"}
    assert attributes == {"run_id": "run-1", "pipeline": "question_file", "stage": "FAILED", "subject_id": "s-1"}
