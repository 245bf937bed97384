"""Typed Pub/Sub messages consumed and emitted by the pipeline."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

ISO8601 = "%Y-%m-%dT%H:%M:%S.%fZ"

_JOB_ID_KEYS = ("external_job_id", "externalJobId", "JobId", "jobId", "operation", "name")
_STATUS_KEYS = ("outcome", "status", "Status", "state")
_SUCCESS_VALUES = {"SUCCEEDED", "COMPLETED", "DONE", "SUCCESS"}


def _now_utc() -> str:
    return datetime.now(tz=timezone.utc).strftime(ISO8601)


def _encode_pubsub_data(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")


class JobOutcome(str, Enum):
    """Terminal outcome reported by the OCR provider for one external job."""

    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @classmethod
    def parse(cls, raw: Any) -> "JobOutcome":
        value = str(raw or "").strip().upper()
        if value.startswith("STATE_"):
            value = value[len("STATE_"):]
        return cls.COMPLETED if value in _SUCCESS_VALUES else cls.FAILED


class MalformedNotificationError(ValueError):
    """Raised when a notification carries no job id or status."""


@dataclass(slots=True)
class OcrCompletionEvent:
    """Completion notice published by (or on behalf of) the OCR provider."""

    external_job_id: str
    outcome: JobOutcome
    message_id: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(
        cls,
        payload: Mapping[str, Any],
        attributes: Mapping[str, str] | None = None,
        message_id: str | None = None,
    ) -> "OcrCompletionEvent":
        attrs = {str(k): str(v) for k, v in (attributes or {}).items()}
        merged: dict[str, Any] = {**attrs, **payload}
        job_id = next((merged[k] for k in _JOB_ID_KEYS if merged.get(k)), None)
        status = next((merged[k] for k in _STATUS_KEYS if merged.get(k)), None)
        if status is None and "done" in merged:
            status = "FAILED" if merged.get("error") else ("DONE" if merged["done"] else None)
        if not job_id or status is None:
            raise MalformedNotificationError("notification missing job id or status")
        return cls(
            external_job_id=str(job_id).strip(),
            outcome=JobOutcome.parse(status),
            message_id=message_id,
            attributes=attrs,
        )

    @classmethod
    def from_push_envelope(cls, body: Mapping[str, Any]) -> "OcrCompletionEvent":
        """Decode a Pub/Sub push body, or a bare JSON notification."""
        message = body.get("message")
        if not isinstance(message, Mapping):
            return cls.from_mapping(body)
        attributes = message.get("attributes") or {}
        data = message.get("data")
        payload: Mapping[str, Any] = {}
        if isinstance(data, str) and data:
            try:
                decoded = base64.b64decode(data + "=" * (-len(data) % 4))
                payload = json.loads(decoded.decode("utf-8"))
            except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
                raise MalformedNotificationError("notification data is not base64 JSON") from exc
            if not isinstance(payload, Mapping):
                raise MalformedNotificationError("notification data must be a JSON object")
        elif isinstance(data, Mapping):
            payload = data
        return cls.from_mapping(
            payload,
            attributes=attributes,
            message_id=message.get("messageId") or message.get("message_id"),
        )


@dataclass(slots=True)
class RunStatusEvent:
    """Terminal run status published for downstream consumers."""

    run_id: str
    pipeline: str
    subject_id: str
    owner_id: str
    stage: str
    trace_id: str | None = None
    external_job_id: str | None = None
    failure: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    created_at: str = field(default_factory=_now_utc)

    def to_pubsub(self) -> tuple[bytes, dict[str, str]]:
        payload = asdict(self)
        payload["event_type"] = "pipeline.run." + self.stage.lower()
        attributes = {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "stage": self.stage,
            "subject_id": self.subject_id,
        }
        return _encode_pubsub_data(payload), attributes


__all__ = [
    "JobOutcome",
    "MalformedNotificationError",
    "OcrCompletionEvent",
    "RunStatusEvent",
]
