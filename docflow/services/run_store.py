"""Persisted pipeline run state.

A `PipelineRun` is one execution of an ingestion pipeline for one subject
document. The orchestrator is the only writer of `stage`; every change goes
through `RunStore.transition`, a compare-and-set that rejects the write when the
run is no longer in the expected stage. That check is what makes a second
resume a no-op rather than a re-execution.

Two implementations:

* `InMemoryRunStore` guarded by an RLock (tests, single-process development).
* `GCSRunStore` writing one JSON object per run; updates use
  `if_generation_match` so concurrent writers cannot clobber each other, and
  side indexes map resumption tokens and suspended runs to run ids.
"""
from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, MutableMapping, Protocol, TypedDict

from google.api_core import exceptions as gexc
from google.cloud import storage

from docflow.errors import InvalidStateError, PersistenceError

LOG = logging.getLogger("pipeline.runs")

Clock = Callable[[], float]


class RunStage(str, Enum):
    """Run lifecycle. Stages only move forward; SUCCEEDED and FAILED are terminal."""

    STARTING = "STARTING"
    AWAITING_CALLBACK = "AWAITING_CALLBACK"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (RunStage.SUCCEEDED, RunStage.FAILED)


ALLOWED_TRANSITIONS: Dict[RunStage, frozenset[RunStage]] = {
    RunStage.STARTING: frozenset({RunStage.AWAITING_CALLBACK, RunStage.FAILED}),
    RunStage.AWAITING_CALLBACK: frozenset({RunStage.PROCESSING, RunStage.FAILED}),
    RunStage.PROCESSING: frozenset({RunStage.SUCCEEDED, RunStage.FAILED}),
    RunStage.SUCCEEDED: frozenset(),
    RunStage.FAILED: frozenset(),
}


class RunHistoryEntry(TypedDict, total=False):
    stage: str
    timestamp: float
    message: str


@dataclass(slots=True)
class PipelineRun:
    run_id: str
    pipeline: str
    subject_id: str
    owner_id: str
    trace_id: str
    stage: RunStage = RunStage.STARTING
    external_job_id: str | None = None
    resumption_token: str | None = None
    failure: Dict[str, Any] | None = None
    result: Dict[str, Any] | None = None
    history: list[RunHistoryEntry] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    suspended_at: float | None = None
    completed_at: float | None = None
    updated_at: float = field(default_factory=time.time)


class RunStore(Protocol):
    """Persistence interface for pipeline runs."""

    def create_run(self, *, pipeline: str, subject_id: str, owner_id: str, trace_id: str | None = None) -> PipelineRun:
        ...

    def get_run(self, run_id: str) -> PipelineRun | None:
        ...

    def get_by_token(self, token: str) -> PipelineRun | None:
        ...

    def transition(
        self,
        run_id: str,
        *,
        expected: RunStage,
        target: RunStage,
        message: str | None = None,
        updates: Dict[str, Any] | None = None,
    ) -> PipelineRun:
        ...

    def list_awaiting(self) -> list[PipelineRun]:
        ...

    def list_processing(self) -> list[PipelineRun]:
        ...

    def latest_for_subject(self, pipeline: str, owner_id: str, subject_id: str) -> PipelineRun | None:
        """Return the most recently created run for the subject."""
        ...


def _new_run(pipeline: str, subject_id: str, owner_id: str, trace_id: str | None, now: float) -> PipelineRun:
    return PipelineRun(
        run_id=uuid.uuid4().hex,
        pipeline=pipeline,
        subject_id=subject_id,
        owner_id=owner_id,
        trace_id=trace_id or uuid.uuid4().hex,
        history=[RunHistoryEntry(stage=RunStage.STARTING.value, timestamp=now)],
        started_at=now,
        updated_at=now,
    )


def _apply_transition(
    run: PipelineRun,
    *,
    expected: RunStage,
    target: RunStage,
    now: float,
    message: str | None,
    updates: Dict[str, Any] | None,
) -> None:
    if run.stage is not expected:
        raise InvalidStateError(run.run_id, expected.value, run.stage.value)
    if target not in ALLOWED_TRANSITIONS[expected]:
        raise InvalidStateError(run.run_id, f"a stage preceding {target.value}", run.stage.value)
    run.stage = target
    run.updated_at = now
    if target is RunStage.AWAITING_CALLBACK:
        run.suspended_at = now
    if target.terminal:
        run.completed_at = now
    entry = RunHistoryEntry(stage=target.value, timestamp=now)
    if message:
        entry["message"] = message
    run.history.append(entry)
    for key, value in (updates or {}).items():
        setattr(run, key, value)


def _log_transition(run: PipelineRun, expected: RunStage, message: str | None) -> None:
    LOG.info(
        "pipeline_run_transition",
        extra={
            "run_id": run.run_id,
            "pipeline": run.pipeline,
            "from_stage": expected.value,
            "stage": run.stage.value,
            "external_job_id": run.external_job_id,
            "trace_id": run.trace_id,
            "status_message": message,
        },
    )


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def subject_key(pipeline: str, owner_id: str, subject_id: str) -> str:
    return f"{pipeline}/{owner_id}/{subject_id}"


class InMemoryRunStore(RunStore):
    """Thread-safe in-memory store used for tests and local development."""

    def __init__(self, *, clock: Clock = time.time) -> None:
        self._runs: Dict[str, PipelineRun] = {}
        self._by_token: Dict[str, str] = {}
        self._by_subject: Dict[str, str] = {}
        self._clock = clock
        self._lock = threading.RLock()

    def create_run(self, *, pipeline: str, subject_id: str, owner_id: str, trace_id: str | None = None) -> PipelineRun:
        with self._lock:
            run = _new_run(pipeline, subject_id, owner_id, trace_id, self._clock())
            self._runs[run.run_id] = run
            self._by_subject[subject_key(pipeline, owner_id, subject_id)] = run.run_id
            LOG.info(
                "pipeline_run_created",
                extra={"run_id": run.run_id, "pipeline": pipeline, "subject_id": subject_id, "trace_id": run.trace_id},
            )
            return _clone_run(run)

    def get_run(self, run_id: str) -> PipelineRun | None:
        with self._lock:
            run = self._runs.get(run_id)
            return None if run is None else _clone_run(run)

    def get_by_token(self, token: str) -> PipelineRun | None:
        with self._lock:
            run_id = self._by_token.get(token_digest(token))
            return None if run_id is None else self.get_run(run_id)

    def transition(
        self,
        run_id: str,
        *,
        expected: RunStage,
        target: RunStage,
        message: str | None = None,
        updates: Dict[str, Any] | None = None,
    ) -> PipelineRun:
        with self._lock:
            run = self._runs[run_id]
            _apply_transition(run, expected=expected, target=target, now=self._clock(), message=message, updates=updates)
            if run.resumption_token:
                self._by_token[token_digest(run.resumption_token)] = run.run_id
            _log_transition(run, expected, message)
            return _clone_run(run)

    def list_awaiting(self) -> list[PipelineRun]:
        with self._lock:
            return [_clone_run(run) for run in self._runs.values() if run.stage is RunStage.AWAITING_CALLBACK]

    def list_processing(self) -> list[PipelineRun]:
        with self._lock:
            return [_clone_run(run) for run in self._runs.values() if run.stage is RunStage.PROCESSING]

    def latest_for_subject(self, pipeline: str, owner_id: str, subject_id: str) -> PipelineRun | None:
        with self._lock:
            run_id = self._by_subject.get(subject_key(pipeline, owner_id, subject_id))
            return None if run_id is None else self.get_run(run_id)


def _clone_run(run: PipelineRun) -> PipelineRun:
    return run_from_dict(run_to_dict(run))


# Non-terminal stages the sweeper has to find without scanning every run.
_STAGE_INDEXES: Dict[RunStage, str] = {
    RunStage.AWAITING_CALLBACK: "awaiting",
    RunStage.PROCESSING: "processing",
}


class GCSRunStore(RunStore):
    """GCS-backed run store with generation-matched (compare-and-set) updates."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "pipeline-state",
        *,
        client: Any | None = None,
        kms_key_name: str | None = None,
        clock: Clock = time.time,
        max_attempts: int = 5,
    ) -> None:
        self._client = client or storage.Client()
        self._bucket = self._client.bucket(bucket)
        self._prefix = prefix.rstrip("/")
        self._kms_key = kms_key_name
        self._clock = clock
        self._max_attempts = max_attempts

    def create_run(self, *, pipeline: str, subject_id: str, owner_id: str, trace_id: str | None = None) -> PipelineRun:
        run = _new_run(pipeline, subject_id, owner_id, trace_id, self._clock())
        self._write_json(self._run_path(run.run_id), run_to_dict(run), if_generation_match=0)
        # latest run wins; the subject path is overwritten by every new run
        self._write_json(
            self._subject_path(pipeline, owner_id, subject_id), {"run_id": run.run_id}, if_generation_match=None
        )
        LOG.info(
            "pipeline_run_created",
            extra={"run_id": run.run_id, "pipeline": pipeline, "subject_id": subject_id, "trace_id": run.trace_id},
        )
        return run

    def get_run(self, run_id: str) -> PipelineRun | None:
        loaded = self._read(self._run_path(run_id))
        return None if loaded is None else run_from_dict(loaded[0])

    def get_by_token(self, token: str) -> PipelineRun | None:
        loaded = self._read(f"{self._prefix}/tokens/{token_digest(token)}.json")
        if loaded is None:
            return None
        return self.get_run(loaded[0]["run_id"])

    def transition(
        self,
        run_id: str,
        *,
        expected: RunStage,
        target: RunStage,
        message: str | None = None,
        updates: Dict[str, Any] | None = None,
    ) -> PipelineRun:
        path = self._run_path(run_id)
        for attempt in range(self._max_attempts):
            loaded = self._read(path)
            if loaded is None:
                raise KeyError(run_id)
            payload, generation = loaded
            run = run_from_dict(payload)
            _apply_transition(run, expected=expected, target=target, now=self._clock(), message=message, updates=updates)
            try:
                self._write_json(path, run_to_dict(run), if_generation_match=generation)
            except gexc.PreconditionFailed:
                time.sleep(0.1 * (attempt + 1))
                continue
            self._update_indexes(run, expected)
            _log_transition(run, expected, message)
            return run
        raise PersistenceError(f"Failed to transition run {run_id} after {self._max_attempts} attempts")

    def list_awaiting(self) -> list[PipelineRun]:
        return self._list_indexed(RunStage.AWAITING_CALLBACK)

    def list_processing(self) -> list[PipelineRun]:
        return self._list_indexed(RunStage.PROCESSING)

    def latest_for_subject(self, pipeline: str, owner_id: str, subject_id: str) -> PipelineRun | None:
        loaded = self._read(self._subject_path(pipeline, owner_id, subject_id))
        return None if loaded is None else self.get_run(loaded[0]["run_id"])

    def _list_indexed(self, stage: RunStage) -> list[PipelineRun]:
        runs: list[PipelineRun] = []
        for blob in self._client.list_blobs(self._bucket, prefix=f"{self._prefix}/{_STAGE_INDEXES[stage]}/"):
            run = self.get_run(blob.name.rsplit("/", 1)[-1])
            # markers can lag the run object; the run itself is authoritative
            if run is not None and run.stage is stage:
                runs.append(run)
        return runs

    def _update_indexes(self, run: PipelineRun, previous: RunStage) -> None:
        if run.stage is RunStage.AWAITING_CALLBACK and run.resumption_token:
            self._write_json(
                f"{self._prefix}/tokens/{token_digest(run.resumption_token)}.json",
                {"run_id": run.run_id},
                if_generation_match=None,
            )
        if run.stage in _STAGE_INDEXES:
            self._write_json(
                self._marker_path(run.stage, run.run_id), {"updated_at": run.updated_at}, if_generation_match=None
            )
        if previous in _STAGE_INDEXES:
            try:
                self._bucket.blob(self._marker_path(previous, run.run_id)).delete()
            except gexc.NotFound:
                pass

    def _marker_path(self, stage: RunStage, run_id: str) -> str:
        return f"{self._prefix}/{_STAGE_INDEXES[stage]}/{run_id}"

    def _subject_path(self, pipeline: str, owner_id: str, subject_id: str) -> str:
        return f"{self._prefix}/subjects/{subject_key(pipeline, owner_id, subject_id)}.json"

    def _run_path(self, run_id: str) -> str:
        return f"{self._prefix}/runs/{run_id}.json"

    def _read(self, path: str) -> tuple[Dict[str, Any], int] | None:
        for _ in range(self._max_attempts):
            blob = self._bucket.get_blob(path)
            if blob is None:
                return None
            generation = blob.generation
            try:
                data = blob.download_as_bytes(if_generation_match=generation)
            except gexc.PreconditionFailed:
                # rewritten between metadata and media reads
                continue
            except gexc.NotFound:
                return None
            return json.loads(data.decode("utf-8")), generation
        raise PersistenceError(f"Object {path} kept changing while being read")

    def _write_json(self, path: str, payload: Dict[str, Any], *, if_generation_match: int | None) -> None:
        blob = self._bucket.blob(path)
        if self._kms_key:
            setattr(blob, "kms_key_name", self._kms_key)
        kwargs: Dict[str, Any] = {"content_type": "application/json"}
        if if_generation_match is not None:
            kwargs["if_generation_match"] = if_generation_match
        body = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        try:
            blob.upload_from_string(body, **kwargs)
        except gexc.PreconditionFailed:
            raise
        except gexc.GoogleAPICallError as exc:
            raise PersistenceError(f"Failed writing {path}: {exc}") from exc


def run_to_dict(run: PipelineRun) -> Dict[str, Any]:
    data = asdict(run)
    data["stage"] = run.stage.value
    return data


def run_from_dict(payload: MutableMapping[str, Any]) -> PipelineRun:
    return PipelineRun(
        run_id=payload["run_id"],
        pipeline=payload["pipeline"],
        subject_id=payload["subject_id"],
        owner_id=payload["owner_id"],
        trace_id=payload.get("trace_id") or uuid.uuid4().hex,
        stage=RunStage(payload.get("stage", RunStage.STARTING.value)),
        external_job_id=payload.get("external_job_id"),
        resumption_token=payload.get("resumption_token"),
        failure=None if payload.get("failure") is None else dict(payload["failure"]),
        result=None if payload.get("result") is None else dict(payload["result"]),
        history=[RunHistoryEntry(**entry) for entry in payload.get("history") or []],
        started_at=float(payload["started_at"]),
        suspended_at=payload.get("suspended_at"),
        completed_at=payload.get("completed_at"),
        updated_at=float(payload.get("updated_at", payload["started_at"])),
    )


def run_public_view(run: PipelineRun) -> Dict[str, Any]:
    """Shape run data for API responses; the resumption token is never exposed."""
    return {
        "run_id": run.run_id,
        "pipeline": run.pipeline,
        "subject_id": run.subject_id,
        "owner_id": run.owner_id,
        "stage": run.stage.value,
        "status": public_status(run.stage),
        "external_job_id": run.external_job_id,
        "trace_id": run.trace_id,
        "failure": None if run.failure is None else dict(run.failure),
        "result": None if run.result is None else dict(run.result),
        "history": list(run.history),
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "updated_at": run.updated_at,
    }


def subject_status_view(run: PipelineRun) -> Dict[str, Any]:
    """Status of a subject document as given by its latest run."""
    failure = run.failure or {}
    return {
        "pipeline": run.pipeline,
        "owner_id": run.owner_id,
        "subject_id": run.subject_id,
        "status": public_status(run.stage),
        "stage": run.stage.value,
        "run_id": run.run_id,
        "reason": failure.get("reason"),
        "error_type": failure.get("error_type"),
        "document_key": (run.result or {}).get("document_key"),
        "updated_at": run.updated_at,
    }


def public_status(stage: RunStage) -> str:
    """Collapse stages into the three states users see."""
    if stage is RunStage.SUCCEEDED:
        return "succeeded"
    if stage is RunStage.FAILED:
        return "failed"
    return "processing"


def create_run_store(cfg: Any, *, clock: Clock = time.time) -> RunStore:
    if cfg.pipeline_state_backend == "gcs":
        if not cfg.pipeline_state_bucket:
            raise RuntimeError("PIPELINE_STATE_BUCKET required when PIPELINE_STATE_BACKEND=gcs")
        return GCSRunStore(
            bucket=cfg.pipeline_state_bucket,
            prefix=cfg.pipeline_state_prefix,
            kms_key_name=cfg.cmek_key_name,
            clock=clock,
        )
    return InMemoryRunStore(clock=clock)


__all__ = [
    "RunStage",
    "ALLOWED_TRANSITIONS",
    "PipelineRun",
    "RunStore",
    "InMemoryRunStore",
    "GCSRunStore",
    "create_run_store",
    "run_public_view",
    "subject_key",
    "subject_status_view",
    "public_status",
    "run_to_dict",
    "run_from_dict",
    "token_digest",
]
