"""Job Record Store: correlates an external OCR job with a suspended run.

The store is the single source of truth for which suspended run an external
job belongs to. `consume` is a read-and-delete executed as one atomic step, so
when the notification bus redelivers a completion message only the first
delivery obtains the resumption token.
"""
from __future__ import annotations

import base64
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Protocol

from google.api_core import exceptions as gexc
from google.cloud import storage

from docflow.errors import PersistenceError, UnknownJobError

LOG = logging.getLogger("pipeline.job_records")


@dataclass(slots=True)
class JobRecord:
    external_job_id: str
    resumption_token: str
    run_id: str
    pipeline: str
    subject_id: str
    owner_id: str
    created_at: float = field(default_factory=time.time)


class JobRecordStore(Protocol):
    def put(self, record: JobRecord) -> None:
        ...

    def get(self, external_job_id: str) -> JobRecord | None:
        ...

    def consume(self, external_job_id: str) -> JobRecord:
        """Atomically fetch and delete the record; raise UnknownJobError if absent."""
        ...

    def delete(self, external_job_id: str) -> bool:
        ...

    def scan_stale(self, older_than: float) -> list[JobRecord]:
        """Return records whose `created_at` is earlier than `older_than`."""
        ...


def _check_existing(existing: JobRecord, record: JobRecord) -> None:
    # A retried put of the same record is a no-op; anything else is a collision.
    if existing.resumption_token != record.resumption_token:
        raise PersistenceError(
            f"Job record for {record.external_job_id} already exists for run {existing.run_id}"
        )


class InMemoryJobRecordStore(JobRecordStore):
    """Lock-guarded dict implementation used in tests and local development."""

    def __init__(self) -> None:
        self._records: Dict[str, JobRecord] = {}
        self._lock = threading.RLock()

    def put(self, record: JobRecord) -> None:
        with self._lock:
            existing = self._records.get(record.external_job_id)
            if existing is not None:
                _check_existing(existing, record)
                return
            self._records[record.external_job_id] = record
        LOG.info(
            "job_record_stored",
            extra={"external_job_id": record.external_job_id, "run_id": record.run_id, "pipeline": record.pipeline},
        )

    def get(self, external_job_id: str) -> JobRecord | None:
        with self._lock:
            return self._records.get(external_job_id)

    def consume(self, external_job_id: str) -> JobRecord:
        with self._lock:
            record = self._records.pop(external_job_id, None)
        if record is None:
            raise UnknownJobError(external_job_id)
        return record

    def delete(self, external_job_id: str) -> bool:
        with self._lock:
            return self._records.pop(external_job_id, None) is not None

    def scan_stale(self, older_than: float) -> list[JobRecord]:
        with self._lock:
            return [r for r in self._records.values() if r.created_at < older_than]


class GCSJobRecordStore(JobRecordStore):
    """One JSON object per record.

    Records are written once (`if_generation_match=0`) and never rewritten, so
    deleting with the generation observed at read time succeeds for exactly one
    caller.
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "pipeline-state",
        *,
        client: Any | None = None,
        kms_key_name: str | None = None,
    ) -> None:
        self._client = client or storage.Client()
        self._bucket = self._client.bucket(bucket)
        self._prefix = f"{prefix.rstrip('/')}/job-records"
        self._kms_key = kms_key_name

    def put(self, record: JobRecord) -> None:
        blob = self._bucket.blob(self._path(record.external_job_id))
        if self._kms_key:
            setattr(blob, "kms_key_name", self._kms_key)
        body = json.dumps(asdict(record), separators=(",", ":"), sort_keys=True)
        try:
            blob.upload_from_string(body, content_type="application/json", if_generation_match=0)
        except gexc.PreconditionFailed:
            existing = self.get(record.external_job_id)
            if existing is not None:
                _check_existing(existing, record)
            return
        except gexc.GoogleAPICallError as exc:
            raise PersistenceError(f"Failed to store job record {record.external_job_id}: {exc}") from exc
        LOG.info(
            "job_record_stored",
            extra={"external_job_id": record.external_job_id, "run_id": record.run_id, "pipeline": record.pipeline},
        )

    def get(self, external_job_id: str) -> JobRecord | None:
        blob = self._bucket.get_blob(self._path(external_job_id))
        if blob is None:
            return None
        try:
            return _record_from_bytes(blob.download_as_bytes(if_generation_match=blob.generation))
        except (gexc.NotFound, gexc.PreconditionFailed):
            return None

    def consume(self, external_job_id: str) -> JobRecord:
        blob = self._bucket.get_blob(self._path(external_job_id))
        if blob is None:
            raise UnknownJobError(external_job_id)
        generation = blob.generation
        try:
            record = _record_from_bytes(blob.download_as_bytes(if_generation_match=generation))
            blob.delete(if_generation_match=generation)
        except (gexc.NotFound, gexc.PreconditionFailed) as exc:
            raise UnknownJobError(external_job_id) from exc
        except gexc.GoogleAPICallError as exc:
            raise PersistenceError(f"Failed to consume job record {external_job_id}: {exc}") from exc
        return record

    def delete(self, external_job_id: str) -> bool:
        try:
            self._bucket.blob(self._path(external_job_id)).delete()
        except gexc.NotFound:
            return False
        return True

    def scan_stale(self, older_than: float) -> list[JobRecord]:
        stale: list[JobRecord] = []
        for blob in self._client.list_blobs(self._bucket, prefix=f"{self._prefix}/"):
            created = blob.time_created.timestamp() if blob.time_created else None
            if created is not None and created >= older_than:
                continue
            try:
                record = _record_from_bytes(blob.download_as_bytes())
            except gexc.NotFound:
                continue
            if record.created_at < older_than:
                stale.append(record)
        return stale

    def _path(self, external_job_id: str) -> str:
        # Operation names contain slashes; encode them into a flat object name.
        encoded = base64.urlsafe_b64encode(external_job_id.encode("utf-8")).decode("ascii").rstrip("=")
        return f"{self._prefix}/{encoded}.json"


def _record_from_bytes(data: bytes) -> JobRecord:
    return JobRecord(**json.loads(data.decode("utf-8")))


def create_job_record_store(cfg: Any) -> JobRecordStore:
    if cfg.pipeline_state_backend == "gcs":
        if not cfg.pipeline_state_bucket:
            raise RuntimeError("PIPELINE_STATE_BUCKET required when PIPELINE_STATE_BACKEND=gcs")
        return GCSJobRecordStore(
            bucket=cfg.pipeline_state_bucket,
            prefix=cfg.pipeline_state_prefix,
            kms_key_name=cfg.cmek_key_name,
        )
    return InMemoryJobRecordStore()


__all__ = [
    "JobRecord",
    "JobRecordStore",
    "InMemoryJobRecordStore",
    "GCSJobRecordStore",
    "create_job_record_store",
]
