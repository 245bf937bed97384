"""Document store: the visibility point for processed subject records."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Protocol

from google.api_core import exceptions as gexc
from google.cloud import storage  # type: ignore[attr-defined]

from docflow.errors import PersistenceError

LOG = logging.getLogger("pipeline.document_store")


def document_key(pipeline: str, owner_id: str, subject_id: str) -> str:
    return f"{pipeline}/{owner_id}/{subject_id}.json"


class DocumentStore(Protocol):
    async def upsert(self, *, pipeline: str, owner_id: str, subject_id: str, record: Mapping[str, Any]) -> str:
        """Write the record, replacing any prior version, and return its key."""
        ...

    async def get(self, key: str) -> Dict[str, Any] | None: ...


def _with_timestamp(record: Mapping[str, Any]) -> Dict[str, Any]:
    payload = dict(record)
    payload["updated_at"] = datetime.now(timezone.utc).isoformat()
    return payload


class InMemoryDocumentStore(DocumentStore):
    """Simple store for testing."""

    def __init__(self) -> None:
        self.records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    async def upsert(self, *, pipeline: str, owner_id: str, subject_id: str, record: Mapping[str, Any]) -> str:
        key = document_key(pipeline, owner_id, subject_id)
        with self._lock:
            self.records[key] = _with_timestamp(record)
        return key

    async def get(self, key: str) -> Dict[str, Any] | None:
        with self._lock:
            record = self.records.get(key)
            return None if record is None else dict(record)


class GCSDocumentStore(DocumentStore):  # pragma: no cover - requires GCP services
    """Stores one JSON object per subject; rewrites overwrite the prior version."""

    def __init__(
        self,
        *,
        bucket: str,
        client: storage.Client | None = None,
        kms_key_name: str | None = None,
    ) -> None:
        self._client = client or storage.Client()
        self._bucket = self._client.bucket(bucket)
        self.kms_key_name = kms_key_name

    async def upsert(self, *, pipeline: str, owner_id: str, subject_id: str, record: Mapping[str, Any]) -> str:
        key = document_key(pipeline, owner_id, subject_id)
        payload = json.dumps(_with_timestamp(record), separators=(",", ":"), sort_keys=True)
        await asyncio.to_thread(self._upload, key, payload, {"pipeline": pipeline, "owner_id": owner_id})
        LOG.info("document_store_upserted", extra={"document_key": key, "pipeline": pipeline})
        return key

    async def get(self, key: str) -> Dict[str, Any] | None:
        return await asyncio.to_thread(self._download, key)

    def _upload(self, key: str, payload: str, metadata: Dict[str, str]) -> None:
        blob = self._bucket.blob(key)
        if self.kms_key_name:
            setattr(blob, "kms_key_name", self.kms_key_name)
        blob.metadata = metadata
        try:
            blob.upload_from_string(payload, content_type="application/json")
        except gexc.GoogleAPICallError as exc:
            raise PersistenceError(f"Failed writing document {key}: {exc}") from exc

    def _download(self, key: str) -> Dict[str, Any] | None:
        blob = self._bucket.blob(key)
        try:
            return json.loads(blob.download_as_text())
        except gexc.NotFound:
            return None


def create_document_store(cfg: Any) -> DocumentStore:
    if cfg.document_store_backend == "gcs":
        if not cfg.document_store_bucket:
            raise RuntimeError("DOCUMENT_STORE_BUCKET required when DOCUMENT_STORE_BACKEND=gcs")
        return GCSDocumentStore(bucket=cfg.document_store_bucket, kms_key_name=cfg.cmek_key_name)
    return InMemoryDocumentStore()


__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
    "GCSDocumentStore",
    "create_document_store",
    "document_key",
]
