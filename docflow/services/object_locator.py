"""Resolve a subject's stored input document in the intake bucket."""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, Protocol

from google.api_core import exceptions as gexc
from google.cloud import storage  # type: ignore[attr-defined]

from docflow.errors import ExternalServiceError, ValidationError
from docflow.services.ocr_provider import ObjectRef

LOG = logging.getLogger("ocr.locator")

SUPPORTED_MIME_TYPES: Dict[str, str] = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
}


def mime_type_for(name: str) -> str:
    """Return the OCR MIME type for an object name or raise ValidationError."""
    ext = os.path.splitext(name)[1].lower()
    mime_type = SUPPORTED_MIME_TYPES.get(ext)
    if mime_type is None:
        raise ValidationError(f"Unsupported file type {ext or '(none)'!s} for OCR: {name}")
    return mime_type


class ObjectLocator(Protocol):
    async def locate(self, subject_id: str, owner_id: str, *, source_uri: str | None = None) -> ObjectRef: ...


class GCSObjectLocator(ObjectLocator):
    """Finds the first supported object under `gs://{bucket}/{owner_id}/{subject_id}/`."""

    def __init__(self, *, bucket: str, client: Any | None = None) -> None:
        self.bucket = bucket
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = storage.Client()
        return self._client

    async def locate(self, subject_id: str, owner_id: str, *, source_uri: str | None = None) -> ObjectRef:
        if not subject_id or not owner_id:
            raise ValidationError("subject_id and owner_id are required")
        if source_uri:
            if not source_uri.startswith("gs://"):
                raise ValidationError("source_uri must be a gs:// URI")
            return ObjectRef(uri=source_uri, mime_type=mime_type_for(source_uri))
        return await asyncio.to_thread(self._locate_sync, subject_id, owner_id)

    def _locate_sync(self, subject_id: str, owner_id: str) -> ObjectRef:
        prefix = f"{owner_id}/{subject_id}/"
        try:
            names = sorted(blob.name for blob in self.client.list_blobs(self.bucket, prefix=prefix))
        except gexc.GoogleAPICallError as exc:
            raise ExternalServiceError(f"Failed listing intake objects under {prefix}: {exc}") from exc
        names = [name for name in names if not name.endswith("/")]
        if not names:
            raise ValidationError(f"No stored document for subject {subject_id} (owner {owner_id})")
        for name in names:
            ext = os.path.splitext(name)[1].lower()
            if ext in SUPPORTED_MIME_TYPES:
                LOG.info("input_object_located", extra={"subject_id": subject_id, "object_name": name})
                return ObjectRef(uri=f"gs://{self.bucket}/{name}", mime_type=SUPPORTED_MIME_TYPES[ext])
        raise ValidationError(f"Stored document for subject {subject_id} has an unsupported file type: {names[0]}")


__all__ = ["ObjectLocator", "GCSObjectLocator", "SUPPORTED_MIME_TYPES", "mime_type_for"]
