"""Document AI batch OCR behind a small submit / fetch / cancel contract.

Submission returns as soon as Document AI accepts the long-running operation;
the operation name is the external job id. Completion is signalled out of band
(a Pub/Sub notification handled by the notification listener), after which
`fetch_result` reads the sharded JSON output the operation wrote to GCS and
normalises it to `{"text": ..., "pages": [...]}`.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol

from google.api_core import exceptions as gexc
from google.api_core.client_options import ClientOptions
from google.cloud import documentai_v1 as documentai
from google.cloud import storage  # type: ignore[attr-defined]
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from docflow.errors import ExternalServiceError

_LOG = logging.getLogger("ocr.provider")

_TRANSIENT_ERRORS = (
    gexc.ServiceUnavailable,
    gexc.DeadlineExceeded,
    gexc.InternalServerError,
    gexc.TooManyRequests,
)
_SHARD_RE = re.compile(r"-(\d+)\.json$")


@dataclass(slots=True, frozen=True)
class ObjectRef:
    """Location of a subject's stored input document."""

    uri: str
    mime_type: str


class OcrProvider(Protocol):
    async def submit(self, source: ObjectRef, *, job_tag: str) -> str: ...

    async def fetch_result(self, external_job_id: str) -> Dict[str, Any]: ...

    async def cancel(self, external_job_id: str) -> None: ...


def _layout_text(layout: Dict[str, Any], full_text: str) -> str:
    anchor = layout.get("textAnchor") or layout.get("text_anchor") or {}
    pieces: list[str] = []
    for segment in anchor.get("textSegments") or anchor.get("text_segments") or []:
        start = int(segment.get("startIndex") or segment.get("start_index") or 0)
        end = int(segment.get("endIndex") or segment.get("end_index") or 0)
        pieces.append(full_text[start:end])
    return "".join(pieces)


def normalise_documents(documents: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge Document AI output shards into one text / page list."""
    pages_out: List[Dict[str, Any]] = []
    text_parts: List[str] = []
    for doc in documents:
        full_text = doc.get("text") or ""
        if full_text:
            text_parts.append(full_text)
        for page in doc.get("pages") or []:
            layout = page.get("layout") or {}
            pages_out.append(
                {"page_number": len(pages_out) + 1, "text": _layout_text(layout, full_text).strip()}
            )
    return {"text": "\n".join(text_parts), "pages": pages_out}


def _shard_index(blob_name: str) -> int:
    match = _SHARD_RE.search(blob_name)
    return int(match.group(1)) if match else 0


def _split_gcs_uri(uri: str) -> tuple[str, str]:
    if not uri.startswith("gs://"):
        raise ExternalServiceError(f"Expected a gs:// URI, got {uri!r}")
    bucket, _, prefix = uri[5:].partition("/")
    return bucket, prefix


class DocumentAIBatchProvider(OcrProvider):
    """Submits batch OCR operations and reads their output from GCS."""

    def __init__(
        self,
        *,
        processor_name: str,
        output_bucket: str,
        location: str = "us",
        client: Any | None = None,
        storage_client: Any | None = None,
        kms_key_name: str | None = None,
        max_attempts: int = 4,
    ) -> None:
        self.processor_name = processor_name
        self.output_bucket = output_bucket
        self.kms_key_name = kms_key_name
        self.max_attempts = max_attempts
        self.location = location
        self._client = client
        self._storage = storage_client

    @property
    def client(self) -> Any:
        # the grpc aio channel binds to the running loop, so build it on first use
        if self._client is None:
            self._client = documentai.DocumentProcessorServiceAsyncClient(
                client_options=ClientOptions(api_endpoint=f"{self.location}-documentai.googleapis.com")
            )
        return self._client

    @property
    def storage_client(self) -> Any:
        if self._storage is None:
            self._storage = storage.Client()
        return self._storage

    async def submit(self, source: ObjectRef, *, job_tag: str) -> str:
        output_prefix = f"gs://{self.output_bucket}/ocr/{time.strftime('%Y%m%d')}/{job_tag}/{uuid.uuid4().hex}/"
        output_config: Dict[str, Any] = {"gcs_uri": output_prefix}
        request: Dict[str, Any] = {
            "name": self.processor_name,
            "input_documents": {
                "gcs_documents": {"documents": [{"gcs_uri": source.uri, "mime_type": source.mime_type}]}
            },
            "document_output_config": {"gcs_output_config": output_config},
        }
        _LOG.info(
            "ocr_submit_start",
            extra={"input_uri": source.uri, "output_prefix": output_prefix, "job_tag": job_tag},
        )
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_TRANSIENT_ERRORS),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_random_exponential(multiplier=1, max=20),
                reraise=True,
            ):
                with attempt:
                    operation = await self.client.batch_process_documents(request=request)
        except gexc.GoogleAPICallError as exc:
            raise ExternalServiceError(f"OCR submission rejected: {exc}") from exc
        name = getattr(getattr(operation, "operation", None), "name", None)
        if not name:
            raise ExternalServiceError("OCR provider did not return an operation name")
        _LOG.info("ocr_submit_accepted", extra={"external_job_id": name, "job_tag": job_tag})
        return name

    async def fetch_result(self, external_job_id: str) -> Dict[str, Any]:
        try:
            operation = await self.client.get_operation(request={"name": external_job_id})
        except gexc.GoogleAPICallError as exc:
            raise ExternalServiceError(f"Failed to load OCR operation {external_job_id}: {exc}") from exc
        if not operation.done:
            raise ExternalServiceError(f"OCR operation {external_job_id} has not finished")
        if operation.HasField("error") and operation.error.code:
            raise ExternalServiceError(f"OCR operation failed: {operation.error.message}")
        metadata = documentai.BatchProcessMetadata.deserialize(operation.metadata.value)
        destinations = [
            status.output_gcs_destination
            for status in metadata.individual_process_statuses
            if status.output_gcs_destination
        ]
        if not destinations:
            raise ExternalServiceError(f"OCR operation {external_job_id} reported no output")
        documents = await asyncio.to_thread(self._read_output_documents, destinations)
        result = normalise_documents(documents)
        _LOG.info(
            "ocr_result_loaded",
            extra={"external_job_id": external_job_id, "pages": len(result["pages"]), "text_length": len(result["text"])},
        )
        return result

    async def cancel(self, external_job_id: str) -> None:
        try:
            await self.client.cancel_operation(request={"name": external_job_id})
        except gexc.GoogleAPICallError as exc:
            raise ExternalServiceError(f"Failed to cancel OCR operation {external_job_id}: {exc}") from exc
        _LOG.warning("ocr_operation_cancelled", extra={"external_job_id": external_job_id})

    def _read_output_documents(self, destinations: List[str]) -> List[Dict[str, Any]]:
        documents: List[Dict[str, Any]] = []
        for destination in destinations:
            bucket_name, prefix = _split_gcs_uri(destination)
            blobs = [b for b in self.storage_client.list_blobs(bucket_name, prefix=prefix) if b.name.endswith(".json")]
            for blob in sorted(blobs, key=lambda b: _shard_index(b.name)):
                try:
                    parsed = json.loads(blob.download_as_bytes().decode("utf-8"))
                except (ValueError, UnicodeDecodeError) as exc:
                    raise ExternalServiceError(f"Failed parsing OCR output {blob.name}: {exc}") from exc
                doc = parsed.get("document") if isinstance(parsed, dict) and "document" in parsed else parsed
                if isinstance(doc, dict):
                    documents.append(doc)
        if not documents:
            raise ExternalServiceError("No JSON outputs found for OCR operation")
        return documents


__all__ = ["ObjectRef", "OcrProvider", "DocumentAIBatchProvider", "normalise_documents"]
