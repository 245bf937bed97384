from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
from google.api_core import exceptions as gexc
from google.cloud import documentai_v1 as documentai
from google.longrunning import operations_pb2

from docflow.errors import ExternalServiceError, ValidationError
from docflow.services.object_locator import GCSObjectLocator, mime_type_for
from docflow.services.ocr_provider import DocumentAIBatchProvider, ObjectRef, normalise_documents
from tests.stubs.gcs_stub import FakeStorageClient

OP_NAME = "projects/p/locations/us/operations/123"
OUTPUT = "gs://ocr-out/ocr/20240101/run-1/abc/123/0"


class _FakeDocAIClient:
    def __init__(self) -> None:
        self.requests = []
        self.failures: list[Exception] = []
        self.operation = None
        self.cancelled = []

    async def batch_process_documents(self, request):
        self.requests.append(request)
        if self.failures:
            raise self.failures.pop(0)
        return SimpleNamespace(operation=SimpleNamespace(name=OP_NAME))

    async def get_operation(self, request):
        return self.operation

    async def cancel_operation(self, request):
        self.cancelled.append(request["name"])


def _finished_operation(destination: str = OUTPUT) -> operations_pb2.Operation:
    metadata = documentai.BatchProcessMetadata(
        individual_process_statuses=[
            documentai.BatchProcessMetadata.IndividualProcessStatus(
                input_gcs_source="gs://intake/o-1/s-1/doc.pdf",
                output_gcs_destination=destination,
            )
        ]
    )
    operation = operations_pb2.Operation(name=OP_NAME, done=True)
    operation.metadata.value = documentai.BatchProcessMetadata.serialize(metadata)
    return operation


def _provider(client=None, storage=None) -> DocumentAIBatchProvider:
    return DocumentAIBatchProvider(
        processor_name="projects/p/locations/us/processors/pid",
        output_bucket="ocr-out",
        client=client or _FakeDocAIClient(),
        storage_client=storage or FakeStorageClient(),
    )


@pytest.mark.asyncio
async def test_submit_builds_batch_request():
    client = _FakeDocAIClient()
    provider = _provider(client)

    job_id = await provider.submit(ObjectRef("gs://intake/o-1/s-1/doc.pdf", "application/pdf"), job_tag="run-1")

    assert job_id == OP_NAME
    request = client.requests[0]
    assert request["name"] == "projects/p/locations/us/processors/pid"
    assert request["input_documents"]["gcs_documents"]["documents"] == [
        {"gcs_uri": "gs://intake/o-1/s-1/doc.pdf", "mime_type": "application/pdf"}
    ]
    output_uri = request["document_output_config"]["gcs_output_config"]["gcs_uri"]
    assert output_uri.startswith("gs://ocr-out/ocr/")
    assert "/run-1/" in output_uri


@pytest.mark.asyncio
async def test_submit_retries_transient_errors():
    client = _FakeDocAIClient()
    client.failures = [gexc.ServiceUnavailable("busy")]

    assert await _provider(client).submit(ObjectRef("gs://b/x.pdf", "application/pdf"), job_tag="t") == OP_NAME
    assert len(client.requests) == 2


@pytest.mark.asyncio
async def test_submit_rejection_is_external_service_error():
    client = _FakeDocAIClient()
    client.failures = [gexc.InvalidArgument("bad processor")]

    with pytest.raises(ExternalServiceError):
        await _provider(client).submit(ObjectRef("gs://b/x.pdf", "application/pdf"), job_tag="t")
    assert len(client.requests) == 1


@pytest.mark.asyncio
async def test_fetch_result_reads_shards_in_order():
    storage = FakeStorageClient()
    bucket = storage.bucket("ocr-out")
    prefix = OUTPUT[len("gs://ocr-out/"):]
    second = {
        "text": "Page two\n",
        "pages": [{"layout": {"textAnchor": {"textSegments": [{"endIndex": "9"}]}}}],
    }
    first = {
        "text": "Hello\nWorld\n",
        "pages": [{"layout": {"textAnchor": {"textSegments": [{"startIndex": "0", "endIndex": "6"}]}}}],
    }
    bucket.blob(f"{prefix}/doc-1.json").upload_from_string(json.dumps(second))
    bucket.blob(f"{prefix}/doc-0.json").upload_from_string(json.dumps(first))
    client = _FakeDocAIClient()
    client.operation = _finished_operation()

    result = await _provider(client, storage).fetch_result(OP_NAME)

    assert result["text"] == "Hello\nWorld\n\nPage two\n"
    assert result["pages"] == [{"page_number": 1, "text": "Hello"}, {"page_number": 2, "text": "Page two"}]


@pytest.mark.asyncio
async def test_fetch_result_requires_finished_operation():
    client = _FakeDocAIClient()
    client.operation = operations_pb2.Operation(name=OP_NAME, done=False)

    with pytest.raises(ExternalServiceError):
        await _provider(client).fetch_result(OP_NAME)


@pytest.mark.asyncio
async def test_fetch_result_without_outputs():
    client = _FakeDocAIClient()
    client.operation = _finished_operation()

    with pytest.raises(ExternalServiceError):
        await _provider(client).fetch_result(OP_NAME)


@pytest.mark.asyncio
async def test_cancel_wraps_api_errors():
    class _RejectingClient(_FakeDocAIClient):
        async def cancel_operation(self, request):
            raise gexc.FailedPrecondition("already done")

    provider = _provider(_RejectingClient())

    with pytest.raises(ExternalServiceError):
        await provider.cancel(OP_NAME)


def test_normalise_documents_numbers_pages_across_shards():
    result = normalise_documents(
        [
            {"text": "", "pages": [{"layout": {}}]},
            {"text": "abc", "pages": [{"layout": {"text_anchor": {"text_segments": [{"start_index": 1, "end_index": 3}]}}}]},
        ]
    )
    assert result == {"text": "abc", "pages": [{"page_number": 1, "text": ""}, {"page_number": 2, "text": "bc"}]}


@pytest.mark.asyncio
async def test_locator_picks_supported_object():
    storage = FakeStorageClient()
    bucket = storage.bucket("intake")
    bucket.blob("o-1/s-1/readme.txt").upload_from_string("notes")
    bucket.blob("o-1/s-1/scan.PDF").upload_from_string("%PDF")
    locator = GCSObjectLocator(bucket="intake", client=storage)

    ref = await locator.locate("s-1", "o-1")

    assert ref == ObjectRef("gs://intake/o-1/s-1/scan.PDF", "application/pdf")


@pytest.mark.asyncio
async def test_locator_rejects_missing_or_unsupported():
    storage = FakeStorageClient()
    storage.bucket("intake").blob("o-1/s-2/answers.docx").upload_from_string("doc")
    locator = GCSObjectLocator(bucket="intake", client=storage)

    with pytest.raises(ValidationError):
        await locator.locate("s-1", "o-1")
    with pytest.raises(ValidationError):
        await locator.locate("s-2", "o-1")


@pytest.mark.asyncio
async def test_locator_accepts_explicit_source_uri():
    locator = GCSObjectLocator(bucket="intake", client=FakeStorageClient())

    ref = await locator.locate("s-1", "o-1", source_uri="gs://other/scan.tif")

    assert ref.mime_type == "image/tiff"
    with pytest.raises(ValidationError):
        await locator.locate("s-1", "o-1", source_uri="https://example.com/scan.pdf")


def test_mime_type_for():
    assert mime_type_for("a/b.jpeg") == "image/jpeg"
    with pytest.raises(ValidationError):
        mime_type_for("a/b")
