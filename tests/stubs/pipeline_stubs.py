"""In-process stand-ins for the OCR provider, locator, publisher and model."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Sequence

from docflow.services.ocr_provider import ObjectRef


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLocator:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.calls: List[tuple[str, str]] = []

    async def locate(self, subject_id: str, owner_id: str, *, source_uri: str | None = None) -> ObjectRef:
        self.calls.append((subject_id, owner_id))
        if self.error:
            raise self.error
        return ObjectRef(uri=source_uri or f"gs://intake/{owner_id}/{subject_id}/doc.pdf", mime_type="application/pdf")


class FakeOcrProvider:
    """Records submissions and serves canned OCR output per external job id."""

    def __init__(self, *, text: str = "Default OCR text for the subject document.") -> None:
        self.default_text = text
        self.submitted: List[ObjectRef] = []
        self.results: Dict[str, Dict[str, Any]] = {}
        self.fetches: List[str] = []
        self.cancelled: List[str] = []
        self.submit_error: Exception | None = None
        self.fetch_delay: float = 0.0

    async def submit(self, source: ObjectRef, *, job_tag: str) -> str:
        if self.submit_error:
            raise self.submit_error
        self.submitted.append(source)
        return f"projects/p/locations/us/operations/op-{len(self.submitted)}"

    async def fetch_result(self, external_job_id: str) -> Dict[str, Any]:
        self.fetches.append(external_job_id)
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        return self.results.get(external_job_id, {"text": self.default_text, "pages": [{"page_number": 1}]})

    async def cancel(self, external_job_id: str) -> None:
        self.cancelled.append(external_job_id)


class FakePublisher:
    def __init__(self) -> None:
        self.messages: List[tuple[str, bytes, Dict[str, str]]] = []

    async def publish(self, topic: str, data: bytes, attributes: Dict[str, str] | None = None) -> str:
        self.messages.append((topic, data, dict(attributes or {})))
        return f"msg-{len(self.messages)}"


class FakeModel:
    def __init__(self, responses: Sequence[Any] = ()) -> None:
        self.responses = list(responses)
        self.prompts: List[str] = []
        self.embedded: List[List[str]] = []

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.embedded.append(list(texts))
        return [[float(len(text)), 0.0] for text in texts]

    async def complete_json(self, prompt: str) -> Dict[str, Any]:
        self.prompts.append(prompt)
        response = self.responses.pop(0) if self.responses else {"sections": []}
        if isinstance(response, Exception):
            raise response
        return response


class RecordingMetrics:
    def __init__(self) -> None:
        self.counters: List[tuple[str, Dict[str, str]]] = []
        self.gauges: Dict[tuple[str, str], float] = {}
        self.latencies: List[tuple[str, Dict[str, str]]] = []

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        self.latencies.append((name, labels))

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        self.counters.append((name, labels))

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        self.gauges[(name, labels.get("pipeline", ""))] = value
