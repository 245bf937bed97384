"""Shared result-processing flow.

Every processor follows the same order: fetch OCR output, transform it, write
the search index, then upsert the document store. The document store write
comes last because it is what makes the result visible; a failure anywhere
before it leaves no visible record, and a retried stage rewrites the same
index ids.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Protocol, Sequence, Tuple

from docflow.errors import ProcessingError
from docflow.services.document_store import DocumentStore
from docflow.services.ocr_provider import OcrProvider
from docflow.services.search_index import SearchIndex
from docflow.utils.logging_utils import structured_log

LOG = logging.getLogger("pipeline.processing")


@dataclass(slots=True)
class ProcessedResult:
    subject_id: str
    owner_id: str
    pipeline: str
    text_length: int
    chunk_count: int
    item_count: int
    document_key: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        return asdict(self)


class ResultProcessor(Protocol):
    pipeline: str

    async def process(self, subject_id: str, owner_id: str, external_job_id: str) -> ProcessedResult: ...


def assemble_text(ocr_output: Mapping[str, Any]) -> str:
    """Return the document text, falling back to page text when the top-level text is empty."""
    text = str(ocr_output.get("text") or "").strip()
    if not text:
        pages = ocr_output.get("pages") or []
        text = "\n".join(str(page.get("text") or "").strip() for page in pages if page.get("text")).strip()
    return text


def _spans(
    text: str, *, max_chars: int, overlap: int, separators: Sequence[str], floor_ratio: float
) -> List[Tuple[int, int]]:
    """Return (start, end) offsets of overlapping pieces of already-stripped text."""
    if not text:
        return []
    if max_chars <= 0 or overlap < 0 or overlap >= max_chars:
        raise ValueError("max_chars must be positive and overlap smaller than max_chars")
    if len(text) <= max_chars:
        return [(0, len(text))]
    spans: List[Tuple[int, int]] = []
    start = 0
    length = len(text)
    while start < length:
        end = min(start + max_chars, length)
        if end < length:
            floor = start + int(max_chars * floor_ratio)
            window = text[start:end]
            for sep in separators:
                idx = window.rfind(sep)
                if idx != -1 and start + idx >= floor:
                    end = start + idx + len(sep)
                    break
        if text[start:end].strip():
            spans.append((start, end))
        if end >= length:
            break
        start = max(end - overlap, start + 1)
    return spans


def _split(text: str, *, max_chars: int, overlap: int, separators: Sequence[str], floor_ratio: float) -> List[str]:
    text = text.strip()
    spans = _spans(text, max_chars=max_chars, overlap=overlap, separators=separators, floor_ratio=floor_ratio)
    return [text[start:end].strip() for start, end in spans]


def chunk_text(text: str, *, max_chars: int = 2500, overlap: int = 250, min_chars: int = 200) -> List[str]:
    """Split text into overlapping chunks for the knowledge-base index.

    Breaks prefer a paragraph, then a line, then a sentence boundary that falls
    past 60% of the window. A trailing chunk shorter than `min_chars` is folded
    into its predecessor without its overlap, so no chunk exceeds
    `max_chars + min_chars`.
    """
    text = text.strip()
    spans = _spans(text, max_chars=max_chars, overlap=overlap, separators=("\n\n", "\n", ". "), floor_ratio=0.6)
    chunks = [text[start:end].strip() for start, end in spans]
    if len(chunks) > 1 and len(chunks[-1]) < min_chars:
        chunks.pop()
        # only the text past the previous chunk is new
        tail = text[spans[-2][1]:].strip()
        if tail:
            chunks[-1] = f"{chunks[-1]}\n{tail}"
    return chunks


def split_windows(text: str, *, window_chars: int = 30000, overlap: int = 500) -> List[str]:
    """Split text into large windows for model extraction, breaking past the window midpoint."""
    return _split(text, max_chars=window_chars, overlap=overlap, separators=("\n\n", ". "), floor_ratio=0.5)


class BaseResultProcessor:
    """Template for fetch, transform, index, then store."""

    pipeline: str = ""
    index_name: str = ""

    def __init__(self, *, provider: OcrProvider, document_store: DocumentStore, search_index: SearchIndex) -> None:
        self.provider = provider
        self.document_store = document_store
        self.search_index = search_index

    async def transform(
        self, text: str, *, subject_id: str, owner_id: str, ocr_output: Mapping[str, Any]
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any], int]:
        """Return (index entries, document record, chunk count)."""
        raise NotImplementedError

    async def process(self, subject_id: str, owner_id: str, external_job_id: str) -> ProcessedResult:
        ocr_output = await self.provider.fetch_result(external_job_id)
        text = assemble_text(ocr_output)
        if not text:
            raise ProcessingError(f"OCR produced no text for subject {subject_id}")
        entries, record, chunk_count = await self.transform(
            text, subject_id=subject_id, owner_id=owner_id, ocr_output=ocr_output
        )
        item_count = await self.search_index.index(self.index_name, entries) if entries else 0
        record.update(
            subject_id=subject_id,
            owner_id=owner_id,
            pipeline=self.pipeline,
            external_job_id=external_job_id,
            text_length=len(text),
            page_count=len(ocr_output.get("pages") or []),
        )
        key = await self.document_store.upsert(
            pipeline=self.pipeline, owner_id=owner_id, subject_id=subject_id, record=record
        )
        structured_log(
            LOG,
            logging.INFO,
            "result_processed",
            pipeline=self.pipeline,
            subject_id=subject_id,
            external_job_id=external_job_id,
            text_length=len(text),
            chunk_count=chunk_count,
            item_count=item_count,
        )
        return ProcessedResult(
            subject_id=subject_id,
            owner_id=owner_id,
            pipeline=self.pipeline,
            text_length=len(text),
            chunk_count=chunk_count,
            item_count=item_count,
            document_key=key,
            metadata={"page_count": record["page_count"]},
        )


__all__ = [
    "BaseResultProcessor",
    "ProcessedResult",
    "ResultProcessor",
    "assemble_text",
    "chunk_text",
    "split_windows",
]
