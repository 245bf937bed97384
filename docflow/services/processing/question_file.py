"""Question-file processor.

The OCR text of a solicitation is split into large windows and each window is
sent to the model with a fixed extraction prompt. Windows whose call fails are
skipped; the remaining sections are merged by title and questions are
de-duplicated, since overlapping windows see the same questions twice.
"""
from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Dict, List, Mapping, Tuple

from docflow.errors import ExternalServiceError
from docflow.services.llm import GenerativeModel
from docflow.utils.logging_utils import structured_log

from .base import BaseResultProcessor, split_windows

LOG = logging.getLogger("pipeline.processing.question_file")

DEFAULT_SECTION = "General"

EXTRACTION_PROMPT = """You extract the questions a vendor must answer from a solicitation document.

Rules:
- Group questions under the section heading they appear in.
- Preserve any numbering (for example "1.1" or "Q3").
- Ignore headers, footers, instructions and explanatory paragraphs that are not questions.
- Return ONLY JSON in this format:

{"sections": [{"title": "Section title", "questions": [{"number": "1.1", "text": "Full question text"}]}]}

DOCUMENT TEXT:
"""


def normalise_question(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip().lower()


def heuristic_sections(text: str) -> List[Dict[str, Any]]:
    """Line-based fallback used when no model is configured."""
    questions = [{"text": line.strip()} for line in text.splitlines() if line.strip().endswith("?")]
    return [{"title": DEFAULT_SECTION, "questions": questions}] if questions else []


def merge_sections(batches: List[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Merge sections with the same title and drop repeated questions, keeping first-seen order."""
    merged: Dict[str, Dict[str, Any]] = {}
    seen: set[str] = set()
    for sections in batches:
        for section in sections:
            if not isinstance(section, dict):
                continue
            title = str(section.get("title") or DEFAULT_SECTION).strip() or DEFAULT_SECTION
            target = merged.setdefault(title.lower(), {"title": title, "questions": []})
            for question in section.get("questions") or []:
                if isinstance(question, str):
                    question = {"text": question}
                if not isinstance(question, dict):
                    continue
                text = str(question.get("text") or "").strip()
                key = normalise_question(text)
                if not key or key in seen:
                    continue
                seen.add(key)
                item = {"text": text}
                if question.get("number"):
                    item["number"] = str(question["number"])
                target["questions"].append(item)
    return [section for section in merged.values() if section["questions"]]


def question_id(owner_id: str, subject_id: str, text: str) -> str:
    digest = hashlib.sha1(f"{owner_id}:{subject_id}:{normalise_question(text)}".encode("utf-8"))
    return digest.hexdigest()


class QuestionFileProcessor(BaseResultProcessor):
    pipeline = "question_file"
    index_name = "questions"

    def __init__(
        self,
        *,
        model: GenerativeModel | None = None,
        window_chars: int = 30000,
        overlap: int = 500,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.model = model
        self.window_chars = window_chars
        self.overlap = overlap

    async def _extract_window(self, window: str, *, index: int, subject_id: str) -> List[Dict[str, Any]]:
        if self.model is None:
            return heuristic_sections(window)
        try:
            payload = await self.model.complete_json(EXTRACTION_PROMPT + window)
        except ExternalServiceError as exc:
            structured_log(
                LOG,
                logging.WARNING,
                "question_window_skipped",
                subject_id=subject_id,
                reason=f"window {index}: {exc}",
                error_type=type(exc).__name__,
            )
            return []
        sections = payload.get("sections")
        if sections is None and isinstance(payload.get("questions"), list):
            sections = [{"title": DEFAULT_SECTION, "questions": payload["questions"]}]
        return sections if isinstance(sections, list) else []

    async def transform(
        self, text: str, *, subject_id: str, owner_id: str, ocr_output: Mapping[str, Any]
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any], int]:
        windows = split_windows(text, window_chars=self.window_chars, overlap=self.overlap)
        batches = [
            await self._extract_window(window, index=idx, subject_id=subject_id)
            for idx, window in enumerate(windows)
        ]
        sections = merge_sections(batches)
        entries: List[Dict[str, Any]] = []
        for section in sections:
            for question in section["questions"]:
                entry = {
                    "id": question_id(owner_id, subject_id, question["text"]),
                    "subject_id": subject_id,
                    "owner_id": owner_id,
                    "section": section["title"],
                    "text": question["text"],
                }
                if "number" in question:
                    entry["number"] = question["number"]
                entries.append(entry)
        record = {"sections": sections, "question_count": len(entries), "window_count": len(windows)}
        return entries, record, len(windows)


__all__ = ["QuestionFileProcessor", "merge_sections", "normalise_question", "heuristic_sections"]
