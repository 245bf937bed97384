"""Knowledge-base processor: chunk, optionally embed, index, store."""
from __future__ import annotations

import hashlib
from typing import Any, Dict, List, Mapping, Tuple

from docflow.services.llm import GenerativeModel

from .base import BaseResultProcessor, chunk_text



def chunk_id(owner_id: str, subject_id: str, index: int) -> str:
    return hashlib.sha1(f"{owner_id}:{subject_id}:{index}".encode("utf-8")).hexdigest()


class KnowledgeBaseProcessor(BaseResultProcessor):
    pipeline = "knowledge_base"
    index_name = "knowledge-base"

    def __init__(
        self,
        *,
        model: GenerativeModel | None = None,
        max_chars: int = 2500,
        overlap: int = 250,
        min_chars: int = 200,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.model = model
        self.max_chars = max_chars
        self.overlap = overlap
        self.min_chars = min_chars

    async def transform(
        self, text: str, *, subject_id: str, owner_id: str, ocr_output: Mapping[str, Any]
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any], int]:
        chunks = chunk_text(text, max_chars=self.max_chars, overlap=self.overlap, min_chars=self.min_chars)
        embeddings: List[List[float]] = []
        if self.model is not None:
            embeddings = await self.model.embed(chunks)
        entries: List[Dict[str, Any]] = []
        for idx, chunk in enumerate(chunks):
            entry: Dict[str, Any] = {
                "id": chunk_id(owner_id, subject_id, idx),
                "subject_id": subject_id,
                "owner_id": owner_id,
                "chunk_index": idx,
                "text": chunk,
            }
            if idx < len(embeddings):
                entry["embedding"] = embeddings[idx]
            entries.append(entry)
        record = {"text": text, "chunk_count": len(chunks), "embedded": bool(embeddings)}
        return entries, record, len(chunks)


__all__ = ["KnowledgeBaseProcessor", "chunk_id"]
