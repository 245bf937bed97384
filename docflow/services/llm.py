"""Thin OpenAI wrapper for chunk embeddings and JSON-mode chat completions."""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Protocol, Sequence

from openai import AsyncOpenAI, OpenAIError

from docflow.errors import ExternalServiceError


class GenerativeModel(Protocol):
    async def embed(self, texts: Sequence[str]) -> List[List[float]]: ...

    async def complete_json(self, prompt: str) -> Dict[str, Any]: ...


class OpenAIModel(GenerativeModel):
    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        embedding_model: str = "text-embedding-3-small",
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.embedding_model = embedding_model
        self._client = client or AsyncOpenAI(api_key=api_key)

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            resp = await self._client.embeddings.create(model=self.embedding_model, input=list(texts))
        except OpenAIError as exc:
            raise ExternalServiceError(f"OpenAI embeddings failed: {exc}") from exc
        return [list(item.embedding) for item in resp.data]

    async def complete_json(self, prompt: str) -> Dict[str, Any]:
        """Call Chat Completions in JSON mode and parse the reply."""
        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                response_format={"type": "json_object"},
                temperature=0,
            )
        except OpenAIError as exc:
            raise ExternalServiceError(f"OpenAI chat completion failed: {exc}") from exc
        content = completion.choices[0].message.content
        if content is None:
            raise ExternalServiceError("OpenAI Chat returned empty content")
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ExternalServiceError("OpenAI Chat returned invalid JSON") from exc
        if not isinstance(parsed, dict):
            raise ExternalServiceError("OpenAI Chat returned a non-object JSON payload")
        return parsed


def create_model(cfg: Any) -> GenerativeModel | None:
    if not cfg.openai_api_key:
        return None
    return OpenAIModel(api_key=cfg.openai_api_key, model=cfg.openai_model, embedding_model=cfg.openai_embedding_model)


__all__ = ["GenerativeModel", "OpenAIModel", "create_model"]
