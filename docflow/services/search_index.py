"""Search index writers.

Entries are keyed by a deterministic id so a retried processing stage rewrites
the same entries instead of duplicating them.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Mapping, Protocol, Sequence

import httpx

from docflow.errors import ExternalServiceError

LOG = logging.getLogger("pipeline.search_index")


class SearchIndex(Protocol):
    async def index(self, index_name: str, entries: Sequence[Mapping[str, Any]]) -> int:
        """Upsert entries (each carrying an `id`) and return how many were written."""
        ...

    async def aclose(self) -> None: ...


class InMemorySearchIndex(SearchIndex):
    def __init__(self) -> None:
        self.indexes: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    async def index(self, index_name: str, entries: Sequence[Mapping[str, Any]]) -> int:
        with self._lock:
            target = self.indexes.setdefault(index_name, {})
            for entry in entries:
                target[str(entry["id"])] = dict(entry)
        return len(entries)

    async def aclose(self) -> None:
        return None


class HttpSearchIndex(SearchIndex):
    """OpenSearch-compatible index client using `PUT /{index}/_doc/{id}`."""

    def __init__(
        self,
        *,
        base_url: str,
        prefix: str = "",
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.prefix = prefix
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    def _full_name(self, index_name: str) -> str:
        return f"{self.prefix}-{index_name}" if self.prefix else index_name

    async def index(self, index_name: str, entries: Sequence[Mapping[str, Any]]) -> int:
        name = self._full_name(index_name)
        for entry in entries:
            body = {k: v for k, v in entry.items() if k != "id"}
            try:
                response = await self._client.put(f"/{name}/_doc/{entry['id']}", json=body)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise ExternalServiceError(f"Search index write failed for {name}: {exc}") from exc
        LOG.info("search_index_written", extra={"index": name, "item_count": len(entries)})
        return len(entries)

    async def aclose(self) -> None:
        await self._client.aclose()


def create_search_index(cfg: Any) -> SearchIndex:
    if cfg.search_index_url:
        return HttpSearchIndex(base_url=cfg.search_index_url, prefix=cfg.search_index_prefix)
    return InMemorySearchIndex()


__all__ = ["SearchIndex", "InMemorySearchIndex", "HttpSearchIndex", "create_search_index"]
