"""Embedding service adapter.

Calls an OpenAI-compatible ``/embeddings`` endpoint. Every failure (timeout,
HTTP error, malformed payload) degrades to an empty vector, which callers
treat as "no similarity available".
"""

from __future__ import annotations

import logging
import os
from time import perf_counter
from typing import Dict, List, Optional

import httpx

from engines.caching import EmbeddingCache
from env_validation import get_env_float

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 8000


class EmbeddingClient:
    """Async embedding client with an LRU cache in front of the endpoint."""

    def __init__(
        self,
        url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        api_key: Optional[str] = None,
        cache: Optional[EmbeddingCache] = None,
    ) -> None:
        self.url = url or os.getenv("EMBEDDING_URL", "http://localhost:4891/v1/embeddings")
        self.model = model or os.getenv("EMBEDDING_MODEL", "text-embedding-004")
        self.timeout = timeout if timeout is not None else get_env_float("EMBEDDING_TIMEOUT", 15.0)
        self.api_key = api_key if api_key is not None else os.getenv("LLM_API_KEY")
        self.cache = cache or EmbeddingCache()

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            return []
        cached = self.cache.get(text)
        if cached is not None:
            return cached

        headers: Dict[str, str] = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"model": self.model, "input": text[:MAX_INPUT_CHARS]}

        start = perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload, headers=headers or None)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException:
            logger.warning("Embedding request timed out after %.1fs", self.timeout)
            return []
        except httpx.HTTPError as exc:
            logger.warning("Embedding request failed: %s", exc)
            return []
        except ValueError as exc:
            logger.warning("Embedding response was not JSON: %s", exc)
            return []

        vector = _extract_vector(data)
        if not vector:
            logger.warning("Embedding response had no vector (model=%s)", self.model)
            return []
        logger.debug("Embedded %d chars in %dms", len(text), int((perf_counter() - start) * 1000))
        self.cache.add(text, vector)
        return vector


def _extract_vector(data: object) -> List[float]:
    try:
        raw = data["data"][0]["embedding"]  # type: ignore[index]
    except (KeyError, IndexError, TypeError):
        try:
            raw = data["embedding"]  # type: ignore[index]
        except (KeyError, TypeError):
            return []
    try:
        return [float(v) for v in raw]
    except (TypeError, ValueError):
        return []
