"""
Embedding provider abstraction with an OpenAI-compatible HTTP backend.

Uses httpx for async HTTP. Requests are batched so a single call never
carries more than ``BATCH_SIZE`` inputs; callers always get one vector per
input text, in input order.

The core never retries. A failed batch fails the whole call with an
``EmbeddingError`` whose ``retryable`` flag tells the caller whether retrying
could help.
"""

from __future__ import annotations

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

import httpx
import numpy as np

from sqlite_rag.config import DEFAULT_API_BASE_URL, DEFAULT_EMBEDDING_MODEL, RagError, RagSettings

LOG = logging.getLogger("sqlite_rag.embedding_provider")

# Keeps one request under the upstream token budget (~1000 chars per chunk)
BATCH_SIZE = 100

EMBEDDING_DIMENSIONS: Dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}
FALLBACK_DIMENSION = 1536


def get_embedding_dimension(model: str) -> int:
    """Vector length for ``model``; unknown models fall back to 1536."""
    return EMBEDDING_DIMENSIONS.get(model, FALLBACK_DIMENSION)


class EmbeddingError(RagError):
    """An upstream embedding call failed."""

    def __init__(self, message: str, retryable: bool = False, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class EmbeddingProvider(ABC):
    """Abstract interface for text → embedding vector conversion."""

    def __init__(self, model: str = DEFAULT_EMBEDDING_MODEL, batch_size: int = BATCH_SIZE) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._model = model
        self._batch_size = batch_size

    @property
    def model(self) -> str:
        return self._model

    def dimension(self, model: Optional[str] = None) -> int:
        return get_embedding_dimension(model or self._model)

    @abstractmethod
    async def _embed_batch(self, texts: List[str], model: str) -> List[np.ndarray]:
        """Embed one batch of at most ``batch_size`` texts."""
        ...

    async def embed_many(self, texts: Sequence[str], model: Optional[str] = None) -> List[np.ndarray]:
        """
        Convert texts into float32 vectors, one per input, same order.

        Raises:
            EmbeddingError: any batch failed; no partial result is returned
        """
        texts = list(texts)
        if not texts:
            return []

        model = model or self._model
        vectors: List[np.ndarray] = []
        for start in range(0, len(texts), self._batch_size):
            batch = texts[start : start + self._batch_size]
            embedded = await self._embed_batch(batch, model)
            if len(embedded) != len(batch):
                raise EmbeddingError(
                    f"Embedding API returned {len(embedded)} vectors for {len(batch)} inputs"
                )
            vectors.extend(embedded)

        LOG.debug("Embedded %d texts with %s", len(vectors), model)
        return vectors

    async def embed_one(self, text: str, model: Optional[str] = None) -> np.ndarray:
        return (await self.embed_many([text], model))[0]

    async def close(self) -> None:
        """Clean up resources (e.g., HTTP clients). Override if needed."""
        pass

    async def __aenter__(self) -> "EmbeddingProvider":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    OpenAI ``/embeddings`` backend.

    Works with any OpenAI-compatible endpoint via ``base_url``. Pass an
    existing ``httpx.AsyncClient`` to share connection pools (or to inject a
    mock transport); a client passed in is not closed by ``close()``.
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_EMBEDDING_MODEL,
        base_url: str = DEFAULT_API_BASE_URL,
        batch_size: int = BATCH_SIZE,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(model=model, batch_size=batch_size)
        if not api_key:
            raise ValueError("API key required for the OpenAI embedding provider.")
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    @classmethod
    def from_settings(cls, settings: RagSettings, client: Optional[httpx.AsyncClient] = None) -> "OpenAIEmbeddingProvider":
        settings.require_api_key()
        return cls(
            api_key=settings.api_key,
            model=settings.embedding_model,
            base_url=settings.api_base_url,
            client=client,
        )

    async def _embed_batch(self, texts: List[str], model: str) -> List[np.ndarray]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        body = {"model": model, "input": texts}
        try:
            resp = await self._client.post("/embeddings", headers=headers, json=body)
        except httpx.TransportError as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}", retryable=True) from exc

        if resp.status_code >= 400:
            retryable = resp.status_code == 429 or resp.status_code >= 500
            raise EmbeddingError(
                f"Embedding API returned HTTP {resp.status_code}: {resp.text[:200]}",
                retryable=retryable,
                status_code=resp.status_code,
            )

        try:
            items = resp.json()["data"]
            # The API may return items out of order; "index" is authoritative
            items = sorted(items, key=lambda item: item.get("index", 0))
            return [np.asarray(item["embedding"], dtype=np.float32) for item in items]
        except (ValueError, KeyError, TypeError) as exc:
            raise EmbeddingError(f"Malformed embedding response: {exc}") from exc

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


_TOKEN_RE = re.compile(r"\w+")


class MockEmbeddingProvider(EmbeddingProvider):
    """
    Offline embedding provider for tests and dry runs.

    Texts found in ``vectors`` get that vector; anything else gets a
    deterministic bag-of-words vector (token hashes folded into ``dim``
    buckets, L2-normalized), so texts sharing words land close together.
    """

    def __init__(
        self,
        dim: Optional[int] = None,
        model: str = DEFAULT_EMBEDDING_MODEL,
        vectors: Optional[Dict[str, Sequence[float]]] = None,
        batch_size: int = BATCH_SIZE,
        fail_on: Optional[str] = None,
    ) -> None:
        super().__init__(model=model, batch_size=batch_size)
        self._dim = dim or get_embedding_dimension(model)
        self._vectors = {k: np.asarray(v, dtype=np.float32) for k, v in (vectors or {}).items()}
        self._fail_on = fail_on
        self.calls: List[List[str]] = []

    def dimension(self, model: Optional[str] = None) -> int:
        return self._dim

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def _embed_batch(self, texts: List[str], model: str) -> List[np.ndarray]:
        self.calls.append(list(texts))
        if self._fail_on is not None and any(self._fail_on in t for t in texts):
            raise EmbeddingError(f"Mock failure for input containing {self._fail_on!r}", retryable=True)
        return [self._vector_for(t) for t in texts]

    def _vector_for(self, text: str) -> np.ndarray:
        if text in self._vectors:
            return self._vectors[text]
        vec = np.zeros(self._dim, dtype=np.float32)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vec[int.from_bytes(digest[:4], "little") % self._dim] += 1.0
        norm = float(np.linalg.norm(vec))
        if norm == 0.0:
            vec[0] = 1.0
            return vec
        return vec / norm
