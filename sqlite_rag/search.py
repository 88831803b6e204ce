"""
Query engine: embed a question, rank stored chunks, assemble context.

A query never modifies indexed chunks. The store handle is closed before the
result is returned.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from sqlite_rag.config import RagSettings, get_config
from sqlite_rag.embedding_provider import EmbeddingProvider, OpenAIEmbeddingProvider
from sqlite_rag.models import ContextChunk, QueryResult
from sqlite_rag.vector_store import SQLiteVecStore

LOG = logging.getLogger("sqlite_rag.search")


def pack_context(chunks: List[ContextChunk]) -> str:
    """Number chunks from 1 in rank order: ``[1] first\\n\\n[2] second``."""
    return "\n\n".join(f"[{i}] {chunk.content}" for i, chunk in enumerate(chunks, start=1))


def collect_citations(chunks: List[ContextChunk]) -> List[str]:
    """Distinct source paths in first-occurrence order."""
    return list(dict.fromkeys(chunk.file_path for chunk in chunks))


class QueryEngine:
    """
    Similarity search over an index built by ``IndexingPipeline``.

    Usage::

        engine = QueryEngine(settings, embedder)
        result = await engine.query("how are chunks stored?")
        print(result.text, result.citations)
    """

    def __init__(
        self,
        settings: RagSettings,
        embedder: EmbeddingProvider,
        db_path: Optional[Path] = None,
    ) -> None:
        self._settings = settings
        self._embedder = embedder
        self._db_path = db_path

    async def query(self, question: str, top_k: Optional[int] = None) -> QueryResult:
        if not question or not question.strip():
            raise ValueError("Question must not be empty")

        k = top_k or self._settings.top_k
        embedding = await self._embedder.embed_one(question, model=self._settings.embedding_model)

        with SQLiteVecStore.open(self._settings, self._db_path) as store:
            context = store.search(embedding, k)

        LOG.debug("Query matched %d chunks (top_k=%d)", len(context), k)
        return QueryResult(
            text=pack_context(context),
            context=context,
            citations=collect_citations(context),
        )


async def query_rag(
    question: str,
    top_k: Optional[int] = None,
    db_path: Optional[Path] = None,
    settings: Optional[RagSettings] = None,
    embedder: Optional[EmbeddingProvider] = None,
) -> QueryResult:
    """
    Answer ``question`` with the most similar indexed chunks.

    Returns the numbered context block, the ranked chunks with similarity
    scores, and the distinct source paths cited.
    """
    settings = settings or get_config()
    if embedder is not None:
        return await QueryEngine(settings, embedder, db_path).query(question, top_k)
    async with OpenAIEmbeddingProvider.from_settings(settings) as owned:
        return await QueryEngine(settings, owned, db_path).query(question, top_k)
