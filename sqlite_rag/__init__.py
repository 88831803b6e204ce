"""
sqlite-rag: retrieval-augmented generation support on a single SQLite file.

This package provides:

1. **Chunking**: sentence-aware overlapping chunks with MD5 fingerprints
2. **Embedding**: batched OpenAI-compatible embedding calls (httpx)
3. **Storage**: chunks plus vectors in SQLite via the sqlite-vec extension
4. **Indexing**: directory discovery, full index and incremental reindex
5. **Query**: cosine similarity search with numbered context and citations

Usage:
    import asyncio
    from sqlite_rag import configure, index_documents, query_rag

    configure(chunk_size=800, chunk_overlap=150)
    asyncio.run(index_documents("docs/"))
    result = asyncio.run(query_rag("How do I deploy?"))
    print(result.text)
    print(result.citations)
"""

from .chunker import chunk_text, hash_content
from .config import (
    ConfigurationError,
    RagError,
    RagSettings,
    configure,
    configure_logging,
    get_config,
    reset_config,
)
from .embedding_provider import (
    EmbeddingError,
    EmbeddingProvider,
    MockEmbeddingProvider,
    OpenAIEmbeddingProvider,
    get_embedding_dimension,
)
from .indexer import (
    DEFAULT_EXTENSIONS,
    DEFAULT_IGNORE_PATTERNS,
    IndexingPipeline,
    discover_files,
    index_documents,
    reindex_documents,
)
from .models import ContextChunk, IndexResult, QueryResult, ReindexResult
from .search import QueryEngine, query_rag
from .vector_store import Chunk, SQLiteVecStore, StorageError

__all__ = [
    "DEFAULT_EXTENSIONS",
    "DEFAULT_IGNORE_PATTERNS",
    "Chunk",
    "ConfigurationError",
    "ContextChunk",
    "EmbeddingError",
    "EmbeddingProvider",
    "IndexResult",
    "IndexingPipeline",
    "MockEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "QueryEngine",
    "QueryResult",
    "RagError",
    "RagSettings",
    "ReindexResult",
    "SQLiteVecStore",
    "StorageError",
    "chunk_text",
    "configure",
    "configure_logging",
    "discover_files",
    "get_config",
    "get_embedding_dimension",
    "hash_content",
    "index_documents",
    "query_rag",
    "reindex_documents",
    "reset_config",
]
