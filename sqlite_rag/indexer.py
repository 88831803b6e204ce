"""
Indexing pipeline: discover files, chunk, embed, store.

``index`` embeds every discovered file. ``reindex`` additionally reconciles
the store with the directory: sources whose file is gone are deleted, and
every discovered file is re-embedded (or, with ``skip_unchanged``, only files
whose chunk fingerprints differ from the stored ones).

Neither run is resumable mid-way. Files are committed one at a time, so a
failure leaves earlier files indexed; re-running ``reindex`` is idempotent at
file granularity.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from sqlite_rag.chunker import chunk_text, hash_content
from sqlite_rag.config import RagSettings, get_config
from sqlite_rag.embedding_provider import EmbeddingProvider, OpenAIEmbeddingProvider
from sqlite_rag.models import IndexResult, ReindexResult
from sqlite_rag.vector_store import Chunk, SQLiteVecStore

LOG = logging.getLogger("sqlite_rag.indexer")

DEFAULT_EXTENSIONS = (".txt", ".md", ".mdx", ".rst", ".json", ".js", ".ts", ".tsx", ".jsx")
DEFAULT_IGNORE_PATTERNS = ("node_modules", ".git", "dist", "build", ".next", "coverage")


def discover_files(
    directory: Path,
    extensions: Optional[Iterable[str]] = None,
    ignore_patterns: Optional[Iterable[str]] = None,
) -> List[Path]:
    """
    Recursively list indexable files under ``directory``.

    Any path whose string form relative to ``directory`` contains an ignore
    pattern (plain substring, not a glob) is skipped; ignored directories are
    not descended. Symbolic links are skipped. Files are kept only when
    their suffix is one of ``extensions``. Entries are visited in sorted
    name order.

    Raises:
        FileNotFoundError: ``directory`` does not exist
        NotADirectoryError: ``directory`` is not a directory
    """
    root = Path(directory)
    if not root.exists():
        raise FileNotFoundError(f"Directory not found: {root}")
    if not root.is_dir():
        raise NotADirectoryError(f"Not a directory: {root}")

    allowed = set(DEFAULT_EXTENSIONS if extensions is None else extensions)
    ignored = tuple(DEFAULT_IGNORE_PATTERNS if ignore_patterns is None else ignore_patterns)

    files: List[Path] = []

    def traverse(current: Path) -> None:
        for entry in sorted(current.iterdir(), key=lambda p: p.name):
            rel = entry.relative_to(root).as_posix()
            if any(pattern in rel for pattern in ignored):
                continue
            # A linked directory can point back up the tree
            if entry.is_symlink():
                continue
            if entry.is_dir():
                traverse(entry)
            elif entry.is_file() and entry.suffix in allowed:
                files.append(entry)

    traverse(root)
    return files


class IndexingPipeline:
    """
    Feeds files through chunker and embedding provider into the vector store.

    The store is opened at the start of each run and closed when the run ends,
    whether it succeeds or fails. Embedding calls are issued one file at a
    time.
    """

    def __init__(
        self,
        settings: RagSettings,
        embedder: EmbeddingProvider,
        verbose: bool = False,
    ) -> None:
        self._settings = settings
        self._embedder = embedder
        self._progress_level = logging.INFO if verbose else logging.DEBUG

    @property
    def settings(self) -> RagSettings:
        return self._settings

    def _open_store(self) -> SQLiteVecStore:
        return SQLiteVecStore.open(self._settings)

    def source_path(self, file_path: Path) -> str:
        """Store key for ``file_path``: its path relative to the project root, POSIX style."""
        rel = os.path.relpath(Path(file_path).resolve(), self._settings.project_root.resolve())
        return Path(rel).as_posix()

    def prepare_chunks(self, file_path: Path, source: str) -> List[Chunk]:
        """Chunk one file. Repeated chunks collapse to their first occurrence."""
        text = Path(file_path).read_text(encoding="utf-8")
        chunks: Dict[str, Chunk] = {}
        for piece in chunk_text(text, self._settings.chunk_size, self._settings.chunk_overlap):
            fingerprint = hash_content(piece)
            if fingerprint not in chunks:
                chunks[fingerprint] = Chunk(source_path=source, content=piece, fingerprint=fingerprint)
        return list(chunks.values())

    async def _embed(self, chunks: Sequence[Chunk]) -> None:
        embeddings = await self._embedder.embed_many(
            [chunk.content for chunk in chunks],
            model=self._settings.embedding_model,
        )
        for chunk, embedding in zip(chunks, embeddings):
            chunk.embedding = embedding

    async def index(
        self,
        directory: Path,
        extensions: Optional[Iterable[str]] = None,
        ignore_patterns: Optional[Iterable[str]] = None,
    ) -> IndexResult:
        """Chunk, embed and store every discovered file."""
        start = time.monotonic()
        files = discover_files(directory, extensions, ignore_patterns)
        LOG.log(self._progress_level, "Found %d files to process", len(files))

        chunks_created = 0
        with self._open_store() as store:
            for file_path in files:
                source = self.source_path(file_path)
                LOG.log(self._progress_level, "Processing: %s", source)

                chunks = self.prepare_chunks(file_path, source)
                if not chunks:
                    continue

                await self._embed(chunks)
                written = store.insert_many(chunks)
                chunks_created += written
                LOG.log(self._progress_level, "  created %d chunks", written)

        result = IndexResult(
            files_processed=len(files),
            chunks_created=chunks_created,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        LOG.info(
            "Indexed %d files into %d chunks (%dms)",
            result.files_processed,
            result.chunks_created,
            result.duration_ms,
        )
        return result

    async def reindex(
        self,
        directory: Path,
        extensions: Optional[Iterable[str]] = None,
        ignore_patterns: Optional[Iterable[str]] = None,
        skip_unchanged: bool = False,
    ) -> ReindexResult:
        """
        Bring the store in line with ``directory``.

        1. Sources already indexed whose file no longer exists are deleted
        2. Every discovered file is re-chunked and re-embedded; with
           ``skip_unchanged`` a file whose fingerprint set matches the stored
           one is left alone and costs no embedding call
        3. A file's old chunks are replaced by its new ones in one transaction
        """
        start = time.monotonic()
        result = ReindexResult()
        root = self._settings.project_root

        with self._open_store() as store:
            existing = store.list_sources()
            files = discover_files(directory, extensions, ignore_patterns)
            result.files_processed = len(files)
            LOG.log(
                self._progress_level,
                "Found %d files, %d already indexed",
                len(files),
                len(existing),
            )

            for source in sorted(existing):
                if not (root / source).exists():
                    LOG.log(self._progress_level, "Removing deleted file: %s", source)
                    store.delete_by_source(source)
                    result.removed.append(source)

            for file_path in files:
                source = self.source_path(file_path)
                indexed = source in existing
                chunks = self.prepare_chunks(file_path, source)

                if skip_unchanged and indexed:
                    if {c.fingerprint for c in chunks} == store.fingerprints(source):
                        LOG.debug("Unchanged: %s", source)
                        result.skipped.append(source)
                        continue

                LOG.log(self._progress_level, "Processing: %s", source)
                if chunks:
                    await self._embed(chunks)
                result.chunks_created += store.replace_source(source, chunks)

                if indexed:
                    result.modified.append(source)
                elif chunks:
                    result.added.append(source)

        result.files_updated = len(result.added) + len(result.modified) + len(result.removed)
        result.duration_ms = int((time.monotonic() - start) * 1000)
        LOG.info(
            "Reindex: %d added, %d modified, %d removed, %d unchanged, %d chunks (%dms)",
            len(result.added),
            len(result.modified),
            len(result.removed),
            len(result.skipped),
            result.chunks_created,
            result.duration_ms,
        )
        return result


async def index_documents(
    directory: Path,
    extensions: Optional[Iterable[str]] = None,
    ignore_patterns: Optional[Iterable[str]] = None,
    verbose: bool = False,
    settings: Optional[RagSettings] = None,
    embedder: Optional[EmbeddingProvider] = None,
) -> IndexResult:
    """
    Index every text-like file under ``directory``.

    ``settings`` defaults to ``get_config()``; ``embedder`` defaults to an
    OpenAI provider built from those settings and closed afterwards.
    """
    settings = settings or get_config()
    if embedder is not None:
        return await IndexingPipeline(settings, embedder, verbose).index(directory, extensions, ignore_patterns)
    async with OpenAIEmbeddingProvider.from_settings(settings) as owned:
        return await IndexingPipeline(settings, owned, verbose).index(directory, extensions, ignore_patterns)


async def reindex_documents(
    directory: Path,
    extensions: Optional[Iterable[str]] = None,
    ignore_patterns: Optional[Iterable[str]] = None,
    verbose: bool = False,
    skip_unchanged: bool = False,
    settings: Optional[RagSettings] = None,
    embedder: Optional[EmbeddingProvider] = None,
) -> ReindexResult:
    """Reconcile the index with ``directory``; see ``IndexingPipeline.reindex``."""
    settings = settings or get_config()
    if embedder is not None:
        pipeline = IndexingPipeline(settings, embedder, verbose)
        return await pipeline.reindex(directory, extensions, ignore_patterns, skip_unchanged)
    async with OpenAIEmbeddingProvider.from_settings(settings) as owned:
        pipeline = IndexingPipeline(settings, owned, verbose)
        return await pipeline.reindex(directory, extensions, ignore_patterns, skip_unchanged)
