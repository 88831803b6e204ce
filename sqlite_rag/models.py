from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class ContextChunk(BaseModel):
    content: str
    file_path: str
    similarity: float


class QueryResult(BaseModel):
    text: str
    context: List[ContextChunk] = Field(default_factory=list)
    citations: List[str] = Field(default_factory=list)


class IndexResult(BaseModel):
    files_processed: int = 0
    chunks_created: int = 0
    duration_ms: int = 0


class ReindexResult(IndexResult):
    files_updated: int = 0
    added: List[str] = Field(default_factory=list)
    modified: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
