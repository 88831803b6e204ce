"""
Shared test fixtures and pytest configuration.

Markers:
    @pytest.mark.vec  — Requires an interpreter that can load the sqlite-vec extension

Run subsets:
    pytest -m vec          # only storage-backed tests
    pytest -m "not vec"    # pure-Python tests (chunker, config, HTTP provider)
"""

import sqlite3
from pathlib import Path
from typing import Optional

import pytest

from sqlite_rag.config import RagSettings, reset_config


def _sqlite_vec_available() -> bool:
    """Check that sqlite3 allows extension loading and sqlite-vec loads."""
    try:
        import sqlite_vec

        conn = sqlite3.connect(":memory:")
        try:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.execute("SELECT vec_version()").fetchone()
        finally:
            conn.close()
        return True
    except Exception:
        return False


_VEC_OK: Optional[bool] = None


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "vec: requires an interpreter able to load the sqlite-vec extension")


def pytest_collection_modifyitems(config, items):
    """Auto-skip tests whose infrastructure requirements are not met."""
    global _VEC_OK

    if _VEC_OK is None:
        _VEC_OK = _sqlite_vec_available()

    skip_vec = pytest.mark.skip(reason="sqlite-vec extension cannot be loaded in this interpreter")
    for item in items:
        if "vec" in item.keywords and not _VEC_OK:
            item.add_marker(skip_vec)


@pytest.fixture(autouse=True)
def _clean_config(monkeypatch):
    """Isolate tests from configure() state and from the caller's environment."""
    for name in (
        "OPENAI_API_KEY",
        "RAG_EMBEDDING_MODEL",
        "RAG_DB_PATH",
        "RAG_CHUNK_SIZE",
        "RAG_CHUNK_OVERLAP",
        "RAG_TOP_K",
        "RAG_API_BASE_URL",
        "VERCEL",
        "AWS_LAMBDA_FUNCTION_NAME",
        "NETLIFY",
        "AWS_EXECUTION_ENV",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def settings(tmp_path) -> RagSettings:
    """Settings rooted at a temp project with the index under .rag/."""
    return RagSettings(
        api_key="test-key",
        db_path=tmp_path / ".rag" / "sqlite.db",
        project_root=tmp_path,
        chunk_size=1000,
        chunk_overlap=200,
        top_k=5,
    )


@pytest.fixture
def docs_dir(tmp_path) -> Path:
    """A small project with documents, a code file and ignored directories."""
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "intro.md").write_text(
        "# Intro\n\nThe vector store keeps chunks in SQLite. Each chunk has an embedding.\n"
    )
    (docs / "guide.txt").write_text(
        "Deploy the service with docker. Configure the database path before starting.\n"
    )
    (docs / "notes.rst").write_text("Reindexing removes deleted files from the index.\n")
    (docs / "image.png").write_bytes(b"\x89PNG\r\n")

    nested = docs / "nested"
    nested.mkdir()
    (nested / "deep.md").write_text("Nested documents are discovered recursively.\n")

    ignored = docs / "node_modules" / "pkg"
    ignored.mkdir(parents=True)
    (ignored / "readme.md").write_text("Dependency docs that must not be indexed.\n")

    return docs
