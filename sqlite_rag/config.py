"""
Configuration for sqlite-rag.

Settings are an immutable ``RagSettings`` value threaded through component
constructors. Environment-derived defaults (API key, database location) are
resolved when the value is built, never implicitly on later reads.

``configure()`` / ``get_config()`` form the caller-facing convenience layer:
``configure`` records explicit overrides, ``get_config`` resolves them on top
of the current environment and fails fast when no API key is available.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

LOG = logging.getLogger("sqlite_rag.config")

LOG_LEVEL = os.environ.get("RAG_LOG_LEVEL", "INFO").upper()

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_API_BASE_URL = "https://api.openai.com/v1"
DEFAULT_CHUNK_SIZE = 1000
DEFAULT_CHUNK_OVERLAP = 200
DEFAULT_TOP_K = 5

RAG_DIR_NAME = ".rag"
DB_FILE_NAME = "sqlite.db"
SERVERLESS_DB_PATH = Path("/tmp") / RAG_DIR_NAME / DB_FILE_NAME

# Read-only deployments where only /tmp is writable
_SERVERLESS_ENV_VARS = (
    "VERCEL",
    "AWS_LAMBDA_FUNCTION_NAME",
    "NETLIFY",
    "AWS_EXECUTION_ENV",
)


class RagError(Exception):
    """Base class for sqlite-rag errors."""


class ConfigurationError(RagError, ValueError):
    """Settings are missing or inconsistent."""


def is_serverless_environment() -> bool:
    return any(os.environ.get(name) for name in _SERVERLESS_ENV_VARS)


def default_db_path(project_root: Optional[Path] = None) -> Path:
    """
    Database location for the current environment.

    Serverless platforms only allow writes under /tmp; everywhere else the
    index lives in ``<project_root>/.rag/sqlite.db``.
    """
    if is_serverless_environment():
        return SERVERLESS_DB_PATH
    root = Path(project_root) if project_root else Path.cwd()
    return root / RAG_DIR_NAME / DB_FILE_NAME


@dataclass(frozen=True)
class RagSettings:
    """Resolved settings for one indexing or query operation."""

    api_key: str = ""
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    db_path: Path = field(default_factory=default_db_path)
    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP
    top_k: int = DEFAULT_TOP_K
    api_base_url: str = DEFAULT_API_BASE_URL
    project_root: Path = field(default_factory=Path.cwd)

    def __post_init__(self) -> None:
        object.__setattr__(self, "db_path", Path(self.db_path))
        object.__setattr__(self, "project_root", Path(self.project_root))

    @classmethod
    def from_env(cls, project_root: Optional[Path] = None) -> "RagSettings":
        root = Path(project_root) if project_root else Path.cwd()
        return cls(
            api_key=os.getenv("OPENAI_API_KEY", ""),
            embedding_model=os.getenv("RAG_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
            db_path=Path(os.getenv("RAG_DB_PATH", "") or default_db_path(root)),
            chunk_size=int(os.getenv("RAG_CHUNK_SIZE", str(DEFAULT_CHUNK_SIZE))),
            chunk_overlap=int(os.getenv("RAG_CHUNK_OVERLAP", str(DEFAULT_CHUNK_OVERLAP))),
            top_k=int(os.getenv("RAG_TOP_K", str(DEFAULT_TOP_K))),
            api_base_url=os.getenv("RAG_API_BASE_URL", DEFAULT_API_BASE_URL),
            project_root=root,
        )

    @property
    def embedding_dimension(self) -> int:
        from sqlite_rag.embedding_provider import get_embedding_dimension

        return get_embedding_dimension(self.embedding_model)

    def with_overrides(self, **overrides: Any) -> "RagSettings":
        """Return a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        explicit = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **explicit) if explicit else self

    def require_api_key(self) -> "RagSettings":
        if not self.api_key:
            raise ConfigurationError(
                "OpenAI API key not found. Set OPENAI_API_KEY environment variable or pass api_key in config."
            )
        return self


# ── Caller-facing overrides ───────────────────────────────────────────────

_overrides: Dict[str, Any] = {}


def configure(**settings: Any) -> None:
    """
    Record caller overrides for subsequent ``get_config()`` calls.

    Only explicitly provided values override; ``None`` never clobbers a value
    set by an earlier call.
    """
    known = {f.name for f in fields(RagSettings)}
    unknown = set(settings) - known
    if unknown:
        raise ConfigurationError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
    _overrides.update({k: v for k, v in settings.items() if v is not None})


def reset_config() -> None:
    """Drop every override recorded by ``configure()``."""
    _overrides.clear()


def get_config() -> RagSettings:
    """
    Resolve settings against the current environment plus recorded overrides.

    Raises:
        ConfigurationError: no API key could be resolved
    """
    root = _overrides.get("project_root")
    settings = RagSettings.from_env(project_root=root).with_overrides(**_overrides)
    return settings.require_api_key()


# ── Storage location ──────────────────────────────────────────────────────


def ensure_rag_dir(db_path: Path, project_root: Optional[Path] = None) -> None:
    """
    Make sure the directory holding ``db_path`` exists.

    In serverless environments an index bundled with the deployment at
    ``<project_root>/.rag/sqlite.db`` is copied to the writable /tmp location
    the first time it is needed.
    """
    db_path = Path(db_path)
    if is_serverless_environment() and db_path.parts[:2] == ("/", "tmp"):
        root = Path(project_root) if project_root else Path.cwd()
        bundled = root / RAG_DIR_NAME / DB_FILE_NAME
        if bundled.exists() and not db_path.exists():
            db_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(bundled, db_path)
            LOG.info("Copied bundled index %s to %s", bundled, db_path)
            return
    db_path.parent.mkdir(parents=True, exist_ok=True)


def configure_logging(level: Optional[str] = None) -> None:
    """Basic logging setup for scripts and HTTP glue embedding the library."""
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
