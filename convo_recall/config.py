"""
Centralized configuration using Pydantic Settings.

All settings are loaded from environment variables with CONVO_RECALL_ prefix.
Example: CONVO_RECALL_QUERY_EXPANSION=true
"""

from pathlib import Path
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """ConvoRecall configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="CONVO_RECALL_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    # Core paths
    project_root: str = "."
    storage_path: Optional[str] = None  # Auto-detect if not set
    db_name: str = "convo_recall.db"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Embedding model
    embedding_model: str = "all-MiniLM-L6-v2"
    embedding_dimensions: int = 384
    embedding_batch_size: int = Field(default=32, ge=1)
    embedding_timeout_seconds: Optional[float] = None  # None = wait indefinitely

    # Qdrant accelerated index
    qdrant_enabled: bool = True
    qdrant_path: Optional[str] = None  # Auto-detect next to the SQLite database

    # Query expansion (disabled by default)
    query_expansion: bool = False
    max_query_variants: int = Field(default=3, ge=1)

    # Result aggregation
    min_similarity: float = Field(default=0.30, ge=0.0, le=1.0)
    result_limit: int = Field(default=10, ge=1)
    deduplicate: bool = True
    dedup_threshold: float = Field(default=0.7, ge=0.0, le=1.0)

    # Snippets
    snippet_length: int = Field(default=200, ge=10)
    snippet_highlight: bool = True

    # Hybrid re-ranking (Reciprocal Rank Fusion)
    rerank_enabled: bool = True
    rerank_vector_weight: float = Field(default=0.7, ge=0.0, le=1.0)  # lexical weight = 1 - this
    rrf_k: int = Field(default=60, ge=1)

    # Chunking
    chunking_enabled: bool = True
    chunk_size: int = Field(default=450, ge=1)  # tokens
    chunk_overlap: float = Field(default=0.1, ge=0.0, lt=1.0)

    # Metadata query cache
    cache_enabled: bool = False
    cache_max_size: int = Field(default=100, ge=1)
    cache_ttl_ms: int = Field(default=300_000, ge=1)

    def get_storage_path(self) -> str:
        """
        Determine storage path.

        Priority:
        1. storage_path setting (explicit override via CONVO_RECALL_STORAGE_PATH)
        2. <project_root>/.convo-recall/storage
        """
        import logging
        logger = logging.getLogger(__name__)

        if self.storage_path:
            Path(self.storage_path).mkdir(parents=True, exist_ok=True)
            return self.storage_path

        storage = Path(self.project_root).resolve() / ".convo-recall" / "storage"
        storage.mkdir(parents=True, exist_ok=True)
        logger.info(f"Using project storage: {storage}")
        return str(storage)

    def get_qdrant_path(self, storage_path: Optional[str] = None) -> str:
        """
        Determine Qdrant storage path for local mode.

        Priority:
        1. qdrant_path setting (explicit override via CONVO_RECALL_QDRANT_PATH)
        2. <storage_path>/qdrant (next to the SQLite database)
        """
        if self.qdrant_path:
            Path(self.qdrant_path).mkdir(parents=True, exist_ok=True)
            return self.qdrant_path

        qdrant_dir = Path(storage_path or self.get_storage_path()) / "qdrant"
        qdrant_dir.mkdir(parents=True, exist_ok=True)
        return str(qdrant_dir)


# Singleton instance
settings = Settings()
