"""
Configuration utilities.
"""

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

from pydantic import BaseModel

from pyknowledge.utils.logging import set_log_level

if TYPE_CHECKING:
    from pyknowledge.rag.models import ChunkingOptions


class Config(BaseModel):
    """Base configuration class."""

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def from_file(cls, path: str | Path) -> "Config":
        """Load configuration from file (YAML or JSON)."""
        path = Path(path)

        if path.suffix in (".yaml", ".yml"):
            return cls.from_yaml(path)
        elif path.suffix == ".json":
            with open(path) as f:
                data = json.load(f)
            return cls(**data)
        else:
            raise ValueError(f"Unsupported config file format: {path.suffix}")


class KnowledgeConfig(Config):
    """Configuration for the knowledge pipeline."""

    # Provider settings
    openai_api_key: str | None = None
    openai_base_url: str | None = None

    # Embedding settings
    embedding_model: str = "text-embedding-3-small"
    embedding_timeout: float = 30.0
    embedding_batch_size: int = 20
    embedding_batch_delay: float = 0.1
    embedding_max_retries: int = 3

    # Retrieval settings
    max_context_tokens: int = 4000

    # Chunking defaults
    chunk_size_tokens: int = 500
    chunk_overlap_tokens: int = 50
    min_chunk_size: int = 50

    # Storage settings
    settings_db_path: str | None = None

    # Logging (PYKNOWLEDGE_LOG_LEVEL applies when unset)
    log_level: str | None = None

    def chunking_options(self) -> "ChunkingOptions":
        """Build immutable chunking options from this configuration."""
        from pyknowledge.rag.models import ChunkingOptions

        return ChunkingOptions(
            chunk_size_tokens=self.chunk_size_tokens,
            chunk_overlap_tokens=self.chunk_overlap_tokens,
            min_chunk_size=self.min_chunk_size,
        )


def load_config(path: str | Path = "pyknowledge.yaml") -> KnowledgeConfig:
    """
    Load knowledge configuration from file.

    A missing file yields the defaults. ``OPENAI_API_KEY`` fills in the
    API key when the file does not set one. A configured ``log_level`` is
    applied to every pyknowledge logger.

    Args:
        path: Path to config file

    Returns:
        KnowledgeConfig instance
    """
    path = Path(path)

    if path.exists():
        config = KnowledgeConfig.from_file(path)
    else:
        config = KnowledgeConfig()

    if not config.openai_api_key and os.environ.get("OPENAI_API_KEY"):
        config = config.model_copy(update={"openai_api_key": os.environ["OPENAI_API_KEY"]})

    if config.log_level:
        set_log_level(config.log_level)

    return config
