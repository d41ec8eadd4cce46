"""Shared utilities: logging and configuration."""

from pyknowledge.utils.config import Config, KnowledgeConfig, load_config
from pyknowledge.utils.logging import get_logger, set_log_level

__all__ = [
    "Config",
    "KnowledgeConfig",
    "load_config",
    "get_logger",
    "set_log_level",
]
