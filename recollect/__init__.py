"""
Recollect: persistent memory store and hybrid retrieval for task orchestration
"""

from recollect.core.config import RecollectConfig
from recollect.core.memory import MemoryService
from recollect.core.types import (
    Association,
    AssociationType,
    Importance,
    Memory,
    MemoryInput,
    MemorySource,
    MemoryType,
    SearchResponse,
    SearchStrategy,
)
from recollect.errors import CompletionError, EmbeddingError, InvalidInputError, RecollectError
from recollect.version import __version__

__all__ = [
    "__version__",
    "MemoryService",
    "RecollectConfig",
    "Memory",
    "MemoryInput",
    "MemoryType",
    "Importance",
    "MemorySource",
    "Association",
    "AssociationType",
    "SearchResponse",
    "SearchStrategy",
    "RecollectError",
    "EmbeddingError",
    "CompletionError",
    "InvalidInputError",
]
