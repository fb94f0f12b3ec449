# Lazy import keeps type-only imports free of the httpx/numpy retrieval stack
from recollect.core.types import Memory, MemoryType, Importance, SearchStrategy

__all__ = ["MemoryService", "Memory", "MemoryType", "Importance", "SearchStrategy"]


def __getattr__(name):
    if name == "MemoryService":
        from recollect.core.memory import MemoryService
        return MemoryService
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
