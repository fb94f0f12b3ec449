"""
Recollect exceptions.
"""

from __future__ import annotations

from typing import Optional


class RecollectError(RuntimeError):
    """Base class for provider and runtime errors."""


class EmbeddingError(RecollectError):
    """Raised when the embedding service cannot produce a vector."""


class CompletionError(RecollectError):
    """Raised when the completion service call fails."""

    def __init__(self, detail: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        status_hint = f" (status={status_code})" if status_code is not None else ""
        super().__init__(f"{detail}{status_hint}")


class InvalidInputError(ValueError):
    """Raised when a caller passes a value the store refuses to persist."""

    def __init__(self, reason: str, *, field: Optional[str] = None) -> None:
        self.reason = reason
        self.field = field
        super().__init__(f"{field}: {reason}" if field else reason)
