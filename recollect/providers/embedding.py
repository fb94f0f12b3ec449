"""
Recollect Embedding Adapter
---------------------------
Thin async boundary to an embedding service. Failures raise
``EmbeddingError``; callers decide how to degrade (store without a vector,
or drop the vector source from a hybrid search).
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Protocol, Sequence

import httpx

from recollect.core.types import EmbeddingHealth
from recollect.errors import EmbeddingError

logger = logging.getLogger("Recollect.Embedding")


class EmbeddingClient(Protocol):
    async def embed(self, text: str) -> List[float]: ...

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]: ...

    async def health(self) -> EmbeddingHealth: ...


def _as_vector(raw: Any) -> List[float]:
    if not isinstance(raw, list) or not raw:
        raise EmbeddingError("Embedding service returned an empty or non-list vector")
    try:
        return [float(x) for x in raw]
    except (TypeError, ValueError) as e:
        raise EmbeddingError(f"Embedding service returned non-numeric values: {e}") from e


class OllamaEmbeddingClient:
    """
    Embedding client for a local Ollama server.

    Usage:
        async with OllamaEmbeddingClient(model="nomic-embed-text") as client:
            vector = await client.embed("always validate input")
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(headers={"Accept": "application/json"})

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "OllamaEmbeddingClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _post(self, path: str, payload: dict) -> dict:
        try:
            response = await self._client.post(
                f"{self.base_url}{path}", json=payload, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise EmbeddingError(f"Embedding request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Embedding request to {self.base_url}{path} failed: {e}") from e
        except ValueError as e:
            raise EmbeddingError(f"Embedding service returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise EmbeddingError("Embedding service returned a non-object payload")
        return data

    async def embed(self, text: str) -> List[float]:
        """Generate one embedding via ``/api/embeddings``."""
        data = await self._post("/api/embeddings", {"model": self.model, "prompt": text})
        return _as_vector(data.get("embedding"))

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Generate embeddings via ``/api/embed``; output order matches input order."""
        if not texts:
            return []
        data = await self._post("/api/embed", {"model": self.model, "input": list(texts)})
        raw = data.get("embeddings")
        if not isinstance(raw, list) or len(raw) != len(texts):
            got = len(raw) if isinstance(raw, list) else "no"
            raise EmbeddingError(f"Embedding batch returned {got} vectors for {len(texts)} inputs")
        return [_as_vector(vector) for vector in raw]

    async def health(self) -> EmbeddingHealth:
        try:
            response = await self._client.get(f"{self.base_url}/api/tags", timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Embedding service health check failed: %s", e)
            return EmbeddingHealth(available=False, model_ready=False, error=str(e))

        models = payload.get("models", []) if isinstance(payload, dict) else []
        names = {str(m.get("name", "")) for m in models if isinstance(m, dict)}
        ready = any(name == self.model or name.split(":")[0] == self.model for name in names)
        return EmbeddingHealth(
            available=True,
            model_ready=ready,
            error=None if ready else f"model '{self.model}' is not pulled",
        )
