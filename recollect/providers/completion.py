"""
Recollect Completion Adapter
----------------------------
Async boundary to a text-completion service, used by query expansion.
``complete`` reports failure in the returned ``CompletionResult`` instead
of raising, so callers can fall back without a try block.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from recollect.core.types import CompletionResult
from recollect.errors import CompletionError

logger = logging.getLogger("Recollect.Completion")


class CompletionClient(Protocol):
    async def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CompletionResult: ...


class OllamaCompletionClient:
    """Non-streaming completions from Ollama's ``/api/generate``."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.1:latest",
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

    async def __aenter__(self) -> "OllamaCompletionClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _generate(self, payload: dict, timeout: float) -> str:
        try:
            response = await self._client.post(
                f"{self.base_url}/api/generate", json=payload, timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise CompletionError(f"timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise CompletionError(f"request to {self.base_url} failed: {e}") from e
        if response.status_code >= 400:
            raise CompletionError(response.text[:200] or "completion failed", status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as e:
            raise CompletionError(f"invalid JSON from completion service: {e}") from e
        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise CompletionError("completion response has no text")
        return text

    async def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CompletionResult:
        payload = {"model": self.model, "prompt": prompt, "stream": False}
        if system_prompt:
            payload["system"] = system_prompt
        effective_timeout = timeout if timeout is not None else self.timeout
        try:
            text = await self._generate(payload, effective_timeout)
        except CompletionError as e:
            logger.warning("Completion request failed: %s", e)
            return CompletionResult(success=False, error=str(e))
        return CompletionResult(text=text, success=True)
