"""
Recollect Vector Search
-----------------------
Linear cosine-similarity scan over the embeddings stored with active
memories. Memories whose embedding dimension differs from the query are
skipped rather than treated as errors.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np

from recollect.core.types import VectorHit
from recollect.errors import EmbeddingError
from recollect.providers.embedding import EmbeddingClient
from recollect.store.sqlite_store import SQLiteMemoryStore

logger = logging.getLogger("Recollect.Vector")

DEFAULT_MIN_SCORE = 0.3


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|), clipped to [-1, 1]. Zero vectors score 0."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"dimension mismatch: {va.shape[0]} != {vb.shape[0]}")
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


class VectorSearch:
    def __init__(self, store: SQLiteMemoryStore, embedder: Optional[EmbeddingClient] = None):
        self.store = store
        self.embedder = embedder

    def search(
        self,
        query_vector: Sequence[float],
        limit: int = 20,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> List[VectorHit]:
        query = np.asarray(query_vector, dtype=np.float64)
        if query.ndim != 1 or query.size == 0:
            return []
        query_norm = float(np.linalg.norm(query))
        if query_norm == 0.0:
            return []

        candidates = []
        skipped = 0
        for memory in self.store.get_with_embeddings():
            if memory.embedding is None or memory.embedding.dim != query.size:
                skipped += 1
                continue
            candidates.append(memory)
        if skipped:
            logger.debug("Vector scan skipped %d memories with mismatched dimensions", skipped)
        if not candidates:
            return []

        matrix = np.asarray([m.embedding.values for m in candidates], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * query_norm
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(norms > 0, matrix @ query / norms, 0.0)
        sims = np.clip(sims, -1.0, 1.0)

        hits = [
            VectorHit(memory=memory, similarity=float(sim))
            for memory, sim in zip(candidates, sims)
            if sim >= min_score
        ]
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:limit]

    async def embed_query(self, text: str) -> List[float]:
        if self.embedder is None:
            raise EmbeddingError("No embedding client configured")
        return await self.embedder.embed(text)

    async def search_text(
        self,
        text: str,
        limit: int = 20,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> List[VectorHit]:
        """Embed ``text`` and scan. Raises EmbeddingError if no vector can be produced."""
        vector = await self.embed_query(text)
        return self.search(vector, limit=limit, min_score=min_score)
