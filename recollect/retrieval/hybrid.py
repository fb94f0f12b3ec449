"""
Recollect Hybrid Retrieval
--------------------------
Lexical (FTS5 BM25) and vector (cosine scan) search fused with Reciprocal
Rank Fusion.

Both signals are issued concurrently. A failing or timed-out vector branch
does not fail the search: results fall back to lexical-only, the response
reports ``vector_search_used=False`` and the reason is appended to
``warnings``.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence, Tuple

from recollect.core.types import HybridHit, HybridSearchResult, LexicalHit, SearchTiming, VectorHit
from recollect.retrieval.lexical import LexicalIndex
from recollect.retrieval.vector import DEFAULT_MIN_SCORE, VectorSearch

logger = logging.getLogger("Recollect.Retrieval")

# RRF constant (standard value from literature)
RRF_K = 60
DEFAULT_VECTOR_WEIGHT = 0.5
DEFAULT_BM25_WEIGHT = 0.5


def reciprocal_rank_fusion(
    lexical_hits: Sequence[LexicalHit],
    vector_hits: Sequence[VectorHit],
    limit: int = 20,
    vector_weight: float = DEFAULT_VECTOR_WEIGHT,
    bm25_weight: float = DEFAULT_BM25_WEIGHT,
    k: int = RRF_K,
) -> List[HybridHit]:
    """
    Fuse two ranked lists into one, deduplicated by memory id.

    score = vector_weight / (k + vector_rank) + bm25_weight / (k + lexical_rank)

    Ranks are 1-based within each list; a memory missing from a list gets no
    contribution from it. Ties keep first-seen order (vector list first), so
    the output is fully determined by the inputs.
    """
    fused: Dict[str, HybridHit] = {}

    for rank, hit in enumerate(vector_hits, start=1):
        entry = fused.setdefault(hit.memory.id, HybridHit(memory=hit.memory, score=0.0))
        if entry.vector_rank is not None:
            continue
        entry.vector_rank = rank
        entry.vector_similarity = hit.similarity
        entry.score += vector_weight / (k + rank)
        entry.found_by.add("vector")

    for rank, hit in enumerate(lexical_hits, start=1):
        entry = fused.setdefault(hit.memory.id, HybridHit(memory=hit.memory, score=0.0))
        if entry.lexical_rank is not None:
            continue
        entry.lexical_rank = rank
        entry.lexical_score = hit.score
        entry.snippet = hit.snippet or None
        entry.score += bm25_weight / (k + rank)
        entry.found_by.add("lexical")

    ordered = sorted(fused.values(), key=lambda h: h.score, reverse=True)
    return ordered[: max(0, limit)]


class HybridRetriever:
    """
    Two-signal retrieval engine with Reciprocal Rank Fusion.

    Each source is asked for ``max(limit * 2, min_candidates)`` results so
    that fusion has enough overlap to work with.
    """

    def __init__(
        self,
        lexical: LexicalIndex,
        vector: VectorSearch,
        vector_weight: float = DEFAULT_VECTOR_WEIGHT,
        bm25_weight: float = DEFAULT_BM25_WEIGHT,
        k: int = RRF_K,
        min_candidates: int = 40,
        min_similarity: float = DEFAULT_MIN_SCORE,
        vector_timeout: Optional[float] = 30.0,
    ):
        self.lexical = lexical
        self.vector = vector
        self.vector_weight = vector_weight
        self.bm25_weight = bm25_weight
        self.k = k
        self.min_candidates = min_candidates
        self.min_similarity = min_similarity
        self.vector_timeout = vector_timeout

    async def search(self, query: str, limit: int = 20) -> HybridSearchResult:
        t0 = time.perf_counter()
        fetch = max(limit * 2, self.min_candidates)

        (lexical_hits, lexical_ms, lexical_error), (vector_hits, vector_ms, vector_error) = (
            await asyncio.gather(
                self._lexical_search(query, fetch),
                self._vector_search(query, fetch),
            )
        )

        warnings: List[str] = []
        if vector_error is not None:
            warnings.append(f"Vector search unavailable, results are lexical-only: {vector_error}")
        if lexical_error is not None:
            warnings.append(f"Lexical search failed: {lexical_error}")

        t_fuse = time.perf_counter()
        hits = reciprocal_rank_fusion(
            lexical_hits,
            vector_hits,
            limit=limit,
            vector_weight=self.vector_weight,
            bm25_weight=self.bm25_weight,
            k=self.k,
        )
        fusion_ms = (time.perf_counter() - t_fuse) * 1000
        candidates = {h.memory.id for h in lexical_hits} | {h.memory.id for h in vector_hits}

        return HybridSearchResult(
            query=query,
            hits=hits,
            vector_search_used=vector_error is None,
            lexical_search_used=lexical_error is None,
            total_candidates=len(candidates),
            timing=SearchTiming(
                lexical_ms=lexical_ms,
                vector_ms=vector_ms,
                fusion_ms=fusion_ms,
                total_ms=(time.perf_counter() - t0) * 1000,
            ),
            warnings=warnings,
        )

    async def _lexical_search(self, query: str, limit: int) -> Tuple[List[LexicalHit], float, Optional[str]]:
        t0 = time.perf_counter()
        try:
            hits = await asyncio.to_thread(self.lexical.search, query, limit)
            return hits, (time.perf_counter() - t0) * 1000, None
        except Exception as e:
            logger.warning("Lexical search failed: %s", e)
            return [], (time.perf_counter() - t0) * 1000, str(e) or type(e).__name__

    async def _vector_search(self, query: str, limit: int) -> Tuple[List[VectorHit], float, Optional[str]]:
        t0 = time.perf_counter()
        try:
            vector = await asyncio.wait_for(self.vector.embed_query(query), timeout=self.vector_timeout)
            hits = await asyncio.to_thread(self.vector.search, vector, limit, self.min_similarity)
            return hits, (time.perf_counter() - t0) * 1000, None
        except asyncio.TimeoutError:
            logger.warning("Vector search timed out after %ss", self.vector_timeout)
            return [], (time.perf_counter() - t0) * 1000, f"embedding timed out after {self.vector_timeout}s"
        except Exception as e:
            logger.warning("Vector search failed: %s", e)
            return [], (time.perf_counter() - t0) * 1000, str(e) or type(e).__name__
