"""
Recollect Memory Service
------------------------
Single entry point for callers. Composes:
- SQLite memory store (memories, tags, lifecycle)
- Association graph (memory → outcome / task / memory edges)
- Retrieval feedback log (what was returned, was it useful)
- Lexical index (FTS5 BM25), vector search (cosine scan), RRF fusion
- Query expansion (completion service) and expanded fan-out search

The embedding and completion clients are optional collaborators. When one
is missing or failing, store and search keep working with fewer features
and say so through ``warnings`` / ``vector_search_used``.
"""

import asyncio
import sqlite3
import time
import logging
from typing import Iterable, List, Optional, Union

from recollect.core.config import RecollectConfig
from recollect.core.types import (
    Association,
    AssociationType,
    BackfillResult,
    Embedding,
    EmbeddingHealth,
    HealthReport,
    Importance,
    IndexStats,
    LexicalHit,
    Memory,
    MemoryInput,
    MemorySource,
    MemorySystemStats,
    MemoryType,
    RetrievalEntry,
    RetrievalMethod,
    RetrievalStats,
    SearchResponse,
    SearchStrategy,
    StoreResult,
    Tag,
)
from recollect.errors import InvalidInputError
from recollect.providers.completion import CompletionClient, OllamaCompletionClient
from recollect.providers.embedding import EmbeddingClient, OllamaEmbeddingClient
from recollect.retrieval.expansion import ExpandedSearch, QueryExpander
from recollect.retrieval.hybrid import HybridRetriever
from recollect.retrieval.lexical import LexicalIndex
from recollect.retrieval.vector import VectorSearch
from recollect.store.associations import AssociationGraph
from recollect.store.feedback import RetrievalFeedbackLog
from recollect.store.sqlite_store import SQLiteMemoryStore, normalize_tags

logger = logging.getLogger("Recollect.Memory")

SUPPORTED_PROVIDERS = ("ollama",)

# How each strategy is recorded in the retrieval log.
STRATEGY_LOG_METHOD = {
    SearchStrategy.HYBRID: RetrievalMethod.SEMANTIC,
    SearchStrategy.VECTOR: RetrievalMethod.SEMANTIC,
    SearchStrategy.LEXICAL: RetrievalMethod.TAG,
    SearchStrategy.EXPANDED: RetrievalMethod.TAG,
}


def _parse_filter(enum_cls, value, field: str):
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidInputError(f"unknown {field} '{value}'", field=field)


class MemoryService:
    """
    Memory store and hybrid retrieval engine behind one object.

    Collaborators can be injected for tests or custom deployments; anything
    not injected is built from ``config`` during ``initialize()``.

    Usage:
        service = MemoryService(RecollectConfig.from_env())
        await service.initialize()

        memory = await service.store("Always validate input at boundaries", MemoryType.LESSON,
                                     tags=["api", "security"])
        response = await service.search("input validation")

        await service.shutdown()
    """

    def __init__(
        self,
        config: Optional[RecollectConfig] = None,
        *,
        store: Optional[SQLiteMemoryStore] = None,
        embedder: Optional[EmbeddingClient] = None,
        completer: Optional[CompletionClient] = None,
    ):
        self.config = config or RecollectConfig.from_env()

        self._store = store
        self._embedder = embedder
        self._completer = completer
        self._owned: list = []

        self._associations: Optional[AssociationGraph] = None
        self._feedback: Optional[RetrievalFeedbackLog] = None
        self._lexical: Optional[LexicalIndex] = None
        self._vector: Optional[VectorSearch] = None
        self._hybrid: Optional[HybridRetriever] = None
        self._expander: Optional[QueryExpander] = None
        self._expanded: Optional[ExpandedSearch] = None
        self._initialized = False

    async def initialize(self) -> None:
        """Open the store and wire up the retrieval pipeline. Must be called before any operations."""
        if self._initialized:
            return

        if self._store is None:
            self.config.ensure_directories()
            self._store = SQLiteMemoryStore(self.config.metadata.path)
            self._owned.append(self._store)

        if self._embedder is None and self._provider_supported("embedding", self.config.embedding):
            self._embedder = OllamaEmbeddingClient(
                base_url=self.config.embedding.ollama_url,
                model=self.config.embedding.model,
                timeout=self.config.embedding.timeout_seconds,
            )
            self._owned.append(self._embedder)

        if self._completer is None and self._provider_supported("completion", self.config.completion):
            self._completer = OllamaCompletionClient(
                base_url=self.config.completion.ollama_url,
                model=self.config.completion.model,
                timeout=self.config.completion.timeout_seconds,
            )
            self._owned.append(self._completer)

        search = self.config.search
        self._associations = AssociationGraph(self._store)
        self._feedback = RetrievalFeedbackLog(self._store)
        self._lexical = LexicalIndex(self._store)
        self._vector = VectorSearch(self._store, self._embedder)
        self._hybrid = HybridRetriever(
            self._lexical,
            self._vector,
            vector_weight=search.vector_weight,
            bm25_weight=search.bm25_weight,
            k=search.rrf_k,
            min_candidates=search.min_candidates,
            min_similarity=search.min_similarity,
            vector_timeout=search.vector_timeout_seconds,
        )
        self._expander = QueryExpander(
            self._completer,
            count=search.expansion_count,
            search_context=search.expansion_context,
            timeout=self.config.completion.timeout_seconds,
        )
        self._expanded = ExpandedSearch(self._lexical, self._expander, per_query_limit=search.per_query_limit)

        self._initialized = True
        logger.info(
            "Memory service ready (embedding=%s, completion=%s, fts5=%s)",
            self._embedder is not None,
            self._completer is not None,
            self._store.fts5_available,
        )

    @staticmethod
    def _provider_supported(kind: str, section) -> bool:
        if not section.enabled:
            return False
        if section.provider not in SUPPORTED_PROVIDERS:
            logger.warning("Unsupported %s provider '%s'; running without %s", kind, section.provider, kind)
            return False
        return True

    async def shutdown(self) -> None:
        """Close the clients and store this service created itself."""
        for resource in reversed(self._owned):
            if isinstance(resource, SQLiteMemoryStore):
                resource.close()
            else:
                await resource.close()
        self._owned.clear()
        self._initialized = False
        logger.info("Memory service shut down")

    def _check_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("MemoryService not initialized. Call await service.initialize() first.")

    # ==========================================
    # Storing
    # ==========================================

    def _dimension_error(self, vector) -> Optional[str]:
        expected = self.config.embedding.dimensions
        if len(vector) != expected:
            return f"embedding has {len(vector)} dimensions, expected {expected}"
        return None

    async def _embed(self, text: str, warnings: List[str]) -> Optional[Embedding]:
        if self._embedder is None:
            return None
        try:
            vector = await asyncio.wait_for(
                self._embedder.embed(text), timeout=self.config.embedding.timeout_seconds
            )
            message = self._dimension_error(vector)
            if message is None:
                return Embedding(values=vector)
        except asyncio.TimeoutError:
            message = f"embedding timed out after {self.config.embedding.timeout_seconds}s"
        except Exception as e:
            message = f"embedding failed: {e}"
        logger.warning("Storing without embedding (non-fatal): %s", message)
        warnings.append(f"Stored without embedding: {message}")
        return None

    async def store(
        self,
        content: str,
        type: Union[MemoryType, str],
        importance: Union[Importance, str, None] = None,
        source: Union[MemorySource, str] = MemorySource.SYSTEM,
        source_outcome_id: Optional[str] = None,
        source_task_id: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        confidence: float = 1.0,
        expires_at: Optional[float] = None,
        skip_embedding: bool = False,
    ) -> Memory:
        """Embed (best effort), persist, and tag a new memory."""
        result = await self._store_one(
            content, type, importance, source, source_outcome_id, source_task_id,
            tags, confidence, expires_at, skip_embedding,
        )
        return result.memory

    async def _store_one(
        self, content, type, importance, source, source_outcome_id, source_task_id,
        tags, confidence, expires_at, skip_embedding,
    ) -> StoreResult:
        self._check_initialized()
        if not isinstance(content, str) or not content.strip():
            raise InvalidInputError("content must be a non-empty string", field="content")
        warnings: List[str] = []
        embedding = None if skip_embedding else await self._embed(content, warnings)
        memory = self._store.create(
            content=content,
            type=type,
            importance=importance,
            source=source,
            source_outcome_id=source_outcome_id,
            source_task_id=source_task_id,
            tags=tags,
            embedding=embedding,
            confidence=confidence,
            expires_at=expires_at,
        )
        logger.info(
            "Stored memory %s (type=%s, importance=%s, embedded=%s)",
            memory.id, memory.type.value, memory.importance.value, embedding is not None,
        )
        return StoreResult(memory=memory, warnings=warnings)

    async def store_and_associate(
        self,
        content: str,
        type: Union[MemoryType, str],
        importance: Union[Importance, str, None] = None,
        source: Union[MemorySource, str] = MemorySource.SYSTEM,
        source_outcome_id: Optional[str] = None,
        source_task_id: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        confidence: float = 1.0,
        expires_at: Optional[float] = None,
        outcome_id: Optional[str] = None,
        task_id: Optional[str] = None,
        association_strength: Optional[float] = None,
        association_context: Optional[str] = None,
    ) -> StoreResult:
        """Store a memory, then link it to an outcome and/or task."""
        result = await self._store_one(
            content, type, importance, source, source_outcome_id, source_task_id,
            tags, confidence, expires_at, False,
        )
        memory_id = result.memory.id
        if outcome_id:
            assoc = self.associate_with_outcome(memory_id, outcome_id, association_strength, association_context)
            if assoc is not None:
                result.associations.append(assoc)
        if task_id:
            assoc = self.associate_with_task(memory_id, task_id, association_strength, association_context)
            if assoc is not None:
                result.associations.append(assoc)
        return result

    async def store_batch(self, inputs: List[MemoryInput]) -> List[Memory]:
        """Store several memories with a single batched embedding call."""
        self._check_initialized()
        if not inputs:
            return []
        vectors: List[Optional[List[float]]] = [None] * len(inputs)
        if self._embedder is not None:
            try:
                embedded = await asyncio.wait_for(
                    self._embedder.embed_batch([item.content for item in inputs]),
                    timeout=self.config.embedding.timeout_seconds,
                )
                if len(embedded) == len(inputs):
                    vectors = list(embedded)
                    for i, vector in enumerate(vectors):
                        message = self._dimension_error(vector)
                        if message is not None:
                            logger.warning("Storing batch item %d without embedding: %s", i, message)
                            vectors[i] = None
                else:
                    logger.warning(
                        "Batch embedding returned %d vectors for %d inputs; storing without embeddings",
                        len(embedded), len(inputs),
                    )
            except asyncio.TimeoutError:
                logger.warning("Batch embedding timed out (non-fatal); storing without embeddings")
            except Exception as e:
                logger.warning("Batch embedding failed (non-fatal): %s", e)

        stored: List[Memory] = []
        for item, vector in zip(inputs, vectors):
            stored.append(
                self._store.create(
                    content=item.content,
                    type=item.type,
                    importance=item.importance,
                    source=item.source,
                    source_outcome_id=item.source_outcome_id,
                    source_task_id=item.source_task_id,
                    tags=item.tags,
                    embedding=Embedding(values=vector) if vector else None,
                    confidence=item.confidence,
                    expires_at=item.expires_at,
                )
            )
        logger.info("Stored batch of %d memories", len(stored))
        return stored

    # ==========================================
    # Searching
    # ==========================================

    async def search(
        self,
        query: str,
        strategy: Union[SearchStrategy, str, None] = None,
        limit: Optional[int] = None,
        type: Union[MemoryType, str, None] = None,
        importance: Union[Importance, str, None] = None,
        tags: Optional[Iterable[str]] = None,
        outcome_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> SearchResponse:
        """
        Search active memories.

        Strategy failures never propagate: the response carries fewer (or no)
        results and an explanation in ``warnings``.
        """
        self._check_initialized()
        t0 = time.perf_counter()
        strategy = _parse_filter(SearchStrategy, strategy or self.config.search.default_strategy, "strategy")
        limit = self.config.search.default_limit if limit is None else int(limit)
        if limit < 0:
            raise InvalidInputError("limit must not be negative", field="limit")
        type_filter = _parse_filter(MemoryType, type, "type")
        importance_filter = _parse_filter(Importance, importance, "importance")
        required_tags = set(normalize_tags(tags))

        warnings: List[str] = []
        vector_used = False
        scored: List[tuple] = []
        try:
            if strategy == SearchStrategy.LEXICAL:
                hits = await asyncio.to_thread(self._lexical.search, query, limit)
                scored = [(h.memory, h.score) for h in hits]
            elif strategy == SearchStrategy.VECTOR:
                try:
                    vector = await asyncio.wait_for(
                        self._vector.embed_query(query), timeout=self.config.search.vector_timeout_seconds
                    )
                    hits = await asyncio.to_thread(
                        self._vector.search, vector, limit, self.config.search.min_similarity
                    )
                    scored = [(h.memory, h.similarity) for h in hits]
                    vector_used = True
                except asyncio.TimeoutError:
                    warnings.append("Vector search unavailable: embedding timed out")
                except Exception as e:
                    logger.warning("Vector search failed: %s", e)
                    warnings.append(f"Vector search unavailable: {e}")
            elif strategy == SearchStrategy.HYBRID:
                result = await self._hybrid.search(query, limit)
                scored = [(h.memory, h.score) for h in result.hits]
                vector_used = result.vector_search_used
                warnings.extend(result.warnings)
            else:
                result = await self._expanded.search(query, limit)
                scored = [(h.memory, h.score) for h in result.hits]
                warnings.extend(result.warnings)
        except Exception as e:
            logger.warning("Search strategy %s failed: %s", strategy.value, e)
            warnings.append(f"{strategy.value} search failed: {e}")
            scored = []

        filtered = [
            (memory, score)
            for memory, score in scored
            if (type_filter is None or memory.type == type_filter)
            and (importance_filter is None or memory.importance == importance_filter)
            and required_tags.issubset(memory.tags)
        ]

        retrieval_ids: List[str] = []
        if self.config.search.log_retrievals:
            method = STRATEGY_LOG_METHOD[strategy]
            for memory, score in filtered:
                try:
                    retrieval_ids.append(
                        self._feedback.log(memory.id, method, query, score, outcome_id, task_id)
                    )
                except sqlite3.Error as e:
                    logger.warning("Failed to log retrieval of %s: %s", memory.id, e)

        return SearchResponse(
            memories=[memory for memory, _ in filtered],
            scores={memory.id: score for memory, score in filtered},
            strategy=strategy,
            total_found=len(filtered),
            retrieval_ids=retrieval_ids,
            vector_search_used=vector_used,
            warnings=warnings,
            timing_ms=(time.perf_counter() - t0) * 1000,
        )

    def find(self, query: str, limit: int = 20) -> List[LexicalHit]:
        self._check_initialized()
        return self._lexical.search(query, limit)

    def find_exact(self, phrase: str, limit: int = 20) -> List[LexicalHit]:
        self._check_initialized()
        return self._lexical.search_exact_phrase(phrase, limit)

    def find_by_keywords(self, keywords: Iterable[str], match_all: bool = True, limit: int = 20) -> List[LexicalHit]:
        self._check_initialized()
        return self._lexical.search_keywords(keywords, match_all=match_all, limit=limit)

    def find_advanced(
        self,
        must: Optional[Iterable[str]] = None,
        should: Optional[Iterable[str]] = None,
        must_not: Optional[Iterable[str]] = None,
        limit: int = 20,
    ) -> List[LexicalHit]:
        self._check_initialized()
        return self._lexical.search_advanced(must, should, must_not, limit)

    # ==========================================
    # Direct access
    # ==========================================

    def get(self, memory_id: str) -> Optional[Memory]:
        self._check_initialized()
        return self._store.get(memory_id)

    def update(self, memory_id: str, **fields) -> Optional[Memory]:
        self._check_initialized()
        return self._store.update(memory_id, **fields)

    def delete(self, memory_id: str) -> bool:
        self._check_initialized()
        return self._store.delete(memory_id)

    def supersede(self, old_id: str, new_id: str) -> Optional[Memory]:
        self._check_initialized()
        return self._store.supersede(old_id, new_id)

    def add_tags(self, memory_id: str, tags: Iterable[str]) -> Optional[Memory]:
        self._check_initialized()
        return self._store.add_tags(memory_id, tags)

    def get_active(self, limit: int = 50) -> List[Memory]:
        self._check_initialized()
        return self._store.get_active(limit)

    def get_by_type(self, memory_type: Union[MemoryType, str], limit: int = 50) -> List[Memory]:
        self._check_initialized()
        return self._store.get_by_type(memory_type, limit)

    def get_by_importance(self, importance: Union[Importance, str], limit: int = 50) -> List[Memory]:
        self._check_initialized()
        return self._store.get_by_importance(importance, limit)

    def get_by_tag(self, tag: str, limit: int = 50) -> List[Memory]:
        self._check_initialized()
        return self._store.get_by_tag(tag, limit)

    def get_from_source_outcome(self, outcome_id: str, limit: int = 50) -> List[Memory]:
        """Memories learned from the given outcome, newest first."""
        self._check_initialized()
        return self._store.get_by_source_outcome(outcome_id, limit)

    def get_recently_accessed(self, limit: int = 20) -> List[Memory]:
        self._check_initialized()
        return self._store.get_recently_accessed(limit)

    def get_most_accessed(self, limit: int = 20) -> List[Memory]:
        self._check_initialized()
        return self._store.get_most_accessed(limit)

    def get_by_tags(self, tags: Iterable[str], limit: int = 50) -> List[Memory]:
        self._check_initialized()
        return self._store.get_by_tags(tags, limit)

    def get_all_tags(self) -> List[Tag]:
        self._check_initialized()
        return self._store.get_all_tags()

    # ==========================================
    # Associations
    # ==========================================

    def get_for_outcome(self, outcome_id: str, limit: int = 20) -> List[Memory]:
        self._check_initialized()
        return self._associations.get_for_outcome(outcome_id, limit)

    def get_for_task(self, task_id: str, limit: int = 20) -> List[Memory]:
        self._check_initialized()
        return self._associations.get_for_task(task_id, limit)

    def associate_with_outcome(
        self,
        memory_id: str,
        outcome_id: str,
        strength: Optional[float] = None,
        context: Optional[str] = None,
    ) -> Optional[Association]:
        self._check_initialized()
        return self._associations.associate(
            memory_id,
            AssociationType.RELEVANT_TO_OUTCOME,
            outcome_id,
            self.config.associations.default_strength if strength is None else strength,
            context,
        )

    def associate_with_task(
        self,
        memory_id: str,
        task_id: str,
        strength: Optional[float] = None,
        context: Optional[str] = None,
    ) -> Optional[Association]:
        self._check_initialized()
        return self._associations.associate(
            memory_id,
            AssociationType.RELEVANT_TO_TASK,
            task_id,
            self.config.associations.default_strength if strength is None else strength,
            context,
        )

    def link_memories(
        self,
        memory_id: str,
        related_memory_id: str,
        strength: float = 0.5,
        context: Optional[str] = None,
    ) -> Optional[Association]:
        self._check_initialized()
        return self._associations.associate(
            memory_id, AssociationType.RELATED_TO_MEMORY, related_memory_id, strength, context
        )

    def get_associations(self, memory_id: str) -> List[Association]:
        self._check_initialized()
        return self._associations.get_associations_for(memory_id)

    def update_association_strength(self, association_id: str, strength: float) -> Optional[Association]:
        self._check_initialized()
        return self._associations.update_strength(association_id, strength)

    def remove_association(self, association_id: str) -> bool:
        self._check_initialized()
        return self._associations.delete(association_id)

    # ==========================================
    # Feedback
    # ==========================================

    def mark_useful(self, retrieval_id: str) -> Optional[RetrievalEntry]:
        self._check_initialized()
        return self._feedback.mark_useful(retrieval_id, True)

    def mark_not_useful(self, retrieval_id: str) -> Optional[RetrievalEntry]:
        self._check_initialized()
        return self._feedback.mark_useful(retrieval_id, False)

    def get_retrieval(self, retrieval_id: str) -> Optional[RetrievalEntry]:
        self._check_initialized()
        return self._feedback.get(retrieval_id)

    def get_retrieval_stats(self, memory_id: str) -> RetrievalStats:
        self._check_initialized()
        return self._feedback.stats_for(memory_id)

    # ==========================================
    # Maintenance
    # ==========================================

    def cleanup_expired(self) -> int:
        self._check_initialized()
        return self._store.delete_expired()

    def rebuild_index(self) -> bool:
        self._check_initialized()
        return self._lexical.rebuild()

    async def backfill_embeddings(self, batch_size: int = 10, limit: int = 1000) -> BackfillResult:
        """Embed active memories that have no vector. Failed batches are counted and skipped."""
        self._check_initialized()
        if batch_size < 1:
            raise InvalidInputError("batch_size must be at least 1", field="batch_size")
        pending = self._store.get_without_embedding(limit)
        result = BackfillResult(scanned=len(pending))
        if self._embedder is None:
            logger.warning("Backfill skipped: no embedding client configured")
            return result

        for start in range(0, len(pending), batch_size):
            batch = pending[start : start + batch_size]
            try:
                vectors = await asyncio.wait_for(
                    self._embedder.embed_batch([m.content for m in batch]),
                    timeout=self.config.embedding.timeout_seconds,
                )
                if len(vectors) != len(batch):
                    raise ValueError(f"got {len(vectors)} vectors for {len(batch)} memories")
            except Exception as e:
                logger.warning("Backfill batch at offset %d failed (skipped): %s", start, e)
                result.failed += len(batch)
                result.failed_batches += 1
                continue
            for memory, vector in zip(batch, vectors):
                message = self._dimension_error(vector)
                if message is not None:
                    logger.warning("Backfill skipped %s: %s", memory.id, message)
                    result.failed += 1
                    continue
                if self._store.update_embedding(memory.id, Embedding(values=vector)):
                    result.embedded += 1

        logger.info(
            "Backfill complete: %d embedded, %d failed (%d batches) of %d scanned",
            result.embedded, result.failed, result.failed_batches, result.scanned,
        )
        return result

    def get_stats(self) -> MemorySystemStats:
        self._check_initialized()
        return self._store.stats()

    def get_index_stats(self) -> IndexStats:
        self._check_initialized()
        return self._lexical.stats()

    async def check_health(self) -> HealthReport:
        self._check_initialized()
        try:
            with self._store.locked() as conn:
                conn.execute("SELECT 1").fetchone()
            store_ok = True
        except sqlite3.Error as e:
            logger.error("Store health check failed: %s", e)
            store_ok = False

        if self._embedder is None:
            embedding = EmbeddingHealth(available=False, model_ready=False, error="not configured")
        else:
            try:
                embedding = await self._embedder.health()
            except Exception as e:
                embedding = EmbeddingHealth(available=False, model_ready=False, error=str(e))

        index = self._lexical.stats()
        return HealthReport(
            store=store_ok,
            lexical_index=index.available,
            embedding=embedding,
            completion_configured=self._completer is not None,
            details={"memory_count": index.total, "indexed": index.indexed},
        )
