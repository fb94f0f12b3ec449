"""
Recollect Core Types
--------------------
Pydantic models and enums for memories and their satellites
(tags, associations, retrieval log entries) plus the result shapes
produced by the retrieval pipeline.
"""

import uuid
import time
from enum import Enum
from typing import Optional, Dict, Any, List, Set
from pydantic import BaseModel, Field


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class MemoryType(str, Enum):
    FACT = "fact"
    PATTERN = "pattern"
    PREFERENCE = "preference"
    DECISION = "decision"
    LESSON = "lesson"
    CONTEXT = "context"


class Importance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return IMPORTANCE_RANK[self.value]


# Ordinal used for "importance desc" ordering, both in Python and in SQL.
IMPORTANCE_RANK = {"low": 1, "medium": 2, "high": 3, "critical": 4}


class MemorySource(str, Enum):
    SYSTEM = "system"
    WORKER = "worker"
    HUMAN = "human"


class AssociationType(str, Enum):
    RELEVANT_TO_OUTCOME = "relevant_to_outcome"
    RELEVANT_TO_TASK = "relevant_to_task"
    RELATED_TO_MEMORY = "related_to_memory"


class RetrievalMethod(str, Enum):
    SEMANTIC = "semantic"
    TAG = "tag"
    ASSOCIATION = "association"
    RECENCY = "recency"
    EXPLICIT = "explicit"


class ExpansionType(str, Enum):
    SYNONYM = "synonym"
    RELATED = "related"
    REPHRASE = "rephrase"
    TECHNICAL = "technical"
    ORIGINAL = "original"


class SearchStrategy(str, Enum):
    LEXICAL = "lexical"
    VECTOR = "vector"
    HYBRID = "hybrid"
    EXPANDED = "expanded"


class Embedding(BaseModel):
    """A stored embedding vector. Absence is modelled as ``None`` on the memory."""
    values: List[float]

    @property
    def dim(self) -> int:
        return len(self.values)


class Memory(BaseModel):
    id: str = Field(default_factory=lambda: new_id("mem"))
    content: str
    type: MemoryType
    importance: Importance = Importance.MEDIUM
    source: MemorySource = MemorySource.SYSTEM

    # Provenance (not ownership)
    source_outcome_id: Optional[str] = None
    source_task_id: Optional[str] = None

    tags: List[str] = Field(default_factory=list)
    embedding: Optional[Embedding] = None
    confidence: float = 1.0

    # Access tracking
    access_count: int = 0
    last_accessed_at: Optional[float] = None

    # Lifecycle
    expires_at: Optional[float] = None
    superseded_by: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    def is_active(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        if self.superseded_by is not None:
            return False
        return self.expires_at is None or self.expires_at > now


class Tag(BaseModel):
    id: str = Field(default_factory=lambda: new_id("tag"))
    name: str
    memory_count: int = 0
    created_at: float = Field(default_factory=time.time)


class Association(BaseModel):
    id: str = Field(default_factory=lambda: new_id("assoc"))
    memory_id: str
    association_type: AssociationType
    target_id: str
    strength: float = 0.5
    context: Optional[str] = None
    created_at: float = Field(default_factory=time.time)


class RetrievalEntry(BaseModel):
    id: str = Field(default_factory=lambda: new_id("ret"))
    memory_id: str
    outcome_id: Optional[str] = None
    task_id: Optional[str] = None
    method: RetrievalMethod
    query: Optional[str] = None
    relevance_score: Optional[float] = None
    # None = not judged yet
    was_useful: Optional[bool] = None
    created_at: float = Field(default_factory=time.time)


class RetrievalStats(BaseModel):
    total: int = 0
    useful: int = 0
    not_useful: int = 0
    unknown: int = 0
    usefulness_ratio: float = 0.0


# --- Retrieval results ---

class LexicalHit(BaseModel):
    memory: Memory
    score: float = 0.0
    snippet: str = ""


class VectorHit(BaseModel):
    memory: Memory
    similarity: float


class HybridHit(BaseModel):
    memory: Memory
    score: float
    vector_rank: Optional[int] = None
    lexical_rank: Optional[int] = None
    vector_similarity: Optional[float] = None
    lexical_score: Optional[float] = None
    found_by: Set[str] = Field(default_factory=set)  # subset of {"vector", "lexical"}
    snippet: Optional[str] = None


class SearchTiming(BaseModel):
    lexical_ms: float = 0.0
    vector_ms: float = 0.0
    fusion_ms: float = 0.0
    total_ms: float = 0.0


class HybridSearchResult(BaseModel):
    query: str
    hits: List[HybridHit] = Field(default_factory=list)
    vector_search_used: bool = False
    lexical_search_used: bool = False
    total_candidates: int = 0
    timing: SearchTiming = Field(default_factory=SearchTiming)
    warnings: List[str] = Field(default_factory=list)


class ExpandedQuery(BaseModel):
    query: str
    expansion_type: ExpansionType
    reasoning: Optional[str] = None


class QueryExpansionResult(BaseModel):
    original_query: str
    expanded_queries: List[ExpandedQuery] = Field(default_factory=list)
    success: bool = False
    error: Optional[str] = None
    duration_ms: float = 0.0


class ExpandedHit(BaseModel):
    memory: Memory
    score: float = 0.0
    snippet: str = ""
    matched_query: str
    expansion_type: ExpansionType


class ExpandedSearchResult(BaseModel):
    query: str
    hits: List[ExpandedHit] = Field(default_factory=list)
    expansion: Optional[QueryExpansionResult] = None
    expansion_used: bool = False
    warnings: List[str] = Field(default_factory=list)


# --- Facade requests/results ---

class MemoryInput(BaseModel):
    content: str
    type: MemoryType
    importance: Optional[Importance] = None
    source: MemorySource = MemorySource.SYSTEM
    source_outcome_id: Optional[str] = None
    source_task_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    confidence: float = 1.0
    expires_at: Optional[float] = None


class SearchResponse(BaseModel):
    memories: List[Memory] = Field(default_factory=list)
    scores: Dict[str, float] = Field(default_factory=dict)
    strategy: SearchStrategy
    total_found: int = 0
    retrieval_ids: List[str] = Field(default_factory=list)
    vector_search_used: bool = False
    warnings: List[str] = Field(default_factory=list)
    timing_ms: float = 0.0


class StoreResult(BaseModel):
    memory: Memory
    associations: List[Association] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class BackfillResult(BaseModel):
    scanned: int = 0
    embedded: int = 0
    failed: int = 0
    failed_batches: int = 0


class IndexStats(BaseModel):
    available: bool = False
    indexed: int = 0
    total: int = 0
    in_sync: bool = False


class MemorySystemStats(BaseModel):
    total: int = 0
    active: int = 0
    superseded: int = 0
    expired: int = 0
    tags: int = 0
    associations: int = 0
    retrievals: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_importance: Dict[str, int] = Field(default_factory=dict)


class EmbeddingHealth(BaseModel):
    available: bool = False
    model_ready: bool = False
    error: Optional[str] = None


class CompletionResult(BaseModel):
    text: str = ""
    success: bool = False
    error: Optional[str] = None


class HealthReport(BaseModel):
    store: bool = False
    lexical_index: bool = False
    embedding: EmbeddingHealth = Field(default_factory=EmbeddingHealth)
    completion_configured: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)
