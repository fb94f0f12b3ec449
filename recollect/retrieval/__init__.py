from recollect.retrieval.lexical import LexicalIndex
from recollect.retrieval.vector import VectorSearch, cosine_similarity
from recollect.retrieval.hybrid import HybridRetriever, reciprocal_rank_fusion
from recollect.retrieval.expansion import ExpandedSearch, QueryExpander, should_expand

__all__ = [
    "LexicalIndex",
    "VectorSearch",
    "cosine_similarity",
    "HybridRetriever",
    "reciprocal_rank_fusion",
    "QueryExpander",
    "ExpandedSearch",
    "should_expand",
]
