"""
Recollect Query Expansion
-------------------------
Asks a completion service for alternative phrasings of a search query and
fans a lexical search out over all of them.

Expansion only ever adds recall: the original query is always the first
entry, and any failure (service down, timeout, unparseable reply) leaves
just that original entry.
"""

import asyncio
import json
import logging
import re
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from recollect.core.types import (
    ExpandedHit,
    ExpandedQuery,
    ExpandedSearchResult,
    ExpansionType,
    LexicalHit,
    QueryExpansionResult,
)
from recollect.providers.completion import CompletionClient
from recollect.retrieval.lexical import LexicalIndex

logger = logging.getLogger("Recollect.Expansion")

DEFAULT_EXPANSION_COUNT = 5
SHORT_QUERY_CHARS = 20
OPERATOR_PATTERN = re.compile(r'\bOR\b|\bNOT\b|\bAND\b|"[^"]+"|[*]')

SYSTEM_PROMPT = "You are a search query expansion assistant. Respond only with valid JSON."

CONTEXT_HINTS = {
    "technical": "Focus on technical terms, code patterns, APIs, and implementation details.",
    "general": "Consider general concepts, user intents, and everyday language.",
    "pattern": "Focus on patterns, best practices, common approaches, and antipatterns.",
    "decision": "Focus on trade-offs, choices, rationale, and decision criteria.",
}

PROMPT_TEMPLATE = """You are a search query expansion expert. Given a search query, generate {count} alternative queries that would help find relevant information in a knowledge base.

The knowledge base contains:
- Technical learnings from software development projects
- Patterns and best practices discovered during work
- Decisions and their rationale
- Facts and preferences

Original query: "{query}"

Context hint: {hint}

Generate exactly {count} expanded queries. For each, provide the alternative query, the expansion type (synonym, related, rephrase, or technical) and a brief reasoning.

Respond in this exact JSON format:
{{
  "expansions": [
    {{
      "query": "alternative query here",
      "expansionType": "synonym|related|rephrase|technical",
      "reasoning": "brief explanation"
    }}
  ]
}}

Keep queries concise (1-6 words), distinct from each other, and include both broader and narrower variations."""


def should_expand(query: str) -> bool:
    """Short or loosely worded queries benefit from expansion; precise ones do not."""
    trimmed = query.strip()
    if len(trimmed) < SHORT_QUERY_CHARS:
        return True
    word_count = len(trimmed.split())
    if word_count <= 2:
        return True
    # Explicit operators mean the caller already knows what they want.
    if OPERATOR_PATTERN.search(trimmed):
        return False
    return word_count <= 5


def build_prompt(query: str, count: int, search_context: str) -> str:
    hint = CONTEXT_HINTS.get(search_context, CONTEXT_HINTS["general"])
    return PROMPT_TEMPLATE.format(count=count, query=query, hint=hint)


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the first well-formed JSON object embedded in ``text``."""
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = text.find("{", start + 1)
    return None


def _expansion_type(raw: Any) -> ExpansionType:
    try:
        value = ExpansionType(raw)
    except ValueError:
        return ExpansionType.RELATED
    return ExpansionType.RELATED if value == ExpansionType.ORIGINAL else value


def parse_expansion_response(text: str, original: ExpandedQuery) -> List[ExpandedQuery]:
    """Original first, then each new expansion, deduplicated case-insensitively."""
    queries = [original]
    seen = {original.query.lower()}

    parsed = extract_json_object(text or "")
    if parsed is None:
        logger.warning("No JSON object found in expansion response")
        return queries
    expansions = parsed.get("expansions")
    if not isinstance(expansions, list):
        logger.warning("Expansion response has no expansions array")
        return queries

    for item in expansions:
        if not isinstance(item, dict):
            continue
        candidate = item.get("query")
        if not isinstance(candidate, str):
            continue
        clean = candidate.strip()
        if not clean or clean.lower() in seen:
            continue
        seen.add(clean.lower())
        reasoning = item.get("reasoning")
        queries.append(
            ExpandedQuery(
                query=clean,
                expansion_type=_expansion_type(item.get("expansionType", item.get("expansion_type"))),
                reasoning=reasoning if isinstance(reasoning, str) else None,
            )
        )
    return queries


def merge_expanded_results(
    result_sets: Sequence[Tuple[ExpandedQuery, Sequence[LexicalHit]]],
    limit: int,
) -> List[ExpandedHit]:
    """First occurrence of a memory wins; then sort by score, highest first."""
    merged: List[ExpandedHit] = []
    seen = set()
    for expanded, hits in result_sets:
        for hit in hits:
            if hit.memory.id in seen:
                continue
            seen.add(hit.memory.id)
            merged.append(
                ExpandedHit(
                    memory=hit.memory,
                    score=hit.score,
                    snippet=hit.snippet,
                    matched_query=expanded.query,
                    expansion_type=expanded.expansion_type,
                )
            )
    merged.sort(key=lambda h: h.score, reverse=True)
    return merged[: max(0, limit)]


class QueryExpander:
    def __init__(
        self,
        completer: Optional[CompletionClient],
        count: int = DEFAULT_EXPANSION_COUNT,
        search_context: str = "general",
        timeout: float = 30.0,
    ):
        self.completer = completer
        self.count = count
        self.search_context = search_context
        self.timeout = timeout

    async def expand(
        self,
        query: str,
        count: Optional[int] = None,
        search_context: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> QueryExpansionResult:
        t0 = time.perf_counter()
        trimmed = query.strip()
        if not trimmed:
            return QueryExpansionResult(
                original_query=query,
                expanded_queries=[],
                success=False,
                error="Empty query provided",
                duration_ms=(time.perf_counter() - t0) * 1000,
            )

        original = ExpandedQuery(query=trimmed, expansion_type=ExpansionType.ORIGINAL)

        def degraded(error: str) -> QueryExpansionResult:
            logger.warning("Query expansion failed, using original query only: %s", error)
            return QueryExpansionResult(
                original_query=query,
                expanded_queries=[original],
                success=False,
                error=error,
                duration_ms=(time.perf_counter() - t0) * 1000,
            )

        if self.completer is None:
            return degraded("No completion client configured")

        effective_timeout = timeout if timeout is not None else self.timeout
        prompt = build_prompt(trimmed, count or self.count, search_context or self.search_context)
        try:
            response = await asyncio.wait_for(
                self.completer.complete(prompt, system_prompt=SYSTEM_PROMPT, timeout=effective_timeout),
                timeout=effective_timeout,
            )
        except asyncio.TimeoutError:
            return degraded(f"completion timed out after {effective_timeout}s")
        except Exception as e:
            return degraded(str(e) or type(e).__name__)

        if not response.success:
            return degraded(response.error or "completion call failed")

        return QueryExpansionResult(
            original_query=query,
            expanded_queries=parse_expansion_response(response.text, original),
            success=True,
            duration_ms=(time.perf_counter() - t0) * 1000,
        )

    async def expanded_queries(self, query: str) -> List[str]:
        result = await self.expand(query)
        return [eq.query for eq in result.expanded_queries]


class ExpandedSearch:
    """Lexical search fanned out over a query and its expansions."""

    def __init__(self, lexical: LexicalIndex, expander: QueryExpander, per_query_limit: int = 10):
        self.lexical = lexical
        self.expander = expander
        self.per_query_limit = per_query_limit

    async def search(self, query: str, limit: int = 20, force_expansion: bool = False) -> ExpandedSearchResult:
        warnings: List[str] = []
        original = ExpandedQuery(query=query.strip(), expansion_type=ExpansionType.ORIGINAL)
        expansion: Optional[QueryExpansionResult] = None

        if force_expansion or should_expand(query):
            expansion = await self.expander.expand(query)
            if not expansion.success and expansion.error:
                warnings.append(f"Query expansion unavailable, searched original query only: {expansion.error}")
            queries = expansion.expanded_queries or [original]
        else:
            queries = [original]

        # The original query alone must reach the caller's limit.
        original_limit = max(self.per_query_limit, limit)
        results = await asyncio.gather(
            *(
                asyncio.to_thread(
                    self.lexical.search,
                    eq.query,
                    original_limit if eq.expansion_type == ExpansionType.ORIGINAL else self.per_query_limit,
                )
                for eq in queries
            ),
            return_exceptions=True,
        )
        result_sets: List[Tuple[ExpandedQuery, List[LexicalHit]]] = []
        for eq, hits in zip(queries, results):
            if isinstance(hits, Exception):
                logger.warning("Expanded search for %r failed: %s", eq.query, hits)
                warnings.append(f"Search for expansion '{eq.query}' failed: {hits}")
                continue
            result_sets.append((eq, hits))

        return ExpandedSearchResult(
            query=query,
            hits=merge_expanded_results(result_sets, limit),
            expansion=expansion,
            expansion_used=bool(expansion and expansion.success and len(queries) > 1),
            warnings=warnings,
        )
