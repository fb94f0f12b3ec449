"""
Recollect Lexical Index
-----------------------
BM25 keyword search backed by SQLite FTS5 (porter stemming, unicode61).

The index is an external-content FTS5 table kept in sync with ``memories``
by triggers, so there is nothing to add or remove here; this module only
queries it, rebuilds it, and reports on it.

Scores are ``-bm25(...)`` so higher is better. When FTS5 is missing or
rejects a query, search degrades to a substring scan where every hit has
score 0 (matched, but unranked) and the first 200 characters as snippet.

Query syntax is passed through to FTS5 and supports:
    validate input          both terms (implicit AND)
    "exact phrase"          phrase match
    api OR rest             either term
    api NOT graphql         exclusion
"""

import time
import sqlite3
import logging
from typing import Iterable, List, Optional

from recollect.core.types import IndexStats, LexicalHit, Memory
from recollect.store.sqlite_store import SQLiteMemoryStore, active_filter, normalize_tag

logger = logging.getLogger("Recollect.Lexical")

# Column weights for bm25(): content, tags
CONTENT_WEIGHT = 1.0
TAGS_WEIGHT = 0.5
SNIPPET_TOKENS = 32
FALLBACK_SNIPPET_CHARS = 200

FTS_SEARCH = f"""
SELECT m.*,
       -bm25(memories_fts, {CONTENT_WEIGHT}, {TAGS_WEIGHT}) AS lexical_score,
       snippet(memories_fts, 0, '<b>', '</b>', '...', {SNIPPET_TOKENS}) AS lexical_snippet
FROM memories_fts
JOIN memories m ON m.rowid = memories_fts.rowid
WHERE memories_fts MATCH ? AND {active_filter('m')}
ORDER BY lexical_score DESC
LIMIT ?
"""


def quote_term(term: str) -> str:
    """Quote a term or phrase for FTS5, doubling embedded quotes."""
    return '"' + term.replace('"', '""') + '"'


def build_phrase_query(phrase: str) -> str:
    return quote_term(phrase.strip())


def build_keyword_query(keywords: Iterable[str], match_all: bool = True) -> str:
    terms = [quote_term(k.strip()) for k in keywords if k and k.strip()]
    return (" AND " if match_all else " OR ").join(terms)


def build_advanced_query(
    must: Optional[Iterable[str]] = None,
    should: Optional[Iterable[str]] = None,
    must_not: Optional[Iterable[str]] = None,
) -> str:
    """Compose required terms, an OR group, and exclusions.

    Returns "" when there is no positive term, since FTS5 cannot evaluate a
    bare NOT.
    """
    parts = [quote_term(t.strip()) for t in must or [] if t and t.strip()]
    optional = [quote_term(t.strip()) for t in should or [] if t and t.strip()]
    if optional:
        parts.append("(" + " OR ".join(optional) + ")")
    if not parts:
        return ""
    query = " AND ".join(parts)
    for term in must_not or []:
        if term and term.strip():
            query += f" NOT {quote_term(term.strip())}"
    return query


def build_tag_query(tag: str) -> str:
    return f"tags:{quote_term(normalize_tag(tag))}"


def _fallback_hit(memory: Memory) -> LexicalHit:
    return LexicalHit(memory=memory, score=0.0, snippet=memory.content[:FALLBACK_SNIPPET_CHARS])


class LexicalIndex:
    """FTS5-backed BM25 search over active memories."""

    def __init__(self, store: SQLiteMemoryStore):
        self.store = store

    def is_available(self) -> bool:
        if not self.store.fts5_available:
            return False
        with self.store.locked() as conn:
            row = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'memories_fts'"
            ).fetchone()
        return row is not None

    def search(self, query: str, limit: int = 20) -> List[LexicalHit]:
        """Ranked hits, highest score first."""
        if not query or not query.strip():
            return []
        if self.is_available():
            try:
                return self._fts_search(query, limit)
            except sqlite3.OperationalError as e:
                logger.warning("FTS5 query failed for %r, using substring fallback: %s", query, e)
        return self._fallback_search(query, limit)

    def _fts_search(self, match: str, limit: int) -> List[LexicalHit]:
        with self.store.locked() as conn:
            rows = conn.execute(FTS_SEARCH, (match, time.time(), int(limit))).fetchall()
        return [
            LexicalHit(
                memory=self.store.row_to_memory(row),
                score=float(row["lexical_score"]),
                snippet=row["lexical_snippet"] or "",
            )
            for row in rows
        ]

    def _fallback_search(self, query: str, limit: int) -> List[LexicalHit]:
        text = query.replace('"', "").strip()
        if not text:
            return []
        return [_fallback_hit(m) for m in self.store.search_content(text, limit=limit)]

    def search_exact_phrase(self, phrase: str, limit: int = 20) -> List[LexicalHit]:
        if not phrase or not phrase.strip():
            return []
        return self.search(build_phrase_query(phrase), limit)

    def search_keywords(self, keywords: Iterable[str], match_all: bool = True, limit: int = 20) -> List[LexicalHit]:
        query = build_keyword_query(keywords, match_all=match_all)
        if not query:
            return []
        return self.search(query, limit)

    def search_advanced(
        self,
        must: Optional[Iterable[str]] = None,
        should: Optional[Iterable[str]] = None,
        must_not: Optional[Iterable[str]] = None,
        limit: int = 20,
    ) -> List[LexicalHit]:
        query = build_advanced_query(must, should, must_not)
        if not query:
            return []
        return self.search(query, limit)

    def search_by_tag(self, tag: str, limit: int = 20) -> List[LexicalHit]:
        if not normalize_tag(tag):
            return []
        if self.is_available():
            try:
                return self._fts_search(build_tag_query(tag), limit)
            except sqlite3.OperationalError as e:
                logger.warning("FTS5 tag query failed for %r: %s", tag, e)
        return [_fallback_hit(m) for m in self.store.get_by_tag(tag, limit=limit)]

    def rebuild(self) -> bool:
        if not self.is_available():
            logger.warning("Cannot rebuild lexical index: FTS5 unavailable")
            return False
        try:
            with self.store.locked() as conn:
                conn.execute("INSERT INTO memories_fts(memories_fts) VALUES('rebuild')")
                conn.commit()
        except sqlite3.OperationalError as e:
            logger.error("Lexical index rebuild failed: %s", e)
            return False
        stats = self.stats()
        logger.info("Lexical index rebuilt: %d of %d memories indexed", stats.indexed, stats.total)
        return True

    def stats(self) -> IndexStats:
        with self.store.locked() as conn:
            total = conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            if not self.store.fts5_available:
                return IndexStats(available=False, indexed=0, total=total, in_sync=False)
            # The docsize shadow table holds one row per indexed document.
            indexed = conn.execute("SELECT COUNT(*) FROM memories_fts_docsize").fetchone()[0]
        return IndexStats(available=True, indexed=indexed, total=total, in_sync=indexed == total)
