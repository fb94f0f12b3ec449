"""Tests for the FTS5 lexical index and its substring fallback."""

import time

import pytest

from recollect.core.types import MemoryType
from recollect.retrieval.lexical import (
    LexicalIndex,
    build_advanced_query,
    build_keyword_query,
    build_phrase_query,
    build_tag_query,
)
from recollect.store.sqlite_store import SQLiteMemoryStore

FILLER = [
    "Deploy on Tuesdays after the standup",
    "Database migrations run inside a transaction",
    "Log levels are configured per module",
    "Prefer composition over inheritance",
]


@pytest.fixture
def store(tmp_path):
    s = SQLiteMemoryStore(tmp_path / "lexical.db")
    for text in FILLER:
        s.create(text, MemoryType.FACT)
    yield s
    s.close()


@pytest.fixture
def index(store):
    return LexicalIndex(store)


class TestQueryBuilders:
    def test_phrase_quotes_and_escapes(self):
        assert build_phrase_query(' say "hi" ') == '"say ""hi"""'

    def test_keywords(self):
        assert build_keyword_query(["api", " ", "rest"]) == '"api" AND "rest"'
        assert build_keyword_query(["api", "rest"], match_all=False) == '"api" OR "rest"'

    def test_advanced(self):
        query = build_advanced_query(must=["api"], should=["rest", "grpc"], must_not=["graphql"])
        assert query == '"api" AND ("rest" OR "grpc") NOT "graphql"'
        assert build_advanced_query(must_not=["graphql"]) == ""

    def test_tag_query_normalizes(self):
        assert build_tag_query("  Security ") == 'tags:"security"'


class TestFtsSearch:
    def test_porter_stemming_matches_inflections(self, store, index):
        memory = store.create("Always validate input at boundaries", MemoryType.LESSON)
        hits = index.search("input validation")
        assert [h.memory.id for h in hits] == [memory.id]
        assert hits[0].score >= 0
        assert "<b>" in hits[0].snippet

    def test_higher_term_frequency_ranks_first(self, store, index):
        dense = store.create("retry retry retry with backoff", MemoryType.PATTERN)
        sparse = store.create(
            "A retry is sometimes needed when a remote service answers slowly under load",
            MemoryType.PATTERN,
        )
        hits = index.search("retry")
        assert [h.memory.id for h in hits] == [dense.id, sparse.id]
        assert hits[0].score > hits[1].score

    def test_phrase_or_and_not(self, store, index):
        rest = store.create("The public api is rest over https", MemoryType.FACT)
        graph = store.create("The internal api uses graphql", MemoryType.FACT)

        assert [h.memory.id for h in index.search('"api is rest"')] == [rest.id]
        assert {h.memory.id for h in index.search("rest OR graphql")} == {rest.id, graph.id}
        assert [h.memory.id for h in index.search("api NOT graphql")] == [rest.id]

    def test_helpers(self, store, index):
        rest = store.create("The public api is rest over https", MemoryType.FACT)
        graph = store.create("The internal api uses graphql", MemoryType.FACT)

        assert [h.memory.id for h in index.search_exact_phrase("public api")] == [rest.id]
        assert {h.memory.id for h in index.search_keywords(["api", "graphql"], match_all=False)} == {
            rest.id,
            graph.id,
        }
        assert [h.memory.id for h in index.search_keywords(["api", "graphql"])] == [graph.id]
        assert [h.memory.id for h in index.search_advanced(must=["api"], must_not=["graphql"])] == [rest.id]
        assert index.search_advanced(must_not=["graphql"]) == []

    def test_tags_are_searchable(self, store, index):
        memory = store.create("Rotate credentials quarterly", MemoryType.DECISION, tags=["security"])
        assert [h.memory.id for h in index.search("security")] == [memory.id]
        assert [h.memory.id for h in index.search_by_tag("Security")] == [memory.id]

        store.add_tags(memory.id, ["compliance"])
        assert [h.memory.id for h in index.search_by_tag("compliance")] == [memory.id]

    def test_updates_and_deletes_are_reflected(self, store, index):
        memory = store.create("Use tabs for indentation", MemoryType.PREFERENCE)
        store.update(memory.id, content="Use spaces for indentation")
        assert index.search("tabs") == []
        assert [h.memory.id for h in index.search("spaces")] == [memory.id]

        store.delete(memory.id)
        assert index.search("spaces") == []

    def test_only_active_memories(self, store, index):
        old = store.create("Queue jobs with celery", MemoryType.DECISION)
        new = store.create("Queue jobs with a plain worker pool", MemoryType.DECISION)
        store.supersede(old.id, new.id)
        store.create("Queue jobs nightly", MemoryType.CONTEXT, expires_at=time.time() - 1)

        assert [h.memory.id for h in index.search("queue")] == [new.id]

    def test_empty_query(self, index):
        assert index.search("   ") == []
        assert index.search_exact_phrase("") == []


class TestFallback:
    def test_rejected_query_falls_back_to_substring(self, store, index):
        memory = store.create("Set foo:bar in the service config", MemoryType.FACT)
        hits = index.search("foo:bar")
        assert [h.memory.id for h in hits] == [memory.id]
        assert hits[0].score == 0.0
        assert hits[0].snippet == memory.content[:200]

    def test_without_fts5(self, store, index):
        long_text = "cache " + "x" * 300
        memory = store.create(long_text, MemoryType.FACT)
        store._fts5_available = False

        assert index.is_available() is False
        hits = index.search('"cache"')
        assert [h.memory.id for h in hits] == [memory.id]
        assert hits[0].score == 0.0
        assert hits[0].snippet == long_text[:200]

        tagged = store.create("tagged", MemoryType.FACT, tags=["ops"])
        assert [h.memory.id for h in index.search_by_tag("ops")] == [tagged.id]

        assert index.rebuild() is False
        assert index.stats().available is False


def test_rebuild_and_stats(store, index):
    store.create("one more", MemoryType.FACT)
    stats = index.stats()
    assert stats.available is True
    assert stats.total == len(FILLER) + 1
    assert stats.indexed == stats.total
    assert stats.in_sync is True

    with store.locked() as conn:
        conn.execute("INSERT INTO memories_fts(memories_fts) VALUES('delete-all')")
        conn.commit()
    assert index.search("one") == []
    assert index.stats().in_sync is False

    assert index.rebuild() is True
    assert index.stats().in_sync is True
    assert len(index.search("one")) == 1


def test_existing_rows_indexed_when_table_is_created(tmp_path):
    path = tmp_path / "legacy.db"
    store = SQLiteMemoryStore(path)
    memory = store.create("Legacy row written before the index", MemoryType.FACT)
    with store.locked() as conn:
        conn.execute("DROP TABLE memories_fts")
        conn.commit()
    store.close()

    reopened = SQLiteMemoryStore(path)
    hits = LexicalIndex(reopened).search("legacy")
    assert [h.memory.id for h in hits] == [memory.id]
    reopened.close()
